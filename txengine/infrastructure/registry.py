"""
Per-connection prepared statement registry.

Maps statement signatures to the handles under which they were prepared on
the server. Handles are the ASCII decimal rendering of a counter that only
advances when a preparation is confirmed, so a handle is never reused during
the lifetime of its connection and the map never claims a handle the server
does not know.

Not thread-safe: a connection (and therefore its registry) is owned by a
single transaction attempt at a time.
"""

from __future__ import annotations

from typing import Callable, Dict, Optional, Tuple, TypeVar

from txengine.domain.models import StatementSignature

R = TypeVar("R")

MissCallback = Callable[[bytes], Tuple[bool, R]]
HitCallback = Callable[[bytes], R]


class PreparedStatementRegistry:
    """Signature → handle map with a monotonic handle counter."""

    __slots__ = ("_handles", "_counter")

    def __init__(self) -> None:
        self._handles: Dict[StatementSignature, bytes] = {}
        self._counter = 0

    def resolve(
        self,
        signature: StatementSignature,
        on_miss: MissCallback[R],
        on_hit: HitCallback[R],
    ) -> R:
        """
        Look up ``signature`` and dispatch to the matching callback.

        Parameters
        ----------
        signature : StatementSignature
            The statement identity to look up.
        on_miss : callable
            Called with the candidate handle when the signature is unknown.
            Returns ``(persist, result)``; the mapping is stored and the
            counter advanced only when ``persist`` is true. Exceptions
            propagate and leave the registry untouched.
        on_hit : callable
            Called with the existing handle when the signature is known.

        Returns
        -------
        The result of whichever callback ran.
        """
        handle = self._handles.get(signature)
        if handle is not None:
            return on_hit(handle)

        candidate = str(self._counter).encode("ascii")
        persist, result = on_miss(candidate)
        if persist:
            self._handles[signature] = candidate
            self._counter += 1
        return result

    def handle_for(self, signature: StatementSignature) -> Optional[bytes]:
        return self._handles.get(signature)

    @property
    def counter(self) -> int:
        """The value the next persisted handle will be rendered from."""
        return self._counter

    def __contains__(self, signature: object) -> bool:
        return signature in self._handles

    def __len__(self) -> int:
        return len(self._handles)


__all__ = ["PreparedStatementRegistry"]
