"""
Domain models for txengine.

Defines the values that flow between callers, the executor and the prepared
statement registry: statements, their cache signatures, and the validated pool
configuration.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Tuple

from pydantic import BaseModel, Field

if TYPE_CHECKING:
    from txengine.config import Settings


@dataclass(frozen=True)
class StatementSignature:
    """
    Identity of a cacheable prepared statement.

    Two signatures are equal iff both the text and the parameter type
    sequence are equal, but only the text takes part in hashing: statements
    that differ by parameter types alone share a bucket and are told apart by
    equality.
    """

    text: str
    param_types: Tuple[int, ...] = ()

    def __hash__(self) -> int:
        return hash(self.text)


@dataclass(frozen=True)
class Statement:
    """
    A statement to execute, with its application-level parameter values.

    ``text`` uses server-native positional placeholders (``$1``, ``$2``, ...).
    Set ``preparable=False`` for one-shot statements that should never be
    cached on the connection.
    """

    text: str
    params: Tuple[Any, ...] = field(default=())
    preparable: bool = True

    def __post_init__(self) -> None:
        if not isinstance(self.params, tuple):
            object.__setattr__(self, "params", tuple(self.params))


class PoolSettings(BaseModel):
    """
    Connection pool configuration.

    Values below the documented minimums are rejected at construction with a
    ``pydantic.ValidationError``.
    """

    stripes: int = Field(1, ge=1, description="Number of independent sub-pools.")
    stripe_size: int = Field(
        10,
        ge=1,
        description=(
            "Maximum connections per stripe. Acquisitions block when a stripe is "
            "full, even if other stripes have idle connections."
        ),
    )
    idle_timeout: float = Field(
        30.0, ge=0.5, description="Seconds an unused connection is kept open."
    )

    model_config = {"frozen": True}

    @property
    def max_connections(self) -> int:
        return self.stripes * self.stripe_size

    @classmethod
    def from_settings(cls, settings: "Settings") -> "PoolSettings":
        return cls(
            stripes=settings.pool_stripes,
            stripe_size=settings.pool_stripe_size,
            idle_timeout=settings.pool_idle_timeout,
        )


__all__ = ["PoolSettings", "Statement", "StatementSignature"]
