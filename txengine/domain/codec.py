"""
Conversion between application values and driver-native values.

The executor never interprets values itself: parameters go through
``Codec.encode_params`` (which also yields the type identifiers that make up a
statement signature) and every result row goes through ``Codec.decode_row``.
"""

from __future__ import annotations

import dataclasses
import datetime
import decimal
import json
from typing import Any, Callable, Protocol, Sequence, Tuple, Type, TypeVar, Union, runtime_checkable

from pydantic import BaseModel, ValidationError

from txengine.errors import ParsingError

T = TypeVar("T")

RowTarget = Union[Type[T], Callable[..., T]]

# PostgreSQL type OIDs
UNKNOWN_OID = 0
BOOL_OID = 16
BYTEA_OID = 17
INT8_OID = 20
TEXT_OID = 25
FLOAT8_OID = 701
DATE_OID = 1082
TIMESTAMPTZ_OID = 1184
NUMERIC_OID = 1700
JSONB_OID = 3802

# Order matters: bool before int, datetime before date.
_TYPE_OIDS: Tuple[Tuple[type, int], ...] = (
    (bool, BOOL_OID),
    (int, INT8_OID),
    (float, FLOAT8_OID),
    (decimal.Decimal, NUMERIC_OID),
    (str, TEXT_OID),
    ((bytes, bytearray, memoryview), BYTEA_OID),
    (datetime.datetime, TIMESTAMPTZ_OID),
    (datetime.date, DATE_OID),
    ((dict, list), JSONB_OID),
)


@runtime_checkable
class Codec(Protocol):
    """Converts parameters on the way in and rows on the way out."""

    def encode_params(self, values: Sequence[Any]) -> Tuple[Tuple[int, ...], Tuple[Any, ...]]:
        """Return ``(type_ids, native_values)`` for a statement's parameters."""
        ...

    def decode_row(self, raw: Sequence[Any], into: RowTarget) -> Any:
        """Convert one raw row into ``into``, raising ParsingError on mismatch."""
        ...


def describe_target(into: Any) -> str:
    """Human-readable description of a decode target, used in ParsingError."""
    module = getattr(into, "__module__", None)
    name = getattr(into, "__qualname__", None) or repr(into)
    if module and module != "builtins":
        return f"{module}.{name}"
    return name


class DefaultCodec:
    """
    Codec for PostgreSQL-backed drivers.

    Parameters map to type OIDs by Python type; ``dict``/``list`` values are
    serialized to JSON text for ``jsonb``. Rows decode into:

    - ``tuple`` (the raw row),
    - a scalar type such as ``int`` or ``str`` (exactly one column),
    - a pydantic model (columns bound to fields in declaration order),
    - a dataclass (columns passed positionally),
    - any other callable taking the columns positionally.
    """

    _SCALARS = (bool, int, float, str, bytes, decimal.Decimal, datetime.date, datetime.datetime)

    def type_id(self, value: Any) -> int:
        if value is None:
            return UNKNOWN_OID
        for python_type, oid in _TYPE_OIDS:
            if isinstance(value, python_type):
                return oid
        return UNKNOWN_OID

    def encode_value(self, value: Any) -> Any:
        if isinstance(value, (dict, list)):
            return json.dumps(value)
        if isinstance(value, (bytearray, memoryview)):
            return bytes(value)
        return value

    def encode_params(self, values: Sequence[Any]) -> Tuple[Tuple[int, ...], Tuple[Any, ...]]:
        type_ids = tuple(self.type_id(value) for value in values)
        return type_ids, tuple(self.encode_value(value) for value in values)

    def decode_row(self, raw: Sequence[Any], into: RowTarget) -> Any:
        row = tuple(raw)
        if into is tuple:
            return row
        if isinstance(into, type) and issubclass(into, BaseModel):
            return self._decode_model(row, into)
        if isinstance(into, type) and into in self._SCALARS:
            return self._decode_scalar(row, into)
        if dataclasses.is_dataclass(into) and isinstance(into, type):
            expected = [f for f in dataclasses.fields(into) if f.init]
            if len(row) != len(expected):
                raise ParsingError(
                    row, describe_target(into), f"expected {len(expected)} columns, got {len(row)}"
                )
        try:
            return into(*row)
        except (TypeError, ValueError) as exc:
            raise ParsingError(row, describe_target(into), str(exc)) from exc

    def _decode_model(self, row: Tuple[Any, ...], into: Type[BaseModel]) -> BaseModel:
        names = list(into.model_fields)
        if len(row) != len(names):
            raise ParsingError(
                row, describe_target(into), f"expected {len(names)} columns, got {len(row)}"
            )
        try:
            return into.model_validate(dict(zip(names, row)))
        except ValidationError as exc:
            raise ParsingError(row, describe_target(into), str(exc)) from exc

    def _decode_scalar(self, row: Tuple[Any, ...], into: type) -> Any:
        if len(row) != 1:
            raise ParsingError(row, describe_target(into), f"expected 1 column, got {len(row)}")
        (value,) = row
        if into is float and isinstance(value, (int, decimal.Decimal)) and not isinstance(value, bool):
            return float(value)
        if not isinstance(value, into) or (into is int and isinstance(value, bool)):
            raise ParsingError(row, describe_target(into), f"got {type(value).__name__}")
        return value


__all__ = [
    "Codec",
    "DefaultCodec",
    "RowTarget",
    "describe_target",
]
