from __future__ import annotations

import datetime
import decimal
from dataclasses import dataclass

import pytest
from pydantic import BaseModel

from txengine.domain.codec import DefaultCodec, describe_target
from txengine.errors import ParsingError


class Account(BaseModel):
    id: int
    balance: decimal.Decimal


@dataclass
class Point:
    x: int
    y: int


@pytest.fixture
def codec() -> DefaultCodec:
    return DefaultCodec()


def test_encode_params_assigns_type_ids(codec):
    values = (
        None,
        True,
        7,
        1.5,
        decimal.Decimal("2.50"),
        "text",
        b"\x00",
        datetime.datetime(2024, 1, 1, tzinfo=datetime.timezone.utc),
        datetime.date(2024, 1, 1),
        {"k": [1, 2]},
    )

    type_ids, encoded = codec.encode_params(values)

    assert type_ids == (0, 16, 20, 701, 1700, 25, 17, 1184, 1082, 3802)
    assert encoded[:9] == values[:9]
    assert encoded[9] == '{"k": [1, 2]}'


def test_unknown_types_map_to_unknown_oid(codec):
    assert codec.type_id(object()) == 0


def test_decode_into_tuple_returns_raw_row(codec):
    assert codec.decode_row([1, "a"], tuple) == (1, "a")


def test_decode_into_pydantic_model_binds_columns_in_order(codec):
    account = codec.decode_row((3, "10.5"), Account)

    assert account == Account(id=3, balance=decimal.Decimal("10.5"))


def test_decode_into_model_with_wrong_column_count(codec):
    with pytest.raises(ParsingError, match="expected 2 columns, got 1") as excinfo:
        codec.decode_row((3,), Account)

    assert excinfo.value.values == (3,)
    assert excinfo.value.expected.endswith("Account")


def test_decode_into_model_with_invalid_value(codec):
    with pytest.raises(ParsingError) as excinfo:
        codec.decode_row(("not-a-number", 1), Account)

    assert excinfo.value.values == ("not-a-number", 1)


def test_decode_into_dataclass(codec):
    assert codec.decode_row((1, 2), Point) == Point(1, 2)

    with pytest.raises(ParsingError, match="expected 2 columns, got 3"):
        codec.decode_row((1, 2, 3), Point)


def test_decode_into_callable(codec):
    assert codec.decode_row((2, 3), lambda a, b: a * b) == 6

    with pytest.raises(ParsingError):
        codec.decode_row((2,), lambda a, b: a * b)


def test_decode_scalar_requires_a_single_matching_column(codec):
    assert codec.decode_row((5,), int) == 5
    assert codec.decode_row((5,), float) == 5.0
    assert codec.decode_row((decimal.Decimal("1.5"),), float) == 1.5

    with pytest.raises(ParsingError, match="expected 1 column, got 2"):
        codec.decode_row((1, 2), int)
    with pytest.raises(ParsingError, match="got bool"):
        codec.decode_row((True,), int)
    with pytest.raises(ParsingError, match="got str"):
        codec.decode_row(("5",), int)


def test_describe_target_names():
    assert describe_target(int) == "int"
    assert describe_target(Point).endswith("test_codec.Point")
