from __future__ import annotations

import pytest

from txengine.domain.models import Statement
from txengine.errors import ParsingError, StreamClosedError, TransactionClosedError
from txengine.transaction import ReadTransaction, Select

SCAN = Statement("SELECT id, balance FROM accounts ORDER BY id")
ROWS = [(1, 100), (2, 200), (3, 300), (4, 400), (5, 500)]


def test_rows_are_fetched_lazily_in_batches(executor, fake_driver):
    fake_driver.results[SCAN.text] = ROWS
    progress = []

    def scan(tx: ReadTransaction) -> list:
        stream = tx.select(SCAN)
        source = fake_driver.sources[-1]
        progress.append(source.fetches)
        first = next(stream)
        progress.append(source.fetches)
        rest = stream.all()
        progress.append(source.fetches)
        return [first, *rest]

    assert executor.read(scan) == ROWS
    # Batches of 2: nothing before the first read, then 2 + 2 + 1 + end marker.
    assert progress == [0, 1, 4]


def test_first_returns_none_when_exhausted(executor, fake_driver):
    fake_driver.results[SCAN.text] = [(1, 100)]

    def first_and_missing(tx: ReadTransaction):
        stream = tx.select(SCAN)
        return stream.first(), stream.first()

    assert executor.read(first_and_missing) == ((1, 100), None)


def test_stream_is_unusable_after_commit(executor, fake_driver):
    fake_driver.results[SCAN.text] = ROWS

    def leak(tx: ReadTransaction):
        stream = tx.select(SCAN)
        next(stream)
        return stream

    stream = executor.read(leak)

    # Rows already buffered are not readable either.
    with pytest.raises(StreamClosedError):
        next(stream)
    with pytest.raises(TransactionClosedError):
        stream.all()


def test_stream_is_unusable_after_rollback(executor, fake_driver):
    fake_driver.results[SCAN.text] = ROWS
    leaked = []

    def failing(tx: ReadTransaction):
        leaked.append(tx.select(SCAN))
        raise LookupError("abort")

    with pytest.raises(LookupError):
        executor.read(failing)

    with pytest.raises(StreamClosedError):
        leaked[0].first()


def test_select_operation_materializes_rows(executor, fake_driver):
    fake_driver.results[SCAN.text] = ROWS

    rows = executor.read(Select(SCAN))

    assert rows == ROWS
    assert isinstance(rows, list)


def test_parsing_error_reports_values_and_target(executor, fake_driver):
    statement = Statement("SELECT name FROM accounts")
    fake_driver.results[statement.text] = [("alice",)]

    with pytest.raises(ParsingError) as excinfo:
        executor.read(Select(statement, into=int))

    assert excinfo.value.values == ("alice",)
    assert excinfo.value.expected == "int"
    # A decoding failure is not a connection failure.
    assert executor.pool.stats()[0].idle == 1
