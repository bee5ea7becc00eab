from __future__ import annotations

import pytest

from txengine.domain.models import StatementSignature
from txengine.infrastructure.registry import PreparedStatementRegistry

SIG_A = StatementSignature("SELECT $1", (20,))
SIG_B = StatementSignature("SELECT 2")


def _persisting(handle: bytes):
    return True, handle


def _transient(handle: bytes):
    return False, handle


def _unexpected_hit(handle: bytes):
    raise AssertionError(f"unexpected hit for {handle!r}")


def test_first_resolution_misses_with_handle_zero():
    registry = PreparedStatementRegistry()

    result = registry.resolve(SIG_A, _persisting, _unexpected_hit)

    assert result == b"0"
    assert registry.counter == 1
    assert registry.handle_for(SIG_A) == b"0"


def test_persisted_signature_hits_with_stored_handle():
    registry = PreparedStatementRegistry()
    registry.resolve(SIG_A, _persisting, _unexpected_hit)

    hits = []
    result = registry.resolve(
        SIG_A,
        lambda handle: pytest.fail("unexpected miss"),
        lambda handle: hits.append(handle) or "hit",
    )

    assert result == "hit"
    assert hits == [b"0"]
    assert registry.counter == 1


def test_non_persisted_miss_leaves_registry_unchanged():
    registry = PreparedStatementRegistry()

    assert registry.resolve(SIG_A, _transient, _unexpected_hit) == b"0"
    assert registry.resolve(SIG_A, _transient, _unexpected_hit) == b"0"

    assert SIG_A not in registry
    assert registry.counter == 0
    assert len(registry) == 0


def test_handles_are_decimal_counter_values_in_persist_order():
    registry = PreparedStatementRegistry()

    seen = [registry.resolve(sig, _persisting, _unexpected_hit) for sig in (SIG_A, SIG_B)]
    # A third lookup of A is a hit and does not consume a handle.
    again = registry.resolve(SIG_A, _persisting, lambda handle: handle)

    assert seen == [b"0", b"1"]
    assert again == b"0"
    assert registry.counter == 2
    assert len(registry) == 2


def test_on_miss_exception_propagates_and_leaves_state_unchanged():
    registry = PreparedStatementRegistry()

    def failing(handle: bytes):
        raise RuntimeError("prepare failed")

    with pytest.raises(RuntimeError, match="prepare failed"):
        registry.resolve(SIG_A, failing, _unexpected_hit)

    assert SIG_A not in registry
    assert registry.counter == 0
    # The same candidate handle is offered again.
    assert registry.resolve(SIG_A, _persisting, _unexpected_hit) == b"0"


def test_counter_continues_past_ten():
    registry = PreparedStatementRegistry()
    for index in range(11):
        registry.resolve(StatementSignature(f"SELECT {index}"), _persisting, _unexpected_hit)

    assert registry.handle_for(StatementSignature("SELECT 10")) == b"10"


def test_signatures_differing_by_types_are_distinct_entries():
    registry = PreparedStatementRegistry()
    as_int = StatementSignature("SELECT $1", (20,))
    as_text = StatementSignature("SELECT $1", (25,))

    registry.resolve(as_int, _persisting, _unexpected_hit)
    handle = registry.resolve(as_text, _persisting, _unexpected_hit)

    assert handle == b"1"
    assert registry.handle_for(as_int) == b"0"


def test_signature_hash_uses_text_and_equality_uses_types():
    left = StatementSignature("SELECT $1", (20,))
    right = StatementSignature("SELECT $1", (25,))

    assert hash(left) == hash(right)
    assert left != right
    assert left == StatementSignature("SELECT $1", (20,))
