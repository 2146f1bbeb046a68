from __future__ import annotations

import pytest

from refsync.planner import encoded_size, plan, shard_id

from conftest import make_records


def test_1200_items_split_into_three_batches_by_item_cap():
    records = make_records(1200, "item")

    batches = plan(records, byte_budget=700_000, max_items=500)

    assert [len(b.records) for b in batches] == [500, 500, 200]
    assert [b.id for b in batches] == ["000", "001", "002"]


def test_concatenating_batches_restores_input_order():
    records = make_records(1234, "item")

    batches = plan(records, byte_budget=5_000, max_items=500)

    assert [r for b in batches for r in b.records] == records


def test_byte_budget_closes_batches_before_item_cap():
    records = make_records(50, "item", pad=100)
    budget = 1_000

    batches = plan(records, byte_budget=budget, max_items=500)

    assert len(batches) > 1
    for batch in batches:
        assert batch.size_bytes == encoded_size(batch.records)
        assert batch.size_bytes <= budget


def test_oversized_record_gets_its_own_batch():
    records = [
        {"id": "a"},
        {"id": "big", "blob": "x" * 500},
        {"id": "b"},
    ]

    batches = plan(records, byte_budget=100)

    assert [[r["id"] for r in b.records] for b in batches] == [["a"], ["big"], ["b"]]
    assert batches[1].size_bytes > 100


def test_plan_is_deterministic():
    records = make_records(777, "item", pad=20)

    first = plan(records, byte_budget=9_000, max_items=120)
    second = plan(records, byte_budget=9_000, max_items=120)

    assert [(b.id, b.size_bytes, len(b.records)) for b in first] == [
        (b.id, b.size_bytes, len(b.records)) for b in second
    ]


def test_empty_input_produces_no_batches():
    assert plan([], byte_budget=100) == []


def test_ids_widen_past_a_thousand_batches():
    batches = plan(make_records(1001, "item"), byte_budget=10_000, max_items=1)

    assert batches[0].id == "0000"
    assert batches[-1].id == "1000"
    assert [b.id for b in batches] == sorted(b.id for b in batches)


def test_shard_id_pads_to_three_digits():
    assert shard_id(0) == "000"
    assert shard_id(42) == "042"


@pytest.mark.parametrize("budget,max_items", [(0, 500), (-1, 500), (100, 0)])
def test_invalid_limits_raise(budget, max_items):
    with pytest.raises(ValueError):
        plan(make_records(3), byte_budget=budget, max_items=max_items)
