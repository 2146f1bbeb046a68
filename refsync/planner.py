import json
from typing import Any, Iterable, List

from .models import Record, ShardBatch

MIN_ID_WIDTH = 3


def encoded_size(value: Any) -> int:
    """Byte length of ``value`` as compact UTF-8 JSON, the form shards are stored in."""
    return len(json.dumps(value, separators=(",", ":"), ensure_ascii=False).encode("utf-8"))


def shard_id(index: int, width: int = MIN_ID_WIDTH) -> str:
    return str(index).zfill(width)


def _batch_bounds(sizes: List[int], byte_budget: int, max_items: int) -> List[range]:
    bounds: List[range] = []
    start = 0
    # an encoded array costs 2 bytes of brackets plus one comma per extra element
    batch_bytes = 2
    for i, size in enumerate(sizes):
        count = i - start
        cost = size if count == 0 else size + 1
        if count > 0 and (count >= max_items or batch_bytes + cost > byte_budget):
            bounds.append(range(start, i))
            start = i
            batch_bytes = 2
            cost = size
        batch_bytes += cost
    if start < len(sizes):
        bounds.append(range(start, len(sizes)))
    return bounds


def plan(records: Iterable[Record], byte_budget: int, max_items: int = 500) -> List[ShardBatch]:
    """Split ``records`` into ordered shard batches.

    A batch closes when the next record would push its encoded size past
    ``byte_budget`` or when it already holds ``max_items`` records. Record
    order is kept across batch boundaries, and a record larger than the
    budget gets a batch of its own. Ids run "000", "001", ... and widen
    only past 1000 batches, so lexical order is read order.
    """
    if byte_budget <= 0:
        raise ValueError("byte_budget must be positive")
    if max_items <= 0:
        raise ValueError("max_items must be positive")

    items = list(records)
    sizes = [encoded_size(record) for record in items]
    bounds = _batch_bounds(sizes, byte_budget, max_items)
    width = max(MIN_ID_WIDTH, len(str(len(bounds) - 1)))

    batches: List[ShardBatch] = []
    for index, span in enumerate(bounds):
        batch_records = items[span.start:span.stop]
        size = 2 + sum(sizes[span.start:span.stop]) + len(span) - 1
        batches.append(
            ShardBatch(id=shard_id(index, width), records=batch_records, size_bytes=size)
        )
    return batches
