from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator


@dataclass(frozen=True)
class Batch:
    offset: int
    count: int

    @property
    def end(self) -> int:
        return self.offset + self.count


class BatchPartitioner:
    """
    Splits a job's item positions into fixed-size batches.

    The iterator is derived only from (total, batch_size, start), so a job
    that restarts after a crash or retry rebuilds the same remaining batches
    from its persisted processed_items.
    """

    def __init__(self, max_batch_size: int = 0):
        self.max_batch_size = max_batch_size

    def batches(self, total_items: int, batch_size: int, *, start: int = 0) -> Iterator[Batch]:
        if total_items < 0:
            raise ValueError("total_items must be >= 0")
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if start < 0:
            raise ValueError("start must be >= 0")
        if self.max_batch_size:
            batch_size = min(batch_size, self.max_batch_size)

        offset = start
        while offset < total_items:
            count = min(batch_size, total_items - offset)
            yield Batch(offset=offset, count=count)
            offset += count

    def count_batches(self, total_items: int, batch_size: int, *, start: int = 0) -> int:
        remaining = max(total_items - start, 0)
        if self.max_batch_size:
            batch_size = min(batch_size, self.max_batch_size)
        return -(-remaining // batch_size) if batch_size > 0 else 0
