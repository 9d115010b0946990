import pytest

from newtube.embeddings.services.partitioner import Batch, BatchPartitioner


def test_batches_cover_all_items_in_order():
    batches = list(BatchPartitioner().batches(10, 3))
    assert batches == [Batch(0, 3), Batch(3, 3), Batch(6, 3), Batch(9, 1)]
    assert sum(b.count for b in batches) == 10


def test_restart_from_processed_items():
    batches = list(BatchPartitioner().batches(10, 3, start=4))
    assert [b.offset for b in batches] == [4, 7]
    assert batches[-1].end == 10


def test_zero_items_yields_nothing():
    assert list(BatchPartitioner().batches(0, 5)) == []
    assert BatchPartitioner().count_batches(0, 5) == 0


def test_start_past_end_yields_nothing():
    assert list(BatchPartitioner().batches(5, 2, start=5)) == []


def test_max_batch_size_caps_requested_size():
    partitioner = BatchPartitioner(max_batch_size=2)
    assert [b.count for b in partitioner.batches(5, 100)] == [2, 2, 1]
    assert partitioner.count_batches(5, 100) == 3


@pytest.mark.parametrize(
    "total,size,start",
    [(-1, 3, 0), (5, 0, 0), (5, -2, 0), (5, 2, -1)],
)
def test_invalid_arguments_raise(total, size, start):
    with pytest.raises(ValueError):
        list(BatchPartitioner().batches(total, size, start=start))
