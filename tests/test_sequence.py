import asyncio
from concurrent.futures import ThreadPoolExecutor

import pytest

from txstress.sequence import SenderPool, SequenceAllocator
from txstress.simulated import SimulatedTarget


def test_contiguous_allocation():
    allocator = SequenceAllocator(7)

    assert allocator.next(3) == [7, 8, 9]
    assert allocator.next() == [10]
    assert allocator.next(2) == [11, 12]
    assert allocator.issued == 6
    assert allocator.last == 12
    assert allocator.base() == 7


def test_nothing_issued():
    allocator = SequenceAllocator(5)

    assert allocator.issued == 0
    assert allocator.last == 4
    assert allocator.next(0) == []


def test_invalid_arguments():
    with pytest.raises(ValueError):
        SequenceAllocator(-1)
    with pytest.raises(ValueError):
        SequenceAllocator(0).next(-2)


def test_concurrent_threads_never_overlap():
    allocator = SequenceAllocator(100)

    with ThreadPoolExecutor(max_workers=8) as pool:
        chunks = list(pool.map(lambda n: allocator.next(n), [3] * 500))

    issued = [seq for chunk in chunks for seq in chunk]
    assert sorted(issued) == list(range(100, 1600))
    for chunk in chunks:
        assert chunk == list(range(chunk[0], chunk[0] + 3))


@pytest.mark.asyncio
async def test_concurrent_tasks_never_overlap():
    allocator = SequenceAllocator(0)

    async def take(n):
        await asyncio.sleep(0)
        return allocator.next(n)

    chunks = await asyncio.gather(*[take(n % 4 + 1) for n in range(40)])

    issued = sorted(seq for chunk in chunks for seq in chunk)
    assert issued == list(range(0, allocator.issued))


@pytest.mark.asyncio
async def test_from_target():
    allocator = await SequenceAllocator.from_target(SimulatedTarget(starting_sequence=42), "0xsender")

    assert allocator.base() == 42
    assert allocator.next(2) == [42, 43]


def test_sender_pool_round_robin():
    pool = SenderPool({"0xa": SequenceAllocator(5), "0xb": SequenceAllocator(0)})

    assert pool.next(3) == [("0xa", 5), ("0xb", 0), ("0xa", 6)]
    # rotation continues where the last call stopped
    assert pool.next(3) == [("0xb", 1), ("0xa", 7), ("0xb", 2)]
    assert pool.issued == 6
    assert pool.ranges() == [
        {"sender": "0xa", "base_sequence": 5, "last_sequence": 7, "issued": 3},
        {"sender": "0xb", "base_sequence": 0, "last_sequence": 2, "issued": 3},
    ]


def test_sender_pool_threads_keep_each_range_contiguous():
    senders = ["0xa", "0xb", "0xc"]
    pool = SenderPool({s: SequenceAllocator(100 * i) for i, s in enumerate(senders)})

    with ThreadPoolExecutor(max_workers=8) as executor:
        chunks = list(executor.map(pool.next, [5] * 300))

    by_sender = {s: [] for s in senders}
    for chunk in chunks:
        for sender, seq in chunk:
            by_sender[sender].append(seq)
    for i, sender in enumerate(senders):
        assert sorted(by_sender[sender]) == list(range(100 * i, 100 * i + 500))


def test_empty_sender_pool():
    with pytest.raises(ValueError):
        SenderPool({})


@pytest.mark.asyncio
async def test_sender_pool_from_target():
    target = SimulatedTarget(starting_sequence={"0xa": 3, "0xb": 9})

    pool = await SenderPool.from_target(target, ["0xa", "0xb"])

    assert pool.senders == ["0xa", "0xb"]
    assert pool.primary.base() == 3
    assert pool.allocator("0xb").base() == 9


@pytest.mark.asyncio
async def test_sender_pool_default_sender():
    pool = await SenderPool.from_target(SimulatedTarget(starting_sequence=4), [])

    assert pool.senders == [None]
    assert pool.next(2) == [(None, 4), (None, 5)]
