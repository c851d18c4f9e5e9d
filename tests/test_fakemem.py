import pytest

from msgstm.fakemem import ALLOC_SIZE, GRANULARITY, Block, FakeMemory


def test_first_allocation_at_base():
    mem = FakeMemory(base=4096)
    assert mem.malloc(10) == 4096


def test_sizes_rounded_to_granularity():
    mem = FakeMemory()
    a = mem.malloc(1)
    b = mem.malloc(1)
    assert b - a == GRANULARITY


def test_zero_size_rejected():
    with pytest.raises(ValueError):
        FakeMemory().malloc(0)


def test_exhaustion_raises_memory_error():
    mem = FakeMemory(size=16)
    mem.malloc(16)
    with pytest.raises(MemoryError):
        mem.malloc(4)


def test_free_all_restores_single_block():
    mem = FakeMemory(size=1024)
    addrs = [mem.malloc(n) for n in (8, 12, 4, 100, 7)]
    for addr in (addrs[2], addrs[0], addrs[4], addrs[1], addrs[3]):
        mem.free(addr)
    assert mem.free_blocks() == [Block(0, 1024)]
    assert mem.taken_blocks() == []


def test_freed_block_is_reused():
    mem = FakeMemory(size=64)
    a = mem.malloc(8)
    mem.malloc(8)
    mem.free(a)
    assert mem.malloc(8) == a


def test_taken_blocks_in_decreasing_order():
    mem = FakeMemory(size=256)
    for _ in range(5):
        mem.malloc(8)
    offsets = [b.offset for b in mem.taken_blocks()]
    assert offsets == sorted(offsets, reverse=True)
    assert len(offsets) == 5


def test_free_unknown_address_ignored():
    mem = FakeMemory(size=64)
    mem.malloc(8)
    before = mem.free_blocks()
    mem.free(1000)
    assert mem.free_blocks() == before


def test_offset_round_trip():
    mem = FakeMemory(base=1 << 20)
    addr = mem.malloc(32)
    assert mem.address_from_offset(mem.offset(addr)) == addr


def test_default_size_is_whole_space():
    mem = FakeMemory()
    assert mem.free_blocks() == [Block(0, ALLOC_SIZE)]


def test_free_blocks_stay_disjoint_and_sorted():
    mem = FakeMemory(size=512)
    addrs = [mem.malloc(16) for _ in range(10)]
    for addr in addrs[::2]:
        mem.free(addr)
    blocks = mem.free_blocks()
    for first, second in zip(blocks, blocks[1:]):
        assert first.end < second.offset
    total = sum(b.size for b in blocks) + sum(b.size for b in mem.taken_blocks())
    assert total == 512