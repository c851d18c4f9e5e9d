"""A first-fit allocator handing out addresses in a pretend address space."""

from __future__ import annotations

import bisect
from dataclasses import dataclass

ALLOC_SIZE = 512 * 1024 * 1024
GRANULARITY = 4


@dataclass(frozen=True)
class Block:
    """A contiguous range of the address space, relative to its base."""

    offset: int
    size: int

    @property
    def end(self) -> int:
        return self.offset + self.size


class FakeMemory:
    """Allocates ranges of a space of ``size`` bytes starting at ``base``.

    Sizes are rounded up to a multiple of four bytes. Nothing is actually
    reserved: the returned values are only addresses.
    """

    def __init__(self, size: int = ALLOC_SIZE, base: int = 0) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self.base = base
        self._free: list[Block] = [Block(0, size)]
        self._taken: dict[int, int] = {}

    def malloc(self, size: int) -> int:
        """Reserve ``size`` bytes and return their address."""
        if size <= 0:
            raise ValueError("allocation size must be positive")
        size = -(-size // GRANULARITY) * GRANULARITY
        for index, block in enumerate(self._free):
            if block.size >= size:
                break
        else:
            raise MemoryError(f"no free block of {size} bytes")
        if block.size == size:
            del self._free[index]
        else:
            self._free[index] = Block(block.offset + size, block.size - size)
        self._taken[block.offset] = size
        return self.base + block.offset

    def free(self, address: int) -> None:
        """Return a range obtained from :meth:`malloc`; unknown addresses are ignored."""
        offset = self.offset(address)
        size = self._taken.pop(offset, None)
        if size is None:
            return
        block = Block(offset, size)
        index = bisect.bisect_left(self._free, offset, key=lambda b: b.offset)
        if index < len(self._free) and self._free[index].offset == block.end:
            block = Block(offset, size + self._free[index].size)
            del self._free[index]
        if index > 0 and self._free[index - 1].end == block.offset:
            prev = self._free[index - 1]
            self._free[index - 1] = Block(prev.offset, prev.size + block.size)
        else:
            self._free.insert(index, block)

    def offset(self, address: int) -> int:
        return address - self.base

    def address_from_offset(self, offset: int) -> int:
        return self.base + offset

    def free_blocks(self) -> list[Block]:
        """Free ranges in increasing order of offset."""
        return list(self._free)

    def taken_blocks(self) -> list[Block]:
        """Reserved ranges in decreasing order of offset."""
        return [Block(off, self._taken[off]) for off in sorted(self._taken, reverse=True)]