"""Partitioned global address space: address allocation and per-node storage."""

from __future__ import annotations

import struct
from collections import deque

from msgstm.topology import Topology

RESERVED_PREFIX = 64
FREE_LIST_CAPACITY = 256
_REUSE_THRESHOLD = 2

_INT64 = struct.Struct("<q")
_INT32 = struct.Struct("<i")
_UINT32 = struct.Struct("<I")
_UINT64 = struct.Struct("<Q")


class PgasAppAllocator:
    """Hands out addresses in the partitioned space for one application node.

    The space is split into one partition of ``dsl_size_node`` bytes per
    service node. An application node allocates from the partition of the
    closest service node below it, sharing that partition evenly with the
    other application nodes that follow the same service node. No memory is
    reserved here; the values returned are offsets into the global space.
    """

    def __init__(self, topology: Topology, node_id: int, dsl_size_node: int) -> None:
        if dsl_size_node <= 0:
            raise ValueError("dsl_size_node must be positive")
        if node_id <= 0:
            raise ValueError("an application node id must be greater than zero")
        if not topology.is_app_core(node_id):
            raise ValueError(f"node {node_id} is not an application node")

        self.topology = topology
        self.node_id = node_id
        self.dsl_size_node = dsl_size_node
        self.num_dsl_nodes = topology.num_dsl_nodes()
        self.mem_size = self.num_dsl_nodes * dsl_size_node
        self.base = 0

        self._alloc_next = RESERVED_PREFIX
        self._node_allocs = [n * dsl_size_node + RESERVED_PREFIX for n in range(self.num_dsl_nodes)]
        self._rr_next = 0
        self._free_list: deque[int] = deque(maxlen=FREE_LIST_CAPACITY)

        real_id = next((n for n in range(node_id - 1, -1, -1) if topology.is_dsl_core(n)), None)
        if real_id is None:
            raise ValueError(f"no service node precedes node {node_id}")
        self.resp_node_real = real_id
        self.resp_node = topology.dsl_seq(real_id)

        sharing = []
        for n in range(real_id + 1, topology.num_nodes):
            if not topology.is_app_core(n):
                break
            sharing.append(n)
        self.num_sharing = len(sharing)
        self.sharing_seq = sharing.index(node_id)

        my_offset = (dsl_size_node // self.num_sharing) * self.sharing_seq
        node_offset = self.resp_node * dsl_size_node
        self.mem_mine = self.base + node_offset + my_offset

    def alloc(self, size: int) -> int:
        """Return an address for ``size`` bytes, reusing freed ones when enough are pending."""
        if len(self._free_list) > _REUSE_THRESHOLD:
            return self._free_list.popleft()
        address = self.mem_mine + self._alloc_next
        self._alloc_next += size
        return address

    def free(self, address: int) -> None:
        """Queue an address for later reuse by :meth:`alloc`."""
        self._free_list.append(address)

    def alloc_round_robin(self, num_elems: int, size_elem: int) -> list[int]:
        """Allocate ``num_elems`` elements spread over the partitions in turn.

        Successive calls continue with the partition after the last one used.
        """
        if self.num_dsl_nodes == 0:
            raise ValueError("there are no service nodes to allocate from")
        addresses = []
        n = self._rr_next
        alloced_mine = 0
        for _ in range(num_elems):
            addresses.append(self.base + self._node_allocs[n])
            self._node_allocs[n] += size_elem
            if n == self.resp_node:
                alloced_mine += size_elem
            n = (n + 1) % self.num_dsl_nodes
        self._rr_next = n
        self._alloc_next += alloced_mine
        return addresses

    def offset_of(self, address: int) -> int:
        return address - self.base

    def address_from_offset(self, offset: int) -> int:
        return self.base + offset


class PgasStore:
    """The zero-initialised partition of memory owned by one service node."""

    def __init__(self, size: int) -> None:
        if size <= 0:
            raise ValueError("size must be positive")
        self._mem = bytearray(size)

    def __len__(self) -> int:
        return len(self._mem)

    def _check(self, offset: int, width: int) -> None:
        if offset < 0 or offset + width > len(self._mem):
            raise IndexError(f"offset {offset} out of range for a {width}-byte access")

    def read(self, offset: int) -> int:
        """Read a signed 64-bit value."""
        self._check(offset, 8)
        return _INT64.unpack_from(self._mem, offset)[0]

    def read32(self, offset: int) -> int:
        """Read a signed 32-bit value."""
        self._check(offset, 4)
        return _INT32.unpack_from(self._mem, offset)[0]

    def write(self, offset: int, value: int) -> None:
        """Write a 64-bit value; wider values are truncated."""
        self._check(offset, 8)
        _UINT64.pack_into(self._mem, offset, value & 0xFFFF_FFFF_FFFF_FFFF)

    def write32(self, offset: int, value: int) -> None:
        """Write a 32-bit value; wider values are truncated."""
        self._check(offset, 4)
        _UINT32.pack_into(self._mem, offset, value & 0xFFFF_FFFF)