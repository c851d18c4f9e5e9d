"""The lock table a service node keeps for the addresses it is responsible for."""

from __future__ import annotations

from typing import Optional

from msgstm.contention import ContentionManager
from msgstm.protocol import Access, Conflict
from msgstm.ssht import ADDR_PER_BUCKET, DEFAULT_BUCKETS, LockLog, SimpleHashTable
from msgstm.topology import Topology

_MASK32 = 0xFFFF_FFFF


def _hash32(key: int) -> int:
    key &= _MASK32
    key = ((~key) + (key << 15)) & _MASK32
    key ^= key >> 12
    key = (key + (key << 2)) & _MASK32
    key ^= key >> 4
    key = (key * 2057) & _MASK32
    key ^= key >> 16
    return key


class LockTable:
    """Per-address locks of all application nodes, with a log per node.

    The log lets all locks of a node be dropped at once when its
    transaction ends or is aborted. When a contention manager is given,
    a node it aborts has its locks dropped here as well.
    """

    def __init__(
        self,
        topology: Topology,
        cm: Optional[ContentionManager] = None,
        num_buckets: int = DEFAULT_BUCKETS,
        addr_per_bucket: int = ADDR_PER_BUCKET,
        pgas: bool = False,
        node_id: int = 0,
    ) -> None:
        if num_buckets <= 0 or num_buckets & (num_buckets - 1):
            raise ValueError("num_buckets must be a power of two")
        self.topology = topology
        self.pgas = pgas
        self._mask = num_buckets - 1
        self.logs: dict[int, LockLog] = {n: [] for n in topology.app_nodes()}
        self.table = SimpleHashTable(num_buckets, addr_per_bucket, cm, node_id)
        if cm is not None:
            previous = cm.on_abort

            def _on_abort(node: int, conflict: Conflict) -> None:
                if previous is not None:
                    previous(node, conflict)
                self.delete_node(node)

            cm.on_abort = _on_abort

    def _bucket_of(self, address: int) -> int:
        if self.pgas:
            return address & self._mask
        return _hash32(address >> 3) & self._mask

    def _log(self, node_id: int) -> LockLog:
        try:
            return self.logs[node_id]
        except KeyError:
            raise ValueError(f"node {node_id} is not an application node") from None

    def insert(self, node_id: int, address: int, access: Access) -> Conflict:
        """Lock ``address`` for reading or writing on behalf of ``node_id``."""
        log = self._log(node_id)
        bucket = self._bucket_of(address)
        if access is Access.READ:
            return self.table.insert_read(bucket, log, node_id, address)
        return self.table.insert_write(bucket, log, node_id, address)

    def delete(self, node_id: int, address: int, access: Access) -> None:
        """Release one lock the node holds on ``address``; nothing happens if it holds none."""
        log = self._log(node_id)
        for index, (logged, entry) in enumerate(log):
            if logged == address and entry.address == address:
                entry.release(node_id, access)
                del log[index]
                return

    def delete_node(self, node_id: int) -> None:
        """Release every lock the node holds."""
        log = self._log(node_id)
        for logged, entry in log:
            if entry.address == logged:
                entry.release_any(node_id)
        log.clear()