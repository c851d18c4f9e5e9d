"""Fixed-bucket hash table of read/write locks with chained overflow buckets."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Iterator, Optional

from msgstm.contention import ContentionManager
from msgstm.protocol import Access, Conflict

NO_WRITER = -1
DEFAULT_BUCKETS = 64
ADDR_PER_BUCKET = 3

LockLog = list  # list of (address, RwEntry) pairs inserted for one node


@dataclass(eq=False)
class RwEntry:
    """Lock state of one address: the reading nodes and the writing node.

    An address of 0 marks the slot as unused.
    """

    address: int = 0
    readers: set = field(default_factory=set)
    writer: int = NO_WRITER

    @property
    def nr(self) -> int:
        return len(self.readers)

    @property
    def is_free(self) -> bool:
        return self.address == 0

    def release(self, node_id: int, access: Access) -> None:
        """Drop the node's read or write lock; the slot is freed once unused."""
        if access is Access.READ:
            self.readers.discard(node_id)
        elif self.writer == node_id:
            self.writer = NO_WRITER
        self._reclaim()

    def release_any(self, node_id: int) -> None:
        """Drop every lock the node holds on this entry."""
        self.readers.discard(node_id)
        if self.writer == node_id:
            self.writer = NO_WRITER
        self._reclaim()

    def _reclaim(self) -> None:
        if not self.readers and self.writer == NO_WRITER:
            self.address = 0


class Bucket:
    """A fixed number of lock slots, with an optional overflow bucket."""

    def __init__(self, size: int) -> None:
        self.entries = [RwEntry() for _ in range(size)]
        self.next: Optional[Bucket] = None


def _chain(bucket: Optional[Bucket]) -> Iterator[Bucket]:
    while bucket is not None:
        yield bucket
        bucket = bucket.next


class SimpleHashTable:
    """Lock table whose bucket index is chosen by the caller.

    With a contention manager, conflicts are settled by it; without one,
    every conflict is reported to the requester.
    """

    def __init__(
        self,
        num_buckets: int = DEFAULT_BUCKETS,
        addr_per_bucket: int = ADDR_PER_BUCKET,
        cm: Optional[ContentionManager] = None,
        node_id: int = 0,
    ) -> None:
        if num_buckets <= 0:
            raise ValueError("num_buckets must be positive")
        if addr_per_bucket <= 0:
            raise ValueError("addr_per_bucket must be positive")
        self.addr_per_bucket = addr_per_bucket
        self.cm = cm
        self.node_id = node_id
        self.buckets = [Bucket(addr_per_bucket) for _ in range(num_buckets)]
        self.usages = 0
        self.expansions = 0
        self.bucket_reads = [0] * num_buckets
        self.bucket_writes = [0] * num_buckets

    def _head(self, bucket: int, address: int) -> Bucket:
        if not 0 <= bucket < len(self.buckets):
            raise IndexError(f"bucket {bucket} out of range")
        if address == 0:
            raise ValueError("address 0 cannot be locked")
        self.usages += 1
        return self.buckets[bucket]

    @staticmethod
    def _find(head: Bucket, address: int) -> Optional[RwEntry]:
        return next(
            (e for b in _chain(head) for e in b.entries if e.address == address),
            None,
        )

    def _free_slot(self, head: Bucket) -> RwEntry:
        bucket = head
        while True:
            for entry in bucket.entries:
                if entry.address == 0:
                    return entry
            if bucket.next is None:
                bucket.next = Bucket(self.addr_per_bucket)
                self.expansions += 1
            bucket = bucket.next

    def insert_read(self, bucket: int, log: LockLog, node_id: int, address: int) -> Conflict:
        """Take a read lock on ``address`` for ``node_id``."""
        head = self._head(bucket, address)
        self.bucket_reads[bucket] += 1
        entry = self._find(head, address)
        if entry is not None:
            if entry.writer != NO_WRITER:
                if self.cm is None or not self.cm.raw_waw(
                    node_id, entry.writer, Conflict.READ_AFTER_WRITE
                ):
                    return Conflict.READ_AFTER_WRITE
            entry.address = address
            if node_id not in entry.readers:
                entry.readers.add(node_id)
                log.append((address, entry))
            return Conflict.NO_CONFLICT

        entry = self._free_slot(head)
        entry.address = address
        entry.readers.add(node_id)
        log.append((address, entry))
        return Conflict.NO_CONFLICT

    def insert_write(self, bucket: int, log: LockLog, node_id: int, address: int) -> Conflict:
        """Take the write lock on ``address`` for ``node_id``."""
        head = self._head(bucket, address)
        self.bucket_writes[bucket] += 1
        entry = self._find(head, address)
        if entry is not None:
            if entry.writer not in (NO_WRITER, node_id):
                if self.cm is not None and self.cm.raw_waw(
                    node_id, entry.writer, Conflict.WRITE_AFTER_WRITE
                ):
                    return self._take_write(entry, log, node_id, address)
                return Conflict.WRITE_AFTER_WRITE
            if entry.nr > 1 or (entry.nr == 1 and node_id not in entry.readers):
                if self.cm is not None and self.cm.war(
                    node_id, set(entry.readers), Conflict.WRITE_AFTER_READ
                ):
                    return self._take_write(entry, log, node_id, address)
                return Conflict.WRITE_AFTER_READ
            return self._take_write(entry, log, node_id, address)

        return self._take_write(self._free_slot(head), log, node_id, address)

    @staticmethod
    def _take_write(entry: RwEntry, log: LockLog, node_id: int, address: int) -> Conflict:
        entry.address = address
        entry.writer = node_id
        log.append((address, entry))
        return Conflict.NO_CONFLICT

    def format_bucket(self, bucket: int) -> str:
        """One line listing every slot of the bucket chain as address:readers/writer."""
        parts = []
        for b in _chain(self.buckets[bucket]):
            parts.extend(f"{e.address:#x}:{e.nr:2d}/{e.writer}|" for e in b.entries)
            parts.append("|")
        return "".join(parts) + "\n"

    def stats(self, details: bool = False) -> str:
        """Usage summary, with one line per bucket when ``details`` is set."""
        lines = [
            f"SSHT stats: core {self.node_id:02d}  /  "
            f"total insertions: {self.usages:<14d}  /  num expansions  : {self.expansions}"
        ]
        if details:
            lines.append(" per bucket:")
            for b, (reads, writes) in enumerate(zip(self.bucket_reads, self.bucket_writes)):
                used = reads + writes
                perc = 100 * (used / self.usages) if self.usages else 0.0
                lines.append(
                    f"# {b:3d} :: usages: {used:8d}  = {perc:5.2f}%  "
                    f"(reads: {reads:8d} | writes: {writes:8d})"
                )
        return "\n".join(lines) + "\n"