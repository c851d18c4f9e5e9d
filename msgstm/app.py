"""The application side: sends lock and memory requests to the service nodes."""

from __future__ import annotations

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, Union

from msgstm.dsl import POLICIES
from msgstm.locktable import _hash32 as hash_tw
from msgstm.protocol import Conflict, Reply, Request, RequestType, StatsMessage
from msgstm.topology import Topology
from msgstm.writeset import WriteSet

Message = Union[Request, StatsMessage]
Transport = Callable[[int, Message], Optional[Reply]]

CYCLES_PER_RETRY = 50


class TxAborted(Exception):
    """Raised when a transaction has to abort; ``reason`` is the conflict."""

    def __init__(self, reason: Conflict) -> None:
        self.reason = Conflict(reason)
        super().__init__(f"transaction aborted: {self.reason.name}")


@dataclass
class TxStats:
    """Bookkeeping of the running transaction and totals of the node."""

    aborts: int = 0
    retries: int = 0
    start_ts: int = 0
    tx_committed: int = 0
    tx_aborted: int = 0
    tx_duration: int = 0
    max_retries: int = 0
    aborts_raw: int = 0
    aborts_war: int = 0
    aborts_waw: int = 0
    write_set: WriteSet = field(default_factory=WriteSet)


def _sleep_nanos(nanos: float) -> None:
    if nanos > 0:
        time.sleep(nanos / 1e9)


class AppNode:
    """One application node talking to the service nodes through ``send``.

    ``send(target, message)`` delivers a message to service node ``target``
    and returns its reply, or None for messages that get no reply. With
    ``pgas_mask_bits`` set the memory is partitioned: the upper address bits
    pick the service node and the lower bits are the offset in its partition.
    Otherwise the node is picked by hashing (or, with ``hash_addresses``
    false, by taking the modulo of) the address shifted by ``addr_shift``.
    """

    def __init__(
        self,
        topology: Topology,
        node_id: int,
        send: Transport,
        *,
        pgas_mask_bits: Optional[int] = None,
        hash_addresses: bool = True,
        addr_shift: int = 0,
        policy: Optional[str] = None,
        clock: Callable[[], int] = time.perf_counter_ns,
        ref_speed_ghz: float = 1.0,
        backoff_retry: bool = False,
        backoff_max: int = 0,
        backoff_delay: int = 0,
        delay: Callable[[float], None] = _sleep_nanos,
        seed: Optional[int] = None,
        barrier: Optional[Callable[[], None]] = None,
    ) -> None:
        if not topology.is_app_core(node_id):
            raise ValueError(f"node {node_id} is not an application node")
        if policy is not None and policy not in POLICIES:
            raise ValueError(f"unknown contention policy: {policy!r}")
        if pgas_mask_bits is not None and pgas_mask_bits <= 0:
            raise ValueError("pgas_mask_bits must be positive")
        if ref_speed_ghz <= 0:
            raise ValueError("ref_speed_ghz must be positive")
        self.topology = topology
        self.node_id = node_id
        self.send = send
        self.pgas_mask_bits = pgas_mask_bits
        self.hash_addresses = hash_addresses
        self.addr_shift = addr_shift
        self.policy = policy
        self.clock = clock
        self.ref_speed_ghz = ref_speed_ghz
        self.backoff_retry = backoff_retry
        self.backoff_max = backoff_max
        self.backoff_delay = backoff_delay
        self.delay = delay
        self.barrier = barrier
        self.rng = random.Random(seed)

        self.dsl_nodes = topology.dsl_nodes()
        if not self.dsl_nodes:
            raise ValueError("the topology has no service nodes")
        self.contacted = [0] * len(self.dsl_nodes)
        self.tx = TxStats()
        self.read_value = 0
        self.abort_flag = Conflict.NO_CONFLICT

    @property
    def pgas(self) -> bool:
        return self.pgas_mask_bits is not None

    def _intern(self, address: int) -> int:
        if self.pgas:
            return address & ((1 << self.pgas_mask_bits) - 1)
        return address

    def responsible_node(self, address: int) -> int:
        """Position, among the service nodes, of the one responsible for ``address``."""
        if self.pgas:
            seq = address >> self.pgas_mask_bits
            if seq >= len(self.dsl_nodes):
                raise ValueError(f"address {address:#x} lies beyond the last partition")
            return seq
        key = address >> self.addr_shift
        if self.hash_addresses:
            key = hash_tw(key)
        return key % len(self.dsl_nodes)

    def _metadata(self) -> int:
        if self.policy == "wholly":
            return self.tx.tx_committed
        if self.policy == "faircm":
            return int(self.tx.tx_duration)
        if self.policy == "greedy":
            return self.clock() - self.tx.start_ts
        if self.policy == "greedy_global":
            return self.tx.start_ts
        return 0

    def _request(self, kind: RequestType, address: int, **fields) -> Request:
        return Request(
            type=kind,
            sender=self.node_id,
            address=address,
            tx_metadata=self._metadata(),
            **fields,
        )

    def _call(self, target: int, request: Message) -> Reply:
        reply = self.send(target, request)
        if reply is None:
            raise RuntimeError(f"service node {target} sent no reply")
        if self.pgas:
            self.read_value = reply.value
        return reply

    def _locking(self, kind: RequestType, address: int, **fields) -> Conflict:
        seq = self.responsible_node(address)
        self.contacted[seq] += 1
        target = self.dsl_nodes[seq]
        request = self._request(kind, self._intern(address), **fields)
        response = self._call(target, request).response
        if response is not Conflict.NO_CONFLICT:
            self.contacted[seq] = 0
        return Conflict(response)

    def load(self, address: int, words: int = 2) -> Conflict:
        """Take a read lock; with partitioned memory the value lands in ``read_value``."""
        return self._locking(RequestType.LOAD, address, words=words)

    def store(self, address: int, value: int = 0) -> Conflict:
        """Take a write lock; with partitioned memory ``value`` is buffered for commit."""
        if self.pgas:
            return self._locking(RequestType.STORE, address, value=value)
        return self._locking(RequestType.STORE, address)

    def store_inc(self, address: int, increment: int) -> Conflict:
        """Take a write lock and buffer the current value plus ``increment``."""
        if not self.pgas:
            raise RuntimeError("store_inc needs partitioned memory")
        return self._locking(RequestType.STORE_INC, address, value=increment)

    def notx_load(self, address: int, words: int = 2) -> int:
        """Read a value outside any transaction."""
        target = self.dsl_nodes[self.responsible_node(address)]
        request = self._request(RequestType.LOAD_NONTX, self._intern(address), words=words)
        self._call(target, request)
        return self.read_value

    def notx_store(self, address: int, value: int) -> None:
        """Write a value outside any transaction; no reply is awaited."""
        target = self.dsl_nodes[self.responsible_node(address)]
        self.send(target, self._request(RequestType.STORE_NONTX, self._intern(address), value=value))

    def _release(self, kind: RequestType, address: int) -> None:
        seq = self.responsible_node(address)
        self.contacted[seq] -= 1
        self.send(self.dsl_nodes[seq], self._request(kind, self._intern(address)))

    def load_release(self, address: int) -> None:
        """Give up the read lock on ``address``."""
        self._release(RequestType.LOAD_RLS, address)

    def store_release(self, address: int) -> None:
        """Give up the write lock on ``address``."""
        self._release(RequestType.STORE_FINISH, address)

    def release_all(self, conflict: Conflict = Conflict.NO_CONFLICT) -> None:
        """Tell every contacted service node to drop this node's locks.

        ``conflict`` is NO_CONFLICT on commit, which makes buffered writes persist.
        """
        for seq, count in enumerate(self.contacted):
            if count > 0:
                self.send(
                    self.dsl_nodes[seq],
                    self._request(RequestType.RMV_NODE, 0, response=Conflict(conflict)),
                )
                self.contacted[seq] = 0

    def store_all(self, write_set: WriteSet) -> int:
        """Write-lock every address of ``write_set``; return how many were locked.

        Raises :class:`TxAborted` on the first conflict or when ``abort_flag``
        was set by a contention manager.
        """
        if self.pgas:
            raise RuntimeError("store_all is not used with partitioned memory")
        locked = 0
        for entry in write_set:
            if self.abort_flag is not Conflict.NO_CONFLICT:
                raise TxAborted(self.abort_flag)
            conflict = self.store(entry.address, 0)
            if conflict is not Conflict.NO_CONFLICT:
                raise TxAborted(conflict)
            locked += 1
        return locked

    def handle_abort(self, stats: TxStats, reason: Conflict) -> float:
        """Release everything after an abort and wait before retrying.

        Returns the time waited, in nanoseconds.
        """
        reason = Conflict(reason)
        self.release_all(reason)
        stats.aborts += 1
        if not self.pgas:
            stats.write_set.empty()
        self.abort_flag = Conflict.NO_CONFLICT

        if self.backoff_retry:
            if self.backoff_max <= 0:
                return 0.0
            wait_exp = min(stats.retries, self.backoff_max)
            wait_max = self.backoff_delay << max(wait_exp - 1, 0)
            nanos = float(self.rng.randrange(wait_max)) if wait_max > 0 else 0.0
        else:
            cycles = CYCLES_PER_RETRY * (stats.retries & 0xFF)
            nanos = cycles / self.ref_speed_ghz
        self.delay(nanos)
        return nanos

    def send_stats(self, stats: TxStats, duration: float) -> None:
        """Report the node's totals to every service node, in two messages."""
        if duration == 0:
            duration = 1
        totals = StatsMessage(
            sender=self.node_id,
            aborts=stats.tx_aborted,
            commits=stats.tx_committed,
            max_retries=stats.max_retries,
            tx_duration=duration,
        )
        reasons = StatsMessage(
            sender=self.node_id,
            aborts_raw=stats.aborts_raw,
            aborts_war=stats.aborts_war,
            aborts_waw=stats.aborts_waw,
            tx_duration=0,
        )
        for message in (totals, reasons):
            for target in self.dsl_nodes:
                self.send(target, message)
        if self.barrier is not None:
            self.barrier()

    def dummy(self, node_seq: int) -> Conflict:
        """Send a request the service does not know and return its response code."""
        target = self.dsl_nodes[node_seq]
        return Conflict(self._call(target, self._request(RequestType.UNKNOWN, 0)).response)