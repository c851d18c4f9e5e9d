"""The lock service run by service nodes: answers lock requests and gathers statistics."""

from __future__ import annotations

import math
import time
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Union

from msgstm.contention import ContentionManager
from msgstm.locktable import LockTable
from msgstm.pgas import PgasStore
from msgstm.protocol import (
    Access,
    Conflict,
    Reply,
    ReplyType,
    Request,
    RequestType,
    StatsMessage,
)
from msgstm.ssht import ADDR_PER_BUCKET, DEFAULT_BUCKETS
from msgstm.topology import Topology
from msgstm.writeset import PgasWriteSet

POLICIES = ("wholly", "faircm", "greedy", "greedy_global")

Message = Union[Request, StatsMessage]

_BAR_TOP = "|" * 54
_BAR_BOTTOM = "|" * 62


@dataclass
class DslStats:
    """Transaction statistics summed over the reports of all application nodes."""

    total: int = 0
    commits: int = 0
    aborts: int = 0
    max_retries: int = 0
    aborts_war: int = 0
    aborts_raw: int = 0
    aborts_waw: int = 0
    received: int = 0
    duration: float = 0.0

    def absorb(self, message: StatsMessage) -> int:
        """Add one report; return how many reports have been received."""
        if message.tx_duration:
            self.aborts += message.aborts
            self.commits += message.commits
            self.duration += message.tx_duration
            self.max_retries = max(self.max_retries, message.max_retries)
            self.total += message.commits + message.aborts
        else:
            self.aborts_raw += message.aborts_raw
            self.aborts_war += message.aborts_war
            self.aborts_waw += message.aborts_waw
        self.received += 1
        return self.received

    def format_report(self, num_nodes: int, num_app_nodes: int, num_dsl_nodes: int) -> str:
        """Render the global statistics; empty when no transaction ran."""
        if not (self.commits or self.aborts or self.total):
            return ""
        if num_nodes <= 0 or num_app_nodes <= 0:
            raise ValueError("the number of nodes and application nodes must be positive")

        duration = self.duration / num_app_nodes

        def per_second(count: int) -> int:
            return int(count / duration) if duration else 0

        lines = [
            _BAR_TOP,
            f"TXs Statistics : {num_nodes:02d} Nodes, {num_app_nodes:02d} App Nodes"
            + "|" * 23,
            ":: TOTAL -----------------------------------------------------",
            f"T | Avg Duration\t: {duration:.3f} s",
            f"T | Starts      \t: {self.total}",
            f"T | Commits     \t: {self.commits}",
            f"T | Aborts      \t: {self.aborts}",
            f"T | Max Retries \t: {self.max_retries}",
            f"T | Aborts WAR  \t: {self.aborts_war}",
            f"T | Aborts RAW  \t: {self.aborts_raw}",
            f"T | Aborts WAW  \t: {self.aborts_waw}",
        ]

        aborts = per_second(self.aborts)
        aborts_raw = per_second(self.aborts_raw)
        aborts_war = per_second(self.aborts_war)
        aborts_waw = per_second(self.aborts_waw)
        commits = per_second(self.commits)
        total = per_second(self.total)
        commits_total = commits

        lines += [
            ":: PER SECOND TOTAL AVG --------------------------------------",
            f"TA| Starts      \t: {total}\t/s",
            f"TA| Commits     \t: {commits}\t/s",
            f"TA| Aborts      \t: {aborts}\t/s",
            f"TA| Aborts WAR  \t: {aborts_war}\t/s",
            f"TA| Aborts RAW  \t: {aborts_raw}\t/s",
            f"TA| Aborts WAW  \t: {aborts_waw}\t/s",
        ]

        commits_app = commits // num_app_nodes

        aborts //= num_nodes
        aborts_raw //= num_nodes
        aborts_war //= num_nodes
        aborts_waw //= num_nodes
        commits //= num_nodes
        total //= num_nodes

        commit_rate = (total - aborts) / total if total else math.nan
        tx_latency = (1 / commits_app) * 1000 * 1000 if commits_app else math.inf

        lines += [
            ":: PER SECOND PER NODE AVG -----------------------------------",
            f"NA| Starts      \t: {total}\t/s",
            f"NA| Commits     \t: {commits}\t/s",
            f"NA| Aborts      \t: {aborts}\t/s",
            f"NA| Aborts WAR  \t: {aborts_war}\t/s",
            f"NA| Aborts RAW  \t: {aborts_raw}\t/s",
            f"NA| Aborts WAW  \t: {aborts_waw}\t/s",
            ":: Collect data ----------------------------------------------",
            f"))) {commits_total:<10d}{commit_rate * 100:<7.2f}{tx_latency:.3f}"
            f"{num_dsl_nodes:5d}\t(Throughput, Commit Rate, Latency)",
            _BAR_BOTTOM,
        ]
        return "\n".join(lines) + "\n"


class DslService:
    """One service node: owns the locks (and, with a store, the memory) of its addresses.

    ``policy`` tells how request metadata becomes the sender's priority in the
    contention manager: ``wholly`` and ``faircm`` take it as is on every
    request; ``greedy`` and ``greedy_global`` set it only when the sender has
    none, ``greedy`` reading it as the age of the transaction.
    """

    def __init__(
        self,
        topology: Topology,
        node_id: int,
        cm: Optional[ContentionManager] = None,
        store: Optional[PgasStore] = None,
        policy: str = "wholly",
        clock: Callable[[], int] = time.perf_counter_ns,
        num_buckets: int = DEFAULT_BUCKETS,
        addr_per_bucket: int = ADDR_PER_BUCKET,
        stats_details: bool = False,
    ) -> None:
        if not topology.is_dsl_core(node_id):
            raise ValueError(f"node {node_id} is not a service node")
        if policy not in POLICIES:
            raise ValueError(f"unknown contention policy: {policy!r}")
        self.topology = topology
        self.node_id = node_id
        self.cm = cm
        self.store = store
        self.policy = policy
        self.clock = clock
        self.stats_details = stats_details
        self.stats = DslStats()
        self.finished = False
        self.locks = LockTable(
            topology,
            cm,
            num_buckets=num_buckets,
            addr_per_bucket=addr_per_bucket,
            pgas=store is not None,
            node_id=node_id,
        )
        self.write_sets: dict[int, PgasWriteSet] = (
            {n: PgasWriteSet() for n in topology.app_nodes()} if store is not None else {}
        )
        if cm is not None and store is not None:
            previous = cm.on_abort

            def _on_abort(node: int, conflict: Conflict) -> None:
                if previous is not None:
                    previous(node, conflict)
                self.write_sets[node].empty()

            cm.on_abort = _on_abort

    @property
    def pgas(self) -> bool:
        return self.store is not None

    def _note_metadata(self, request: Request) -> None:
        if self.cm is None:
            return
        sender = request.sender
        if self.policy in ("wholly", "faircm"):
            self.cm.set_timestamp(sender, request.tx_metadata)
        elif self.cm.timestamp(sender) == 0:
            if self.policy == "greedy_global":
                self.cm.set_timestamp(sender, request.tx_metadata)
            else:
                self.cm.set_timestamp(sender, self.clock() - request.tx_metadata)

    def _reset_priority(self, sender: int) -> None:
        if self.cm is not None and self.policy.startswith("greedy"):
            self.cm.reset(sender)

    def _on_conflict(self, sender: int) -> None:
        self.locks.delete_node(sender)
        self._reset_priority(sender)
        if self.pgas:
            self.write_sets[sender].empty()

    def _read(self, address: int, words: int) -> int:
        assert self.store is not None
        return self.store.read32(address) if words == 1 else self.store.read(address)

    def handle(self, request: Message) -> Optional[Reply]:
        """Process one message; return the reply to send back, if any."""
        if isinstance(request, StatsMessage):
            received = self.stats.absorb(request)
            if received >= 2 * self.topology.num_app_nodes():
                self.finished = True
            return None

        self._note_metadata(request)
        sender = request.sender
        kind = request.type

        if kind is RequestType.LOAD:
            conflict = self.locks.insert(sender, request.address, Access.READ)
            value = self._read(request.address, request.words) if self.pgas else 0
            if conflict is not Conflict.NO_CONFLICT:
                self._on_conflict(sender)
            return Reply(ReplyType.LOAD_RESPONSE, request.address, value, conflict)

        if kind is RequestType.STORE:
            conflict = self.locks.insert(sender, request.address, Access.WRITE)
            if conflict is not Conflict.NO_CONFLICT:
                self._on_conflict(sender)
            elif self.pgas:
                self.write_sets[sender].insert(request.address, request.value)
            return Reply(ReplyType.STORE_RESPONSE, request.address, 0, conflict)

        if self.pgas and kind is RequestType.STORE_INC:
            conflict = self.locks.insert(sender, request.address, Access.WRITE)
            if conflict is Conflict.NO_CONFLICT:
                value = self._read(request.address, 2) + request.value
                self.write_sets[sender].insert(request.address, value)
            else:
                self._on_conflict(sender)
            return Reply(ReplyType.STORE_RESPONSE, request.address, 0, conflict)

        if self.pgas and kind is RequestType.LOAD_NONTX:
            value = self._read(request.address, request.words)
            return Reply(ReplyType.LOAD_NONTX_RESPONSE, request.address, value)

        if self.pgas and kind is RequestType.STORE_NONTX:
            assert self.store is not None
            self.store.write(request.address, request.value)
            return None

        if kind is RequestType.RMV_NODE:
            if self.pgas:
                write_set = self.write_sets[sender]
                if request.response is Conflict.NO_CONFLICT:
                    write_set.persist(self.store)
                write_set.empty()
            self.locks.delete_node(sender)
            self._reset_priority(sender)
            return None

        if kind is RequestType.LOAD_RLS:
            self.locks.delete(sender, request.address, Access.READ)
            return None

        if kind is RequestType.STORE_FINISH:
            self.locks.delete(sender, request.address, Access.WRITE)
            return None

        return Reply(ReplyType.UNKNOWN_RESPONSE)

    def _final_report(self) -> str:
        text = self.locks.table.stats(self.stats_details)
        dsl_nodes = self.topology.dsl_nodes()
        if self.node_id == min(dsl_nodes):
            text += self.stats.format_report(
                self.topology.num_nodes,
                self.topology.num_app_nodes(),
                len(dsl_nodes),
            )
        return text

    def serve(
        self,
        inbox: Iterable[Message],
        send: Callable[[int, Reply], None],
    ) -> Optional[str]:
        """Serve messages until every application node has reported its statistics.

        Replies go through ``send(target, reply)``. Returns the final report
        (lock-table usage, plus global statistics on the lowest service node),
        or None if the inbox ran out first.
        """
        for message in inbox:
            reply = self.handle(message)
            if reply is not None:
                send(message.sender, reply)
            if self.finished:
                return self._final_report()
        return None