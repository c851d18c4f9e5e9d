"""Runs a whole system of application and service nodes as threads in one process."""

from __future__ import annotations

import queue
import sys
import threading
import time
from typing import Any, Callable, Iterator, Optional

from msgstm.app import AppNode, TxAborted
from msgstm.contention import ContentionManager
from msgstm.dsl import DslService
from msgstm.pgas import PgasStore
from msgstm.protocol import Conflict, Reply, RequestType, StatsMessage
from msgstm.ssht import DEFAULT_BUCKETS
from msgstm.topology import Assignment, Topology

TOTAL_FLAG = "-total="
DEMO_TRANSACTIONS = 20
DEMO_SPAN = 32

_STOP = object()
_REPLYING = frozenset(
    {
        RequestType.LOAD,
        RequestType.STORE,
        RequestType.STORE_INC,
        RequestType.LOAD_NONTX,
        RequestType.UNKNOWN,
    }
)
_REASON_COUNTERS = {
    Conflict.READ_AFTER_WRITE: "aborts_raw",
    Conflict.WRITE_AFTER_READ: "aborts_war",
    Conflict.WRITE_AFTER_WRITE: "aborts_waw",
}


def parse_total(argv: list[str]) -> tuple[int, list[str]]:
    """Extract the node count from ``-total=N`` arguments.

    Returns the count and the arguments with every ``-total=`` entry removed.
    When the flag appears more than once, the last one wins.
    """
    argv = list(argv)
    if len(argv) < 2:
        raise ValueError(f"Not enough parameters ({len(argv)})")
    total: Optional[int] = None
    rest = argv[:1]
    for arg in argv[1:]:
        if arg.startswith(TOTAL_FLAG):
            text = arg[len(TOTAL_FLAG):]
            try:
                total = int(text)
            except ValueError:
                raise ValueError(f"invalid node count: {text!r}") from None
        else:
            rest.append(arg)
    if total is None:
        raise ValueError("Did not pass all parameters")
    return total, rest


def cycles_for_nanos(nanos: float, ghz: float) -> int:
    """Number of clock cycles that last ``nanos`` nanoseconds at ``ghz``."""
    return int(ghz * nanos)


def cycles_for_micros(micros: float, ghz: float) -> int:
    """Number of clock cycles that last ``micros`` microseconds at ``ghz``."""
    return int(ghz * 1000 * micros)


def seed_for_node(node_id: int, now: float) -> int:
    """Random seed of a node: the microsecond part of ``now`` offset by the node id."""
    whole = int(now)
    micros = int((now - whole) * 1_000_000)
    return (micros + 13 * (node_id + 1)) & 0xFFFF_FFFF


def _drain(inbox: "queue.Queue[Any]") -> Iterator[Any]:
    while True:
        item = inbox.get()
        if item is _STOP:
            return
        yield item


class Runtime:
    """A set of ``num_nodes`` nodes, each run in its own thread when :meth:`run` is called.

    Service nodes answer requests from a queue; application nodes run the
    given workload and then report their statistics. ``policy`` names the
    contention policy, or is None for no contention manager. With
    ``pgas_size`` (a power of two) every service node owns a partition of
    that many bytes and the memory is accessed through the service nodes.
    """

    def __init__(
        self,
        num_nodes: int,
        *,
        assignment: Assignment = Assignment.MODULO,
        dsl_per_node: int = 2,
        policy: Optional[str] = "wholly",
        pgas_size: Optional[int] = None,
        num_buckets: int = DEFAULT_BUCKETS,
        ref_speed_ghz: float = 1.0,
        timeout: float = 30.0,
        seed_base: Optional[float] = None,
        stats_details: bool = False,
    ) -> None:
        if num_nodes <= 0:
            raise ValueError("num_nodes must be positive")
        if timeout <= 0:
            raise ValueError("timeout must be positive")
        pgas_bits: Optional[int] = None
        if pgas_size is not None:
            if pgas_size <= 0 or pgas_size & (pgas_size - 1):
                raise ValueError("pgas_size must be a power of two")
            pgas_bits = pgas_size.bit_length() - 1
        self.topology = Topology(num_nodes, assignment, dsl_per_node)
        dsl_ids = self.topology.dsl_nodes()
        app_ids = self.topology.app_nodes()
        if not dsl_ids or not app_ids:
            raise ValueError("a system needs at least one service node and one application node")
        self.timeout = timeout
        self._started = False
        self._inboxes: dict[int, queue.Queue] = {d: queue.Queue() for d in dsl_ids}
        self._replies: dict[int, queue.Queue] = {a: queue.Queue() for a in app_ids}
        self._barrier = threading.Barrier(len(app_ids))
        now = time.time() if seed_base is None else seed_base

        self._apps: dict[int, AppNode] = {
            a: AppNode(
                self.topology,
                a,
                self._transport(a),
                pgas_mask_bits=pgas_bits,
                policy=policy,
                ref_speed_ghz=ref_speed_ghz,
                seed=seed_for_node(a, now),
                barrier=self._barrier.wait,
            )
            for a in app_ids
        }
        self._services: dict[int, DslService] = {
            d: DslService(
                self.topology,
                d,
                cm=ContentionManager(num_nodes, self._flag_abort) if policy else None,
                store=PgasStore(pgas_size) if pgas_size is not None else None,
                policy=policy or "wholly",
                num_buckets=num_buckets,
                stats_details=stats_details,
            )
            for d in dsl_ids
        }

    def _flag_abort(self, node: int, conflict: Conflict) -> None:
        app = self._apps.get(node)
        if app is not None:
            app.abort_flag = Conflict(conflict)

    def _expects_reply(self, kind: RequestType) -> bool:
        if kind in _REPLYING:
            return True
        # Without partitioned memory a non-transactional store is unknown to the service.
        return kind is RequestType.STORE_NONTX and not self._apps_pgas

    @property
    def _apps_pgas(self) -> bool:
        return next(iter(self._apps.values())).pgas

    def _transport(self, node_id: int) -> Callable[[int, Any], Optional[Reply]]:
        def send(target: int, message: Any) -> Optional[Reply]:
            try:
                inbox = self._inboxes[target]
            except KeyError:
                raise ValueError(f"node {target} is not a service node") from None
            inbox.put(message)
            if isinstance(message, StatsMessage) or not self._expects_reply(message.type):
                return None
            try:
                return self._replies[node_id].get(timeout=self.timeout)
            except queue.Empty:
                raise TimeoutError(f"service node {target} did not answer node {node_id}") from None

        return send

    def _deliver(self, target: int, reply: Reply) -> None:
        self._replies[target].put(reply)

    def app_node(self, node_id: int) -> AppNode:
        """The application node with id ``node_id``."""
        try:
            return self._apps[node_id]
        except KeyError:
            raise ValueError(f"node {node_id} is not an application node") from None

    def run(self, app_main: Callable[[AppNode], Any]) -> dict[int, Any]:
        """Run ``app_main`` on every application node while the services answer.

        Returns, by node id, what ``app_main`` returned for application nodes
        and the final report for service nodes. The first error raised in any
        node is raised again once every thread has stopped.
        """
        if self._started:
            raise RuntimeError("a runtime can only run once")
        self._started = True
        results: dict[int, Any] = {}
        errors: list[BaseException] = []

        def run_app(node: AppNode) -> None:
            try:
                start = time.perf_counter()
                value = app_main(node)
                duration = time.perf_counter() - start
                node.send_stats(node.tx, duration)
                results[node.node_id] = value
            except BaseException as exc:  # noqa: BLE001 - reported after join
                errors.append(exc)
                self._barrier.abort()

        def run_service(node_id: int, service: DslService) -> None:
            try:
                results[node_id] = service.serve(_drain(self._inboxes[node_id]), self._deliver)
            except BaseException as exc:  # noqa: BLE001 - reported after join
                errors.append(exc)

        service_threads = [
            threading.Thread(target=run_service, args=(d, s), daemon=True)
            for d, s in self._services.items()
        ]
        app_threads = [
            threading.Thread(target=run_app, args=(node,), daemon=True)
            for node in self._apps.values()
        ]
        for thread in service_threads + app_threads:
            thread.start()
        for thread in app_threads:
            thread.join()
        if errors:
            for inbox in self._inboxes.values():
                inbox.put(_STOP)
        for thread in service_threads:
            thread.join()
        if errors:
            raise errors[0]
        return dict(sorted(results.items()))


def _check(conflict: Conflict) -> None:
    if conflict is not Conflict.NO_CONFLICT:
        raise TxAborted(conflict)


def _demo_workload(node: AppNode, transactions: int = DEMO_TRANSACTIONS, span: int = DEMO_SPAN) -> int:
    """Run transactions that read one address and write another; return the commits."""
    tx = node.tx
    for _ in range(transactions):
        tx.retries = 0
        while True:
            read_addr, write_addr = (8 * (1 + k) for k in node.rng.sample(range(span), 2))
            try:
                _check(node.load(read_addr))
                _check(node.store(write_addr))
                if node.abort_flag is not Conflict.NO_CONFLICT:
                    raise TxAborted(node.abort_flag)
            except TxAborted as exc:
                tx.tx_aborted += 1
                counter = _REASON_COUNTERS.get(exc.reason)
                if counter is not None:
                    setattr(tx, counter, getattr(tx, counter) + 1)
                tx.retries += 1
                node.handle_abort(tx, exc.reason)
                continue
            node.release_all(Conflict.NO_CONFLICT)
            tx.tx_committed += 1
            tx.max_retries = max(tx.max_retries, tx.retries)
            break
    return tx.tx_committed


def main(argv: Optional[list[str]] = None) -> int:
    """Run a short demonstration workload on ``-total=N`` nodes and print the reports."""
    argv = list(sys.argv if argv is None else argv)
    prog = argv[0] if argv else "msgstm"
    try:
        total, _ = parse_total(argv)
        runtime = Runtime(total)
    except ValueError as exc:
        print(exc, file=sys.stderr)
        print("Call this program as:", file=sys.stderr)
        print(f"\t{prog} {TOTAL_FLAG}TOTAL_NODES ...", file=sys.stderr)
        return 1
    outputs = runtime.run(_demo_workload)
    for node_id in runtime.topology.dsl_nodes():
        report = outputs.get(node_id)
        if report:
            print(report, end="")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())