import pytest

from msgstm.contention import ContentionManager
from msgstm.dsl import DslService, DslStats
from msgstm.pgas import PgasStore
from msgstm.protocol import Conflict, Reply, ReplyType, Request, RequestType, StatsMessage
from msgstm.topology import Topology

# Nodes 0 and 2 are service nodes, 1 and 3 application nodes.
TOPO = Topology(4)


def service(**kwargs):
    return DslService(TOPO, 0, **kwargs)


def test_rejects_application_node():
    with pytest.raises(ValueError):
        DslService(TOPO, 1)


def test_rejects_unknown_policy():
    with pytest.raises(ValueError):
        service(policy="nonsense")


def test_load_without_conflict():
    svc = service()
    reply = svc.handle(Request(RequestType.LOAD, sender=1, address=0x100))
    assert reply == Reply(ReplyType.LOAD_RESPONSE, 0x100, 0, Conflict.NO_CONFLICT)
    assert len(svc.locks.logs[1]) == 1


def test_read_after_write_conflict_drops_locks():
    svc = service()
    svc.handle(Request(RequestType.LOAD, sender=3, address=0x200))
    svc.handle(Request(RequestType.STORE, sender=1, address=0x100))
    reply = svc.handle(Request(RequestType.LOAD, sender=3, address=0x100))
    assert reply.type is ReplyType.LOAD_RESPONSE
    assert reply.response is Conflict.READ_AFTER_WRITE
    assert svc.locks.logs[3] == []
    assert len(svc.locks.logs[1]) == 1


def test_write_after_read_conflict():
    svc = service()
    svc.handle(Request(RequestType.LOAD, sender=1, address=0x100))
    reply = svc.handle(Request(RequestType.STORE, sender=3, address=0x100))
    assert reply.type is ReplyType.STORE_RESPONSE
    assert reply.response is Conflict.WRITE_AFTER_READ


def test_release_allows_other_writer():
    svc = service()
    svc.handle(Request(RequestType.LOAD, sender=1, address=0x100))
    assert svc.handle(Request(RequestType.LOAD_RLS, sender=1, address=0x100)) is None
    reply = svc.handle(Request(RequestType.STORE, sender=3, address=0x100))
    assert reply.response is Conflict.NO_CONFLICT


def test_store_finish_and_remove_node():
    svc = service()
    svc.handle(Request(RequestType.STORE, sender=1, address=0x100))
    svc.handle(Request(RequestType.STORE_FINISH, sender=1, address=0x100))
    assert svc.handle(Request(RequestType.STORE, sender=3, address=0x100)).response is Conflict.NO_CONFLICT
    svc.handle(Request(RequestType.RMV_NODE, sender=3))
    assert svc.locks.logs[3] == []
    assert svc.handle(Request(RequestType.LOAD, sender=1, address=0x100)).response is Conflict.NO_CONFLICT


def test_unknown_request():
    svc = service()
    reply = svc.handle(Request(RequestType.UNKNOWN, sender=1, address=0x40))
    assert reply == Reply(ReplyType.UNKNOWN_RESPONSE)


def test_store_inc_without_pgas_is_unknown():
    svc = service()
    reply = svc.handle(Request(RequestType.STORE_INC, sender=1, address=8, value=1))
    assert reply.type is ReplyType.UNKNOWN_RESPONSE


def test_nontx_roundtrip_with_store():
    svc = service(store=PgasStore(1024))
    assert svc.handle(Request(RequestType.STORE_NONTX, sender=1, address=16, value=-7)) is None
    reply = svc.handle(Request(RequestType.LOAD_NONTX, sender=3, address=16))
    assert reply.type is ReplyType.LOAD_NONTX_RESPONSE
    assert reply.value == -7


def test_load_reads_32_bits_when_one_word():
    store = PgasStore(64)
    store.write32(8, -1)
    svc = service(store=store)
    assert svc.handle(Request(RequestType.LOAD, sender=1, address=8, words=1)).value == -1


def test_store_persists_on_successful_release():
    store = PgasStore(256)
    svc = service(store=store)
    svc.handle(Request(RequestType.STORE, sender=1, address=24, value=99))
    assert store.read(24) == 0
    assert len(svc.write_sets[1]) == 1
    svc.handle(Request(RequestType.RMV_NODE, sender=1, response=Conflict.NO_CONFLICT))
    assert store.read(24) == 99
    assert len(svc.write_sets[1]) == 0


def test_store_discarded_on_aborted_release():
    store = PgasStore(256)
    svc = service(store=store)
    svc.handle(Request(RequestType.STORE, sender=1, address=24, value=99))
    svc.handle(Request(RequestType.RMV_NODE, sender=1, response=Conflict.WRITE_AFTER_WRITE))
    assert store.read(24) == 0
    assert len(svc.write_sets[1]) == 0


def test_store_inc_adds_to_stored_value():
    store = PgasStore(256)
    store.write(8, 5)
    svc = service(store=store)
    reply = svc.handle(Request(RequestType.STORE_INC, sender=1, address=8, value=3))
    assert reply.response is Conflict.NO_CONFLICT
    svc.handle(Request(RequestType.RMV_NODE, sender=1))
    assert store.read(8) == 8


def test_contention_manager_lets_older_reader_win():
    aborted = []
    cm = ContentionManager(4, on_abort=lambda node, c: aborted.append((node, c)))
    svc = service(cm=cm, policy="wholly")
    svc.handle(Request(RequestType.STORE, sender=1, address=0x100, tx_metadata=5))
    reply = svc.handle(Request(RequestType.LOAD, sender=3, address=0x100, tx_metadata=1))
    assert reply.response is Conflict.NO_CONFLICT
    assert aborted == [(1, Conflict.READ_AFTER_WRITE)]
    assert svc.locks.logs[1] == []
    assert cm.timestamp(3) == 1


def test_greedy_policy_resets_priority_on_conflict():
    cm = ContentionManager(4)
    svc = service(cm=cm, policy="greedy_global")
    svc.handle(Request(RequestType.STORE, sender=1, address=0x100, tx_metadata=1))
    reply = svc.handle(Request(RequestType.STORE, sender=3, address=0x100, tx_metadata=9))
    assert reply.response is Conflict.WRITE_AFTER_WRITE
    assert cm.timestamp(3) == 0
    assert cm.timestamp(1) == 1


def test_greedy_policy_keeps_first_timestamp():
    cm = ContentionManager(4)
    svc = service(cm=cm, policy="greedy", clock=lambda: 1000)
    svc.handle(Request(RequestType.LOAD, sender=1, address=0x100, tx_metadata=10))
    svc.handle(Request(RequestType.LOAD, sender=1, address=0x200, tx_metadata=50))
    assert cm.timestamp(1) == 1000 - 10


def test_stats_absorb():
    stats = DslStats()
    stats.absorb(StatsMessage(sender=1, aborts=2, commits=10, max_retries=3, tx_duration=1.0))
    stats.absorb(StatsMessage(sender=3, aborts=1, commits=4, max_retries=7, tx_duration=2.0))
    assert stats.absorb(StatsMessage(sender=1, aborts_raw=1, aborts_war=2, aborts_waw=3)) == 3
    assert stats.commits == 14
    assert stats.aborts == 3
    assert stats.total == stats.commits + stats.aborts
    assert stats.max_retries == 7
    assert stats.duration == 3.0
    assert (stats.aborts_raw, stats.aborts_war, stats.aborts_waw) == (1, 2, 3)


def test_report_empty_without_transactions():
    assert DslStats().format_report(4, 2, 2) == ""


def test_report_requires_app_nodes():
    stats = DslStats(commits=1, total=1, duration=1.0)
    with pytest.raises(ValueError):
        stats.format_report(4, 0, 2)


def test_report_content():
    stats = DslStats()
    stats.absorb(StatsMessage(sender=1, commits=10, tx_duration=1.0))
    stats.absorb(StatsMessage(sender=3, commits=10, tx_duration=1.0))
    text = stats.format_report(4, 2, 2)
    assert "TXs Statistics : 04 Nodes, 02 App Nodes" in text
    assert "T | Avg Duration\t: 1.000 s" in text
    assert "T | Commits     \t: 20" in text
    assert "(Throughput, Commit Rate, Latency)" in text
    assert stats.commits == 20


def test_serve_until_stats_complete():
    svc = service()
    sent = []
    inbox = [
        Request(RequestType.LOAD, sender=1, address=0x100),
        StatsMessage(sender=1, commits=5, tx_duration=1.0),
        StatsMessage(sender=1),
        StatsMessage(sender=3, commits=5, tx_duration=1.0),
        StatsMessage(sender=3),
        Request(RequestType.LOAD, sender=3, address=0x200),
    ]
    report = svc.serve(inbox, lambda target, reply: sent.append((target, reply)))
    assert svc.finished
    assert len(sent) == 1
    assert sent[0][0] == 1
    assert sent[0][1].type is ReplyType.LOAD_RESPONSE
    assert "SSHT stats: core 00" in report
    assert "TXs Statistics" in report
    assert svc.locks.logs[3] == []


def test_serve_returns_none_when_inbox_runs_out():
    svc = service()
    sent = []
    result = svc.serve(
        [Request(RequestType.STORE, sender=1, address=0x100)],
        lambda target, reply: sent.append(target),
    )
    assert result is None
    assert sent == [1]
    assert not svc.finished


def test_non_lowest_service_node_omits_global_stats():
    svc = DslService(TOPO, 2)
    inbox = [
        StatsMessage(sender=1, commits=5, tx_duration=1.0),
        StatsMessage(sender=1),
        StatsMessage(sender=3, commits=5, tx_duration=1.0),
        StatsMessage(sender=3),
    ]
    report = svc.serve(inbox, lambda target, reply: None)
    assert "SSHT stats: core 02" in report
    assert "TXs Statistics" not in report