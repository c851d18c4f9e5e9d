import pytest

from msgstm.protocol import Conflict
from msgstm.system import (
    Runtime,
    cycles_for_micros,
    cycles_for_nanos,
    main,
    parse_total,
    seed_for_node,
)


def test_parse_total_removes_flag():
    assert parse_total(["prog", "-total=4", "x"]) == (4, ["prog", "x"])


def test_parse_total_last_flag_wins():
    total, rest = parse_total(["prog", "-total=2", "-total=6"])
    assert total == 6
    assert rest == ["prog"]


def test_parse_total_too_few_arguments():
    with pytest.raises(ValueError, match="Not enough parameters"):
        parse_total(["prog"])


def test_parse_total_missing_flag():
    with pytest.raises(ValueError, match="Did not pass all parameters"):
        parse_total(["prog", "other"])


def test_parse_total_invalid_number():
    with pytest.raises(ValueError):
        parse_total(["prog", "-total=many"])


def test_cycles_micros_match_nanos():
    for micros in (0, 1, 7, 250):
        assert cycles_for_micros(micros, 2.5) == cycles_for_nanos(micros * 1000, 2.5)


def test_cycles_truncate():
    assert cycles_for_nanos(3, 0.5) == 1


def test_seed_for_node_offsets_by_node():
    assert seed_for_node(1, 5.25) - seed_for_node(0, 5.25) == 13
    assert seed_for_node(0, 10.0) == 13


def test_app_node_lookup():
    runtime = Runtime(4)
    assert runtime.app_node(1).node_id == 1
    with pytest.raises(ValueError):
        runtime.app_node(0)


def test_runtime_needs_both_roles():
    with pytest.raises(ValueError):
        Runtime(1)


def test_pgas_size_must_be_power_of_two():
    with pytest.raises(ValueError):
        Runtime(4, pgas_size=1000)


def test_request_without_services_times_out():
    runtime = Runtime(4, timeout=0.05)
    with pytest.raises(TimeoutError):
        runtime.app_node(1).load(8)


def test_run_returns_app_results_and_reports():
    runtime = Runtime(4)
    outputs = runtime.run(lambda node: node.node_id * 10)
    assert outputs[1] == 10
    assert outputs[3] == 30
    assert outputs[0].startswith("SSHT stats: core 00")
    assert outputs[2].startswith("SSHT stats: core 02")
    assert "TXs Statistics" not in outputs[0]


def test_run_reports_commits_on_lowest_service():
    def workload(node):
        conflict = node.load(8 * node.node_id)
        node.release_all(Conflict.NO_CONFLICT)
        node.tx.tx_committed += 1
        return conflict

    outputs = Runtime(4, policy=None).run(workload)
    assert outputs[1] is Conflict.NO_CONFLICT
    assert outputs[3] is Conflict.NO_CONFLICT
    assert "TXs Statistics" in outputs[0]
    assert "T | Commits     \t: 2" in outputs[0]
    assert "TXs Statistics" not in outputs[2]


def test_run_only_once():
    runtime = Runtime(4)
    runtime.run(lambda node: None)
    with pytest.raises(RuntimeError):
        runtime.run(lambda node: None)


def test_run_reraises_workload_error():
    def failing(node):
        raise ZeroDivisionError("boom")

    with pytest.raises(ZeroDivisionError):
        Runtime(4).run(failing)


def test_pgas_store_persists_on_commit():
    def workload(node):
        address = 64 + 8 * node.node_id
        assert node.store(address, 42 + node.node_id) is Conflict.NO_CONFLICT
        node.release_all(Conflict.NO_CONFLICT)
        return node.notx_load(address)

    outputs = Runtime(4, pgas_size=1024).run(workload)
    assert outputs[1] == 43
    assert outputs[3] == 45


def test_pgas_store_discarded_on_abort():
    def workload(node):
        address = 64 + 8 * node.node_id
        node.store(address, 99)
        node.release_all(Conflict.WRITE_AFTER_WRITE)
        return node.notx_load(address)

    outputs = Runtime(4, pgas_size=1024).run(workload)
    assert outputs[1] == 0
    assert outputs[3] == 0


def test_main_runs_demo(capsys):
    assert main(["prog", "-total=4"]) == 0
    out = capsys.readouterr().out
    assert "TXs Statistics" in out
    assert "(Throughput, Commit Rate, Latency)" in out


def test_main_usage_error(capsys):
    assert main(["prog"]) == 1
    err = capsys.readouterr().err
    assert "Not enough parameters" in err
    assert "-total=TOTAL_NODES" in err