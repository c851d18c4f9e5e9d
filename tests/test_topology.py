import pytest

from msgstm.topology import Assignment, Topology


def test_modulo_layout():
    topo = Topology(num_nodes=4, dsl_per_node=2)
    assert topo.dsl_nodes() == [0, 2]
    assert topo.app_nodes() == [1, 3]


@pytest.mark.parametrize("assignment", list(Assignment))
def test_roles_partition_nodes(assignment):
    topo = Topology(num_nodes=48, assignment=assignment, dsl_per_node=3)
    dsl = set(topo.dsl_nodes())
    app = set(topo.app_nodes())
    assert dsl | app == set(range(48))
    assert not dsl & app
    assert topo.num_dsl_nodes() + topo.num_app_nodes() == 48


def test_custom_table_marks_middle_block():
    topo = Topology(num_nodes=48, assignment=Assignment.CUSTOM)
    assert set(topo.dsl_nodes()) == set(range(16, 32))


def test_bitmap_set_bits_are_app_nodes():
    topo = Topology(num_nodes=16, assignment=Assignment.BITMAP, bitmap=(0xAAAA,))
    assert all(topo.is_app_core(n) == (n % 2 == 1) for n in range(16))


@pytest.mark.parametrize("assignment", list(Assignment))
def test_dsl_seq_round_trip(assignment):
    topo = Topology(num_nodes=40, assignment=assignment, dsl_per_node=4)
    nodes = topo.dsl_nodes()
    for node in nodes:
        assert nodes[topo.dsl_seq(node)] == node


def test_dsl_seq_rejects_app_node():
    topo = Topology(num_nodes=4, dsl_per_node=2)
    with pytest.raises(ValueError):
        topo.dsl_seq(1)


def test_is_dsl_core_is_negation():
    topo = Topology(num_nodes=12, dsl_per_node=3)
    assert all(topo.is_dsl_core(n) != topo.is_app_core(n) for n in range(12))


def test_out_of_range_node_rejected():
    topo = Topology(num_nodes=4)
    with pytest.raises(ValueError):
        topo.is_app_core(4)


def test_custom_table_too_short():
    with pytest.raises(ValueError):
        Topology(num_nodes=49, assignment=Assignment.CUSTOM)


def test_non_positive_dsl_per_node_rejected():
    with pytest.raises(ValueError):
        Topology(num_nodes=4, dsl_per_node=0)