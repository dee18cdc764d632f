import pytest

from pgrig.cluster.errors import PhaseTransitionError, TopologyInvariantFault
from pgrig.cluster.models import (
    ClusterTopology,
    LifecyclePhase as P,
    Node,
    NodeState,
    Role,
    resolve_topology,
)

HOSTS = [("n1", "10.0.0.1"), ("n2", "10.0.0.2"), ("n3", "10.0.0.3")]


def test_first_host_leads_by_default():
    topo = resolve_topology(HOSTS)
    assert topo.leader.name == "n1"
    assert [n.name for n in topo.replicas] == ["n2", "n3"]
    assert len(topo) == 3


def test_explicit_leader():
    topo = resolve_topology(dict(HOSTS), leader="n3")
    assert topo.leader == Node("n3", "10.0.0.3", Role.LEADER)
    assert topo.is_leader("n3") and not topo.is_leader("n1")
    assert sum(n.is_leader for n in topo.nodes) == 1


def test_single_node_is_its_own_leader():
    topo = resolve_topology([("solo", "127.0.0.1")])
    assert topo.leader.name == "solo"
    assert topo.replicas == ()


@pytest.mark.parametrize("hosts, leader", [([], None), (HOSTS, "n9")])
def test_unresolvable_topology(hosts, leader):
    with pytest.raises(TopologyInvariantFault):
        resolve_topology(hosts, leader=leader)


def test_topology_requires_exactly_one_leader():
    with pytest.raises(TopologyInvariantFault):
        ClusterTopology((Node("a", "x", Role.LEADER), Node("b", "y", Role.LEADER)))
    with pytest.raises(TopologyInvariantFault):
        ClusterTopology((Node("a", "x"), Node("b", "y")))


def test_topology_rejects_duplicate_names():
    with pytest.raises(TopologyInvariantFault):
        ClusterTopology((Node("a", "x", Role.LEADER), Node("a", "y")))


def test_unknown_node_lookup():
    with pytest.raises(KeyError):
        resolve_topology(HOSTS).node("n7")


# ----------------- lifecycle -----------------

def _walk(node, *phases):
    st = NodeState(node)
    for p in phases:
        st.advance(p)
    return st


def test_leader_lifecycle():
    st = _walk(Node("n1", "a", Role.LEADER), P.INSTALLED, P.INITIALIZED, P.RUNNING, P.STOPPED, P.RUNNING, P.STOPPED, P.TORN_DOWN)
    assert st.phase is P.TORN_DOWN
    assert st.history[0] == (P.UNINSTALLED, P.INSTALLED)


def test_replica_lifecycle():
    st = _walk(Node("n2", "b"), P.INSTALLED, P.BOOTSTRAPPED, P.RUNNING)
    assert st.phase is P.RUNNING


@pytest.mark.parametrize(
    "role, path",
    [
        (Role.REPLICA, [P.INSTALLED, P.INITIALIZED]),
        (Role.LEADER, [P.INSTALLED, P.BOOTSTRAPPED]),
        (Role.REPLICA, [P.INSTALLED, P.RUNNING]),
        (Role.LEADER, [P.INITIALIZED]),
        (Role.LEADER, [P.INSTALLED, P.INITIALIZED, P.RUNNING, P.INSTALLED]),
        (Role.LEADER, [P.INSTALLED, P.INSTALLED]),
        (Role.REPLICA, [P.TORN_DOWN, P.STOPPED]),
    ],
)
def test_illegal_transitions(role, path):
    st = NodeState(Node("n", "h", role))
    with pytest.raises(PhaseTransitionError):
        for p in path:
            st.advance(p)


def test_teardown_from_any_phase():
    for phases in ([], [P.INSTALLED], [P.INSTALLED, P.BOOTSTRAPPED]):
        st = _walk(Node("n2", "b"), *phases, P.TORN_DOWN)
        assert st.phase is P.TORN_DOWN
