import random
import threading

import pytest

from fakes import FakeRunner, Sequence
from pgrig.cluster.errors import ExecutionFault, FaultKind, PhaseTransitionError, WriteToReplicaError
from pgrig.cluster.models import LifecyclePhase, resolve_topology
from pgrig.cluster.orchestrator import ClusterOrchestrator
from pgrig.config.models import RunConfig
from pgrig.db.postgres import PgLayout
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.events import NodeFailed, PhaseChanged, RunSummary, TeardownWarning
from pgrig.utils.interface import ExecResult

LAYOUT = PgLayout("/home/pgrig")
ACCEPTING = ExecResult("/tmp:5432 - accepting connections", "", 0)
REJECTING = ExecResult("/tmp:5432 - rejecting connections", "", 1)


def _config(**kw):
    data = {
        "nodes": [{"name": f"n{i}", "address": f"10.0.0.{i}"} for i in (1, 2, 3)],
        "timeouts": {"barrier": 5, "ready": 5, "poll_interval": 0.01, "bootstrap_lock": 5},
    }
    data.update(kw)
    return RunConfig.model_validate(data)


def _cluster(cfg, handlers=None, capture=None):
    """Fake runners for every node, all with postgres already installed."""
    journal = []
    handlers = handlers or {}
    runners = {}
    for name in ("n1", "n2", "n3"):
        h = {"pg_isready": Sequence([ACCEPTING])}
        h.update(handlers.get(name, {}))
        runners[name] = FakeRunner(name, handlers=h, files={LAYOUT.install_dir}, journal=journal)

    topo = resolve_topology(cfg.host_pairs(), leader=cfg.leader)
    orch = ClusterOrchestrator(
        topo,
        cfg,
        lambda node: runners[node.name],
        bus=EventBus(observers=[capture] if capture else []),
        run_id="run-1",
        rng=random.Random(7),
    )
    return orch, runners, journal


def test_setup_brings_every_node_to_running(capture):
    leader_probe = Sequence([REJECTING, REJECTING, ACCEPTING])
    orch, runners, journal = _cluster(_config(), {"n1": {"pg_isready": leader_probe}}, capture)

    rep = orch.setup()

    assert rep.ok, rep.summary()
    assert {r.phase for r in rep.nodes.values()} == {"running"}
    assert leader_probe.calls == 3
    # no restarts were needed
    assert not [c for c in runners["n1"].calls if c.endswith(" stop")]

    assert runners["n1"].ran("initdb") and not runners["n1"].ran("pg_basebackup")
    for name in ("n2", "n3"):
        assert not runners[name].ran("initdb")
        (copy,) = runners[name].ran("pg_basebackup")
        assert "-h 10.0.0.1" in copy

    summary = capture.of(RunSummary)
    assert [(s.stage, s.ok, s.failed) for s in summary] == [("setup", 3, 0)]


def test_replicas_copy_only_after_leader_is_ready():
    orch, _, journal = _cluster(_config(), {"n1": {"pg_isready": Sequence([REJECTING, ACCEPTING])}})

    assert orch.setup().ok

    leader_ready = max(i for i, (node, line) in enumerate(journal) if node == "n1" and "pg_isready" in line)
    copies = [i for i, (_, line) in enumerate(journal) if "pg_basebackup" in line]
    assert len(copies) == 2
    assert min(copies) > leader_ready


def test_leader_phases_follow_leader_path(capture):
    orch, _, _ = _cluster(_config(), capture=capture)
    orch.setup()

    leader = [(e.previous, e.phase) for e in capture.of(PhaseChanged) if e.node == "n1"]
    replica = [(e.previous, e.phase) for e in capture.of(PhaseChanged) if e.node == "n2"]
    assert leader == [("uninstalled", "installed"), ("installed", "initialized"), ("initialized", "running")]
    assert replica == [("uninstalled", "installed"), ("installed", "bootstrapped"), ("bootstrapped", "running")]


def test_explicit_leader_is_initialized():
    orch, runners, _ = _cluster(_config(leader="n2"))
    assert orch.setup().ok
    assert runners["n2"].ran("initdb")
    assert "-h 10.0.0.2" in runners["n1"].ran("pg_basebackup")[0]


def test_append_workload_runs_serializable():
    orch, runners, _ = _cluster(_config(workload="append"))
    orch.setup()
    conf = [c for c in runners["n1"].calls if c.endswith(LAYOUT.config_file)]
    assert any("serializable" in c for c in conf)


def test_failed_replica_copy_is_reported_and_siblings_time_out(capture):
    cfg = _config(timeouts={"barrier": 0.5, "ready": 5, "poll_interval": 0.01})
    orch, runners, _ = _cluster(
        cfg, {"n3": {"pg_basebackup": ExecResult("", "connection refused", 1)}}, capture
    )

    rep = orch.setup()

    assert not rep.ok
    n3 = rep.nodes["n3"]
    assert n3.phase == "installed"
    assert "bootstrap from n1 failed" in n3.error
    # the others made it to running but never passed post-start
    for name in ("n1", "n2"):
        assert rep.nodes[name].phase == "running"
        assert "post-start" in rep.nodes[name].error
    assert {e.node for e in capture.of(NodeFailed)} == {"n1", "n2", "n3"}


def test_leader_init_failure_stops_replicas_at_first_barrier():
    cfg = _config(timeouts={"barrier": 0.5, "ready": 5, "poll_interval": 0.01})
    orch, runners, _ = _cluster(cfg, {"n1": {"initdb": ExecResult("", "initdb: error", 1)}})

    rep = orch.setup()

    assert rep.nodes["n1"].phase == "installed"
    assert "initdb" in rep.nodes["n1"].error
    for name in ("n2", "n3"):
        assert "post-init" in rep.nodes[name].error
        assert not runners[name].ran("pg_basebackup")


def test_faketime_wraps_postgres_on_every_node():
    orch, runners, _ = _cluster(_config(faketime=2.0))
    assert orch.setup().ok

    for name, runner in runners.items():
        assert runner.ran(f"mv {LAYOUT.postgres} {LAYOUT.postgres}.no-faketime"), name
        script = runner.written[LAYOUT.postgres]
        assert "faketime -m" in script
        rate = float(script.split(" x", 1)[1].split('"', 1)[0])
        assert 0.5 <= rate <= 2.0
        assert orch.injector.effective(name, LAYOUT.postgres).rate == rate


def test_no_faketime_leaves_binary_alone():
    orch, runners, _ = _cluster(_config())
    orch.setup()
    for runner in runners.values():
        assert not runner.ran("mv")
        assert runner.ran("no-faketime")


def test_restart_cycles_one_node():
    orch, runners, _ = _cluster(_config())
    orch.setup()

    orch.restart("n2")

    assert orch.state("n2").phase is LifecyclePhase.RUNNING
    assert (LifecyclePhase.RUNNING, LifecyclePhase.STOPPED) in orch.state("n2").history
    assert [c for c in runners["n2"].calls if c.endswith(" stop")]


def test_teardown_stops_and_wipes_every_node(capture):
    orch, runners, _ = _cluster(_config(), capture=capture)
    orch.setup()

    rep = orch.teardown()

    assert {r.phase for r in rep.nodes.values()} == {"torn_down"}
    for runner in runners.values():
        assert runner.ran(f"rm -rf {LAYOUT.data_dir}/*")
        assert runner.closed
    assert capture.of(RunSummary)[-1].stage == "teardown"


def test_teardown_never_raises(capture):
    lost = ExecutionFault(FaultKind.CONNECTION_LOST, "host unreachable", node="n2")
    orch, runners, _ = _cluster(_config(), {"n2": {"pgdata/*": lost}}, capture)

    rep = orch.teardown()

    assert rep.nodes["n2"].phase == "torn_down"
    assert "host unreachable" in rep.nodes["n2"].teardown_error
    assert rep.nodes["n1"].teardown_error is None
    assert [e.node for e in capture.of(TeardownWarning)] == ["n2"]


def test_log_files_point_at_the_daemon_log():
    orch, _, _ = _cluster(_config())
    assert orch.log_files() == {n: ["/home/pgrig/pgdata/pg.log"] for n in ("n1", "n2", "n3")}


def test_restart_refuses_a_node_that_is_not_running():
    orch, runners, _ = _cluster(_config())

    with pytest.raises(PhaseTransitionError):
        orch.restart("n2")

    assert runners["n2"].calls == []


def test_unexpected_error_is_recorded_for_its_node():
    cfg = _config(timeouts={"barrier": 0.5, "ready": 5, "poll_interval": 0.01})
    orch, _, _ = _cluster(cfg, {"n3": {"pg_basebackup": KeyError("bad template var")}})

    rep = orch.setup()

    assert "bad template var" in rep.nodes["n3"].error
    assert set(rep.nodes) == {"n1", "n2", "n3"}
    assert "post-start" in rep.nodes["n1"].error


def test_teardown_records_unexpected_errors(capture):
    orch, _, _ = _cluster(_config(), {"n3": {"pg_ctl": RuntimeError("channel closed")}}, capture)

    rep = orch.teardown()

    assert rep.nodes["n3"].phase == "torn_down"
    assert rep.nodes["n3"].teardown_error == "channel closed"
    assert rep.nodes["n1"].teardown_error is None
    assert [e.error for e in capture.of(TeardownWarning)] == ["channel closed"]


class _Table:
    def __init__(self, log, node=None):
        self.log = log
        self.node = node

    def open(self, node):
        return _Table(self.log, node)

    def setup(self):
        self.log.append(("setup", self.node))

    def invoke(self, op):
        self.log.append((op["f"], self.node))
        return op

    def teardown(self):
        pass

    def close(self):
        pass


def test_clients_are_gated_and_meet_after_leader_setup():
    orch, _, _ = _cluster(_config())
    log = []
    errors = []

    def run(name):
        try:
            orch.client(_Table(log), name).setup()
        except Exception as e:  # surfaced below
            errors.append(e)

    threads = [threading.Thread(target=run, args=(n,)) for n in ("n1", "n2", "n3")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert [e for e in log if e[0] == "setup"] == [("setup", "n1")]
    assert orch.barrier.token("run-1:client-setup").state.value == "released"

    with pytest.raises(WriteToReplicaError):
        orch.client(_Table(log), "n2").invoke({"f": "write", "value": 1})
    assert orch.client(_Table(log), "n1").invoke({"f": "write", "value": 1})
