# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cluster/orchestrator.py

from __future__ import annotations

import logging
import random
import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .barrier import SyncBarrier
from .errors import OrchestratorError, PhaseTransitionError
from .gate import Client, RoleGatedClient
from .models import ClusterTopology, LifecyclePhase, Node, NodeState
from pgrig.config.models import RunConfig
from pgrig.db.bootstrap import ReplicaBootstrapper
from pgrig.db.faketime import FaketimeBinding, FaultInjector, rand_factor
from pgrig.db.postgres import PgLayout, PostgresDaemon
from pgrig.db.readiness import RetryController, RetrySpec
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.events import (
    new_ctx,
    node_ctx,
    PhaseChanged,
    NodeFailed,
    TeardownWarning,
    RunSummary,
)
from pgrig.utils.interface import RemoteExecutor

log = logging.getLogger("pgrig")

ExecutorFactory = Callable[[Node], RemoteExecutor]

POST_INIT = "post-init"
POST_START = "post-start"
CLIENT_SETUP = "client-setup"


@dataclass
class NodeReport:
    node: str
    role: str
    phase: str
    error: Optional[str] = None
    teardown_error: Optional[str] = None


@dataclass
class RunReport:
    nodes: Dict[str, NodeReport] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return all(r.error is None for r in self.nodes.values())

    def failed(self) -> List[NodeReport]:
        return [r for r in self.nodes.values() if r.error is not None]

    def summary(self) -> str:
        parts = []
        for r in self.nodes.values():
            line = f"{r.node}({r.role})={r.phase}"
            if r.error:
                line += f" error={r.error}"
            if r.teardown_error:
                line += f" teardown_error={r.teardown_error}"
            parts.append(line)
        return "; ".join(parts)


class ClusterOrchestrator:
    """
    Drives one test run across every node of the topology.

    Each node gets its own control thread. Threads fan in at two barriers:
      - post-init:  every node installed, leader initialized and serving
      - post-start: every replica bootstrapped and serving
    A node that faults stops where it is and its error is reported; there
    is no cluster-wide rollback.
    """

    def __init__(
        self,
        topology: ClusterTopology,
        config: RunConfig,
        executor_factory: ExecutorFactory,
        *,
        bus: Optional[EventBus] = None,
        run_id: Optional[str] = None,
        barrier: Optional[SyncBarrier] = None,
        controller: Optional[RetryController] = None,
        injector: Optional[FaultInjector] = None,
        rng: Optional[random.Random] = None,
    ):
        self.topology = topology
        self.config = config
        self.executor_factory = executor_factory
        self.bus = bus or EventBus()
        self.run_ctx = new_ctx(env=config.workload, context=None, run_id=run_id)
        self.run_id = self.run_ctx["run_id"]
        self.layout = PgLayout(config.home)

        self.barrier = barrier or SyncBarrier(self.bus, self.run_ctx)
        self.controller = controller or RetryController(self.bus, self.run_ctx)
        self.injector = injector or FaultInjector(user=config.os_user)
        self.bootstrapper = ReplicaBootstrapper(
            threading.Lock(),  # leader base copy, one at a time per run
            lock_timeout=config.timeouts.bootstrap_lock,
            bus=self.bus,
            run_ctx=self.run_ctx,
        )
        self.retry_spec = RetrySpec(
            max_duration=config.timeouts.ready,
            poll_interval=config.timeouts.poll_interval,
            max_restarts=config.timeouts.max_restarts,
            unknown_warn_after=config.timeouts.unknown_warn_after,
        )
        self._rng = rng or random.Random()
        self._rng_lock = threading.Lock()

        self._states: Dict[str, NodeState] = {n.name: NodeState(n) for n in topology.nodes}
        self._runners: Dict[str, RemoteExecutor] = {}
        self._runners_lock = threading.Lock()

    # ------------------ helpers ------------------

    def _runner(self, node: Node) -> RemoteExecutor:
        with self._runners_lock:
            runner = self._runners.get(node.name)
            if runner is None:
                runner = self.executor_factory(node)
                self._runners[node.name] = runner
            return runner

    def _daemon(self, node: Node) -> PostgresDaemon:
        return PostgresDaemon(
            self._runner(node), self.layout, os_user=self.config.os_user, port=self.config.port
        )

    def _move(self, node: Node, phase: LifecyclePhase) -> None:
        state = self._states[node.name]
        previous = state.phase
        state.advance(phase)
        self.bus.emit(
            PhaseChanged(node=node.name, previous=previous.value, phase=phase.value, **node_ctx(self.run_ctx, node.name))
        )

    def _barrier_name(self, name: str) -> str:
        return f"{self.run_id}:{name}"

    def _arrive(self, name: str, node: Node) -> None:
        self.barrier.arrive(self._barrier_name(name), node.name, len(self.topology), self.config.timeouts.barrier)

    def _faketime_bindings(self) -> List[FaketimeBinding]:
        if self.config.faketime is None:
            return [FaketimeBinding(path=self.layout.postgres, enabled=False)]
        with self._rng_lock:
            rate = rand_factor(self.config.faketime, self._rng)
        return [FaketimeBinding(path=self.layout.postgres, rate=rate)]

    def _start_and_wait(self, node: Node, daemon: PostgresDaemon) -> None:
        # wrappers only change while the daemon is down
        self.injector.reconcile(daemon.runner, self._faketime_bindings())
        daemon.start()
        self.controller.await_ready(daemon.runner, daemon.probe_command(), self.retry_spec, restart=daemon.restart)
        self._move(node, LifecyclePhase.RUNNING)

    def state(self, name: str) -> NodeState:
        return self._states[name]

    def report(self) -> RunReport:
        rep = RunReport()
        for name, st in self._states.items():
            rep.nodes[name] = NodeReport(
                node=name,
                role=st.node.role.value,
                phase=st.phase.value,
                error=str(st.error) if st.error else None,
                teardown_error=st.teardown_error,
            )
        return rep

    def _fan_out(self, fn: Callable[[Node], None]) -> None:
        with ThreadPoolExecutor(max_workers=len(self.topology), thread_name_prefix="pgrig") as pool:
            futures = {pool.submit(fn, node): node for node in self.topology.nodes}
            for fut in as_completed(futures):
                node = futures[fut]
                try:
                    fut.result()
                except Exception as e:
                    st = self._states[node.name]
                    st.error = e
                    if isinstance(e, OrchestratorError):
                        log.error("[%s] stopped at %s: %s", node.name, st.phase.value, e)
                    else:
                        log.exception("[%s] unexpected failure at %s", node.name, st.phase.value)
                    self.bus.emit(
                        NodeFailed(node=node.name, phase=st.phase.value, error=str(e), **node_ctx(self.run_ctx, node.name))
                    )

    # ------------------ setup ------------------

    def setup(self) -> RunReport:
        leader = self.topology.leader
        log.info(
            "setting up postgres: leader=%s replicas=%s",
            leader.name, ", ".join(n.name for n in self.topology.replicas) or "none",
        )
        self._fan_out(self._setup_node)

        rep = self.report()
        self.bus.emit(RunSummary(stage="setup", ok=len(rep.nodes) - len(rep.failed()), failed=len(rep.failed()), **self.run_ctx))
        log.info("setup finished: %s", rep.summary())
        return rep

    def _setup_node(self, node: Node) -> None:
        threading.current_thread().name = node.name
        daemon = self._daemon(node)
        leader = self.topology.leader

        daemon.install(self.config.tarball_url, force=self.config.force_reinstall)
        self._move(node, LifecyclePhase.INSTALLED)

        if node.is_leader:
            log.info("[%s] initing leader postgres", node.name)
            daemon.initdb()
            daemon.write_leader_config(self.config.workload)
            self._move(node, LifecyclePhase.INITIALIZED)
            self._start_and_wait(node, daemon)

        log.info("[%s] finish installing%s", node.name, " and init for leader" if node.is_leader else "")
        self._arrive(POST_INIT, node)

        if not node.is_leader:
            self.bootstrapper.bootstrap(daemon, node, leader)
            self._move(node, LifecyclePhase.BOOTSTRAPPED)
            self._start_and_wait(node, daemon)

        log.info("[%s] finish starting up", node.name)
        self._arrive(POST_START, node)

    # ------------------ restart ------------------

    def restart(self, name: str) -> None:
        """Stop and start one running node, re-applying its faketime binding."""
        node = self.topology.node(name)
        phase = self._states[name].phase
        if phase is not LifecyclePhase.RUNNING:
            raise PhaseTransitionError(f"[{name}] cannot restart from {phase.value}")
        daemon = self._daemon(node)
        daemon.stop()
        self._move(node, LifecyclePhase.STOPPED)
        self._start_and_wait(node, daemon)

    # ------------------ teardown ------------------

    def teardown(self) -> RunReport:
        """Best-effort stop and wipe on every node. Never raises node faults."""
        self._fan_out(self._teardown_node)
        rep = self.report()
        failed = sum(1 for r in rep.nodes.values() if r.teardown_error)
        self.bus.emit(RunSummary(stage="teardown", ok=len(rep.nodes) - failed, failed=failed, **self.run_ctx))
        self.close()
        return rep

    def _teardown_node(self, node: Node) -> None:
        threading.current_thread().name = node.name
        st = self._states[node.name]
        try:
            daemon = self._daemon(node)
            daemon.stop()
            if st.phase is LifecyclePhase.RUNNING:
                self._move(node, LifecyclePhase.STOPPED)
            daemon.clear_data()
        except Exception as e:
            st.teardown_error = str(e) or type(e).__name__
            log.warning("[%s] teardown: %s", node.name, e)
            self.bus.emit(TeardownWarning(node=node.name, error=st.teardown_error, **node_ctx(self.run_ctx, node.name)))
        finally:
            if st.phase is not LifecyclePhase.TORN_DOWN:
                self._move(node, LifecyclePhase.TORN_DOWN)
        log.info("[%s] finish tearing down", node.name)

    # ------------------ workload clients ------------------

    def client(self, inner: Client, node: Optional[str] = None) -> RoleGatedClient:
        """
        Gate a workload client by role. Its ``setup`` runs on the leader only
        and every node waits for it at the run's client-setup barrier.
        """
        gated = RoleGatedClient(
            inner,
            self.topology,
            barrier=self.barrier,
            barrier_name=self._barrier_name(CLIENT_SETUP),
            timeout=self.config.timeouts.barrier,
        )
        return gated.open(node) if node is not None else gated

    # ------------------ artifacts ------------------

    def log_files(self) -> Dict[str, List[str]]:
        """Per node, absolute paths worth collecting after a run."""
        return {n.name: [self.layout.log_file] for n in self.topology.nodes}

    def close(self) -> None:
        with self._runners_lock:
            for runner in self._runners.values():
                runner.close()
            self._runners.clear()
