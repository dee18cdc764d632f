# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/db/readiness.py

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Sequence

from pgrig.cluster.errors import ExecutionFault, ProbeTimeoutFault
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.events import (
    new_ctx,
    node_ctx,
    ProbeObserved,
    ProbeUnrecognized,
    DaemonRestarted,
)
from pgrig.utils.interface import ExecResult, RemoteExecutor

log = logging.getLogger("pgrig")


class ProbeOutcome(str, Enum):
    READY = "ready"
    STARTING = "starting"
    CRASHED = "crashed"
    UNKNOWN = "unknown"


class Decision(str, Enum):
    CONTINUE = "continue"
    SUCCESS = "success"
    FATAL = "fatal"


@dataclass(frozen=True)
class ProbeRule:
    needle: str
    outcome: ProbeOutcome


# pg_isready output
PG_ISREADY_RULES: tuple[ProbeRule, ...] = (
    ProbeRule("accepting connections", ProbeOutcome.READY),
    ProbeRule("rejecting connections", ProbeOutcome.STARTING),
    ProbeRule("no response", ProbeOutcome.CRASHED),
)


def classify(result: ExecResult, rules: Sequence[ProbeRule] = PG_ISREADY_RULES) -> ProbeOutcome:
    """
    Map a health-check result to an outcome.

    stderr is searched before stdout and the first matching rule wins.
    Without a match, exit 0 means ready and anything else is UNKNOWN.
    """
    for text in (result.stderr, result.stdout):
        for rule in rules:
            if rule.needle in text:
                return rule.outcome
    return ProbeOutcome.READY if result.exit_code == 0 else ProbeOutcome.UNKNOWN


def default_decide(outcome: ProbeOutcome) -> Decision:
    return Decision.SUCCESS if outcome is ProbeOutcome.READY else Decision.CONTINUE


@dataclass(frozen=True)
class RetrySpec:
    max_duration: float = 120.0
    poll_interval: float = 1.0
    max_restarts: int = 3
    unknown_warn_after: int = 5
    rules: Sequence[ProbeRule] = PG_ISREADY_RULES
    decide: Callable[[ProbeOutcome], Decision] = default_decide


class RetryController:
    """
    Polls a node's health command until it is ready.

    Policy: keep polling on STARTING/UNKNOWN, restart the daemon on CRASHED
    (bounded by ``max_restarts``), return on READY. Raises
    ``ProbeTimeoutFault`` once ``max_duration`` has elapsed; the final sleep
    is clipped to the deadline.
    """

    def __init__(
        self,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
        *,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(env="default", context=None)
        self.clock = clock
        self.sleep = sleep

    def probe(self, runner: RemoteExecutor, command: Sequence[str], timeout: Optional[float] = None) -> ExecResult:
        try:
            return runner.exec(*command, check=False, timeout=timeout)
        except ExecutionFault as e:
            # some executors raise on non-zero exit regardless of check
            if e.connection_lost or e.result is None:
                raise
            return e.result

    def await_ready(
        self,
        runner: RemoteExecutor,
        probe_command: Sequence[str],
        spec: RetrySpec = RetrySpec(),
        restart: Optional[Callable[[], None]] = None,
    ) -> ProbeOutcome:
        node = runner.node
        ctx = node_ctx(self.run_ctx, node)
        started = self.clock()
        deadline = started + spec.max_duration

        attempt = 0
        restarts = 0
        unknown_streak = 0

        while True:
            attempt += 1
            # a hung health command must not outlive the budget
            budget = max(deadline - self.clock(), spec.poll_interval)
            result = self.probe(runner, probe_command, timeout=budget)
            outcome = classify(result, spec.rules)
            self.bus.emit(ProbeObserved(node=node, attempt=attempt, outcome=outcome.value, **ctx))
            log.debug("[%s] probe #%d -> %s", node, attempt, outcome.value)

            decision = spec.decide(outcome)
            if decision is Decision.SUCCESS:
                log.info("[%s] ready after %d probe(s), %d restart(s)", node, attempt, restarts)
                return outcome
            if decision is Decision.FATAL:
                raise ProbeTimeoutFault(node, self.clock() - started, outcome, restarts)

            if outcome is ProbeOutcome.UNKNOWN:
                unknown_streak += 1
                if unknown_streak == spec.unknown_warn_after:
                    log.warning(
                        "[%s] %d consecutive unrecognized probe results; health command may be misconfigured "
                        "(exit=%d stderr=%r)",
                        node, unknown_streak, result.exit_code, result.stderr.strip(),
                    )
                    self.bus.emit(
                        ProbeUnrecognized(node=node, consecutive=unknown_streak, stderr=result.stderr.strip(), **ctx)
                    )
            else:
                unknown_streak = 0

            if outcome is ProbeOutcome.CRASHED and restart is not None:
                if restarts >= spec.max_restarts:
                    log.error("[%s] crashed again after %d restart(s), giving up", node, restarts)
                    raise ProbeTimeoutFault(node, self.clock() - started, outcome, restarts)
                restarts += 1
                log.warning("[%s] daemon crashed during startup, restarting (%d/%d)", node, restarts, spec.max_restarts)
                restart()
                self.bus.emit(DaemonRestarted(node=node, restarts=restarts, **ctx))

            # restart commands may have eaten the rest of the budget
            now = self.clock()
            if now >= deadline:
                raise ProbeTimeoutFault(node, now - started, outcome, restarts)
            self.sleep(min(spec.poll_interval, deadline - now))
