# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/observers/events.py

from __future__ import annotations
from dataclasses import dataclass, asdict
from typing import List, Dict, Any, Optional
from datetime import datetime, timezone
import uuid


# ---------------------------------------------------------------------
# Base context and helper
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BaseEvent:
    ts: str           # ISO timestamp
    run_id: str       # correlates all events in a single setup/teardown invocation
    env: str          # workload name (append, register, ...)
    context: Optional[str]  # node the event concerns, None for cluster-wide

    def dict(self) -> Dict[str, Any]:
        return asdict(self)


def new_ctx(env: str, context: Optional[str], run_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "ts": datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z"),
        "run_id": run_id or str(uuid.uuid4()),
        "env": env,
        "context": context,
    }


def node_ctx(run_ctx: Dict[str, Any], node: Optional[str]) -> Dict[str, Any]:
    """Copy of a run context re-stamped for one node."""
    return new_ctx(run_ctx["env"], node, run_ctx["run_id"])


# ---------------------------------------------------------------------
# Node lifecycle
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class PhaseChanged(BaseEvent):
    node: str
    previous: str
    phase: str

@dataclass(frozen=True)
class NodeFailed(BaseEvent):
    node: str
    phase: str
    error: str


# ---------------------------------------------------------------------
# Readiness probe
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class ProbeObserved(BaseEvent):
    node: str
    attempt: int
    outcome: str

@dataclass(frozen=True)
class ProbeUnrecognized(BaseEvent):
    node: str
    consecutive: int
    stderr: str

@dataclass(frozen=True)
class DaemonRestarted(BaseEvent):
    node: str
    restarts: int


# ---------------------------------------------------------------------
# Barrier
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BarrierArrived(BaseEvent):
    name: str
    node: str
    arrived: int
    expected: int

@dataclass(frozen=True)
class BarrierReleased(BaseEvent):
    name: str
    nodes: List[str]

@dataclass(frozen=True)
class BarrierTimedOut(BaseEvent):
    name: str
    arrived: List[str]
    expected: int


# ---------------------------------------------------------------------
# Replica bootstrap
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class BootstrapStarted(BaseEvent):
    replica: str
    leader: str

@dataclass(frozen=True)
class BootstrapSucceeded(BaseEvent):
    replica: str
    duration_ms: int

@dataclass(frozen=True)
class BootstrapFailed(BaseEvent):
    replica: str
    error: str


# ---------------------------------------------------------------------
# Teardown & Summary
# ---------------------------------------------------------------------
@dataclass(frozen=True)
class TeardownWarning(BaseEvent):
    node: str
    error: str

@dataclass(frozen=True)
class RunSummary(BaseEvent):
    stage: str        # "setup" | "teardown"
    ok: int
    failed: int
