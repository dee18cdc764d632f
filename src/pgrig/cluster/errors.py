# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cluster/errors.py

from __future__ import annotations

from enum import Enum
from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:
    from pgrig.utils.interface import ExecResult


class OrchestratorError(RuntimeError):
    """Base class for every failure raised by pgrig."""


class FaultKind(str, Enum):
    NON_ZERO_EXIT = "nonzero-exit"
    CONNECTION_LOST = "connection-lost"


class ExecutionFault(OrchestratorError):
    """
    A remote command could not be run, or ran and exited non-zero.

    ``result`` carries the captured output for NON_ZERO_EXIT so callers
    can still inspect stderr (the readiness probe classifies from it).
    """

    def __init__(
        self,
        kind: FaultKind,
        detail: str,
        *,
        node: Optional[str] = None,
        result: Optional["ExecResult"] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.node = node
        self.result = result
        where = f"[{node}] " if node else ""
        super().__init__(f"{where}{kind.value}: {detail}")

    @property
    def connection_lost(self) -> bool:
        return self.kind is FaultKind.CONNECTION_LOST


class ProbeTimeoutFault(OrchestratorError):
    """The daemon never reported ready inside the retry budget."""

    def __init__(self, node: str, elapsed: float, last_outcome, restarts: int = 0):
        self.node = node
        self.elapsed = elapsed
        self.last_outcome = last_outcome
        self.restarts = restarts
        super().__init__(
            f"[{node}] not ready after {elapsed:.1f}s "
            f"(last={getattr(last_outcome, 'value', last_outcome)}, restarts={restarts})"
        )


class BootstrapFault(OrchestratorError):
    """Cloning a replica from the leader failed."""

    def __init__(self, replica: str, leader: str, detail: str):
        self.replica = replica
        self.leader = leader
        super().__init__(f"[{replica}] bootstrap from {leader} failed: {detail}")


class BarrierTimeoutFault(OrchestratorError):
    """A participant never arrived at a barrier before its deadline."""

    def __init__(self, name: str, expected: int, arrived: list[str]):
        self.name = name
        self.expected = expected
        self.arrived = list(arrived)
        super().__init__(
            f"barrier {name!r} timed out: {len(self.arrived)}/{expected} arrived "
            f"({', '.join(self.arrived) or 'none'})"
        )


class BarrierReusedError(OrchestratorError):
    """A barrier name was used again after it already released."""


class TopologyInvariantFault(OrchestratorError):
    """The resolved topology does not have exactly one leader."""


class PhaseTransitionError(OrchestratorError):
    """A node was asked to move to a lifecycle phase it cannot reach."""


class WriteToReplicaError(OrchestratorError):
    """A write was dispatched to a read-only replica."""
