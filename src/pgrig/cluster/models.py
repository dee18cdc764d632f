# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cluster/models.py

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Optional, Tuple

from .errors import PhaseTransitionError, TopologyInvariantFault


class Role(str, Enum):
    LEADER = "leader"
    REPLICA = "replica"


class LifecyclePhase(str, Enum):
    UNINSTALLED = "uninstalled"
    INSTALLED = "installed"
    INITIALIZED = "initialized"
    BOOTSTRAPPED = "bootstrapped"
    RUNNING = "running"
    STOPPED = "stopped"
    TORN_DOWN = "torn_down"


_ORDER = {phase: i for i, phase in enumerate(LifecyclePhase)}


@dataclass(frozen=True)
class Node:
    """
    One database host in the run.
    """
    name: str                 # logical node name, e.g. "n1"
    address: str              # IP or DNS used for SSH and replication
    role: Role = Role.REPLICA

    @property
    def is_leader(self) -> bool:
        return self.role is Role.LEADER


@dataclass(frozen=True)
class ClusterTopology:
    """
    Immutable set of nodes for a single run. Exactly one leader.
    """
    nodes: Tuple[Node, ...]

    def __post_init__(self):
        leaders = [n.name for n in self.nodes if n.is_leader]
        if len(leaders) != 1:
            raise TopologyInvariantFault(
                f"topology must have exactly one leader, got {len(leaders)}: {leaders}"
            )
        names = [n.name for n in self.nodes]
        if len(set(names)) != len(names):
            raise TopologyInvariantFault(f"duplicate node names in topology: {names}")

    @property
    def leader(self) -> Node:
        return next(n for n in self.nodes if n.is_leader)

    @property
    def replicas(self) -> Tuple[Node, ...]:
        return tuple(n for n in self.nodes if not n.is_leader)

    @property
    def names(self) -> Tuple[str, ...]:
        return tuple(n.name for n in self.nodes)

    def node(self, name: str) -> Node:
        for n in self.nodes:
            if n.name == name:
                return n
        raise KeyError(name)

    def is_leader(self, name: str) -> bool:
        return self.node(name).is_leader

    def __len__(self) -> int:
        return len(self.nodes)


def resolve_topology(
    hosts: Iterable[Tuple[str, str]] | Dict[str, str],
    leader: Optional[str] = None,
) -> ClusterTopology:
    """
    Build the run topology from (name, address) pairs.

    The leader is ``leader`` when given, otherwise the first host; every
    other host is a replica.
    """
    pairs = list(hosts.items()) if isinstance(hosts, dict) else list(hosts)
    if not pairs:
        raise TopologyInvariantFault("topology must contain at least one node")

    leader_name = leader or pairs[0][0]
    if leader_name not in {name for name, _ in pairs}:
        raise TopologyInvariantFault(f"leader {leader_name!r} is not one of the nodes")

    return ClusterTopology(
        tuple(
            Node(name=name, address=address, role=Role.LEADER if name == leader_name else Role.REPLICA)
            for name, address in pairs
        )
    )


@dataclass
class NodeState:
    """
    Mutable per-node progress. Only the orchestrator touches this.
    """
    node: Node
    phase: LifecyclePhase = LifecyclePhase.UNINSTALLED
    error: Optional[BaseException] = None
    teardown_error: Optional[str] = None
    history: list = field(default_factory=list)

    def advance(self, target: LifecyclePhase) -> None:
        current = self.phase
        if not _allowed(self.node.role, current, target):
            raise PhaseTransitionError(
                f"[{self.node.name}] cannot move {current.value} -> {target.value}"
            )
        self.history.append((current, target))
        self.phase = target


def _allowed(role: Role, current: LifecyclePhase, target: LifecyclePhase) -> bool:
    if current is target:
        return False
    # restart cycle
    if (current, target) in {
        (LifecyclePhase.RUNNING, LifecyclePhase.STOPPED),
        (LifecyclePhase.STOPPED, LifecyclePhase.RUNNING),
    }:
        return True
    if target is LifecyclePhase.INITIALIZED and role is not Role.LEADER:
        return False
    if target is LifecyclePhase.BOOTSTRAPPED and role is not Role.REPLICA:
        return False
    # teardown may happen from anywhere, stop from any started phase
    if target in (LifecyclePhase.TORN_DOWN, LifecyclePhase.STOPPED):
        return _ORDER[target] > _ORDER[current]
    if target is LifecyclePhase.RUNNING:
        ready_from = LifecyclePhase.INITIALIZED if role is Role.LEADER else LifecyclePhase.BOOTSTRAPPED
        return current is ready_from
    if target is LifecyclePhase.INSTALLED:
        return current is LifecyclePhase.UNINSTALLED
    if target in (LifecyclePhase.INITIALIZED, LifecyclePhase.BOOTSTRAPPED):
        return current is LifecyclePhase.INSTALLED
    return False
