# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cluster/gate.py

from __future__ import annotations

from enum import Enum
from typing import Any, Mapping, Optional, Protocol

from .barrier import SyncBarrier
from .errors import WriteToReplicaError
from .models import ClusterTopology, Role


class Intent(str, Enum):
    READ = "read"
    WRITE = "write"


def allow(role: Role, intent: Intent) -> bool:
    """The leader takes everything; replicas only serve reads."""
    return role is Role.LEADER or intent is Intent.READ


def intent_of(op: Mapping[str, Any]) -> Intent:
    return Intent.READ if op.get("f") == "read" else Intent.WRITE


class Client(Protocol):
    def open(self, node: str) -> "Client": ...
    def setup(self) -> None: ...
    def invoke(self, op: Mapping[str, Any]) -> Any: ...
    def teardown(self) -> None: ...
    def close(self) -> None: ...


class RoleGatedClient:
    """
    Wraps a workload client so that writes only ever reach the leader.
    Schema setup also runs on the leader alone; replicas receive it through
    replication. With a ``barrier``, every node waits in ``setup`` until the
    leader has finished, so no replica reads before the schema exists.
    """

    def __init__(
        self,
        inner: Client,
        topology: ClusterTopology,
        node: Optional[str] = None,
        *,
        barrier: Optional[SyncBarrier] = None,
        barrier_name: str = "client-setup",
        timeout: float = 180.0,
    ):
        self.inner = inner
        self.topology = topology
        self.node = node
        self.barrier = barrier
        self.barrier_name = barrier_name
        self.timeout = timeout

    @property
    def role(self) -> Role:
        if self.node is None:
            raise RuntimeError("client is not open")
        return self.topology.node(self.node).role

    def open(self, node: str) -> "RoleGatedClient":
        return RoleGatedClient(
            self.inner.open(node),
            self.topology,
            node,
            barrier=self.barrier,
            barrier_name=self.barrier_name,
            timeout=self.timeout,
        )

    def setup(self) -> None:
        if self.role is Role.LEADER:
            self.inner.setup()
        if self.barrier is not None:
            self.barrier.arrive(self.barrier_name, self.node, len(self.topology), self.timeout)

    def invoke(self, op: Mapping[str, Any]) -> Any:
        intent = intent_of(op)
        if not allow(self.role, intent):
            raise WriteToReplicaError(f"not writing to replica {self.node} (op={op.get('f')})")
        return self.inner.invoke(op)

    def teardown(self) -> None:
        self.inner.teardown()

    def close(self) -> None:
        self.inner.close()
