# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/db/bootstrap.py

from __future__ import annotations

import logging
import threading
import time
from typing import Optional

from pgrig.cluster.errors import BootstrapFault, ExecutionFault
from pgrig.cluster.models import Node
from pgrig.db.postgres import PostgresDaemon
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.events import (
    new_ctx,
    node_ctx,
    BootstrapStarted,
    BootstrapSucceeded,
    BootstrapFailed,
)

log = logging.getLogger("pgrig")


class ReplicaBootstrapper:
    """
    Clones a replica from the leader with pg_basebackup:
      - wipe and recreate the replica's data directory
      - stream a full base copy from the leader (serialized by ``lock``)
      - append replica HBA and config overrides

    ``lock`` is shared by every replica in a run: the leader serves one
    base copy at a time. Nothing is resumable; a retry starts from an empty
    directory again.
    """

    def __init__(
        self,
        lock: Optional[threading.Lock] = None,
        *,
        lock_timeout: float = 600.0,
        bus: Optional[EventBus] = None,
        run_ctx: Optional[dict] = None,
    ):
        self.lock = lock or threading.Lock()
        self.lock_timeout = lock_timeout
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(env="default", context=None)

    def bootstrap(self, daemon: PostgresDaemon, replica: Node, leader: Node) -> None:
        ctx = node_ctx(self.run_ctx, replica.name)
        self.bus.emit(BootstrapStarted(replica=replica.name, leader=leader.name, **ctx))
        log.info("[%s] starting backup from %s", replica.name, leader.name)
        t0 = time.time()

        try:
            daemon.reset_data_dir()
            self._copy(daemon, replica, leader)
            daemon.write_replica_config()
        except (ExecutionFault, BootstrapFault) as e:
            self.bus.emit(BootstrapFailed(replica=replica.name, error=str(e), **ctx))
            if isinstance(e, BootstrapFault):
                raise
            raise BootstrapFault(replica.name, leader.name, str(e)) from e

        duration_ms = int((time.time() - t0) * 1000)
        self.bus.emit(BootstrapSucceeded(replica=replica.name, duration_ms=duration_ms, **ctx))
        log.info("[%s] backup from %s finished in %dms", replica.name, leader.name, duration_ms)

    def _copy(self, daemon: PostgresDaemon, replica: Node, leader: Node) -> None:
        if not self.lock.acquire(timeout=self.lock_timeout):
            raise BootstrapFault(
                replica.name, leader.name, f"leader base copy busy for more than {self.lock_timeout}s"
            )
        try:
            daemon.base_backup_from(leader.address)
        except ExecutionFault:
            self._discard(daemon)
            raise
        finally:
            self.lock.release()

    def _discard(self, daemon: PostgresDaemon) -> None:
        """Leave no partial copy behind after a failed stream."""
        try:
            daemon.reset_data_dir()
        except ExecutionFault as e:
            log.warning("[%s] could not wipe partial copy: %s", daemon.node, e)
