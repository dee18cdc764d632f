# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cluster/barrier.py

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Optional

from .errors import BarrierReusedError, BarrierTimeoutFault
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.events import (
    new_ctx,
    node_ctx,
    BarrierArrived,
    BarrierReleased,
    BarrierTimedOut,
)

log = logging.getLogger("pgrig")


class BarrierState(str, Enum):
    WAITING = "waiting"
    RELEASED = "released"
    TIMED_OUT = "timed_out"


@dataclass
class BarrierToken:
    name: str
    expected: int
    deadline: float                  # monotonic
    arrivals: Dict[str, float] = field(default_factory=dict)  # node -> wall-clock arrival
    state: BarrierState = BarrierState.WAITING


class SyncBarrier:
    """
    Named, single-use rendezvous for node control threads.

    The first arrival fixes the expected count and the deadline. The
    barrier releases everyone together when the last participant arrives;
    if the deadline passes first, every waiter and every later arrival
    gets ``BarrierTimeoutFault``.
    """

    def __init__(self, bus: Optional[EventBus] = None, run_ctx: Optional[dict] = None):
        self.bus = bus or EventBus()
        self.run_ctx = run_ctx or new_ctx(env="default", context=None)
        self._cond = threading.Condition()
        self._tokens: Dict[str, BarrierToken] = {}

    def token(self, name: str) -> Optional[BarrierToken]:
        with self._cond:
            return self._tokens.get(name)

    def arrive(self, name: str, node: str, expected: int, timeout: float) -> BarrierToken:
        if expected < 1:
            raise ValueError("expected must be >= 1")

        with self._cond:
            token = self._tokens.get(name)
            if token is None:
                token = BarrierToken(name=name, expected=expected, deadline=time.monotonic() + timeout)
                self._tokens[name] = token
            elif token.expected != expected:
                raise ValueError(
                    f"barrier {name!r} expects {token.expected} participants, {node} declared {expected}"
                )

            if token.state is BarrierState.RELEASED:
                raise BarrierReusedError(f"barrier {name!r} already released; use a fresh name")
            if token.state is BarrierState.WAITING and time.monotonic() >= token.deadline:
                self._expire(token)
            if token.state is BarrierState.TIMED_OUT:
                raise BarrierTimeoutFault(name, token.expected, list(token.arrivals))
            if node in token.arrivals:
                raise ValueError(f"{node} already arrived at barrier {name!r}")

            token.arrivals[node] = time.time()
            self.bus.emit(
                BarrierArrived(
                    name=name, node=node, arrived=len(token.arrivals), expected=expected,
                    **node_ctx(self.run_ctx, node),
                )
            )
            log.info("[%s] arrived at %s (%d/%d)", node, name, len(token.arrivals), expected)

            if len(token.arrivals) == token.expected:
                token.state = BarrierState.RELEASED
                self._cond.notify_all()
                self.bus.emit(BarrierReleased(name=name, nodes=list(token.arrivals), **self.run_ctx))
                return token

            while token.state is BarrierState.WAITING:
                remaining = token.deadline - time.monotonic()
                if remaining <= 0:
                    self._expire(token)
                    break
                self._cond.wait(remaining)

            if token.state is BarrierState.RELEASED:
                return token
            raise BarrierTimeoutFault(name, token.expected, list(token.arrivals))

    def _expire(self, token: BarrierToken) -> None:
        # caller holds the condition
        token.state = BarrierState.TIMED_OUT
        self._cond.notify_all()
        log.error(
            "barrier %s timed out with %d/%d arrivals (%s)",
            token.name, len(token.arrivals), token.expected, ", ".join(token.arrivals) or "none",
        )
        self.bus.emit(
            BarrierTimedOut(name=token.name, arrived=list(token.arrivals), expected=token.expected, **self.run_ctx)
        )
