# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/db/faketime.py

from __future__ import annotations

import logging
import random
import shlex
from dataclasses import dataclass
from typing import Dict, Iterable, Optional, Tuple

from pgrig.db.postgres import render
from pgrig.utils.interface import RemoteExecutor

log = logging.getLogger("pgrig")

REAL_SUFFIX = ".no-faketime"


@dataclass(frozen=True)
class FaketimeBinding:
    """
    Desired clock behaviour for one executable on one node.
    A disabled binding means "make sure it is not wrapped".
    """
    path: str
    rate: float = 1.0
    base_offset: int = 0      # seconds added to the starting clock
    enabled: bool = True

    def __post_init__(self):
        if self.rate <= 0:
            raise ValueError(f"faketime rate must be > 0, got {self.rate}")


def wrapper_script(real_path: str, base_offset: int, rate: float) -> str:
    return render(
        "faketime.sh.j2",
        sign="+" if base_offset >= 0 else "-",
        offset=abs(int(base_offset)),
        rate=rate,
        real_path=shlex.quote(real_path),
    )


def wrap(runner: RemoteExecutor, path: str, base_offset: int, rate: float, *, user: Optional[str] = None) -> None:
    """
    Replace ``path`` with a faketime wrapper. The real binary is kept next to
    it; wrapping an already wrapped binary only rewrites the script.
    """
    real = path + REAL_SUFFIX
    if not runner.exists(real):
        runner.exec("mv", path, real, user=user)
    runner.put_text(wrapper_script(real, base_offset, rate), path, sudo=True)
    runner.exec("chmod", "a+x", path, sudo=True)


def unwrap(runner: RemoteExecutor, path: str, *, user: Optional[str] = None) -> bool:
    """Restore the real binary. Returns False when ``path`` was not wrapped."""
    real = path + REAL_SUFFIX
    if not runner.exists(real):
        return False
    runner.exec("mv", "-f", real, path, user=user)
    return True


def rand_factor(ratio: float, rng: random.Random | None = None) -> float:
    """Uniform clock rate between 1/ratio and ratio."""
    if ratio <= 0:
        raise ValueError("ratio must be > 0")
    rng = rng or random
    lo, hi = sorted((1.0 / ratio, float(ratio)))
    return lo + rng.random() * (hi - lo)


class FaultInjector:
    """
    Declarative faketime table. ``reconcile`` applies a node's bindings
    and remembers them; it must run before the daemon (re)starts.
    """

    def __init__(self, user: Optional[str] = None):
        self.user = user
        self._applied: Dict[Tuple[str, str], FaketimeBinding] = {}

    def reconcile(self, runner: RemoteExecutor, bindings: Iterable[FaketimeBinding]) -> None:
        for b in bindings:
            if b.enabled:
                log.info("[%s] Configuring %s to run at %.3fx realtime", runner.node, b.path, b.rate)
                wrap(runner, b.path, b.base_offset, b.rate, user=self.user)
            elif unwrap(runner, b.path, user=self.user):
                log.info("[%s] Removed faketime wrapper from %s", runner.node, b.path)
            self._applied[(runner.node, b.path)] = b

    def effective(self, node: str, path: str) -> Optional[FaketimeBinding]:
        b = self._applied.get((node, path))
        return b if b is not None and b.enabled else None
