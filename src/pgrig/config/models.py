# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/config/models.py

from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, field_validator, model_validator


class NodeSpec(BaseModel):
    name: str                        # logical node name, e.g. n1
    address: Optional[str] = None    # defaults to name (resolvable hostname)

    @property
    def host(self) -> str:
        return self.address or self.name


class SSHSpec(BaseModel):
    username: str = "root"
    port: int = 22
    password: Optional[str] = None
    pkey_path: Optional[Path] = None
    connect_timeout: float = 20.0
    cmd_timeout: float = 1800.0


class TimeoutSpec(BaseModel):
    """Every blocking phase has its own deadline (seconds)."""
    barrier: float = 180.0
    ready: float = 120.0
    poll_interval: float = 1.0
    max_restarts: int = 3
    unknown_warn_after: int = 5
    bootstrap_lock: float = 600.0


class RunConfig(BaseModel):
    nodes: List[NodeSpec]
    leader: Optional[str] = None              # defaults to the first node
    workload: str = "register"                # "append" selects serializable isolation
    force_reinstall: bool = False
    faketime: Optional[float] = None          # max clock rate ratio, absent = no skew
    tarball_url: Optional[str] = None
    home: str = "/home/pgrig"
    os_user: str = "pgrig"
    port: int = 5432
    ssh: SSHSpec = SSHSpec()
    timeouts: TimeoutSpec = TimeoutSpec()
    log_dir: Optional[Path] = None

    @field_validator("faketime")
    @classmethod
    def _positive_ratio(cls, v: Optional[float]) -> Optional[float]:
        if v is not None and v <= 0:
            raise ValueError("faketime ratio must be > 0")
        return v

    @model_validator(mode="after")
    def _leader_is_a_node(self) -> "RunConfig":
        if not self.nodes:
            raise ValueError("at least one node is required")
        if self.leader and self.leader not in {n.name for n in self.nodes}:
            raise ValueError(f"leader {self.leader!r} is not listed in nodes")
        return self

    def host_pairs(self) -> List[tuple]:
        return [(n.name, n.host) for n in self.nodes]


class RunOverrides(BaseModel):
    """CLI flags layered on top of the YAML file."""
    leader: Optional[str] = None
    force_reinstall: Optional[bool] = None
    faketime: Optional[float] = None
    workload: Optional[str] = None
    tarball_url: Optional[str] = None

    def apply(self, cfg: RunConfig) -> RunConfig:
        updates = {k: v for k, v in self.model_dump().items() if v is not None}
        if not updates:
            return cfg
        return RunConfig.model_validate({**cfg.model_dump(), **updates})

