# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/utils/interface.py

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class ExecResult:
    stdout: str
    stderr: str
    exit_code: int

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class RemoteExecutor(Protocol):
    """
    Contract for running commands on one node.

    Implementations raise ``ExecutionFault`` with kind NON_ZERO_EXIT when the
    command exits non-zero (unless ``check=False``) and CONNECTION_LOST when
    the transport itself fails.
    """

    node: str

    def exec(
        self,
        cmd: str,
        *args: str,
        sudo: bool = False,
        user: Optional[str] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> ExecResult:
        ...

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False) -> None:
        ...

    def exists(self, remote_path: str) -> bool:
        ...

    def close(self) -> None:
        ...
