# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/utils/ssh_runner.py

from __future__ import annotations

import logging
import os
import shlex
import socket
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import paramiko

from pgrig.cluster.errors import ExecutionFault, FaultKind
from pgrig.utils.interface import ExecResult
from pgrig.utils.retry import RetryError, retry

log = logging.getLogger("pgrig")

_TRANSPORT_ERRORS = (paramiko.SSHException, socket.error, EOFError)


@dataclass
class SSHOptions:
    username: str = "root"
    port: int = 22
    password: Optional[str] = None
    pkey_path: Optional[Path] = None
    connect_timeout: float = 20.0
    cmd_timeout: float = 600.0
    connect_retries: int = 5
    connect_delay: int = 3


def _shq(v: str) -> str:
    """Quote for bash -lc."""
    return "'" + v.replace("'", "'\"'\"'") + "'"


def _load_pkey(path: Path):
    key_path = str(path)
    for key_cls in (paramiko.Ed25519Key, paramiko.RSAKey, paramiko.ECDSAKey):
        try:
            return key_cls.from_private_key_file(key_path)
        except paramiko.SSHException:
            continue
    raise ExecutionFault(FaultKind.CONNECTION_LOST, f"unsupported private key format: {key_path}")


def build_command(
    cmd: str,
    *args: str,
    sudo: bool = False,
    user: Optional[str] = None,
    cwd: Optional[str] = None,
) -> str:
    """
    Render the final shell line: arguments are quoted, the command runs
    under ``bash -lc`` and optionally as root or another user.
    """
    line = " ".join([cmd, *(shlex.quote(str(a)) for a in args)])
    if cwd:
        line = f"cd {shlex.quote(cwd)} && {line}"
    if sudo:
        return f"sudo -S bash -lc {_shq(line)}"
    if user:
        return f"sudo -S -u {shlex.quote(user)} bash -lc {_shq(line)}"
    return f"bash -lc {_shq(line)}"


class SSHRunner:
    """
    RemoteExecutor for one node over a single paramiko connection.

    The connection opens lazily and is retried, since freshly provisioned
    nodes may not accept SSH yet.
    """

    def __init__(self, node: str, address: str, opts: Optional[SSHOptions] = None):
        self.node = node
        self.address = address
        self.opts = opts or SSHOptions()
        self._client: Optional[paramiko.SSHClient] = None

    # ------------------ connection ------------------

    def _open(self) -> paramiko.SSHClient:
        client = paramiko.SSHClient()
        client.set_missing_host_key_policy(paramiko.AutoAddPolicy())

        pkey = _load_pkey(self.opts.pkey_path) if self.opts.pkey_path else None

        client.connect(
            hostname=self.address,
            port=self.opts.port,
            username=self.opts.username,
            password=self.opts.password if not pkey else None,
            pkey=pkey,
            timeout=self.opts.connect_timeout,
            allow_agent=True,
            look_for_keys=pkey is None,
        )
        return client

    def _connect(self) -> paramiko.SSHClient:
        if self._client is not None:
            return self._client

        def _on_retry(attempt: int, exc: Exception) -> None:
            log.info(
                "[%s] SSH not ready (attempt %d/%d, %s: %s)",
                self.node, attempt, self.opts.connect_retries, type(exc).__name__, exc,
            )

        opener = retry(
            retries=self.opts.connect_retries,
            delay=self.opts.connect_delay,
            retry_on=_TRANSPORT_ERRORS,
            on_retry=_on_retry,
        )(self._open)

        try:
            self._client = opener()
        except RetryError as e:
            raise ExecutionFault(
                FaultKind.CONNECTION_LOST,
                f"cannot SSH into {self.address} as {self.opts.username!r}: {e.__cause__}",
                node=self.node,
            ) from e
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    # ------------------ commands ------------------

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
        final = build_command(cmd, *args, sudo=sudo, user=user, cwd=cwd)
        client = self._connect()
        log.debug("[%s] $ %s", self.node, final)

        try:
            stdin, stdout, stderr = client.exec_command(final, timeout=timeout or self.opts.cmd_timeout)
            stdin.flush()
            out = stdout.read().decode("utf-8", errors="replace")
            err = stderr.read().decode("utf-8", errors="replace")
            rc = stdout.channel.recv_exit_status()
        except _TRANSPORT_ERRORS as e:
            self.close()
            raise ExecutionFault(FaultKind.CONNECTION_LOST, str(e) or type(e).__name__, node=self.node) from e

        if out.strip():
            log.debug("[%s] [stdout] %s", self.node, out.rstrip())
        if err.strip():
            log.debug("[%s] [stderr] %s", self.node, err.rstrip())
        log.debug("[%s] [exit %d]", self.node, rc)

        result = ExecResult(stdout=out, stderr=err, exit_code=rc)
        if check and rc != 0:
            raise ExecutionFault(
                FaultKind.NON_ZERO_EXIT,
                f"{cmd} exited {rc}: {err.strip() or out.strip()}",
                node=self.node,
                result=result,
            )
        return result

    def exists(self, remote_path: str) -> bool:
        return self.exec("test", "-e", remote_path, check=False).ok

    def put_text(self, content: str, remote_path: str, *, sudo: bool = False) -> None:
        if sudo:
            tmp = f"/tmp/.pgrig.tmp.{os.getpid()}"
            self.put_text(content, tmp)
            self.exec("mv", tmp, remote_path, sudo=True)
            return

        client = self._connect()
        try:
            sftp = client.open_sftp()
        except _TRANSPORT_ERRORS as e:
            raise ExecutionFault(FaultKind.CONNECTION_LOST, str(e), node=self.node) from e
        try:
            with sftp.open(remote_path, "w") as f:
                f.write(content)
        finally:
            sftp.close()
