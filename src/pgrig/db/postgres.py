# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/db/postgres.py

from __future__ import annotations

import logging
import posixpath
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple

from jinja2 import Environment, FileSystemLoader, StrictUndefined

from pgrig.utils.interface import RemoteExecutor

log = logging.getLogger("pgrig")

DEFAULT_TARBALL_URL = "https://ftp.postgresql.org/pub/source/v14.5/postgresql-14.5.tar.gz"

TEMPLATES_DIR = Path(__file__).resolve().parent / "templates"

BUILD_PACKAGES = ("bison", "flex", "build-essential", "curl", "faketime")

CONFIGURE_FLAGS = (
    "--enable-depend",
    "--enable-cassert",
    "--enable-debug",
    "--without-readline",
    "--without-zlib",
)


def _jinja_env() -> Environment:
    return Environment(
        loader=FileSystemLoader(str(TEMPLATES_DIR)),
        undefined=StrictUndefined,
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
    )


_env = _jinja_env()


def render(template_name: str, **context) -> str:
    return _env.get_template(template_name).render(**context)


def isolation_for(workload: str) -> str:
    """The append workload checks serializability; everything else runs at repeatable read."""
    return "serializable" if workload == "append" else "repeatable read"


@dataclass(frozen=True)
class PgLayout:
    """
    Fixed on-node paths. External collectors rely on these, so they only
    depend on ``home``.
    """
    home: str = "/home/pgrig"

    @property
    def source_dir(self) -> str:
        return posixpath.join(self.home, "postgres")

    @property
    def install_dir(self) -> str:
        return posixpath.join(self.home, "pginstall")

    @property
    def bin_dir(self) -> str:
        return posixpath.join(self.install_dir, "bin")

    def bin(self, name: str) -> str:
        return posixpath.join(self.bin_dir, name)

    @property
    def postgres(self) -> str:
        return self.bin("postgres")

    @property
    def data_dir(self) -> str:
        return posixpath.join(self.home, "pgdata")

    @property
    def config_file(self) -> str:
        return posixpath.join(self.data_dir, "postgresql.conf")

    @property
    def hba_file(self) -> str:
        return posixpath.join(self.data_dir, "pg_hba.conf")

    @property
    def log_file(self) -> str:
        return posixpath.join(self.data_dir, "pg.log")

    @property
    def ctl_stdout(self) -> str:
        return posixpath.join(self.data_dir, "pg_ctl.stdout")


class PostgresDaemon:
    """
    Postgres commands for one node. Every call goes through the node's
    RemoteExecutor; nothing here keeps lifecycle state.
    """

    def __init__(
        self,
        runner: RemoteExecutor,
        layout: PgLayout,
        *,
        os_user: str = "pgrig",
        port: int = 5432,
    ):
        self.runner = runner
        self.layout = layout
        self.os_user = os_user
        self.port = port

    @property
    def node(self) -> str:
        return self.runner.node

    def _as_user(self, cmd: str, *args: str, **kw):
        return self.runner.exec(cmd, *args, user=self.os_user, **kw)

    def _append(self, content: str, remote_path: str) -> None:
        self._as_user(f"printf '%s\\n' {shlex.quote(content.rstrip())} >> {shlex.quote(remote_path)}")

    # ------------------ install ------------------

    def kill_stale(self) -> None:
        """Kill any postgres owned by the service user; absence is fine."""
        self.runner.exec(
            f"pkill -9 -e -c -U {shlex.quote(self.os_user)} -f postgres || echo 'no process to kill'",
            sudo=True,
            check=False,
        )

    def installed(self) -> bool:
        return self.runner.exists(self.layout.install_dir)

    def install(self, tarball_url: Optional[str], *, force: bool = False) -> bool:
        """
        Download and build postgres unless already present. Stale data and
        source trees are always removed. Returns True when a build ran.
        """
        lay = self.layout
        self.kill_stale()
        self.runner.exec("rm", "-rf", lay.data_dir, sudo=True)
        self.runner.exec("rm", "-rf", lay.source_dir, sudo=True)

        if not force and self.installed():
            log.info("[%s] postgres already installed at %s", self.node, lay.install_dir)
            self._as_user("mkdir", "-p", lay.data_dir)
            return False

        url = tarball_url or DEFAULT_TARBALL_URL
        log.info("[%s] installing postgres from %s", self.node, url)
        self.runner.exec(
            "DEBIAN_FRONTEND=noninteractive apt-get install -qy " + " ".join(BUILD_PACKAGES),
            sudo=True,
        )
        self._as_user("mkdir", "-p", lay.source_dir, lay.data_dir)
        self._as_user(
            f"curl -fsSL {shlex.quote(url)} | tar -xz --strip-components=1 -C {shlex.quote(lay.source_dir)}"
        )
        self._as_user(
            posixpath.join(lay.source_dir, "configure"),
            f"--prefix={lay.install_dir}",
            *CONFIGURE_FLAGS,
            cwd=lay.source_dir,
        )
        self._as_user("make", "-j8", "-s", cwd=lay.source_dir)
        self._as_user("make", "install", "-j8", "-s", cwd=lay.source_dir)
        return True

    # ------------------ data directory ------------------

    def initdb(self) -> None:
        self._as_user(self.layout.bin("initdb"), "-n", "-D", self.layout.data_dir, "-E", "utf-8")

    def reset_data_dir(self) -> None:
        """Destroy and recreate an empty data directory."""
        self.runner.exec("rm", "-rf", self.layout.data_dir, sudo=True)
        self._as_user("mkdir", "-p", self.layout.data_dir)
        self._as_user("chmod", "700", self.layout.data_dir)

    def clear_data(self) -> None:
        self.runner.exec(f"rm -rf {shlex.quote(self.layout.data_dir)}/*", sudo=True)

    def base_backup_from(self, leader_address: str, port: Optional[int] = None) -> None:
        """Stream a full copy of the leader; -R writes the replication source."""
        self._as_user(
            self.layout.bin("pg_basebackup"),
            "-R",
            "-D", self.layout.data_dir,
            "-h", leader_address,
            "-p", str(port or self.port),
        )

    # ------------------ configuration ------------------

    def write_hba(self) -> None:
        self._append(
            render("pg_hba.conf.j2", databases=["replication", "all"], cidr="0.0.0.0/0"),
            self.layout.hba_file,
        )

    def write_leader_config(self, workload: str) -> None:
        self._append(
            render(
                "leader.conf.j2",
                shared_buffers="4GB",
                wal_keep_size="16GB",
                isolation=isolation_for(workload),
            ),
            self.layout.config_file,
        )
        self.write_hba()

    def write_replica_config(self) -> None:
        """Replicas are read-mostly and get a much smaller buffer pool."""
        self.write_hba()
        self._append(render("replica.conf.j2", shared_buffers="128MB"), self.layout.config_file)

    # ------------------ daemon ------------------

    def start(self) -> None:
        """
        Ask pg_ctl to start the server without waiting; readiness is
        decided by the probe. A non-zero exit is logged, not raised.
        """
        lay = self.layout
        res = self._as_user(
            f"{shlex.quote(lay.bin('pg_ctl'))} -W -D {shlex.quote(lay.data_dir)} "
            f"-l {shlex.quote(lay.log_file)} start >> {shlex.quote(lay.ctl_stdout)} 2>&1",
            check=False,
        )
        if not res.ok:
            log.warning("[%s] pg_ctl start exited %d, leaving it to the readiness probe", self.node, res.exit_code)

    def stop(self) -> bool:
        """Stop the server. Returns False when there was nothing to stop."""
        res = self._as_user(self.layout.bin("pg_ctl"), "-D", self.layout.data_dir, "stop", check=False)
        if not res.ok:
            log.info("[%s] pg_ctl stop: %s", self.node, (res.stderr or res.stdout).strip() or "no process")
        return res.ok

    def restart(self) -> None:
        self.stop()
        self.kill_stale()
        self.start()

    def probe_command(self) -> Tuple[str, ...]:
        return (self.layout.bin("pg_isready"), "-p", str(self.port))
