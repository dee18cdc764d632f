# Copyright 2026 Kezie Iwueke
# SPDX-License-Identifier: Apache-2.0

# src/pgrig/cli/app.py
from __future__ import annotations

import json
from typing import Optional

import typer

from pgrig.cluster.models import resolve_topology, Node
from pgrig.cluster.orchestrator import ClusterOrchestrator, RunReport
from pgrig.config.loader import load_config
from pgrig.config.models import RunConfig, RunOverrides
from pgrig.logging.log import init_logging
from pgrig.observers.console import ConsoleObserver
from pgrig.observers.dispatcher import EventBus
from pgrig.observers.jsonfile import JsonFileObserver
from pgrig.observers.logger import LoggerObserver
from pgrig.utils.ssh_runner import SSHOptions, SSHRunner


# ------------------------------------------------------------------------------
# CLI setup
# ------------------------------------------------------------------------------

app = typer.Typer(help="pgrig: postgres leader/replica test cluster lifecycle")


def _ssh_factory(cfg: RunConfig):
    opts = SSHOptions(
        username=cfg.ssh.username,
        port=cfg.ssh.port,
        password=cfg.ssh.password,
        pkey_path=cfg.ssh.pkey_path,
        connect_timeout=cfg.ssh.connect_timeout,
        cmd_timeout=cfg.ssh.cmd_timeout,
    )

    def factory(node: Node) -> SSHRunner:
        return SSHRunner(node.name, node.address, opts)

    return factory


def build_orchestrator(cfg: RunConfig, *, debug: bool = False, console: bool = True) -> ClusterOrchestrator:
    """
    Wire logging, observers and SSH for one run.
    """
    logger, run_id, log_path = init_logging(base_dir=cfg.log_dir, verbose=debug)

    observers = [
        LoggerObserver(logger),
        JsonFileObserver(log_path.parent / f"{run_id}.jsonl"),
    ]
    if console and debug:
        observers.append(ConsoleObserver())

    topology = resolve_topology(cfg.host_pairs(), leader=cfg.leader)

    typer.echo("")
    typer.secho("pgrig run", bold=True)
    typer.echo(f"  Run ID   : {run_id}")
    typer.echo(f"  Logs     : {log_path}")
    typer.echo(f"  Leader   : {topology.leader.name}")
    typer.echo(f"  Replicas : {', '.join(n.name for n in topology.replicas) or '-'}")
    typer.echo("")

    return ClusterOrchestrator(
        topology,
        cfg,
        _ssh_factory(cfg),
        bus=EventBus(observers=observers),
        run_id=run_id,
    )


def _load(config: str, **overrides) -> RunConfig:
    cfg = load_config(config)
    return RunOverrides(**overrides).apply(cfg)


def _print_report(rep: RunReport) -> None:
    for r in rep.nodes.values():
        status = "FAILED" if r.error else "OK"
        color = typer.colors.RED if r.error else typer.colors.GREEN
        typer.secho(f"  {r.node:<8} {r.role:<8} {r.phase:<13} {status}", fg=color)
        if r.error:
            typer.echo(f"           {r.error}")
        if r.teardown_error:
            typer.secho(f"           teardown: {r.teardown_error}", fg=typer.colors.YELLOW)


# ------------------------------------------------------------------------------
# Commands
# ------------------------------------------------------------------------------

@app.command()
def setup(
    config: str = typer.Argument(..., help="Run definition YAML"),
    leader: Optional[str] = typer.Option(None, "--leader", help="Node to initialize as leader (default: first)"),
    force_reinstall: Optional[bool] = typer.Option(None, "--force-reinstall/--no-force-reinstall"),
    faketime: Optional[float] = typer.Option(None, "--faketime", help="Max clock rate ratio for clock skew"),
    workload: Optional[str] = typer.Option(None, "--workload", help="append selects serializable isolation"),
    tarball_url: Optional[str] = typer.Option(None, "--tarball-url"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Install, initialize and start the cluster."""
    cfg = _load(
        config,
        leader=leader,
        force_reinstall=force_reinstall,
        faketime=faketime,
        workload=workload,
        tarball_url=tarball_url,
    )
    orch = build_orchestrator(cfg, debug=debug)
    try:
        rep = orch.setup()
    finally:
        orch.close()

    _print_report(rep)
    if not rep.ok:
        raise typer.Exit(code=1)


@app.command()
def teardown(
    config: str = typer.Argument(..., help="Run definition YAML"),
    debug: bool = typer.Option(False, "--debug"),
):
    """Best-effort stop and wipe on every node. Always exits 0."""
    cfg = _load(config)
    rep = build_orchestrator(cfg, debug=debug).teardown()
    _print_report(rep)


@app.command()
def logs(
    config: str = typer.Argument(..., help="Run definition YAML"),
    as_json: bool = typer.Option(False, "--json"),
):
    """Print the daemon log path of every node."""
    cfg = _load(config)
    topology = resolve_topology(cfg.host_pairs(), leader=cfg.leader)
    orch = ClusterOrchestrator(topology, cfg, _ssh_factory(cfg))
    files = orch.log_files()
    if as_json:
        typer.echo(json.dumps(files, indent=2))
        return
    for node, paths in files.items():
        for p in paths:
            typer.echo(f"{node}\t{p}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
