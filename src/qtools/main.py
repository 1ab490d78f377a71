# noqa: D401
"""CLI entry point for qtools."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
from typing import Dict, Optional

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .cluster import ClusterCoordinator, ClusterOperation, ServerResult, SSHChannel, summarize
from .config import get_settings, load_node_config
from .cores import resolve_cores
from .errors import QtoolsError
from .logging import configure_logging
from .process import ProcessRunner
from .service_manager import (
    AggregateResult,
    FleetStatus,
    ServiceStatus,
    WorkerManager,
    get_backend,
)

app = typer.Typer(
    name="qtools",
    help="qtools - Quilibrium node service orchestration",
    add_completion=False,
)
cluster_app = typer.Typer(help="Run node operations on every cluster server")
app.add_typer(cluster_app, name="cluster")

console = Console()
logger = logging.getLogger(__name__)

_STATE_STYLES = {"running": "green", "stopped": "yellow", "unknown": "red"}


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"qtools version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: Optional[bool] = typer.Option(
        None,
        "--version",
        "-v",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
    verbose: bool = typer.Option(
        False,
        "--verbose",
        "-V",
        help="Enable verbose logging",
    ),
) -> None:
    """qtools - Quilibrium node service orchestration."""
    settings = get_settings()
    configure_logging("DEBUG" if verbose else settings.log_level, json=settings.log_json)


def _build_manager(cores: Optional[str]) -> WorkerManager:
    settings = get_settings()
    config = load_node_config(settings.config_file)
    constants = config.service_constants()
    runner = ProcessRunner(default_timeout=settings.command_timeout, use_sudo=settings.use_sudo)
    backend = get_backend(runner=runner, constants=constants)
    core_list = resolve_cores(cores if cores is not None else config.service.worker_cores)
    return WorkerManager(
        backend,
        config.service_options(),
        core_list,
        constants=constants,
        call_timeout=settings.command_timeout,
    )


def _build_coordinator() -> ClusterCoordinator:
    settings = get_settings()
    config = load_node_config(settings.config_file)
    servers = config.cluster_servers()
    if not servers:
        console.print("[red]Error: no cluster servers configured[/red]")
        raise typer.Exit(1)

    runner = ProcessRunner(default_timeout=settings.ssh_timeout)
    channel = SSHChannel(runner=runner, connect_timeout=max(1, int(settings.probe_timeout)))
    return ClusterCoordinator(
        servers,
        channel=channel,
        operation_timeout=settings.ssh_timeout,
        probe_timeout=settings.probe_timeout,
        default_worker_count=config.cluster.default_worker_count,
    )


def _render_result(result: AggregateResult) -> None:
    table = Table(title=f"{result.operation}")
    table.add_column("Service", style="cyan")
    table.add_column("Core", justify="right")
    table.add_column("Result")
    table.add_column("Detail", style="dim")

    for outcome in result.outcomes:
        mark = "[green]✓ ok[/green]" if outcome.ok else f"[red]✗ {outcome.error_code.value}[/red]"
        table.add_row(
            outcome.target,
            str(outcome.core) if outcome.core is not None else "-",
            mark,
            outcome.detail or "",
        )
    console.print(table)

    summary = result.summary()
    console.print(
        f"[dim]{summary['succeeded']}/{summary['total']} succeeded, {summary['failed']} failed[/dim]"
    )
    if not result.ok:
        raise typer.Exit(1)


def _render_status(manager: WorkerManager, fleet: FleetStatus) -> None:
    table = Table(title="Node Status")
    table.add_column("Service", style="cyan")
    table.add_column("Core", justify="right")
    table.add_column("State")
    table.add_column("PID", justify="right")
    table.add_column("Expected ports")
    table.add_column("Detail", style="dim")

    def add(entry: ServiceStatus, core: Optional[int], ports: str) -> None:
        style = _STATE_STYLES[entry.state.value]
        table.add_row(
            entry.name,
            str(core) if core is not None else "-",
            f"[{style}]{entry.state.value.upper()}[/{style}]",
            str(entry.pid) if entry.pid else "-",
            ports,
            entry.detail or "",
        )

    add(fleet.master, None, "-")
    for core, entry in fleet.workers.items():
        p2p, stream = manager.worker_ports(core)
        add(entry, core, f"{p2p}/{stream}")
    console.print(table)

    counts = fleet.summary()
    console.print(
        f"[dim]{counts['running']} running, {counts['stopped']} stopped, "
        f"{counts['unknown']} unknown[/dim]"
    )


def _run(coro):
    try:
        return asyncio.run(coro)
    except QtoolsError as e:
        console.print(f"[red]Error ({e.code.value}): {e}[/red]")
        raise typer.Exit(1)


@app.command()
def install(
    cores: Optional[str] = typer.Option(None, "--cores", "-c", help="Worker cores, e.g. 1-3,5"),
) -> None:
    """Write service definitions for the master and every worker."""

    async def run() -> AggregateResult:
        return await _build_manager(cores).install()

    with console.status("[bold]Writing service definitions..."):
        result = _run(run())
    _render_result(result)


@app.command()
def start(
    cores: Optional[str] = typer.Option(None, "--cores", "-c", help="Worker cores, e.g. 1-3,5"),
    workers_only: bool = typer.Option(
        False, "--workers-only", help="Leave the master untouched"
    ),
) -> None:
    """Start the master, then its workers."""

    async def run() -> AggregateResult:
        manager = _build_manager(cores)
        if workers_only:
            return await manager.start_subset(manager.cores)
        return await manager.start_all()

    with console.status("[bold green]Starting services..."):
        result = _run(run())
    _render_result(result)


@app.command()
def stop(
    cores: Optional[str] = typer.Option(None, "--cores", "-c", help="Worker cores, e.g. 1-3,5"),
    workers_only: bool = typer.Option(
        False, "--workers-only", help="Leave the master untouched"
    ),
    force: bool = typer.Option(False, "--force", "-f", help="Kill services that do not stop"),
) -> None:
    """Stop the workers, then the master."""

    async def run() -> AggregateResult:
        manager = _build_manager(cores)
        if workers_only:
            return await manager.stop_subset(manager.cores, force=force)
        return await manager.stop_all(force=force)

    with console.status("[bold yellow]Stopping services..."):
        result = _run(run())
    _render_result(result)


@app.command()
def restart(
    cores: Optional[str] = typer.Option(None, "--cores", "-c", help="Worker cores, e.g. 1-3,5"),
    workers_only: bool = typer.Option(
        False, "--workers-only", help="Leave the master untouched"
    ),
) -> None:
    """Restart the master and each worker."""

    async def run() -> AggregateResult:
        manager = _build_manager(cores)
        if workers_only:
            return await manager.restart_subset(manager.cores)
        return await manager.restart_all()

    with console.status("[bold blue]Restarting services..."):
        result = _run(run())
    _render_result(result)


@app.command()
def status(
    cores: Optional[str] = typer.Option(None, "--cores", "-c", help="Worker cores, e.g. 1-3,5"),
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Show master and worker status."""

    async def run():
        manager = _build_manager(cores)
        return manager, await manager.status()

    manager, fleet = _run(run())
    if as_json:
        typer.echo(json.dumps(fleet.to_dict(), indent=2))
        return
    _render_status(manager, fleet)


# -- cluster -------------------------------------------------------------


async def _fan_out(operation: ClusterOperation) -> Dict[str, ServerResult]:
    coordinator = _build_coordinator()
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, cancel_event.set)
    try:
        return await coordinator.fan_out(None, operation, cancel_event=cancel_event)
    finally:
        loop.remove_signal_handler(signal.SIGINT)


def _render_cluster(operation: ClusterOperation, results: Dict[str, ServerResult], as_json: bool) -> None:
    summary = summarize(results)
    if as_json:
        payload = {
            "operation": operation.name,
            "summary": summary,
            "servers": {server_id: r.to_dict() for server_id, r in results.items()},
        }
        typer.echo(json.dumps(payload, indent=2))
    else:
        table = Table(title=f"cluster {operation.name}")
        table.add_column("Server", style="cyan")
        table.add_column("Result")
        table.add_column("Exit", justify="right")
        table.add_column("Time", justify="right")
        table.add_column("Detail", style="dim")

        for server_id, result in results.items():
            mark = "[green]✓ ok[/green]" if result.ok else f"[red]✗ {result.error_code.value}[/red]"
            table.add_row(
                server_id,
                mark,
                str(result.exit_code) if result.exit_code is not None else "-",
                f"{result.duration_seconds:.1f}s",
                result.detail or result.stderr.strip()[:80],
            )
        console.print(table)
        console.print(
            f"[dim]{summary['succeeded']}/{summary['total']} succeeded, "
            f"{summary['unreachable']} unreachable, {summary['cancelled']} cancelled[/dim]"
        )

    if summary["failed"]:
        raise typer.Exit(1)


@cluster_app.command("start")
def cluster_start(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Start the workers on every cluster server."""
    operation = ClusterOperation.start()
    with console.status("[bold green]Starting cluster workers..."):
        results = _run(_fan_out(operation))
    _render_cluster(operation, results, as_json)


@cluster_app.command("stop")
def cluster_stop(
    force: bool = typer.Option(False, "--force", "-f", help="Kill services that do not stop"),
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Stop the workers on every cluster server."""
    operation = ClusterOperation.stop(force=force)
    with console.status("[bold yellow]Stopping cluster workers..."):
        results = _run(_fan_out(operation))
    _render_cluster(operation, results, as_json)


@cluster_app.command("restart")
def cluster_restart(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Restart the workers on every cluster server."""
    operation = ClusterOperation.restart()
    with console.status("[bold blue]Restarting cluster workers..."):
        results = _run(_fan_out(operation))
    _render_cluster(operation, results, as_json)


@cluster_app.command("status")
def cluster_status(
    as_json: bool = typer.Option(False, "--json", help="Print machine-readable JSON"),
) -> None:
    """Collect node status from every cluster server."""
    operation = ClusterOperation.status()
    with console.status("[bold]Querying cluster..."):
        results = _run(_fan_out(operation))
    _render_cluster(operation, results, as_json)


if __name__ == "__main__":
    app()
