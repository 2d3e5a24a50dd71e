"""Agent commands: run, once, status, stop, local."""

from __future__ import annotations

import json
import os
import signal
import sys
from pathlib import Path

import click
from pydantic import ValidationError
from rich.panel import Panel
from rich.table import Table

from .. import AGENT_HOME
from ..errors import DesiredStateError
from ._common import build_config, console, report_table


def _config_options(fn):
    """Options shared by every command that builds an agent config."""
    options = [
        click.option("--home", default=None, type=click.Path(), help=f"Agent home (default: {AGENT_HOME})."),
        click.option("--config", "config_file", default=None, type=click.Path(exists=True, dir_okay=False)),
        click.option("--deploy-dir", default=None, type=click.Path(file_okay=False), help="Deployment root directory."),
        click.option("--registry", default=None, help="Desired-state artifact reference."),
    ]
    for option in reversed(options):
        fn = option(fn)
    return fn


def _load(home, config_file, **overrides):
    try:
        return build_config(home, config_file, **overrides)
    except ValidationError as exc:
        console.print(f"[bold red]Invalid configuration:[/] {exc}")
        sys.exit(2)


def register_agent_commands(main: click.Group) -> None:
    """Register the agent lifecycle commands."""

    @main.command("run")
    @_config_options
    @click.option("--interval", default=None, type=float, help="Seconds between passes (default: 3).")
    @click.option("--port", default=None, type=int, help="Status API port, 0 to disable.")
    def run(home, config_file, deploy_dir, registry, interval, port):
        """Run the reconciliation agent in the foreground.

        Pulls the desired state every interval and converges local
        deployments until SIGINT/SIGTERM.
        """
        from ..daemon import AgentService, is_running

        config = _load(
            home, config_file,
            deploy_dir=deploy_dir, registry=registry, interval=interval, status_port=port,
        )
        if is_running(config.home):
            console.print("[yellow]Agent is already running.[/]")
            sys.exit(0)

        try:
            svc = AgentService(config)
        except DesiredStateError as exc:
            console.print(f"[bold red]Cannot start agent:[/] {exc}")
            sys.exit(2)

        console.print(f"\n  [green]Reconciling[/] [cyan]{config.registry}[/]")
        console.print(f"  Deploy dir: {config.deploy_dir}")
        console.print(f"  Interval: {config.interval:g}s | Log: {config.log_file}")
        console.print(f"  PID: {os.getpid()}")
        console.print("  [dim]Running in foreground (Ctrl+C to stop)[/]\n")
        svc.start()
        svc.run_forever()

    @main.command("once")
    @_config_options
    @click.option("--json-out", is_flag=True, help="Print the report as JSON.")
    def once(home, config_file, deploy_dir, registry, json_out):
        """Run a single reconciliation pass and report what it did."""
        from ..reconciler import Reconciler

        config = _load(home, config_file, deploy_dir=deploy_dir, registry=registry)
        try:
            reconciler = Reconciler.from_config(config)
            report = reconciler.reconcile()
        except DesiredStateError as exc:
            if json_out:
                click.echo(json.dumps({"error": str(exc)}))
            else:
                console.print(f"[bold red]Pass aborted:[/] {exc}")
            sys.exit(1)

        if json_out:
            click.echo(report.model_dump_json(indent=2))
        else:
            console.print(report_table(report))
        if not report.ok:
            sys.exit(1)

    @main.command("status")
    @click.option("--home", default=None, type=click.Path())
    @click.option("--port", default=None, type=int, help="Status API port to query.")
    @click.option("--json-out", is_flag=True, help="Output as JSON.")
    def status(home, port, json_out):
        """Show whether the agent runs and what its last pass did."""
        from ..daemon import get_agent_status, read_pid

        config = _load(home, None, status_port=port)
        pid = read_pid(config.home)
        if pid is None:
            if json_out:
                click.echo(json.dumps({"running": False}))
            else:
                console.print("\n  [yellow]Agent is not running.[/]\n")
            return

        snapshot = get_agent_status(config.status_port) if config.status_port else None
        if json_out:
            click.echo(json.dumps(snapshot or {"running": True, "pid": pid, "api": "unreachable"}, indent=2))
            return

        if not snapshot:
            console.print(f"\n  [green]Agent running[/] (PID {pid})")
            console.print(f"  [yellow]Status API unreachable on port {config.status_port}[/]\n")
            return

        passes = snapshot.get("passes", {})
        console.print()
        console.print(
            Panel(
                f"PID: [bold]{snapshot.get('pid')}[/]\n"
                f"Manifest: [bold]{snapshot.get('manifest') or '-'}[/]\n"
                f"Passes completed: [bold]{passes.get('completed', 0)}[/]\n"
                f"Passes failed: [bold]{passes.get('failed', 0)}[/]\n"
                f"Last pass: {passes.get('last_at') or '[dim]never[/]'}",
                title="[green]Agent Running[/]",
                border_style="green",
            )
        )
        last = snapshot.get("last_report")
        if last:
            from ..models import ReconcileReport

            console.print(report_table(ReconcileReport.model_validate(last)))
        errors = snapshot.get("recent_errors", [])
        if errors:
            console.print(f"\n[yellow]Recent errors ({len(errors)}):[/]")
            for err in errors[-5:]:
                console.print(f"  [dim]{err}[/]")
        console.print()

    @main.command("stop")
    @click.option("--home", default=None, type=click.Path())
    def stop(home):
        """Ask the running agent to shut down."""
        from ..daemon import PID_FILE, read_pid

        home_path = Path(home or AGENT_HOME).expanduser()
        pid = read_pid(home_path)
        if pid is None:
            console.print("[yellow]Agent is not running.[/]")
            return
        try:
            os.kill(pid, signal.SIGTERM)
            console.print(f"\n  [green]Sent SIGTERM to agent (PID {pid})[/]\n")
        except ProcessLookupError:
            console.print("[yellow]Agent process not found, cleaning up PID file.[/]")
            (home_path / PID_FILE).unlink(missing_ok=True)

    @main.command("local")
    @_config_options
    def local(home, config_file, deploy_dir, registry):
        """List local deployments and their applied digests."""
        from ..store import DeploymentStore

        config = _load(home, config_file, deploy_dir=deploy_dir, registry=registry)
        store = DeploymentStore(config.deploy_dir)
        names = store.list_local_components()
        if not names:
            console.print(f"[dim]No deployments in {config.deploy_dir}[/]")
            return

        table = Table(title=f"Deployments in {config.deploy_dir}")
        table.add_column("Component", style="cyan")
        table.add_column("Digest")
        table.add_column("Compose")
        for name in names:
            digest = store.read_digest(name)
            table.add_row(
                name,
                digest or "[red]none[/]",
                "yes" if store.has_descriptor(name) else "[dim]no[/]",
            )
        console.print(table)
