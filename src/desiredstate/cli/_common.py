"""Shared utilities for the CLI command modules."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Optional

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from .. import AGENT_HOME
from ..config import AgentConfig, load_config
from ..models import ComponentAction, ReconcileReport

console = Console()


def setup_console_logging(verbose: bool = False) -> None:
    """Route log records to the terminal through Rich."""
    root = logging.getLogger()
    if any(isinstance(h, RichHandler) for h in root.handlers):
        return
    handler = RichHandler(console=Console(stderr=True), show_path=False)
    handler.setFormatter(logging.Formatter("%(message)s"))
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)


def build_config(home: Optional[str], config_file: Optional[str], **overrides: Any) -> AgentConfig:
    """Merge CLI options over the file/environment configuration."""
    return load_config(
        home=Path(home or AGENT_HOME).expanduser(),
        config_file=Path(config_file) if config_file else None,
        **overrides,
    )


_ACTION_STYLE = {
    ComponentAction.UP_TO_DATE: "[green]up-to-date[/]",
    ComponentAction.APPLIED: "[bold green]applied[/]",
    ComponentAction.FAILED: "[bold red]failed[/]",
    ComponentAction.PURGED: "[yellow]purged[/]",
}


def report_table(report: ReconcileReport) -> Table:
    """Render a pass report as a Rich table."""
    title = f"Reconciliation: {report.manifest_name or 'desired state'}"
    table = Table(title=title, show_lines=False)
    table.add_column("Component", style="cyan")
    table.add_column("Result")
    table.add_column("Digest", style="dim")
    table.add_column("Detail")
    for outcome in report.outcomes:
        detail = ""
        if outcome.error:
            detail = f"[red]{outcome.operation}: {outcome.error}[/]"
        table.add_row(
            outcome.name,
            _ACTION_STYLE.get(outcome.action, outcome.action.value),
            (outcome.digest or "")[:12],
            detail,
        )
    return table
