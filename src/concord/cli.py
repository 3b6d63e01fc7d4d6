"""Command line for inspecting persisted coordination state."""

import sys
from pathlib import Path

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from concord.application.settings import CoordinationSettings
from concord.core import CoordinationCore
from concord.domain.context import Change
from concord.domain.coordination_event import Component
from concord.domain.exceptions import ConfigurationError
from concord.domain.handoff import HandoffMessage, HandoffType, Task
from concord.domain.models import Agent, AgentRole, new_id
from concord.infrastructure.config_loader import load_settings
from concord.infrastructure.persistence import (
    FilesystemAuditRecordStore,
    FilesystemContextVersionStore,
    FilesystemCoordinationEventStore,
)
from concord.logging_setup import setup_logging

console = Console()
error_console = Console(stderr=True)


def print_error(message: str, hint: str | None = None) -> None:
    """Print formatted error message to stderr."""
    content = Text(f"ERROR: {message}", style="bold red")
    if hint:
        content.append(f"\n\nHint: {hint}", style="yellow")
    error_console.print(Panel(content, title="Error", border_style="red"))


def _require_dir(base_dir: str) -> Path:
    path = Path(base_dir)
    if not path.is_dir():
        print_error(f"Not a directory: {base_dir}")
        sys.exit(1)
    return path


@click.group()
@click.option("-v", "--verbose", is_flag=True, help="Enable verbose (DEBUG) logging to console")
@click.option("--log-file", default=None, type=click.Path(), help="Path to log file")
def main(verbose: bool, log_file: str | None) -> None:
    """Inspect and exercise the concord coordination core."""
    setup_logging("concord", log_file, verbose)


@main.command("validate-config")
@click.argument("path", type=click.Path())
def validate_config(path: str) -> None:
    """Validate a settings file."""
    try:
        settings = load_settings(path)
    except ConfigurationError as e:
        print_error(str(e), hint="See concord/schemas/settings.schema.json")
        sys.exit(1)

    table = Table(show_header=False, box=None)
    table.add_column("Key", style="cyan")
    table.add_column("Value")
    table.add_row("Agents", str(len(settings.agents)))
    table.add_row("Tools", str(len(settings.tool_catalog)))
    table.add_row("Orchestrator", settings.orchestrator_id or "(by role)")
    table.add_row("Deputy", settings.deputy_id or "-")
    table.add_row("Ack timeout", f"{settings.handoff.ack_timeout_s}s")
    table.add_row("Max attempts", str(settings.handoff.max_attempts))
    console.print(table)
    console.print("[green]Settings valid[/green]")


@main.command("events")
@click.argument("base_dir")
@click.option(
    "--component",
    type=click.Choice([c.value for c in Component]),
    default=None,
    help="Filter by component",
)
@click.option("--entity", default=None, help="Filter by entity id")
@click.option("--type", "event_type", default=None, help="Filter by event type")
def events(
    base_dir: str, component: str | None, entity: str | None, event_type: str | None
) -> None:
    """List coordination events stored under BASE_DIR."""
    store = FilesystemCoordinationEventStore(_require_dir(base_dir))
    found = store.get_events(
        Component(component) if component else None, entity, event_type
    )
    if not found:
        console.print("[dim]No events found.[/dim]")
        return

    table = Table(title="Coordination Events")
    table.add_column("Time", style="dim")
    table.add_column("Component", style="magenta")
    table.add_column("Entity", style="cyan")
    table.add_column("Event", style="yellow")
    for event in found:
        table.add_row(
            event.timestamp[:19],
            event.component.value,
            event.entity_id[:12],
            event.event_type,
        )
    console.print(table)


@main.command("history")
@click.argument("base_dir")
@click.argument("context_id")
def history(base_dir: str, context_id: str) -> None:
    """Show the version log of CONTEXT_ID."""
    store = FilesystemContextVersionStore(_require_dir(base_dir))
    versions = store.list_versions(context_id)
    if not versions:
        console.print(f"[dim]No versions of {context_id}.[/dim]")
        return

    table = Table(title=f"Context {context_id}")
    table.add_column("#", style="cyan")
    table.add_column("Version")
    table.add_column("Parent", style="dim")
    table.add_column("Author", style="magenta")
    table.add_column("Changes")
    for v in versions:
        table.add_row(
            str(v.sequence),
            v.version_id[:8],
            (v.parent_version_id or "-")[:8],
            v.author_agent_id,
            ", ".join(f"{c.operation.value} {c.path}" for c in v.change_set),
        )
    console.print(table)


@main.command("records")
@click.argument("base_dir")
@click.argument("kind", required=False)
def records(base_dir: str, kind: str | None) -> None:
    """List audit records (optionally of one KIND) stored under BASE_DIR."""
    store = FilesystemAuditRecordStore(_require_dir(base_dir))
    found = store.list_records(kind)
    if not found:
        console.print("[dim]No records found.[/dim]")
        return

    table = Table(title="Audit Records")
    table.add_column("Kind", style="magenta")
    table.add_column("Id", style="cyan")
    table.add_column("Status")
    table.add_column("Updated", style="dim")
    for record in found:
        status = record.data.get("status") or record.data.get("stage") or ""
        table.add_row(
            record.kind,
            record.record_id[:12],
            f"{status}{' (terminal)' if record.terminal else ''}",
            record.updated_at[:19],
        )
    console.print(table)


@main.command("demo")
@click.option(
    "--base-dir",
    default=None,
    type=click.Path(),
    help="Persist state under this directory instead of in memory",
)
def demo(base_dir: str | None) -> None:
    """Run a two-agent handoff over a shared context."""
    settings = CoordinationSettings(
        agents=(
            Agent("orchestrator", role=AgentRole.ORCHESTRATOR),
            Agent("performance", {"performance": 1.0}),
        ),
    )
    core = (
        CoordinationCore.on_disk(base_dir, settings)
        if base_dir
        else CoordinationCore(settings)
    )
    with core:
        genesis = core.contexts.create_context(
            "project", {"performance": {"budgets": {"lcp": 2500}}}
        )
        message = HandoffMessage(
            message_id=new_id(),
            source_agent="orchestrator",
            target_agent="performance",
            workflow_id="demo",
            handoff_type=HandoffType.INITIAL,
            task=Task(task_id="audit-budgets", title="Audit performance budgets"),
            context_id="project",
            context_version_id=genesis.version_id,
        )
        sent = core.handoffs.send(message)
        console.print(f"Handoff to performance: [bold]{sent.status.value}[/bold]")
        done = core.handoffs.complete(
            message.message_id,
            "performance",
            output={"lcp": 2400},
            changes=[Change.replace("/performance/budgets/lcp", 2400)],
        )
        console.print(f"Completion to orchestrator: [bold]{done.status.value}[/bold]")

        table = Table(title="Workflow demo")
        table.add_column("Agent", style="magenta")
        table.add_column("Task", style="cyan")
        table.add_column("Output")
        for entry in core.handoffs.workflow_history("demo"):
            table.add_row(entry.agent_id, entry.task_id, str(entry.output))
        console.print(table)
        tree = core.contexts.read("project").tree
        console.print(f"lcp budget now {tree['performance']['budgets']['lcp']}")


if __name__ == "__main__":
    main()
