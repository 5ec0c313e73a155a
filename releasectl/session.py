"""
Shared command plumbing.

Module: releasectl/session.py

Builds the orchestrator from the CLI configuration, runs an async operation
against it, and turns every PipelineError into a printed blocking condition
and the error's exit code.
"""

import sys
from typing import Any, Awaitable, Callable, TypeVar

import anyio
import click
from rich.console import Console
from rich.table import Table

from release_orchestrator.service.errors import PipelineError
from release_orchestrator.service.orchestrator import PipelineOrchestrator

console = Console()

T = TypeVar("T")


def get_orchestrator(ctx: click.Context) -> PipelineOrchestrator:
    """Orchestrator for this invocation, restored from the state snapshot."""
    obj = ctx.ensure_object(dict)
    orchestrator = obj.get("orchestrator")
    if orchestrator is None:
        try:
            orchestrator = PipelineOrchestrator.from_config(obj["config"])
        except PipelineError as e:
            fail(e)
        except FileNotFoundError as e:
            console.print(f"[bold red]Error:[/bold red] {str(e)}")
            sys.exit(2)
        obj["orchestrator"] = orchestrator
    return orchestrator


def execute(
    ctx: click.Context, operation: Callable[[PipelineOrchestrator], Awaitable[T]]
) -> T:
    """
    Run an async operation between orchestrator start and stop, so queued
    events are delivered and adapters closed before the process exits.

    Exits with the error's code on PipelineError.
    """
    orchestrator = get_orchestrator(ctx)

    async def managed(orchestrator: PipelineOrchestrator) -> T:
        await orchestrator.start()
        try:
            return await operation(orchestrator)
        finally:
            await orchestrator.stop()

    try:
        return anyio.run(managed, orchestrator)
    except PipelineError as e:
        fail(e)


def fail(error: PipelineError) -> None:
    """Print the blocking condition and exit non-zero."""
    report_error(error)
    sys.exit(error.exit_code)


def report_error(error: PipelineError) -> None:
    console.print(f"[bold red]✗ {error.code}:[/bold red] {error.message}")

    details = dict(error.details)
    breaches = details.pop("breaches", None) or []
    blocking = details.pop("blocking", None) or []

    for breach in breaches:
        console.print(f"  [red]•[/red] {breach}")
    for condition in blocking:
        if condition not in breaches:
            console.print(f"  [yellow]•[/yellow] {condition}")

    if "chain_valid" in details:
        chain_ok = details.pop("chain_valid")
        console.print(
            "  chain: [green]valid[/green]" if chain_ok else "  chain: [red]BROKEN[/red]"
        )
    for key, value in details.items():
        console.print(f"  [dim]{key}: {value}[/dim]")


def key_value_table(title: str, rows: Any) -> Table:
    table = Table(title=title, show_header=False, box=None)
    table.add_column("Field", style="cyan", no_wrap=True)
    table.add_column("Value")
    for key, value in rows:
        table.add_row(key, "" if value is None else str(value))
    return table
