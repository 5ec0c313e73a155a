"""
Change Commands.

Module: releasectl/commands/change.py
"""

from typing import Optional

import click
from rich.console import Console
from rich.table import Table

from release_orchestrator.service.models import PipelineState
from release_orchestrator.service.orchestrator import PipelineOrchestrator

from ..session import execute, fail, get_orchestrator, key_value_table

console = Console()

STATE_STYLES = {
    PipelineState.AWAITING_APPROVAL: "yellow",
    PipelineState.READY: "cyan",
    PipelineState.RUNNING: "blue",
    PipelineState.BLOCKED: "red",
    PipelineState.DEPLOYED: "green",
    PipelineState.REJECTED: "red",
    PipelineState.ABORTED: "magenta",
    PipelineState.EXPIRED: "red",
}


@click.command(name="submit")
@click.argument("revision")
@click.option("--by", "submitted_by", required=True, help="Submitting engineer")
@click.option("--change-id", default=None, help="Use this change ID instead of a generated one")
@click.option("--description", default=None, help="Short description of the change")
@click.pass_context
def submit_cmd(
    ctx: click.Context,
    revision: str,
    submitted_by: str,
    change_id: Optional[str],
    description: Optional[str],
) -> None:
    """Submit a change at REVISION; it waits for tier approvals."""

    async def operation(orchestrator: PipelineOrchestrator):
        return await orchestrator.submit_change(revision, submitted_by, change_id, description)

    run = execute(ctx, operation)
    console.print(f"[green]✓[/green] Change [bold]{run.change_id}[/bold] submitted")
    if run.approval_deadline:
        console.print(f"[dim]Approvals due by {run.approval_deadline.isoformat()}[/dim]")


@click.command(name="status")
@click.argument("change_id")
@click.option("--check", is_flag=True, help="Exit non-zero if the change is blocked")
@click.pass_context
def status_cmd(ctx: click.Context, change_id: str, check: bool) -> None:
    """Show approvals, stage results, blocking conditions and chain status."""
    orchestrator = get_orchestrator(ctx)

    async def operation(orchestrator: PipelineOrchestrator):
        return orchestrator.status(change_id)

    report = execute(ctx, operation)
    style = STATE_STYLES.get(report.state, "white")

    console.print(
        key_value_table(
            f"Change {report.change.change_id}",
            [
                ("revision", report.change.revision),
                ("submitted by", report.change.submitted_by),
                ("state", f"[{style}]{report.state.value}[/{style}]"),
                ("reason", report.state_reason),
                ("pending tiers", ", ".join(t.value for t in report.pending_tiers) or "-"),
            ],
        )
    )

    if report.approvals:
        approvals = Table(title="Approvals", show_header=True, header_style="bold magenta")
        approvals.add_column("Tier", style="cyan")
        approvals.add_column("Decision")
        approvals.add_column("Approver")
        approvals.add_column("At", style="dim")
        for record in report.approvals:
            decision = record.decision.value + (" (override)" if record.override else "")
            approvals.add_row(
                record.tier.value, decision, record.approver, record.timestamp.isoformat()
            )
        console.print(approvals)

    if report.stages:
        stages = Table(title="Stages", show_header=True, header_style="bold magenta")
        stages.add_column("Stage", style="cyan")
        stages.add_column("Status")
        stages.add_column("Attempts", style="dim")
        stages.add_column("Detail")
        for name, stage_run in report.stages.items():
            stages.add_row(
                name, stage_run.status.value, str(stage_run.attempts), stage_run.error or ""
            )
        console.print(stages)

    for condition in report.blocking:
        console.print(f"[red]•[/red] {condition}")

    if report.chain.valid:
        console.print(f"[green]✓[/green] Attestation chain valid ({report.chain.length} entries)")
    else:
        console.print(
            f"[red]✗[/red] Attestation chain broken at index "
            f"{report.chain.broken_at_index}: {report.chain.reason}"
        )

    if check:
        error = orchestrator.blocking_error(change_id)
        if error is not None:
            fail(error)


@click.command(name="abort")
@click.argument("change_id")
@click.option("--by", "requested_by", required=True, help="Operator requesting the abort")
@click.option("--reason", default="aborted by operator", help="Reason recorded on the chain")
@click.pass_context
def abort_cmd(ctx: click.Context, change_id: str, requested_by: str, reason: str) -> None:
    """Abort a change's pipeline."""

    async def operation(orchestrator: PipelineOrchestrator):
        return await orchestrator.abort(change_id, requested_by, reason)

    run = execute(ctx, operation)
    if run.state == PipelineState.RUNNING:
        console.print(
            f"[yellow]Abort of change {change_id} requested; "
            f"the process running it stops at the next stage checkpoint[/yellow]"
        )
        return
    console.print(f"[yellow]Change {change_id} is {run.state.value}[/yellow]")
