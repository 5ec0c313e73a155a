"""
Attestation and Audit Commands.

Module: releasectl/commands/audit.py
"""

import click
from rich.console import Console
from rich.table import Table

from release_orchestrator.service.errors import ChainVerificationFailure
from release_orchestrator.service.orchestrator import PipelineOrchestrator

from ..session import execute, fail

console = Console()


@click.command(name="verify")
@click.argument("change_id")
@click.option("--show", is_flag=True, help="List every attestation in the chain")
@click.pass_context
def verify_cmd(ctx: click.Context, change_id: str, show: bool) -> None:
    """Verify a change's attestation chain."""

    async def operation(orchestrator: PipelineOrchestrator):
        return orchestrator.verify_chain(change_id), orchestrator.chain.entries(change_id)

    verification, entries = execute(ctx, operation)

    if show:
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("#", style="dim")
        table.add_column("Subject type", style="cyan")
        table.add_column("Subject")
        table.add_column("Hash", style="dim")
        for attestation in entries:
            table.add_row(
                str(attestation.sequence),
                attestation.subject_type.value,
                attestation.subject,
                attestation.hash[:16],
            )
        console.print(table)

    if not verification.valid:
        fail(
            ChainVerificationFailure(
                f"Attestation chain for change {change_id} broken at index "
                f"{verification.broken_at_index}: {verification.reason}",
                broken_at_index=verification.broken_at_index,
                change_id=change_id,
            )
        )

    console.print(
        f"[green]✓[/green] Attestation chain for {change_id} valid "
        f"({verification.length} entries)"
    )


@click.command(name="audit")
@click.pass_context
def audit_cmd(ctx: click.Context) -> None:
    """Cross-change audit summary built from the attestation chains."""

    async def operation(orchestrator: PipelineOrchestrator):
        return orchestrator.audit_summary()

    rows = execute(ctx, operation)
    if not rows:
        console.print("[yellow]No attested changes found.[/yellow]")
        return

    table = Table(title="Audit Summary", show_header=True, header_style="bold magenta")
    table.add_column("Change", style="cyan")
    table.add_column("Entries")
    table.add_column("Approvals")
    table.add_column("Stage results")
    table.add_column("Overrides", style="yellow")
    table.add_column("Refused", style="red")
    table.add_column("Last subject")
    table.add_column("Last recorded", style="dim")
    for row in rows:
        counts = row.get("counts", {})
        table.add_row(
            row["change_id"],
            str(row["length"]),
            str(counts.get("approval", 0)),
            str(counts.get("stage_result", 0)),
            str(row.get("overrides", 0)),
            str(row.get("refused", 0)),
            str(row.get("head_subject") or ""),
            str(row.get("last_recorded_at") or ""),
        )
    console.print(table)
