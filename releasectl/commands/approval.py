"""
Approval Commands.

Module: releasectl/commands/approval.py
"""

from typing import Optional

import click
from rich.console import Console

from release_orchestrator.service.models import ApprovalDecision, ApprovalTier
from release_orchestrator.service.orchestrator import PipelineOrchestrator

from ..session import execute

console = Console()


@click.command(name="approve")
@click.argument("change_id")
@click.option(
    "--tier",
    type=click.Choice([t.value for t in ApprovalTier]),
    required=True,
    help="Approval tier being signed",
)
@click.option("--approver", required=True, help="Approver identity")
@click.option("--signature", required=True, help="Approver signature")
@click.option(
    "--decision",
    type=click.Choice([d.value for d in ApprovalDecision]),
    default=ApprovalDecision.APPROVE.value,
    show_default=True,
)
@click.option("--note", default=None, help="Risk note (required for conditional approval)")
@click.pass_context
def approve_cmd(
    ctx: click.Context,
    change_id: str,
    tier: str,
    approver: str,
    signature: str,
    decision: str,
    note: Optional[str],
) -> None:
    """Record a tier decision for a change."""

    async def operation(orchestrator: PipelineOrchestrator):
        record = await orchestrator.submit_approval(
            change_id,
            ApprovalTier(tier),
            ApprovalDecision(decision),
            approver,
            signature,
            note,
        )
        return record, orchestrator.get_run(change_id)

    record, run = execute(ctx, operation)
    color = "green" if record.decision.is_approval else "red"
    console.print(
        f"[{color}]✓[/{color}] {record.tier.value}: {record.decision.value} by {record.approver}"
    )
    console.print(f"[dim]Change {change_id} is {run.state.value}[/dim]")


@click.command(name="override")
@click.argument("change_id")
@click.option("--authority", required=True, help="Mission owner invoking the override")
@click.option("--signature", required=True, help="Authority signature")
@click.option("--reason", required=True, help="Justification recorded on the chain")
@click.pass_context
def override_cmd(
    ctx: click.Context, change_id: str, authority: str, signature: str, reason: str
) -> None:
    """Emergency override of a tier rejection."""

    async def operation(orchestrator: PipelineOrchestrator):
        attestation = await orchestrator.emergency_override(change_id, authority, reason, signature)
        return attestation, orchestrator.get_run(change_id)

    attestation, run = execute(ctx, operation)
    console.print(
        f"[yellow]⚠ Emergency override recorded[/yellow] (attestation {attestation.attestation_id})"
    )
    console.print(f"[dim]Change {change_id} is {run.state.value}[/dim]")
