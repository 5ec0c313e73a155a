"""
Pipeline Execution Commands.

Module: releasectl/commands/pipeline.py
"""

import click
from rich.console import Console

from release_orchestrator.service.models import PipelineState
from release_orchestrator.service.orchestrator import PipelineOrchestrator

from ..session import execute, fail

console = Console()


@click.command(name="run")
@click.argument("change_id")
@click.option(
    "--wait",
    is_flag=True,
    help="Wait for outstanding approvals (up to the approval timeout) before running",
)
@click.pass_context
def run_cmd(ctx: click.Context, change_id: str, wait: bool) -> None:
    """Run the stage graph for an approved change."""

    async def operation(orchestrator: PipelineOrchestrator):
        if wait:
            await orchestrator.execute_when_ready(change_id)
        else:
            await orchestrator.run_pipeline(change_id)
        return orchestrator.status(change_id), orchestrator.blocking_error(change_id)

    report, error = execute(ctx, operation)

    for name, stage_run in report.stages.items():
        mark = "[green]✓[/green]" if stage_run.status.is_success else "[red]✗[/red]"
        console.print(f"{mark} {name}: {stage_run.status.value}")

    if report.state == PipelineState.DEPLOYED:
        console.print(f"\n[bold green]Change {change_id} deployed[/bold green]")
        return

    console.print(f"\n[bold red]Change {change_id} {report.state.value}[/bold red]")
    if error is not None:
        fail(error)


@click.command(name="accept-risk")
@click.argument("change_id")
@click.argument("stage")
@click.option("--approver", required=True, help="Mission owner accepting the risk")
@click.option("--signature", required=True, help="Approver signature")
@click.option("--note", required=True, help="Risk acceptance note")
@click.pass_context
def accept_risk_cmd(
    ctx: click.Context, change_id: str, stage: str, approver: str, signature: str, note: str
) -> None:
    """Accept the risk of a policy-failed STAGE so the pipeline can resume."""

    async def operation(orchestrator: PipelineOrchestrator):
        stage_run = await orchestrator.accept_risk(change_id, stage, approver, note, signature)
        return stage_run, orchestrator.get_run(change_id)

    stage_run, run = execute(ctx, operation)
    console.print(
        f"[yellow]⚠ Stage '{stage}' reclassified {stage_run.status.value}[/yellow] "
        f"(supersedes {stage_run.supersedes})"
    )
    console.print(f"[dim]Change {change_id} is {run.state.value}[/dim]")
