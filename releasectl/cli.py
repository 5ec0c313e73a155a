"""
Releasectl Main CLI Application.

Module: releasectl/cli.py
"""

from typing import Optional
import logging
import sys
import click
from rich.console import Console
from dotenv import load_dotenv

# Load environment variables (signing secret, paths) from .env
load_dotenv(override=False)

from release_orchestrator.service.config import OrchestratorConfig

from . import __version__
from .commands import approval, audit, change, pipeline

console = Console()


@click.group(invoke_without_command=True)
@click.option(
    "--definition",
    envvar="DEFINITION_PATH",
    default=None,
    help="Pipeline definition YAML (defaults to DEFINITION_PATH or ./pipeline.yaml)",
)
@click.option(
    "--state",
    envvar="STATE_PATH",
    default=None,
    help="State snapshot file shared between invocations",
)
@click.option(
    "--log-level",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    default=None,
    help="Logging level",
)
@click.option("--version", is_flag=True, help="Show version and exit")
@click.pass_context
def cli(
    ctx: click.Context,
    definition: Optional[str],
    state: Optional[str],
    log_level: Optional[str],
    version: bool,
) -> None:
    """
    Releasectl v1.0 - approval-gated release pipelines.

    Submit changes, record tier approvals, run stage graphs and verify the
    attestation chain.
    """
    if version:
        console.print(f"[bold green]Releasectl v{__version__}[/bold green]")
        sys.exit(0)

    overrides = {}
    if definition:
        overrides["definition_path"] = definition
    if state:
        overrides["state_path"] = state
    if log_level:
        overrides["log_level"] = log_level.upper()
    cfg = OrchestratorConfig(**overrides)

    logging.basicConfig(
        level=getattr(logging, cfg.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    ctx.ensure_object(dict)
    ctx.obj["config"] = cfg

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())


# Register commands
cli.add_command(change.submit_cmd)
cli.add_command(change.status_cmd)
cli.add_command(change.abort_cmd)
cli.add_command(approval.approve_cmd)
cli.add_command(approval.override_cmd)
cli.add_command(pipeline.run_cmd)
cli.add_command(pipeline.accept_risk_cmd)
cli.add_command(audit.verify_cmd)
cli.add_command(audit.audit_cmd)


def main() -> None:
    """Main entry point for releasectl."""
    try:
        cli(obj={})
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted by user[/yellow]")
        sys.exit(130)
    except Exception as e:
        console.print(f"[bold red]Error:[/bold red] {str(e)}")
        sys.exit(1)


if __name__ == "__main__":
    main()
