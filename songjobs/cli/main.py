"""
CLI interface for songjobs.

Provides command-line access to job submission, reconciliation and quotas.
"""

import json
import sys
from datetime import datetime
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from songjobs.config.loader import AppConfig, default_config, load_config
from songjobs.core.engine import JobNotFound, JobView, get_engine
from songjobs.core.ledger import LedgerNotFound, QuotaExhausted, quota_view
from songjobs.core.plans import grant_plan
from songjobs.logging_config import setup_logging
from songjobs.provider.gateway import ProviderRejected, ProviderUnavailable
from songjobs.storage.repository import initialize_schema

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1

_STATUS_STYLE = {
    "preparing": "dim",
    "running": "yellow",
    "succeeded": "green",
    "failed": "red",
}


def _config(ctx: typer.Context) -> AppConfig:
    return ctx.obj["config"]


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    config_path: Optional[str] = typer.Option(
        None,
        "--config",
        "-c",
        envvar="SONGJOBS_CONFIG",
        help="Path to YAML configuration file"
    ),
):
    """songjobs CLI."""
    try:
        config = load_config(config_path) if config_path else default_config()
    except Exception as e:
        console.print(f"[red]Error loading configuration:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    setup_logging(config.log_level, stream=sys.stderr)
    ctx.obj = {"config": config}
    if ctx.invoked_subcommand is None:
        console.print("songjobs - Use --help to see available commands")


@app.command()
def init(ctx: typer.Context):
    """Initialize the songjobs database."""
    try:
        initialize_schema(_config(ctx).database.path)
        console.print("[green]✓[/] Database initialized successfully")
        sys.exit(EXIT_CODE_PASS)
    except Exception as e:
        console.print(f"[red]Error initializing database:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)


@app.command()
def grant(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer receiving the plan"),
    plan_id: str = typer.Argument(..., help="Configured plan id"),
    renews_at: Optional[str] = typer.Option(
        None,
        "--renews-at",
        help="End of the billing period (ISO 8601)"
    ),
    reset: bool = typer.Option(
        False,
        "--reset",
        help="Zero the consumption counter (period renewal)"
    ),
):
    """Create or replace a customer's quota ledger from a plan."""
    try:
        renews = datetime.fromisoformat(renews_at) if renews_at else None
        ledger = grant_plan(customer_id, plan_id, _config(ctx), renews_at=renews, reset_usage=reset)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(
        f"[green]✓[/] {ledger.customer_id} now on [bold]{ledger.plan_name}[/] "
        f"({_format_remaining(ledger.remaining)} remaining)"
    )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def quota(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer to report on"),
):
    """Show a customer's quota."""
    try:
        view = quota_view(customer_id, _config(ctx).database.path)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if view.reason == "no_entitlement_record":
        console.print(f"[yellow]No quota ledger for {customer_id}[/]")
    else:
        table = Table(title=f"Quota for {customer_id}")
        table.add_column("Plan")
        table.add_column("Allowance", justify="right")
        table.add_column("Used", justify="right")
        table.add_column("Remaining", justify="right")
        table.add_column("Renews")
        table.add_row(
            view.plan_name or "-",
            "unlimited" if view.unlimited else str(view.allowance_per_period),
            str(view.consumed_count),
            _format_remaining(view.remaining),
            view.renews_at.isoformat() if view.renews_at else "-",
        )
        console.print(table)

    if view.unbilled_jobs:
        console.print(
            f"[yellow]{view.unbilled_jobs} succeeded job(s) not yet charged to this quota[/]"
        )
    sys.exit(EXIT_CODE_PASS)


@app.command()
def submit(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer requesting the song"),
    prompt: Optional[str] = typer.Option(None, "--prompt", "-p", help="Style prompt"),
    lyrics: Optional[str] = typer.Option(None, "--lyrics", "-l", help="Song lyrics"),
    model: str = typer.Option("auto", "--model", "-m", help="Provider model"),
    reference_id: Optional[str] = typer.Option(None, "--reference-id", help="Reference track id"),
    vocal_id: Optional[str] = typer.Option(None, "--vocal-id", help="Vocal id"),
    melody_id: Optional[str] = typer.Option(None, "--melody-id", help="Melody id"),
):
    """Submit a new song generation job."""
    request = {
        "prompt": prompt,
        "lyrics": lyrics,
        "model": model,
        "reference_id": reference_id,
        "vocal_id": vocal_id,
        "melody_id": melody_id,
    }
    try:
        view = get_engine(_config(ctx)).submit(customer_id, request)
    except LedgerNotFound:
        console.print(f"[red]No quota ledger for {customer_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except QuotaExhausted:
        console.print(f"[red]No songs remaining for {customer_id}[/]")
        sys.exit(EXIT_CODE_FAIL)
    except (ProviderUnavailable, ProviderRejected) as e:
        console.print(f"[red]Provider did not accept the job:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_job(view)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reconcile(
    ctx: typer.Context,
    ref: str = typer.Argument(..., help="Internal job id or provider job reference"),
    as_json: bool = typer.Option(False, "--json", help="Print the job view as JSON"),
):
    """Reconcile one job with the provider and show its state."""
    try:
        view = get_engine(_config(ctx)).reconcile(ref)
    except JobNotFound:
        console.print(f"[red]Unknown job:[/] {ref}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if as_json:
        typer.echo(json.dumps(view.to_dict()))
    else:
        _display_job(view)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def notify(
    ctx: typer.Context,
    payload_file: str = typer.Argument(..., help="JSON file holding a provider completion callback"),
):
    """Apply a provider completion callback."""
    try:
        with open(payload_file, 'r', encoding='utf-8') as f:
            payload = json.load(f)
        view = get_engine(_config(ctx)).apply_notification(payload)
    except JobNotFound as e:
        console.print(f"[red]Unknown job:[/] {e.ref}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_job(view)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def jobs(
    ctx: typer.Context,
    customer_id: str = typer.Argument(..., help="Customer whose jobs to list"),
    limit: int = typer.Option(50, "--limit", "-n", help="Maximum number of jobs"),
):
    """List a customer's jobs, newest first."""
    try:
        views = get_engine(_config(ctx)).list_jobs(customer_id, limit=limit)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    if not views:
        console.print(f"[dim]No jobs for {customer_id}[/]")
        sys.exit(EXIT_CODE_PASS)

    table = Table(title=f"Jobs for {customer_id}")
    table.add_column("Job")
    table.add_column("Provider ref")
    table.add_column("Status")
    table.add_column("Charged")
    table.add_column("Stored")
    for view in views:
        table.add_row(
            view.job_id,
            view.external_job_ref,
            _format_status(view.status.value),
            "yes" if view.consumed else "no",
            "yes" if view.result_reference else "no",
        )
    console.print(table)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def url(
    ctx: typer.Context,
    job_id: str = typer.Argument(..., help="Internal job id"),
    customer_id: str = typer.Argument(..., help="Customer that owns the job"),
):
    """Print a signed URL for a persisted song."""
    try:
        signed = get_engine(_config(ctx)).signed_result_url(job_id, customer_id)
    except JobNotFound:
        console.print(f"[red]Not found:[/] {job_id}")
        sys.exit(EXIT_CODE_FAIL)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    typer.echo(signed)
    sys.exit(EXIT_CODE_PASS)


def _format_remaining(remaining: int) -> str:
    """Render a remaining count, where -1 means unlimited."""
    return "unlimited" if remaining < 0 else str(remaining)


def _format_status(status: str) -> str:
    style = _STATUS_STYLE.get(status, "")
    return f"[{style}]{status}[/]" if style else status


def _display_job(view: JobView):
    """Display one job view."""
    console.print(f"\n[bold]Job[/bold] {view.job_id}")
    console.print("-" * 40)
    console.print(f"Provider ref: {view.external_job_ref}")
    console.print(f"Status: {_format_status(view.status.value)}")
    if view.stale:
        console.print("[yellow]Provider unavailable, showing last known state[/]")
    console.print(f"Charged: {'yes' if view.consumed else 'no'}")
    if view.result_reference:
        console.print(f"Listen: {view.result_reference}")


if __name__ == "__main__":
    app()
