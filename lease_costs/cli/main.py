"""
CLI interface for lease costs.

Operator access to the cost engine, the billing window calculation and the
orphan trigger sweep, using a local AWS profile.
"""

import sys
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from lease_costs.aws.clients import get_client, get_cost_explorer_client
from lease_costs.aws.scheduler import SchedulerBackend
from lease_costs.config.loader import configure_logging
from lease_costs.core.billing_window import compute_billing_window
from lease_costs.core.cost_aggregation import collect_costs
from lease_costs.core.errors import LeaseCostsError
from lease_costs.core.reaper import DEFAULT_THRESHOLD_HOURS, OrphanScheduleReaper
from lease_costs.core.schemas import ACCOUNT_ID_PATTERN, DATE_PATTERN

app = typer.Typer()
console = Console()

EXIT_CODE_PASS = 0
EXIT_CODE_FAIL = 1


@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: str = typer.Option("WARNING", "--log-level", help="Logging level"),
):
    """Lease costs CLI."""
    configure_logging(log_level.upper())
    if ctx.invoked_subcommand is None:
        console.print("Lease Costs - Use --help to see available commands")


@app.command()
def costs(
    account_id: str = typer.Option(..., "--account-id", "-a", help="12-digit AWS account ID"),
    start_date: str = typer.Option(..., "--start-date", "-s", help="Inclusive start, YYYY-MM-DD"),
    end_date: str = typer.Option(..., "--end-date", "-e", help="Exclusive end, YYYY-MM-DD"),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS profile with Cost Explorer access"),
    resources: bool = typer.Option(False, "--resources", "-r", help="Include a per-resource breakdown"),
):
    """Query and aggregate an account's costs over a date range."""
    if not ACCOUNT_ID_PATTERN.match(account_id):
        console.print(f"[red]Error:[/] Invalid account ID: {account_id}. Must be 12 digits.")
        sys.exit(EXIT_CODE_FAIL)
    for label, value in (("start date", start_date), ("end date", end_date)):
        if not DATE_PATTERN.match(value):
            console.print(f"[red]Error:[/] Invalid {label}: {value}. Use YYYY-MM-DD.")
            sys.exit(EXIT_CODE_FAIL)
    if start_date >= end_date:
        console.print("[red]Error:[/] Start date must be before end date")
        sys.exit(EXIT_CODE_FAIL)

    try:
        client = get_cost_explorer_client(profile=profile)
        report = collect_costs(account_id, start_date, end_date, client, include_resources=resources)
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    _display_report(report)
    sys.exit(EXIT_CODE_PASS)


@app.command()
def window(
    lease_start: str = typer.Option(..., "--lease-start", help="ISO-8601 lease start"),
    lease_end: str = typer.Option(..., "--lease-end", help="ISO-8601 lease end"),
    padding_hours: int = typer.Option(8, "--padding-hours", min=0, max=168, help="Hours added on both ends"),
):
    """Show the billing window queried for a lease."""
    try:
        billing_window = compute_billing_window(lease_start, lease_end, padding_hours)
    except (LeaseCostsError, ValueError) as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    console.print(f"Start date (inclusive): {billing_window.start_date}")
    console.print(f"End date (exclusive):   {billing_window.end_date}")
    sys.exit(EXIT_CODE_PASS)


@app.command()
def reap(
    group: str = typer.Option(..., "--group", "-g", help="Schedule group to sweep"),
    threshold_hours: int = typer.Option(
        DEFAULT_THRESHOLD_HOURS, "--threshold-hours", min=1, max=720,
        help="Delete triggers whose fire time is older than this",
    ),
    profile: Optional[str] = typer.Option(None, "--profile", "-p", help="AWS profile"),
    region: Optional[str] = typer.Option(None, "--region", help="AWS region of the schedule group"),
    dry_run: bool = typer.Option(False, "--dry-run", help="Report stale triggers without deleting them"),
):
    """Delete collection triggers that were never cleaned up."""
    try:
        backend = SchedulerBackend(get_client("scheduler", region=region, profile=profile), group)
        summary = OrphanScheduleReaper(backend, threshold_hours=threshold_hours, dry_run=dry_run).sweep()
    except Exception as e:
        console.print(f"[red]Error:[/] {str(e)}")
        sys.exit(EXIT_CODE_FAIL)

    title = "Stale Trigger Sweep (dry run)" if dry_run else "Stale Trigger Sweep"
    console.print(f"\n[bold]{title}[/bold]")
    console.print("-" * 40)
    console.print(f"Scanned:       {summary.scanned}")
    console.print(f"Stale:         {summary.stale}")
    console.print(f"Deleted:       {summary.deleted}")
    console.print(f"Already gone:  {summary.already_gone}")
    console.print(f"Failed:        {summary.failed}")
    console.print(f"Skipped:       {summary.skipped}")
    sys.exit(EXIT_CODE_FAIL if summary.failed else EXIT_CODE_PASS)


def _format_currency(amount: float) -> str:
    """Format currency with proper symbols and formatting."""
    return f"${abs(amount):,.2f}"


def _display_report(report):
    """Display a cost report as tables."""
    console.print(f"\n[bold]Costs for account {report.account_id}[/bold]")
    console.print(f"{report.start_date} to {report.end_date} (end exclusive)")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Service")
    table.add_column("Cost", justify="right")
    for service in report.costs_by_service:
        table.add_row(service.service_name, _format_currency(service.cost))
    console.print(table)

    if report.costs_by_resource is not None:
        resource_table = Table(show_header=True, header_style="bold")
        resource_table.add_column("Resource")
        resource_table.add_column("Service")
        resource_table.add_column("Region")
        resource_table.add_column("Cost", justify="right")
        for resource in report.costs_by_resource:
            resource_table.add_row(
                resource.resource_name, resource.service_name, resource.region, _format_currency(resource.cost)
            )
        console.print(resource_table)

    console.print(f"[bold]Total:[/bold] {_format_currency(report.total_cost)}")


if __name__ == "__main__":
    app()
