"""Command Line Interface for the MedLink federation hub.

Operator commands for creating schemas, running federated queries, reading
the audit log, managing privacy blocks and issuing tokens for testing.

Security Impact:
    - Every query issued from the CLI is audited exactly like an API call
    - Privacy changes are made as a central admin and audited
    - IC numbers are masked in log output
"""

import asyncio
import logging
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Iterator, Optional

import typer
from rich.console import Console
from rich.table import Table

from medlink import __version__
from medlink.api.auth import create_access_token
from medlink.api.logging_config import setup_logging
from medlink.domain.enums import Role
from medlink.domain.models import AuditLogFilter, CallerContext
from medlink.domain.ports import MedLinkError
from medlink.infrastructure.settings import settings
from medlink.main import Federation

# Initialize Typer app and Rich console
app = typer.Typer(
    name="medlink",
    help="MedLink: federated cross-hospital medical record hub",
    add_completion=False
)
console = Console()

CLI_ACTOR_ID = "cli-operator"


def _admin_caller() -> CallerContext:
    return CallerContext(user_id=CLI_ACTOR_ID, role=Role.CENTRAL_ADMIN, ip_address="cli")


def _parse_date(value: Optional[str], name: str) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        console.print(f"[red]✗[/red] Invalid {name}: {value}")
        raise typer.Exit(code=1)


@contextmanager
def open_federation() -> Iterator[Federation]:
    """Build and initialize the federation, closing every store afterwards."""
    try:
        federation = Federation.build(settings)
        federation.initialize()
    except MedLinkError as e:
        console.print(f"[red]✗[/red] Failed to open federation: {str(e)}")
        raise typer.Exit(code=1)

    try:
        yield federation
    finally:
        federation.close()


@app.command()
def init() -> None:
    """Create the central schema and every hospital schema."""
    with console.status("[bold green]Initializing stores..."):
        with open_federation() as federation:
            hospital_count = len(federation.registry)

    console.print(f"[green]✓[/green] Central store and {hospital_count} hospital stores initialized")


@app.command()
def query(
    ic_number: str = typer.Argument(..., help="Patient IC number"),
    as_role: Role = typer.Option(Role.DOCTOR, "--as-role", "-r", help="Role to query as"),
    home_hospital: Optional[str] = typer.Option(None, "--home-hospital", help="Caller's hospital"),
    user_id: str = typer.Option(CLI_ACTOR_ID, "--user-id", "-u", help="Caller user id recorded in the audit log"),
    caller_ic: Optional[str] = typer.Option(None, "--caller-ic", help="Caller's own IC number (patients)"),
    medication_check: bool = typer.Option(False, "--medication-check", "-m", help="Run the medication cross-check"),
) -> None:
    """Run a federated query and print the merged timeline.

    Examples:
        medlink query 880101-14-5678 --home-hospital hospital-kl
        medlink query 880101-14-5678 --as-role patient --caller-ic 880101-14-5678
    """
    caller = CallerContext(
        user_id=user_id,
        role=as_role,
        ic_number=caller_ic,
        home_hospital_id=home_hospital,
        ip_address="cli",
    )

    with open_federation() as federation:
        try:
            result = asyncio.run(federation.orchestrator.query(
                ic_number, caller, include_medication_check=medication_check
            ))
        except MedLinkError as e:
            console.print(f"[red]✗[/red] Query failed: {str(e)}")
            raise typer.Exit(code=1)

    console.print(f"\n[bold blue]Federated query[/bold blue] "
                  f"({result.total_hospitals_reachable}/{result.total_hospitals_queried} hospitals reachable)")
    if result.patient_summary:
        console.print(f"[dim]Patient:[/dim] {result.patient_summary.full_name}")
    if result.excluded_hospitals:
        console.print(f"[dim]Excluded by privacy settings:[/dim] {', '.join(result.excluded_hospitals)}")

    hospitals_table = Table(show_header=True, header_style="bold")
    hospitals_table.add_column("Hospital", style="cyan")
    hospitals_table.add_column("Status")
    hospitals_table.add_column("Records", justify="right")
    hospitals_table.add_column("Read-only")
    hospitals_table.add_column("Time (ms)", justify="right")
    for bundle in result.hospitals:
        status = f"[green]{bundle.status.value}[/green]" if bundle.succeeded else f"[red]{bundle.status.value}[/red]"
        hospitals_table.add_row(
            bundle.hospital_name,
            status,
            str(bundle.record_count),
            "yes" if bundle.is_read_only else "no",
            f"{bundle.response_time_ms:.1f}",
        )
    console.print(hospitals_table)

    if result.timeline:
        timeline_table = Table(show_header=True, header_style="bold", title="Timeline")
        timeline_table.add_column("Visit date")
        timeline_table.add_column("Hospital", style="cyan")
        timeline_table.add_column("Type")
        timeline_table.add_column("Diagnosis")
        for record in result.timeline:
            timeline_table.add_row(
                record.visit_date.strftime("%Y-%m-%d %H:%M"),
                record.source_hospital or record.hospital_id,
                record.visit_type.value,
                ", ".join(record.diagnosis),
            )
        console.print(timeline_table)

    if result.medication_check and result.medication_check.interactions:
        console.print("\n[bold]Drug interactions:[/bold]")
        for interaction in result.medication_check.interactions:
            console.print(
                f"  [yellow]⚠[/yellow] {interaction.medication_a} ({interaction.hospital_a}) + "
                f"{interaction.medication_b} ({interaction.hospital_b}): "
                f"[bold]{interaction.severity.value}[/bold] - {interaction.description}"
            )

    if not result.is_complete:
        console.print("\n[yellow]⚠[/yellow] Result is incomplete: some hospitals could not be reached")


@app.command("audit-logs")
def audit_logs(
    actor_id: Optional[str] = typer.Option(None, "--actor", help="Filter by actor id"),
    target_ic: Optional[str] = typer.Option(None, "--ic", help="Filter by patient IC number"),
    start_date: Optional[str] = typer.Option(None, "--start", help="Start date (ISO format)"),
    end_date: Optional[str] = typer.Option(None, "--end", help="End date (ISO format)"),
    limit: int = typer.Option(50, "--limit", "-n", min=1, help="Maximum entries (capped at 1000)"),
) -> None:
    """Print audit log entries, newest first."""
    try:
        filters = AuditLogFilter(
            actor_id=actor_id,
            target_ic_number=target_ic,
            start_date=_parse_date(start_date, "start date"),
            end_date=_parse_date(end_date, "end date"),
            limit=limit,
        )
    except ValueError as e:
        console.print(f"[red]✗[/red] Invalid filter: {str(e)}")
        raise typer.Exit(code=1)

    with open_federation() as federation:
        try:
            entries = federation.audit_trail.search(filters)
        except MedLinkError as e:
            console.print(f"[red]✗[/red] Audit log query failed: {str(e)}")
            raise typer.Exit(code=1)

    table = Table(show_header=True, header_style="bold")
    table.add_column("Timestamp")
    table.add_column("Action", style="cyan")
    table.add_column("Actor")
    table.add_column("Target IC")
    table.add_column("Hospital")
    table.add_column("OK")
    table.add_column("Details")
    for entry in entries:
        table.add_row(
            entry.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            entry.action.value,
            f"{entry.actor_id} ({entry.actor_type.value})",
            entry.target_ic_number or "",
            entry.target_hospital_id or "",
            "[green]✓[/green]" if entry.success else "[red]✗[/red]",
            entry.details,
        )
    console.print(table)
    console.print(f"[dim]{len(entries)} entries[/dim]")


def _set_block(ic_number: str, hospital_id: str, is_blocked: bool) -> None:
    with open_federation() as federation:
        try:
            federation.consent_service.set_hospital_access(_admin_caller(), ic_number, hospital_id, is_blocked)
        except (MedLinkError, ValueError) as e:
            console.print(f"[red]✗[/red] Privacy change failed: {str(e)}")
            raise typer.Exit(code=1)
        name = federation.registry.name_of(hospital_id)

    verb = "blocked" if is_blocked else "unblocked"
    console.print(f"[green]✓[/green] {name} {verb} for {ic_number}")


@app.command()
def block(
    ic_number: str = typer.Argument(..., help="Patient IC number"),
    hospital_id: str = typer.Argument(..., help="Hospital to block"),
) -> None:
    """Block a hospital from seeing a patient's records."""
    _set_block(ic_number, hospital_id, True)


@app.command()
def unblock(
    ic_number: str = typer.Argument(..., help="Patient IC number"),
    hospital_id: str = typer.Argument(..., help="Hospital to unblock"),
) -> None:
    """Lift a privacy block."""
    _set_block(ic_number, hospital_id, False)


@app.command()
def index(ic_number: str = typer.Argument(..., help="Patient IC number")) -> None:
    """Show which hospitals hold records for a patient."""
    with open_federation() as federation:
        try:
            entry = federation.central.lookup(ic_number)
        except MedLinkError as e:
            console.print(f"[red]✗[/red] Index lookup failed: {str(e)}")
            raise typer.Exit(code=1)
        names = [federation.registry.name_of(h) for h in entry.hospital_ids] if entry else []

    if entry is None:
        console.print(f"[yellow]⚠[/yellow] {ic_number} is not in the central index")
        raise typer.Exit(code=1)

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("IC number:", entry.ic_number)
    info_table.add_row("Hospitals:", ", ".join(names))
    info_table.add_row("Last updated:", entry.last_updated.isoformat())
    console.print(info_table)


@app.command("issue-token")
def issue_token(
    user_id: str = typer.Argument(..., help="Token subject"),
    role: Role = typer.Option(..., "--role", "-r", help="Caller role"),
    ic_number: Optional[str] = typer.Option(None, "--ic", help="Caller's own IC number (patients)"),
    hospital_id: Optional[str] = typer.Option(None, "--hospital", help="Caller's hospital (staff)"),
    expires_minutes: Optional[int] = typer.Option(None, "--expires", min=1, help="Lifetime in minutes"),
) -> None:
    """Issue a bearer token for local testing."""
    auth_config = settings.auth
    if auth_config.uses_dev_secret:
        console.print("[yellow]⚠[/yellow] Signing with the development key; set MEDLINK_JWT_SECRET in production")

    token = create_access_token(
        auth_config,
        user_id=user_id,
        role=role,
        ic_number=ic_number,
        hospital_id=hospital_id,
        expires_delta=timedelta(minutes=expires_minutes) if expires_minutes else None,
    )
    console.print(token)


@app.command()
def info() -> None:
    """Display configuration."""
    console.print("[bold blue]MedLink Configuration[/bold blue]\n")

    federation_config = settings.federation
    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Central store:", settings.central_db_config.db_path)
    info_table.add_row("Hospital timeout:", f"{federation_config.hospital_timeout_seconds}s")
    info_table.add_row("Circuit breaker:",
                       f"{federation_config.breaker_failure_threshold_percent:.0f}% failures, "
                       f"{federation_config.breaker_cooldown_seconds:.0f}s cooldown")
    info_table.add_row("Audit limit:", f"{federation_config.audit_default_limit} (max {federation_config.audit_max_limit})")
    console.print(info_table)

    hospitals_table = Table(show_header=True, header_style="bold", title="Hospitals")
    hospitals_table.add_column("ID", style="cyan")
    hospitals_table.add_column("Name")
    hospitals_table.add_column("City")
    hospitals_table.add_column("Store")
    for hospital in settings.hospitals:
        hospitals_table.add_row(hospital.id, hospital.name, hospital.city, hospital.database.db_path)
    console.print(hospitals_table)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"MedLink v{__version__}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", callback=_version_callback, is_eager=True, help="Show version information"
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """MedLink: federated cross-hospital medical record hub."""
    setup_logging(use_json=settings.json_logs, log_level="DEBUG" if verbose else "WARNING")
    if verbose:
        logging.getLogger(__name__).debug("Verbose logging enabled")


if __name__ == "__main__":
    app()
