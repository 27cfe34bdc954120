"""
School Records Access Control - Interactive CLI
===============================================

Operator command-line interface for inspecting the school policy,
testing access decisions, reviewing the audit trail and handling
security alerts.

Features:
- Policy inspection (resources, row rules, column rules, role windows)
- Real-time access decision testing with row filtering and masking
- Audit trail review, statistics, SIEM export and retention purge
- Anomaly scans, alert resolution and a background monitor

Built with Typer and Rich for a polished user experience.
"""

import logging
import time
from datetime import datetime, timedelta
from typing import Optional

import typer
from rich import box
from rich.console import Console
from rich.logging import RichHandler
from rich.panel import Panel
from rich.table import Table

from config import get_settings

# Initialize CLI app and console
app = typer.Typer(
    name="school-access",
    help="School Records Access Control - policy, audit and monitoring",
    add_completion=False
)

console = Console()

# Sub-commands
policy_app = typer.Typer(help="Inspect the access-control policy")
test_app = typer.Typer(help="Test access decisions")
audit_app = typer.Typer(help="Review the audit trail")
alerts_app = typer.Typer(help="Scan for anomalies and manage alerts")
monitor_app = typer.Typer(help="Run the anomaly monitor")

app.add_typer(policy_app, name="policy")
app.add_typer(test_app, name="test")
app.add_typer(audit_app, name="audit")
app.add_typer(alerts_app, name="alerts")
app.add_typer(monitor_app, name="monitor")

SEVERITY_STYLES = {"HIGH": "red", "MEDIUM": "yellow", "LOW": "cyan"}
OUTCOME_STYLES = {"ALLOWED": "green", "FILTERED": "yellow", "DENIED": "red"}


def configure_logging(level: Optional[str] = None):
    logging.basicConfig(
        level=(level or get_settings().log_level).upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True, show_path=False)]
    )


def get_service():
    """Build the SQL-backed access-control service."""
    from core.service import SchoolAccessControl
    from models.database import init_db
    from scenarios import build_school_registry, demo_ownership

    init_db()
    return SchoolAccessControl.from_settings(build_school_registry(), demo_ownership())


def print_banner():
    """Display application banner."""
    banner = """
    ╔═══════════════════════════════════════════════════════════╗
    ║         SCHOOL RECORDS ACCESS CONTROL                     ║
    ║                                                           ║
    ║   Row filtering, column masking, auditing and alerts      ║
    ╚═══════════════════════════════════════════════════════════╝
    """
    console.print(Panel(banner, style="bold blue"))


def _parse_time(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise typer.BadParameter(f"Expected ISO timestamp (e.g. 2024-03-13T21:00), got {value!r}")


# ============================================================================
# Database Commands
# ============================================================================

@app.command()
def init():
    """Initialize the database with schema."""
    from models.database import init_db
    init_db()
    console.print("[green]Database initialized successfully![/green]")


@app.command()
def reset():
    """Reset database (WARNING: destroys all audit records, alerts and sessions)."""
    if typer.confirm("This will delete all data. Are you sure?"):
        from models.database import reset_db
        reset_db()
        console.print("[yellow]Database reset complete.[/yellow]")


@app.command()
def demo():
    """Open demo sessions for every staff role."""
    from scenarios import load_demo_data
    tokens = load_demo_data()

    table = Table(title="Demo Sessions", box=box.ROUNDED)
    table.add_column("User", style="cyan")
    table.add_column("Token", style="dim")
    for user_id, token in tokens.items():
        table.add_row(user_id, token)
    console.print(table)

    console.print("\nTry these commands to explore:")
    console.print("  [cyan]python main.py policy list[/cyan]")
    console.print("  [cyan]python main.py test access --user TEACHER_USER --resource STUDENTS[/cyan]")
    console.print("  [cyan]python main.py test scenario all[/cyan]")


# ============================================================================
# Policy Commands
# ============================================================================

@policy_app.command("list")
def list_resources():
    """List protected resources."""
    from models.domain import Operation
    from scenarios import build_school_registry

    registry = build_school_registry()
    table = Table(title="Protected Resources", box=box.ROUNDED)
    table.add_column("Resource", style="cyan")
    table.add_column("Sensitive Columns", style="yellow")
    table.add_column("Audit (READ / UPDATE)")
    table.add_column("Rules")
    table.add_column("Description", style="dim")

    for descriptor in registry.resources():
        read = descriptor.audit_requirement(Operation.READ)
        update = descriptor.audit_requirement(Operation.UPDATE)
        table.add_row(
            descriptor.name,
            ", ".join(sorted(descriptor.sensitive_columns)) or "-",
            f"{read.mode.value} / {update.mode.value}",
            str(len(registry.rules(descriptor.name))),
            descriptor.description
        )
    console.print(table)


@policy_app.command("show")
def show_resource(name: str = typer.Argument(..., help="Resource name")):
    """Show row rules and column rules for a resource."""
    from core.errors import UnknownResourceError
    from models.domain import Filtered
    from scenarios import build_school_registry

    registry = build_school_registry()
    try:
        descriptor = registry.resource(name)
    except UnknownResourceError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    table = Table(title=f"Row Rules: {descriptor.name}", box=box.ROUNDED)
    table.add_column("Role", style="cyan")
    table.add_column("Operations")
    table.add_column("Effect")
    table.add_column("Filter", style="magenta")
    table.add_column("Window", style="dim")

    for rule in registry.rules(descriptor.name):
        effect = rule.effect
        window = registry.role_window(rule.role)
        table.add_row(
            rule.role.value,
            ", ".join(sorted(op.value for op in rule.operations)),
            effect.kind.value,
            effect.template.describe() if isinstance(effect, Filtered) else "-",
            window.describe() if window else "-"
        )
    console.print(table)

    column_rules = registry.column_rules(descriptor.name)
    if column_rules:
        columns = Table(title="Column Rules", box=box.ROUNDED)
        columns.add_column("Column", style="yellow")
        columns.add_column("Visible To")
        columns.add_column("Treatment")
        columns.add_column("Mask")
        for rule in column_rules:
            columns.add_row(
                rule.column,
                ", ".join(sorted(r.value for r in rule.visible_to)),
                rule.treatment.value,
                rule.mask_style.value
            )
        console.print(columns)


@policy_app.command("matrix")
def show_matrix(
    user: str = typer.Option(..., "--user", "-u", help="Demo user id (e.g. TEACHER_USER)"),
    at: Optional[str] = typer.Option(None, "--at", help="ISO timestamp to evaluate at")
):
    """Show what a demo user can do on every resource."""
    from models.domain import Identity
    from scenarios.demo_data import DEMO_STAFF

    staff = {user_id: (role, dept) for user_id, role, dept in DEMO_STAFF}
    if user not in staff:
        console.print(f"[red]Unknown demo user '{user}'[/red]")
        raise typer.Exit(1)
    role, department = staff[user]
    identity = Identity(id=user, role=role, department=department)

    summary = get_service().access_summary(identity, at=_parse_time(at))

    table = Table(title=f"Access Summary: {user} ({role.value})", box=box.ROUNDED)
    table.add_column("Resource", style="cyan")
    for op in ("READ", "INSERT", "UPDATE", "DELETE"):
        table.add_column(op)
    for resource, entry in summary['resources'].items():
        cells = []
        for op in ("READ", "INSERT", "UPDATE", "DELETE"):
            effect = entry[op]['effect']
            style = {"UNRESTRICTED": "green", "FILTERED": "yellow"}.get(effect, "red")
            cells.append(f"[{style}]{effect}[/{style}]")
        table.add_row(resource, *cells)
    console.print(table)


# ============================================================================
# Test Commands
# ============================================================================

@test_app.command("access")
def test_access(
    user: Optional[str] = typer.Option(None, "--user", "-u", help="Demo user id"),
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Session token (from 'demo')"),
    resource: str = typer.Option(..., "--resource", "-r", help="Resource name"),
    operation: str = typer.Option("READ", "--operation", "-o", help="READ, INSERT, UPDATE or DELETE"),
    at: Optional[str] = typer.Option(None, "--at", help="ISO timestamp to evaluate at")
):
    """Test an access decision and show the rows it would return."""
    from core.errors import AuditAppendFailure, AuthenticationError, OutOfWindowError
    from core.evaluator import apply_decision
    from models.domain import Identity, Operation
    from scenarios import sample_rows
    from scenarios.demo_data import DEMO_STAFF

    moment = _parse_time(at)
    try:
        op = Operation.parse(operation)
    except ValueError:
        raise typer.BadParameter(
            f"Expected one of READ, INSERT, UPDATE, DELETE, got {operation!r}", param_hint="--operation"
        )
    service = get_service()

    if token:
        try:
            identity = service.authenticate(token)
        except AuthenticationError as e:
            console.print(f"[red]Authentication failed: {e}[/red]")
            raise typer.Exit(1)
    elif user:
        staff = {user_id: (role, dept) for user_id, role, dept in DEMO_STAFF}
        if user not in staff:
            console.print(f"[red]Unknown demo user '{user}'[/red]")
            raise typer.Exit(1)
        role, department = staff[user]
        identity = Identity(id=user, role=role, department=department)
    else:
        console.print("[red]Provide --user or --token[/red]")
        raise typer.Exit(1)

    try:
        decision = service.evaluate_access(identity, resource, op, at=moment)
    except OutOfWindowError as e:
        console.print(Panel(
            f"[bold red]ACCESS DENIED[/bold red]\n\n"
            f"User: {identity.id} ({identity.role.value})\n"
            f"Resource: {resource}\n"
            f"Operation: {op.value}\n\n"
            f"Reason: {e}",
            title="Access Decision",
            box=box.DOUBLE
        ))
        raise typer.Exit(1)

    try:
        service.record_access(identity, resource, op, decision.outcome, at=moment)
    except AuditAppendFailure as e:
        console.print(f"[red]Access refused: audit trail unavailable ({e})[/red]")
        raise typer.Exit(1)

    if decision.is_denied:
        console.print(Panel(
            f"[bold red]ACCESS DENIED[/bold red]\n\n"
            f"User: {identity.id} ({identity.role.value})\n"
            f"Resource: {resource}\n"
            f"Operation: {op.value}\n\n"
            f"Reason: {decision.filter.reason or 'denied'}",
            title="Access Decision",
            box=box.DOUBLE
        ))
        return

    console.print(Panel(
        f"[bold green]ACCESS GRANTED[/bold green] ({decision.effect.value})\n\n"
        f"User: {identity.id} ({identity.role.value})\n"
        f"Resource: {resource}\n"
        f"Operation: {op.value}\n\n"
        f"Filter: {decision.filter.describe()}\n"
        f"Masked: {', '.join(sorted(decision.masked_columns)) or '-'}",
        title="Access Decision",
        box=box.DOUBLE
    ))

    if op is Operation.READ:
        rows = list(apply_decision(sample_rows(resource), decision, service.registry.column_rules(resource)))
        if rows:
            table = Table(title=f"Visible {resource.upper()} rows", box=box.ROUNDED)
            for column in rows[0].keys():
                table.add_column(column)
            for row in rows:
                table.add_row(*(str(v) for v in row.values()))
            console.print(table)
        else:
            console.print("[yellow]No rows visible.[/yellow]")


@test_app.command("scenario")
def run_scenario(
    scenario_name: str = typer.Argument("all", help="Scenario to run: roles, teacher, window, grades, all")
):
    """Run predefined test scenarios."""
    from scenarios import run_scenarios
    if not run_scenarios(scenario_name):
        raise typer.Exit(1)


# ============================================================================
# Audit Commands
# ============================================================================

@audit_app.command("logs")
def view_logs(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of records to show"),
    user: str = typer.Option(None, "--user", "-u", help="Filter by user id"),
    outcome: str = typer.Option(None, "--outcome", "-d", help="Filter by outcome (ALLOWED/FILTERED/DENIED)")
):
    """View audit records."""
    from core.audit import SQLAuditStore
    from models.database import init_db
    from models.domain import Outcome

    init_db()
    store = SQLAuditStore()
    records = store.recent(
        limit=limit,
        identity_id=user,
        outcome=Outcome(outcome.upper()) if outcome else None
    )

    table = Table(title="Audit Trail", box=box.ROUNDED)
    table.add_column("Seq", style="dim")
    table.add_column("Time", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Event")
    table.add_column("Resource")
    table.add_column("Op")
    table.add_column("Outcome")
    table.add_column("Detail")

    for record in records:
        style = OUTCOME_STYLES.get(record.outcome.value, "white")
        table.add_row(
            str(record.sequence_id),
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.identity_id,
            record.event_type.value,
            record.resource or "-",
            record.operation.value if record.operation else "-",
            f"[{style}]{record.outcome.value}[/{style}]",
            (record.detail or "-")[:40]
        )

    console.print(table)


@audit_app.command("stats")
def audit_stats(hours: int = typer.Option(24, help="Analysis period in hours")):
    """Show access statistics."""
    from core.audit import SQLAuditStore
    from models.database import init_db

    init_db()
    stats = SQLAuditStore().statistics(hours=hours)
    by_resource = "\n".join(
        f"  {name}: {count}" for name, count in sorted(stats['by_resource'].items())
    ) or "  -"

    console.print(Panel(
        f"""
[bold]Period:[/bold] Last {stats['period_hours']} hours

[bold]Audit Records:[/bold] {stats['total_records']}
[bold]Accesses:[/bold] {stats['total_accesses']}
[bold]Allowed:[/bold] [green]{stats['by_outcome']['ALLOWED']}[/green]
[bold]Filtered:[/bold] [yellow]{stats['by_outcome']['FILTERED']}[/yellow]
[bold]Denied:[/bold] [red]{stats['by_outcome']['DENIED']}[/red] ({stats['denial_rate']:.1%})

[bold]Failed Logins:[/bold] {stats['failed_logins']}
[bold]Privilege Changes:[/bold] {stats['privilege_changes']}
[bold]Unique Identities:[/bold] {stats['unique_identities']}

[bold]By Resource:[/bold]
{by_resource}
""",
        title="Access Control Statistics",
        box=box.ROUNDED
    ))


@audit_app.command("denials")
def recent_denials(hours: int = typer.Option(24, help="Look back period")):
    """Show recent denied attempts (security monitoring)."""
    from core.audit import SQLAuditStore
    from models.database import init_db
    from models.domain import Outcome

    init_db()
    since = datetime.utcnow() - timedelta(hours=hours)
    denials = list(SQLAuditStore().query(since=since, outcome=Outcome.DENIED))

    if not denials:
        console.print("[green]No denied attempts in the specified period.[/green]")
        return

    table = Table(title=f"Denied Attempts (Last {hours}h)", box=box.ROUNDED)
    table.add_column("Time", style="dim")
    table.add_column("User", style="cyan")
    table.add_column("Event", style="yellow")
    table.add_column("Resource")
    table.add_column("Detail")

    for record in denials:
        table.add_row(
            record.timestamp.strftime("%Y-%m-%d %H:%M:%S"),
            record.identity_id,
            record.event_type.value,
            record.resource or "-",
            (record.detail or "-")[:40]
        )

    console.print(table)


@audit_app.command("export")
def export_logs(
    output: str = typer.Option("audit_export.json", "--output", "-o", help="Output file"),
    format: str = typer.Option("json", "--format", "-f", help="Format: json or csv"),
    hours: Optional[int] = typer.Option(None, help="Only export the last N hours")
):
    """Export audit records for SIEM integration."""
    from core.audit import SQLAuditStore
    from models.database import init_db

    init_db()
    since = datetime.utcnow() - timedelta(hours=hours) if hours else None
    try:
        data = SQLAuditStore().export(since=since, format=format)
    except ValueError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)

    with open(output, 'w') as f:
        f.write(data)

    console.print(f"[green]Exported audit records to {output}[/green]")


@audit_app.command("purge")
def purge_logs(
    days: Optional[int] = typer.Option(None, help="Delete records older than N days (default: retention setting)")
):
    """Apply the audit retention policy."""
    service = get_service()
    if days is None:
        purged = service.purge_expired_audit()
    else:
        purged = service.purge_audit_before(datetime.utcnow() - timedelta(days=days))
    console.print(f"[yellow]Purged {purged} audit record(s).[/yellow]")


# ============================================================================
# Alert Commands
# ============================================================================

def _alerts_table(alerts, title: str) -> Table:
    table = Table(title=title, box=box.ROUNDED)
    table.add_column("ID", style="dim")
    table.add_column("Raised", style="dim")
    table.add_column("Type", style="cyan")
    table.add_column("Severity")
    table.add_column("Message")
    table.add_column("Resolved By")

    for alert in alerts:
        style = SEVERITY_STYLES.get(alert.severity.value, "white")
        table.add_row(
            str(alert.id),
            alert.raised_at.strftime("%Y-%m-%d %H:%M:%S"),
            alert.alert_type,
            f"[{style}]{alert.severity.value}[/{style}]",
            alert.message,
            alert.resolved_by or "-"
        )
    return table


@alerts_app.command("scan")
def scan_alerts(
    window: Optional[int] = typer.Option(None, "--window", "-w", help="Window in minutes (default: setting)")
):
    """Run one anomaly scan over the audit trail."""
    service = get_service()
    alerts = service.run_anomaly_scan(timedelta(minutes=window) if window else None)
    if not alerts:
        console.print("[green]No anomalies detected.[/green]")
        return
    console.print(_alerts_table(alerts, "Raised Alerts"))


@alerts_app.command("list")
def list_alerts(
    limit: int = typer.Option(20, "--limit", "-l", help="Number of alerts to show"),
    open_only: bool = typer.Option(False, "--open", help="Only unresolved alerts")
):
    """List security alerts."""
    from core.alerts import SQLAlertSink
    from models.database import init_db

    init_db()
    sink = SQLAlertSink()
    alerts = sink.unresolved()[:limit] if open_only else sink.list(limit)
    console.print(_alerts_table(alerts, "Security Alerts"))


@alerts_app.command("resolve")
def resolve_alert(
    alert_id: int = typer.Argument(..., help="Alert id"),
    resolved_by: str = typer.Option(..., "--by", help="Who resolved the alert")
):
    """Mark an alert resolved."""
    from core.errors import AlertNotFoundError

    try:
        alert = get_service().resolve_alert(alert_id, resolved_by)
    except AlertNotFoundError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Alert {alert.id} resolved by {alert.resolved_by}[/green]")


# ============================================================================
# Monitor Commands
# ============================================================================

@monitor_app.command("run")
def run_monitor(
    interval: Optional[float] = typer.Option(None, help="Seconds between scans (default: setting)"),
    window: Optional[int] = typer.Option(None, help="Window in minutes (default: setting)")
):
    """Run the anomaly monitor until interrupted."""
    from core.monitor import MonitorScheduler

    settings = get_settings()
    service = get_service()
    scheduler = MonitorScheduler(
        service.monitor,
        timedelta(minutes=window or settings.scan_window_minutes),
        interval_seconds=interval or settings.scan_interval_seconds
    )
    scheduler.start()
    console.print("[cyan]Monitor running. Press Ctrl+C to stop.[/cyan]")
    try:
        while True:
            time.sleep(1)
    except KeyboardInterrupt:
        pass
    finally:
        scheduler.stop(timeout=5)
    console.print(f"Scans: {scheduler.runs}, failures: {scheduler.failures}")


# ============================================================================
# Main Entry Point
# ============================================================================

@app.callback(invoke_without_command=True)
def main(
    ctx: typer.Context,
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override the configured log level")
):
    """
    School Records Access Control

    Row-level filtering, column masking, audit obligations and anomaly
    monitoring for school staff access to student and staff records.
    """
    configure_logging(log_level)
    if ctx.invoked_subcommand is None:
        print_banner()
        console.print("\nUse [cyan]--help[/cyan] to see available commands.\n")
        console.print("Quick Start:")
        console.print("  1. [cyan]python main.py init[/cyan]          - Initialize database")
        console.print("  2. [cyan]python main.py demo[/cyan]          - Open demo sessions")
        console.print("  3. [cyan]python main.py policy list[/cyan]   - View protected resources")
        console.print("  4. [cyan]python main.py test access --user TEACHER_USER --resource STUDENTS[/cyan]")
        console.print()


if __name__ == "__main__":
    app()
