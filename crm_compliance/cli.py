#!/usr/bin/env python3
"""
Command-line interface for the CRM compliance engine.

Provides retention policy management, cleanup runs, the retention scheduler
and privacy request handling.
"""

import json
import logging
import sys
import threading
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

import click
from rich.console import Console
from rich.panel import Panel
from rich.progress import Progress, SpinnerColumn, TextColumn
from rich.table import Table

from . import __version__
from .config import ComplianceConfig, get_config, set_config
from .engine import ComplianceEngine
from .exceptions import ComplianceError
from .retention.models import RETAIN_FOREVER

console = Console()


def _format_time(value: Optional[datetime]) -> str:
    if value is None:
        return "[dim]never[/dim]"
    return value.strftime("%Y-%m-%d %H:%M:%S")


def _format_retention(days: int) -> str:
    return "forever" if days == RETAIN_FOREVER else f"{days} days"


def _parse_criteria(criteria: Optional[str]) -> Optional[Dict[str, Any]]:
    if criteria is None:
        return None
    try:
        value = json.loads(criteria)
    except json.JSONDecodeError as e:
        raise click.BadParameter(f"criteria must be JSON: {e}")
    if not isinstance(value, dict):
        raise click.BadParameter("criteria must be a JSON object")
    return value


@contextmanager
def open_engine(seed_defaults: bool = False) -> Iterator[ComplianceEngine]:
    """Engine over the configured database, shut down on exit."""
    engine = ComplianceEngine.from_config(get_config())
    try:
        engine.initialize(seed_defaults=seed_defaults)
        yield engine
    finally:
        engine.shutdown()


@click.group(invoke_without_command=True)
@click.version_option(version=__version__)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON or YAML configuration file",
)
@click.pass_context
def cli(ctx: click.Context, config_file: Optional[str]) -> None:
    """CRM Compliance Engine - data retention and privacy request tools."""
    if config_file:
        set_config(ComplianceConfig.from_file(config_file))

    logging.basicConfig(
        level=get_config().log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if ctx.invoked_subcommand is None:
        console.print(
            Panel.fit(
                f"[bold blue]CRM Compliance Engine[/bold blue] v{__version__}\n"
                "[dim]Data retention and privacy request tools[/dim]\n\n"
                "Use [bold]crm-compliance --help[/bold] to see available commands.",
                border_style="blue",
            )
        )


@cli.group()
def config() -> None:
    """Show engine configuration."""
    pass


@config.command("show")
@click.option("--format", type=click.Choice(["table", "json", "yaml"]), default="table")
def config_show(format: str) -> None:
    """Display current configuration."""
    try:
        config_dict = get_config().to_dict()

        if format == "json":
            console.print_json(data=config_dict)
        elif format == "yaml":
            import yaml

            console.print(yaml.dump(config_dict, default_flow_style=False))
        else:
            table = Table(title="Compliance Configuration", show_header=True)
            table.add_column("Setting", style="cyan")
            table.add_column("Value", style="green")

            categories = {
                "General": ["application_name", "environment", "log_level"],
                "Storage": ["database_url", "export_dir"],
                "Privacy Requests": [
                    "api_prefix",
                    "export_expiry_days",
                    "export_estimated_minutes",
                    "deletion_estimated_days",
                    "max_downloads",
                    "export_workers",
                ],
                "Retention Scheduler": [
                    "daily_cleanup_time",
                    "weekly_cleanup_day",
                    "weekly_cleanup_time",
                    "scheduler_timezone",
                    "scheduler_poll_seconds",
                ],
            }

            for category, settings in categories.items():
                table.add_row(f"[bold]{category}[/bold]", "")
                for setting in settings:
                    table.add_row(f"  {setting}", str(config_dict[setting]))

            console.print(table)

    except Exception as e:
        console.print(f"[red]Error loading configuration: {e}[/red]")
        sys.exit(1)


@cli.group()
def db() -> None:
    """Manage the compliance database."""
    pass


@db.command("init")
@click.option("--seed/--no-seed", default=True, help="Install default retention policies")
def db_init(seed: bool) -> None:
    """Create tables and optionally the default retention policies."""
    try:
        with open_engine(seed_defaults=seed) as engine:
            count = len(engine.list_policies())
        console.print(
            f"[green]✓[/green] Database initialized ({count} active retention policies)"
        )
    except Exception as e:
        console.print(f"[red]Error initializing database: {e}[/red]")
        sys.exit(1)


@cli.group()
def retention() -> None:
    """Manage retention policies and cleanups."""
    pass


@retention.command("list")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def retention_list(format: str) -> None:
    """List active retention policies."""
    try:
        with open_engine() as engine:
            policies = engine.list_policies()

        if format == "json":
            console.print_json(
                data=[p.model_dump(mode="json") for p in policies]
            )
            return

        if not policies:
            console.print("[yellow]No active retention policies[/yellow]")
            return

        table = Table(title=f"Retention Policies ({len(policies)})")
        table.add_column("Table", style="cyan")
        table.add_column("Retention", style="green")
        table.add_column("Auto Delete", style="yellow")
        table.add_column("Criteria", style="blue")
        table.add_column("Last Cleanup", style="magenta")

        for policy in policies:
            table.add_row(
                policy.table_name,
                _format_retention(policy.retention_days),
                "✓" if policy.auto_delete else "✗",
                json.dumps(policy.criteria) if policy.criteria else "",
                _format_time(policy.last_cleanup),
            )
        console.print(table)

    except Exception as e:
        console.print(f"[red]Error listing retention policies: {e}[/red]")
        sys.exit(1)


@retention.command("create")
@click.argument("table_name")
@click.option("--days", type=int, required=True, help="Retention in days, -1 for forever")
@click.option("--criteria", help="Extra criteria as a JSON object")
@click.option("--auto-delete/--manual", default=False, help="Include in scheduled sweeps")
@click.option("--user", help="Administrator creating the policy")
def retention_create(
    table_name: str,
    days: int,
    criteria: Optional[str],
    auto_delete: bool,
    user: Optional[str],
) -> None:
    """Create a retention policy for TABLE_NAME."""
    parsed = _parse_criteria(criteria)
    try:
        with open_engine() as engine:
            policy = engine.create_policy(table_name, days, parsed, auto_delete, user)
        console.print(
            f"[green]✓[/green] Created policy for [bold]{policy.table_name}[/bold]: "
            f"{_format_retention(policy.retention_days)}"
        )
    except (ComplianceError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@retention.command("update")
@click.argument("table_name")
@click.option("--days", type=int, help="Retention in days, -1 for forever")
@click.option("--criteria", help="Extra criteria as a JSON object")
@click.option("--auto-delete/--manual", default=None, help="Include in scheduled sweeps")
@click.option("--user", help="Administrator updating the policy")
def retention_update(
    table_name: str,
    days: Optional[int],
    criteria: Optional[str],
    auto_delete: Optional[bool],
    user: Optional[str],
) -> None:
    """Update the retention policy of TABLE_NAME."""
    parsed = _parse_criteria(criteria)
    try:
        with open_engine() as engine:
            policy = engine.update_policy(
                table_name,
                retention_days=days,
                criteria=parsed,
                auto_delete=auto_delete,
                updated_by=user,
            )
        console.print(
            f"[green]✓[/green] Updated policy for [bold]{policy.table_name}[/bold]: "
            f"{_format_retention(policy.retention_days)}, "
            f"auto delete {'on' if policy.auto_delete else 'off'}"
        )
    except (ComplianceError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@retention.command("deactivate")
@click.argument("table_name")
@click.option("--user", help="Administrator deactivating the policy")
def retention_deactivate(table_name: str, user: Optional[str]) -> None:
    """Deactivate the retention policy of TABLE_NAME."""
    try:
        with open_engine() as engine:
            engine.deactivate_policy(table_name, updated_by=user)
        console.print(f"[green]✓[/green] Deactivated policy for [bold]{table_name}[/bold]")
    except ComplianceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@retention.command("cleanup")
@click.argument("table_name")
@click.option("--user", help="Administrator triggering the cleanup")
def retention_cleanup(table_name: str, user: Optional[str]) -> None:
    """Run the retention cleanup for TABLE_NAME now."""
    try:
        with open_engine() as engine:
            deleted = engine.trigger_manual_cleanup(table_name, user_id=user)
        console.print(f"[green]✓[/green] {table_name}: {deleted} rows deleted")
    except ComplianceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@retention.command("sweep")
def retention_sweep() -> None:
    """Run the cleanup for every auto-delete policy."""
    try:
        with open_engine() as engine:
            with Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                console=console,
                transient=True,
            ) as progress:
                progress.add_task("Running retention sweep...", total=None)
                result = engine.run_sweep()

        table = Table(title="Retention Sweep")
        table.add_column("Table", style="cyan")
        table.add_column("Deleted", style="green", justify="right")
        table.add_column("Status", style="yellow")
        table.add_column("Error", style="red")

        for entry in result.tables:
            status = {
                "success": "[green]success[/green]",
                "skipped": "[yellow]skipped[/yellow]",
                "error": "[red]error[/red]",
            }.get(entry.status, entry.status)
            table.add_row(entry.table, str(entry.deleted), status, entry.error or "")
        console.print(table)

        console.print(
            f"\nProcessed {result.processed} tables, deleted {result.deleted} rows "
            f"in {result.duration_ms:.0f} ms"
        )
        if result.partial_failure:
            console.print(f"[yellow]⚠ {result.errors} tables failed[/yellow]")
            sys.exit(1)

    except ComplianceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@retention.command("stats")
def retention_stats() -> None:
    """Show retention statistics."""
    try:
        with open_engine() as engine:
            stats = engine.get_retention_statistics()

        console.print(
            Panel.fit(
                f"Total policies: [bold]{stats.total_policies}[/bold]\n"
                f"Auto delete: [green]{stats.auto_delete_policies}[/green]\n"
                f"Manual: [yellow]{stats.manual_policies}[/yellow]\n"
                f"Retain forever: [blue]{stats.forever_policies}[/blue]",
                title="Retention Statistics",
                border_style="blue",
            )
        )

        if stats.policies:
            table = Table(show_header=True)
            table.add_column("Table", style="cyan")
            table.add_column("Retention", style="green")
            table.add_column("Last Cleanup", style="magenta")
            table.add_column("Next Cleanup", style="yellow")
            for entry in stats.policies:
                table.add_row(
                    entry.table_name,
                    _format_retention(entry.retention_days),
                    _format_time(entry.last_cleanup),
                    _format_time(entry.next_cleanup) if entry.auto_delete else "manual",
                )
            console.print(table)

    except Exception as e:
        console.print(f"[red]Error reading retention statistics: {e}[/red]")
        sys.exit(1)


@cli.group()
def scheduler() -> None:
    """Run the retention scheduler."""
    pass


@scheduler.command("jobs")
def scheduler_jobs() -> None:
    """Show the scheduled jobs and their next run."""
    try:
        with open_engine() as engine:
            engine.scheduler.install_jobs()
            jobs = engine.scheduler.jobs()

        table = Table(title="Retention Jobs")
        table.add_column("Job", style="cyan")
        table.add_column("Next Run", style="green")
        for job in jobs:
            table.add_row(str(job["name"]), _format_time(job["next_run"]))
        console.print(table)

    except Exception as e:
        console.print(f"[red]Error reading scheduler jobs: {e}[/red]")
        sys.exit(1)


@scheduler.command("run")
@click.option("--job", help="Run one job immediately and exit")
def scheduler_run(job: Optional[str]) -> None:
    """Run the retention scheduler until interrupted."""
    try:
        with open_engine() as engine:
            if job:
                engine.scheduler.run_job(job)
                console.print(f"[green]✓[/green] Job {job} finished")
                return

            engine.start()
            console.print(
                "[bold]Retention scheduler running[/bold] [dim](Ctrl+C to stop)[/dim]"
            )
            try:
                threading.Event().wait()
            except KeyboardInterrupt:
                console.print("\n[yellow]Stopping scheduler...[/yellow]")

    except KeyError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.group()
def privacy() -> None:
    """Handle data export and deletion requests."""
    pass


@privacy.command("export")
@click.argument("subject_id")
@click.option(
    "--format",
    "export_format",
    type=click.Choice(["json", "csv", "xml"]),
    default="json",
)
@click.option("--table", "tables", multiple=True, help="Section to export (repeatable)")
@click.option("--include-deleted", is_flag=True, help="Include soft-deleted records")
@click.option("--timeout", type=float, default=300.0, help="Seconds to wait for the export")
def privacy_export(
    subject_id: str,
    export_format: str,
    tables: tuple,
    include_deleted: bool,
    timeout: float,
) -> None:
    """Export the data of SUBJECT_ID."""
    try:
        with open_engine() as engine:
            ticket = engine.request_export(
                subject_id,
                export_format=export_format,
                tables=list(tables) or None,
                include_deleted=include_deleted,
            )
            status = engine.privacy.wait_for_export(ticket.export_id, timeout=timeout)

        if status["status"] != "completed":
            console.print(
                f"[red]Export {ticket.export_id} {status['status']}: "
                f"{status.get('error_message') or ''}[/red]"
            )
            sys.exit(1)

        console.print(
            Panel.fit(
                f"Export ID: [bold]{ticket.export_id}[/bold]\n"
                f"File: {status['file_path']} ({status['file_size']} bytes)\n"
                f"Download URL: {ticket.download_url}\n"
                f"Expires: {_format_time(ticket.expires_at)}",
                title="Data Export",
                border_style="green",
            )
        )

    except (ComplianceError, TimeoutError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@privacy.command("delete")
@click.argument("subject")
@click.option(
    "--type",
    "deletion_type",
    type=click.Choice(["full", "partial", "anonymize"]),
    default="full",
)
@click.option("--reason", help="Reason given by the subject")
@click.option("--scope", help="Partial deletion scope as a JSON object")
def privacy_delete(
    subject: str, deletion_type: str, reason: Optional[str], scope: Optional[str]
) -> None:
    """Request deletion of SUBJECT (user id or email)."""
    specific_data = _parse_criteria(scope)
    try:
        with open_engine() as engine:
            ticket = engine.request_deletion(
                subject, deletion_type, reason=reason, specific_data=specific_data
            )

        console.print(
            Panel.fit(
                f"Deletion ID: [bold]{ticket.deletion_id}[/bold]\n"
                f"Status: {ticket.status}\n"
                f"Verification URL: {ticket.verification_url}",
                title="Deletion Request",
                border_style="yellow",
            )
        )

    except (ComplianceError, ValueError) as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@privacy.command("verify")
@click.argument("deletion_id")
@click.argument("token")
def privacy_verify(deletion_id: str, token: str) -> None:
    """Verify deletion request DELETION_ID with TOKEN and execute it."""
    try:
        with open_engine() as engine:
            result = engine.verify_deletion(deletion_id, token)
        console.print(f"[green]✓[/green] {result.message}")
    except ComplianceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@privacy.command("status")
@click.argument("subject_id")
def privacy_status(subject_id: str) -> None:
    """Show the privacy status of SUBJECT_ID."""
    try:
        with open_engine() as engine:
            status = engine.get_compliance_status(subject_id)

        console.print(
            Panel.fit(
                f"Status: [bold]{status.status}[/bold]\n"
                f"Consent date: {_format_time(status.consent_date)}\n"
                f"Retained until: {_format_time(status.data_retention_until)}\n"
                f"Export requests: {status.request_counts.get('export_requests', 0)}\n"
                f"Deletion requests: {status.request_counts.get('deletion_requests', 0)}\n"
                f"Last update: {_format_time(status.last_update)}",
                title=f"User {subject_id}",
                border_style="blue",
            )
        )

        if status.consents:
            table = Table(title="Consents")
            table.add_column("Type", style="cyan")
            table.add_column("Given", style="green")
            table.add_column("Legal Basis", style="yellow")
            table.add_column("Date", style="magenta")
            for consent in status.consents:
                table.add_row(
                    str(consent["consent_type"]),
                    "✓" if consent["consent_given"] else "✗",
                    str(consent["legal_basis"]),
                    _format_time(consent["consent_date"]),
                )
            console.print(table)

    except ComplianceError as e:
        console.print(f"[red]{e}[/red]")
        sys.exit(1)


@cli.group()
def audit() -> None:
    """Inspect the compliance audit log."""
    pass


@audit.command("search")
@click.option("--action", help="Filter by action")
@click.option("--table", "table_name", help="Filter by table")
@click.option("--record", "record_id", help="Filter by record ID")
@click.option("--limit", type=int, default=100, help="Maximum results to return")
@click.option("--format", type=click.Choice(["table", "json"]), default="table")
def audit_search(
    action: Optional[str],
    table_name: Optional[str],
    record_id: Optional[str],
    limit: int,
    format: str,
) -> None:
    """Search audit log entries."""
    try:
        with open_engine() as engine:
            entries = engine.audit.entries(
                action=action, table_name=table_name, record_id=record_id, limit=limit
            )

        if not entries:
            console.print("[yellow]No audit entries found matching criteria[/yellow]")
            return

        if format == "json":
            console.print_json(data=[e.model_dump(mode="json") for e in entries])
            return

        table = Table(title=f"Audit Log Entries (showing {len(entries)} of {limit})")
        table.add_column("Timestamp", style="cyan")
        table.add_column("User", style="green")
        table.add_column("Action", style="yellow")
        table.add_column("Resource", style="blue")
        table.add_column("Result", style="magenta")

        for entry in entries:
            result = "[green]success[/green]" if entry.success else "[red]failure[/red]"
            table.add_row(
                _format_time(entry.created_at),
                entry.user_id or "system",
                str(entry.action),
                f"{entry.table_name}:{entry.record_id or ''}",
                result,
            )
        console.print(table)

    except Exception as e:
        console.print(f"[red]Error searching audit log: {e}[/red]")
        sys.exit(1)


if __name__ == "__main__":
    cli()
