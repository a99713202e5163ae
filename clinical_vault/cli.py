"""Command Line Interface for Clinical Vault.

Operational commands for the patient data vault: schema initialization,
health and integrity checks, and audit trail reporting, export and
retention.

Security Impact:
    - Commands print identifiers and counts only, never clinical content
    - Audit exports decrypt payloads; write them to protected locations
    - The master key is read from the environment, never from arguments
"""

from datetime import datetime
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from clinical_vault.domain.audit_models import AuditLogFilter
from clinical_vault.domain.enums import AccessResult
from clinical_vault.domain.errors import ClinicalVaultError
from clinical_vault.facade import ClinicalVault
from clinical_vault.infrastructure.config_manager import ConfigManager
from clinical_vault.infrastructure.logging_config import setup_logging
from clinical_vault.infrastructure.settings import APP_NAME, APP_VERSION, settings

# Initialize Typer app and Rich console
app = typer.Typer(
    name="clinical-vault",
    help="Clinical Vault: secure patient data management",
    add_completion=False
)
console = Console()


def create_application_cli() -> ClinicalVault:
    """Build the application from the environment (CLI wrapper)."""
    try:
        from clinical_vault.main import create_application
        return create_application(ConfigManager.from_environment())
    except Exception as e:
        console.print(f"[red]✗[/red] Failed to initialize application: {str(e)}")
        raise typer.Exit(code=1)


@app.command("init-db")
def init_db() -> None:
    """Create the storage schema (idempotent)."""
    vault = create_application_cli()
    try:
        counts = vault.storage.count_entities()
        console.print(f"[green]✓[/green] Schema ready ({len(counts)} tables)")
    finally:
        vault.close()


@app.command()
def info() -> None:
    """Display system information and configuration."""
    console.print("[bold blue]System Information[/bold blue]\n")

    try:
        config_manager = ConfigManager.from_environment()
        db_config = config_manager.get_database_config()
        security_config = config_manager.get_security_config()
        audit_config = config_manager.get_audit_config()
        document_config = config_manager.get_document_config()
    except Exception as e:
        console.print(f"[red]✗[/red] Invalid configuration: {str(e)}")
        raise typer.Exit(code=1)

    info_table = Table(show_header=False, box=None, padding=(0, 2))
    info_table.add_row("Application:", settings.app_name)
    info_table.add_row("Version:", APP_VERSION)
    info_table.add_row("Database Type:", db_config.db_type)
    if db_config.db_type == "duckdb":
        info_table.add_row("Database Path:", db_config.db_path or ":memory:")
    info_table.add_row("Master Key:", "Configured" if security_config.master_key else "[yellow]Not set[/yellow]")
    info_table.add_row("Key ID:", security_config.key_id)
    info_table.add_row("Confidential Roles:", ", ".join(security_config.confidential_roles))
    info_table.add_row(
        "Suspicious Activity:",
        f"{security_config.suspicious_threshold} denials / {security_config.suspicious_window_minutes} min",
    )
    info_table.add_row("Audit Retention:", f"{audit_config.retention_years} years")
    info_table.add_row("Document Storage:", document_config.storage_path or "in memory")
    info_table.add_row("Max File Size:", f"{document_config.max_file_size_bytes / (1024 * 1024):.0f} MB")

    console.print(info_table)


@app.command()
def health() -> None:
    """Check storage connectivity and referential integrity."""
    vault = create_application_cli()
    try:
        report = vault.check_health()
    finally:
        vault.close()

    color = {"healthy": "green", "degraded": "yellow", "unhealthy": "red"}[report.status]
    console.print(f"Status: [{color}]{report.status}[/{color}]")
    console.print(f"[dim]Database:[/dim] {report.database.type} ({report.database.status})")

    if report.entity_counts:
        counts_table = Table(show_header=True, header_style="bold")
        counts_table.add_column("Table", style="cyan")
        counts_table.add_column("Rows", justify="right")
        for table, count in sorted(report.entity_counts.items()):
            counts_table.add_row(table, f"{count:,}")
        console.print(counts_table)

    for table, ids in report.orphans.items():
        console.print(f"[yellow]⚠[/yellow] {len(ids)} orphaned rows in {table}")

    if report.status == "unhealthy":
        raise typer.Exit(code=1)


@app.command()
def orphans() -> None:
    """List dependents whose patient no longer exists."""
    vault = create_application_cli()
    try:
        found = {table: ids for table, ids in vault.storage.find_orphans().items() if ids}
    finally:
        vault.close()

    if not found:
        console.print("[green]✓[/green] No orphaned rows")
        return

    orphan_table = Table(show_header=True, header_style="bold")
    orphan_table.add_column("Table", style="cyan")
    orphan_table.add_column("Row ID")
    for table, ids in sorted(found.items()):
        for row_id in ids:
            orphan_table.add_row(table, row_id)
    console.print(orphan_table)
    raise typer.Exit(code=1)


@app.command("audit-stats")
def audit_stats(
    start: Optional[datetime] = typer.Option(None, "--start", help="Period start (ISO date)"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Period end (ISO date)"),
) -> None:
    """Summarize the audit trail for a period."""
    vault = create_application_cli()
    try:
        stats = vault.get_audit_statistics(start, end)
        security = vault.get_security_statistics(start, end)
    finally:
        vault.close()

    summary_table = Table(show_header=False, box=None, padding=(0, 2))
    summary_table.add_row("Total entries:", f"[bold]{stats.total_entries:,}[/bold]")
    summary_table.add_row("Unique users:", f"{stats.unique_users:,}")
    summary_table.add_row(
        "Denied accesses:",
        f"[red]{stats.denied_accesses:,}[/red]" if stats.denied_accesses > 0 else "0",
    )
    summary_table.add_row("Security alerts:", f"{security.security_alerts:,}")
    console.print(summary_table)

    if stats.operation_counts:
        ops_table = Table(show_header=True, header_style="bold")
        ops_table.add_column("Operation", style="cyan")
        ops_table.add_column("Count", justify="right")
        for operation, count in sorted(stats.operation_counts.items()):
            ops_table.add_row(operation, f"{count:,}")
        console.print(ops_table)

    if stats.top_accessed_patients:
        top_table = Table(show_header=True, header_style="bold")
        top_table.add_column("Patient", style="cyan")
        top_table.add_column("Accesses", justify="right")
        for item in stats.top_accessed_patients:
            top_table.add_row(item.patient_id, f"{item.access_count:,}")
        console.print(top_table)


@app.command("audit-export")
def audit_export(
    export_format: str = typer.Option("json", "--format", "-f", help="Export format (json, csv, xml)"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Write to file instead of stdout"),
    user_id: Optional[str] = typer.Option(None, "--user-id", help="Only entries by this user"),
    patient_id: Optional[str] = typer.Option(None, "--patient-id", help="Only entries about this patient"),
    denied_only: bool = typer.Option(False, "--denied-only", help="Only denied accesses"),
    start: Optional[datetime] = typer.Option(None, "--start", help="Period start (ISO date)"),
    end: Optional[datetime] = typer.Option(None, "--end", help="Period end (ISO date)"),
) -> None:
    """Export audit entries with decrypted payloads."""
    audit_filter = AuditLogFilter(
        user_id=user_id,
        patient_id=patient_id,
        access_result=AccessResult.DENIED if denied_only else None,
        start_date=start,
        end_date=end,
        limit=None,
    )

    vault = create_application_cli()
    try:
        rendered = vault.export_audit_logs(audit_filter, export_format)
    except ClinicalVaultError as e:
        console.print(f"[red]✗[/red] {e.message}")
        raise typer.Exit(code=1)
    finally:
        vault.close()

    if output is None:
        typer.echo(rendered)
        return

    output.write_text(rendered, encoding="utf-8")
    console.print(f"[green]✓[/green] Audit export saved: {output}")


@app.command("audit-purge")
def audit_purge(
    retention_years: Optional[int] = typer.Option(None, "--retention-years", "-r", help="Override the configured retention"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Skip confirmation"),
) -> None:
    """Delete audit entries older than the retention period."""
    if retention_years is not None and retention_years < 1:
        console.print("[red]✗[/red] Retention must be at least 1 year")
        raise typer.Exit(code=1)

    if not yes:
        typer.confirm("Permanently delete audit entries past retention?", abort=True)

    vault = create_application_cli()
    try:
        purged = vault.purge_audit_logs(retention_years)
    finally:
        vault.close()

    console.print(f"[green]✓[/green] Purged {purged:,} audit entries")


def version_callback(value: bool) -> None:
    if value:
        console.print(f"{APP_NAME} v{APP_VERSION}")
        raise typer.Exit()


@app.callback()
def main_callback(
    version: bool = typer.Option(
        False, "--version", help="Show version information", callback=version_callback, is_eager=True
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable verbose logging"),
) -> None:
    """Clinical Vault: secure patient data management."""
    setup_logging(use_json=settings.log_json, log_level="DEBUG" if verbose else settings.log_level)


if __name__ == "__main__":
    app()
