import json
import logging
import os
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from bucket_index.config import DB_PATH_ENV_VAR, DEFAULT_DB_FILENAME, METRICS_RETENTION_DAYS
from bucket_index.errors import BucketIndexError
from bucket_index.metrics import build_health_checker, configure_logging
from bucket_index.metrics_storage import MetricsRecorder
from bucket_index.query import QueryFacade
from bucket_index.store import EntityStore

app = typer.Typer(help="Bucket Index CLI")
console = Console()
logger = logging.getLogger("bucket_index.cli")


def db_option():
    return typer.Option(
        None,
        "--db",
        "-d",
        envvar=DB_PATH_ENV_VAR,
        help=f"Path to the index database (default: ${DB_PATH_ENV_VAR} or {DEFAULT_DB_FILENAME})",
    )


def resolve_db_path(db_path: Optional[str]) -> str:
    return db_path or os.environ.get(DB_PATH_ENV_VAR) or DEFAULT_DB_FILENAME


def open_store(db_path: Optional[str]) -> EntityStore:
    store = EntityStore(resolve_db_path(db_path))
    store.initialize()
    return store


def format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB", "TB"):
        if value < 1024 or unit == "TB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def format_timestamp(ms: Optional[int]) -> str:
    if ms is None:
        return "-"
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


@app.callback()
def configure(
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging"),
    json_logs: bool = typer.Option(False, "--json-logs", help="Emit logs as JSON"),
):
    """Local index of remote object-storage buckets."""
    configure_logging(level="DEBUG" if verbose else "WARNING", json_format=json_logs)


@app.command()
def init(db_path: Optional[str] = db_option()):
    """Create (or verify) the index database."""
    path = resolve_db_path(db_path)
    try:
        with EntityStore(path) as store:
            version = store.initialize()
    except BucketIndexError as e:
        console.print(f"[red]Initialization failed: {e}[/red]")
        raise typer.Exit(1)
    console.print(f"[green]Initialized index at {path}[/green]")
    console.print(f"Schema version: {version}")


@app.command()
def status(
    profile: str = typer.Argument(..., help="Profile id"),
    db_path: Optional[str] = db_option(),
):
    """Show what is indexed for every bucket of a profile."""
    with open_store(db_path) as store:
        indexes = QueryFacade(store).bucket_indexes(profile)

    if not indexes:
        console.print(f"[yellow]Nothing indexed for profile {profile}.[/yellow]")
        return

    table = Table(title=f"Bucket Indexes ({profile})")
    table.add_column("Bucket", style="cyan")
    table.add_column("Objects", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Complete", style="magenta")
    table.add_column("Last Indexed", style="dim")

    for totals in indexes:
        table.add_row(
            totals.bucket_name,
            str(totals.total_objects),
            format_size(totals.total_size),
            "yes" if totals.is_complete else "no",
            format_timestamp(totals.last_indexed),
        )
    console.print(table)


@app.command()
def browse(
    profile: str = typer.Argument(..., help="Profile id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    prefix: str = typer.Argument("", help="Folder prefix (empty or ending with '/')"),
    db_path: Optional[str] = db_option(),
):
    """List a folder from the index."""
    path = resolve_db_path(db_path)
    with open_store(path) as store, MetricsRecorder(path) as recorder:
        try:
            result = QueryFacade(store, recorder).browse(profile, bucket, prefix)
        except BucketIndexError as e:
            console.print(f"[red]{e}[/red]")
            raise typer.Exit(1)

    state = "[green]complete[/green]" if result.is_complete else "[yellow]incomplete[/yellow]"
    table = Table(title=f"{bucket}/{prefix} ({state})")
    table.add_column("Name", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Objects", justify="right")
    table.add_column("Storage Class", style="magenta")
    table.add_column("Last Modified", style="dim")

    for entry in result.entries:
        if entry.is_folder:
            table.add_row(
                f"[bold]{entry.name}[/bold]",
                format_size(entry.size),
                str(entry.objects_count),
                "-",
                "-" if entry.is_complete else "partial",
            )
        else:
            table.add_row(
                entry.name,
                format_size(entry.size),
                "",
                entry.storage_class or "-",
                entry.last_modified or "-",
            )
    console.print(table)


@app.command()
def search(
    profile: str = typer.Argument(..., help="Profile id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    query: str = typer.Argument(..., help="Substring to look for in keys"),
    prefix: str = typer.Option("", "--prefix", "-p", help="Restrict to keys under this prefix"),
    limit: int = typer.Option(100, "--limit", "-n", help="Maximum number of results"),
    db_path: Optional[str] = db_option(),
):
    """Search indexed keys (case-insensitive substring)."""
    path = resolve_db_path(db_path)
    with open_store(path) as store, MetricsRecorder(path) as recorder:
        results = QueryFacade(store, recorder).search(profile, bucket, query, prefix, limit)

    if not results:
        console.print(f"[yellow]No indexed keys match '{query}'.[/yellow]")
        return

    table = Table(title=f"Matches for '{query}'")
    table.add_column("Key", style="cyan")
    table.add_column("Size", justify="right")
    table.add_column("Last Modified", style="dim")
    for obj in results:
        table.add_row(obj.key, format_size(obj.size), obj.last_modified or "-")
    console.print(table)


@app.command()
def stats(
    profile: str = typer.Argument(..., help="Profile id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    prefix: Optional[str] = typer.Option(None, "--prefix", "-p", help="Stats for one prefix"),
    db_path: Optional[str] = db_option(),
):
    """Show object counts, sizes and storage classes."""
    path = resolve_db_path(db_path)
    with open_store(path) as store, MetricsRecorder(path) as recorder:
        facade = QueryFacade(store, recorder)
        if prefix is not None:
            result = facade.prefix_stats(profile, bucket, prefix)
            table = Table(title=f"Prefix {bucket}/{prefix}")
            table.add_column("Property", style="cyan")
            table.add_column("Value", style="magenta")
            table.add_row("Objects", str(result.aggregate.objects_count))
            table.add_row("Size", format_size(result.aggregate.total_size))
            table.add_row("Complete", "yes" if result.is_complete else "no")
            if result.status is not None:
                table.add_row("Resumable", "yes" if result.status.continuation_token else "no")
                table.add_row("Last Completed", format_timestamp(result.status.last_sync_completed_at))
            console.print(table)
            return
        totals = facade.bucket_stats(profile, bucket)

    table = Table(title=f"Bucket {bucket}")
    table.add_column("Property", style="cyan")
    table.add_column("Value", style="magenta")
    table.add_row("Objects", str(totals.total_objects))
    table.add_row("Size", format_size(totals.total_size))
    table.add_row("Complete", "yes" if totals.is_complete else "no")
    table.add_row("Initial Index Completed", "yes" if totals.initial_index_completed else "no")
    table.add_row("Versioning", "-" if totals.versioning_enabled is None else str(totals.versioning_enabled))
    table.add_row("Encryption", "-" if totals.encryption_enabled is None else str(totals.encryption_enabled))
    table.add_row("Estimated Index Size", format_size(totals.estimated_index_size))
    console.print(table)

    if totals.storage_classes:
        class_table = Table(title="Storage Classes")
        class_table.add_column("Class", style="cyan")
        class_table.add_column("Objects", justify="right")
        class_table.add_column("Size", justify="right")
        for row in totals.storage_classes:
            class_table.add_row(row.storage_class, str(row.object_count), format_size(row.total_size))
        console.print(class_table)


@app.command()
def invalidate(
    profile: str = typer.Argument(..., help="Profile id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    prefix: str = typer.Argument("", help="Prefix to invalidate (empty for the whole bucket)"),
    db_path: Optional[str] = db_option(),
):
    """Force the next browse of a prefix to list it again."""
    with open_store(db_path) as store:
        try:
            store.invalidate_prefix(profile, bucket, prefix)
        except BucketIndexError as e:
            console.print(f"[red]Invalidation failed: {e}[/red]")
            raise typer.Exit(1)
    console.print(f"[green]Invalidated {bucket}/{prefix}[/green]")


@app.command()
def clear(
    profile: str = typer.Argument(..., help="Profile id"),
    bucket: str = typer.Argument(..., help="Bucket name"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Do not ask for confirmation"),
    db_path: Optional[str] = db_option(),
):
    """Delete everything indexed for a bucket."""
    if not yes and not typer.confirm(f"Delete the index of {bucket}?"):
        raise typer.Exit(1)
    with open_store(db_path) as store:
        try:
            removed = store.clear_bucket_index(profile, bucket)
        except BucketIndexError as e:
            console.print(f"[red]Clear failed: {e}[/red]")
            raise typer.Exit(1)
    console.print(f"[green]Removed {removed} objects from the index of {bucket}[/green]")


@app.command()
def verify(db_path: Optional[str] = db_option()):
    """Check database integrity and derived key fields."""
    with open_store(db_path) as store:
        integrity_ok = store.verify_integrity()
        drifted = store.find_derived_field_drift()

    if integrity_ok:
        console.print("[green]✓ Database integrity OK[/green]")
    else:
        console.print("[red]✗ Database integrity check failed[/red]")

    if drifted:
        console.print(f"[red]✗ {len(drifted)} rows with stale derived fields[/red]")
        for obj in drifted[:10]:
            console.print(f"  {obj.bucket_name}/{obj.key}")
    else:
        console.print("[green]✓ Derived key fields consistent[/green]")

    if not integrity_ok or drifted:
        raise typer.Exit(1)


@app.command()
def metrics(
    days: int = typer.Option(7, "--days", help="Days of history"),
    as_json: bool = typer.Option(False, "--json", help="Print as JSON"),
    db_path: Optional[str] = db_option(),
):
    """Show request counts, costs and cache effectiveness."""
    path = resolve_db_path(db_path)
    with MetricsRecorder(path) as recorder:
        recorder.initialize()
        history = recorder.get_stats_history(days)
        summary = recorder.get_cache_summary(days)
        errors = recorder.get_error_stats(days)

    if as_json:
        console.print_json(
            json.dumps(
                {
                    "history": [asdict(day) for day in history],
                    "cache": {
                        "hits": summary.stats.hits,
                        "misses": summary.stats.misses,
                        "hit_rate": summary.hit_rate,
                        "saved_requests": summary.stats.saved_requests,
                        "efficiency_percent": summary.efficiency_percent,
                        "cost_saved_usd": summary.cost_saved_usd,
                    },
                    "errors": {e.error_category: e.count for e in errors},
                }
            )
        )
        return

    table = Table(title=f"Requests (last {days} days)")
    table.add_column("Date", style="cyan")
    table.add_column("Requests", justify="right")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("LIST", justify="right")
    table.add_column("GET", justify="right")
    table.add_column("Avg ms", justify="right")
    table.add_column("Cost (USD)", justify="right", style="magenta")
    for day in history:
        table.add_row(
            day.date,
            str(day.total_requests),
            str(day.failed_requests),
            str(day.list_requests),
            str(day.get_requests),
            f"{day.avg_duration_ms:.1f}",
            f"{day.estimated_cost_usd:.6f}",
        )
    console.print(table)

    console.print(
        f"Cache: {summary.stats.hits} hits, {summary.stats.misses} misses "
        f"({summary.hit_rate:.1f}% hit rate), {summary.stats.saved_requests} requests saved "
        f"(efficiency {summary.efficiency_percent:.1f}%, ${summary.cost_saved_usd:.6f})"
    )
    for error in errors:
        console.print(f"[red]{error.error_category}: {error.count}[/red]")


@app.command("purge-metrics")
def purge_metrics(
    days: int = typer.Option(METRICS_RETENTION_DAYS, "--days", help="Retention in days"),
    db_path: Optional[str] = db_option(),
):
    """Delete metrics older than the retention window."""
    with MetricsRecorder(resolve_db_path(db_path)) as recorder:
        recorder.initialize()
        removed = recorder.purge_old_data(days)
    console.print(f"[green]Purged {removed} metrics rows[/green]")


@app.command()
def health(db_path: Optional[str] = db_option()):
    """Run database, disk and memory health checks."""
    path = resolve_db_path(db_path)
    with open_store(path) as store:
        result = build_health_checker(store.connection, path).check_all()

    table = Table(title="Health")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Message", style="dim")
    for name, check in result.checks.items():
        ok = check.get("healthy", False)
        table.add_row(name, "[green]ok[/green]" if ok else "[red]fail[/red]", check.get("message", ""))
    console.print(table)

    if not result.healthy:
        raise typer.Exit(1)


def main():
    app()


if __name__ == "__main__":
    main()
