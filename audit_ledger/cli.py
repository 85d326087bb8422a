"""CLI commands for the audit ledger."""

import asyncio
import json
from datetime import date, datetime

import click

from audit_ledger.db.base import Base
from audit_ledger.db.session import dispose_engine, get_engine, get_session_factory
from audit_ledger.ledger.errors import ArchiveExportError, WindowNotClosedError
from audit_ledger.ledger.service import LedgerService
from audit_ledger.ledger.store import EventStore
from audit_ledger.logging_config import configure_logging
from audit_ledger.models import ChainStatus
from audit_ledger.storage.service import get_storage_service


def _service() -> LedgerService:
    return LedgerService(EventStore(get_session_factory()), get_storage_service())


def _run(coro):
    async def runner():
        try:
            return await coro
        finally:
            await dispose_engine()

    return asyncio.run(runner())


@click.group()
def cli():
    """Audit ledger CLI."""
    configure_logging()


@cli.command("init-db")
def init_db():
    """Create ledger tables (development; use Alembic elsewhere)."""

    async def create():
        async with get_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    click.echo("Creating ledger tables...")
    _run(create())
    click.echo("✓ Tables created.")


@cli.command()
@click.option("--start", type=click.DateTime(), default=None, help="Range start (UTC).")
@click.option("--end", type=click.DateTime(), default=None, help="Range end (UTC).")
@click.pass_context
def verify(ctx, start, end):
    """Verify the chain; exits 2 if it is broken."""
    result = _run(_service().request_verification(start, end, initiated_by="cli"))
    click.echo(json.dumps(result.to_dict(), indent=2))
    if result.status == ChainStatus.BROKEN:
        click.echo(f"✗ Chain broken at event {result.broken_event_id}", err=True)
        ctx.exit(2)
    click.echo(f"✓ Chain {result.status}: {result.events_verified} events verified.")


@cli.command()
@click.argument("batch_file", type=click.File("r"))
@click.option("--device-id", required=True, help="Offline device identifier.")
@click.option("--session-id", "offline_session_id", default=None, help="Offline session identifier.")
@click.option("--user-id", default="cli", help="User initiating the merge.")
@click.pass_context
def merge(ctx, batch_file, device_id, offline_session_id, user_id):
    """Merge an offline batch (JSON list of events) into the chain."""
    events = json.load(batch_file)
    if not isinstance(events, list):
        click.echo("✗ Batch file must contain a JSON list of events.", err=True)
        ctx.exit(1)

    try:
        record = _run(_service().request_merge(events, device_id, offline_session_id, user_id=user_id))
    except Exception as e:
        click.echo(f"✗ Merge failed: {e}", err=True)
        ctx.exit(1)
        return
    click.echo(
        f"✓ Merge {record.merge_id} {record.status}: received={record.events_received} "
        f"merged={record.events_merged} duplicates={record.duplicates_skipped} "
        f"conflicts={record.conflicts_detected} rehashed={record.events_rehashed}"
    )


@cli.command()
@click.argument("export_date", required=False, type=click.DateTime(formats=["%Y-%m-%d"]))
@click.option("--pending", is_flag=True, help="Export every unarchived day in the lookback window.")
@click.option("--lookback-days", type=int, default=None)
@click.pass_context
def export(ctx, export_date, pending, lookback_days):
    """Export a closed UTC day (YYYY-MM-DD) to archive storage."""
    service = _service()
    if pending:
        results = _run(service.export_pending(lookback_days))
        for result in results:
            click.echo(f"{result.export_date.isoformat()}: {result.status} ({result.event_count} events)")
        return

    if export_date is None:
        click.echo("✗ Provide EXPORT_DATE or --pending.", err=True)
        ctx.exit(1)

    day: date = export_date.date() if isinstance(export_date, datetime) else export_date
    try:
        result = _run(service.request_export(day))
    except (WindowNotClosedError, ArchiveExportError) as e:
        click.echo(f"✗ Export failed: {e}", err=True)
        ctx.exit(1)
        return
    click.echo(json.dumps(result.to_dict(), indent=2))


@cli.command()
@click.option("--limit", type=int, default=None)
def replicate(limit):
    """Poll replication status of unconfirmed archives."""
    summary = _run(_service().check_replication(limit))
    click.echo(json.dumps(summary.to_dict(), indent=2))


if __name__ == "__main__":
    cli()
