"""Command line entry points.

Commands:
- sync: run one reference data sync now
- resolve: print what the read path serves for a domain
- snapshot: write fetched domains to JSON files
- serve: run the HTTP API (and the scheduler, if enabled)
"""

import asyncio
import json
import sys
from typing import List, Sequence, Tuple

import click

from .config import settings
from .errors import ResolveError
from .log import configure_logging
from .models import DataDomain, SyncReport
from .services import build_services
from .snapshot import export_snapshot

DOMAIN_CHOICE = click.Choice([d.value for d in DataDomain])


def _domains(values: Sequence[str]) -> List[DataDomain]:
    return [DataDomain(value) for value in values] or list(DataDomain)


@click.group()
@click.option("--log-level", default=None, help="Log level (default: LOG_LEVEL or INFO).")
def cli(log_level: str) -> None:
    """Reference data sync and sharded cache."""
    configure_logging(log_level or settings.log_level)


@cli.command("sync")
@click.option("--domain", "-d", "domains", multiple=True, type=DOMAIN_CHOICE,
              help="Domain to sync; repeat for several (default: all).")
def sync_cmd(domains: Tuple[str, ...]) -> None:
    """Fetch, shard and store reference data once.

    Exits with status 1 when any domain failed.
    """
    services = build_services(settings)

    async def _run() -> SyncReport:
        try:
            return await services.orchestrator.run_sync(_domains(domains))
        finally:
            await services.close()

    report = asyncio.run(_run())
    for domain, result in report.results.items():
        if result.status == "success":
            click.echo(
                f"{domain.value}: {result.record_count} records in {result.shard_count} shards"
                f" ({result.orphans_deleted} orphans removed)"
            )
        else:
            click.echo(f"{domain.value}: FAILED at {result.stage}: {result.error}", err=True)
    click.echo(f"Outcome: {report.outcome}")
    if report.failed_domains:
        sys.exit(1)


@cli.command("resolve")
@click.argument("domain", type=DOMAIN_CHOICE)
@click.option("--limit", "-n", type=int, default=5, show_default=True,
              help="Number of records to print.")
def resolve_cmd(domain: str, limit: int) -> None:
    """Show which tier serves DOMAIN, how old it is, and a few records."""
    services = build_services(settings)

    async def _run():
        try:
            return await services.reader.resolve(DataDomain(domain))
        finally:
            await services.close()

    try:
        view = asyncio.run(_run())
    except ResolveError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    click.echo(f"Tier: {view.tier.value}")
    click.echo(f"As of: {view.as_of.isoformat()} ({view.age_seconds():.0f}s ago)")
    click.echo(f"Records: {len(view.records)}")
    for record in view.records[:max(0, limit)]:
        click.echo(json.dumps(record, ensure_ascii=False))


@cli.command("snapshot")
@click.option("--out", "out_dir", type=click.Path(file_okay=False), default=None,
              help="Output directory (default: SNAPSHOT_DIR setting).")
@click.option("--domain", "-d", "domains", multiple=True, type=DOMAIN_CHOICE,
              help="Domain to export; repeat for several (default: all).")
def snapshot_cmd(out_dir: str, domains: Tuple[str, ...]) -> None:
    """Write fetched domains to <out>/<domain>.json."""
    services = build_services(settings)
    directory = out_dir or settings.snapshot_dir

    async def _run():
        try:
            return await export_snapshot(
                services.source, directory, _domains(domains), source_tag=settings.source_tag
            )
        finally:
            await services.close()

    written, failed = asyncio.run(_run())
    for path in written.values():
        click.echo(f"Wrote snapshot: {path}")
    for domain, error in failed.items():
        click.echo(f"{domain.value}: FAILED: {error}", err=True)
    if failed:
        sys.exit(1)


@cli.command("serve")
@click.option("--host", default="0.0.0.0", show_default=True)
@click.option("--port", type=int, default=8000, show_default=True)
def serve_cmd(host: str, port: int) -> None:
    """Run the HTTP API with uvicorn."""
    import uvicorn

    uvicorn.run("refsync.main:app", host=host, port=port, log_level=settings.log_level.lower())
