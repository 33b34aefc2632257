"""
Command line entry points for the coverage sync service.
"""

from __future__ import annotations

import json
import os
from pathlib import Path

import click
import uvicorn
from dotenv import load_dotenv

from .config import Settings, load_settings
from .core.errors import CoverageSyncError
from .core.timeframes import TIMEFRAME_TO_MS
from .logging_config import configure_logging
from .schemas.requests import BackfillRequest, CreateManifestRequest
from .services.coverage_service import CoverageService, build_service


def _service(ctx: click.Context) -> CoverageService:
    settings: Settings = ctx.obj["settings"]
    return build_service(settings)


def _echo_json(payload) -> None:
    click.echo(json.dumps(payload, indent=2, default=str))


@click.group()
@click.option("--config", "-c", default=None, help="YAML settings file")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config: str | None, verbose: bool) -> None:
    """Keep local candle coverage in sync with an exchange."""
    load_dotenv(Path.cwd() / ".env")
    try:
        settings = load_settings(config)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    configure_logging(settings, level="DEBUG" if verbose else None)
    ctx.ensure_object(dict)
    ctx.obj["config"] = config
    ctx.obj["settings"] = settings


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", default=8000, show_default=True, type=int)
@click.pass_context
def serve(ctx: click.Context, host: str, port: int) -> None:
    """Run the HTTP API with the tick timer."""
    if ctx.obj["config"]:
        os.environ["CS_CONFIG_FILE"] = ctx.obj["config"]
    click.echo(f"Starting coverage sync at http://{host}:{port}")
    uvicorn.run("coverage_sync.coverage_sync:app", host=host, port=port)


@main.command()
@click.option("--count", "-n", default=1, show_default=True, help="Ticks to run")
@click.pass_context
def tick(ctx: click.Context, count: int) -> None:
    """Run planning and execution ticks in the foreground."""
    service = _service(ctx)
    try:
        for _ in range(count):
            service.tick()
        _echo_json(service.status())
    finally:
        service.close()


@main.command()
@click.argument("symbol")
@click.argument("timeframe", type=click.Choice(list(TIMEFRAME_TO_MS)))
@click.argument("start")
@click.argument("end")
@click.option("--exchange", "-e", default=None, help="Exchange id (default from settings)")
@click.pass_context
def backfill(
    ctx: click.Context,
    symbol: str,
    timeframe: str,
    start: str,
    end: str,
    exchange: str | None,
) -> None:
    """Fetch SYMBOL candles between START and END (ISO dates) right away."""
    service = _service(ctx)
    try:
        request = BackfillRequest(
            symbol=symbol, timeframe=timeframe, start=start, end=end, exchange_id=exchange
        )
        result = service.backfill(request)
        _echo_json({"symbol": symbol, "timeframe": timeframe, **result})
    except CoverageSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        service.close()


@main.group()
def manifests() -> None:
    """Inspect and declare coverage manifests."""


@manifests.command("list")
@click.pass_context
def list_manifests(ctx: click.Context) -> None:
    service = _service(ctx)
    try:
        _echo_json([manifest.model_dump() for manifest in service.list_manifests()])
    finally:
        service.close()


@manifests.command("add")
@click.argument("symbol")
@click.argument("timeframe", type=click.Choice(list(TIMEFRAME_TO_MS)))
@click.argument("start")
@click.argument("end")
@click.option("--exchange", "-e", default=None, help="Exchange id (default from settings)")
@click.option("--notes", default=None)
@click.pass_context
def add_manifest(
    ctx: click.Context,
    symbol: str,
    timeframe: str,
    start: str,
    end: str,
    exchange: str | None,
    notes: str | None,
) -> None:
    service = _service(ctx)
    try:
        request = CreateManifestRequest(
            symbol=symbol,
            timeframe=timeframe,
            exchange_id=exchange,
            start_date=start,
            end_date=end,
            notes=notes,
        )
        _echo_json(service.create_manifest(request).model_dump())
    except CoverageSyncError as exc:
        raise click.ClickException(str(exc)) from exc
    finally:
        service.close()


@main.command()
@click.option("--status", default=None, help="Filter by job status")
@click.option("--limit", default=50, show_default=True)
@click.pass_context
def jobs(ctx: click.Context, status: str | None, limit: int) -> None:
    """List recent ingest jobs."""
    service = _service(ctx)
    try:
        _echo_json([job.model_dump() for job in service.list_jobs(status=status, limit=limit)])
    finally:
        service.close()


if __name__ == "__main__":
    main()
