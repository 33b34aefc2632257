from __future__ import annotations

import logging
import sqlite3
import time
from typing import Callable

from ..config import Settings
from ..core.errors import NotFoundError, UnrecognizedSymbolError
from ..core.exchange_client import CandleSource, CcxtSource, SourceRegistry
from ..core.openalgo_client import OPENALGO_EXCHANGE_ID, OpenAlgoSource
from ..core.symbols import resolve_symbol
from ..core.timeframes import to_epoch_ms
from ..db.db import open_database
from ..db.repository import CoverageRepository
from ..schemas.coverage import IngestJob, Manifest
from ..schemas.requests import BackfillRequest, CreateManifestRequest
from .candle_writer import CandleWriter
from .chunked_fetcher import ChunkedFetcher
from .coverage import utc_now_ms
from .executor import JobExecutor
from .planner import CoveragePlanner
from .scheduler import CoverageScheduler

logger = logging.getLogger(__name__)

MAX_OHLCV_LIMIT = 2000


def default_source_factory(settings: Settings) -> Callable[[str], CandleSource]:
    def factory(exchange_id: str) -> CandleSource:
        if exchange_id == OPENALGO_EXCHANGE_ID:
            return OpenAlgoSource(
                api_key=settings.openalgo_api_key,
                base_url=settings.openalgo_base_url,
                exchange=settings.openalgo_exchange,
            )
        return CcxtSource(
            exchange_id,
            api_key=settings.exchange_api_key,
            secret=settings.exchange_secret,
            sandbox=settings.exchange_sandbox,
        )

    return factory


class CoverageService:
    """Application-facing operations over manifests, jobs and candles."""

    def __init__(
        self,
        repository: CoverageRepository,
        scheduler: CoverageScheduler,
        sources: SourceRegistry,
        settings: Settings,
        clock: Callable[[], int] | None = None,
    ):
        self.repository = repository
        self.scheduler = scheduler
        self.sources = sources
        self.settings = settings
        self.clock = clock or utc_now_ms

    # Manifests

    def list_manifests(self) -> list[Manifest]:
        return self.repository.list_manifests()

    def get_manifest(self, manifest_id: int) -> Manifest:
        manifest = self.repository.get_manifest(manifest_id)
        if manifest is None:
            raise NotFoundError(f"dataset not found: {manifest_id}")
        return manifest

    def create_manifest(self, request: CreateManifestRequest) -> Manifest:
        exchange_id = request.exchange_id or self.settings.default_exchange
        resolution = self.resolve_symbol(exchange_id, request.symbol)
        if not resolution.get("matched"):
            raise UnrecognizedSymbolError(
                "unrecognized symbol", suggestions=resolution.get("suggestions")
            )

        manifest = self.repository.create_manifest(
            symbol=resolution["result"]["storage_symbol"],
            timeframe=request.timeframe,
            exchange_id=exchange_id,
            start_date=to_epoch_ms(request.start_date),
            end_date=to_epoch_ms(request.end_date),
            notes=request.notes,
            now_ms=self.clock(),
        )
        logger.info(
            "Created manifest %s %s %s on %s",
            manifest.id,
            manifest.symbol,
            manifest.timeframe,
            manifest.exchange_id,
        )
        return manifest

    def set_manifest_status(self, manifest_id: int, status: str) -> Manifest:
        manifest = self.repository.set_manifest_status(
            manifest_id, status, updated_at=self.clock()
        )
        logger.info("Manifest %s set to %s", manifest_id, status)
        return manifest

    def resolve_symbol(self, exchange_id: str, symbol: str) -> dict:
        source = self.sources.get(exchange_id)
        return resolve_symbol(source, exchange_id, symbol)

    # Jobs

    def list_jobs(
        self,
        status: str | None = None,
        manifest_id: int | None = None,
        limit: int | None = 200,
        offset: int = 0,
    ) -> list[IngestJob]:
        return self.repository.list_jobs(
            status=status, manifest_id=manifest_id, limit=limit, offset=offset
        )

    def count_jobs(
        self, status: str | None = None, manifest_id: int | None = None
    ) -> int:
        return self.repository.count_jobs(status=status, manifest_id=manifest_id)

    def get_job(self, job_id: int) -> IngestJob:
        job = self.repository.get_job(job_id)
        if job is None:
            raise NotFoundError(f"job not found: {job_id}")
        return job

    def tick(self) -> bool:
        return self.scheduler.tick()

    # Candles

    def backfill(self, request: BackfillRequest) -> dict:
        exchange_id = request.exchange_id or self.settings.default_exchange
        return self.scheduler.backfill_range(
            request.symbol,
            request.timeframe,
            to_epoch_ms(request.start),
            to_epoch_ms(request.end),
            exchange_id,
        )

    def get_ohlcv(
        self,
        symbol: str,
        timeframe: str,
        to_ms: int | None = None,
        limit: int = 200,
    ) -> list[dict]:
        bounded = max(1, min(limit, MAX_OHLCV_LIMIT))
        return self.repository.get_recent_candles(symbol, timeframe, to_ms, bounded)

    # Lifecycle

    def start(self) -> None:
        self.scheduler.start(self.settings.tick_ms)

    def stop(self) -> None:
        self.scheduler.stop()

    def status(self) -> dict:
        return {
            "scheduler_running": self.scheduler.is_running,
            "tick_in_progress": self.scheduler.is_busy,
            "tick_count": self.scheduler.tick_count,
            "tick_ms": self.settings.tick_ms,
            "jobs_per_tick": self.scheduler.jobs_per_tick,
            "pending_jobs": self.repository.count_jobs(status="pending"),
            "failed_jobs": self.repository.count_jobs(status="failed"),
        }

    def close(self) -> None:
        self.stop()
        self.repository.connection.close()


def build_service(
    settings: Settings,
    source_factory: Callable[[str], CandleSource] | None = None,
    connection: sqlite3.Connection | None = None,
    clock: Callable[[], int] | None = None,
    sleep: Callable[[float], None] | None = None,
) -> CoverageService:
    """Wire repository, fetcher, planner, executor and scheduler together."""
    clock = clock or utc_now_ms
    repository = CoverageRepository(connection or open_database(settings.db_path))
    sources = SourceRegistry(source_factory or default_source_factory(settings))
    fetcher = ChunkedFetcher(
        CandleWriter(repository),
        limit_per_call=settings.limit_per_call,
        sleep_ms=settings.sleep_ms,
        max_consecutive_errors=settings.max_consecutive_errors,
        sleep=sleep or time.sleep,
    )
    planner = CoveragePlanner(
        repository,
        chunk_ms=settings.chunk_ms,
        max_failed_attempts=settings.max_failed_attempts,
        clock=clock,
    )
    executor = JobExecutor(repository, sources, fetcher, clock=clock)
    scheduler = CoverageScheduler(
        planner,
        executor,
        fetcher,
        sources,
        jobs_per_tick=settings.jobs_per_tick,
    )
    return CoverageService(repository, scheduler, sources, settings, clock=clock)
