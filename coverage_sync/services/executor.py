from __future__ import annotations

import logging
from typing import Callable

from ..core.exchange_client import SourceRegistry
from ..db.repository import CoverageRepository
from ..schemas.coverage import IngestJob
from .chunked_fetcher import ChunkedFetcher
from .coverage import advance_coverage, contiguous_coverage, utc_now_ms

logger = logging.getLogger(__name__)

INTERRUPTED_ERROR = "interrupted"


class JobExecutor:
    """Runs the oldest pending job and advances its manifest on success."""

    def __init__(
        self,
        repository: CoverageRepository,
        sources: SourceRegistry,
        fetcher: ChunkedFetcher,
        clock: Callable[[], int] | None = None,
    ):
        self.repository = repository
        self.sources = sources
        self.fetcher = fetcher
        self.clock = clock or utc_now_ms

    def recover_interrupted(self) -> int:
        """Fail jobs left `running` by a process that died mid-fetch.

        Jobs only run inside a tick, so any `running` row seen before the
        tick starts executing is orphaned. Failing it frees the manifest for
        the single-flight check and lets its gap be planned again.
        """
        interrupted = self.repository.fail_running_jobs(
            finished_at=self.clock(), error=INTERRUPTED_ERROR
        )
        if interrupted:
            logger.warning("Marked %s interrupted jobs as failed", interrupted)
        return interrupted

    def repair_coverage(self) -> int:
        """Advance active manifests over jobs that completed without a cursor update.

        Interrupted jobs are failed first. Returns the number of manifests
        whose cursor moved.
        """
        self.recover_interrupted()
        now_ms = self.clock()
        repaired = 0
        for manifest in self.repository.list_active_manifests():
            if advance_coverage(self.repository, manifest, now_ms) > manifest.covered_to:
                logger.info("Repaired coverage for manifest %s", manifest.id)
                repaired += 1
        return repaired

    def execute_next(self) -> IngestJob | None:
        job = self.repository.find_oldest_pending_job()
        if job is None:
            return None

        now_ms = self.clock()
        manifest = self.repository.get_manifest(job.manifest_id)
        if manifest is not None and job.range_end <= contiguous_coverage(
            self.repository, manifest, now_ms
        ):
            self.repository.update_job(
                job.id,
                status="completed",
                started_at=now_ms,
                finished_at=now_ms,
                inserted_count=0,
            )
            logger.info("Job %s already covered, completed without fetching", job.id)
            return self.repository.get_job(job.id)

        self.repository.update_job(
            job.id, status="running", started_at=self.clock(), error=None
        )

        try:
            source = self.sources.get(job.exchange_id)
            result = self.fetcher.fetch_range(
                source,
                job.symbol,
                job.timeframe,
                job.range_start,
                job.range_end,
            )
        except Exception as exc:
            logger.exception("Job %s failed", job.id)
            self.repository.update_job(
                job.id,
                status="failed",
                finished_at=self.clock(),
                error=str(exc) or exc.__class__.__name__,
            )
            return self.repository.get_job(job.id)

        now_ms = self.clock()
        self.repository.update_job(
            job.id,
            status="completed",
            finished_at=now_ms,
            inserted_count=result.inserted,
        )
        manifest = self.repository.get_manifest(job.manifest_id)
        if manifest is not None:
            advance_coverage(self.repository, manifest, now_ms)
        else:
            logger.warning("Job %s completed for missing manifest %s", job.id, job.manifest_id)

        logger.info(
            "Job %s completed with %s rows (%s passed to storage)",
            job.id,
            result.inserted,
            result.passed,
        )
        return self.repository.get_job(job.id)
