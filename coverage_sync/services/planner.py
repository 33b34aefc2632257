from __future__ import annotations

import logging
from typing import Callable

from ..core.timeframes import (
    DEFAULT_CHUNK_MS,
    format_epoch_ms,
    split_range,
    timeframe_to_ms,
)
from ..db.repository import CoverageRepository
from ..schemas.coverage import Manifest, NewIngestJob
from .coverage import contiguous_coverage, next_covered_start, utc_now_ms

logger = logging.getLogger(__name__)


class CoveragePlanner:
    """Turns the first uncovered gap of each active manifest into pending jobs.

    The gap runs from the contiguous coverage cursor to whichever comes first:
    the target end or the start of the next chunk that already completed.
    Only job rows are written; manifests are read, never updated.
    """

    def __init__(
        self,
        repository: CoverageRepository,
        chunk_ms: int = DEFAULT_CHUNK_MS,
        max_failed_attempts: int | None = None,
        clock: Callable[[], int] | None = None,
    ):
        if chunk_ms <= 0:
            raise ValueError("chunk_ms must be positive")
        self.repository = repository
        self.chunk_ms = chunk_ms
        self.max_failed_attempts = max_failed_attempts
        self.clock = clock or utc_now_ms

    def plan(self) -> int:
        """Plan every active manifest once; returns the number of jobs created."""
        created = 0
        for manifest in self.repository.list_active_manifests():
            try:
                created += self.plan_manifest(manifest)
            except Exception:
                logger.exception(
                    "Planning failed for manifest %s %s %s",
                    manifest.id,
                    manifest.symbol,
                    manifest.timeframe,
                )
        return created

    def plan_manifest(self, manifest: Manifest) -> int:
        now_ms = self.clock()
        covered_to = contiguous_coverage(self.repository, manifest, now_ms)
        target = manifest.target_end(now_ms)
        if covered_to >= target:
            return 0
        # an open-ended tail is only planned once it holds a whole candle
        if target < manifest.end_date and target - covered_to < timeframe_to_ms(
            manifest.timeframe
        ):
            return 0

        if self.repository.count_active_jobs_for_manifest(manifest.id) > 0:
            return 0

        if self.max_failed_attempts is not None:
            failures = self.repository.count_failed_jobs_at(manifest.id, covered_to)
            if failures >= self.max_failed_attempts:
                logger.warning(
                    "Manifest %s quarantined at %s after %s failed attempts",
                    manifest.id,
                    covered_to,
                    failures,
                )
                return 0

        gap_end = target
        next_start = next_covered_start(self.repository, manifest, covered_to)
        if next_start is not None:
            gap_end = min(gap_end, next_start)

        jobs = [
            NewIngestJob(
                manifest_id=manifest.id,
                symbol=manifest.symbol,
                timeframe=manifest.timeframe,
                exchange_id=manifest.exchange_id,
                range_start=chunk_start,
                range_end=chunk_end,
            )
            for chunk_start, chunk_end in split_range(covered_to, gap_end, self.chunk_ms)
        ]
        if not jobs:
            return 0

        self.repository.create_jobs(jobs, created_at=now_ms)
        logger.info(
            "Planned %s jobs for manifest %s %s %s from %s to %s",
            len(jobs),
            manifest.id,
            manifest.symbol,
            manifest.timeframe,
            format_epoch_ms(covered_to),
            format_epoch_ms(gap_end),
        )
        return len(jobs)
