from __future__ import annotations

import logging
import time

from ..db.repository import CoverageRepository
from ..schemas.coverage import Manifest

logger = logging.getLogger(__name__)


def utc_now_ms() -> int:
    return int(time.time() * 1000)


def contiguous_coverage(
    repository: CoverageRepository, manifest: Manifest, now_ms: int
) -> int:
    """
    Compute how far a manifest is covered by its completed jobs.

    Starting at the stored cursor, completed jobs are walked in range order
    and the cursor is extended through every job that starts at or before it.
    The walk stops at the first hole, so a failed chunk is never skipped over
    by a later chunk that happened to succeed. Nothing is written.

    Parameters
    ----------
    repository:
        Store holding the manifest's jobs.
    manifest:
        Manifest snapshot to evaluate.
    now_ms:
        Current time in epoch milliseconds.

    Returns
    -------
    int
        The covered cursor, never behind the stored one and clamped to
        ``min(end_date, now_ms)`` when it moves.
    """
    current = manifest.covered_to
    cursor = current
    for job in repository.list_completed_jobs_from(manifest.id, current):
        if job.range_start > cursor:
            break
        cursor = max(cursor, job.range_end)

    cursor = min(cursor, manifest.target_end(now_ms))
    return max(cursor, current)


def advance_coverage(
    repository: CoverageRepository, manifest: Manifest, now_ms: int
) -> int:
    """Persist :func:`contiguous_coverage` when it moved past the stored cursor."""
    current = manifest.covered_to
    cursor = contiguous_coverage(repository, manifest, now_ms)
    if cursor > current:
        repository.update_manifest(manifest.id, last_covered_to=cursor, updated_at=now_ms)
        logger.debug(
            "Manifest %s coverage advanced %s -> %s", manifest.id, current, cursor
        )
    return cursor


def next_covered_start(
    repository: CoverageRepository, manifest: Manifest, cursor_ms: int
) -> int | None:
    """Start of the first completed job that begins after ``cursor_ms``, if any."""
    for job in repository.list_completed_jobs_from(manifest.id, cursor_ms):
        if job.range_start > cursor_ms:
            return job.range_start
    return None
