from __future__ import annotations

import logging
import sqlite3
from typing import Iterable

from ..core.errors import ManifestConflictError, NotFoundError, RepositoryError
from ..schemas.coverage import (
    ACTIVE_JOB_STATUSES,
    IngestJob,
    Manifest,
    NewIngestJob,
)
from ..schemas.ohlcv_data import Candle

logger = logging.getLogger(__name__)

# keeps IN (...) lists under SQLite's bound-parameter limit
_IN_CLAUSE_BATCH = 500

_MANIFEST_COLUMNS = """
    id, symbol, timeframe, exchange_id, start_date, end_date, status,
    last_covered_to, notes, created_at, updated_at
"""

_JOB_COLUMNS = """
    id, manifest_id, symbol, timeframe, exchange_id, range_start, range_end,
    status, created_at, started_at, finished_at, inserted_count, error
"""

_JOB_PATCHABLE = frozenset(
    {"status", "started_at", "finished_at", "inserted_count", "error"}
)


def _row_to_manifest(row: sqlite3.Row) -> Manifest:
    return Manifest(**{key: row[key] for key in row.keys()})


def _row_to_job(row: sqlite3.Row) -> IngestJob:
    return IngestJob(**{key: row[key] for key in row.keys()})


class CoverageRepository:
    """Data access layer for coverage manifests, ingest jobs and candles.

    This repository encapsulates all SQL operations against the underlying
    SQLite database. Every write is a single-statement or single-transaction
    operation; there is no transaction spanning a job and its manifest, which
    is why coverage is recomputable from completed-job history.
    """

    def __init__(self, connection: sqlite3.Connection):
        self.connection = connection

    # Manifests

    def create_manifest(
        self,
        symbol: str,
        timeframe: str,
        exchange_id: str,
        start_date: int,
        end_date: int,
        notes: str | None,
        now_ms: int,
    ) -> Manifest:
        try:
            with self.connection:
                cursor = self.connection.execute(
                    """
                    INSERT INTO coverage_manifests (
                        symbol, timeframe, exchange_id, start_date, end_date,
                        status, last_covered_to, notes, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, 'active', ?, ?, ?, ?)
                    """,
                    (
                        symbol,
                        timeframe,
                        exchange_id,
                        start_date,
                        end_date,
                        start_date,
                        notes,
                        now_ms,
                        now_ms,
                    ),
                )
        except sqlite3.IntegrityError as exc:
            if "UNIQUE" not in str(exc):
                logger.exception("Rejected manifest for %s %s", symbol, timeframe)
                raise RepositoryError("Failed to create manifest") from exc
            raise ManifestConflictError(
                "A dataset with the same symbol/timeframe/exchange and date range already exists"
            ) from exc
        except sqlite3.Error as exc:
            logger.exception("Failed to create manifest for %s %s", symbol, timeframe)
            raise RepositoryError("Failed to create manifest") from exc
        manifest = self.get_manifest(int(cursor.lastrowid))
        if manifest is None:
            raise RepositoryError("Manifest could not be read back after insert")
        return manifest

    def get_manifest(self, manifest_id: int) -> Manifest | None:
        try:
            row = self.connection.execute(
                f"SELECT {_MANIFEST_COLUMNS} FROM coverage_manifests WHERE id = ?",
                (manifest_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to read manifest %s", manifest_id)
            raise RepositoryError("Failed to read manifest") from exc
        if row is None:
            return None
        return _row_to_manifest(row)

    def list_manifests(self) -> list[Manifest]:
        try:
            rows = self.connection.execute(
                f"""
                SELECT {_MANIFEST_COLUMNS}
                FROM coverage_manifests
                ORDER BY created_at DESC, id DESC
                """
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to list manifests")
            raise RepositoryError("Failed to list manifests") from exc
        return [_row_to_manifest(row) for row in rows]

    def list_active_manifests(self) -> list[Manifest]:
        try:
            rows = self.connection.execute(
                f"""
                SELECT {_MANIFEST_COLUMNS}
                FROM coverage_manifests
                WHERE status = 'active'
                ORDER BY updated_at ASC, id ASC
                """
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to list active manifests")
            raise RepositoryError("Failed to list active manifests") from exc
        return [_row_to_manifest(row) for row in rows]

    def update_manifest(
        self, manifest_id: int, last_covered_to: int, updated_at: int
    ) -> None:
        try:
            with self.connection:
                self.connection.execute(
                    """
                    UPDATE coverage_manifests
                    SET last_covered_to = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (last_covered_to, updated_at, manifest_id),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to update manifest %s", manifest_id)
            raise RepositoryError("Failed to update manifest") from exc

    def set_manifest_status(
        self, manifest_id: int, status: str, updated_at: int
    ) -> Manifest:
        try:
            with self.connection:
                cursor = self.connection.execute(
                    """
                    UPDATE coverage_manifests
                    SET status = ?, updated_at = ?
                    WHERE id = ?
                    """,
                    (status, updated_at, manifest_id),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to set status on manifest %s", manifest_id)
            raise RepositoryError("Failed to update manifest status") from exc
        if cursor.rowcount == 0:
            raise NotFoundError(f"manifest not found: {manifest_id}")
        manifest = self.get_manifest(manifest_id)
        if manifest is None:
            raise NotFoundError(f"manifest not found: {manifest_id}")
        return manifest

    # Jobs

    def create_jobs(self, jobs: Iterable[NewIngestJob], created_at: int) -> list[int]:
        job_list = list(jobs)
        if not job_list:
            return []
        job_ids: list[int] = []
        try:
            with self.connection:
                for job in job_list:
                    cursor = self.connection.execute(
                        """
                        INSERT INTO ingest_jobs (
                            manifest_id, symbol, timeframe, exchange_id,
                            range_start, range_end, status, created_at
                        ) VALUES (?, ?, ?, ?, ?, ?, 'pending', ?)
                        """,
                        (
                            job.manifest_id,
                            job.symbol,
                            job.timeframe,
                            job.exchange_id,
                            job.range_start,
                            job.range_end,
                            created_at,
                        ),
                    )
                    job_ids.append(int(cursor.lastrowid))
        except sqlite3.Error as exc:
            logger.exception("Failed to create %s jobs", len(job_list))
            raise RepositoryError("Failed to create jobs") from exc
        return job_ids

    def count_active_jobs_for_manifest(self, manifest_id: int) -> int:
        placeholders = ", ".join("?" for _ in ACTIVE_JOB_STATUSES)
        try:
            row = self.connection.execute(
                f"""
                SELECT COUNT(1) AS total
                FROM ingest_jobs
                WHERE manifest_id = ? AND status IN ({placeholders})
                """,
                (manifest_id, *ACTIVE_JOB_STATUSES),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to count active jobs for %s", manifest_id)
            raise RepositoryError("Failed to count active jobs") from exc
        return int(row["total"]) if row else 0

    def count_failed_jobs_at(self, manifest_id: int, range_start: int) -> int:
        try:
            row = self.connection.execute(
                """
                SELECT COUNT(1) AS total
                FROM ingest_jobs
                WHERE manifest_id = ? AND status = 'failed' AND range_start = ?
                """,
                (manifest_id, range_start),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to count failed jobs for %s", manifest_id)
            raise RepositoryError("Failed to count failed jobs") from exc
        return int(row["total"]) if row else 0

    def find_oldest_pending_job(self) -> IngestJob | None:
        try:
            row = self.connection.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM ingest_jobs
                WHERE status = 'pending'
                ORDER BY created_at ASC, id ASC
                LIMIT 1
                """
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to find pending job")
            raise RepositoryError("Failed to find pending job") from exc
        if row is None:
            return None
        return _row_to_job(row)

    def list_completed_jobs_from(
        self, manifest_id: int, cursor_ms: int
    ) -> list[IngestJob]:
        try:
            rows = self.connection.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM ingest_jobs
                WHERE manifest_id = ? AND status = 'completed' AND range_end > ?
                ORDER BY range_start ASC, range_end DESC
                """,
                (manifest_id, cursor_ms),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to read completed jobs for %s", manifest_id)
            raise RepositoryError("Failed to read completed jobs") from exc
        return [_row_to_job(row) for row in rows]

    def fail_running_jobs(self, finished_at: int, error: str) -> int:
        """Mark every `running` job failed and return how many were touched."""
        try:
            with self.connection:
                cursor = self.connection.execute(
                    """
                    UPDATE ingest_jobs
                    SET status = 'failed', finished_at = ?, error = ?
                    WHERE status = 'running'
                    """,
                    (finished_at, error),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to fail running jobs")
            raise RepositoryError("Failed to fail running jobs") from exc
        return cursor.rowcount

    def update_job(self, job_id: int, **patch) -> None:
        unknown = set(patch) - _JOB_PATCHABLE
        if unknown:
            raise ValueError(f"cannot patch job fields: {sorted(unknown)}")
        if not patch:
            return
        assignments = ", ".join(f"{column} = ?" for column in patch)
        try:
            with self.connection:
                self.connection.execute(
                    f"UPDATE ingest_jobs SET {assignments} WHERE id = ?",
                    (*patch.values(), job_id),
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to update job %s", job_id)
            raise RepositoryError("Failed to update job") from exc

    def get_job(self, job_id: int) -> IngestJob | None:
        try:
            row = self.connection.execute(
                f"SELECT {_JOB_COLUMNS} FROM ingest_jobs WHERE id = ?",
                (job_id,),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to read job %s", job_id)
            raise RepositoryError("Failed to read job") from exc
        if row is None:
            return None
        return _row_to_job(row)

    def list_jobs(
        self,
        status: str | None = None,
        manifest_id: int | None = None,
        limit: int | None = None,
        offset: int | None = None,
    ) -> list[IngestJob]:
        clauses = []
        params: list[int | str] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if manifest_id is not None:
            clauses.append("manifest_id = ?")
            params.append(manifest_id)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        limit_clause = ""
        if limit is not None:
            limit_clause = "LIMIT ? OFFSET ?"
            params.extend([limit, offset or 0])
        try:
            rows = self.connection.execute(
                f"""
                SELECT {_JOB_COLUMNS}
                FROM ingest_jobs
                {where_clause}
                ORDER BY created_at DESC, id DESC
                {limit_clause}
                """,
                tuple(params),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to list jobs")
            raise RepositoryError("Failed to list jobs") from exc
        return [_row_to_job(row) for row in rows]

    def count_jobs(
        self, status: str | None = None, manifest_id: int | None = None
    ) -> int:
        clauses = []
        params: list[int | str] = []
        if status:
            clauses.append("status = ?")
            params.append(status)
        if manifest_id is not None:
            clauses.append("manifest_id = ?")
            params.append(manifest_id)
        where_clause = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        try:
            row = self.connection.execute(
                f"SELECT COUNT(1) AS total FROM ingest_jobs {where_clause}",
                tuple(params),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to count jobs")
            raise RepositoryError("Failed to count jobs") from exc
        if row is None:
            return 0
        return int(row["total"])

    # Candles

    def get_existing_timestamps(
        self, symbol: str, timeframe: str, timestamps: Iterable[int]
    ) -> set[int]:
        wanted = sorted(set(timestamps))
        existing: set[int] = set()
        try:
            for offset in range(0, len(wanted), _IN_CLAUSE_BATCH):
                batch = wanted[offset : offset + _IN_CLAUSE_BATCH]
                placeholders = ", ".join("?" for _ in batch)
                rows = self.connection.execute(
                    f"""
                    SELECT timestamp FROM candles
                    WHERE symbol = ? AND timeframe = ? AND timestamp IN ({placeholders})
                    """,
                    (symbol, timeframe, *batch),
                ).fetchall()
                existing.update(int(row["timestamp"]) for row in rows)
        except sqlite3.Error as exc:
            logger.exception("Failed to read timestamps for %s %s", symbol, timeframe)
            raise RepositoryError("Failed to read timestamps") from exc
        return existing

    def upsert_candles_if_absent(
        self, symbol: str, timeframe: str, candles: Iterable[Candle]
    ) -> int:
        """Insert the candles whose timestamp is not stored yet.

        Existing rows are never overwritten, so replaying a batch is a no-op.
        Returns the number of rows actually inserted.
        """
        by_timestamp: dict[int, Candle] = {}
        for candle in candles:
            by_timestamp.setdefault(candle.timestamp, candle)
        if not by_timestamp:
            return 0

        try:
            with self.connection:
                existing = self.get_existing_timestamps(
                    symbol, timeframe, by_timestamp.keys()
                )
                missing = [
                    candle
                    for timestamp, candle in sorted(by_timestamp.items())
                    if timestamp not in existing
                ]
                if not missing:
                    return 0
                self.connection.executemany(
                    """
                    INSERT OR IGNORE INTO candles (
                        symbol, timeframe, timestamp, open, high, low, close, volume
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    [
                        (
                            symbol,
                            timeframe,
                            candle.timestamp,
                            candle.open,
                            candle.high,
                            candle.low,
                            candle.close,
                            candle.volume,
                        )
                        for candle in missing
                    ],
                )
        except sqlite3.Error as exc:
            logger.exception("Failed to insert candles for %s %s", symbol, timeframe)
            raise RepositoryError("Failed to insert candles") from exc

        return len(missing)

    def get_candles(
        self,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
    ) -> list[dict]:
        try:
            rows = self.connection.execute(
                """
                SELECT timestamp, open, high, low, close, volume
                FROM candles
                WHERE symbol = ? AND timeframe = ? AND timestamp >= ? AND timestamp < ?
                ORDER BY timestamp
                """,
                (symbol, timeframe, start_ms, end_ms),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to read candles for %s", symbol)
            raise RepositoryError("Failed to read candles") from exc
        return [dict(row) for row in rows]

    def get_recent_candles(
        self,
        symbol: str,
        timeframe: str,
        to_ms: int | None,
        limit: int,
    ) -> list[dict]:
        clauses = ["symbol = ?", "timeframe = ?"]
        params: list[int | str] = [symbol, timeframe]
        if to_ms is not None:
            clauses.append("timestamp <= ?")
            params.append(to_ms)
        params.append(limit)
        try:
            rows = self.connection.execute(
                f"""
                SELECT timestamp, open, high, low, close, volume
                FROM candles
                WHERE {' AND '.join(clauses)}
                ORDER BY timestamp DESC
                LIMIT ?
                """,
                tuple(params),
            ).fetchall()
        except sqlite3.Error as exc:
            logger.exception("Failed to read candles for %s", symbol)
            raise RepositoryError("Failed to read candles") from exc
        return [dict(row) for row in reversed(rows)]

    def count_candles(
        self,
        symbol: str,
        timeframe: str,
        start_ms: int | None = None,
        end_ms: int | None = None,
    ) -> int:
        clauses = ["symbol = ?", "timeframe = ?"]
        params: list[int | str] = [symbol, timeframe]
        if start_ms is not None:
            clauses.append("timestamp >= ?")
            params.append(start_ms)
        if end_ms is not None:
            clauses.append("timestamp < ?")
            params.append(end_ms)
        try:
            row = self.connection.execute(
                f"SELECT COUNT(1) AS total FROM candles WHERE {' AND '.join(clauses)}",
                tuple(params),
            ).fetchone()
        except sqlite3.Error as exc:
            logger.exception("Failed to count candles for %s", symbol)
            raise RepositoryError("Failed to count candles") from exc
        if row is None:
            return 0
        return int(row["total"])
