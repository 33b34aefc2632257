from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field, model_validator


ManifestStatus = Literal["active", "paused", "done"]
JobStatus = Literal["pending", "running", "completed", "failed"]

ACTIVE_JOB_STATUSES: tuple[str, ...] = ("pending", "running")


class Manifest(BaseModel):
    """A declared (symbol, timeframe, exchange, range) to keep synchronized.

    ``last_covered_to`` is the exclusive upper bound of what has been fetched
    so far; it starts at ``start_date``.
    """

    id: int
    symbol: str
    timeframe: str
    exchange_id: str
    start_date: int
    end_date: int
    status: ManifestStatus = "active"
    last_covered_to: int | None = None
    notes: str | None = None
    created_at: int
    updated_at: int

    @property
    def covered_to(self) -> int:
        if self.last_covered_to is None:
            return self.start_date
        return self.last_covered_to

    def target_end(self, now_ms: int) -> int:
        return min(self.end_date, now_ms)


class IngestJob(BaseModel):
    id: int
    manifest_id: int
    symbol: str
    timeframe: str
    exchange_id: str
    range_start: int
    range_end: int
    status: JobStatus = "pending"
    created_at: int
    started_at: int | None = None
    finished_at: int | None = None
    inserted_count: int | None = None
    error: str | None = None


class NewIngestJob(BaseModel):
    """Job row as emitted by the planner, before the store assigns an id."""

    manifest_id: int
    symbol: str
    timeframe: str
    exchange_id: str
    range_start: int = Field(..., ge=0)
    range_end: int = Field(..., ge=0)

    @model_validator(mode="after")
    def validate_order(self) -> "NewIngestJob":
        if self.range_end <= self.range_start:
            raise ValueError("range_end must be greater than range_start")
        return self
