from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field, field_validator, model_validator

from ..core.timeframes import TIMEFRAME_TO_MS
from .coverage import ManifestStatus


def _validate_timeframe(value: str) -> str:
    cleaned = value.strip()
    if cleaned not in TIMEFRAME_TO_MS:
        raise ValueError(
            f"timeframe must be one of {', '.join(TIMEFRAME_TO_MS)}"
        )
    return cleaned


class CreateManifestRequest(BaseModel):
    symbol: str = Field(..., min_length=1)
    timeframe: str
    exchange_id: str | None = None
    start_date: datetime
    end_date: datetime
    notes: str | None = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip()

    @field_validator("timeframe")
    @classmethod
    def validate_timeframe(cls, value: str) -> str:
        return _validate_timeframe(value)

    @field_validator("exchange_id", mode="before")
    @classmethod
    def normalize_exchange(cls, value: str | None) -> str | None:
        if value in ("", None):
            return None
        return value.strip().lower()

    @field_validator("notes", mode="before")
    @classmethod
    def normalize_notes(cls, value: str | None) -> str | None:
        if value is None:
            return None
        cleaned = value.strip()
        return cleaned or None

    @model_validator(mode="after")
    def validate_date_range(self) -> "CreateManifestRequest":
        if self.end_date <= self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class UpdateManifestStatusRequest(BaseModel):
    status: ManifestStatus


class BackfillRequest(BaseModel):
    symbol: str = Field(..., min_length=1)
    timeframe: str
    start: datetime
    end: datetime
    exchange_id: str | None = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, value: str) -> str:
        return value.strip()

    @field_validator("timeframe")
    @classmethod
    def validate_timeframe(cls, value: str) -> str:
        return _validate_timeframe(value)

    @field_validator("exchange_id", mode="before")
    @classmethod
    def normalize_exchange(cls, value: str | None) -> str | None:
        if value in ("", None):
            return None
        return value.strip().lower()

    @model_validator(mode="after")
    def validate_date_range(self) -> "BackfillRequest":
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


class JobActionRequest(BaseModel):
    action: str = ""

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, value: str | None) -> str:
        if value is None:
            return ""
        return str(value).strip().lower()
