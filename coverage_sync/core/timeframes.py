from __future__ import annotations

from datetime import date, datetime, timezone


MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS

TIMEFRAME_TO_MS = {
    "1m": MINUTE_MS,
    "3m": 3 * MINUTE_MS,
    "5m": 5 * MINUTE_MS,
    "15m": 15 * MINUTE_MS,
    "30m": 30 * MINUTE_MS,
    "1h": HOUR_MS,
    "2h": 2 * HOUR_MS,
    "4h": 4 * HOUR_MS,
    "6h": 6 * HOUR_MS,
    "8h": 8 * HOUR_MS,
    "12h": 12 * HOUR_MS,
    "1d": DAY_MS,
    "3d": 3 * DAY_MS,
    "1w": 7 * DAY_MS,
    "1M": 30 * DAY_MS,
}

DEFAULT_CHUNK_MS = 30 * DAY_MS


def timeframe_to_ms(timeframe: str) -> int:
    try:
        return TIMEFRAME_TO_MS[timeframe]
    except KeyError as exc:
        raise ValueError(f"unsupported timeframe: {timeframe}") from exc


def split_range(
    start_ms: int,
    end_ms: int,
    chunk_ms: int = DEFAULT_CHUNK_MS,
) -> list[tuple[int, int]]:
    """
    Split the half-open range ``[start_ms, end_ms)`` into contiguous chunks.

    Every chunk except possibly the last spans exactly ``chunk_ms``
    milliseconds. Each returned ``(chunk_start, chunk_end)`` pair is half-open
    as well, so consecutive chunks share their boundary and the union of all
    chunks is exactly the input range.

    Parameters
    ----------
    start_ms:
        Inclusive start, epoch milliseconds.
    end_ms:
        Exclusive end, epoch milliseconds. An empty or inverted range yields
        no chunks.
    chunk_ms:
        Maximum chunk width in milliseconds; must be positive.

    Returns
    -------
    list[tuple[int, int]]
        ``ceil((end_ms - start_ms) / chunk_ms)`` chunks in ascending order.
    """
    if chunk_ms <= 0:
        raise ValueError("chunk_ms must be positive")
    if end_ms <= start_ms:
        return []

    chunks: list[tuple[int, int]] = []
    cursor = start_ms
    while cursor < end_ms:
        chunk_end = min(cursor + chunk_ms, end_ms)
        chunks.append((cursor, chunk_end))
        cursor = chunk_end
    return chunks


def to_epoch_ms(value: datetime | date | int) -> int:
    if isinstance(value, int):
        return value
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    return int(
        datetime(value.year, value.month, value.day, tzinfo=timezone.utc).timestamp()
        * 1000
    )


def format_epoch_ms(value: int | None) -> str | None:
    if value is None:
        return None
    return (
        datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        .isoformat()
        .replace("+00:00", "Z")
    )
