from __future__ import annotations

from dataclasses import dataclass
import logging
import time
from typing import Callable

from ..core.errors import ProviderError
from ..core.exchange_client import CandleSource
from ..core.timeframes import timeframe_to_ms
from .candle_writer import CandleWriter

logger = logging.getLogger(__name__)

DEFAULT_LIMIT_PER_CALL = 1000
DEFAULT_SLEEP_MS = 250
DEFAULT_MAX_CONSECUTIVE_ERRORS: int | None = None
ERROR_BACKOFF_FACTOR = 4


@dataclass(frozen=True)
class FetchResult:
    passed: int = 0
    inserted: int = 0
    calls: int = 0


class ChunkedFetcher:
    """Walks ``[start_ms, end_ms)`` in source-sized pages, writing each page.

    The cursor strictly increases on every successful call, and empty pages
    skip ahead a full page, so any finite range terminates. Failed calls are
    retried at the same cursor after a backoff, for as long as the range is
    unfinished. Setting ``max_consecutive_errors`` makes the fetch give up and
    raise once that many calls in a row have failed.
    """

    def __init__(
        self,
        writer: CandleWriter,
        limit_per_call: int = DEFAULT_LIMIT_PER_CALL,
        sleep_ms: int = DEFAULT_SLEEP_MS,
        max_consecutive_errors: int | None = DEFAULT_MAX_CONSECUTIVE_ERRORS,
        sleep: Callable[[float], None] | None = None,
    ):
        if limit_per_call <= 0:
            raise ValueError("limit_per_call must be positive")
        self.writer = writer
        self.limit_per_call = limit_per_call
        self.sleep_ms = max(0, sleep_ms)
        self.max_consecutive_errors = max_consecutive_errors
        self.sleep = sleep or time.sleep

    def _pause(self, milliseconds: int) -> None:
        if milliseconds > 0:
            self.sleep(milliseconds / 1000)

    def fetch_range(
        self,
        source: CandleSource,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
        limit_per_call: int | None = None,
        sleep_ms: int | None = None,
    ) -> FetchResult:
        limit = limit_per_call or self.limit_per_call
        pause_ms = self.sleep_ms if sleep_ms is None else max(0, sleep_ms)
        step_ms = timeframe_to_ms(timeframe)

        cursor = start_ms
        passed = 0
        inserted = 0
        calls = 0
        consecutive_errors = 0

        while cursor < end_ms and end_ms - cursor >= step_ms:
            calls += 1
            try:
                batch = source.fetch_candles(symbol, timeframe, cursor, limit)
            except Exception as exc:
                consecutive_errors += 1
                if (
                    self.max_consecutive_errors is not None
                    and consecutive_errors >= self.max_consecutive_errors
                ):
                    logger.error(
                        "Giving up on %s %s at %s after %s consecutive errors",
                        symbol,
                        timeframe,
                        cursor,
                        consecutive_errors,
                    )
                    raise ProviderError(f"Provider fetch failed: {exc}") from exc
                logger.warning(
                    "Fetch failed for %s %s at %s (attempt %s): %s",
                    symbol,
                    timeframe,
                    cursor,
                    consecutive_errors,
                    exc,
                )
                self._pause(ERROR_BACKOFF_FACTOR * pause_ms)
            else:
                consecutive_errors = 0
                timestamps = [
                    int(row[0]) for row in batch or [] if row and row[0] is not None
                ]
                if not timestamps:
                    # presumed hole in the source's history
                    cursor += limit * step_ms
                else:
                    window = [
                        row
                        for row in batch
                        if row and row[0] is not None and cursor <= int(row[0]) < end_ms
                    ]
                    if window:
                        passed += len(window)
                        inserted += self.writer.write(symbol, timeframe, window)
                    cursor = max(max(timestamps) + step_ms, cursor + step_ms)

            self._pause(pause_ms)

        logger.debug(
            "Fetched %s %s [%s, %s): %s passed, %s inserted in %s calls",
            symbol,
            timeframe,
            start_ms,
            end_ms,
            passed,
            inserted,
            calls,
        )
        return FetchResult(passed=passed, inserted=inserted, calls=calls)
