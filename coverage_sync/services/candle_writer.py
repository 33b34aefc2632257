from __future__ import annotations

import logging
import math
from typing import Iterable, Sequence

from ..db.repository import CoverageRepository
from ..schemas.ohlcv_data import Candle

logger = logging.getLogger(__name__)


def row_to_candle(symbol: str, timeframe: str, row: Sequence) -> Candle | None:
    """Build a candle from a raw ``[ts, o, h, l, c, v]`` row, or ``None`` if it is not sane."""
    if row is None or len(row) < 6:
        return None
    try:
        timestamp = int(row[0])
        open_, high, low, close, volume = (float(value) for value in row[1:6])
    except (TypeError, ValueError):
        return None

    if timestamp < 0:
        return None
    if not all(math.isfinite(value) for value in (open_, high, low, close)):
        return None
    if high < max(open_, close) or low > min(open_, close):
        return None
    if not math.isfinite(volume) or volume < 0:
        return None

    return Candle(
        symbol=symbol,
        timeframe=timeframe,
        timestamp=timestamp,
        open=open_,
        high=high,
        low=low,
        close=close,
        volume=volume,
    )


class CandleWriter:
    """Filters raw OHLCV rows and stores the ones not already present."""

    def __init__(self, repository: CoverageRepository):
        self.repository = repository

    def write(self, symbol: str, timeframe: str, rows: Iterable[Sequence]) -> int:
        candles: list[Candle] = []
        rejected = 0
        for row in rows:
            candle = row_to_candle(symbol, timeframe, row)
            if candle is None:
                rejected += 1
                continue
            candles.append(candle)

        if rejected:
            logger.warning(
                "Dropped %s malformed candles for %s %s", rejected, symbol, timeframe
            )
        if not candles:
            return 0
        return self.repository.upsert_candles_if_absent(symbol, timeframe, candles)
