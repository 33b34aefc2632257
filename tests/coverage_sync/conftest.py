from typing import Callable

import pytest

from coverage_sync.core.timeframes import DAY_MS, timeframe_to_ms
from coverage_sync.db.db import open_database
from coverage_sync.db.repository import CoverageRepository


# 2024-01-01T00:00:00Z
JAN_1_2024 = 1704067200000


class FakeCandleSource:
    """Test fake for an exchange that records fetch calls and serves flat
    candles for every aligned timestamp in its available window.

    Each call to `fetch_candles` records `(symbol, timeframe, since_ms, limit)`
    in `self.calls` and returns candles whose timestamp lies in
    `[since_ms, since_ms + limit * step)` and inside
    `[available_from, available_to)`. Queued `errors` are raised first, one per
    call, and `fail_when(since_ms)` can make specific cursors fail.
    """

    def __init__(
        self,
        available_from: int | None = None,
        available_to: int | None = None,
        symbols: list[str] | None = None,
    ):
        self.available_from = available_from
        self.available_to = available_to
        self.symbols = symbols or ["BTC/USDT", "ETH/USDT", "SOL/USDT"]
        self.errors: list[Exception] = []
        self.fail_when: Callable[[int], bool] | None = None
        self.calls: list[tuple[str, str, int, int]] = []

    def fetch_candles(self, symbol, timeframe, since_ms, limit):
        self.calls.append((symbol, timeframe, since_ms, limit))
        if self.errors:
            raise self.errors.pop(0)
        if self.fail_when is not None and self.fail_when(since_ms):
            raise RuntimeError(f"exchange unavailable at {since_ms}")

        step = timeframe_to_ms(timeframe)
        first = -(-since_ms // step) * step
        rows = []
        for timestamp in range(first, since_ms + limit * step, step):
            if self.available_from is not None and timestamp < self.available_from:
                continue
            if self.available_to is not None and timestamp >= self.available_to:
                continue
            rows.append([timestamp, 100.0, 110.0, 90.0, 105.0, 1000.0])
        return rows

    def list_symbols(self, query=None):
        _ = query
        return list(self.symbols)


class FakeClock:
    def __init__(self, now_ms: int):
        self.now_ms = now_ms

    def __call__(self) -> int:
        return self.now_ms

    def advance(self, delta_ms: int) -> None:
        self.now_ms += delta_ms


@pytest.fixture()
def repository() -> CoverageRepository:
    return CoverageRepository(open_database(":memory:"))


@pytest.fixture()
def clock() -> FakeClock:
    # well past every range used in the tests
    return FakeClock(JAN_1_2024 + 365 * DAY_MS)


@pytest.fixture()
def source() -> FakeCandleSource:
    return FakeCandleSource()


@pytest.fixture()
def sleeps() -> list[float]:
    return []


@pytest.fixture()
def make_source() -> type[FakeCandleSource]:
    return FakeCandleSource
