import pytest

from coverage_sync.core.errors import ProviderError
from coverage_sync.core.timeframes import HOUR_MS
from coverage_sync.db.repository import CoverageRepository
from coverage_sync.services.candle_writer import CandleWriter
from coverage_sync.services.chunked_fetcher import ChunkedFetcher


START = 1704067200000


def _fetcher(repository, sleeps, **kwargs) -> ChunkedFetcher:
    kwargs.setdefault("sleep_ms", 0)
    return ChunkedFetcher(CandleWriter(repository), sleep=sleeps.append, **kwargs)


def test_fetch_range_pages_forward_until_end(repository: CoverageRepository, source, sleeps):
    fetcher = _fetcher(repository, sleeps, limit_per_call=10)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 48 * HOUR_MS)

    assert result.inserted == 48
    assert result.passed == 48
    assert result.calls == 5
    cursors = [call[2] for call in source.calls]
    assert cursors == [START + i * 10 * HOUR_MS for i in range(5)]
    assert repository.count_candles("BTC_USDT", "1h") == 48


def test_fetch_range_keeps_only_rows_inside_window(repository: CoverageRepository, sleeps):
    class SloppySource:
        def fetch_candles(self, symbol, timeframe, since_ms, limit):
            # one row before the cursor, three inside, one past the end
            return [
                [since_ms - HOUR_MS + i * HOUR_MS, 1.0, 2.0, 0.5, 1.5, 1.0]
                for i in range(5)
            ]

        def list_symbols(self, query=None):
            return []

    fetcher = _fetcher(repository, sleeps, limit_per_call=5)

    result = fetcher.fetch_range(
        SloppySource(), "BTC_USDT", "1h", START, START + 3 * HOUR_MS
    )

    assert result.passed == 3
    assert result.inserted == 3
    assert repository.count_candles("BTC_USDT", "1h", START, START + 3 * HOUR_MS) == 3
    assert repository.count_candles("BTC_USDT", "1h") == 3


def test_empty_pages_skip_a_full_page(repository: CoverageRepository, make_source, sleeps):
    source = make_source(available_from=START + 100 * HOUR_MS)
    fetcher = _fetcher(repository, sleeps, limit_per_call=10)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 120 * HOUR_MS)

    assert result.calls == 12
    assert result.inserted == 20
    assert [call[2] for call in source.calls][:3] == [
        START,
        START + 10 * HOUR_MS,
        START + 20 * HOUR_MS,
    ]


def test_range_narrower_than_one_candle_makes_no_calls(
    repository: CoverageRepository, source, sleeps
):
    fetcher = _fetcher(repository, sleeps)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + HOUR_MS - 1)

    assert result.calls == 0
    assert source.calls == []


def test_errors_back_off_and_retry_same_cursor(repository: CoverageRepository, source, sleeps):
    source.errors = [RuntimeError("timeout"), RuntimeError("timeout")]
    fetcher = _fetcher(repository, sleeps, limit_per_call=100, sleep_ms=100)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 24 * HOUR_MS)

    assert result.inserted == 24
    assert result.calls == 3
    assert [call[2] for call in source.calls] == [START, START, START]
    assert sleeps == [0.4, 0.1, 0.4, 0.1, 0.1]


def test_retries_are_unbounded_by_default(repository: CoverageRepository, source, sleeps):
    source.errors = [RuntimeError("rate limited") for _ in range(12)]
    fetcher = _fetcher(repository, sleeps)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 24 * HOUR_MS)

    assert fetcher.max_consecutive_errors is None
    assert result.inserted == 24
    assert result.calls == 13


def test_gives_up_after_consecutive_errors(repository: CoverageRepository, source, sleeps):
    source.fail_when = lambda since_ms: True
    fetcher = _fetcher(repository, sleeps, max_consecutive_errors=3)

    with pytest.raises(ProviderError) as excinfo:
        fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 24 * HOUR_MS)

    assert len(source.calls) == 3
    assert isinstance(excinfo.value.__cause__, RuntimeError)


def test_success_resets_consecutive_error_count(repository: CoverageRepository, source, sleeps):
    failing = {START, START + 10 * HOUR_MS}
    attempts: dict[int, int] = {}

    def fail_once(since_ms: int) -> bool:
        attempts[since_ms] = attempts.get(since_ms, 0) + 1
        return since_ms in failing and attempts[since_ms] == 1

    source.fail_when = fail_once
    fetcher = _fetcher(repository, sleeps, limit_per_call=10, max_consecutive_errors=2)

    result = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 20 * HOUR_MS)

    assert result.inserted == 20
    assert result.calls == 4


def test_second_pass_passes_rows_but_inserts_nothing(
    repository: CoverageRepository, source, sleeps
):
    fetcher = _fetcher(repository, sleeps)
    fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 48 * HOUR_MS)

    again = fetcher.fetch_range(source, "BTC_USDT", "1h", START, START + 48 * HOUR_MS)

    assert again.passed == 48
    assert again.inserted == 0
