from coverage_sync.core.errors import UnsupportedExchangeError
from coverage_sync.core.exchange_client import SourceRegistry
from coverage_sync.core.timeframes import DAY_MS, HOUR_MS
from coverage_sync.db.repository import CoverageRepository
from coverage_sync.schemas.coverage import NewIngestJob
from coverage_sync.services.candle_writer import CandleWriter
from coverage_sync.services.chunked_fetcher import ChunkedFetcher
from coverage_sync.services.coverage import advance_coverage
from coverage_sync.services.executor import INTERRUPTED_ERROR, JobExecutor
from coverage_sync.services.planner import CoveragePlanner


START = 1704067200000


def _components(
    repository, source, clock, sleeps, chunk_days=30, max_errors=1, limit_per_call=1000
):
    sources = SourceRegistry(lambda exchange_id: source)
    fetcher = ChunkedFetcher(
        CandleWriter(repository),
        limit_per_call=limit_per_call,
        sleep_ms=0,
        max_consecutive_errors=max_errors,
        sleep=sleeps.append,
    )
    planner = CoveragePlanner(repository, chunk_ms=chunk_days * DAY_MS, clock=clock)
    executor = JobExecutor(repository, sources, fetcher, clock=clock)
    return planner, executor


def _manifest(repository: CoverageRepository, days: float, symbol: str = "BTC_USDT", now_ms: int = 1):
    return repository.create_manifest(
        symbol=symbol,
        timeframe="1h",
        exchange_id="binance",
        start_date=START,
        end_date=START + int(days * DAY_MS),
        notes=None,
        now_ms=now_ms,
    )


def test_execute_next_returns_none_without_pending_jobs(repository, source, clock, sleeps):
    _, executor = _components(repository, source, clock, sleeps)

    assert executor.execute_next() is None


def test_two_day_hourly_manifest_syncs_in_one_job(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=2)
    planner, executor = _components(repository, source, clock, sleeps)

    assert planner.plan() == 1
    job = executor.execute_next()

    assert job.status == "completed"
    assert job.inserted_count == 48
    assert job.started_at == job.finished_at == clock.now_ms
    assert job.error is None
    assert repository.count_candles("BTC_USDT", "1h") == 48
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
    assert planner.plan() == 0


def test_failed_job_leaves_coverage_and_is_replanned(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=2)
    planner, executor = _components(repository, source, clock, sleeps)
    source.errors = [RuntimeError("exchange down")]

    planner.plan()
    failed = executor.execute_next()

    assert failed.status == "failed"
    assert "exchange down" in failed.error
    assert failed.finished_at is not None
    assert repository.get_manifest(manifest.id).last_covered_to == START

    assert planner.plan() == 1
    retry = executor.execute_next()

    assert retry.id != failed.id
    assert (retry.range_start, retry.range_end) == (failed.range_start, failed.range_end)
    assert retry.status == "completed"
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
    assert repository.count_candles("BTC_USDT", "1h") == 48


def test_jobs_run_in_creation_order_across_manifests(repository, source, clock, sleeps):
    first = _manifest(repository, days=1, symbol="BTC_USDT", now_ms=1)
    planner, executor = _components(repository, source, clock, sleeps)
    planner.plan()
    clock.advance(1)
    second = _manifest(repository, days=1, symbol="ETH_USDT", now_ms=2)
    planner.plan()

    assert executor.execute_next().manifest_id == first.id
    assert executor.execute_next().manifest_id == second.id


def test_later_success_does_not_skip_failed_middle_chunk(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=90)
    planner, executor = _components(repository, source, clock, sleeps)
    first_end = START + 30 * DAY_MS
    second_end = START + 60 * DAY_MS
    source.fail_when = lambda since_ms: first_end <= since_ms < second_end

    assert planner.plan() == 3
    statuses = [executor.execute_next().status for _ in range(3)]

    assert statuses == ["completed", "failed", "completed"]
    assert repository.get_manifest(manifest.id).last_covered_to == first_end

    source.fail_when = None
    assert planner.plan() == 1
    repaired = executor.execute_next()

    assert (repaired.range_start, repaired.range_end) == (first_end, second_end)
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
    assert executor.execute_next() is None


def test_coverage_is_rebuilt_from_completed_jobs_after_crash(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=2)
    planner, executor = _components(repository, source, clock, sleeps)
    planner.plan()
    (job,) = repository.list_jobs()
    # job finished but the process died before the manifest was touched
    repository.update_job(job.id, status="completed", inserted_count=48, finished_at=clock.now_ms)

    assert planner.plan() == 0
    assert repository.get_manifest(manifest.id).last_covered_to == START

    assert executor.repair_coverage() == 1
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
    assert executor.repair_coverage() == 0


def test_advance_coverage_clamps_to_now(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=10)
    planner, _ = _components(repository, source, clock, sleeps)
    planner.plan()
    (job,) = repository.list_jobs()
    repository.update_job(job.id, status="completed")

    now_ms = START + 5 * DAY_MS
    covered = advance_coverage(repository, repository.get_manifest(manifest.id), now_ms)

    assert covered == now_ms
    assert repository.get_manifest(manifest.id).updated_at == now_ms


def test_unknown_exchange_fails_the_job(repository, clock, sleeps):
    def factory(exchange_id: str):
        raise UnsupportedExchangeError(f"unsupported exchangeId: {exchange_id}")

    _manifest(repository, days=1)
    fetcher = ChunkedFetcher(CandleWriter(repository), sleep_ms=0, sleep=sleeps.append)
    planner = CoveragePlanner(repository, clock=clock)
    executor = JobExecutor(repository, SourceRegistry(factory), fetcher, clock=clock)
    planner.plan()

    job = executor.execute_next()

    assert job.status == "failed"
    assert job.error == "unsupported exchangeId: binance"


def test_job_for_sparse_history_completes_with_fewer_rows(repository, make_source, clock, sleeps):
    manifest = _manifest(repository, days=2)
    source = make_source(available_from=START + 24 * HOUR_MS)
    planner, executor = _components(repository, source, clock, sleeps)
    planner.plan()

    job = executor.execute_next()

    assert job.status == "completed"
    assert job.inserted_count == 24
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date


def test_fetch_failure_after_partial_write_keeps_cursor(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=2)
    planner, executor = _components(repository, source, clock, sleeps, limit_per_call=10)
    source.fail_when = lambda since_ms: since_ms >= START + 20 * HOUR_MS

    planner.plan()
    failed = executor.execute_next()

    assert failed.status == "failed"
    assert "Provider fetch failed" in failed.error
    assert repository.count_candles("BTC_USDT", "1h") == 20
    assert repository.get_manifest(manifest.id).last_covered_to == START

    source.fail_when = None
    assert planner.plan() == 1
    retry = executor.execute_next()

    assert retry.status == "completed"
    assert retry.inserted_count == 48 - 20
    assert repository.count_candles("BTC_USDT", "1h") == 48
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date


def test_replanned_hole_does_not_refetch_completed_days(repository, source, clock, sleeps):
    manifest = _manifest(repository, days=3)
    planner, executor = _components(repository, source, clock, sleeps, chunk_days=1)
    source.fail_when = lambda since_ms: since_ms < START + DAY_MS

    assert planner.plan() == 3
    assert [executor.execute_next().status for _ in range(3)] == [
        "failed",
        "completed",
        "completed",
    ]

    source.fail_when = None
    source.calls.clear()
    assert planner.plan() == 1
    hole = executor.execute_next()

    assert (hole.range_start, hole.range_end) == (START, START + DAY_MS)
    assert all(call[2] < START + DAY_MS for call in source.calls)
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
    assert executor.execute_next() is None


def test_pending_job_inside_coverage_completes_without_fetching(
    repository, source, clock, sleeps
):
    manifest = _manifest(repository, days=2)
    planner, executor = _components(repository, source, clock, sleeps)
    planner.plan()
    executor.execute_next()
    (duplicate_id,) = repository.create_jobs(
        [
            NewIngestJob(
                manifest_id=manifest.id,
                symbol="BTC_USDT",
                timeframe="1h",
                exchange_id="binance",
                range_start=START,
                range_end=START + DAY_MS,
            )
        ],
        created_at=clock.now_ms,
    )
    calls_before = len(source.calls)

    job = executor.execute_next()

    assert job.id == duplicate_id
    assert job.status == "completed"
    assert job.inserted_count == 0
    assert len(source.calls) == calls_before


def test_job_left_running_by_a_crash_is_failed_and_replanned(
    repository, source, clock, sleeps
):
    manifest = _manifest(repository, days=2)
    planner, _ = _components(repository, source, clock, sleeps)
    planner.plan()
    (job,) = repository.list_jobs()
    repository.update_job(job.id, status="running", started_at=clock.now_ms)

    # a fresh process after the restart
    planner, executor = _components(repository, source, clock, sleeps)
    assert planner.plan() == 0
    executor.repair_coverage()

    interrupted = repository.get_job(job.id)
    assert interrupted.status == "failed"
    assert interrupted.error == INTERRUPTED_ERROR
    assert interrupted.finished_at == clock.now_ms

    assert planner.plan() == 1
    retry = executor.execute_next()

    assert retry.status == "completed"
    assert repository.get_manifest(manifest.id).last_covered_to == manifest.end_date
