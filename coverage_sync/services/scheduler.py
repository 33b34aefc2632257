from __future__ import annotations

import logging
import threading

from ..core.exchange_client import SourceRegistry
from .chunked_fetcher import ChunkedFetcher
from .executor import JobExecutor
from .planner import CoveragePlanner

logger = logging.getLogger(__name__)

DEFAULT_TICK_MS = 15_000


class CoverageScheduler:
    """Drives planning and execution, one tick at a time.

    ``tick`` is guarded by a non-blocking lock: a tick requested while another
    is in progress (timer and manual trigger overlapping) returns at once.
    ``start`` runs ticks on a daemon thread until ``stop``.
    """

    def __init__(
        self,
        planner: CoveragePlanner,
        executor: JobExecutor,
        fetcher: ChunkedFetcher,
        sources: SourceRegistry,
        jobs_per_tick: int = 1,
    ):
        if jobs_per_tick < 1:
            raise ValueError("jobs_per_tick must be at least 1")
        self.planner = planner
        self.executor = executor
        self.fetcher = fetcher
        self.sources = sources
        self.jobs_per_tick = jobs_per_tick
        self.interval_ms: int | None = None
        self.tick_count = 0
        self._tick_lock = threading.Lock()
        self._lifecycle_lock = threading.Lock()
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def is_busy(self) -> bool:
        return self._tick_lock.locked()

    def tick(self) -> bool:
        """Repair coverage, run one planning pass and up to ``jobs_per_tick`` jobs.

        Returns False when another tick already holds the slot.
        """
        if not self._tick_lock.acquire(blocking=False):
            logger.debug("Tick skipped; previous tick still running")
            return False
        try:
            self.executor.repair_coverage()
            self.planner.plan()
            for _ in range(self.jobs_per_tick):
                if self.executor.execute_next() is None:
                    break
        except Exception:
            logger.exception("Scheduler tick failed")
        finally:
            self.tick_count += 1
            self._tick_lock.release()
        return True

    def start(self, interval_ms: int = DEFAULT_TICK_MS) -> None:
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        with self._lifecycle_lock:
            if self.is_running:
                return
            logger.info("Starting scheduler with tick=%sms", interval_ms)
            self.interval_ms = interval_ms
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, name="coverage-scheduler", daemon=True
            )
            self._thread.start()

    def stop(self, timeout: float | None = None) -> None:
        with self._lifecycle_lock:
            thread = self._thread
            if thread is None:
                return
            self._stop_event.set()
            if thread is not threading.current_thread():
                thread.join(timeout)
            self._thread = None
            logger.info("Scheduler stopped")

    def _run(self) -> None:
        interval_seconds = (self.interval_ms or DEFAULT_TICK_MS) / 1000
        while not self._stop_event.is_set():
            self.tick()
            self._stop_event.wait(interval_seconds)

    def backfill_range(
        self,
        symbol: str,
        timeframe: str,
        start_ms: int,
        end_ms: int,
        exchange_id: str,
    ) -> dict:
        """Fetch a range directly, bypassing manifests and jobs."""
        source = self.sources.get(exchange_id)
        result = self.fetcher.fetch_range(source, symbol, timeframe, start_ms, end_ms)
        logger.info(
            "Backfilled %s %s on %s: %s inserted",
            symbol,
            timeframe,
            exchange_id,
            result.inserted,
        )
        return {"inserted": result.inserted, "passed": result.passed}
