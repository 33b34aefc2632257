from __future__ import annotations

import os

from fastapi import Request

from ..config import Settings, load_settings
from ..core.exchange_client import CandleSource
from ..core.timeframes import timeframe_to_ms
from ..services.coverage_service import CoverageService, build_service


class _FakeCandleSource:
    """Deterministic source used when CS_TESTING=1: one flat candle per period."""

    def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        since_ms: int,
        limit: int,
    ) -> list[list[float]]:
        _ = symbol
        step = timeframe_to_ms(timeframe)
        first = since_ms - since_ms % step
        if first < since_ms:
            first += step
        return [
            [first + index * step, 100.0, 110.0, 90.0, 105.0, 1000.0]
            for index in range(limit)
        ]

    def list_symbols(self, query: str | None = None) -> list[str]:
        _ = query
        return ["BTC/USDT", "ETH/USDT", "SOL/USDT"]


def create_default_service(settings: Settings | None = None) -> CoverageService:
    settings = settings or load_settings()
    if os.getenv("CS_TESTING") == "1":
        fake = _FakeCandleSource()

        def factory(exchange_id: str) -> CandleSource:
            _ = exchange_id
            return fake

        return build_service(
            settings.model_copy(update={"scheduler_enabled": False}),
            source_factory=factory,
            sleep=lambda seconds: None,
        )
    return build_service(settings)


def get_service(request: Request) -> CoverageService:
    return request.app.state.service
