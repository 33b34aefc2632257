from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol, Sequence

import ccxt

from .errors import ProviderError, UnsupportedExchangeError


OHLCVRow = Sequence[float]


class CandleSource(Protocol):
    def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        since_ms: int,
        limit: int,
    ) -> list[OHLCVRow]: ...

    def list_symbols(self, query: str | None = None) -> list[str]: ...


def to_unified_symbol(symbol: str) -> str:
    """Storage symbols use ``BTC_USDT``; ccxt expects ``BTC/USDT``."""
    return symbol.replace("_", "/", 1) if "/" not in symbol else symbol


def to_storage_symbol(symbol: str) -> str:
    return symbol.replace("/", "_", 1)


class CcxtSource:
    """Thin fetch wrapper around one ccxt exchange instance.

    The instance is built once and reused, so ccxt's own rate limiter and
    market cache persist across calls.
    """

    def __init__(
        self,
        exchange_id: str,
        api_key: str | None = None,
        secret: str | None = None,
        sandbox: bool = False,
    ):
        self.exchange_id = exchange_id
        exchange_cls = getattr(ccxt, exchange_id, None)
        if exchange_id not in ccxt.exchanges or exchange_cls is None:
            raise UnsupportedExchangeError(f"unsupported exchangeId: {exchange_id}")

        config: dict = {"enableRateLimit": True}
        if api_key:
            config["apiKey"] = api_key
        if secret:
            config["secret"] = secret
        self.exchange = exchange_cls(config)
        if sandbox:
            self.exchange.set_sandbox_mode(True)
        self._logger = logging.getLogger(__name__)

    def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        since_ms: int,
        limit: int,
    ) -> list[OHLCVRow]:
        return self.exchange.fetch_ohlcv(
            to_unified_symbol(symbol),
            timeframe,
            since=since_ms,
            limit=limit,
        )

    def list_symbols(self, query: str | None = None) -> list[str]:
        _ = query
        try:
            markets = self.exchange.load_markets()
        except ccxt.BaseError as exc:
            self._logger.exception("Failed to load markets for %s", self.exchange_id)
            raise ProviderError(f"Failed to load markets for {self.exchange_id}") from exc
        return sorted(
            market["symbol"] for market in markets.values() if market.get("symbol")
        )


class SourceRegistry:
    """Process-wide cache of candle sources, one per exchange id."""

    def __init__(self, factory: Callable[[str], CandleSource]):
        self._factory = factory
        self._sources: dict[str, CandleSource] = {}
        self._lock = threading.Lock()

    def get(self, exchange_id: str) -> CandleSource:
        key = exchange_id.strip().lower()
        with self._lock:
            source = self._sources.get(key)
            if source is None:
                source = self._factory(key)
                self._sources[key] = source
            return source
