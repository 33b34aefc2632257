from __future__ import annotations

from datetime import datetime, timezone
import logging
import os

import httpx
import pandas as pd
from openalgo import api as openalgo_api

from .errors import ProviderError
from .timeframes import timeframe_to_ms


OPENALGO_EXCHANGE_ID = "openalgo"

INTERVAL_MAP = {
    "1m": "1m",
    "5m": "5m",
    "15m": "15m",
    "30m": "30m",
    "1h": "1h",
    "4h": "4h",
    "1d": "D",
    "1w": "W",
    "1M": "M",
}


def frame_to_rows(frame: pd.DataFrame) -> list[list[float]]:
    """Convert an OpenAlgo history frame into ``[ts_ms, o, h, l, c, v]`` rows."""
    rows: list[list[float]] = []
    for index, row in frame.iterrows():
        timestamp = index
        if not isinstance(timestamp, datetime) and "timestamp" in row:
            timestamp = pd.to_datetime(row["timestamp"], errors="coerce")
        if not isinstance(timestamp, datetime) and "date" in row:
            timestamp = pd.to_datetime(row["date"], errors="coerce")

        if isinstance(timestamp, pd.Timestamp):
            if pd.isna(timestamp):
                continue
            timestamp = timestamp.to_pydatetime()

        if not isinstance(timestamp, datetime):
            continue

        if timestamp.tzinfo is None:
            timestamp = timestamp.replace(tzinfo=timezone.utc)

        try:
            row_data = row.to_dict()
            rows.append(
                [
                    int(timestamp.timestamp() * 1000),
                    float(row_data["open"]),
                    float(row_data["high"]),
                    float(row_data["low"]),
                    float(row_data["close"]),
                    float(row_data["volume"]),
                ]
            )
        except (KeyError, TypeError, ValueError) as exc:
            logging.getLogger(__name__).warning("Invalid candle row skipped: %s", exc)
    rows.sort(key=lambda item: item[0])
    return rows


class OpenAlgoSource:
    """Candle source backed by an OpenAlgo gateway.

    OpenAlgo serves history by calendar date, so ``fetch_candles`` asks for
    the dates spanned by ``limit`` candles from ``since_ms`` and trims the
    result back to the requested window.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        exchange: str | None = None,
    ):
        self.api_key = api_key or os.getenv("OPENALGO_API_KEY")
        self.base_url = base_url or os.getenv(
            "OPENALGO_BASE_URL", "http://127.0.0.1:8800"
        )
        self.exchange = exchange or os.getenv("OPENALGO_EXCHANGE", "NSE")
        self._logger = logging.getLogger(__name__)
        self.client = None

        if not self.api_key:
            self._logger.warning("OPENALGO_API_KEY not set; data fetches will fail.")
            return

        self.client = openalgo_api(api_key=self.api_key, host=self.base_url)

    def fetch_candles(
        self,
        symbol: str,
        timeframe: str,
        since_ms: int,
        limit: int,
    ) -> list[list[float]]:
        if self.client is None:
            raise ProviderError("OpenAlgo client not configured; set OPENALGO_API_KEY.")

        interval = INTERVAL_MAP.get(timeframe)
        if interval is None:
            raise ProviderError(f"OpenAlgo does not serve timeframe {timeframe}")

        window_end_ms = since_ms + limit * timeframe_to_ms(timeframe)
        start_dt = datetime.fromtimestamp(since_ms / 1000, tz=timezone.utc)
        end_dt = datetime.fromtimestamp(window_end_ms / 1000, tz=timezone.utc)
        response = self.client.history(
            symbol=symbol,
            exchange=self.exchange,
            interval=interval,
            start_date=start_dt.strftime("%Y-%m-%d"),
            end_date=end_dt.strftime("%Y-%m-%d"),
        )

        if not isinstance(response, pd.DataFrame):
            message = "unexpected history response"
            if isinstance(response, dict):
                message = response.get("message") or message
            raise ProviderError(f"OpenAlgo history failed: {message}")
        if response.empty:
            return []

        rows = [row for row in frame_to_rows(response) if row[0] >= since_ms]
        return rows[:limit]

    def list_symbols(self, query: str | None = None) -> list[str]:
        if not self.api_key:
            raise ProviderError("OpenAlgo client not configured; set OPENALGO_API_KEY.")
        if not query:
            return []

        base_url = (self.base_url or "").rstrip("/")
        payload = {"apikey": self.api_key, "query": query, "exchange": self.exchange}
        url = f"{base_url}/api/v1/search"
        try:
            response = httpx.post(url, json=payload, timeout=15.0)
        except httpx.HTTPError as exc:
            self._logger.exception("OpenAlgo search request failed")
            raise ProviderError("OpenAlgo search request failed") from exc

        if response.status_code != 200:
            self._logger.warning(
                "OpenAlgo search request failed with status %s", response.status_code
            )
            raise ProviderError("OpenAlgo search request failed")

        data = response.json()
        if data.get("status") != "success":
            raise ProviderError(data.get("message") or "OpenAlgo search failed")

        results = data.get("data") or []
        if not isinstance(results, list):
            return []
        return [
            str(item["symbol"])
            for item in results
            if isinstance(item, dict) and item.get("symbol")
        ]
