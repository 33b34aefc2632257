from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from fastapi.responses import JSONResponse

from ...core.errors import ProviderError, UnsupportedExchangeError
from ...core.timeframes import TIMEFRAME_TO_MS, to_epoch_ms
from ...schemas.requests import BackfillRequest
from ...services.coverage_service import MAX_OHLCV_LIMIT, CoverageService
from ..deps import get_service


router = APIRouter(prefix="/api", tags=["data"])


@router.post("/data/backfill")
def backfill(
    request: BackfillRequest,
    service: CoverageService = Depends(get_service),
):
    try:
        result = service.backfill(request)
    except UnsupportedExchangeError as exc:
        return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})
    except ProviderError as exc:
        return JSONResponse(status_code=502, content={"success": False, "error": str(exc)})
    return JSONResponse(
        status_code=200,
        content={
            "success": True,
            "symbol": request.symbol,
            "timeframe": request.timeframe,
            "inserted": result["inserted"],
        },
    )


@router.get("/markets/ohlcv")
def get_ohlcv(
    symbol: str,
    timeframe: str,
    to: datetime | None = None,
    limit: int = Query(200, ge=1, le=MAX_OHLCV_LIMIT),
    service: CoverageService = Depends(get_service),
):
    if timeframe not in TIMEFRAME_TO_MS:
        return JSONResponse(
            status_code=400,
            content={"success": False, "error": f"unsupported timeframe: {timeframe}"},
        )
    data = service.get_ohlcv(
        symbol=symbol.strip(),
        timeframe=timeframe,
        to_ms=to_epoch_ms(to) if to is not None else None,
        limit=limit,
    )
    return JSONResponse(status_code=200, content={"success": True, "data": data})


@router.get("/symbols/resolve")
def resolve_symbol(
    symbol: str = "",
    exchange_id: str | None = None,
    service: CoverageService = Depends(get_service),
):
    exchange = (exchange_id or service.settings.default_exchange).strip().lower()
    try:
        result = service.resolve_symbol(exchange, symbol)
    except UnsupportedExchangeError as exc:
        return JSONResponse(
            status_code=400,
            content={"ok": False, "error": str(exc), "exchange_id": exchange, "input": symbol},
        )
    except ProviderError as exc:
        return JSONResponse(
            status_code=502,
            content={"ok": False, "error": str(exc), "exchange_id": exchange, "input": symbol},
        )
    status_code = 200 if result["ok"] else 400
    return JSONResponse(status_code=status_code, content=result)
