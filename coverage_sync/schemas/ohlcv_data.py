from pydantic import BaseModel, Field


class Candle(BaseModel):
    symbol: str
    timeframe: str
    timestamp: int = Field(..., ge=0)
    open: float
    high: float
    low: float
    close: float
    volume: float = Field(..., ge=0)
