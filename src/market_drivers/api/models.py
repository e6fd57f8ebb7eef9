"""Request models for the Market Drivers API."""
from typing import Dict, Optional

from pydantic import BaseModel, Field


class TickRequest(BaseModel):
    """Price/order-flow update from the ingestion webhook."""
    open: Optional[float] = None
    high: Optional[float] = None
    low: Optional[float] = None
    close: Optional[float] = None
    delta: Optional[float] = None  # cumulative session delta
    volume: Optional[float] = Field(default=None, ge=0)  # cumulative session volume

    class Config:
        json_schema_extra = {
            "example": {"open": 6010.25, "high": 6018.5, "low": 6004.0, "close": 6015.75, "delta": 1250, "volume": 48210}
        }


class SweepRequest(BaseModel):
    level: str
    price: float
    time: Optional[str] = None  # ISO timestamp, defaults to now
    reclaimed: bool = False


class BarRequest(BaseModel):
    """One bar checked for sweeps against named levels."""
    open: float
    high: float
    low: float
    close: float
    levels: Optional[Dict[str, Optional[float]]] = None  # defaults to the session's own and IB levels
