"""Runtime entities that flow through the engine (candles, signals, trades).

Configuration and API payloads are pydantic models in `models.py`; these are
plain dataclasses because they are created on every candle.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field
from typing import Any, Dict, Optional

from strategy_engine.utils import normalize_symbol, normalize_timeframe

ENTRY = "entry"
EXIT = "exit"
LONG = "long"
SHORT = "short"


@dataclass(frozen=True)
class Candle:
    symbol: str
    timeframe: str
    timestamp: int      # epoch milliseconds of the candle open
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def __post_init__(self):
        object.__setattr__(self, "symbol", normalize_symbol(self.symbol))
        object.__setattr__(self, "timeframe", normalize_timeframe(self.timeframe))

    @property
    def feed(self) -> tuple:
        return (self.symbol, self.timeframe)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, symbol: str = "", timeframe: str = "") -> "Candle":
        """Build a candle from a feed payload ('ts'/'vol' spellings accepted)."""
        ts = data.get("timestamp", data.get("ts"))
        if ts is None:
            raise ValueError("candle missing timestamp")
        close = float(data["close"])
        return cls(
            symbol=str(data.get("symbol") or symbol),
            timeframe=str(data.get("timeframe") or timeframe),
            timestamp=int(ts),
            open=float(data.get("open", close)),
            high=float(data.get("high", close)),
            low=float(data.get("low", close)),
            close=close,
            volume=float(data.get("volume", data.get("vol", 0.0)) or 0.0),
        )

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class IndicatorPoint:
    timestamp: int
    value: float


@dataclass
class Signal:
    id: str
    strategy_id: str
    rule_id: str
    timestamp: int
    type: str           # 'entry' | 'exit'
    side: str           # 'long' | 'short'
    price: float
    confidence: float
    reason: str = ""
    volume: Optional[float] = None
    indicators: Dict[str, float] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass(frozen=True)
class TradeRecord:
    id: str
    strategy_id: str
    timestamp: int
    type: str
    side: str
    price: float
    quantity: float
    pnl: Optional[float] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TradeRecord":
        pnl = data.get("pnl")
        return cls(
            id=str(data["id"]),
            strategy_id=str(data.get("strategy_id") or data.get("strategyId") or ""),
            timestamp=int(data["timestamp"]),
            type=str(data["type"]),
            side=str(data["side"]),
            price=float(data["price"]),
            quantity=float(data["quantity"]),
            pnl=float(pnl) if pnl is not None else None,
        )

    def to_dict(self) -> dict:
        return asdict(self)
