import os
import sys

import pytest

# Ensure backend dir is importable so `strategy_engine` resolves without an install
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'backend'))

from strategy_engine.entities import Candle  # noqa: E402
from strategy_engine.strategy_manager import StrategyManager  # noqa: E402

T0 = 1_700_000_000_000  # epoch ms
MINUTE_MS = 60_000


def _series(closes, symbol="BTCUSDT", timeframe="1m", start=T0, step=MINUTE_MS, volume=100.0):
    out = []
    prev = None
    for i, close in enumerate(closes):
        open_ = close if prev is None else prev
        out.append(
            Candle(
                symbol=symbol,
                timeframe=timeframe,
                timestamp=start + i * step,
                open=open_,
                high=max(open_, close) * 1.001,
                low=min(open_, close) * 0.999,
                close=close,
                volume=volume,
            )
        )
        prev = close
    return out


@pytest.fixture
def candle_series():
    """Factory: list of closes -> list of Candles, each opening at the previous close."""
    return _series


@pytest.fixture
def falling_closes():
    # 20 candles from 50000, ~2% lower each
    return [50000 * (0.98 ** i) for i in range(20)]


def _strategy_dict(**overrides):
    cfg = {
        "id": "rsi-oversold",
        "name": "RSI oversold",
        "symbol": "BTCUSDT",
        "timeframe": "1m",
        "indicators": [{"type": "rsi", "period": 14}],
        "signals": [
            {
                "id": "rsi_entry",
                "name": "RSI below 30",
                "type": "entry",
                "side": "long",
                "confidence": 0.8,
                "conditions": [{"indicator": "rsi_14", "operator": "lt", "value": 30}],
            }
        ],
        "risk": {"position_size": 2},
        "meta": {"version": "1.0.0", "created_at": "2024-01-01", "last_updated": "2024-01-01"},
    }
    cfg.update(overrides)
    return cfg


@pytest.fixture
def strategy_dict():
    """Factory for a raw strategy definition (RSI<30 → entry long)."""
    return _strategy_dict


@pytest.fixture
def manager():
    return StrategyManager(paper_trading=False)
