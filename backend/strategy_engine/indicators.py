# Incremental technical indicators
#
# Calculation only: every class here consumes one candle at a time, keeps the
# minimum rolling state it needs and returns None until its warm-up window is
# satisfied. Rules that act on these values live in `strategies/`.
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Optional

from strategy_engine.config import config
from strategy_engine.entities import Candle, IndicatorPoint

logger = logging.getLogger(__name__)


def extract_price(candle: Candle, source: str = "close") -> float:
    if source == "open":
        return candle.open
    if source == "high":
        return candle.high
    if source == "low":
        return candle.low
    if source == "volume":
        return candle.volume
    if source == "hl2":
        return (candle.high + candle.low) / 2
    if source == "hlc3":
        return (candle.high + candle.low + candle.close) / 3
    if source == "ohlc4":
        return (candle.open + candle.high + candle.low + candle.close) / 4
    return candle.close


class EMA:
    """Exponential Moving Average, seeded with the SMA of the first `period` values"""
    def __init__(self, period=20):
        self.period = period
        self.alpha = 2 / (period + 1)
        self.value: Optional[float] = None
        self._seed: List[float] = []

    def reset(self):
        self.value = None
        self._seed = []

    def update(self, price: float) -> Optional[float]:
        if self.value is None:
            self._seed.append(price)
            if len(self._seed) < self.period:
                return None
            self.value = sum(self._seed) / self.period
            self._seed = []
            return self.value
        self.value = price * self.alpha + self.value * (1 - self.alpha)
        return self.value


class SMA:
    """Simple Moving Average over a rolling window"""
    def __init__(self, period=20):
        self.period = period
        self.window: Deque[float] = deque(maxlen=period)
        self._sum = 0.0

    def reset(self):
        self.window.clear()
        self._sum = 0.0

    def update(self, price: float) -> Optional[float]:
        if len(self.window) == self.period:
            self._sum -= self.window[0]
        self.window.append(price)
        self._sum += price
        if len(self.window) < self.period:
            return None
        return self._sum / self.period


class RSI:
    """Relative Strength Index with Wilder smoothing.

    The first candle's change is measured against `reference` (the open for
    close-based RSI, zero change otherwise), so a period-N
    RSI has N changes (and a value) at candle N.
    """
    def __init__(self, period=14):
        self.period = period
        self._prev: Optional[float] = None
        self._gains: List[float] = []
        self._losses: List[float] = []
        self.avg_gain: Optional[float] = None
        self.avg_loss: Optional[float] = None

    def reset(self):
        self._prev = None
        self._gains = []
        self._losses = []
        self.avg_gain = None
        self.avg_loss = None

    def update(self, price: float, reference: Optional[float] = None) -> Optional[float]:
        prev = self._prev if self._prev is not None else reference
        self._prev = price
        if prev is None:
            prev = price
        change = price - prev
        gain = max(0.0, change)
        loss = max(0.0, -change)

        if self.avg_gain is None:
            self._gains.append(gain)
            self._losses.append(loss)
            if len(self._gains) < self.period:
                return None
            self.avg_gain = sum(self._gains) / self.period
            self.avg_loss = sum(self._losses) / self.period
            self._gains = []
            self._losses = []
        else:
            self.avg_gain = (self.avg_gain * (self.period - 1) + gain) / self.period
            self.avg_loss = (self.avg_loss * (self.period - 1) + loss) / self.period

        return self._rsi(self.avg_gain, self.avg_loss)

    @staticmethod
    def _rsi(avg_gain: float, avg_loss: float) -> float:
        # Boundary values instead of dividing by zero
        if avg_loss == 0:
            return 100.0 if avg_gain > 0 else 50.0
        if avg_gain == 0:
            return 0.0
        rs = avg_gain / avg_loss
        return 100 - (100 / (1 + rs))


class MACD:
    """Moving Average Convergence Divergence"""
    def __init__(self, fast=12, slow=26, signal=9):
        self.fast = fast
        self.slow = slow
        self.signal_period = signal
        self._fast_ema = EMA(fast)
        self._slow_ema = EMA(slow)
        self._signal_ema = EMA(signal)

        # Latest computed values
        self.last_macd: Optional[float] = None
        self.last_signal_line: Optional[float] = None
        self.last_histogram: Optional[float] = None

    def reset(self):
        self._fast_ema.reset()
        self._slow_ema.reset()
        self._signal_ema.reset()
        self.last_macd = None
        self.last_signal_line = None
        self.last_histogram = None

    def update(self, price: float) -> Optional[float]:
        fast = self._fast_ema.update(price)
        slow = self._slow_ema.update(price)
        if fast is None or slow is None:
            return None

        macd = fast - slow
        signal_line = self._signal_ema.update(macd)

        self.last_macd = macd
        self.last_signal_line = signal_line
        self.last_histogram = macd - signal_line if signal_line is not None else None
        return macd

    @property
    def components(self) -> Dict[str, Optional[float]]:
        return {"signal": self.last_signal_line, "histogram": self.last_histogram}


class BollingerBands:
    """Bollinger Bands - value is the middle band"""
    def __init__(self, period=20, num_std=2.0):
        self.period = period
        self.num_std = num_std
        self.window: Deque[float] = deque(maxlen=period)
        self.upper: Optional[float] = None
        self.lower: Optional[float] = None

    def reset(self):
        self.window.clear()
        self.upper = None
        self.lower = None

    def update(self, price: float) -> Optional[float]:
        self.window.append(price)
        if len(self.window) < self.period:
            return None

        sma = sum(self.window) / self.period
        variance = sum((c - sma) ** 2 for c in self.window) / self.period
        std_dev = variance ** 0.5

        self.upper = sma + (std_dev * self.num_std)
        self.lower = sma - (std_dev * self.num_std)
        return sma

    @property
    def components(self) -> Dict[str, Optional[float]]:
        return {"upper": self.upper, "lower": self.lower}


class Stochastic:
    """Stochastic Oscillator - value is %K, %D as a component"""
    def __init__(self, k_period=14, d_period=3):
        self.k_period = k_period
        self.d_period = d_period
        self.highs: Deque[float] = deque(maxlen=k_period)
        self.lows: Deque[float] = deque(maxlen=k_period)
        self.k_values: Deque[float] = deque(maxlen=d_period)
        self.d: Optional[float] = None

    def reset(self):
        self.highs.clear()
        self.lows.clear()
        self.k_values.clear()
        self.d = None

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        self.highs.append(high)
        self.lows.append(low)
        if len(self.highs) < self.k_period:
            return None

        highest = max(self.highs)
        lowest = min(self.lows)
        k = ((close - lowest) / (highest - lowest) * 100) if (highest - lowest) > 0 else 50.0

        self.k_values.append(k)
        self.d = sum(self.k_values) / self.d_period if len(self.k_values) == self.d_period else None
        return k

    @property
    def components(self) -> Dict[str, Optional[float]]:
        return {"d": self.d}


class ATR:
    """Average True Range with Wilder smoothing"""
    def __init__(self, period=14):
        self.period = period
        self._prev_close: Optional[float] = None
        self._seed: List[float] = []
        self.value: Optional[float] = None

    def reset(self):
        self._prev_close = None
        self._seed = []
        self.value = None

    def update(self, high: float, low: float, close: float) -> Optional[float]:
        if self._prev_close is None:
            tr = high - low
        else:
            tr = max(high - low, abs(high - self._prev_close), abs(low - self._prev_close))
        self._prev_close = close

        if self.value is None:
            self._seed.append(tr)
            if len(self._seed) < self.period:
                return None
            self.value = sum(self._seed) / self.period
            self._seed = []
            return self.value
        self.value = (self.value * (self.period - 1) + tr) / self.period
        return self.value


# ==================== Calculator ====================

class IndicatorCalculator:
    """One configured indicator: incremental state + bounded value history.

    `config` is one of the tagged indicator configs from `models.py`.
    """

    def __init__(self, indicator_config, history_size: Optional[int] = None) -> None:
        self.config = indicator_config
        self.id: str = indicator_config.id
        self.type: str = indicator_config.type
        self.source: str = getattr(indicator_config, "source", "close")
        self.warmup: int = indicator_config.warmup
        size = history_size or indicator_config.history_size or int(config["indicator_history_size"])
        self._history: Deque[IndicatorPoint] = deque(maxlen=size)
        self._impl = _build_impl(indicator_config)
        self.current_value: Optional[float] = None
        self.candles_seen = 0

    @property
    def history_size(self) -> int:
        return self._history.maxlen

    def calculate(self, candle: Candle) -> Optional[float]:
        self.candles_seen += 1
        if self.type in ("stochastic", "atr"):
            value = self._impl.update(candle.high, candle.low, candle.close)
        elif self.type == "rsi":
            # The open is only a valid first reference for a plain price source
            reference = candle.open if self.source in ("close", "open") else None
            value = self._impl.update(extract_price(candle, self.source), reference=reference)
        else:
            value = self._impl.update(extract_price(candle, self.source))

        self.current_value = value
        if value is not None:
            self._history.append(IndicatorPoint(candle.timestamp, value))
        return value

    @property
    def components(self) -> Dict[str, Optional[float]]:
        return dict(getattr(self._impl, "components", {}) or {})

    def is_ready(self) -> bool:
        return self.current_value is not None

    def get_history(self, limit: Optional[int] = None) -> List[IndicatorPoint]:
        points = list(self._history)
        if limit:
            return points[-limit:]
        return points

    def reset(self) -> None:
        self._impl.reset()
        self._history.clear()
        self.current_value = None
        self.candles_seen = 0

    def result(self) -> "IndicatorResult":
        return IndicatorResult(
            id=self.id,
            type=self.type,
            current_value=self.current_value,
            history=list(self._history),
            components=self.components,
        )


@dataclass
class IndicatorResult:
    id: str
    type: str
    current_value: Optional[float]
    history: List[IndicatorPoint] = field(default_factory=list)
    components: Dict[str, Optional[float]] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "type": self.type,
            "current_value": self.current_value,
            "components": self.components,
            "history": [{"timestamp": p.timestamp, "value": p.value} for p in self.history],
        }


def _build_impl(cfg):
    t = cfg.type
    if t == "ema":
        return EMA(cfg.period)
    if t == "sma":
        return SMA(cfg.period)
    if t == "rsi":
        return RSI(cfg.period)
    if t == "macd":
        return MACD(cfg.fast, cfg.slow, cfg.signal)
    if t == "bollinger":
        return BollingerBands(cfg.period, cfg.num_std)
    if t == "stochastic":
        return Stochastic(cfg.k_period, cfg.d_period)
    if t == "atr":
        return ATR(cfg.period)
    raise ValueError(f"Unsupported indicator type: {t}")


def build_indicator(indicator_config, history_size: Optional[int] = None) -> IndicatorCalculator:
    calc = IndicatorCalculator(indicator_config, history_size=history_size)
    logger.debug(f"[INDICATOR] Built {calc.id} ({calc.type}, warmup={calc.warmup}, history={calc.history_size})")
    return calc


def build_indicators(indicator_configs, history_size: Optional[int] = None) -> Dict[str, IndicatorCalculator]:
    return {cfg.id: build_indicator(cfg, history_size) for cfg in indicator_configs}
