"""Overtrading protection: a second gate between raw rule signals and the rest of the engine.

A signal that fails any check is dropped (None). Accepted signals are
annotated with their computed strength and recorded in the rolling window
that the rate limits are measured against. All windows use signal (candle)
timestamps, never wall-clock time, so replays behave like live runs.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass
from typing import Deque, Dict, Mapping, Optional

from strategy_engine.entities import ENTRY, EXIT, Signal
from strategy_engine.models import OvertradingConfig

logger = logging.getLogger(__name__)

HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS
VOLUME_LOOKBACK = 20
MAX_RECORDS = 1000

_MA_TYPES = ("ema", "sma")


@dataclass(frozen=True)
class _AcceptedSignal:
    timestamp: int
    side: str
    type: str
    price: float
    volume: Optional[float]
    strength: float


class OvertradingFilter:
    def __init__(
        self,
        strategy_id: str,
        config: OvertradingConfig,
        indicator_types: Optional[Mapping[str, str]] = None,
    ) -> None:
        self.strategy_id = strategy_id
        self.config = config
        # indicator id -> type, so agreement/trend scoring doesn't have to guess from ids
        self.indicator_types: Dict[str, str] = dict(indicator_types or {})

        self._history: Deque[_AcceptedSignal] = deque(maxlen=MAX_RECORDS)
        self._last_signal_time: Dict[str, int] = {}  # "<side>_<type>" -> ts
        self._last_seen_ts: Optional[int] = None
        self.active_position: Optional[str] = None
        self.accepted = 0
        self.rejected: Dict[str, int] = {}

    # ── main entry ───────────────────────────────────────────────────────────

    def process_strategy_signal(self, signal: Signal) -> Optional[Signal]:
        self._last_seen_ts = signal.timestamp
        cfg = self.config

        reason = self._position_violation(signal)
        if reason:
            return self._reject(signal, reason)

        agreement = self._indicator_agreement(signal)
        if cfg.minimum_indicator_agreement > 0 and agreement < cfg.minimum_indicator_agreement:
            return self._reject(signal, "indicator_agreement", f"{agreement:.2f} < {cfg.minimum_indicator_agreement}")

        strength = self._signal_strength(signal, agreement)
        if strength < cfg.signal_strength_threshold:
            return self._reject(signal, "strength", f"{strength:.3f} < {cfg.signal_strength_threshold}")

        if self._in_cooldown(signal):
            return self._reject(signal, "cooldown")

        reason = self._frequency_violation(signal)
        if reason:
            return self._reject(signal, reason)

        if self._violates_spacing(signal):
            return self._reject(signal, "min_spacing")

        if cfg.volume_confirmation and not self._has_valid_volume(signal):
            return self._reject(signal, "volume")

        self._accept(signal, strength)
        return signal

    # ── checks ───────────────────────────────────────────────────────────────

    def _position_violation(self, signal: Signal) -> Optional[str]:
        if not self.config.enforce_position_consistency:
            return None
        pos = self.active_position
        if pos and signal.type == ENTRY and signal.side != pos:
            return "opposite_position_open"
        if not pos and signal.type == EXIT:
            return "no_position_to_exit"
        if pos and signal.type == EXIT and signal.side != pos:
            return "exit_side_mismatch"
        return None

    def _signal_strength(self, signal: Signal, agreement: float) -> float:
        strength = float(signal.confidence)
        if self.config.minimum_indicator_agreement > 0:
            strength *= agreement
        if self.config.volume_confirmation and signal.volume:
            strength *= self._volume_score(signal.volume)
        if self.config.trend_confirmation:
            strength *= self._trend_alignment(signal)
        return min(1.0, max(0.0, strength))

    def _indicator_agreement(self, signal: Signal) -> float:
        """Fraction of the strategy's directional indicators that support the signal.

        RSI: oversold (<30) supports long, overbought (>70) short.
        MACD: positive line supports long, negative short.
        Other indicators (moving averages, bands, ...) carry no direction and
        are left out of the ratio; with no directional indicator it is 1.0.
        Moving averages are scored by `trend_confirmation` instead.
        """
        agreements = 0
        total = 0
        for ind_id, value in signal.indicators.items():
            if "." in ind_id or value is None:
                continue
            kind = self._type_of(ind_id)
            if kind == "rsi":
                total += 1
                if (signal.side == "long" and value < 30) or (signal.side == "short" and value > 70):
                    agreements += 1
            elif kind == "macd":
                total += 1
                if (signal.side == "long" and value > 0) or (signal.side == "short" and value < 0):
                    agreements += 1
        return agreements / total if total else 1.0

    def _trend_alignment(self, signal: Signal) -> float:
        # Share of moving averages the price sits on the right side of
        mas = [v for k, v in signal.indicators.items() if "." not in k and self._type_of(k) in _MA_TYPES]
        if not mas:
            return 1.0
        if signal.side == "long":
            aligned = sum(1 for ma in mas if signal.price > ma)
        else:
            aligned = sum(1 for ma in mas if signal.price < ma)
        return aligned / len(mas)

    def _recent_volume_avg(self) -> Optional[float]:
        recent = list(self._history)[-VOLUME_LOOKBACK:]
        if not recent:
            return None
        return sum(r.volume or 0.0 for r in recent) / len(recent)

    def _volume_score(self, volume: float) -> float:
        avg = self._recent_volume_avg()
        if not avg:
            return 1.0
        return min(1.0, volume / avg)

    def _has_valid_volume(self, signal: Signal) -> bool:
        if not signal.volume:
            return True
        avg = self._recent_volume_avg()
        if avg is None:
            return True
        return signal.volume >= avg * self.config.min_volume_multiplier

    def _in_cooldown(self, signal: Signal) -> bool:
        last = self._last_signal_time.get(f"{signal.side}_{signal.type}")
        if last is None:
            return False
        return signal.timestamp - last < self.config.signal_cooldown_minutes * 60 * 1000

    def _frequency_violation(self, signal: Signal) -> Optional[str]:
        hourly, daily = self._window_counts(signal.timestamp)
        if hourly >= self.config.max_trades_per_hour:
            return "hourly_limit"
        if daily >= self.config.max_trades_per_day:
            return "daily_limit"
        return None

    def _violates_spacing(self, signal: Signal) -> bool:
        if signal.type == ENTRY:
            min_ms = self.config.min_seconds_between_entries * 1000
        else:
            min_ms = self.config.min_seconds_between_exits * 1000
        if min_ms <= 0:
            return False
        last_same = max((r.timestamp for r in self._history if r.type == signal.type), default=None)
        if last_same is None:
            return False
        return signal.timestamp - last_same < min_ms

    # ── bookkeeping ──────────────────────────────────────────────────────────

    def _type_of(self, indicator_id: str) -> str:
        kind = self.indicator_types.get(indicator_id)
        if kind:
            return kind
        low = indicator_id.lower()
        for candidate in ("rsi", "macd", "ema", "sma"):
            if candidate in low:
                return candidate
        return ""

    def _window_counts(self, now: int) -> tuple:
        hourly = sum(1 for r in self._history if r.timestamp > now - HOUR_MS)
        daily = sum(1 for r in self._history if r.timestamp > now - DAY_MS)
        return hourly, daily

    def _reject(self, signal: Signal, reason: str, detail: str = "") -> None:
        self.rejected[reason] = self.rejected.get(reason, 0) + 1
        logger.info(
            f"[FILTER] {self.strategy_id}: rejected {signal.side} {signal.type} "
            f"({signal.rule_id}) | reason={reason}" + (f" {detail}" if detail else "")
        )
        return None

    def _accept(self, signal: Signal, strength: float) -> None:
        self._history.append(
            _AcceptedSignal(
                timestamp=signal.timestamp,
                side=signal.side,
                type=signal.type,
                price=signal.price,
                volume=signal.volume,
                strength=strength,
            )
        )
        self._last_signal_time[f"{signal.side}_{signal.type}"] = signal.timestamp
        if signal.type == ENTRY:
            self.active_position = signal.side
        elif signal.type == EXIT:
            self.active_position = None
        self.accepted += 1
        signal.metadata["overtrading"] = {"strength": round(strength, 4)}
        logger.info(
            f"[FILTER] {self.strategy_id}: accepted {signal.side} {signal.type} "
            f"@ {signal.price} | strength={strength:.3f}"
        )

    def get_statistics(self, now: Optional[int] = None) -> dict:
        ref = now if now is not None else self._last_seen_ts
        hourly, daily = self._window_counts(ref) if ref is not None else (0, 0)
        cfg = self.config
        return {
            "strategy_id": self.strategy_id,
            "accepted": self.accepted,
            "rejected": sum(self.rejected.values()),
            "rejected_by_reason": dict(self.rejected),
            "total_trades": len(self._history),
            "trades_last_hour": hourly,
            "trades_last_day": daily,
            "hourly_limit": cfg.max_trades_per_hour,
            "daily_limit": cfg.max_trades_per_day,
            "utilization_hourly": hourly / cfg.max_trades_per_hour * 100,
            "utilization_daily": daily / cfg.max_trades_per_day * 100,
            "active_position": self.active_position,
        }

    def reset(self) -> None:
        self._history.clear()
        self._last_signal_time.clear()
        self._last_seen_ts = None
        self.active_position = None
        self.accepted = 0
        self.rejected.clear()
