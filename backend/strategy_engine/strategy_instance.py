"""StrategyInstance: one running strategy, N indicators + one SignalEvaluator.

The instance is candle-in / signals-out. It never routes signals anywhere
itself; the StrategyManager decides what happens to them.
"""
from __future__ import annotations

import logging
from collections import deque
from dataclasses import dataclass, replace
from typing import Deque, Dict, List, Optional

from strategy_engine.config import config
from strategy_engine.entities import Candle, Signal
from strategy_engine.errors import ProcessingError
from strategy_engine.indicators import IndicatorCalculator, IndicatorResult, build_indicators
from strategy_engine.models import StrategyConfig
from strategy_engine.strategies.signal_evaluator import SignalEvaluator
from strategy_engine.strategy_state_machine import StrategyStateMachine, StrategyStatus
from strategy_engine.utils import ms_to_iso, now_ms

logger = logging.getLogger(__name__)


@dataclass
class StrategyState:
    status: StrategyStatus = StrategyStatus.STOPPED
    start_time: Optional[int] = None
    pause_time: Optional[int] = None
    total_candles: int = 0
    total_signals: int = 0
    last_update: Optional[int] = None
    error_message: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "start_time": ms_to_iso(self.start_time),
            "pause_time": ms_to_iso(self.pause_time),
            "total_candles": self.total_candles,
            "total_signals": self.total_signals,
            "last_update": ms_to_iso(self.last_update),
            "error_message": self.error_message,
        }


class StrategyInstance:
    def __init__(
        self,
        strategy_config: StrategyConfig,
        history_size: Optional[int] = None,
        recent_signal_limit: Optional[int] = None,
    ) -> None:
        self.config = strategy_config
        self.id = strategy_config.id
        self._machine = StrategyStateMachine(self.id)
        self._state = StrategyState()

        self.indicators: Dict[str, IndicatorCalculator] = build_indicators(strategy_config.indicators, history_size)
        self.evaluator = SignalEvaluator(self.id, strategy_config.signals, history_limit=history_size)
        self._recent_signals: Deque[Signal] = deque(
            maxlen=int(recent_signal_limit or config["recent_signal_limit"])
        )
        self.indicator_errors = 0

    # ── read ──────────────────────────────────────────────────────────────────

    @property
    def status(self) -> StrategyStatus:
        return self._machine.status

    @property
    def is_running(self) -> bool:
        return self._machine.is_running

    # ── lifecycle ────────────────────────────────────────────────────────────

    def start(self) -> bool:
        if not self._machine.transition(StrategyStatus.RUNNING, "strategy started"):
            return False
        self._state.status = StrategyStatus.RUNNING
        self._state.start_time = now_ms()
        self._state.pause_time = None
        self._state.error_message = None
        logger.info(
            f"[STRATEGY] Started {self.id} ({self.config.name}) on "
            f"{self.config.symbol}/{self.config.timeframe} | "
            f"indicators={list(self.indicators)} rules={len(self.config.signals)}"
        )
        return True

    def pause(self) -> bool:
        if self.status != StrategyStatus.RUNNING:
            logger.warning(f"[STRATEGY] Pause ignored for {self.id}: status={self.status.value}")
            return False
        self._machine.transition(StrategyStatus.PAUSED, "strategy paused")
        self._state.status = StrategyStatus.PAUSED
        self._state.pause_time = now_ms()
        return True

    def resume(self) -> bool:
        if self.status != StrategyStatus.PAUSED:
            logger.warning(f"[STRATEGY] Resume ignored for {self.id}: status={self.status.value}")
            return False
        self._machine.transition(StrategyStatus.RUNNING, "strategy resumed")
        self._state.status = StrategyStatus.RUNNING
        self._state.pause_time = None
        return True

    def stop(self) -> None:
        """Stop and discard all indicator/evaluator state. Safe to call repeatedly."""
        was = self.status
        self._machine.transition(StrategyStatus.STOPPED, "strategy stopped")
        for calc in self.indicators.values():
            calc.reset()
        self.evaluator.reset()
        self._recent_signals.clear()
        self.indicator_errors = 0
        self._state = StrategyState()
        if was != StrategyStatus.STOPPED:
            logger.info(f"[STRATEGY] Stopped {self.id} (was {was.value})")

    def _fail(self, message: str) -> None:
        self._machine.transition(StrategyStatus.ERROR, message)
        self._state.status = StrategyStatus.ERROR
        self._state.error_message = message

    # ── data plane ───────────────────────────────────────────────────────────

    def process_candle(self, candle: Candle) -> List[Signal]:
        if self.status != StrategyStatus.RUNNING:
            return []

        self._state.total_candles += 1
        self._state.last_update = now_ms()

        for ind_id, calc in self.indicators.items():
            try:
                value = calc.calculate(candle)
                components = calc.components
            except Exception as e:
                # One broken indicator must not block the others
                self.indicator_errors += 1
                err = ProcessingError(self.id, f"indicator {ind_id}", str(e))
                logger.exception(f"[STRATEGY] {err}")
                value = None
                components = {}
            self.evaluator.update_indicators(ind_id, value, candle.timestamp)
            for name, comp_value in components.items():
                self.evaluator.update_indicators(f"{ind_id}.{name}", comp_value, candle.timestamp)

        self.evaluator.update_market_data(candle.close, candle.timestamp, candle)
        try:
            signals = self.evaluator.evaluate_signals()
        except Exception as e:
            err = ProcessingError(self.id, "signal evaluation", str(e))
            logger.exception(f"[STRATEGY] {err}")
            self._fail(str(err))
            return []

        if signals:
            self._state.total_signals += len(signals)
            self._recent_signals.extend(signals)
        return signals

    # ── introspection ────────────────────────────────────────────────────────

    def get_state(self) -> StrategyState:
        return replace(self._state)

    def get_status(self) -> dict:
        state = self._state
        uptime = 0.0
        if state.start_time is not None:
            uptime = max(0.0, (now_ms() - state.start_time) / 1000)
        return {
            "id": self.id,
            "name": self.config.name,
            "symbol": self.config.symbol,
            "timeframe": self.config.timeframe,
            **state.to_dict(),
            "uptime_seconds": round(uptime, 3),
            "indicator_errors": self.indicator_errors,
            "indicators": self.get_current_indicators(),
        }

    def get_indicator_results(self) -> Dict[str, IndicatorResult]:
        return {ind_id: calc.result() for ind_id, calc in self.indicators.items()}

    def get_current_indicators(self) -> Dict[str, Optional[float]]:
        return {ind_id: calc.current_value for ind_id, calc in self.indicators.items()}

    def get_recent_signals(self, limit: Optional[int] = None) -> List[Signal]:
        signals = list(self._recent_signals)
        if limit:
            return signals[-limit:]
        return signals

    def debug_info(self) -> dict:
        return {
            "state": self._state.to_dict(),
            "machine": self._machine.to_dict(),
            "indicators": {
                ind_id: {
                    "value": calc.current_value,
                    "components": calc.components,
                    "warmup": calc.warmup,
                    "candles_seen": calc.candles_seen,
                    "ready": calc.is_ready(),
                }
                for ind_id, calc in self.indicators.items()
            },
            "evaluator": self.evaluator.debug_info(),
        }
