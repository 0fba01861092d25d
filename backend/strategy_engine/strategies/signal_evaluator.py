from __future__ import annotations

import logging
import uuid
from collections import deque
from typing import Deque, Dict, Iterable, List, Optional

from strategy_engine.config import config
from strategy_engine.entities import Candle, IndicatorPoint, Signal
from strategy_engine.models import SignalCondition, SignalRule

logger = logging.getLogger(__name__)

EQ_TOLERANCE = 1e-4

_OPERATOR_SYMBOLS = {
    "gt": ">",
    "lt": "<",
    "gte": ">=",
    "lte": "<=",
    "eq": "==",
    "crossover_above": "crosses above",
    "crossover_below": "crosses below",
}


class SignalEvaluator:
    """Decision-only evaluator for one strategy's declarative rules.

    Owns the latest indicator/price snapshot and the per-rule edge state:
    a rule fires on its false → true transition only, so a condition that
    stays true across candles produces a single signal.
    """

    def __init__(self, strategy_id: str, rules: Iterable[SignalRule], history_limit: Optional[int] = None) -> None:
        self.strategy_id = strategy_id
        self.rules: List[SignalRule] = list(rules)
        self._history_limit = int(history_limit or config["indicator_history_size"])

        self._values: Dict[str, Optional[float]] = {}
        self._history: Dict[str, Deque[IndicatorPoint]] = {}
        self._price: Optional[float] = None
        self._timestamp: Optional[int] = None
        self._candle: Optional[Candle] = None

        # Edge-trigger state per rule id, and the operands seen at the previous evaluation
        self._rule_states: Dict[str, bool] = {}
        self._prev_operands: Dict[str, Optional[float]] = {}
        self.evaluations = 0

    # ── snapshot updates ─────────────────────────────────────────────────────

    def update_indicators(
        self,
        indicator_id: str,
        value: Optional[float],
        timestamp: int,
        history: Optional[Iterable[IndicatorPoint]] = None,
    ) -> None:
        self._values[indicator_id] = value
        if history is not None:
            self._history[indicator_id] = deque(history, maxlen=self._history_limit)
        elif value is not None:
            series = self._history.setdefault(indicator_id, deque(maxlen=self._history_limit))
            series.append(IndicatorPoint(timestamp, value))

    def update_market_data(self, price: float, timestamp: int, candle: Optional[Candle] = None) -> None:
        self._price = float(price)
        self._timestamp = int(timestamp)
        self._candle = candle

    # ── evaluation ───────────────────────────────────────────────────────────

    def evaluate_signals(self) -> List[Signal]:
        """Run every rule against the current snapshot; return newly fired signals."""
        self.evaluations += 1
        operands = self._operand_snapshot()
        fired: List[Signal] = []

        for rule in self.rules:
            is_true = self._evaluate_rule(rule, operands)
            was_true = self._rule_states.get(rule.id, False)
            self._rule_states[rule.id] = is_true
            if is_true and not was_true:
                signal = self._build_signal(rule, operands)
                logger.info(
                    f"[SIGNAL] {self.strategy_id}: {rule.id} fired "
                    f"{signal.type} {signal.side} @ {signal.price} | {signal.reason}"
                )
                fired.append(signal)

        self._prev_operands = operands
        return fired

    def _operand_snapshot(self) -> Dict[str, Optional[float]]:
        operands: Dict[str, Optional[float]] = dict(self._values)
        operands["price"] = self._price
        operands["close"] = self._price
        if self._candle is not None:
            operands["open"] = self._candle.open
            operands["high"] = self._candle.high
            operands["low"] = self._candle.low
            operands["volume"] = self._candle.volume
        return operands

    def _evaluate_rule(self, rule: SignalRule, operands: Dict[str, Optional[float]]) -> bool:
        results = (self._evaluate_condition(c, operands) for c in rule.conditions)
        if rule.logic == "or":
            return any(results)
        return all(results)

    def _resolve(self, ref, operands: Dict[str, Optional[float]]) -> Optional[float]:
        if isinstance(ref, str):
            return operands.get(ref)
        return float(ref)

    def _evaluate_condition(self, cond: SignalCondition, operands: Dict[str, Optional[float]]) -> bool:
        a = self._resolve(cond.indicator, operands)
        b = self._resolve(cond.value, operands)
        # Warm-up: undefined operands never satisfy a condition
        if a is None or b is None:
            return False

        op = cond.operator
        if op == "gt":
            return a > b
        if op == "lt":
            return a < b
        if op == "gte":
            return a >= b
        if op == "lte":
            return a <= b
        if op == "eq":
            return abs(a - b) < EQ_TOLERANCE

        prev_a = self._resolve(cond.indicator, self._prev_operands)
        prev_b = self._resolve(cond.value, self._prev_operands)
        if prev_a is None or prev_b is None:
            return False
        if op == "crossover_above":
            return prev_a <= prev_b and a > b
        if op == "crossover_below":
            return prev_a >= prev_b and a < b
        raise ValueError(f"Unsupported operator: {op}")

    def _build_signal(self, rule: SignalRule, operands: Dict[str, Optional[float]]) -> Signal:
        price = self._price if self._price is not None else 0.0
        indicators = {k: v for k, v in self._values.items() if v is not None}
        return Signal(
            id=f"{self.strategy_id}-{rule.id}-{uuid.uuid4().hex[:12]}",
            strategy_id=self.strategy_id,
            rule_id=rule.id,
            timestamp=self._timestamp if self._timestamp is not None else 0,
            type=rule.type,
            side=rule.side,
            price=price,
            confidence=rule.confidence,
            reason=self._describe(rule, operands),
            volume=self._candle.volume if self._candle is not None else None,
            indicators=indicators,
            metadata={"rule_name": rule.name or rule.id, "logic": rule.logic},
        )

    def _describe(self, rule: SignalRule, operands: Dict[str, Optional[float]]) -> str:
        parts = []
        for cond in rule.conditions:
            a = self._resolve(cond.indicator, operands)
            lhs = f"{cond.indicator}={_fmt(a)}"
            if isinstance(cond.value, str):
                rhs = f"{cond.value}={_fmt(self._resolve(cond.value, operands))}"
            else:
                rhs = _fmt(cond.value)
            parts.append(f"{lhs} {_OPERATOR_SYMBOLS.get(cond.operator, cond.operator)} {rhs}")
        joiner = " OR " if rule.logic == "or" else " AND "
        label = rule.name or rule.id
        return f"{label}: {joiner.join(parts)}"

    # ── state ────────────────────────────────────────────────────────────────

    def reset(self) -> None:
        self._values.clear()
        self._history.clear()
        self._price = None
        self._timestamp = None
        self._candle = None
        self._rule_states.clear()
        self._prev_operands = {}
        self.evaluations = 0

    def get_indicator_values(self) -> Dict[str, Optional[float]]:
        return dict(self._values)

    def get_indicator_history(self, indicator_id: str) -> List[IndicatorPoint]:
        return list(self._history.get(indicator_id, ()))

    def debug_info(self) -> dict:
        return {
            "strategy_id": self.strategy_id,
            "rules": [r.id for r in self.rules],
            "rule_states": dict(self._rule_states),
            "indicator_values": self.get_indicator_values(),
            "price": self._price,
            "timestamp": self._timestamp,
            "evaluations": self.evaluations,
        }


def _fmt(value: Optional[float]) -> str:
    if value is None:
        return "n/a"
    return f"{value:.4f}".rstrip("0").rstrip(".")
