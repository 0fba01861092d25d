"""Per-strategy trade ledgers and the metrics derived from them.

Metrics are never stored independently: every read recomputes them from the
ledger, except unrealized P&L, which is marked against the latest price.
"""
from __future__ import annotations

import logging
import math
from dataclasses import asdict, dataclass, field, replace
from typing import Dict, List, Optional

from strategy_engine.entities import ENTRY, EXIT, LONG, Signal, TradeRecord

logger = logging.getLogger(__name__)

NO_POSITION = "none"


@dataclass
class PerformanceMetrics:
    total_return: float = 0.0
    win_rate: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    total_trades: int = 0
    current_position: str = NO_POSITION
    unrealized_pnl: float = 0.0
    realized_pnl: float = 0.0

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Position:
    side: str = NO_POSITION
    quantity: float = 0.0
    entry_price: Optional[float] = None

    @property
    def is_open(self) -> bool:
        return self.side != NO_POSITION

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class SignalStats:
    total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)
    by_side: Dict[str, int] = field(default_factory=dict)
    confidence_sum: float = 0.0
    last_signal_time: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "total": self.total,
            "by_type": dict(self.by_type),
            "by_side": dict(self.by_side),
            "average_confidence": self.confidence_sum / self.total if self.total else 0.0,
            "last_signal_time": self.last_signal_time,
        }


@dataclass
class _Ledger:
    trades: List[TradeRecord] = field(default_factory=list)
    position: Position = field(default_factory=Position)
    unrealized_pnl: float = 0.0
    signals: SignalStats = field(default_factory=SignalStats)


def compute_metrics(trades: List[TradeRecord], position: Position, unrealized_pnl: float = 0.0) -> PerformanceMetrics:
    closed = [t.pnl for t in trades if t.type == EXIT and t.pnl is not None]
    metrics = PerformanceMetrics(
        current_position=position.side,
        unrealized_pnl=unrealized_pnl if position.is_open else 0.0,
    )
    if not closed:
        return metrics

    realized = sum(closed)
    metrics.total_trades = len(closed)
    metrics.realized_pnl = realized
    metrics.total_return = realized
    metrics.win_rate = sum(1 for p in closed if p > 0) / len(closed)

    # Peak-to-trough on cumulative P&L, peak starts at 0
    running = 0.0
    peak = 0.0
    max_dd = 0.0
    for pnl in closed:
        running += pnl
        peak = max(peak, running)
        max_dd = max(max_dd, peak - running)
    metrics.max_drawdown = max_dd

    mean = realized / len(closed)
    variance = sum((p - mean) ** 2 for p in closed) / len(closed)
    std = math.sqrt(variance)
    metrics.sharpe_ratio = mean / std if std > 0 else 0.0
    return metrics


class PerformanceTracker:
    def __init__(self) -> None:
        self._ledgers: Dict[str, _Ledger] = {}

    def track_strategy(self, strategy_id: str) -> None:
        if strategy_id in self._ledgers:
            return
        self._ledgers[strategy_id] = _Ledger()
        logger.info(f"[PERF] Tracking {strategy_id}")

    def untrack_strategy(self, strategy_id: str) -> None:
        if self._ledgers.pop(strategy_id, None) is not None:
            logger.info(f"[PERF] Untracked {strategy_id}")

    def is_tracking(self, strategy_id: str) -> bool:
        return strategy_id in self._ledgers

    def tracked_strategies(self) -> List[str]:
        return list(self._ledgers)

    # ── recording ────────────────────────────────────────────────────────────

    def record_trade(self, trade: TradeRecord) -> Optional[TradeRecord]:
        ledger = self._ledgers.get(trade.strategy_id)
        if ledger is None:
            logger.warning(f"[PERF] Trade {trade.id} ignored: {trade.strategy_id} not being tracked")
            return None

        pos = ledger.position
        if trade.type == ENTRY:
            pos.side = trade.side
            pos.quantity = trade.quantity
            pos.entry_price = trade.price
            ledger.unrealized_pnl = 0.0
        elif trade.type == EXIT:
            if pos.is_open and pos.entry_price is not None:
                trade = replace(trade, pnl=_pnl(pos.side, pos.entry_price, trade.price, pos.quantity))
            else:
                logger.warning(f"[PERF] {trade.strategy_id}: exit {trade.id} recorded while flat (no pnl)")
            ledger.position = Position()
            ledger.unrealized_pnl = 0.0

        ledger.trades.append(trade)
        logger.info(
            f"[PERF] {trade.strategy_id}: {trade.type} {trade.side} {trade.quantity} @ {trade.price}"
            + (f" | pnl={trade.pnl:.4f}" if trade.pnl is not None else "")
        )
        return trade

    def record_signal(self, strategy_id: str, signal: Signal) -> None:
        ledger = self._ledgers.get(strategy_id)
        if ledger is None:
            logger.debug(f"[PERF] Signal {signal.id} ignored: {strategy_id} not being tracked")
            return
        stats = ledger.signals
        stats.total += 1
        stats.by_type[signal.type] = stats.by_type.get(signal.type, 0) + 1
        stats.by_side[signal.side] = stats.by_side.get(signal.side, 0) + 1
        stats.confidence_sum += float(signal.confidence)
        stats.last_signal_time = signal.timestamp

    def update_unrealized_pnl(self, strategy_id: str, price: float) -> None:
        ledger = self._ledgers.get(strategy_id)
        if ledger is None:
            return
        pos = ledger.position
        if not pos.is_open or pos.entry_price is None:
            return
        ledger.unrealized_pnl = _pnl(pos.side, pos.entry_price, price, pos.quantity)

    # ── reads ────────────────────────────────────────────────────────────────

    def get_performance(self, strategy_id: str) -> PerformanceMetrics:
        """Metrics snapshot; untracked ids get the idle default (all zero, no position)."""
        ledger = self._ledgers.get(strategy_id)
        if ledger is None:
            return PerformanceMetrics()
        return compute_metrics(ledger.trades, ledger.position, ledger.unrealized_pnl)

    def get_trade_history(self, strategy_id: str) -> List[TradeRecord]:
        ledger = self._ledgers.get(strategy_id)
        return list(ledger.trades) if ledger else []

    def get_current_position(self, strategy_id: str) -> Position:
        ledger = self._ledgers.get(strategy_id)
        return replace(ledger.position) if ledger else Position()

    def get_signal_stats(self, strategy_id: str) -> dict:
        ledger = self._ledgers.get(strategy_id)
        return (ledger.signals if ledger else SignalStats()).to_dict()

    def get_overall_performance(self) -> dict:
        all_metrics = [self.get_performance(sid) for sid in self._ledgers]
        if not all_metrics:
            return {"total_strategies": 0, "total_return": 0.0, "average_win_rate": 0.0, "total_trades": 0}
        return {
            "total_strategies": len(all_metrics),
            "total_return": sum(m.total_return for m in all_metrics),
            "average_win_rate": sum(m.win_rate for m in all_metrics) / len(all_metrics),
            "total_trades": sum(m.total_trades for m in all_metrics),
        }


def _pnl(side: str, entry_price: float, exit_price: float, quantity: float) -> float:
    if side == LONG:
        return (exit_price - entry_price) * quantity
    return (entry_price - exit_price) * quantity
