"""StrategyManager: registry and wiring for all running strategies.

    candle → DataDistributor → StrategyInstance.process_candle
           → OvertradingFilter (optional) → PerformanceTracker → on_signal

Control operations (start/stop/pause/resume) raise engine errors to the
caller. The data plane (`on_new_candle`) never raises.

The manager is an explicit object owned by whoever hosts it (the FastAPI
lifespan in `server.py`, or a test); there is no module-level instance.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Union

from pydantic import ValidationError as PydanticValidationError

from strategy_engine.config import config
from strategy_engine.data_distributor import DataDistributor, SubscriptionFilter
from strategy_engine.entities import ENTRY, EXIT, Candle, Signal, TradeRecord
from strategy_engine.errors import AlreadyExistsError, NotFoundError, ValidationError
from strategy_engine.events import EventChannel, LifecycleEvent, LifecycleKind, SignalEvent
from strategy_engine.models import StrategyConfig
from strategy_engine.performance_tracker import PerformanceTracker
from strategy_engine.strategies.overtrading import OvertradingFilter
from strategy_engine.strategy_instance import StrategyInstance
from strategy_engine.strategy_state_machine import StrategyStatus
from strategy_engine.utils import now_ms

logger = logging.getLogger(__name__)


class StrategyManager:
    def __init__(
        self,
        tracker: Optional[PerformanceTracker] = None,
        paper_trading: Optional[bool] = None,
        history_size: Optional[int] = None,
    ) -> None:
        self._strategies: Dict[str, StrategyInstance] = {}
        self._filters: Dict[str, OvertradingFilter] = {}
        self.distributor = DataDistributor(self._deliver)
        self.tracker = tracker or PerformanceTracker()
        self.paper_trading = bool(config["paper_trading"]) if paper_trading is None else bool(paper_trading)
        self.history_size = history_size

        self.on_signal: EventChannel[SignalEvent] = EventChannel("signal")
        self.on_lifecycle: EventChannel[LifecycleEvent] = EventChannel("lifecycle")

        self.is_running = True
        self._started_at = now_ms()
        logger.info(f"[MANAGER] Initialized (paper_trading={self.paper_trading})")

    # ── control plane ────────────────────────────────────────────────────────

    def start_strategy(self, strategy_config: Union[StrategyConfig, Dict[str, Any]]) -> str:
        cfg = self._validate(strategy_config)
        if cfg.id in self._strategies:
            raise AlreadyExistsError(f"Strategy with ID '{cfg.id}' already exists")

        # Build everything that can fail before touching the registries
        instance = StrategyInstance(cfg, history_size=self.history_size)
        subscription = SubscriptionFilter(cfg.symbol, cfg.timeframe)
        ot = None
        if cfg.overtrading is not None:
            ot = OvertradingFilter(
                cfg.id,
                cfg.overtrading,
                indicator_types={ind.id: ind.type for ind in cfg.indicators},
            )

        self.distributor.subscribe_strategy(cfg.id, subscription)
        if ot is not None:
            self._filters[cfg.id] = ot
        self._strategies[cfg.id] = instance
        instance.start()
        self.tracker.track_strategy(cfg.id)

        logger.info(
            f"[MANAGER] Started strategy: {cfg.name} ({cfg.id}) | "
            f"overtrading={'on' if cfg.id in self._filters else 'off'}"
        )
        self.on_lifecycle.publish(
            LifecycleEvent(LifecycleKind.STARTED, cfg.id, detail={"name": cfg.name})
        )
        return cfg.id

    def stop_strategy(self, strategy_id: str) -> None:
        instance = self._require(strategy_id)
        instance.stop()
        self.distributor.unsubscribe_strategy(strategy_id)
        ot = self._filters.pop(strategy_id, None)
        if ot is not None:
            ot.reset()
        del self._strategies[strategy_id]
        # Ledger stays: stop leaves any open position as last recorded
        logger.info(f"[MANAGER] Stopped strategy: {strategy_id}")
        self.on_lifecycle.publish(LifecycleEvent(LifecycleKind.STOPPED, strategy_id))

    def pause_strategy(self, strategy_id: str) -> bool:
        instance = self._require(strategy_id)
        if not instance.pause():
            return False
        logger.info(f"[MANAGER] Paused strategy: {strategy_id}")
        self.on_lifecycle.publish(LifecycleEvent(LifecycleKind.PAUSED, strategy_id))
        return True

    def resume_strategy(self, strategy_id: str) -> bool:
        instance = self._require(strategy_id)
        if not instance.resume():
            return False
        logger.info(f"[MANAGER] Resumed strategy: {strategy_id}")
        self.on_lifecycle.publish(LifecycleEvent(LifecycleKind.RESUMED, strategy_id))
        return True

    async def shutdown(self) -> None:
        """Stop every strategy concurrently; one failing stop never blocks the rest."""
        logger.info(f"[MANAGER] Shutting down {len(self._strategies)} strategies...")
        ids = list(self._strategies)
        results = await asyncio.gather(*(self._stop_async(sid) for sid in ids), return_exceptions=True)
        for sid, result in zip(ids, results):
            if isinstance(result, Exception):
                logger.error(f"[MANAGER] Error stopping strategy {sid}: {result}")
        self.is_running = False
        logger.info("[MANAGER] Shutdown complete")

    async def _stop_async(self, strategy_id: str) -> None:
        self.stop_strategy(strategy_id)

    # ── data plane ───────────────────────────────────────────────────────────

    def on_new_candle(self, candle: Union[Candle, Dict[str, Any]]) -> int:
        """Single entry point for market data. Returns the number of strategies it reached."""
        try:
            if not isinstance(candle, Candle):
                candle = Candle.from_dict(candle)
            return self.distributor.distribute_candle(candle)
        except (KeyError, TypeError, ValueError) as e:
            logger.warning(f"[MANAGER] Dropped malformed candle: {e}")
        except Exception:
            logger.exception("[MANAGER] Error distributing candle data")
        return 0

    def _deliver(self, strategy_id: str, candle: Candle) -> None:
        instance = self._strategies.get(strategy_id)
        if instance is None:
            return
        before = instance.status
        signals = instance.process_candle(candle)
        if instance.status == StrategyStatus.ERROR and before != StrategyStatus.ERROR:
            self.on_lifecycle.publish(
                LifecycleEvent(
                    LifecycleKind.ERROR,
                    strategy_id,
                    detail={"error": instance.get_state().error_message},
                )
            )
        for signal in signals:
            self.handle_signal(strategy_id, signal)
        self.tracker.update_unrealized_pnl(strategy_id, candle.close)

    def handle_signal(self, strategy_id: str, signal: Signal) -> Optional[Signal]:
        ot = self._filters.get(strategy_id)
        if ot is not None:
            signal = ot.process_strategy_signal(signal)
            if signal is None:
                return None

        logger.info(
            f"[MANAGER] Signal from {strategy_id}: {signal.type} {signal.side} "
            f"@ {signal.price} (confidence={signal.confidence})"
        )
        self.tracker.record_signal(strategy_id, signal)
        if self.paper_trading:
            self._paper_fill(strategy_id, signal)
        self.on_signal.publish(SignalEvent(strategy_id, signal))
        return signal

    def _paper_fill(self, strategy_id: str, signal: Signal) -> None:
        instance = self._strategies.get(strategy_id)
        if instance is None:
            return
        position = self.tracker.get_current_position(strategy_id)
        if signal.type == ENTRY and position.is_open:
            return
        if signal.type == EXIT and (not position.is_open or position.side != signal.side):
            return

        trade = self.tracker.record_trade(
            TradeRecord(
                id=f"paper-{signal.id}",
                strategy_id=strategy_id,
                timestamp=signal.timestamp,
                type=signal.type,
                side=signal.side,
                price=signal.price,
                quantity=instance.config.risk.position_size,
            )
        )
        if trade is not None:
            signal.metadata["paper_trade_id"] = trade.id
            if trade.pnl is not None:
                signal.metadata["pnl"] = trade.pnl

    def record_trade(self, trade: Union[TradeRecord, Dict[str, Any]]) -> Optional[TradeRecord]:
        """Execution-layer hook: fills reported by a broker go straight to the ledger."""
        if not isinstance(trade, TradeRecord):
            try:
                trade = TradeRecord.from_dict(trade)
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"Invalid trade record: {e}") from e
        return self.tracker.record_trade(trade)

    # ── reads ────────────────────────────────────────────────────────────────

    def get_strategy(self, strategy_id: str) -> Optional[StrategyInstance]:
        return self._strategies.get(strategy_id)

    def get_active_strategies(self) -> List[dict]:
        active = []
        for sid, instance in self._strategies.items():
            status = instance.get_status()
            perf = self.tracker.get_performance(sid)
            active.append({
                "id": sid,
                "name": instance.config.name,
                "status": status["status"],
                "symbol": instance.config.symbol,
                "timeframe": instance.config.timeframe,
                "uptime_seconds": status["uptime_seconds"],
                "last_update": status["last_update"],
                "performance": {
                    "total_return": perf.total_return,
                    "win_rate": perf.win_rate,
                    "total_trades": perf.total_trades,
                    "current_position": perf.current_position,
                },
            })
        return active

    def get_strategy_metrics(self, strategy_id: str) -> dict:
        instance = self._strategies.get(strategy_id)
        if instance is None:
            # Idle default for strategies that aren't running
            return {
                "status": "idle",
                "performance": self.tracker.get_performance(strategy_id).to_dict(),
                "signal_stats": self.tracker.get_signal_stats(strategy_id),
                "signals": [],
                "indicators": {},
                "overtrading": None,
            }
        ot = self._filters.get(strategy_id)
        return {
            "status": instance.get_status(),
            "performance": self.tracker.get_performance(strategy_id).to_dict(),
            "signal_stats": self.tracker.get_signal_stats(strategy_id),
            "signals": [s.to_dict() for s in instance.get_recent_signals()],
            "indicators": instance.get_current_indicators(),
            "overtrading": ot.get_statistics() if ot is not None else None,
        }

    def get_status(self) -> dict:
        running = sum(1 for i in self._strategies.values() if i.status == StrategyStatus.RUNNING)
        return {
            "is_running": self.is_running,
            "active_strategies": len(self._strategies),
            "running_strategies": running,
            "uptime_seconds": round((now_ms() - self._started_at) / 1000, 3),
            "paper_trading": self.paper_trading,
            "data_distributor": self.distributor.get_status(),
            "performance": self.tracker.get_overall_performance(),
        }

    # ── helpers ──────────────────────────────────────────────────────────────

    def _require(self, strategy_id: str) -> StrategyInstance:
        instance = self._strategies.get(strategy_id)
        if instance is None:
            raise NotFoundError(f"Strategy '{strategy_id}' not found")
        return instance

    @staticmethod
    def _validate(strategy_config: Union[StrategyConfig, Dict[str, Any]]) -> StrategyConfig:
        if isinstance(strategy_config, StrategyConfig):
            return strategy_config
        if not isinstance(strategy_config, dict):
            raise ValidationError(f"Strategy config must be a mapping, got {type(strategy_config).__name__}")
        try:
            return StrategyConfig.model_validate(strategy_config)
        except PydanticValidationError as e:
            errors = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}" for err in e.errors()
            )
            raise ValidationError(f"Invalid strategy config: {errors}") from e
