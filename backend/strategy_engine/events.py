"""Typed publish/subscribe channels for manager-level events.

One channel per concept (signals, lifecycle changes) so the set of
consumers is explicit. Listeners may be plain callables or coroutine
functions; coroutines are scheduled on the running loop.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Generic, List, TypeVar

from strategy_engine.entities import Signal
from strategy_engine.utils import now_ms

logger = logging.getLogger(__name__)

T = TypeVar("T")


class LifecycleKind(str, Enum):
    STARTED = "strategyStarted"
    STOPPED = "strategyStopped"
    PAUSED = "strategyPaused"
    RESUMED = "strategyResumed"
    ERROR = "strategyError"


@dataclass(frozen=True)
class LifecycleEvent:
    kind: LifecycleKind
    strategy_id: str
    timestamp: int = field(default_factory=now_ms)
    detail: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "strategy_id": self.strategy_id,
            "timestamp": self.timestamp,
            "detail": dict(self.detail),
        }


@dataclass(frozen=True)
class SignalEvent:
    strategy_id: str
    signal: Signal

    def to_dict(self) -> dict:
        return {"strategy_id": self.strategy_id, "signal": self.signal.to_dict()}


class EventChannel(Generic[T]):
    def __init__(self, name: str) -> None:
        self.name = name
        self._listeners: List[Callable[[T], Any]] = []

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    def subscribe(self, listener: Callable[[T], Any]) -> Callable[[], None]:
        """Register `listener`; returns a callable that removes it again."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            try:
                self._listeners.remove(listener)
            except ValueError:
                pass

        return unsubscribe

    def publish(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                result = listener(event)
            except Exception:
                logger.exception(f"[EVENTS] {self.name} listener {listener!r} failed")
                continue
            if asyncio.iscoroutine(result):
                self._schedule(result)

    def _schedule(self, coro) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.warning(f"[EVENTS] {self.name}: dropped async listener, no running event loop")
            return
        task = loop.create_task(coro)
        task.add_done_callback(self._log_task_error)

    def _log_task_error(self, task: "asyncio.Task") -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[EVENTS] {self.name} async listener failed: {exc!r}")
