"""StrategyStateMachine: lifecycle state of one StrategyInstance.

States:
    STOPPED - not processing; indicator and evaluator state discarded
    RUNNING - consuming candles and emitting signals
    PAUSED  - candles dropped, indicator/evaluator state kept as-is
    ERROR   - signal evaluation blew up, requires stop + start

Legal transitions:
    STOPPED → RUNNING  (start)
    RUNNING → PAUSED   (pause)
    PAUSED  → RUNNING  (resume)
    ANY     → STOPPED  (stop, idempotent)
    RUNNING|PAUSED → ERROR (unhandled processing exception)
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Optional

from strategy_engine.utils import now_ms

logger = logging.getLogger(__name__)


class StrategyStatus(str, Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    PAUSED = "paused"
    ERROR = "error"


# Which transitions are legal
_ALLOWED: dict[StrategyStatus, set[StrategyStatus]] = {
    StrategyStatus.STOPPED: {StrategyStatus.RUNNING, StrategyStatus.STOPPED},
    StrategyStatus.RUNNING: {StrategyStatus.PAUSED, StrategyStatus.STOPPED, StrategyStatus.ERROR},
    StrategyStatus.PAUSED:  {StrategyStatus.RUNNING, StrategyStatus.STOPPED, StrategyStatus.ERROR},
    StrategyStatus.ERROR:   {StrategyStatus.STOPPED},
}


class StrategyStateMachine:
    """Governs status transitions for a single strategy with logging and guard checks."""

    def __init__(self, strategy_id: str) -> None:
        self.strategy_id = strategy_id
        self._status = StrategyStatus.STOPPED
        self._previous: Optional[StrategyStatus] = None
        self._entered_at: Optional[int] = None

    # ── read ──────────────────────────────────────────────────────────────────

    @property
    def status(self) -> StrategyStatus:
        return self._status

    @property
    def is_running(self) -> bool:
        return self._status == StrategyStatus.RUNNING

    # ── transitions ──────────────────────────────────────────────────────────

    def can_transition(self, new_status: StrategyStatus) -> bool:
        return new_status in _ALLOWED.get(self._status, set())

    def transition(self, new_status: StrategyStatus, reason: str = "") -> bool:
        """Attempt a status transition. Returns True if allowed, False if blocked."""
        if not self.can_transition(new_status):
            logger.warning(
                f"[STATE] {self.strategy_id}: blocked illegal transition "
                f"{self._status.name} → {new_status.name}"
                + (f" ({reason})" if reason else "")
            )
            return False

        self._previous = self._status
        self._status = new_status
        self._entered_at = now_ms()
        if self._previous != new_status:
            logger.info(
                f"[STATE] {self.strategy_id}: {self._previous.name} → {self._status.name}"
                + (f" | {reason}" if reason else "")
            )
        return True

    def to_dict(self) -> dict:
        return {
            "status": self._status.value,
            "previous_status": self._previous.value if self._previous else None,
            "entered_at": self._entered_at,
        }
