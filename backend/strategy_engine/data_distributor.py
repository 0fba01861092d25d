"""Candle fan-out: routes each candle to every strategy subscribed to its feed."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Set, Tuple

from strategy_engine.entities import Candle
from strategy_engine.utils import normalize_symbol, normalize_timeframe

logger = logging.getLogger(__name__)

DeliverFn = Callable[[str, Candle], Any]


@dataclass(frozen=True)
class SubscriptionFilter:
    symbol: str
    timeframe: str

    def __post_init__(self):
        object.__setattr__(self, "symbol", normalize_symbol(self.symbol))
        object.__setattr__(self, "timeframe", normalize_timeframe(self.timeframe))

    @property
    def feed(self) -> Tuple[str, str]:
        return (self.symbol, self.timeframe)

    @property
    def key(self) -> str:
        return f"{self.symbol}/{self.timeframe}"

    def matches(self, candle: Candle) -> bool:
        return candle.feed == self.feed


class DataDistributor:
    """Subscription table strategy_id → (symbol, timeframe).

    `deliver(strategy_id, candle)` is called once per matching subscription.
    A failing delivery is logged and skipped; it never stops the others.
    """

    def __init__(self, deliver: DeliverFn) -> None:
        self._deliver = deliver
        self._subscriptions: Dict[str, SubscriptionFilter] = {}
        self.candles_received = 0
        self.deliveries = 0
        self.delivery_errors = 0

    def subscribe_strategy(self, strategy_id: str, subscription: SubscriptionFilter) -> None:
        previous = self._subscriptions.get(strategy_id)
        self._subscriptions[strategy_id] = subscription
        if previous is not None and previous != subscription:
            logger.info(f"[DISTRIBUTOR] {strategy_id} re-subscribed {previous.key} → {subscription.key}")
        else:
            logger.info(f"[DISTRIBUTOR] {strategy_id} subscribed to {subscription.key}")

    def unsubscribe_strategy(self, strategy_id: str) -> None:
        removed = self._subscriptions.pop(strategy_id, None)
        if removed is not None:
            logger.info(f"[DISTRIBUTOR] {strategy_id} unsubscribed from {removed.key}")

    def distribute_candle(self, candle: Candle) -> int:
        """Deliver `candle` to every matching subscriber. Returns the number of successful deliveries."""
        self.candles_received += 1
        # Snapshot so a delivery that (un)subscribes doesn't mutate the table mid-iteration
        targets = [sid for sid, sub in self._subscriptions.items() if sub.matches(candle)]
        delivered = 0
        for strategy_id in targets:
            try:
                self._deliver(strategy_id, candle)
                delivered += 1
            except Exception:
                self.delivery_errors += 1
                logger.exception(
                    f"[DISTRIBUTOR] Delivery to {strategy_id} failed for "
                    f"{candle.symbol}/{candle.timeframe} @ {candle.timestamp}"
                )
        self.deliveries += delivered
        return delivered

    def get_subscriptions(self) -> Dict[str, SubscriptionFilter]:
        return dict(self._subscriptions)

    def feeds(self) -> Set[Tuple[str, str]]:
        return {sub.feed for sub in self._subscriptions.values()}

    def get_status(self) -> dict:
        by_feed: Dict[str, int] = {}
        for sub in self._subscriptions.values():
            by_feed[sub.key] = by_feed.get(sub.key, 0) + 1
        active: List[str] = sorted(self._subscriptions)
        return {
            "total_subscriptions": len(self._subscriptions),
            "subscriptions_by_feed": by_feed,
            "active_strategies": active,
            "candles_received": self.candles_received,
            "deliveries": self.deliveries,
            "delivery_errors": self.delivery_errors,
        }
