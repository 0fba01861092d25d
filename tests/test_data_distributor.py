from strategy_engine.data_distributor import DataDistributor, SubscriptionFilter
from strategy_engine.entities import Candle


def candle(symbol="BTCUSDT", timeframe="1m", ts=1):
    return Candle(symbol, timeframe, ts, 1, 1, 1, 1)


def test_routes_only_matching_feed():
    got = []
    dist = DataDistributor(lambda sid, c: got.append((sid, c.timestamp)))
    dist.subscribe_strategy("a", SubscriptionFilter("BTCUSDT", "1m"))
    dist.subscribe_strategy("b", SubscriptionFilter("btcusdt", "60"))
    dist.subscribe_strategy("c", SubscriptionFilter("ETHUSDT", "1m"))

    assert dist.distribute_candle(candle()) == 2
    assert sorted(sid for sid, _ in got) == ["a", "b"]
    assert dist.distribute_candle(candle(timeframe="5m")) == 0


def test_monthly_subscription_does_not_match_minute_candles():
    monthly = SubscriptionFilter("BTC/USDT", "1M")
    assert monthly.timeframe == "1M"
    assert not monthly.matches(candle(symbol="BTC/USDT", timeframe="1m"))
    assert monthly.matches(candle(symbol="BTC/USDT", timeframe="1M"))
    assert SubscriptionFilter("BTC/USDT", "1H").matches(candle(symbol="BTC/USDT", timeframe="1h"))

    got = []
    dist = DataDistributor(lambda sid, c: got.append(sid))
    dist.subscribe_strategy("monthly", monthly)
    dist.subscribe_strategy("minute", SubscriptionFilter("BTC/USDT", "1m"))
    assert dist.distribute_candle(candle(symbol="BTC/USDT", timeframe="1m")) == 1
    assert got == ["minute"]


def test_failing_delivery_is_isolated():
    got = []

    def deliver(sid, c):
        if sid == "bad":
            raise RuntimeError("boom")
        got.append(sid)

    dist = DataDistributor(deliver)
    dist.subscribe_strategy("bad", SubscriptionFilter("BTCUSDT", "1m"))
    dist.subscribe_strategy("good", SubscriptionFilter("BTCUSDT", "1m"))

    assert dist.distribute_candle(candle()) == 1
    assert got == ["good"]
    assert dist.get_status()["delivery_errors"] == 1


def test_unsubscribe_and_unknown_ids():
    got = []
    dist = DataDistributor(lambda sid, c: got.append(sid))
    dist.unsubscribe_strategy("never-subscribed")
    dist.subscribe_strategy("a", SubscriptionFilter("BTCUSDT", "1m"))
    dist.unsubscribe_strategy("a")
    assert dist.distribute_candle(candle()) == 0
    assert got == []


def test_resubscribe_replaces_filter():
    dist = DataDistributor(lambda sid, c: None)
    dist.subscribe_strategy("a", SubscriptionFilter("BTCUSDT", "1m"))
    dist.subscribe_strategy("a", SubscriptionFilter("ETHUSDT", "5m"))
    assert dist.feeds() == {("ETHUSDT", "5m")}
    assert dist.get_subscriptions()["a"].key == "ETHUSDT/5m"


def test_status_counts_by_feed():
    dist = DataDistributor(lambda sid, c: None)
    dist.subscribe_strategy("a", SubscriptionFilter("BTCUSDT", "1m"))
    dist.subscribe_strategy("b", SubscriptionFilter("BTCUSDT", "1m"))
    dist.subscribe_strategy("c", SubscriptionFilter("ETHUSDT", "1h"))
    status = dist.get_status()
    assert status["total_subscriptions"] == 3
    assert status["subscriptions_by_feed"] == {"BTCUSDT/1m": 2, "ETHUSDT/1h": 1}
    assert status["active_strategies"] == ["a", "b", "c"]
