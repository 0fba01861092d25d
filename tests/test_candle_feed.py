import asyncio

import httpx

from strategy_engine.candle_feed import CandleFeed

T0 = 1_700_000_000_000


def make_transport(rows_by_symbol, calls):
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(dict(request.url.params))
        symbol = request.url.params.get("symbol")
        if symbol == "DOWN":
            return httpx.Response(503, json={"detail": "unavailable"})
        return httpx.Response(200, json={"candles": rows_by_symbol.get(symbol, [])})

    return httpx.MockTransport(handler)


def test_new_candles_dispatched_once_per_timestamp(manager, strategy_dict):
    manager.start_strategy(strategy_dict())
    rows = {"BTCUSDT": [{"ts": T0, "open": 1, "high": 2, "low": 0.5, "close": 1.5, "volume": 10}]}
    calls = []

    async def run():
        client = httpx.AsyncClient(transport=make_transport(rows, calls))
        feed = CandleFeed(manager, base_url="http://mds.local/v1", client=client)
        first = await feed.poll_once()
        again = await feed.poll_once()
        rows["BTCUSDT"] = [{"ts": T0 + 60_000, "close": 1.6}]
        newer = await feed.poll_once()
        await client.aclose()
        return first, again, newer

    first, again, newer = asyncio.run(run())
    assert (first, again, newer) == (1, 0, 1)
    assert manager.get_strategy("rsi-oversold").get_state().total_candles == 2
    assert calls[0]["symbol"] == "BTCUSDT"
    assert calls[0]["timeframe"] == "1m"
    assert calls[0]["timeframe_seconds"] == "60"
    assert calls[0]["limit"] == "1"


def test_iso_timestamps_and_failing_feed_skipped(manager, strategy_dict):
    manager.start_strategy(strategy_dict(id="down", symbol="DOWN"))
    manager.start_strategy(strategy_dict(id="eth", symbol="ETHUSDT"))
    rows = {"ETHUSDT": [{"ts": "2024-01-01T00:00:00Z", "close": 2300.0}]}
    calls = []

    async def run():
        client = httpx.AsyncClient(transport=make_transport(rows, calls))
        feed = CandleFeed(manager, base_url="http://mds.local", client=client)
        n = await feed.poll_once()
        await client.aclose()
        return n

    assert asyncio.run(run()) == 1
    assert len(calls) == 2
    assert manager.get_strategy("eth").get_state().total_candles == 1
    assert manager.get_strategy("down").get_state().total_candles == 0


def test_disabled_without_base_url(manager):
    feed = CandleFeed(manager, base_url="")

    async def run():
        await feed.start()
        n = await feed.poll_once()
        await feed.stop()
        return n

    assert asyncio.run(run()) == 0
