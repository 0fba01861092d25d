"""CandleFeed: polls a market-data service for closed candles and feeds the manager.

Responsibilities (this file only):
  - For every (symbol, timeframe) some strategy is subscribed to, GET
    {base_url}/candles/last every `poll_seconds`
  - Detect new candle closes (timestamp advance per feed)
  - Hand each new candle to StrategyManager.on_new_candle exactly once

What this does NOT do:
  - Build candles from ticks (the market-data service's job)
  - Run any strategy logic
"""
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional, Tuple

import httpx

from strategy_engine.config import config
from strategy_engine.entities import Candle
from strategy_engine.utils import timeframe_seconds, to_epoch_ms

logger = logging.getLogger(__name__)


class CandleFeed:
    def __init__(
        self,
        manager,
        base_url: Optional[str] = None,
        poll_seconds: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.manager = manager
        self.base_url = str(base_url if base_url is not None else config["feed_base_url"] or "").strip()
        self.poll_seconds = float(poll_seconds if poll_seconds is not None else config["feed_poll_seconds"])
        self._client = client
        self._owns_client = client is None
        self._last_ts: Dict[Tuple[str, str], int] = {}
        self._task: Optional[asyncio.Task] = None
        self.candles_dispatched = 0

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(2.5, connect=2.0))
        return self._client

    # ── lifecycle ────────────────────────────────────────────────────────────

    async def start(self) -> None:
        if self._task and not self._task.done():
            return
        if not self.base_url:
            logger.info("[FEED] No feed_base_url configured, candle polling disabled")
            return
        self._task = asyncio.create_task(self._run(), name="candle_feed")
        logger.info(f"[FEED] CandleFeed started ({self.base_url}, every {self.poll_seconds}s)")

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
        logger.info("[FEED] CandleFeed stopped")

    # ── main loop ────────────────────────────────────────────────────────────

    async def _run(self) -> None:
        while True:
            try:
                await self.poll_once()
                await asyncio.sleep(max(0.2, self.poll_seconds))
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.warning(f"[FEED] Loop error: {e}")
                await asyncio.sleep(2)

    async def poll_once(self) -> int:
        """Fetch the latest candle for every subscribed feed. Returns candles dispatched."""
        if not self.base_url:
            return 0
        dispatched = 0
        for symbol, timeframe in sorted(self.manager.distributor.feeds()):
            try:
                rows = await self._fetch_last(symbol, timeframe)
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"[FEED] {symbol}/{timeframe} fetch failed: {e}")
                continue

            for row in rows:
                candle = self._to_candle(row, symbol, timeframe)
                if candle is None:
                    continue
                last = self._last_ts.get(candle.feed)
                if last is not None and candle.timestamp <= last:
                    continue
                self._last_ts[candle.feed] = candle.timestamp
                self.manager.on_new_candle(candle)
                dispatched += 1

        self.candles_dispatched += dispatched
        return dispatched

    async def _fetch_last(self, symbol: str, timeframe: str) -> List[Dict[str, Any]]:
        url = self.base_url.rstrip("/") + "/candles/last"
        params: Dict[str, Any] = {"symbol": symbol, "timeframe": timeframe, "limit": 1}
        try:
            params["timeframe_seconds"] = timeframe_seconds(timeframe)
        except ValueError:
            pass

        resp = await self._get_client().get(url, params=params)
        resp.raise_for_status()
        payload: Dict[str, Any] = resp.json() if resp.content else {}
        candles = payload.get("candles") or []
        if not isinstance(candles, list):
            return []
        return [row for row in candles if isinstance(row, dict)]

    @staticmethod
    def _to_candle(row: Dict[str, Any], symbol: str, timeframe: str) -> Optional[Candle]:
        raw_ts = row.get("timestamp", row.get("ts"))
        if raw_ts is None or row.get("close") is None:
            return None
        try:
            data = dict(row)
            data["timestamp"] = to_epoch_ms(raw_ts)
            # The subscription's labels win so the distributor match is exact
            data["symbol"] = symbol
            data["timeframe"] = timeframe
            return Candle.from_dict(data)
        except (KeyError, TypeError, ValueError) as e:
            logger.debug(f"[FEED] Skipping malformed candle for {symbol}/{timeframe}: {e}")
            return None
