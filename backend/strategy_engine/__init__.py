"""Multi-strategy streaming execution engine.

Candles come in (pushed over HTTP or polled by `candle_feed`), every
subscribed strategy updates its indicators and evaluates its rules, and
accepted signals go out to the performance ledger and WebSocket clients.
"""

__version__ = "0.1.0"
