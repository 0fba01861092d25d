"""Strategy rules (signal conditions, overtrading gates).

This package intentionally contains *rules* (when to signal) and consumes
indicator values computed by `strategy_engine/indicators.py`.

Keep `indicators.py` calculation-only.
"""
