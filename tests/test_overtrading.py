from strategy_engine.entities import Signal
from strategy_engine.models import OvertradingConfig
from strategy_engine.strategies.overtrading import HOUR_MS, OvertradingFilter

MIN_MS = 60_000


def sig(ts, type_="entry", side="long", confidence=0.9, price=100.0, volume=None, indicators=None):
    return Signal(
        id=f"sig-{ts}-{type_}",
        strategy_id="s1",
        rule_id="r",
        timestamp=ts,
        type=type_,
        side=side,
        price=price,
        confidence=confidence,
        volume=volume,
        indicators=indicators or {},
    )


def make(**kw):
    kw.setdefault("enabled", True)
    return OvertradingFilter("s1", OvertradingConfig(**kw), indicator_types={"rsi_14": "rsi", "ema_20": "ema"})


def test_hourly_cap():
    f = make(max_trades_per_hour=2, enforce_position_consistency=False)
    accepted = [f.process_strategy_signal(sig(i * MIN_MS)) is not None for i in range(4)]
    assert accepted == [True, True, False, False]
    # Window rolls by signal time
    assert f.process_strategy_signal(sig(HOUR_MS + 1)) is not None
    stats = f.get_statistics()
    assert stats["rejected_by_reason"] == {"hourly_limit": 2}
    assert stats["hourly_limit"] == 2


def test_cooldown_per_side_and_type():
    f = make(signal_cooldown_minutes=5, enforce_position_consistency=False)
    assert f.process_strategy_signal(sig(0)) is not None
    assert f.process_strategy_signal(sig(2 * MIN_MS)) is None
    # Different (side, type) key is not cooling down
    assert f.process_strategy_signal(sig(2 * MIN_MS, side="short")) is not None
    assert f.process_strategy_signal(sig(5 * MIN_MS)) is not None


def test_position_consistency():
    f = make()
    assert f.process_strategy_signal(sig(0, type_="exit")) is None
    assert f.process_strategy_signal(sig(1, side="long")) is not None
    assert f.get_statistics()["active_position"] == "long"
    assert f.process_strategy_signal(sig(2, side="short")) is None
    assert f.process_strategy_signal(sig(3, type_="exit", side="short")) is None
    assert f.process_strategy_signal(sig(4, type_="exit", side="long")) is not None
    assert f.active_position is None
    assert f.rejected == {
        "no_position_to_exit": 1,
        "opposite_position_open": 1,
        "exit_side_mismatch": 1,
    }


def test_strength_threshold_and_annotation():
    f = make(signal_strength_threshold=0.5)
    assert f.process_strategy_signal(sig(0, confidence=0.3)) is None
    accepted = f.process_strategy_signal(sig(1, confidence=0.8))
    assert accepted.metadata["overtrading"]["strength"] == 0.8


def test_indicator_agreement():
    f = make(minimum_indicator_agreement=0.6)
    # EMA carries no direction, so RSI 50 alone decides → 0.0
    assert f.process_strategy_signal(sig(0, indicators={"rsi_14": 50.0, "ema_20": 100.0})) is None
    accepted = f.process_strategy_signal(sig(1, indicators={"rsi_14": 20.0, "ema_20": 100.0}))
    assert accepted is not None
    assert accepted.metadata["overtrading"]["strength"] == 0.9


def test_agreement_ignores_non_directional_indicators():
    f = make(minimum_indicator_agreement=0.9, enforce_position_consistency=False)
    accepted = f.process_strategy_signal(sig(0, indicators={"ema_20": 100.0}))
    assert accepted is not None
    assert accepted.metadata["overtrading"]["strength"] == 0.9


def test_trend_confirmation():
    f = make(trend_confirmation=True, signal_strength_threshold=0.5)
    assert f.process_strategy_signal(sig(0, price=95.0, indicators={"ema_20": 100.0})) is None
    assert f.process_strategy_signal(sig(1, price=105.0, indicators={"ema_20": 100.0})) is not None


def test_min_spacing_between_entries():
    f = make(min_seconds_between_entries=120, enforce_position_consistency=False)
    assert f.process_strategy_signal(sig(0)) is not None
    assert f.process_strategy_signal(sig(MIN_MS, side="short")) is None
    assert f.process_strategy_signal(sig(2 * MIN_MS, side="short")) is not None


def test_volume_confirmation():
    f = make(volume_confirmation=True, min_volume_multiplier=1.5, enforce_position_consistency=False)
    assert f.process_strategy_signal(sig(0, volume=100.0)) is not None
    assert f.process_strategy_signal(sig(MIN_MS, side="short", volume=120.0)) is None
    assert f.process_strategy_signal(sig(2 * MIN_MS, side="short", volume=200.0)) is not None


def test_reset_clears_windows():
    f = make(max_trades_per_hour=1)
    assert f.process_strategy_signal(sig(0)) is not None
    f.reset()
    stats = f.get_statistics()
    assert stats["accepted"] == 0
    assert stats["trades_last_hour"] == 0
    assert stats["active_position"] is None
    assert f.process_strategy_signal(sig(1)) is not None
