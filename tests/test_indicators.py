import pytest
from pydantic import TypeAdapter, ValidationError

from strategy_engine.entities import Candle
from strategy_engine.indicators import IndicatorCalculator, build_indicator
from strategy_engine.models import (
    ATRConfig,
    BollingerConfig,
    EMAConfig,
    IndicatorConfig,
    MACDConfig,
    RSIConfig,
    SMAConfig,
    StochasticConfig,
)


def flat_candle(price, i, volume=10.0):
    return Candle("X", "1m", 1_000_000 + i * 60_000, price, price, price, price, volume)


@pytest.mark.parametrize(
    "cfg, warmup",
    [
        (EMAConfig(period=5), 5),
        (SMAConfig(period=7), 7),
        (RSIConfig(period=14), 14),
        (MACDConfig(fast=3, slow=6, signal=2), 6),
        (BollingerConfig(period=10), 10),
        (StochasticConfig(k_period=5, d_period=3), 5),
        (ATRConfig(period=4), 4),
    ],
)
def test_warmup_null_until_period(cfg, warmup, candle_series):
    calc = IndicatorCalculator(cfg)
    assert calc.warmup == warmup
    candles = candle_series([100 + (i % 3) for i in range(warmup + 5)])
    values = [calc.calculate(c) for c in candles]
    assert all(v is None for v in values[: warmup - 1])
    assert all(v is not None for v in values[warmup - 1:])
    assert calc.is_ready()


def test_default_ids_derived_from_params():
    assert RSIConfig().id == "rsi_14"
    assert EMAConfig(period=50).id == "ema_50"
    assert MACDConfig().id == "macd_12_26_9"
    assert StochasticConfig().id == "stochastic_14_3"
    assert BollingerConfig(id="bb").id == "bb"


def test_tagged_variant_rejects_foreign_params():
    adapter = TypeAdapter(IndicatorConfig)
    cfg = adapter.validate_python({"type": "macd", "fast": 5, "slow": 10})
    assert isinstance(cfg, MACDConfig)
    with pytest.raises(ValidationError):
        adapter.validate_python({"type": "rsi", "fast": 5})
    with pytest.raises(ValidationError):
        adapter.validate_python({"type": "macd", "fast": 26, "slow": 12})
    with pytest.raises(ValidationError):
        adapter.validate_python({"type": "ema", "period": 0})


def test_ema_is_sma_seeded():
    calc = build_indicator(EMAConfig(period=3))
    values = [calc.calculate(flat_candle(p, i)) for i, p in enumerate([1, 2, 3, 4])]
    assert values[:2] == [None, None]
    assert values[2] == pytest.approx(2.0)
    # alpha = 0.5
    assert values[3] == pytest.approx(3.0)


def test_rsi_boundaries_never_nan():
    up = build_indicator(RSIConfig(period=3))
    for i, p in enumerate([10, 11, 12, 13, 14]):
        v = up.calculate(flat_candle(p, i))
    assert v == 100.0

    down = build_indicator(RSIConfig(period=3))
    for i, p in enumerate([14, 13, 12, 11, 10]):
        v = down.calculate(flat_candle(p, i))
    assert v == 0.0

    flat = build_indicator(RSIConfig(period=3))
    for i in range(5):
        v = flat.calculate(flat_candle(10, i))
    assert v == 50.0


def test_rsi_first_change_measured_against_open():
    calc = build_indicator(RSIConfig(period=2))
    # Open 10 → close 12 is the first gain, 12 → 11 the first loss
    assert calc.calculate(Candle("X", "1m", 1, 10, 12, 10, 12)) is None
    value = calc.calculate(Candle("X", "1m", 2, 12, 12, 11, 11))
    assert value == pytest.approx(100 - 100 / (1 + 2.0))


def test_rsi_non_price_source_starts_from_zero_change():
    calc = build_indicator(RSIConfig(period=3, source="volume"))
    for i in range(3):
        v = calc.calculate(flat_candle(50_000, i, volume=100.0))
    assert v == 50.0

    hl2 = build_indicator(RSIConfig(period=2, source="hl2"))
    assert hl2.calculate(Candle("X", "1m", 1, 10, 14, 12, 13)) is None
    # First change is zero, second is 15 - 13 = +2
    assert hl2.calculate(Candle("X", "1m", 2, 13, 16, 14, 15)) == 100.0


def test_stochastic_zero_range_is_50():
    calc = build_indicator(StochasticConfig(k_period=3, d_period=2))
    values = [calc.calculate(flat_candle(50, i)) for i in range(4)]
    assert values[2] == 50.0
    assert calc.components["d"] == 50.0


def test_bollinger_components(candle_series):
    calc = build_indicator(BollingerConfig(period=4, num_std=2))
    for c in candle_series([10, 10, 10, 10]):
        middle = calc.calculate(c)
    assert middle == pytest.approx(10.0)
    assert calc.components["upper"] == pytest.approx(10.0)
    assert calc.components["lower"] == pytest.approx(10.0)


def test_macd_signal_and_histogram(candle_series):
    calc = build_indicator(MACDConfig(fast=2, slow=4, signal=3))
    candles = candle_series([10, 11, 12, 13, 14, 15, 16, 17])
    for c in candles[:4]:
        calc.calculate(c)
    assert calc.current_value is not None
    assert calc.components["signal"] is None
    for c in candles[4:6]:
        calc.calculate(c)
    comps = calc.components
    assert comps["signal"] is not None
    assert comps["histogram"] == pytest.approx(calc.current_value - comps["signal"])


def test_atr_constant_range():
    calc = build_indicator(ATRConfig(period=3))
    for i in range(6):
        v = calc.calculate(Candle("X", "1m", i, 100, 102, 98, 100))
    assert v == pytest.approx(4.0)


def test_history_is_bounded_and_evicts_oldest(candle_series):
    calc = IndicatorCalculator(SMAConfig(period=2), history_size=5)
    candles = candle_series([float(p) for p in range(1, 21)])
    for c in candles:
        calc.calculate(c)
    history = calc.get_history()
    assert len(history) == 5
    assert history[-1].timestamp == candles[-1].timestamp
    assert history[0].timestamp == candles[-5].timestamp
    assert [p.timestamp for p in calc.get_history(limit=2)] == [c.timestamp for c in candles[-2:]]


def test_per_config_history_size_is_used(candle_series):
    calc = build_indicator(SMAConfig(period=1, history_size=3))
    for c in candle_series([1.0, 2.0, 3.0, 4.0]):
        calc.calculate(c)
    assert calc.history_size == 3
    assert len(calc.get_history()) == 3


def test_reset_returns_to_cold_state(candle_series):
    calc = build_indicator(RSIConfig(period=3))
    for c in candle_series([10, 9, 8, 7, 6]):
        calc.calculate(c)
    assert calc.current_value is not None
    calc.reset()
    assert calc.current_value is None
    assert calc.get_history() == []
    values = [calc.calculate(c) for c in candle_series([10, 9, 8])]
    assert values[:2] == [None, None]
    assert values[2] is not None


def test_result_snapshot(candle_series):
    calc = build_indicator(SMAConfig(period=2))
    for c in candle_series([1.0, 3.0]):
        calc.calculate(c)
    result = calc.result()
    assert result.id == "sma_2"
    assert result.current_value == pytest.approx(2.0)
    assert result.to_dict()["history"][0]["value"] == pytest.approx(2.0)
