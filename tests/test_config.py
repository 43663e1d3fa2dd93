from __future__ import annotations

import pytest

from forex_engine.config import (
    IndicatorWeights,
    OptimizationMethod,
    StrategyParameters,
    SystemConfig,
    Timeframe,
    normalize_weights,
)
from forex_engine.exceptions import InvalidParameters


def test_defaults_are_valid() -> None:
    params = StrategyParameters().validate()
    assert params.symbol == "EURUSD"
    assert params.weights.total == pytest.approx(1.0)


def test_all_violations_are_reported() -> None:
    params = StrategyParameters(
        fast_ma_period=30,
        slow_ma_period=20,
        weights=IndicatorWeights(rsi=0.2, macd=0.2, ma=0.2, bb=0.3),
    )
    with pytest.raises(InvalidParameters) as excinfo:
        params.validate()
    assert len(excinfo.value.violations) == 2


@pytest.mark.parametrize("changes", [
    {"oversold_threshold": 70.0, "overbought_threshold": 30.0},
    {"macd_fast": 26, "macd_slow": 12},
    {"rsi_period": 0},
    {"rsi_period": 14.5},
    {"stop_loss_percent": 0.0},
    {"weights": {"rsi": 0.05, "macd": 0.35, "ma": 0.3, "bb": 0.3}},
])
def test_invalid_parameters(changes) -> None:
    with pytest.raises(InvalidParameters):
        StrategyParameters().replace(**changes).validate()


def test_replace_merges_partial_weights() -> None:
    params = StrategyParameters().replace(weights={"rsi": 0.4, "bb": 0.1})
    assert params.weights == IndicatorWeights(rsi=0.4, macd=0.25, ma=0.25, bb=0.1)
    params.validate()


def test_replace_rejects_unknown_fields() -> None:
    with pytest.raises(InvalidParameters):
        StrategyParameters().replace(rsi_len=10)


def test_replace_parses_timeframe() -> None:
    assert StrategyParameters().replace(timeframe="4h").timeframe == Timeframe.HOUR_4


def test_normalize_weights_respects_floor() -> None:
    weights = normalize_weights({"rsi": 0.0, "macd": 1.0, "ma": 1.0, "bb": 1.0}, 0.1)
    assert weights["rsi"] == pytest.approx(0.1)
    assert weights["macd"] == pytest.approx(0.3)
    assert sum(weights.values()) == pytest.approx(1.0)


def test_normalize_all_zero_weights_is_uniform() -> None:
    weights = normalize_weights({"rsi": 0.0, "macd": 0.0, "ma": 0.0, "bb": 0.0})
    assert all(w == pytest.approx(0.25) for w in weights.values())


def test_lookback_sizes() -> None:
    params = StrategyParameters()
    assert params.max_period == 35
    assert params.lookback == 85
    assert params.buffer_size == 135
    assert Timeframe.MINUTE_15.period_ms == 900_000


def test_save_and_load(tmp_path) -> None:
    config = SystemConfig()
    config.parameters = config.parameters.replace(symbol="GBPUSD", timeframe=Timeframe.MINUTE_5)
    config.optimizer.method = OptimizationMethod.GENETIC
    config.adaptation.every_n_trades = 3

    path = tmp_path / "config" / "engine.json"
    config.save(str(path))
    loaded = SystemConfig.load(str(path))

    assert loaded.parameters == config.parameters
    assert loaded.optimizer.method == OptimizationMethod.GENETIC
    assert loaded.adaptation.every_n_trades == 3
