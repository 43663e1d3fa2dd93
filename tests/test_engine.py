from __future__ import annotations

import pytest

from forex_engine import StrategyEngine
from forex_engine.alpha import CombinationRules, ConfirmationRule
from forex_engine.config import (
    AdaptationConfig,
    ExecutionConfig,
    IndicatorWeights,
    StrategyParameters,
    SystemConfig,
)
from forex_engine.data import PriceTick
from forex_engine.exceptions import EngineError, InvalidParameters, MalformedData
from forex_engine.execution import ExitReason, MockBroker, TradeDirection
from forex_engine.risk import PositionState

HOUR_MS = 3_600_000


def build_engine(params: StrategyParameters | None = None, weight_floor: float = 0.1):
    config = SystemConfig(
        execution=ExecutionConfig(broker_timeout_seconds=None),
        adaptation=AdaptationConfig(weight_floor=weight_floor),
    )
    broker = MockBroker()
    return StrategyEngine(broker, params or StrategyParameters(), config), broker


def tick(ts: int, price: float, symbol: str = "EURUSD") -> PriceTick:
    return PriceTick(symbol=symbol, timestamp=ts, price=price)


def test_initialize_from_history(mock_prices) -> None:
    engine, broker = build_engine()
    assert engine.initialize(mock_prices(300))

    status = engine.get_status()
    assert status["initialized"]
    assert status["candles"] == 201
    assert status["indicators_ready"]
    assert not status["analysis"]["is_default"]
    assert "EURUSD" in broker.subscribers


def test_initialize_rejects_malformed_history(mock_prices) -> None:
    prices = mock_prices(100)
    prices.loc[50, "timestamp"] = prices.loc[49, "timestamp"]
    engine, _ = build_engine()

    with pytest.raises(MalformedData):
        engine.initialize(prices)
    assert engine.get_error() is not None
    assert not engine.initialized


def test_start_requires_initialize() -> None:
    engine, _ = build_engine()
    with pytest.raises(EngineError):
        engine.start()


def test_trade_history_seeds_performance(mock_prices, make_trade) -> None:
    engine, broker = build_engine()
    broker.record_closed(make_trade(2.0))
    engine.initialize(mock_prices(300))

    assert engine.tracker.closed_count == 1
    assert len(engine.get_trades()) == 1


def test_trade_history_failure_is_not_fatal(mock_prices) -> None:
    engine, broker = build_engine()
    broker.raise_on_call = ConnectionError("history endpoint down")

    assert engine.initialize(mock_prices(300))
    assert engine.tracker.closed_count == 0


def test_ticks_update_candles_and_drop_duplicates(mock_prices) -> None:
    prices = mock_prices(300)
    engine, broker = build_engine()
    engine.initialize(prices)
    last_ts = int(prices["timestamp"].iloc[-1])
    snapshots = []
    unsubscribe = engine.subscribe(snapshots.append)

    broker.publish_tick(tick(last_ts + HOUR_MS, 1.1))
    assert engine.on_tick(tick(last_ts + HOUR_MS, 1.1)) is None
    assert engine.on_tick(tick(last_ts + 10, 1.1)) is None
    assert engine.on_tick(tick(last_ts + HOUR_MS + 5, 1.1, symbol="GBPUSD")) is None

    assert len(snapshots) == 1
    assert snapshots[0].timestamp == last_ts + HOUR_MS
    assert engine.get_status()["dropped_ticks"] == 2

    unsubscribe()
    engine.on_tick(tick(last_ts + HOUR_MS + 10, 1.101))
    assert len(snapshots) == 1


def test_stopped_engine_does_not_signal(mock_prices) -> None:
    prices = mock_prices(300)
    engine, _ = build_engine()
    engine.initialize(prices)

    snapshot = engine.on_tick(tick(int(prices["timestamp"].iloc[-1]) + HOUR_MS, 1.0))
    assert snapshot.signal is None
    assert not snapshot.is_running


def test_band_touch_trades_once_per_candle(mock_prices) -> None:
    prices = mock_prices(300)
    params = StrategyParameters(
        weights=IndicatorWeights(rsi=0.0, macd=0.0, ma=0.0, bb=1.0),
        enable_auto_trading=True,
    )
    engine, broker = build_engine(params, weight_floor=0.0)
    engine.initialize(prices)
    engine.start()

    last_ts = int(prices["timestamp"].iloc[-1])
    entry = float(prices["close"].iloc[-1]) * 0.95

    engine.on_tick(tick(last_ts + HOUR_MS, entry))
    trade = engine.positions.open_trade
    assert trade is not None
    assert trade.direction == TradeDirection.BUY

    # Stop-loss on the next tick of the same candle
    engine.on_tick(tick(last_ts + HOUR_MS + 1_000, entry * 0.9))
    assert engine.positions.state == PositionState.FLAT
    assert engine.get_trades()[-1].exit_reason == ExitReason.STOP_LOSS
    assert engine.get_performance_metrics().total_trades == 1

    # Still on the lower band, but this candle has already been acted on
    engine.on_tick(tick(last_ts + HOUR_MS + 2_000, entry * 0.89))
    assert engine.positions.open_trade is None
    assert len(broker.placed) == 1


def test_update_parameters_validates_atomically(mock_prices) -> None:
    engine, _ = build_engine()
    engine.initialize(mock_prices(300))
    before = engine.get_parameters()

    with pytest.raises(InvalidParameters):
        engine.update_parameters(fast_ma_period=30)
    assert engine.get_parameters() is before
    assert engine.get_parameter_history() == []

    updated = engine.update_parameters({"rsi_period": 10})
    assert updated.rsi_period == 10
    assert engine.get_parameter_history() == [before]


def test_symbol_cannot_change(mock_prices) -> None:
    engine, _ = build_engine()
    engine.initialize(mock_prices(300))
    with pytest.raises(InvalidParameters):
        engine.update_parameters(symbol="GBPUSD")


def test_rollback_restores_previous_parameters(mock_prices) -> None:
    engine, _ = build_engine()
    engine.initialize(mock_prices(300))
    original = engine.get_parameters()

    engine.update_parameters(bb_period=25)
    assert engine.rollback_parameters() == original
    assert engine.get_parameters() == original
    assert engine.rollback_parameters() is None


def test_apply_combination_rules(mock_prices) -> None:
    engine, _ = build_engine()
    engine.initialize(mock_prices(300))
    rules = CombinationRules(
        weights={"rsi": 0.15, "macd": 0.35, "ma": 0.35, "bb": 0.15},
        confirmation_rules=[ConfirmationRule("trend_confirmation")],
    )

    params = engine.apply_combination_rules(rules)
    assert params.weights == IndicatorWeights(rsi=0.15, macd=0.35, ma=0.35, bb=0.15)
    assert engine.fusion.rules is rules


def test_self_correction_needs_trades(mock_prices) -> None:
    engine, _ = build_engine()
    engine.initialize(mock_prices(300))
    assert engine.run_self_correction() is None
    assert engine.get_adaptation_count() == 0


def test_data_gap_clears_on_next_tick(mock_prices) -> None:
    prices = mock_prices(300)
    engine, _ = build_engine()
    engine.initialize(prices)

    engine.on_stream_interrupted("socket closed")
    status = engine.get_status()
    assert status["data_gap"]
    assert status["data_gap_reason"] == "socket closed"

    snapshot = engine.on_tick(tick(int(prices["timestamp"].iloc[-1]) + HOUR_MS, 1.1))
    assert not snapshot.data_gap


def test_cleanup_unsubscribes(mock_prices) -> None:
    engine, broker = build_engine()
    engine.initialize(mock_prices(300))
    engine.cleanup()

    assert "EURUSD" not in broker.subscribers
    assert not engine.is_running
