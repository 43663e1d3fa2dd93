from __future__ import annotations

import pytest

from forex_engine.alpha import CompositeSignal, IndicatorVotes, SignalAction
from forex_engine.analysis import VolatilityLevel
from forex_engine.config import ExecutionConfig, StrategyParameters
from forex_engine.execution import ExecutionEngine, ExitReason, MockBroker, TradeDirection
from forex_engine.risk import PositionManager, PositionState, compute_stop_levels

AUTO = StrategyParameters(enable_auto_trading=True)


def build_manager(timeout: float | None = None, latency: float = 0.0) -> tuple[PositionManager, MockBroker]:
    broker = MockBroker(latency_seconds=latency)
    execution = ExecutionEngine(broker, ExecutionConfig(broker_timeout_seconds=timeout))
    return PositionManager(execution, "EURUSD"), broker


def signal(action: SignalAction, score: float = 0.75) -> CompositeSignal:
    sign = 1 if action == SignalAction.BUY else -1
    return CompositeSignal(
        action=action,
        score=score,
        votes=IndicatorVotes(rsi=sign, macd=sign),
        buy_threshold=0.5,
        sell_threshold=-0.5,
    )


def test_percentage_stop_levels() -> None:
    stop, target = compute_stop_levels(TradeDirection.BUY, 1.1, None, VolatilityLevel.MEDIUM, AUTO)
    assert stop == pytest.approx(1.089)
    assert target == pytest.approx(1.122)

    stop, target = compute_stop_levels(TradeDirection.SELL, 1.1, None, VolatilityLevel.MEDIUM, AUTO)
    assert stop == pytest.approx(1.111)
    assert target == pytest.approx(1.078)


def test_atr_widens_stop_levels() -> None:
    stop, target = compute_stop_levels(TradeDirection.BUY, 1.1, 0.02, VolatilityLevel.MEDIUM, AUTO)
    # max(1% of price, 1.5 ATR) and max(2% of price, 1.5 * 1.5 ATR)
    assert stop == pytest.approx(1.07)
    assert target == pytest.approx(1.145)


def test_buy_signal_opens_protected_position() -> None:
    manager, broker = build_manager()
    update = manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    assert update.opened is not None
    assert manager.state == PositionState.OPEN
    assert manager.open_trade.stop_loss == pytest.approx(1.089)
    assert manager.open_trade.indicator_signals == {"rsi": 1, "macd": 1, "ma": 0, "bb": 0}
    assert len(broker.placed) == 1


def test_same_direction_signal_is_ignored() -> None:
    manager, broker = build_manager()
    manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)
    update = manager.evaluate(1.101, 2_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    assert not update.changed
    assert len(broker.placed) == 1


def test_opposite_signal_reverses() -> None:
    manager, broker = build_manager()
    manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)
    update = manager.evaluate(1.105, 2_000, signal(SignalAction.SELL, -0.75), None, VolatilityLevel.MEDIUM, AUTO)

    assert update.closed.exit_reason == ExitReason.REVERSAL
    assert update.closed.profit == pytest.approx(0.005)
    assert update.opened.direction == TradeDirection.SELL
    assert sum(1 for t in manager.get_trades() if t.is_open) == 1
    assert len(broker.closed_ids) == 1


def test_stop_loss_exit_blocks_reentry_on_same_step() -> None:
    manager, _ = build_manager()
    closed = []
    manager.on_trade_closed(closed.append)
    manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    update = manager.evaluate(1.08, 2_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    assert update.closed.exit_reason == ExitReason.STOP_LOSS
    assert update.opened is None
    assert manager.state == PositionState.FLAT
    assert closed == [update.closed]


def test_take_profit_exit() -> None:
    manager, _ = build_manager()
    manager.evaluate(1.1, 1_000, signal(SignalAction.SELL, -0.75), None, VolatilityLevel.MEDIUM, AUTO)
    update = manager.evaluate(1.07, 2_000, None, None, VolatilityLevel.MEDIUM, AUTO)

    assert update.closed.exit_reason == ExitReason.TAKE_PROFIT
    assert update.closed.profit == pytest.approx(0.03)


def test_auto_trading_disabled_places_nothing() -> None:
    manager, broker = build_manager()
    update = manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None,
                              VolatilityLevel.MEDIUM, StrategyParameters())

    assert not update.changed
    assert update.error is None
    assert broker.placed == []
    assert manager.state == PositionState.FLAT


def test_rejected_open_stays_flat() -> None:
    manager, broker = build_manager()
    broker.reject_orders = True
    update = manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    assert update.opened is None
    assert "rejected" in update.error
    assert manager.state == PositionState.FLAT


def test_failed_close_keeps_position_open() -> None:
    manager, broker = build_manager()
    manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)
    broker.reject_closes = True

    update = manager.evaluate(1.08, 2_000, None, None, VolatilityLevel.MEDIUM, AUTO)
    assert update.closed is None
    assert update.error is not None
    assert manager.state == PositionState.OPEN

    broker.reject_closes = False
    retry = manager.evaluate(1.08, 3_000, None, None, VolatilityLevel.MEDIUM, AUTO)
    assert retry.closed.exit_reason == ExitReason.STOP_LOSS


def test_broker_exception_is_an_outcome() -> None:
    manager, broker = build_manager()
    broker.raise_on_call = ConnectionError("venue down")
    update = manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

    assert update.opened is None
    assert "venue down" in update.error
    assert manager.execution.failed_calls == 1


def test_open_timeout_is_a_failed_execution() -> None:
    manager, _ = build_manager(timeout=0.1, latency=0.5)
    try:
        update = manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)

        assert update.opened is None
        assert "timed out" in update.error
        assert manager.state == PositionState.FLAT
        assert manager.execution.failed_calls == 1
    finally:
        manager.execution.shutdown()


def test_close_timeout_leaves_trade_open() -> None:
    manager, broker = build_manager(timeout=0.1)
    try:
        manager.evaluate(1.1, 1_000, signal(SignalAction.BUY), None, VolatilityLevel.MEDIUM, AUTO)
        broker.latency_seconds = 0.5

        update = manager.evaluate(1.08, 2_000, None, None, VolatilityLevel.MEDIUM, AUTO)
        assert update.closed is None
        assert "timed out" in update.error
        assert manager.state == PositionState.OPEN
        assert manager.open_trade.is_open
        assert manager.execution.failed_calls == 1
    finally:
        manager.execution.shutdown()
