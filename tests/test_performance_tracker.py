from __future__ import annotations

from dataclasses import replace

import pytest

from forex_engine.execution import TradeDirection, TradeStatus
from forex_engine.monitoring import PerformanceTracker, compute_metrics


def test_ten_trade_scenario(make_trade) -> None:
    trades = [make_trade(10.0) for _ in range(6)] + [make_trade(-5.0) for _ in range(4)]
    metrics = compute_metrics(trades)

    assert metrics.total_trades == 10
    assert metrics.profitable_trades == 6
    assert metrics.win_rate == pytest.approx(60.0)
    assert metrics.profit_factor == pytest.approx(3.0)
    assert metrics.average_win == pytest.approx(10.0)
    assert metrics.average_loss == pytest.approx(5.0)
    assert metrics.net_profit == pytest.approx(40.0)


def test_profit_factor_sentinel_without_losses(make_trade) -> None:
    metrics = compute_metrics([make_trade(1.0), make_trade(2.0)])
    assert metrics.profit_factor == 999.0
    assert metrics.average_loss == 0.0


def test_empty_ledger() -> None:
    metrics = compute_metrics([])
    assert metrics.total_trades == 0
    assert metrics.win_rate == 0.0
    assert metrics.profit_factor == 0.0


def test_flat_trade_counts_as_loss(make_trade) -> None:
    metrics = compute_metrics([make_trade(1.0), make_trade(0.0)])
    assert metrics.win_rate == pytest.approx(50.0)
    assert metrics.total_loss == 0.0
    assert metrics.profit_factor == 999.0


def test_streaks(make_trade) -> None:
    trades = [make_trade(p) for p in (1.0, 1.0, -1.0, -1.0, -1.0, 1.0)]
    metrics = compute_metrics(trades)
    assert metrics.consecutive_wins == 2
    assert metrics.consecutive_losses == 3


def test_indicator_accuracy_follows_market_direction(make_trade) -> None:
    trades = [
        make_trade(5.0, {"rsi": 1, "macd": -1}),
        make_trade(-5.0, {"rsi": 1, "bb": -1}),
        make_trade(5.0, {"ma": -1}, direction=TradeDirection.SELL),
    ]
    accuracy = compute_metrics(trades).indicator_accuracy

    assert (accuracy["rsi"].correct, accuracy["rsi"].false) == (1, 1)
    assert (accuracy["macd"].correct, accuracy["macd"].false) == (0, 1)
    assert (accuracy["bb"].correct, accuracy["bb"].false) == (1, 0)
    assert (accuracy["ma"].correct, accuracy["ma"].false) == (1, 0)
    assert accuracy["rsi"].accuracy == pytest.approx(50.0)


def test_tracker_history_and_deterioration(make_trade) -> None:
    tracker = PerformanceTracker()
    tracker.record_trade(make_trade(10.0))
    assert not tracker.is_deteriorating()

    tracker.record_trade(make_trade(-5.0))
    assert len(tracker.history) == 2
    assert tracker.metrics.win_rate == pytest.approx(50.0)
    assert tracker.is_deteriorating()


def test_success_rates_default_to_half(make_trade) -> None:
    tracker = PerformanceTracker()
    assert tracker.success_rates() == {"rsi": 0.5, "macd": 0.5, "ma": 0.5, "bb": 0.5}

    tracker.record_trade(make_trade(5.0, {"rsi": 1, "macd": -1}))
    rates = tracker.success_rates()
    assert rates["rsi"] == 1.0
    assert rates["macd"] == 0.0
    assert rates["ma"] == 0.5


def test_open_trade_rejected(make_trade) -> None:
    closed = make_trade(1.0)
    opened = replace(closed, status=TradeStatus.OPEN, profit=None, exit_price=None)
    with pytest.raises(ValueError):
        PerformanceTracker().record_trade(opened)


def test_seed_and_report(make_trade) -> None:
    tracker = PerformanceTracker()
    tracker.seed([make_trade(2.0), make_trade(-1.0)])

    assert tracker.closed_count == 2
    assert tracker.metrics.profit_factor == pytest.approx(2.0)
    assert len(tracker.history) == 1
    assert len(tracker.get_trades_frame()) == 2
    assert "STRATEGY PERFORMANCE REPORT" in tracker.generate_report("EURUSD")
