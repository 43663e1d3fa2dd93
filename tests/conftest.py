from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
import pandas as pd
import pytest

from forex_engine.config import Timeframe
from forex_engine.data import MockDataSource
from forex_engine.execution import ExitReason, Trade, TradeDirection

HOUR_MS = Timeframe.HOUR.period_ms
# Hour-aligned epoch milliseconds
START_MS = 472_222 * HOUR_MS


@pytest.fixture
def rng() -> np.random.Generator:
    return np.random.default_rng(7)


@pytest.fixture
def mock_prices() -> Callable[[int], pd.DataFrame]:
    """Seeded synthetic EURUSD hourly candles."""

    def build(bars: int = 300, symbol: str = "EURUSD") -> pd.DataFrame:
        return MockDataSource(seed=42).fetch_ohlcv(
            symbol, Timeframe.HOUR, START_MS, START_MS + bars * HOUR_MS
        )

    return build


@pytest.fixture
def prices_from_closes() -> Callable[[Sequence[float]], pd.DataFrame]:
    """Hourly candles whose open is the previous close."""

    def build(closes: Sequence[float]) -> pd.DataFrame:
        closes = np.asarray(closes, dtype=float)
        opens = np.concatenate([[closes[0]], closes[:-1]])
        return pd.DataFrame({
            "timestamp": START_MS + np.arange(len(closes), dtype="int64") * HOUR_MS,
            "open": opens,
            "high": np.maximum(opens, closes) * 1.0005,
            "low": np.minimum(opens, closes) * 0.9995,
            "close": closes,
            "volume": np.full(len(closes), 100.0),
        })

    return build


@pytest.fixture
def make_trade() -> Callable[..., Trade]:
    """Closed BUY trade entered at 100 with the given per-unit profit."""
    counter = {"n": 0}

    def build(profit: float, signals: dict | None = None,
              direction: TradeDirection = TradeDirection.BUY) -> Trade:
        counter["n"] += 1
        n = counter["n"]
        trade = Trade(
            id=f"t-{n}",
            symbol="EURUSD",
            direction=direction,
            entry_price=100.0,
            stop_loss=90.0 if direction == TradeDirection.BUY else 110.0,
            take_profit=120.0 if direction == TradeDirection.BUY else 80.0,
            entry_time=START_MS + n * HOUR_MS,
            indicator_signals=dict(signals or {}),
        )
        exit_price = 100.0 + profit * direction.sign
        return trade.closed(exit_price, START_MS + n * HOUR_MS + 1_000, ExitReason.MANUAL)

    return build
