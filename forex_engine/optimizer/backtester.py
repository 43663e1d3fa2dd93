"""
Backtest Simulator
==================
Replays a historical price series through the live decision path.

Core principle: "Backtest what you trade"
The simulator uses the same FeatureEngine, classifier, SignalFusion and
PositionManager as the live engine, so crossing rules and stop/target
policy are identical. Only the broker is replaced by an in-process,
thread-free fill simulator.
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass, field
from typing import Dict, List, Optional
import logging

from ..analysis import DEFAULT_ANALYSIS, MarketConditionClassifier
from ..alpha import CombinationRules, SignalFusion
from ..config import ExecutionConfig, OptimizationMetric, StrategyParameters, Timeframe
from ..data import validate_price_series
from ..exceptions import DataUnavailable
from ..execution import BrokerAdapter, ExecutionEngine, ExitReason, Trade, TradeDirection, TradeResult
from ..features import FeatureEngine, IndicatorSnapshot
from ..monitoring import compute_metrics
from ..risk import PositionManager

logger = logging.getLogger(__name__)


class SimulatedBroker(BrokerAdapter):
    """Immediate-fill broker over a fixed price frame. Ids are sequential so runs repeat exactly."""

    def __init__(self, prices: pd.DataFrame):
        self.prices = prices
        self.open_ids = set()
        self._next_id = 0

    def get_price_history(self, symbol: str, timeframe: Timeframe,
                          from_ms: int, to_ms: int) -> pd.DataFrame:
        ts = self.prices['timestamp']
        window = self.prices[(ts >= from_ms) & (ts <= to_ms)]
        if window.empty:
            raise DataUnavailable(f"No simulated data for {symbol} in range")
        return window.reset_index(drop=True)

    def subscribe_price_ticks(self, symbol: str, callback):
        pass

    def unsubscribe(self, symbol: str):
        pass

    def place_trade(self, symbol: str, direction: TradeDirection, size: float,
                    stop_loss: float, take_profit: float) -> TradeResult:
        self._next_id += 1
        trade_id = f"bt-{self._next_id}"
        self.open_ids.add(trade_id)
        return TradeResult(trade_id, True)

    def close_trade(self, trade_id: str) -> TradeResult:
        if trade_id not in self.open_ids:
            return TradeResult(trade_id, False, "Trade not found")
        self.open_ids.discard(trade_id)
        return TradeResult(trade_id, True)

    def get_trade_history(self, symbol: str) -> List[Trade]:
        return []


@dataclass
class BacktestResult:
    """Trades and performance of one simulated run."""
    trades: List[Trade] = field(default_factory=list)
    total_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    net_profit: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    sharpe_ratio: float = 0.0
    max_drawdown: float = 0.0
    final_equity: float = 0.0
    equity_curve: List[float] = field(default_factory=list)

    def metric(self, metric: OptimizationMetric) -> float:
        """Value of the optimization objective."""
        return {
            OptimizationMetric.PROFIT_FACTOR: self.profit_factor,
            OptimizationMetric.WIN_RATE: self.win_rate,
            OptimizationMetric.NET_PROFIT: self.net_profit,
            OptimizationMetric.SHARPE_RATIO: self.sharpe_ratio,
        }[metric]

    def to_dict(self) -> dict:
        return {
            'total_trades': self.total_trades,
            'win_rate': self.win_rate,
            'profit_factor': self.profit_factor,
            'net_profit': self.net_profit,
            'total_profit': self.total_profit,
            'total_loss': self.total_loss,
            'sharpe_ratio': self.sharpe_ratio,
            'max_drawdown': self.max_drawdown,
            'final_equity': self.final_equity
        }


def sharpe_ratio(returns: np.ndarray, annualization: int = 252) -> float:
    """Mean over population std of per-trade returns, annualized."""
    if len(returns) == 0:
        return 0.0
    std = returns.std()
    if std == 0 or not np.isfinite(std):
        return 0.0
    return float(returns.mean() / std * np.sqrt(annualization))


def max_drawdown(equity: np.ndarray) -> float:
    """Largest peak-to-trough decline of the equity curve, in percent."""
    if len(equity) == 0:
        return 0.0
    peaks = np.maximum.accumulate(equity)
    return float(((peaks - equity) / peaks).max() * 100)


class BacktestSimulator:
    """
    Deterministic bar-by-bar replay.

    Steps per bar:
    1. Snapshot previous and current bar from the precomputed frame
    2. Market analysis from the precomputed classifier inputs
    3. Signal fusion
    4. Position manager step (exits first, then entries/reversals)
    """

    def __init__(self, config=None, analysis_config=None, signal_config=None,
                 risk_config=None, rules: Optional[CombinationRules] = None):
        from ..config import OptimizerConfig
        self.config = config or OptimizerConfig()
        self.features = FeatureEngine(analysis_config)
        self.classifier = MarketConditionClassifier(analysis_config)
        self.signal_config = signal_config
        self.risk_config = risk_config
        self.rules = rules

    def run(self, prices: pd.DataFrame, params: StrategyParameters) -> BacktestResult:
        """Simulate trading `params` over `prices`."""
        prices = validate_price_series(prices)
        # Auto-trading is the thing under test
        params = params.replace(enable_auto_trading=True)

        frame = self.features.compute_frame(prices, params)
        inputs = self.classifier.rolling_inputs(prices, frame, params.atr_period)
        rows: List[Dict[str, float]] = frame.to_dict('records')
        inputs_rows = inputs.to_dict('records')
        timestamps = prices['timestamp'].to_numpy()
        closes = prices['close'].to_numpy(dtype=float)
        min_points = self.classifier.config.min_points

        execution = ExecutionEngine(SimulatedBroker(prices), ExecutionConfig(broker_timeout_seconds=None))
        fusion = SignalFusion(self.signal_config, self.rules)
        positions = PositionManager(execution, params.symbol, self.risk_config)

        previous = None
        for i in range(len(prices)):
            current = IndicatorSnapshot.from_row(rows[i], timestamps[i], closes[i])
            if previous is None:
                previous = current
                continue

            if i + 1 < min_points:
                analysis = DEFAULT_ANALYSIS
            else:
                row = inputs_rows[i]
                analysis = self.classifier.from_values(
                    row['adx_mean'], row['volatility_pct'], row['sma_fast'], row['sma_slow'],
                    int(row['bullish']), int(row['bearish'])
                )

            signal = fusion.evaluate(previous, current, params, analysis)
            positions.evaluate(closes[i], int(timestamps[i]), signal, current.atr, analysis.volatility, params)
            previous = current

        if self.config.close_open_at_end and positions.open_trade is not None and len(prices):
            positions.close_position(closes[-1], int(timestamps[-1]), ExitReason.END_OF_DATA, params)

        result = self._summarize(positions.closed_trades)
        logger.debug(
            f"Backtest {params.symbol}: {result.total_trades} trades, PF {result.profit_factor:.2f}, "
            f"win rate {result.win_rate:.1f}%"
        )
        return result

    def _summarize(self, trades: List[Trade]) -> BacktestResult:
        metrics = compute_metrics(trades)

        returns = np.array([t.profit_percent / 100 for t in trades], dtype=float)
        equity = self.config.initial_equity * np.cumprod(np.concatenate([[1.0], 1 + returns]))

        return BacktestResult(
            trades=list(trades),
            total_trades=metrics.total_trades,
            win_rate=metrics.win_rate,
            profit_factor=metrics.profit_factor,
            net_profit=metrics.net_profit,
            total_profit=metrics.total_profit,
            total_loss=metrics.total_loss,
            sharpe_ratio=sharpe_ratio(returns, self.config.annualization_factor),
            max_drawdown=max_drawdown(equity),
            final_equity=float(equity[-1]),
            equity_curve=equity.tolist()
        )
