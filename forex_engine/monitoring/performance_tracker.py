"""
Performance Tracking Module
===========================
Rolling trade statistics and per-indicator signal accuracy.

Core principle: "Data-driven decisions"
Metrics are always recomputed from the full closed-trade set, never
patched incrementally, so a snapshot is reproducible from the ledger.
"""

import pandas as pd
import numpy as np
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Optional
import logging

from ..config import INDICATORS
from ..execution import Trade

logger = logging.getLogger(__name__)


@dataclass
class IndicatorAccuracy:
    """Correct/false vote counts for one indicator."""
    correct: int = 0
    false: int = 0

    @property
    def scored(self) -> int:
        return self.correct + self.false

    @property
    def accuracy(self) -> float:
        if self.scored == 0:
            return 0.0
        return self.correct / self.scored * 100

    def to_dict(self) -> dict:
        return {'correct': self.correct, 'false': self.false, 'accuracy': self.accuracy}


@dataclass
class PerformanceMetrics:
    """Trade statistics over all closed trades."""
    total_trades: int = 0
    profitable_trades: int = 0
    win_rate: float = 0.0
    profit_factor: float = 0.0
    total_profit: float = 0.0
    total_loss: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    consecutive_wins: int = 0
    consecutive_losses: int = 0
    indicator_accuracy: Dict[str, IndicatorAccuracy] = field(
        default_factory=lambda: {name: IndicatorAccuracy() for name in INDICATORS}
    )

    @property
    def net_profit(self) -> float:
        return self.total_profit - self.total_loss

    def accuracy(self, indicator: str) -> float:
        return self.indicator_accuracy[indicator].accuracy

    def to_dict(self) -> dict:
        return {
            'total_trades': self.total_trades,
            'profitable_trades': self.profitable_trades,
            'win_rate': self.win_rate,
            'profit_factor': self.profit_factor,
            'total_profit': self.total_profit,
            'total_loss': self.total_loss,
            'net_profit': self.net_profit,
            'average_win': self.average_win,
            'average_loss': self.average_loss,
            'consecutive_wins': self.consecutive_wins,
            'consecutive_losses': self.consecutive_losses,
            'indicator_accuracy': {k: v.to_dict() for k, v in self.indicator_accuracy.items()}
        }


def trade_outcome(trade: Trade) -> int:
    """Direction the market actually went: +1 up, -1 down. A flat trade counts as a loss."""
    return trade.direction.sign if trade.profit > 0 else -trade.direction.sign


def _max_run(flags: List[bool]) -> int:
    best = run = 0
    for flag in flags:
        run = run + 1 if flag else 0
        best = max(best, run)
    return best


def compute_metrics(trades: Iterable[Trade], profit_factor_cap: float = 999.0) -> PerformanceMetrics:
    """Metrics from a set of trades; open trades are ignored."""
    closed = [t for t in trades if not t.is_open and t.profit is not None]
    metrics = PerformanceMetrics()
    if not closed:
        return metrics

    profits = np.array([t.profit for t in closed], dtype=float)
    wins = profits[profits > 0]
    losses = profits[profits < 0]
    unprofitable = len(closed) - len(wins)

    metrics.total_trades = len(closed)
    metrics.profitable_trades = len(wins)
    metrics.win_rate = len(wins) / len(closed) * 100
    metrics.total_profit = float(wins.sum())
    metrics.total_loss = float(-losses.sum())
    metrics.average_win = metrics.total_profit / len(wins) if len(wins) else 0.0
    metrics.average_loss = metrics.total_loss / unprofitable if unprofitable else 0.0

    if metrics.total_loss > 0:
        metrics.profit_factor = metrics.total_profit / metrics.total_loss
    elif metrics.total_profit > 0:
        metrics.profit_factor = profit_factor_cap
    else:
        metrics.profit_factor = 0.0

    ordered = sorted(closed, key=lambda t: t.exit_time if t.exit_time is not None else 0)
    metrics.consecutive_wins = _max_run([t.profit > 0 for t in ordered])
    metrics.consecutive_losses = _max_run([t.profit <= 0 for t in ordered])

    for trade in closed:
        outcome = trade_outcome(trade)
        for name, vote in trade.indicator_signals.items():
            if vote == 0 or name not in metrics.indicator_accuracy:
                continue
            if np.sign(vote) == outcome:
                metrics.indicator_accuracy[name].correct += 1
            else:
                metrics.indicator_accuracy[name].false += 1

    return metrics


class PerformanceTracker:
    """
    Tracks closed trades for one strategy instance.

    Keeps the current metrics, a bounded history of snapshots (one per
    close) and a bounded per-indicator success window used to re-weight
    indicators.
    """

    def __init__(self, config=None):
        from ..config import MonitoringConfig
        self.config = config or MonitoringConfig()

        self.trades: List[Trade] = []
        self.metrics = PerformanceMetrics()
        self.history: Deque[PerformanceMetrics] = deque(maxlen=self.config.history_size)
        self.success: Dict[str, Deque[float]] = {
            name: deque(maxlen=self.config.success_window) for name in INDICATORS
        }

    @property
    def closed_count(self) -> int:
        return len(self.trades)

    def seed(self, trades: Iterable[Trade]):
        """Initialise from historical trades."""
        loaded = [t for t in trades if not t.is_open and t.profit is not None]
        loaded.sort(key=lambda t: t.exit_time if t.exit_time is not None else 0)
        for trade in loaded:
            self.trades.append(trade)
            self._record_success(trade)
        self.metrics = compute_metrics(self.trades, self.config.profit_factor_cap)
        if loaded:
            self.history.append(self.metrics)
        logger.info(f"Performance seeded with {len(loaded)} trades (win rate {self.metrics.win_rate:.1f}%)")

    def record_trade(self, trade: Trade) -> PerformanceMetrics:
        """Add a closed trade, recompute metrics and snapshot them."""
        if trade.is_open or trade.profit is None:
            raise ValueError(f"Trade {trade.id} is not closed")

        self.trades.append(trade)
        self._record_success(trade)
        self.metrics = compute_metrics(self.trades, self.config.profit_factor_cap)
        self.history.append(self.metrics)

        logger.info(
            f"Performance: {self.metrics.total_trades} trades, win rate {self.metrics.win_rate:.1f}%, "
            f"PF {self.metrics.profit_factor:.2f}"
        )
        return self.metrics

    def _record_success(self, trade: Trade):
        outcome = trade_outcome(trade)
        for name, vote in trade.indicator_signals.items():
            if vote != 0 and name in self.success:
                self.success[name].append(1.0 if np.sign(vote) == outcome else 0.0)

    def success_rates(self) -> Dict[str, float]:
        """Mean recent success per indicator; 0.5 when it has not voted yet."""
        return {
            name: float(np.mean(window)) if window else 0.5
            for name, window in self.success.items()
        }

    @property
    def previous(self) -> Optional[PerformanceMetrics]:
        return self.history[-2] if len(self.history) >= 2 else None

    def is_deteriorating(self) -> bool:
        """Current win rate or profit factor below the previous snapshot."""
        prev = self.previous
        if prev is None:
            return False
        cur = self.history[-1]
        return cur.win_rate < prev.win_rate or cur.profit_factor < prev.profit_factor

    def get_history(self) -> List[PerformanceMetrics]:
        return list(self.history)

    def get_trades_frame(self) -> pd.DataFrame:
        """Closed trades as a DataFrame."""
        if not self.trades:
            return pd.DataFrame()
        return pd.DataFrame([t.to_dict() for t in self.trades])

    def generate_report(self, symbol: str = "") -> str:
        """Generate a text performance report."""
        m = self.metrics
        acc = m.indicator_accuracy

        report = f"""
╔══════════════════════════════════════════════════════════════╗
║              STRATEGY PERFORMANCE REPORT                     ║
╠══════════════════════════════════════════════════════════════╣
║ Symbol:             {symbol:>22s}                   ║
║ Time:               {pd.Timestamp.now().strftime('%Y-%m-%d %H:%M:%S'):>22s}                   ║
╠══════════════════════════════════════════════════════════════╣
║ TRADING STATISTICS                                           ║
╟──────────────────────────────────────────────────────────────╢
║ Total Trades:       {m.total_trades:>22d}                   ║
║ Win Rate:           {m.win_rate:>21.2f}%                   ║
║ Profit Factor:      {m.profit_factor:>22.2f}                   ║
║ Net Profit:         {m.net_profit:>22.5f}                   ║
║ Avg Win:            {m.average_win:>22.5f}                   ║
║ Avg Loss:           {m.average_loss:>22.5f}                   ║
║ Max Win Streak:     {m.consecutive_wins:>22d}                   ║
║ Max Loss Streak:    {m.consecutive_losses:>22d}                   ║
╠══════════════════════════════════════════════════════════════╣
║ INDICATOR ACCURACY                                           ║
╟──────────────────────────────────────────────────────────────╢
║ RSI:                {acc['rsi'].accuracy:>21.2f}%                   ║
║ MACD:               {acc['macd'].accuracy:>21.2f}%                   ║
║ MA:                 {acc['ma'].accuracy:>21.2f}%                   ║
║ Bollinger:          {acc['bb'].accuracy:>21.2f}%                   ║
╚══════════════════════════════════════════════════════════════╝
"""
        return report
