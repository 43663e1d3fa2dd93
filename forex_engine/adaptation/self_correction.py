"""
Self-Correction Module
======================
Closed-loop re-tuning of live strategy parameters from realised
performance and the current market condition.

Core principle: "Adapt in small steps, never past the bounds"
Each adjustment is a bounded, deterministic step; the result is
validated before the engine swaps it in, and the previous parameter set
is kept for audit and rollback.
"""

from collections import deque
from typing import Deque, Dict, List, Optional, Tuple
import logging

from ..analysis import MarketAnalysis, MarketRegime, MarketSentiment, VolatilityLevel
from ..config import StrategyParameters, normalize_weights
from ..monitoring import PerformanceMetrics, PerformanceTracker

logger = logging.getLogger(__name__)

# MACD fast/slow/signal and ATR period per regime
REGIME_PRESETS = {
    MarketRegime.TRENDING: (12, 26, 9, 14),
    MarketRegime.RANGING: (8, 17, 9, 10),
    MarketRegime.VOLATILE: (16, 32, 9, 20),
}


class ParameterHistory:
    """Bounded audit trail of replaced parameter sets, newest last."""

    def __init__(self, maxlen: int = 10):
        self._entries: Deque[StrategyParameters] = deque(maxlen=maxlen)

    def __len__(self) -> int:
        return len(self._entries)

    def push(self, params: StrategyParameters):
        self._entries.append(params)

    def pop(self) -> Optional[StrategyParameters]:
        return self._entries.pop() if self._entries else None

    def to_list(self) -> List[StrategyParameters]:
        return list(self._entries)


class SelfCorrectionController:
    """
    Decides when to re-tune and computes the re-tuned parameters.

    Adjustment order:
    1. Indicator weights from recent success rates
    2. RSI thresholds by regime, volatility and deterioration
    3. MA periods by regime
    4. Bollinger period/deviation by volatility
    5. Position size, stop-loss and take-profit from win rate, PF and win/loss ratio
    6. Conservative override under deterioration
    7. Regime MACD/ATR presets and sentiment weight nudge
    """

    def __init__(self, config=None):
        from ..config import AdaptationConfig
        self.config = config or AdaptationConfig()

        self.last_run_time: Optional[int] = None
        self.trades_at_last_run = 0
        self.adaptation_count = 0

    def reset_clock(self, now_ms: int, closed_trades: int = 0):
        self.last_run_time = now_ms
        self.trades_at_last_run = closed_trades

    def has_enough_data(self, tracker: PerformanceTracker) -> bool:
        return (tracker.closed_count >= self.config.min_trades
                and len(tracker.history) >= self.config.min_history)

    def is_due(self, now_ms: int, tracker: PerformanceTracker) -> bool:
        """Timer or trade-count trigger has fired."""
        if self.last_run_time is None or now_ms - self.last_run_time >= self.config.interval_seconds * 1000:
            return True
        every = self.config.every_n_trades
        return every > 0 and tracker.closed_count - self.trades_at_last_run >= every

    def should_run(self, now_ms: int, tracker: PerformanceTracker) -> bool:
        return self.is_due(now_ms, tracker) and self.has_enough_data(tracker)

    def run(self, params: StrategyParameters, analysis: MarketAnalysis,
            tracker: PerformanceTracker, now_ms: int) -> Optional[StrategyParameters]:
        """
        Re-tuned parameters, or None when there is not enough history.

        The clock is reset either way so an idle instance does not retry
        on every tick.
        """
        self.reset_clock(now_ms, tracker.closed_count)
        if not self.has_enough_data(tracker):
            logger.info(
                f"Self-correction skipped: {tracker.closed_count} trades, "
                f"{len(tracker.history)} snapshots"
            )
            return None

        adjusted = self.adjust(params, analysis, tracker)
        adjusted.validate(self.config.weight_floor)
        self.adaptation_count += 1
        logger.info(f"Self-correction #{self.adaptation_count} applied for {params.symbol}")
        return adjusted

    def adjust(self, params: StrategyParameters, analysis: MarketAnalysis,
               tracker: PerformanceTracker) -> StrategyParameters:
        """Pure parameter update; does not validate or count."""
        metrics = tracker.metrics
        deteriorating = tracker.is_deteriorating()
        regime_known = not analysis.is_default

        # 1. Weights
        weights = normalize_weights(tracker.success_rates(), self.config.weight_floor)

        changes = {}
        if regime_known:
            # 2-4. Indicator settings
            changes['oversold_threshold'], changes['overbought_threshold'] = \
                self._rsi_thresholds(params, analysis, metrics, deteriorating)
            changes['fast_ma_period'], changes['slow_ma_period'] = self._ma_periods(params, analysis)
            changes['bb_period'], changes['bb_deviation'] = self._bollinger(params, analysis)

        # 5-6. Risk
        changes['position_size'], changes['stop_loss_percent'], changes['take_profit_percent'] = \
            self._risk(params, metrics, deteriorating)

        # 7. Regime presets and sentiment
        if regime_known:
            macd_fast, macd_slow, macd_signal, atr_period = REGIME_PRESETS[analysis.regime]
            changes.update(macd_fast=macd_fast, macd_slow=macd_slow,
                           macd_signal=macd_signal, atr_period=atr_period)
            weights = self._sentiment_nudge(weights, analysis.sentiment)

        changes['weights'] = normalize_weights(weights, self.config.weight_floor)

        if deteriorating:
            logger.warning("Performance deteriorating; conservative risk override applied")
        return params.replace(**changes)

    @staticmethod
    def _rsi_thresholds(params: StrategyParameters, analysis: MarketAnalysis,
                        metrics: PerformanceMetrics, deteriorating: bool) -> Tuple[float, float]:
        oversold = params.oversold_threshold
        overbought = params.overbought_threshold

        def widen(os_, ob):
            return max(20.0, os_ - 2), min(80.0, ob + 2)

        def narrow(os_, ob):
            return min(35.0, os_ + 2), max(65.0, ob - 2)

        if analysis.regime == MarketRegime.TRENDING:
            oversold, overbought = widen(oversold, overbought)
        elif analysis.regime == MarketRegime.RANGING:
            oversold, overbought = narrow(oversold, overbought)

        if analysis.volatility == VolatilityLevel.HIGH:
            oversold, overbought = widen(oversold, overbought)
        elif analysis.volatility == VolatilityLevel.LOW:
            oversold, overbought = narrow(oversold, overbought)

        rsi = metrics.indicator_accuracy['rsi']
        if deteriorating and rsi.scored > 0 and rsi.accuracy < 50:
            oversold, overbought = max(15.0, oversold - 5), min(85.0, overbought + 5)

        return oversold, overbought

    @staticmethod
    def _ma_periods(params: StrategyParameters, analysis: MarketAnalysis) -> Tuple[int, int]:
        fast, slow = params.fast_ma_period, params.slow_ma_period

        if analysis.regime == MarketRegime.TRENDING:
            fast, slow = min(15, fast + 1), min(30, slow + 2)
        elif analysis.regime == MarketRegime.RANGING:
            fast, slow = max(5, fast - 1), max(15, slow - 2)
        else:
            fast, slow = 9, 21

        if fast >= slow:
            fast = max(1, slow - 5)
        return fast, slow

    @staticmethod
    def _bollinger(params: StrategyParameters, analysis: MarketAnalysis) -> Tuple[int, float]:
        if analysis.volatility == VolatilityLevel.HIGH:
            return max(15, params.bb_period - 2), round(min(3.0, params.bb_deviation + 0.2), 4)
        if analysis.volatility == VolatilityLevel.LOW:
            return min(25, params.bb_period + 2), round(max(1.5, params.bb_deviation - 0.2), 4)
        return 20, 2.0

    @staticmethod
    def _risk(params: StrategyParameters, metrics: PerformanceMetrics,
              deteriorating: bool) -> Tuple[float, float, float]:
        size = params.position_size
        stop_loss = params.stop_loss_percent
        take_profit = params.take_profit_percent

        if metrics.win_rate >= 60 and metrics.profit_factor >= 1.5:
            size = min(2.0, size * 1.1)
        elif metrics.win_rate < 40 or metrics.profit_factor < 1.0:
            size = max(0.5, size * 0.9)

        if metrics.average_loss > 0:
            ratio = metrics.average_win / metrics.average_loss
            if ratio < 1.5:
                take_profit = min(5.0, take_profit * 1.1)
                stop_loss = max(0.5, stop_loss * 0.9)
            elif ratio > 2.5:
                take_profit = max(1.0, take_profit * 0.95)
                stop_loss = min(2.0, stop_loss * 1.05)

        # Conservative override
        if deteriorating:
            size = max(0.5, size * 0.8)
            stop_loss = max(0.5, stop_loss * 0.9)
            take_profit = min(5.0, take_profit * 1.2)

        return round(size, 4), round(stop_loss, 4), round(take_profit, 4)

    @staticmethod
    def _sentiment_nudge(weights: Dict[str, float], sentiment: MarketSentiment) -> Dict[str, float]:
        weights = dict(weights)
        if sentiment == MarketSentiment.BULLISH and weights['rsi'] > 0.2:
            weights['rsi'] -= 0.05
            weights['ma'] += 0.05
        elif sentiment == MarketSentiment.BEARISH and weights['ma'] > 0.2:
            weights['ma'] -= 0.05
            weights['rsi'] += 0.05
        return weights
