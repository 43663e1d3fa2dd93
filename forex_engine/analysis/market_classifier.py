"""
Market Condition Classifier
===========================
Regime, volatility and sentiment from ADX, normalized ATR, trend SMAs
and recent candle direction.

Core principle: classification is advisory. It biases weighting and
thresholds but never blocks signal generation.
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass
from enum import Enum
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class MarketRegime(Enum):
    """Market regimes."""
    TRENDING = "trending"
    RANGING = "ranging"
    VOLATILE = "volatile"


class VolatilityLevel(Enum):
    """Normalized-ATR volatility buckets."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class MarketSentiment(Enum):
    """Directional bias."""
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"


@dataclass(frozen=True)
class MarketAnalysis:
    """Classified market condition."""
    regime: MarketRegime = MarketRegime.RANGING
    volatility: VolatilityLevel = VolatilityLevel.MEDIUM
    sentiment: MarketSentiment = MarketSentiment.NEUTRAL
    adx_mean: Optional[float] = None
    volatility_pct: Optional[float] = None
    is_default: bool = False

    def to_dict(self) -> dict:
        return {
            'regime': self.regime.value,
            'volatility': self.volatility.value,
            'sentiment': self.sentiment.value,
            'adx_mean': self.adx_mean,
            'volatility_pct': self.volatility_pct,
            'is_default': self.is_default
        }


DEFAULT_ANALYSIS = MarketAnalysis(is_default=True)


def _finite(x) -> Optional[float]:
    if x is None:
        return None
    x = float(x)
    return x if np.isfinite(x) else None


class MarketConditionClassifier:
    """
    Derives MarketAnalysis from an indicator frame.

    Thresholds (defaults): mean ADX > 25 is trending; normalized ATR
    > 1.5 is volatile/high, < 0.8 is low.
    """

    def __init__(self, config=None):
        from ..config import AnalysisConfig
        self.config = config or AnalysisConfig()

    def from_values(self, adx_mean: Optional[float], volatility_pct: Optional[float],
                    sma_fast: Optional[float], sma_slow: Optional[float],
                    bullish_candles: int, bearish_candles: int) -> MarketAnalysis:
        """Classify from already-reduced inputs."""
        cfg = self.config
        adx_mean = _finite(adx_mean)
        volatility_pct = _finite(volatility_pct)

        if adx_mean is not None and adx_mean > cfg.trend_threshold:
            regime = MarketRegime.TRENDING
        elif volatility_pct is not None and volatility_pct > cfg.high_volatility_threshold:
            regime = MarketRegime.VOLATILE
        else:
            regime = MarketRegime.RANGING

        if volatility_pct is None:
            volatility = VolatilityLevel.MEDIUM
        elif volatility_pct < cfg.low_volatility_threshold:
            volatility = VolatilityLevel.LOW
        elif volatility_pct > cfg.high_volatility_threshold:
            volatility = VolatilityLevel.HIGH
        else:
            volatility = VolatilityLevel.MEDIUM

        sma_fast, sma_slow = _finite(sma_fast), _finite(sma_slow)
        if sma_fast is None or sma_slow is None:
            sentiment = MarketSentiment.NEUTRAL
        elif sma_fast > sma_slow and bullish_candles > bearish_candles:
            sentiment = MarketSentiment.BULLISH
        elif sma_fast < sma_slow and bearish_candles > bullish_candles:
            sentiment = MarketSentiment.BEARISH
        else:
            sentiment = MarketSentiment.NEUTRAL

        return MarketAnalysis(
            regime=regime,
            volatility=volatility,
            sentiment=sentiment,
            adx_mean=adx_mean,
            volatility_pct=volatility_pct
        )

    def rolling_inputs(self, prices: pd.DataFrame, frame: pd.DataFrame, atr_period: int) -> pd.DataFrame:
        """
        Per-bar classifier inputs.

        adx_mean averages the last `adx_lookback` defined ADX values;
        volatility_pct is ATR over the mean of the last `atr_period`
        closes; candle counts cover the last `candle_lookback` bars.
        """
        cfg = self.config
        closes = prices['close'].astype(float)
        opens = prices['open'].astype(float)

        avg_close = closes.rolling(window=atr_period, min_periods=1).mean()
        return pd.DataFrame({
            'adx_mean': frame['adx'].rolling(window=cfg.adx_lookback, min_periods=1).mean(),
            'volatility_pct': frame['atr'] / avg_close * 100,
            'sma_fast': frame['sma_fast_trend'],
            'sma_slow': frame['sma_slow_trend'],
            'bullish': (closes > opens).astype(int).rolling(window=cfg.candle_lookback, min_periods=1).sum(),
            'bearish': (closes < opens).astype(int).rolling(window=cfg.candle_lookback, min_periods=1).sum(),
        }, index=prices.index)

    def classify(self, prices: pd.DataFrame, frame: pd.DataFrame, atr_period: int) -> MarketAnalysis:
        """Classify the latest bar, or return the neutral default when data is short."""
        if len(prices) < self.config.min_points:
            logger.warning(
                f"Insufficient data for market analysis ({len(prices)} < {self.config.min_points}); "
                f"using neutral default"
            )
            return DEFAULT_ANALYSIS

        last = self.rolling_inputs(prices, frame, atr_period).iloc[-1]
        if _finite(last['sma_slow']) is None:
            logger.warning("Slow trend SMA not ready; sentiment defaults to neutral")

        analysis = self.from_values(
            last['adx_mean'], last['volatility_pct'], last['sma_fast'], last['sma_slow'],
            int(last['bullish']), int(last['bearish'])
        )
        logger.debug(f"Market analysis: {analysis.to_dict()}")
        return analysis
