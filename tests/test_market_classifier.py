from __future__ import annotations

import math

from forex_engine.analysis import (
    DEFAULT_ANALYSIS,
    MarketConditionClassifier,
    MarketRegime,
    MarketSentiment,
    VolatilityLevel,
)
from forex_engine.config import StrategyParameters
from forex_engine.features import FeatureEngine


def test_strong_adx_is_trending() -> None:
    analysis = MarketConditionClassifier().from_values(30.0, 1.0, None, None, 0, 0)
    assert analysis.regime == MarketRegime.TRENDING
    assert analysis.volatility == VolatilityLevel.MEDIUM
    assert not analysis.is_default


def test_weak_adx_with_high_volatility_is_volatile() -> None:
    analysis = MarketConditionClassifier().from_values(20.0, 2.0, None, None, 0, 0)
    assert analysis.regime == MarketRegime.VOLATILE
    assert analysis.volatility == VolatilityLevel.HIGH


def test_trend_takes_precedence_over_volatility() -> None:
    analysis = MarketConditionClassifier().from_values(40.0, 2.0, None, None, 0, 0)
    assert analysis.regime == MarketRegime.TRENDING
    assert analysis.volatility == VolatilityLevel.HIGH


def test_quiet_market_is_ranging_and_low() -> None:
    analysis = MarketConditionClassifier().from_values(15.0, 0.5, None, None, 0, 0)
    assert analysis.regime == MarketRegime.RANGING
    assert analysis.volatility == VolatilityLevel.LOW


def test_sentiment_needs_sma_and_candle_agreement() -> None:
    classifier = MarketConditionClassifier()
    assert classifier.from_values(20.0, 1.0, 1.2, 1.1, 6, 4).sentiment == MarketSentiment.BULLISH
    assert classifier.from_values(20.0, 1.0, 1.0, 1.1, 3, 7).sentiment == MarketSentiment.BEARISH
    assert classifier.from_values(20.0, 1.0, 1.2, 1.1, 3, 7).sentiment == MarketSentiment.NEUTRAL
    assert classifier.from_values(20.0, 1.0, None, 1.1, 9, 1).sentiment == MarketSentiment.NEUTRAL


def test_missing_inputs_fall_back_to_ranging_medium() -> None:
    analysis = MarketConditionClassifier().from_values(float("nan"), None, None, None, 0, 0)
    assert analysis.regime == MarketRegime.RANGING
    assert analysis.volatility == VolatilityLevel.MEDIUM
    assert analysis.adx_mean is None


def test_short_history_returns_default(mock_prices) -> None:
    prices = mock_prices(30)
    params = StrategyParameters()
    frame = FeatureEngine().compute_frame(prices, params)
    analysis = MarketConditionClassifier().classify(prices, frame, params.atr_period)
    assert analysis is DEFAULT_ANALYSIS
    assert analysis.is_default


def test_classify_full_history(mock_prices) -> None:
    prices = mock_prices(300)
    params = StrategyParameters()
    frame = FeatureEngine().compute_frame(prices, params)
    analysis = MarketConditionClassifier().classify(prices, frame, params.atr_period)
    assert not analysis.is_default
    assert math.isfinite(analysis.adx_mean)
    assert analysis.volatility_pct > 0
