"""
Market Analysis Module
======================
"""
from .market_classifier import (
    MarketConditionClassifier,
    MarketAnalysis,
    MarketRegime,
    VolatilityLevel,
    MarketSentiment,
    DEFAULT_ANALYSIS
)

__all__ = [
    'MarketConditionClassifier',
    'MarketAnalysis',
    'MarketRegime',
    'VolatilityLevel',
    'MarketSentiment',
    'DEFAULT_ANALYSIS'
]
