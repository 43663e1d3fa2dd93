"""
Feature Engineering Module
==========================
"""
from .indicators import (
    TechnicalIndicators,
    MACDResult,
    BollingerResult,
    pearson_correlation
)
from .feature_engine import (
    FeatureEngine,
    IndicatorSnapshot,
    INDICATOR_COLUMNS
)

__all__ = [
    'TechnicalIndicators',
    'MACDResult',
    'BollingerResult',
    'pearson_correlation',
    'FeatureEngine',
    'IndicatorSnapshot',
    'INDICATOR_COLUMNS'
]
