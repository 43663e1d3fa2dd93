"""
Correlation Analysis Module
===========================
Pairwise indicator correlation, correlation-aware combination rules,
and cross-symbol price correlation.
"""

import pandas as pd
from itertools import combinations
from typing import Callable, Dict, List, Optional
import logging

from ..alpha import CombinationRules, ConfirmationRule
from ..analysis import MarketAnalysis, MarketRegime, MarketSentiment, VolatilityLevel
from ..config import WEIGHT_FLOOR, StrategyParameters, normalize_weights
from ..exceptions import EngineError
from ..features import FeatureEngine, pearson_correlation

logger = logging.getLogger(__name__)

# Matrix key name -> indicator frame column
CORRELATION_SERIES = {
    'rsi': 'rsi',
    'macd': 'macd_hist',
    'fastMA': 'ma_fast',
    'slowMA': 'ma_slow',
    'bbUpper': 'bb_upper',
    'bbLower': 'bb_lower',
}

REGIME_WEIGHTS = {
    MarketRegime.TRENDING: {'rsi': 0.15, 'macd': 0.35, 'ma': 0.35, 'bb': 0.15},
    MarketRegime.RANGING: {'rsi': 0.35, 'macd': 0.15, 'ma': 0.15, 'bb': 0.35},
    MarketRegime.VOLATILE: {'rsi': 0.20, 'macd': 0.20, 'ma': 0.20, 'bb': 0.40},
}
UNKNOWN_WEIGHTS = {'rsi': 0.25, 'macd': 0.25, 'ma': 0.25, 'bb': 0.25}

REGIME_CONFIRMATIONS = {
    MarketRegime.TRENDING: ConfirmationRule(
        'trend_confirmation', 'Buy needs fast MA above slow MA, sell needs it below'),
    MarketRegime.RANGING: ConfirmationRule(
        'range_confirmation', 'Buy needs RSI <= 40, sell needs RSI >= 60'),
    MarketRegime.VOLATILE: ConfirmationRule(
        'volatility_confirmation', 'Entry needs |score| >= 0.6'),
}

RELATED_SYMBOLS = {
    'EURUSD': ['GBPUSD', 'USDCHF', 'EURGBP', 'EURJPY'],
    'GBPUSD': ['EURUSD', 'USDCHF', 'EURGBP', 'GBPJPY'],
    'USDJPY': ['EURJPY', 'GBPJPY', 'AUDJPY', 'EURUSD'],
    'AUDUSD': ['NZDUSD', 'USDCAD', 'EURUSD', 'GBPUSD'],
    'USDCAD': ['AUDUSD', 'NZDUSD', 'EURUSD', 'GBPUSD'],
    'USDCHF': ['EURUSD', 'GBPUSD', 'EURCHF', 'GBPCHF'],
    'NZDUSD': ['AUDUSD', 'USDCAD', 'EURUSD', 'GBPUSD'],
    'EURGBP': ['EURUSD', 'GBPUSD', 'GBPJPY', 'EURJPY'],
    'EURJPY': ['USDJPY', 'GBPJPY', 'EURUSD', 'EURGBP'],
    'GBPJPY': ['USDJPY', 'EURJPY', 'GBPUSD', 'EURGBP'],
    'GOLD': ['SILVER', 'USDCHF', 'EURUSD', 'USDJPY'],
    'SILVER': ['GOLD', 'USDCHF', 'EURUSD', 'USDJPY'],
    'BTCUSD': ['ETHUSD', 'GOLD', 'USDJPY', 'EURUSD'],
    'ETHUSD': ['BTCUSD', 'GOLD', 'USDJPY', 'EURUSD'],
}


def indicator_correlation_matrix(prices: pd.DataFrame, params: Optional[StrategyParameters] = None,
                                 features: Optional[FeatureEngine] = None) -> Dict[str, float]:
    """
    Pearson correlation of every indicator pair, e.g. 'rsi_macd'.

    Only rows where every series is defined are used.
    """
    params = params or StrategyParameters()
    features = features or FeatureEngine()
    frame = features.compute_frame(prices, params)

    aligned = frame[list(CORRELATION_SERIES.values())].dropna()
    if aligned.empty:
        logger.warning("No aligned indicator rows; correlations default to 0")

    matrix = {}
    for a, b in combinations(CORRELATION_SERIES, 2):
        x = aligned[CORRELATION_SERIES[a]].to_numpy(dtype=float)
        y = aligned[CORRELATION_SERIES[b]].to_numpy(dtype=float)
        matrix[f"{a}_{b}"] = pearson_correlation(x, y)

    logger.info(f"Indicator correlation analysis over {len(aligned)} rows completed")
    return matrix


def generate_combination_rules(analysis: MarketAnalysis, correlations: Dict[str, float],
                               weight_floor: float = WEIGHT_FLOOR,
                               rsi_macd_threshold: float = 0.7,
                               ma_threshold: float = 0.9) -> CombinationRules:
    """
    Weights, thresholds and confirmations for the market condition.

    1. Regime base weights
    2. Volatility and sentiment shifts
    3. Move weight away from highly correlated indicator pairs
    4. Floor and renormalize
    """
    # 1. Base weights
    if analysis.is_default:
        weights = dict(UNKNOWN_WEIGHTS)
    else:
        weights = dict(REGIME_WEIGHTS[analysis.regime])

        # 2. Volatility / sentiment
        if analysis.volatility == VolatilityLevel.HIGH:
            weights['bb'] += 0.05
            weights['rsi'] -= 0.05
        elif analysis.volatility == VolatilityLevel.LOW:
            weights['rsi'] += 0.05
            weights['bb'] -= 0.05

        if analysis.sentiment == MarketSentiment.BULLISH:
            weights['ma'] += 0.05
            weights['macd'] += 0.05
            weights['rsi'] -= 0.05
            weights['bb'] -= 0.05
        elif analysis.sentiment == MarketSentiment.BEARISH:
            weights['rsi'] += 0.05
            weights['bb'] += 0.05
            weights['ma'] -= 0.05
            weights['macd'] -= 0.05

    # 3. Correlation
    if abs(correlations.get('rsi_macd', 0.0)) > rsi_macd_threshold:
        heavier = 'rsi' if weights['rsi'] >= weights['macd'] else 'macd'
        weights[heavier] -= 0.05
        weights['bb'] += 0.05
        logger.info(f"RSI/MACD highly correlated; shifted 0.05 from {heavier} to bb")

    if abs(correlations.get('fastMA_slowMA', 0.0)) > ma_threshold:
        to_fast_ma = {
            'rsi': abs(correlations.get('rsi_fastMA', 0.0)),
            'macd': abs(correlations.get('macd_fastMA', 0.0)),
            'bb': abs(correlations.get('fastMA_bbUpper', 0.0)),
        }
        receiver = min(to_fast_ma, key=to_fast_ma.get)
        weights['ma'] -= 0.05
        weights[receiver] += 0.05
        logger.info(f"MA pair highly correlated; shifted 0.05 from ma to {receiver}")

    # 4. Floor
    weights = normalize_weights(weights, weight_floor)

    volatile = not analysis.is_default and analysis.regime == MarketRegime.VOLATILE
    threshold = 0.6 if volatile else 0.5
    confirmations = [] if analysis.is_default else [REGIME_CONFIRMATIONS[analysis.regime]]

    rules = CombinationRules(
        weights=weights,
        buy_threshold=threshold,
        sell_threshold=-threshold,
        confirmation_rules=confirmations
    )
    logger.info(f"Combination rules generated: {rules.to_dict()}")
    return rules


def related_symbols(symbol: str) -> List[str]:
    return list(RELATED_SYMBOLS.get(symbol.upper(), []))


def symbol_correlations(symbol: str, prices: pd.DataFrame,
                        fetch: Callable[[str], pd.DataFrame]) -> Dict[str, float]:
    """
    Close-price correlation with each related instrument.

    Series are joined on timestamp; a symbol that cannot be fetched is
    logged and skipped.
    """
    base = prices[['timestamp', 'close']]
    result = {}

    for other in related_symbols(symbol):
        try:
            other_prices = fetch(other)
        except EngineError as e:
            logger.warning(f"Correlation with {other} skipped: {e}")
            continue

        joined = base.merge(other_prices[['timestamp', 'close']], on='timestamp', suffixes=('', '_other'))
        if len(joined) < 2:
            logger.warning(f"Correlation with {other} skipped: no overlapping candles")
            continue

        result[other] = pearson_correlation(
            joined['close'].to_numpy(dtype=float),
            joined['close_other'].to_numpy(dtype=float)
        )
        logger.debug(f"Correlation {symbol}/{other}: {result[other]:.3f}")

    return result
