"""
Feature Engineering Module
==========================
Aligned indicator frame and per-bar indicator snapshots.

Core principle: one computation path for live ticks and backtests,
so a backtested parameter set sees exactly the values the live engine sees.
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass, fields
from typing import Dict, Optional, Tuple
import logging
import math

from .indicators import TechnicalIndicators

logger = logging.getLogger(__name__)

INDICATOR_COLUMNS = [
    'rsi', 'macd_line', 'macd_signal', 'macd_hist', 'ma_fast', 'ma_slow',
    'bb_upper', 'bb_middle', 'bb_lower', 'atr', 'adx',
    'sma_fast_trend', 'sma_slow_trend',
]


def _pad(values: np.ndarray, n: int) -> np.ndarray:
    """Right-align values in an array of length n, NaN in front."""
    out = np.full(n, np.nan)
    if len(values):
        out[n - len(values):] = values[-n:]
    return out


def _value(x) -> Optional[float]:
    if x is None:
        return None
    x = float(x)
    return None if math.isnan(x) else x


@dataclass(frozen=True)
class IndicatorSnapshot:
    """
    Latest indicator values for one bar.

    A field is None until enough data exists to compute it.
    """
    timestamp: Optional[int] = None
    price: Optional[float] = None
    rsi: Optional[float] = None
    macd_line: Optional[float] = None
    macd_signal: Optional[float] = None
    macd_histogram: Optional[float] = None
    ma_fast: Optional[float] = None
    ma_slow: Optional[float] = None
    bb_upper: Optional[float] = None
    bb_middle: Optional[float] = None
    bb_lower: Optional[float] = None
    atr: Optional[float] = None
    adx: Optional[float] = None

    @property
    def is_ready(self) -> bool:
        return all(getattr(self, f.name) is not None for f in fields(self))

    @classmethod
    def from_row(cls, row: pd.Series, timestamp: int, price: float) -> 'IndicatorSnapshot':
        return cls(
            timestamp=int(timestamp),
            price=float(price),
            rsi=_value(row['rsi']),
            macd_line=_value(row['macd_line']),
            macd_signal=_value(row['macd_signal']),
            macd_histogram=_value(row['macd_hist']),
            ma_fast=_value(row['ma_fast']),
            ma_slow=_value(row['ma_slow']),
            bb_upper=_value(row['bb_upper']),
            bb_middle=_value(row['bb_middle']),
            bb_lower=_value(row['bb_lower']),
            atr=_value(row['atr']),
            adx=_value(row['adx'])
        )

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'price': self.price,
            'rsi': self.rsi,
            'macd': {
                'line': self.macd_line,
                'signal': self.macd_signal,
                'histogram': self.macd_histogram
            },
            'ma': {'fast': self.ma_fast, 'slow': self.ma_slow},
            'bb': {'upper': self.bb_upper, 'middle': self.bb_middle, 'lower': self.bb_lower},
            'atr': self.atr,
            'adx': self.adx
        }


class FeatureEngine:
    """
    Computes every indicator the strategy uses over an OHLCV frame.

    Responsibilities:
    - One aligned column per indicator output, NaN while not ready
    - Snapshots of the last two bars for crossing detection
    """

    def __init__(self, config=None):
        from ..config import AnalysisConfig
        self.config = config or AnalysisConfig()
        self.indicators = TechnicalIndicators()

    def compute_frame(self, prices: pd.DataFrame, params) -> pd.DataFrame:
        """Indicator frame aligned row-for-row with `prices`."""
        n = len(prices)
        closes = prices['close'].to_numpy(dtype=float)
        highs = prices['high'].to_numpy(dtype=float)
        lows = prices['low'].to_numpy(dtype=float)

        ti = self.indicators
        macd = ti.macd(closes, params.macd_fast, params.macd_slow, params.macd_signal)
        bands = ti.bollinger_bands(closes, params.bb_period, params.bb_deviation)

        frame = pd.DataFrame({
            'rsi': _pad(ti.rsi(closes, params.rsi_period), n),
            'macd_line': _pad(macd.line, n),
            'macd_signal': _pad(macd.signal, n),
            'macd_hist': _pad(macd.histogram, n),
            'ma_fast': _pad(ti.sma(closes, params.fast_ma_period), n),
            'ma_slow': _pad(ti.sma(closes, params.slow_ma_period), n),
            'bb_upper': _pad(bands.upper, n),
            'bb_middle': _pad(bands.middle, n),
            'bb_lower': _pad(bands.lower, n),
            'atr': _pad(ti.atr(highs, lows, closes, params.atr_period), n),
            'adx': _pad(ti.adx(highs, lows, closes, self.config.adx_period), n),
            'sma_fast_trend': _pad(ti.sma(closes, self.config.sentiment_fast_period), n),
            'sma_slow_trend': _pad(ti.sma(closes, self.config.sentiment_slow_period), n),
        }, index=prices.index, columns=INDICATOR_COLUMNS)

        logger.debug(f"Computed {len(INDICATOR_COLUMNS)} indicator columns over {n} bars")
        return frame

    def latest(self, prices: pd.DataFrame, frame: pd.DataFrame) -> Tuple[IndicatorSnapshot, IndicatorSnapshot]:
        """Snapshots of the previous and current bar."""
        if len(frame) == 0:
            return IndicatorSnapshot(), IndicatorSnapshot()

        current = self._snapshot(prices, frame, -1)
        previous = self._snapshot(prices, frame, -2) if len(frame) > 1 else IndicatorSnapshot()
        return previous, current

    @staticmethod
    def _snapshot(prices: pd.DataFrame, frame: pd.DataFrame, pos: int) -> IndicatorSnapshot:
        return IndicatorSnapshot.from_row(
            frame.iloc[pos],
            timestamp=prices['timestamp'].iloc[pos],
            price=prices['close'].iloc[pos]
        )

    def readiness(self, frame: pd.DataFrame) -> Dict[str, bool]:
        """Which indicator columns have a value on the last bar."""
        if len(frame) == 0:
            return {c: False for c in INDICATOR_COLUMNS}
        last = frame.iloc[-1]
        return {c: bool(np.isfinite(last[c])) for c in INDICATOR_COLUMNS}
