"""
Indicator Library
=================
Pure, deterministic technical indicators over price arrays.

Every function returns a numpy array holding only the defined values
(no leading NaN). When the input is shorter than the indicator needs,
the result is an empty array; callers treat that as "not ready".
"""

import pandas as pd
import numpy as np
from dataclasses import dataclass
from typing import Sequence, Union
import logging

logger = logging.getLogger(__name__)

ArrayLike = Union[Sequence[float], np.ndarray, pd.Series]

EMPTY = np.array([], dtype=float)


@dataclass(frozen=True)
class MACDResult:
    """MACD line, signal and histogram, aligned to equal length."""
    line: np.ndarray
    signal: np.ndarray
    histogram: np.ndarray

    def __len__(self) -> int:
        return len(self.histogram)


@dataclass(frozen=True)
class BollingerResult:
    """Bollinger Bands, aligned to equal length."""
    upper: np.ndarray
    middle: np.ndarray
    lower: np.ndarray

    def __len__(self) -> int:
        return len(self.middle)


def _as_array(data: ArrayLike) -> np.ndarray:
    return np.asarray(data, dtype=float)


def _check_period(period: int):
    if period < 1:
        raise ValueError(f"period must be >= 1, got {period}")


def _seeded_smoothing(values: np.ndarray, period: int, alpha: float) -> np.ndarray:
    """Exponential smoothing seeded with the simple average of the first `period` values."""
    if len(values) < period:
        return EMPTY
    seed = values[:period].mean()
    series = pd.Series(np.concatenate([[seed], values[period:]]))
    return series.ewm(alpha=alpha, adjust=False).mean().to_numpy()


class TechnicalIndicators:
    """Technical analysis indicators."""

    @staticmethod
    def sma(data: ArrayLike, period: int) -> np.ndarray:
        """Simple Moving Average."""
        _check_period(period)
        values = _as_array(data)
        if len(values) < period:
            return EMPTY
        return pd.Series(values).rolling(window=period).mean().to_numpy()[period - 1:]

    @staticmethod
    def ema(data: ArrayLike, period: int) -> np.ndarray:
        """Exponential Moving Average, multiplier 2/(period+1), SMA seed."""
        _check_period(period)
        return _seeded_smoothing(_as_array(data), period, 2.0 / (period + 1))

    @staticmethod
    def wilder(data: ArrayLike, period: int) -> np.ndarray:
        """Wilder smoothing: avg = (avg*(period-1) + new) / period."""
        _check_period(period)
        return _seeded_smoothing(_as_array(data), period, 1.0 / period)

    @staticmethod
    def rsi(closes: ArrayLike, period: int = 14) -> np.ndarray:
        """
        Relative Strength Index with Wilder smoothing.

        One value per close from index `period` on. A window with no
        losses reads 100.
        """
        _check_period(period)
        values = _as_array(closes)
        if len(values) < period + 1:
            return EMPTY

        deltas = np.diff(values)
        avg_gain = TechnicalIndicators.wilder(np.clip(deltas, 0, None), period)
        avg_loss = TechnicalIndicators.wilder(np.clip(-deltas, 0, None), period)

        rs = np.divide(avg_gain, avg_loss, out=np.zeros_like(avg_gain), where=avg_loss > 0)
        return np.where(avg_loss > 0, 100.0 - 100.0 / (1.0 + rs), 100.0)

    @staticmethod
    def macd(closes: ArrayLike, fast: int = 12, slow: int = 26, signal: int = 9) -> MACDResult:
        """Moving Average Convergence Divergence."""
        ema_fast = TechnicalIndicators.ema(closes, fast)
        ema_slow = TechnicalIndicators.ema(closes, slow)
        if len(ema_fast) == 0 or len(ema_slow) == 0:
            return MACDResult(EMPTY, EMPTY, EMPTY)

        n = min(len(ema_fast), len(ema_slow))
        macd_line = ema_fast[-n:] - ema_slow[-n:]

        signal_line = TechnicalIndicators.ema(macd_line, signal)
        if len(signal_line) == 0:
            return MACDResult(EMPTY, EMPTY, EMPTY)

        macd_line = macd_line[-len(signal_line):]
        return MACDResult(macd_line, signal_line, macd_line - signal_line)

    @staticmethod
    def bollinger_bands(closes: ArrayLike, period: int = 20, deviation: float = 2.0) -> BollingerResult:
        """Bollinger Bands using population standard deviation."""
        _check_period(period)
        values = _as_array(closes)
        if len(values) < period:
            return BollingerResult(EMPTY, EMPTY, EMPTY)

        rolling = pd.Series(values).rolling(window=period)
        middle = rolling.mean().to_numpy()[period - 1:]
        std = rolling.std(ddof=0).to_numpy()[period - 1:]
        return BollingerResult(middle + deviation * std, middle, middle - deviation * std)

    @staticmethod
    def true_range(highs: ArrayLike, lows: ArrayLike, closes: ArrayLike) -> np.ndarray:
        """True range for every bar after the first."""
        h, l, c = _as_array(highs), _as_array(lows), _as_array(closes)
        if len(c) < 2:
            return EMPTY
        prev_close = c[:-1]
        return np.maximum.reduce([
            h[1:] - l[1:],
            np.abs(h[1:] - prev_close),
            np.abs(l[1:] - prev_close)
        ])

    @staticmethod
    def atr(highs: ArrayLike, lows: ArrayLike, closes: ArrayLike, period: int = 14) -> np.ndarray:
        """Average True Range with Wilder smoothing."""
        _check_period(period)
        return TechnicalIndicators.wilder(TechnicalIndicators.true_range(highs, lows, closes), period)

    @staticmethod
    def adx(highs: ArrayLike, lows: ArrayLike, closes: ArrayLike, period: int = 14) -> np.ndarray:
        """
        Average Directional Index.

        +DM/-DM and true range are Wilder-smoothed into +DI/-DI, DX is
        derived from them and Wilder-smoothed again into ADX. Needs at
        least 2*period bars.
        """
        _check_period(period)
        h, l = _as_array(highs), _as_array(lows)
        if len(h) < 2 * period:
            return EMPTY

        up = h[1:] - h[:-1]
        down = l[:-1] - l[1:]
        plus_dm = np.where((up > down) & (up > 0), up, 0.0)
        minus_dm = np.where((down > up) & (down > 0), down, 0.0)

        tr = TechnicalIndicators.wilder(TechnicalIndicators.true_range(highs, lows, closes), period)
        plus = TechnicalIndicators.wilder(plus_dm, period)
        minus = TechnicalIndicators.wilder(minus_dm, period)

        plus_di = np.divide(100.0 * plus, tr, out=np.zeros_like(tr), where=tr > 0)
        minus_di = np.divide(100.0 * minus, tr, out=np.zeros_like(tr), where=tr > 0)

        di_sum = plus_di + minus_di
        dx = np.divide(100.0 * np.abs(plus_di - minus_di), di_sum,
                       out=np.zeros_like(di_sum), where=di_sum > 0)
        return TechnicalIndicators.wilder(dx, period)


def pearson_correlation(x: ArrayLike, y: ArrayLike) -> float:
    """
    Pearson correlation of two equal-length series, clipped to [-1, 1].

    Pairs with a non-finite member are ignored. Returns 0.0 when either
    side has no variance or nothing is left to compare.
    """
    a, b = _as_array(x), _as_array(y)
    if len(a) != len(b):
        raise ValueError(f"Series length mismatch: {len(a)} != {len(b)}")

    mask = np.isfinite(a) & np.isfinite(b)
    a, b = a[mask], b[mask]
    if len(a) == 0:
        return 0.0

    da = a - a.mean()
    db = b - b.mean()
    denominator = np.sqrt((da * da).sum() * (db * db).sum())
    if denominator == 0:
        return 0.0
    return float(np.clip((da * db).sum() / denominator, -1.0, 1.0))
