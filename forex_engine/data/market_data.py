"""
Market Data Types
=================
Price points, ticks, the bounded rolling window and tick-to-candle aggregation.

Timestamps are epoch milliseconds throughout.
"""

import pandas as pd
import numpy as np
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Deque, Iterable, List, Optional, Sequence, Union
import logging

from ..config import Timeframe
from ..exceptions import MalformedData

logger = logging.getLogger(__name__)

PRICE_COLUMNS = ['timestamp', 'open', 'high', 'low', 'close', 'volume']


@dataclass(frozen=True)
class PricePoint:
    """One OHLCV candle."""
    timestamp: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0

    def to_dict(self) -> dict:
        return {
            'timestamp': self.timestamp,
            'open': self.open,
            'high': self.high,
            'low': self.low,
            'close': self.close,
            'volume': self.volume
        }


@dataclass(frozen=True)
class PriceTick:
    """One live price update from the broker stream."""
    symbol: str
    timestamp: int
    price: float
    volume: float = 0.0


def points_to_frame(points: Iterable[PricePoint]) -> pd.DataFrame:
    """Convert price points to the standard OHLCV frame."""
    rows = [p.to_dict() for p in points]
    if not rows:
        return pd.DataFrame(columns=PRICE_COLUMNS)
    df = pd.DataFrame(rows, columns=PRICE_COLUMNS)
    df['timestamp'] = df['timestamp'].astype('int64')
    return df


def frame_to_points(df: pd.DataFrame) -> List[PricePoint]:
    """Convert a standard OHLCV frame to price points."""
    volumes = df['volume'] if 'volume' in df.columns else pd.Series(0.0, index=df.index)
    return [
        PricePoint(int(ts), float(o), float(h), float(l), float(c), float(v))
        for ts, o, h, l, c, v in zip(df['timestamp'], df['open'], df['high'],
                                     df['low'], df['close'], volumes)
    ]


def validate_price_series(data: Union[pd.DataFrame, Sequence[PricePoint]]) -> pd.DataFrame:
    """
    Check structural integrity of a historical series.

    Returns the series as a standard frame. Raises MalformedData on
    non-increasing timestamps, non-finite or non-positive prices, or
    candles whose high is below their low.
    """
    df = data if isinstance(data, pd.DataFrame) else points_to_frame(data)

    missing = [c for c in PRICE_COLUMNS[:5] if c not in df.columns]
    if missing:
        raise MalformedData(f"Price series missing columns: {missing}")
    if df.empty:
        return df.reset_index(drop=True)

    timestamps = df['timestamp'].to_numpy(dtype='int64')
    steps = np.diff(timestamps)
    if (steps <= 0).any():
        bad = int(np.argmax(steps <= 0)) + 1
        raise MalformedData(
            f"Timestamps not strictly increasing at index {bad} "
            f"({timestamps[bad - 1]} -> {timestamps[bad]})", index=bad
        )

    prices = df[['open', 'high', 'low', 'close']].to_numpy(dtype=float)
    finite = np.isfinite(prices).all(axis=1)
    if not finite.all():
        bad = int(np.argmin(finite))
        raise MalformedData(f"Non-finite price at index {bad}", index=bad)
    if (prices <= 0).any():
        bad = int(np.argmax((prices <= 0).any(axis=1)))
        raise MalformedData(f"Non-positive price at index {bad}", index=bad)

    inverted = prices[:, 1] < prices[:, 2]
    if inverted.any():
        bad = int(np.argmax(inverted))
        raise MalformedData(f"High below low at index {bad}", index=bad)

    return df.reset_index(drop=True)


class PriceBuffer:
    """
    Bounded rolling window of candles.

    The oldest candle is dropped once capacity is reached; the last
    candle can be replaced in place while it is still forming.
    """

    def __init__(self, capacity: int, points: Optional[Iterable[PricePoint]] = None):
        if capacity < 1:
            raise ValueError(f"capacity must be >= 1, got {capacity}")
        self._points: Deque[PricePoint] = deque(maxlen=capacity)
        if points is not None:
            self.extend(points)

    @property
    def capacity(self) -> int:
        return self._points.maxlen

    def __len__(self) -> int:
        return len(self._points)

    def __iter__(self):
        return iter(list(self._points))

    def append(self, point: PricePoint):
        self._points.append(point)

    def extend(self, points: Iterable[PricePoint]):
        self._points.extend(points)

    def replace_last(self, point: PricePoint):
        if not self._points:
            raise IndexError("replace_last on empty buffer")
        self._points[-1] = point

    def last(self) -> Optional[PricePoint]:
        return self._points[-1] if self._points else None

    def resize(self, capacity: int):
        """Change capacity, keeping the newest candles."""
        if capacity == self.capacity:
            return
        self._points = deque(self._points, maxlen=capacity)

    def to_frame(self) -> pd.DataFrame:
        return points_to_frame(self._points)


class CandleUpdate(Enum):
    """Outcome of feeding a tick to the aggregator."""
    DROPPED = "dropped"
    UPDATED = "updated"
    NEW_CANDLE = "new_candle"


class CandleAggregator:
    """
    Builds candles of one timeframe from a tick stream.

    A tick whose period bucket (floor(ts / period)) is later than the
    current candle's starts a new candle aligned to the bucket boundary;
    ticks in the same bucket update the forming candle. Ticks not newer
    than the last accepted tick are duplicates or out-of-order deliveries
    and are dropped.
    """

    def __init__(self, buffer: PriceBuffer, timeframe: Timeframe):
        self.buffer = buffer
        self.timeframe = timeframe
        self.last_tick_time: Optional[int] = None
        self.dropped_ticks = 0

    def update(self, tick: PriceTick) -> CandleUpdate:
        period = self.timeframe.period_ms
        last = self.buffer.last()

        if self.last_tick_time is not None and tick.timestamp <= self.last_tick_time:
            self.dropped_ticks += 1
            logger.debug(f"Dropped stale tick {tick.timestamp} (last {self.last_tick_time})")
            return CandleUpdate.DROPPED
        if last is not None and tick.timestamp < last.timestamp:
            self.dropped_ticks += 1
            logger.debug(f"Dropped tick {tick.timestamp} older than candle {last.timestamp}")
            return CandleUpdate.DROPPED

        self.last_tick_time = tick.timestamp

        if last is None or tick.timestamp // period > last.timestamp // period:
            bucket = tick.timestamp - tick.timestamp % period
            self.buffer.append(PricePoint(
                timestamp=bucket,
                open=tick.price,
                high=tick.price,
                low=tick.price,
                close=tick.price,
                volume=tick.volume
            ))
            return CandleUpdate.NEW_CANDLE

        self.buffer.replace_last(PricePoint(
            timestamp=last.timestamp,
            open=last.open,
            high=max(last.high, tick.price),
            low=min(last.low, tick.price),
            close=tick.price,
            volume=last.volume + tick.volume
        ))
        return CandleUpdate.UPDATED
