"""
Data Module
===========
Historical OHLCV acquisition for forex pairs and CFDs.
Supports Yahoo Finance and a seeded synthetic source, with an in-memory
TTL cache and retry with exponential backoff.
"""

import yfinance as yf
import pandas as pd
import numpy as np
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional
import logging
import threading
import time

from ..config import Timeframe
from ..exceptions import DataUnavailable
from .market_data import PRICE_COLUMNS, PriceTick, validate_price_series

logger = logging.getLogger(__name__)


def ms_to_datetime(ms: int) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


class DataSource(ABC):
    """Abstract base class for data sources."""

    name = "source"

    @abstractmethod
    def fetch_ohlcv(self, symbol: str, timeframe: Timeframe,
                    start_ms: int, end_ms: int) -> pd.DataFrame:
        """Fetch OHLCV candles in the standard frame layout."""
        pass


class YFinanceSource(DataSource):
    """Yahoo Finance data source."""

    name = "yfinance"

    SYMBOL_MAP = {
        'GOLD': 'GC=F',
        'XAUUSD': 'GC=F',
        'SILVER': 'SI=F',
        'XAGUSD': 'SI=F',
        'OIL': 'CL=F',
        'BTCUSD': 'BTC-USD',
        'ETHUSD': 'ETH-USD',
        'US500': '^GSPC',
    }

    INTERVAL_MAP = {
        Timeframe.MINUTE: '1m',
        Timeframe.MINUTE_5: '5m',
        Timeframe.MINUTE_15: '15m',
        Timeframe.MINUTE_30: '30m',
        Timeframe.HOUR: '1h',
        Timeframe.HOUR_4: '1h',  # resampled below
        Timeframe.DAY: '1d',
        Timeframe.WEEK: '1wk',
    }

    def fetch_ohlcv(self, symbol: str, timeframe: Timeframe,
                    start_ms: int, end_ms: int) -> pd.DataFrame:
        """Fetch OHLCV data from Yahoo Finance."""
        yahoo_symbol = self._convert_symbol(symbol)

        ticker = yf.Ticker(yahoo_symbol)
        df = ticker.history(
            start=ms_to_datetime(start_ms),
            end=ms_to_datetime(end_ms),
            interval=self.INTERVAL_MAP[timeframe]
        )
        if df is None or df.empty:
            raise DataUnavailable(f"No Yahoo Finance data for {symbol} ({yahoo_symbol})")

        df = df.rename(columns={
            'Open': 'open',
            'High': 'high',
            'Low': 'low',
            'Close': 'close',
            'Volume': 'volume'
        })

        if timeframe == Timeframe.HOUR_4:
            df = df.resample('4h').agg({
                'open': 'first', 'high': 'max', 'low': 'min',
                'close': 'last', 'volume': 'sum'
            }).dropna()

        df['timestamp'] = self._index_to_ms(df.index)
        return df[PRICE_COLUMNS].reset_index(drop=True)

    @staticmethod
    def _index_to_ms(index) -> np.ndarray:
        idx = pd.DatetimeIndex(index)
        idx = idx.tz_localize('UTC') if idx.tz is None else idx.tz_convert('UTC')
        deltas = idx - pd.Timestamp(0, tz='UTC')
        return (deltas // pd.Timedelta(milliseconds=1)).to_numpy(dtype='int64')

    def _convert_symbol(self, symbol: str) -> str:
        """Convert symbol to Yahoo Finance format."""
        symbol = symbol.upper()
        if symbol in self.SYMBOL_MAP:
            return self.SYMBOL_MAP[symbol]

        # Six-letter currency pairs, e.g. EURUSD -> EURUSD=X
        if len(symbol) == 6 and symbol.isalpha():
            return f"{symbol}=X"

        return symbol


class MockDataSource(DataSource):
    """Seeded random-walk source for paper trading and testing."""

    name = "mock"

    BASE_PRICES = {
        'EURUSD': 1.1000,
        'GBPUSD': 1.2700,
        'USDJPY': 150.00,
        'AUDUSD': 0.6600,
        'USDCAD': 1.3600,
        'USDCHF': 0.8800,
        'NZDUSD': 0.6100,
        'EURGBP': 0.8600,
        'EURJPY': 162.00,
        'GBPJPY': 190.00,
        'GOLD': 2000.0,
        'SILVER': 24.00,
        'BTCUSD': 60000.0,
        'ETHUSD': 3000.0,
    }

    def __init__(self, volatility: float = 0.002, seed: Optional[int] = 42):
        self.volatility = volatility
        self.seed = seed

    def _rng(self, symbol: str, salt: int = 0) -> np.random.Generator:
        if self.seed is None:
            return np.random.default_rng()
        return np.random.default_rng([self.seed, sum(ord(c) for c in symbol), salt])

    def fetch_ohlcv(self, symbol: str, timeframe: Timeframe,
                    start_ms: int, end_ms: int) -> pd.DataFrame:
        """Generate synthetic OHLCV candles on period boundaries."""
        period = timeframe.period_ms
        first = start_ms - start_ms % period + (period if start_ms % period else 0)
        timestamps = np.arange(first, end_ms, period, dtype='int64')
        n = len(timestamps)
        if n == 0:
            raise DataUnavailable(f"Empty range for {symbol}: {start_ms}..{end_ms}")

        rng = self._rng(symbol, int(first // period))
        base_price = self.BASE_PRICES.get(symbol.upper(), 1.0)

        returns = rng.normal(0, self.volatility, n)
        closes = base_price * np.cumprod(1 + returns)
        opens = np.concatenate([[base_price], closes[:-1]])
        spread = np.abs(rng.normal(0, self.volatility / 2, (2, n))) * closes

        return pd.DataFrame({
            'timestamp': timestamps,
            'open': opens,
            'high': np.maximum(opens, closes) + spread[0],
            'low': np.minimum(opens, closes) - spread[1],
            'close': closes,
            'volume': rng.integers(100, 1000, n).astype(float)
        }, columns=PRICE_COLUMNS)

    def generate_ticks(self, symbol: str, start_ms: int, count: int,
                       step_ms: int, start_price: float) -> List[PriceTick]:
        """Random-walk tick stream continuing from a price."""
        rng = self._rng(symbol, int(start_ms // max(step_ms, 1)))
        steps = rng.normal(0, self.volatility / 4, count)
        prices = start_price * np.cumprod(1 + steps)
        return [
            PriceTick(symbol=symbol, timestamp=int(start_ms + i * step_ms), price=float(p))
            for i, p in enumerate(prices)
        ]


@dataclass
class CacheEntry:
    """Cache entry with expiration."""
    data: Any
    timestamp: datetime
    ttl_seconds: int

    def is_expired(self) -> bool:
        return datetime.now() - self.timestamp > timedelta(seconds=self.ttl_seconds)


@dataclass
class DataMetrics:
    """Track data fetch performance."""
    total_requests: int = 0
    cache_hits: int = 0
    failed_requests: int = 0
    last_fetch_time: Optional[datetime] = None

    @property
    def cache_hit_rate(self) -> float:
        if self.total_requests == 0:
            return 0.0
        return (self.cache_hits / self.total_requests) * 100


class DataCache:
    """Thread-safe in-memory cache, bounded to `max_entries`."""

    def __init__(self, max_entries: int = 64):
        self.max_entries = max_entries
        self._cache: Dict[str, CacheEntry] = {}
        self._lock = threading.RLock()

    def __len__(self) -> int:
        return len(self._cache)

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._cache.get(key)
            if entry is None:
                return None
            if entry.is_expired():
                del self._cache[key]
                return None
            return entry.data

    def set(self, key: str, data: Any, ttl_seconds: int = 60):
        with self._lock:
            self.purge_expired()
            while self._cache and len(self._cache) >= self.max_entries and key not in self._cache:
                oldest = min(self._cache, key=lambda k: self._cache[k].timestamp)
                del self._cache[oldest]
            self._cache[key] = CacheEntry(
                data=data,
                timestamp=datetime.now(),
                ttl_seconds=ttl_seconds
            )

    def purge_expired(self) -> int:
        """Drop expired entries; returns how many were removed."""
        with self._lock:
            expired = [k for k, entry in self._cache.items() if entry.is_expired()]
            for key in expired:
                del self._cache[key]
            return len(expired)

    def clear(self):
        with self._lock:
            self._cache.clear()


class DataManager:
    """
    Historical price access with caching and retry.

    Responsibilities:
    - Fetch candles from the configured source
    - Retry transient failures with exponential backoff
    - Validate structure before handing data to the engine
    - Cache results for the configured TTL
    """

    def __init__(self, config=None, source: DataSource = None,
                 sleep: Callable[[float], None] = time.sleep):
        from ..config import DataConfig
        self.config = config or DataConfig()

        if source is not None:
            self.source = source
        elif self.config.source == "yfinance":
            self.source = YFinanceSource()
        else:
            self.source = MockDataSource(self.config.mock_volatility, self.config.mock_seed)

        self.cache = DataCache(self.config.cache_max_entries)
        self.metrics = DataMetrics()
        self._sleep = sleep

    def get_price_history(self, symbol: str, timeframe: Timeframe,
                          start_ms: int, end_ms: int) -> pd.DataFrame:
        """Load validated candles for [start_ms, end_ms)."""
        cache_key = f"{self.source.name}:{symbol}:{timeframe.value}:{start_ms}:{end_ms}"
        self.metrics.total_requests += 1

        if self.config.use_cache:
            cached = self.cache.get(cache_key)
            if cached is not None:
                self.metrics.cache_hits += 1
                logger.debug(f"Cache hit for {symbol} {timeframe.value}")
                return cached.copy()

        df = self._fetch_with_retry(self.source.fetch_ohlcv, symbol, timeframe, start_ms, end_ms)
        if df.empty:
            raise DataUnavailable(f"No data for {symbol} {timeframe.value} in range")

        df = validate_price_series(df)
        logger.info(f"Fetched {len(df)} candles for {symbol} {timeframe.value} from {self.source.name}")

        if self.config.use_cache:
            self.cache.set(cache_key, df, self.config.cache_ttl_seconds)
        return df.copy()

    def _fetch_with_retry(self, fetch_func, *args, **kwargs) -> pd.DataFrame:
        """Execute fetch with exponential backoff retry."""
        last_error = None

        for attempt in range(self.config.max_retries):
            try:
                result = fetch_func(*args, **kwargs)
                self.metrics.last_fetch_time = datetime.now()
                return result
            except DataUnavailable:
                self.metrics.failed_requests += 1
                raise
            except Exception as e:
                last_error = e
                if attempt + 1 < self.config.max_retries:
                    delay = self.config.base_delay_seconds * (2 ** attempt)
                    logger.warning(f"Fetch attempt {attempt + 1} failed: {e}. Retrying in {delay}s")
                    self._sleep(delay)

        self.metrics.failed_requests += 1
        logger.error(f"All retry attempts failed: {last_error}")
        raise DataUnavailable(f"Data fetch failed after {self.config.max_retries} attempts: {last_error}")
