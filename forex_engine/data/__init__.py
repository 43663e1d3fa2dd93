"""
Data Module
===========
"""
from .market_data import (
    PricePoint,
    PriceTick,
    PriceBuffer,
    CandleAggregator,
    CandleUpdate,
    PRICE_COLUMNS,
    points_to_frame,
    frame_to_points,
    validate_price_series
)
from .data_manager import (
    DataManager,
    DataSource,
    YFinanceSource,
    MockDataSource,
    DataCache,
    datetime_to_ms,
    ms_to_datetime
)

__all__ = [
    'PricePoint',
    'PriceTick',
    'PriceBuffer',
    'CandleAggregator',
    'CandleUpdate',
    'PRICE_COLUMNS',
    'points_to_frame',
    'frame_to_points',
    'validate_price_series',
    'DataManager',
    'DataSource',
    'YFinanceSource',
    'MockDataSource',
    'DataCache',
    'datetime_to_ms',
    'ms_to_datetime'
]
