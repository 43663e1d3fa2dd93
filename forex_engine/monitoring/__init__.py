"""
Monitoring Module
=================
"""
from .performance_tracker import (
    PerformanceTracker,
    PerformanceMetrics,
    IndicatorAccuracy,
    compute_metrics,
    trade_outcome
)

__all__ = [
    'PerformanceTracker',
    'PerformanceMetrics',
    'IndicatorAccuracy',
    'compute_metrics',
    'trade_outcome'
]
