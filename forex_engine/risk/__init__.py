"""
Risk Module
===========
"""
from .position_manager import (
    PositionManager,
    PositionState,
    PositionUpdate,
    compute_stop_levels,
    atr_multiplier
)

__all__ = [
    'PositionManager',
    'PositionState',
    'PositionUpdate',
    'compute_stop_levels',
    'atr_multiplier'
]
