"""
Self-Correction Module
======================
"""
from .self_correction import (
    SelfCorrectionController,
    ParameterHistory,
    REGIME_PRESETS
)

__all__ = [
    'SelfCorrectionController',
    'ParameterHistory',
    'REGIME_PRESETS'
]
