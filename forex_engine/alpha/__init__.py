"""
Signal Fusion Module
====================
"""
from .signal_fusion import (
    SignalFusion,
    SignalAction,
    IndicatorVotes,
    CompositeSignal,
    CombinationRules,
    ConfirmationRule,
    CONFIRMATION_CHECKS,
    rsi_vote,
    macd_vote,
    ma_vote,
    bb_vote
)

__all__ = [
    'SignalFusion',
    'SignalAction',
    'IndicatorVotes',
    'CompositeSignal',
    'CombinationRules',
    'ConfirmationRule',
    'CONFIRMATION_CHECKS',
    'rsi_vote',
    'macd_vote',
    'ma_vote',
    'bb_vote'
]
