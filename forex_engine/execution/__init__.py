"""
Execution Module
================
"""
from .execution_engine import (
    ExecutionEngine,
    BrokerAdapter,
    MockBroker,
    Trade,
    TradeResult,
    TradeDirection,
    TradeStatus,
    ExitReason
)

__all__ = [
    'ExecutionEngine',
    'BrokerAdapter',
    'MockBroker',
    'Trade',
    'TradeResult',
    'TradeDirection',
    'TradeStatus',
    'ExitReason'
]
