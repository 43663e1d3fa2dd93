"""
Adaptive Multi-Indicator Forex Engine
=====================================

A per-symbol trading-decision engine implementing:

FEATURES:
- RSI, MACD, moving-average and Bollinger Band votes fused into one weighted score
- Market regime detection (Trending, Ranging, Volatile) from ADX and normalized ATR
- Single-position lifecycle with percentage/ATR stop-loss and take-profit
- Rolling performance metrics and per-indicator accuracy
- Self-correction of live parameters from realised performance
- Offline optimizer: grid search, walk-forward validation, genetic search
- Correlation-aware indicator weighting

PIPELINE:
    ┌─────────┐
    │  TICKS  │  ← broker tick stream, aggregated into candles
    └────┬────┘
         ↓
    ┌──────────────┐
    │ INDICATORS   │  ← RSI, MACD, SMA, BB, ATR, ADX
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ ANALYSIS     │  ← regime, volatility, sentiment
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ SIGNAL       │  ← weighted composite vote
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ POSITION     │  ← SL/TP, entries, reversals (broker API)
    └────┬─────────┘
         ↓
    ┌──────────────┐
    │ PERFORMANCE  │  ← metrics, self-correction
    └──────────────┘

USAGE:
    # Paper trading on synthetic ticks
    forex-engine --mode paper --symbol EURUSD --timeframe 1h

    # Backtest / optimize
    forex-engine --mode backtest --days 90
    forex-engine --mode optimize --method walk_forward --metric sharpe_ratio

    # Programmatic usage
    from forex_engine import StrategyEngine, MockBroker, StrategyParameters

    engine = StrategyEngine(MockBroker(), StrategyParameters(symbol="EURUSD"))
    engine.initialize()
    engine.start()

MODULES:
    - data: Price points, ring buffer, candle aggregation, data sources
    - features: Technical indicators and the aligned indicator frame
    - analysis: Market condition classifier
    - alpha: Signal fusion and combination rules
    - risk: Position and trade lifecycle
    - execution: Broker adapter contract, paper broker, timeouts
    - monitoring: Performance tracking and reports
    - adaptation: Self-correction controller
    - optimizer: Backtest simulator and parameter search
"""

from .config import (
    SystemConfig,
    StrategyParameters,
    IndicatorWeights,
    Timeframe,
    TradingMode,
    OptimizationMethod,
    OptimizationMetric
)
from .exceptions import (
    EngineError,
    InsufficientData,
    InvalidParameters,
    BrokerExecutionFailure,
    DataGap,
    DataUnavailable,
    MalformedData,
    OptimizationCancelled
)
from .orchestrator import StrategyEngine, EngineSnapshot, main
from .data import DataManager, PricePoint, PriceTick
from .features import FeatureEngine, IndicatorSnapshot, TechnicalIndicators
from .analysis import MarketConditionClassifier, MarketAnalysis, MarketRegime
from .alpha import SignalFusion, CompositeSignal, CombinationRules
from .risk import PositionManager
from .execution import BrokerAdapter, MockBroker, ExecutionEngine, Trade, TradeDirection
from .monitoring import PerformanceTracker, PerformanceMetrics
from .adaptation import SelfCorrectionController
from .optimizer import StrategyOptimizer, OptimizationResult, BacktestSimulator

__version__ = "1.0.0"
__all__ = [
    # Main
    'StrategyEngine',
    'EngineSnapshot',
    'SystemConfig',
    'StrategyParameters',
    'IndicatorWeights',
    'Timeframe',
    'TradingMode',
    'OptimizationMethod',
    'OptimizationMetric',
    'main',

    # Errors
    'EngineError',
    'InsufficientData',
    'InvalidParameters',
    'BrokerExecutionFailure',
    'DataGap',
    'DataUnavailable',
    'MalformedData',
    'OptimizationCancelled',

    # Data
    'DataManager',
    'PricePoint',
    'PriceTick',

    # Features
    'FeatureEngine',
    'IndicatorSnapshot',
    'TechnicalIndicators',

    # Analysis
    'MarketConditionClassifier',
    'MarketAnalysis',
    'MarketRegime',

    # Alpha
    'SignalFusion',
    'CompositeSignal',
    'CombinationRules',

    # Risk
    'PositionManager',

    # Execution
    'BrokerAdapter',
    'MockBroker',
    'ExecutionEngine',
    'Trade',
    'TradeDirection',

    # Monitoring
    'PerformanceTracker',
    'PerformanceMetrics',

    # Adaptation
    'SelfCorrectionController',

    # Optimizer
    'StrategyOptimizer',
    'OptimizationResult',
    'BacktestSimulator'
]
