"""
Optimizer Module
================
"""
from .backtester import (
    BacktestSimulator,
    BacktestResult,
    SimulatedBroker,
    sharpe_ratio,
    max_drawdown
)
from .search import (
    ParameterRange,
    CandidateEvaluator,
    GeneticSearch,
    SearchOutcome,
    WindowReport,
    parameter_ranges,
    reduced_grid,
    grid_search,
    walk_forward
)
from .correlation import (
    indicator_correlation_matrix,
    generate_combination_rules,
    symbol_correlations,
    related_symbols,
    RELATED_SYMBOLS
)
from .strategy_optimizer import (
    StrategyOptimizer,
    OptimizationResult
)

__all__ = [
    'BacktestSimulator',
    'BacktestResult',
    'SimulatedBroker',
    'sharpe_ratio',
    'max_drawdown',
    'ParameterRange',
    'CandidateEvaluator',
    'GeneticSearch',
    'SearchOutcome',
    'WindowReport',
    'parameter_ranges',
    'reduced_grid',
    'grid_search',
    'walk_forward',
    'indicator_correlation_matrix',
    'generate_combination_rules',
    'symbol_correlations',
    'related_symbols',
    'RELATED_SYMBOLS',
    'StrategyOptimizer',
    'OptimizationResult'
]
