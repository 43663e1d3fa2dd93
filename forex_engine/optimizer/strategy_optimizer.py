"""
Strategy Optimizer
==================
Offline search for strategy parameters over historical data.

Pipeline:
1. Load history (given, or fetched through the broker adapter)
2. Classify the market (per in-sample window for walk-forward)
3. Indicator correlation matrix
4. Search (grid, walk-forward or genetic) scored by backtest
5. Correlation-aware combination rules
"""

import pandas as pd
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import logging
import threading
import time

from ..analysis import MarketAnalysis, MarketConditionClassifier
from ..alpha import CombinationRules
from ..config import ExecutionConfig, OptimizationMethod, StrategyParameters
from ..data import validate_price_series
from ..exceptions import DataUnavailable, InsufficientData, OptimizationCancelled
from ..execution import BrokerAdapter, ExecutionEngine
from ..features import FeatureEngine
from .backtester import BacktestResult, BacktestSimulator
from .correlation import generate_combination_rules, indicator_correlation_matrix, symbol_correlations
from .search import (
    CandidateEvaluator,
    GeneticSearch,
    ParameterRange,
    ProgressCallback,
    WindowReport,
    grid_search,
    parameter_ranges,
    walk_forward
)

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000


@dataclass
class OptimizationResult:
    """Everything one optimization run produced."""
    optimized_parameters: StrategyParameters
    market_analysis: MarketAnalysis
    correlation_matrix: Dict[str, float]
    combination_rules: CombinationRules
    method: OptimizationMethod
    metric: str
    best_result: BacktestResult
    candidates_evaluated: int = 0
    walk_forward_windows: List[WindowReport] = field(default_factory=list)
    symbol_correlations: Dict[str, float] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            'optimized_parameters': self.optimized_parameters.to_dict(),
            'market_analysis': self.market_analysis.to_dict(),
            'correlation_matrix': dict(self.correlation_matrix),
            'combination_rules': self.combination_rules.to_dict(),
            'method': self.method.value,
            'metric': self.metric,
            'best_result': self.best_result.to_dict(),
            'candidates_evaluated': self.candidates_evaluated,
            'walk_forward_windows': [w.to_dict() for w in self.walk_forward_windows],
            'symbol_correlations': dict(self.symbol_correlations)
        }


class StrategyOptimizer:
    """
    Batch optimizer for one symbol.

    Responsibilities:
    - Fetch and validate historical data
    - Run the configured search method with cancellation and progress
    - Derive combination rules from market analysis and correlations
    - Track optimization status
    """

    def __init__(self, broker: Optional[BrokerAdapter] = None,
                 parameters: Optional[StrategyParameters] = None, config=None):
        from ..config import SystemConfig
        self.system = config or SystemConfig()
        self.config = self.system.optimizer
        self.base = parameters or self.system.parameters
        self.broker = broker

        self.features = FeatureEngine(self.system.analysis)
        self.classifier = MarketConditionClassifier(self.system.analysis)
        self.simulator = BacktestSimulator(
            self.config, self.system.analysis, self.system.signal, self.system.risk
        )

        self.is_optimizing = False
        self.last_optimization_time: Optional[float] = None
        self.last_result: Optional[OptimizationResult] = None
        self.error: Optional[str] = None
        self._lock = threading.Lock()

    def _execution(self) -> ExecutionEngine:
        if self.broker is None:
            raise DataUnavailable("No broker adapter to load optimization history from")
        return ExecutionEngine(self.broker, ExecutionConfig(broker_timeout_seconds=None))

    def _history_range(self):
        end_ms = int(time.time() * 1000)
        return end_ms - self.config.history_days * DAY_MS, end_ms

    def load_history(self, symbol: Optional[str] = None) -> pd.DataFrame:
        """Fetch `history_days` of candles through the broker adapter."""
        symbol = symbol or self.base.symbol
        start_ms, end_ms = self._history_range()
        prices = self._execution().fetch_price_history(symbol, self.base.timeframe, start_ms, end_ms)
        logger.info(f"Loaded {len(prices)} historical price points for optimization of {symbol}")
        return validate_price_series(prices)

    def _window_ranges(self, window: pd.DataFrame) -> Dict[str, ParameterRange]:
        """Search space from the market condition of one in-sample window."""
        frame = self.features.compute_frame(window, self.base)
        analysis = self.classifier.classify(window, frame, self.base.atr_period)
        logger.debug(f"In-sample window of {len(window)} bars classified {analysis.regime.value}")
        return parameter_ranges(analysis)

    def _check_length(self, prices: pd.DataFrame):
        cfg = self.config
        windows = cfg.walk_forward_windows if cfg.method == OptimizationMethod.WALK_FORWARD else 1
        required = self.base.lookback * windows
        if len(prices) < required:
            raise InsufficientData(
                f"{cfg.method.value} optimization needs {required} bars, got {len(prices)}",
                required=required, available=len(prices)
            )

    def optimize(self, prices: Optional[pd.DataFrame] = None,
                 cancel_event: Optional[threading.Event] = None,
                 progress: Optional[ProgressCallback] = None) -> OptimizationResult:
        """Run the configured optimization. Raises OptimizationCancelled if cancelled."""
        with self._lock:
            if self.is_optimizing:
                raise RuntimeError("Optimization already running")
            self.is_optimizing = True
            self.error = None

        try:
            result = self._optimize(prices, cancel_event, progress)
        except OptimizationCancelled as e:
            self.error = str(e)
            raise
        except Exception as e:
            self.error = f"Optimization failed: {e}"
            logger.error(self.error)
            raise
        finally:
            self.is_optimizing = False

        self.last_result = result
        self.last_optimization_time = time.time()
        return result

    def _optimize(self, prices, cancel_event, progress) -> OptimizationResult:
        cfg = self.config
        base = self.base
        floor = self.system.adaptation.weight_floor

        # 1. Data
        prices = self.load_history() if prices is None else validate_price_series(prices)
        self._check_length(prices)
        logger.info(
            f"Starting {cfg.method.value} optimization for {base.symbol} on {len(prices)} bars "
            f"(metric {cfg.metric.value})"
        )

        # 2. Market condition
        frame = self.features.compute_frame(prices, base)
        analysis = self.classifier.classify(prices, frame, base.atr_period)

        # 3. Correlations
        correlations = indicator_correlation_matrix(prices, base, self.features)
        related = {}
        if cfg.include_related_symbols and self.broker is not None:
            execution = self._execution()
            start_ms, end_ms = self._history_range()
            related = symbol_correlations(
                base.symbol, prices,
                lambda other: execution.fetch_price_history(other, base.timeframe, start_ms, end_ms)
            )

        # 4. Search
        ranges = parameter_ranges(analysis)
        evaluator = CandidateEvaluator(
            self.simulator, cfg.metric, cfg.parallel, cfg.workers, cancel_event, progress
        )
        windows: List[WindowReport] = []

        if cfg.method == OptimizationMethod.WALK_FORWARD:
            outcome, windows = walk_forward(
                evaluator, prices, base, self._window_ranges, cfg.walk_forward_windows, floor
            )
        elif cfg.method == OptimizationMethod.GENETIC:
            outcome = GeneticSearch(
                evaluator, ranges,
                population_size=cfg.population_size,
                generations=cfg.generations,
                mutation_rate=cfg.mutation_rate,
                elite_count=cfg.elite_count,
                tournament_size=cfg.tournament_size,
                seed=cfg.seed,
                weight_floor=floor
            ).run(prices, base)
        else:
            outcome = grid_search(evaluator, prices, base, ranges, floor)

        # 5. Rules
        rules = generate_combination_rules(
            analysis, correlations, floor,
            cfg.rsi_macd_correlation_threshold, cfg.ma_correlation_threshold
        )

        logger.info(
            f"Optimization completed: {evaluator.evaluated} candidates, best "
            f"{cfg.metric.value} {outcome.score:.4f}"
        )
        return OptimizationResult(
            optimized_parameters=outcome.parameters,
            market_analysis=analysis,
            correlation_matrix=correlations,
            combination_rules=rules,
            method=cfg.method,
            metric=cfg.metric.value,
            best_result=outcome.result,
            candidates_evaluated=evaluator.evaluated,
            walk_forward_windows=windows,
            symbol_correlations=related
        )

    def get_status(self) -> Dict[str, Any]:
        return {
            'is_optimizing': self.is_optimizing,
            'last_optimization_time': self.last_optimization_time,
            'error': self.error,
            'method': self.config.method.value,
            'metric': self.config.metric.value,
            'symbol': self.base.symbol
        }
