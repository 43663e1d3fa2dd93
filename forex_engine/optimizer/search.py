"""
Parameter Search Module
=======================
Grid search, walk-forward validation and genetic search over
StrategyParameters, all scored by the backtest simulator.

Candidates are independent, so evaluation can fan out over a
multiprocessing pool; each worker gets its own copy of the price frame
and returns only the BacktestResult.
"""

import pandas as pd
from dataclasses import dataclass
from functools import partial
from typing import Callable, Dict, List, Optional, Tuple, Union
import logging
import multiprocessing
import random
import threading

from ..analysis import MarketAnalysis, MarketRegime, VolatilityLevel
from ..config import OptimizationMetric, StrategyParameters
from ..exceptions import InvalidParameters, OptimizationCancelled
from .backtester import BacktestResult, BacktestSimulator

logger = logging.getLogger(__name__)

Number = Union[int, float]
ProgressCallback = Callable[[int, int], None]

# Fields the grid varies one at a time
GRID_FIELDS = ('rsi_period', 'overbought_threshold', 'oversold_threshold', 'fast_ma_period', 'slow_ma_period')
FLOAT_FIELDS = ('overbought_threshold', 'oversold_threshold', 'bb_deviation',
                'stop_loss_percent', 'take_profit_percent')


@dataclass
class ParameterRange:
    """Inclusive min/max with step. Integer bounds mean an integer parameter."""
    min: Number
    max: Number
    step: Number

    @property
    def is_integer(self) -> bool:
        return isinstance(self.min, int) and isinstance(self.max, int)

    def values(self) -> List[Number]:
        out = []
        value = self.min
        while value <= self.max + 1e-9:
            out.append(value if self.is_integer else round(value, 4))
            value += self.step
        return out

    def sample(self, rng: random.Random) -> Number:
        if self.is_integer:
            return rng.randint(self.min, self.max)
        return round(rng.uniform(self.min, self.max), 2)


def parameter_ranges(analysis: Optional[MarketAnalysis] = None) -> Dict[str, ParameterRange]:
    """Search space, narrowed for the current market condition."""
    ranges = {
        'rsi_period': ParameterRange(8, 20, 2),
        'overbought_threshold': ParameterRange(65, 80, 5),
        'oversold_threshold': ParameterRange(20, 35, 5),
        'fast_ma_period': ParameterRange(5, 15, 2),
        'slow_ma_period': ParameterRange(15, 30, 5),
        'macd_fast': ParameterRange(8, 16, 2),
        'macd_slow': ParameterRange(20, 32, 4),
        'macd_signal': ParameterRange(7, 12, 1),
        'bb_period': ParameterRange(15, 25, 5),
        'bb_deviation': ParameterRange(1.5, 2.5, 0.5),
        'atr_period': ParameterRange(10, 20, 2),
        'stop_loss_percent': ParameterRange(0.5, 2.0, 0.5),
        'take_profit_percent': ParameterRange(1.0, 4.0, 1.0),
    }
    if analysis is None or analysis.is_default:
        return ranges

    if analysis.regime == MarketRegime.TRENDING:
        ranges['rsi_period'].min = 12
        ranges['fast_ma_period'].min = 8
        ranges['slow_ma_period'].min = 20
        ranges['take_profit_percent'].max = 5.0
    elif analysis.regime == MarketRegime.RANGING:
        ranges['rsi_period'].max = 14
        ranges['bb_period'].min = 10
        ranges['take_profit_percent'].min = 0.8
        ranges['take_profit_percent'].max = 2.0
    elif analysis.regime == MarketRegime.VOLATILE:
        ranges['bb_deviation'].min = 2.0
        ranges['bb_deviation'].max = 3.0
        ranges['stop_loss_percent'].min = 1.0
        ranges['stop_loss_percent'].max = 3.0

    if analysis.volatility == VolatilityLevel.HIGH:
        ranges['stop_loss_percent'].min = 1.5
        ranges['stop_loss_percent'].max = 3.0
    elif analysis.volatility == VolatilityLevel.LOW:
        ranges['stop_loss_percent'].min = 0.5
        ranges['stop_loss_percent'].max = 1.5

    return ranges


RangeFactory = Callable[[pd.DataFrame], Dict[str, ParameterRange]]


def _coerce(name: str, value: Number) -> Number:
    return float(value) if name in FLOAT_FIELDS else int(value)


def _key(params: StrategyParameters) -> tuple:
    return tuple(sorted((k, v) for k, v in params.to_dict().items() if k != 'weights'))


def _is_valid(params: StrategyParameters, weight_floor: float) -> bool:
    try:
        params.validate(weight_floor)
    except InvalidParameters:
        return False
    return True


def reduced_grid(base: StrategyParameters, ranges: Dict[str, ParameterRange],
                 weight_floor: float = 0.1) -> List[StrategyParameters]:
    """
    Key-parameter grid around `base`.

    One-at-a-time variations of GRID_FIELDS, then every
    overbought x oversold pair and every fast x slow MA pair. Invalid and
    duplicate candidates are dropped; order is preserved.
    """
    candidates: List[StrategyParameters] = []

    for name in GRID_FIELDS:
        for value in ranges[name].values():
            candidates.append(base.replace(**{name: _coerce(name, value)}))

    for overbought in ranges['overbought_threshold'].values():
        for oversold in ranges['oversold_threshold'].values():
            candidates.append(base.replace(overbought_threshold=float(overbought),
                                           oversold_threshold=float(oversold)))

    for fast in ranges['fast_ma_period'].values():
        for slow in ranges['slow_ma_period'].values():
            candidates.append(base.replace(fast_ma_period=int(fast), slow_ma_period=int(slow)))

    seen = set()
    grid = []
    for params in candidates:
        key = _key(params)
        if key in seen or not _is_valid(params, weight_floor):
            continue
        seen.add(key)
        grid.append(params)
    return grid


def _run_backtest(params: StrategyParameters, prices: pd.DataFrame,
                  simulator: BacktestSimulator) -> BacktestResult:
    """Top-level so a multiprocessing pool can pickle it."""
    return simulator.run(prices, params)


class CandidateEvaluator:
    """
    Scores parameter sets by backtest.

    Cancellation is checked between candidates; progress is reported as
    (evaluated so far, expected total).
    """

    def __init__(self, simulator: BacktestSimulator, metric: OptimizationMetric,
                 parallel: bool = False, workers: Optional[int] = None,
                 cancel_event: Optional[threading.Event] = None,
                 progress: Optional[ProgressCallback] = None):
        self.simulator = simulator
        self.metric = metric
        self.parallel = parallel
        self.workers = workers or min(multiprocessing.cpu_count(), 4)
        self.cancel_event = cancel_event
        self.progress = progress

        self.evaluated = 0
        self.total = 0

    def expect(self, count: int):
        """Add to the expected total for progress reporting."""
        self.total += count

    def score(self, result: BacktestResult) -> float:
        return result.metric(self.metric)

    def _check_cancel(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            logger.warning(f"Optimization cancelled after {self.evaluated} evaluations")
            raise OptimizationCancelled(evaluated=self.evaluated)

    def _advance(self):
        self.evaluated += 1
        if self.progress is not None:
            try:
                self.progress(self.evaluated, max(self.total, self.evaluated))
            except Exception as e:
                logger.error(f"Progress callback error: {e}")

    def evaluate(self, candidates: List[StrategyParameters], prices: pd.DataFrame) -> List[BacktestResult]:
        """Backtest each candidate on `prices`, preserving order."""
        if self.parallel and len(candidates) > 1:
            return self._parallel(candidates, prices)
        return self._sequential(candidates, prices)

    def _sequential(self, candidates: List[StrategyParameters], prices: pd.DataFrame) -> List[BacktestResult]:
        results = []
        for params in candidates:
            self._check_cancel()
            results.append(self.simulator.run(prices, params))
            self._advance()
        return results

    def _parallel(self, candidates: List[StrategyParameters], prices: pd.DataFrame) -> List[BacktestResult]:
        self._check_cancel()
        eval_func = partial(_run_backtest, prices=prices, simulator=self.simulator)
        results = []
        with multiprocessing.Pool(processes=self.workers) as pool:
            for result in pool.imap(eval_func, candidates):
                results.append(result)
                self._advance()
                if len(results) < len(candidates):
                    self._check_cancel()
        return results


@dataclass
class SearchOutcome:
    """Best candidate of a search plus how many candidates were scored."""
    parameters: StrategyParameters
    result: BacktestResult
    score: float
    evaluated: int


def _best(candidates: List[StrategyParameters], results: List[BacktestResult],
          evaluator: CandidateEvaluator) -> Tuple[int, float]:
    """Index and score of the best result; ties keep the earliest."""
    best_index, best_score = 0, float('-inf')
    for i, result in enumerate(results):
        score = evaluator.score(result)
        if score > best_score:
            best_index, best_score = i, score
    return best_index, best_score


def grid_search(evaluator: CandidateEvaluator, prices: pd.DataFrame, base: StrategyParameters,
                ranges: Dict[str, ParameterRange], weight_floor: float = 0.1,
                count_progress: bool = True) -> SearchOutcome:
    """Best reduced-grid candidate on `prices`."""
    grid = reduced_grid(base, ranges, weight_floor)
    if count_progress:
        evaluator.expect(len(grid))
    logger.info(f"Grid search: testing {len(grid)} parameter combinations on {len(prices)} bars")

    results = evaluator.evaluate(grid, prices)
    index, score = _best(grid, results, evaluator)
    logger.info(f"Grid search best {evaluator.metric.value}: {score:.4f}")
    return SearchOutcome(grid[index], results[index], score, len(grid))


@dataclass
class WindowReport:
    """In-sample fit and out-of-sample check for one walk-forward step."""
    window: int
    in_sample: Tuple[int, int]
    out_of_sample: Tuple[int, int]
    parameters: StrategyParameters
    in_sample_score: float
    out_of_sample_score: float
    out_of_sample_trades: int

    def to_dict(self) -> dict:
        return {
            'window': self.window,
            'in_sample': list(self.in_sample),
            'out_of_sample': list(self.out_of_sample),
            'parameters': self.parameters.to_dict(),
            'in_sample_score': self.in_sample_score,
            'out_of_sample_score': self.out_of_sample_score,
            'out_of_sample_trades': self.out_of_sample_trades
        }


def walk_forward(evaluator: CandidateEvaluator, prices: pd.DataFrame, base: StrategyParameters,
                 ranges: Union[Dict[str, ParameterRange], RangeFactory], windows: int = 3,
                 weight_floor: float = 0.1) -> Tuple[SearchOutcome, List[WindowReport]]:
    """
    Sequential in-sample/out-of-sample optimization.

    The series is cut into `windows` equal windows; window i is
    grid-searched and the winner is scored on window i+1. Each grid
    search only ever sees its own window. The candidate with the best
    out-of-sample score is kept.

    `ranges` may be a function of the in-sample window, so any narrowing
    of the search space is derived from that window alone.
    """
    if windows < 2:
        raise ValueError(f"Walk-forward needs at least 2 windows, got {windows}")

    size = len(prices) // windows

    reports: List[WindowReport] = []
    best: Optional[SearchOutcome] = None
    evaluated = 0

    for i in range(windows - 1):
        in_start, in_end = i * size, (i + 1) * size
        out_start, out_end = in_end, (i + 2) * size
        in_sample = prices.iloc[in_start:in_end].reset_index(drop=True)
        out_of_sample = prices.iloc[out_start:out_end].reset_index(drop=True)

        window_ranges = ranges(in_sample) if callable(ranges) else ranges
        fitted = grid_search(evaluator, in_sample, base, window_ranges, weight_floor)
        evaluator.expect(1)
        validation = evaluator.evaluate([fitted.parameters], out_of_sample)[0]
        oos_score = evaluator.score(validation)
        evaluated += fitted.evaluated + 1

        reports.append(WindowReport(
            window=i,
            in_sample=(in_start, in_end),
            out_of_sample=(out_start, out_end),
            parameters=fitted.parameters,
            in_sample_score=fitted.score,
            out_of_sample_score=oos_score,
            out_of_sample_trades=validation.total_trades
        ))
        logger.info(
            f"Walk-forward window {i + 1}/{windows - 1}: in-sample {fitted.score:.4f}, "
            f"out-of-sample {oos_score:.4f}"
        )

        if best is None or oos_score > best.score:
            best = SearchOutcome(fitted.parameters, validation, oos_score, 0)

    best.evaluated = evaluated
    return best, reports


class GeneticSearch:
    """
    Genetic search over the full parameter space.

    Tournament selection, per-field coin-flip crossover, per-field
    mutation and elitism; seeded so a run can be reproduced.
    """

    def __init__(self, evaluator: CandidateEvaluator, ranges: Dict[str, ParameterRange],
                 population_size: int = 20, generations: int = 5, mutation_rate: float = 0.1,
                 elite_count: int = 2, tournament_size: int = 3, seed: Optional[int] = 42,
                 weight_floor: float = 0.1):
        self.evaluator = evaluator
        self.ranges = ranges
        self.population_size = population_size
        self.generations = generations
        self.mutation_rate = mutation_rate
        self.elite_count = min(elite_count, population_size)
        self.tournament_size = tournament_size
        self.weight_floor = weight_floor
        self.rng = random.Random(seed)

    def random_genes(self) -> Dict[str, Number]:
        return {name: r.sample(self.rng) for name, r in self.ranges.items()}

    def crossover(self, first: Dict[str, Number], second: Dict[str, Number]) -> Dict[str, Number]:
        return {name: first[name] if self.rng.random() < 0.5 else second[name] for name in first}

    def mutate(self, genes: Dict[str, Number]) -> Dict[str, Number]:
        genes = dict(genes)
        for name, r in self.ranges.items():
            if self.rng.random() < self.mutation_rate:
                genes[name] = r.sample(self.rng)
        return genes

    @staticmethod
    def repair(genes: Dict[str, Number]) -> Dict[str, Number]:
        """Restore ordering invariants by swapping or spreading equal values."""
        genes = dict(genes)
        for low, high in (('fast_ma_period', 'slow_ma_period'),
                          ('macd_fast', 'macd_slow'),
                          ('oversold_threshold', 'overbought_threshold')):
            if genes[low] > genes[high]:
                genes[low], genes[high] = genes[high], genes[low]
            if genes[low] == genes[high]:
                if genes[low] > 1:
                    genes[low] -= 1
                else:
                    genes[high] += 1
        return genes

    def build(self, base: StrategyParameters, genes: Dict[str, Number]) -> StrategyParameters:
        genes = self.repair(genes)
        params = base.replace(**{name: _coerce(name, value) for name, value in genes.items()})
        if _is_valid(params, self.weight_floor):
            return params
        logger.debug(f"Unrepairable individual {genes}; using base parameters")
        return base

    def _tournament(self, ranked: List[Tuple[Dict[str, Number], float]]) -> Dict[str, Number]:
        entrants = [ranked[self.rng.randrange(len(ranked))] for _ in range(self.tournament_size)]
        return max(entrants, key=lambda item: item[1])[0]

    def _score(self, base: StrategyParameters, population: List[Dict[str, Number]],
               prices: pd.DataFrame) -> List[Tuple[Dict[str, Number], float, StrategyParameters, BacktestResult]]:
        candidates = [self.build(base, genes) for genes in population]
        results = self.evaluator.evaluate(candidates, prices)
        scored = [(genes, self.evaluator.score(result), params, result)
                  for genes, params, result in zip(population, candidates, results)]
        # Stable sort keeps the earlier individual on ties
        scored.sort(key=lambda item: item[1], reverse=True)
        return scored

    def run(self, prices: pd.DataFrame, base: StrategyParameters) -> SearchOutcome:
        self.evaluator.expect(self.population_size * (self.generations + 1))
        logger.info(
            f"Genetic search: population {self.population_size}, generations {self.generations}, "
            f"mutation {self.mutation_rate}"
        )

        population = [self.random_genes() for _ in range(self.population_size)]
        scored = self._score(base, population, prices)

        for generation in range(self.generations):
            ranked = [(genes, score) for genes, score, _, _ in scored]
            next_population = [genes for genes, _ in ranked[:self.elite_count]]

            while len(next_population) < self.population_size:
                child = self.crossover(self._tournament(ranked), self._tournament(ranked))
                next_population.append(self.mutate(child))

            scored = self._score(base, next_population, prices)
            logger.info(f"Generation {generation + 1}/{self.generations} best fitness: {scored[0][1]:.4f}")

        _, score, params, result = scored[0]
        return SearchOutcome(params, result, score, self.population_size * (self.generations + 1))
