from __future__ import annotations

import threading

import pytest

from forex_engine.analysis import (
    DEFAULT_ANALYSIS,
    MarketAnalysis,
    MarketRegime,
    MarketSentiment,
    VolatilityLevel,
)
from forex_engine.config import OptimizationMethod, OptimizationMetric, StrategyParameters, SystemConfig
from forex_engine.exceptions import DataUnavailable, InsufficientData, OptimizationCancelled
from forex_engine.optimizer import (
    BacktestResult,
    BacktestSimulator,
    CandidateEvaluator,
    GeneticSearch,
    ParameterRange,
    StrategyOptimizer,
    generate_combination_rules,
    grid_search,
    indicator_correlation_matrix,
    parameter_ranges,
    reduced_grid,
    symbol_correlations,
    walk_forward,
)


class RecordingSimulator:
    """Scores a candidate by its RSI period and records which bars it saw."""

    def __init__(self):
        self.seen = []

    def run(self, prices, params):
        self.seen.append((int(prices["timestamp"].iloc[0]), int(prices["timestamp"].iloc[-1])))
        return BacktestResult(profit_factor=float(params.rsi_period), total_trades=1)


def test_parameter_ranges_follow_market_condition() -> None:
    trending = parameter_ranges(MarketAnalysis(regime=MarketRegime.TRENDING, volatility=VolatilityLevel.HIGH))
    assert trending["rsi_period"].min == 12
    assert trending["take_profit_percent"].max == 5.0
    assert (trending["stop_loss_percent"].min, trending["stop_loss_percent"].max) == (1.5, 3.0)

    default = parameter_ranges(DEFAULT_ANALYSIS)
    assert default["rsi_period"].min == 8


def test_parameter_range_values() -> None:
    assert ParameterRange(8, 20, 2).values() == [8, 10, 12, 14, 16, 18, 20]
    assert ParameterRange(1.5, 2.5, 0.5).values() == [1.5, 2.0, 2.5]
    assert ParameterRange(8, 20, 2).is_integer
    assert not ParameterRange(0.5, 2.0, 0.5).is_integer


def test_reduced_grid_is_valid_and_unique() -> None:
    base = StrategyParameters()
    grid = reduced_grid(base, parameter_ranges())

    keys = [tuple(sorted(p.to_dict().items(), key=lambda kv: kv[0]))
            for p in grid]
    assert len(set(map(str, keys))) == len(grid)
    for params in grid:
        params.validate()
        assert type(params.rsi_period) is int
        assert type(params.fast_ma_period) is int
        assert params.weights == base.weights
    assert any(p.fast_ma_period == 15 and p.slow_ma_period == 20 for p in grid)
    assert not any(p.fast_ma_period >= p.slow_ma_period for p in grid)


def test_grid_search_picks_best_and_reports_progress(mock_prices) -> None:
    progress = []
    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR,
                                   progress=lambda done, total: progress.append((done, total)))
    outcome = grid_search(evaluator, mock_prices(100), StrategyParameters(), parameter_ranges())

    assert outcome.parameters.rsi_period == 20
    assert outcome.score == 20.0
    assert outcome.evaluated == evaluator.evaluated
    assert progress[-1] == (evaluator.evaluated, evaluator.evaluated)
    assert [done for done, _ in progress] == list(range(1, evaluator.evaluated + 1))


def test_parallel_grid_search_matches_sequential(mock_prices) -> None:
    prices = mock_prices(200)

    def run(parallel: bool):
        evaluator = CandidateEvaluator(BacktestSimulator(), OptimizationMetric.PROFIT_FACTOR,
                                       parallel=parallel, workers=2)
        return grid_search(evaluator, prices, StrategyParameters(), parameter_ranges()), evaluator.evaluated

    (sequential, seq_count), (parallel, par_count) = run(False), run(True)
    assert parallel.parameters == sequential.parameters
    assert parallel.score == sequential.score
    assert par_count == seq_count


def test_walk_forward_never_looks_ahead(mock_prices) -> None:
    prices = mock_prices(300)
    simulator = RecordingSimulator()
    evaluator = CandidateEvaluator(simulator, OptimizationMetric.PROFIT_FACTOR)
    grid_size = len(reduced_grid(StrategyParameters(), parameter_ranges()))

    outcome, reports = walk_forward(evaluator, prices, StrategyParameters(), parameter_ranges(), windows=3)

    assert [(r.in_sample, r.out_of_sample) for r in reports] == [((0, 100), (100, 200)), ((100, 200), (200, 300))]
    ts = [int(t) for t in prices["timestamp"]]
    # Window 1 fit, window 1 validation, window 2 fit, window 2 validation
    assert set(simulator.seen[:grid_size]) == {(ts[0], ts[99])}
    assert simulator.seen[grid_size] == (ts[100], ts[199])
    assert set(simulator.seen[grid_size + 1:2 * grid_size + 1]) == {(ts[100], ts[199])}
    assert simulator.seen[-1] == (ts[200], ts[299])
    assert outcome.evaluated == 2 * (grid_size + 1)
    assert outcome.score == 20.0


def test_walk_forward_ranges_see_only_in_sample_windows(mock_prices) -> None:
    prices = mock_prices(300)
    ts = [int(t) for t in prices["timestamp"]]
    seen = []

    def ranges_for(window):
        seen.append((int(window["timestamp"].iloc[0]), int(window["timestamp"].iloc[-1])))
        return parameter_ranges()

    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR)
    walk_forward(evaluator, prices, StrategyParameters(), ranges_for, windows=3)
    assert seen == [(ts[0], ts[99]), (ts[100], ts[199])]


def test_walk_forward_needs_two_windows(mock_prices) -> None:
    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR)
    with pytest.raises(ValueError):
        walk_forward(evaluator, mock_prices(100), StrategyParameters(), parameter_ranges(), windows=1)


def test_cancel_before_start(mock_prices) -> None:
    cancel = threading.Event()
    cancel.set()
    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR, cancel_event=cancel)

    with pytest.raises(OptimizationCancelled) as excinfo:
        grid_search(evaluator, mock_prices(100), StrategyParameters(), parameter_ranges())
    assert excinfo.value.evaluated == 0


def test_cancel_midway(mock_prices) -> None:
    cancel = threading.Event()

    def progress(done: int, total: int) -> None:
        if done == 3:
            cancel.set()

    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR,
                                   cancel_event=cancel, progress=progress)
    with pytest.raises(OptimizationCancelled) as excinfo:
        grid_search(evaluator, mock_prices(100), StrategyParameters(), parameter_ranges())
    assert excinfo.value.evaluated == 3


def test_genetic_repair_restores_ordering() -> None:
    genes = {
        "fast_ma_period": 20, "slow_ma_period": 10,
        "macd_fast": 16, "macd_slow": 16,
        "oversold_threshold": 30.0, "overbought_threshold": 70.0,
    }
    repaired = GeneticSearch.repair(genes)
    assert (repaired["fast_ma_period"], repaired["slow_ma_period"]) == (10, 20)
    assert (repaired["macd_fast"], repaired["macd_slow"]) == (15, 16)
    assert (repaired["oversold_threshold"], repaired["overbought_threshold"]) == (30.0, 70.0)


def test_genetic_individuals_are_valid() -> None:
    evaluator = CandidateEvaluator(RecordingSimulator(), OptimizationMetric.PROFIT_FACTOR)
    search = GeneticSearch(evaluator, parameter_ranges(), seed=3)
    base = StrategyParameters()
    for _ in range(50):
        params = search.build(base, search.mutate(search.random_genes()))
        params.validate()
        assert type(params.macd_slow) is int
        assert type(params.bb_deviation) is float


def test_genetic_search_is_reproducible(mock_prices) -> None:
    prices = mock_prices(200)

    def run():
        evaluator = CandidateEvaluator(BacktestSimulator(), OptimizationMetric.PROFIT_FACTOR)
        search = GeneticSearch(evaluator, parameter_ranges(), population_size=4, generations=1, seed=11)
        return search.run(prices, StrategyParameters()), evaluator.evaluated

    (first, evaluated), (second, _) = run(), run()
    assert first.parameters == second.parameters
    assert first.score == second.score
    assert evaluated == 8


def test_rules_for_trending_market() -> None:
    rules = generate_combination_rules(MarketAnalysis(regime=MarketRegime.TRENDING), {})
    assert rules.weights == pytest.approx({"rsi": 0.15, "macd": 0.35, "ma": 0.35, "bb": 0.15})
    assert (rules.buy_threshold, rules.sell_threshold) == (0.5, -0.5)
    assert [r.name for r in rules.confirmation_rules] == ["trend_confirmation"]


def test_rules_for_volatile_market() -> None:
    rules = generate_combination_rules(MarketAnalysis(regime=MarketRegime.VOLATILE, volatility=VolatilityLevel.HIGH), {})
    assert rules.weights == pytest.approx({"rsi": 0.15, "macd": 0.20, "ma": 0.20, "bb": 0.45})
    assert (rules.buy_threshold, rules.sell_threshold) == (0.6, -0.6)
    assert [r.name for r in rules.confirmation_rules] == ["volatility_confirmation"]


def test_rules_shift_weight_from_correlated_pairs() -> None:
    ranging = MarketAnalysis(regime=MarketRegime.RANGING)
    rules = generate_combination_rules(ranging, {"rsi_macd": 0.8})
    assert rules.weights == pytest.approx({"rsi": 0.30, "macd": 0.15, "ma": 0.15, "bb": 0.40})

    rules = generate_combination_rules(ranging, {
        "fastMA_slowMA": 0.95, "rsi_fastMA": 0.1, "macd_fastMA": 0.5, "fastMA_bbUpper": 0.9,
    })
    assert rules.weights == pytest.approx({"rsi": 0.40, "macd": 0.15, "ma": 0.10, "bb": 0.35})


def test_rules_keep_weight_floor() -> None:
    bearish = MarketAnalysis(regime=MarketRegime.TRENDING, volatility=VolatilityLevel.HIGH,
                             sentiment=MarketSentiment.BEARISH)
    rules = generate_combination_rules(bearish, {"rsi_macd": 0.9, "fastMA_slowMA": 0.95})
    assert min(rules.weights.values()) >= 0.1 - 1e-9
    assert sum(rules.weights.values()) == pytest.approx(1.0)


def test_rules_for_unknown_market() -> None:
    rules = generate_combination_rules(DEFAULT_ANALYSIS, {})
    assert rules.weights == pytest.approx({"rsi": 0.25, "macd": 0.25, "ma": 0.25, "bb": 0.25})
    assert rules.confirmation_rules == []


def test_indicator_correlation_matrix(mock_prices) -> None:
    matrix = indicator_correlation_matrix(mock_prices(300))
    assert len(matrix) == 15
    assert {"rsi_macd", "fastMA_slowMA", "bbUpper_bbLower"} <= set(matrix)
    assert all(-1.0 <= v <= 1.0 for v in matrix.values())


def test_symbol_correlations_skip_unavailable(mock_prices) -> None:
    prices = mock_prices(100)

    def fetch(symbol):
        if symbol == "GBPUSD":
            return prices
        raise DataUnavailable(f"no data for {symbol}")

    assert symbol_correlations("EURUSD", prices, fetch) == pytest.approx({"GBPUSD": 1.0})


def test_optimizer_end_to_end(mock_prices) -> None:
    optimizer = StrategyOptimizer()
    result = optimizer.optimize(mock_prices(300))

    result.optimized_parameters.validate()
    assert result.candidates_evaluated > 0
    assert len(result.correlation_matrix) == 15
    assert sum(result.combination_rules.weights.values()) == pytest.approx(1.0)
    assert optimizer.get_status()["is_optimizing"] is False
    assert optimizer.last_result is result
    assert "optimized_parameters" in result.to_dict()


def test_optimizer_without_data_source() -> None:
    optimizer = StrategyOptimizer()
    with pytest.raises(DataUnavailable):
        optimizer.optimize()
    assert optimizer.get_status()["error"] is not None
    assert not optimizer.is_optimizing


class WindowRecordingOptimizer(StrategyOptimizer):
    """Records the length of every window the search space is derived from."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.windows = []

    def _window_ranges(self, window):
        self.windows.append(len(window))
        return super()._window_ranges(window)


def walk_forward_config() -> SystemConfig:
    config = SystemConfig()
    config.optimizer.method = OptimizationMethod.WALK_FORWARD
    return config


def test_walk_forward_optimizer_classifies_in_sample_windows(mock_prices) -> None:
    optimizer = WindowRecordingOptimizer(config=walk_forward_config())
    result = optimizer.optimize(mock_prices(300))

    assert optimizer.windows == [100, 100]
    assert [w.in_sample for w in result.walk_forward_windows] == [(0, 100), (100, 200)]
    result.optimized_parameters.validate()


def test_optimizer_rejects_short_history(mock_prices) -> None:
    optimizer = StrategyOptimizer()
    with pytest.raises(InsufficientData) as excinfo:
        optimizer.optimize(mock_prices(50))
    assert (excinfo.value.required, excinfo.value.available) == (85, 50)
    assert optimizer.get_status()["error"] is not None

    # Every walk-forward window needs a full lookback
    with pytest.raises(InsufficientData):
        StrategyOptimizer(config=walk_forward_config()).optimize(mock_prices(200))
