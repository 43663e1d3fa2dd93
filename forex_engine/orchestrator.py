"""
Strategy Engine Orchestrator
============================
Per-symbol stateful engine driving the live decision pipeline:
    TICK → CANDLE → INDICATORS → MARKET ANALYSIS → SIGNAL FUSION → POSITION → PERFORMANCE → SELF-CORRECTION

Core principles enforced:
- One tick at a time per symbol (ticks are serialized under the engine lock)
- Parameters change atomically and only after validation
- Broker failures are outcomes, never crashes
- Insufficient data degrades to explicit "not ready" state
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional
import logging
import threading
import time

from .adaptation import ParameterHistory, SelfCorrectionController
from .alpha import CombinationRules, CompositeSignal, SignalFusion
from .analysis import DEFAULT_ANALYSIS, MarketAnalysis, MarketConditionClassifier
from .config import StrategyParameters, SystemConfig, TradingMode
from .data import (
    CandleAggregator,
    CandleUpdate,
    PriceBuffer,
    PriceTick,
    frame_to_points,
    validate_price_series
)
from .exceptions import DataGap, DataUnavailable, EngineError, InvalidParameters
from .execution import BrokerAdapter, ExecutionEngine, ExitReason, Trade
from .features import FeatureEngine, IndicatorSnapshot
from .monitoring import PerformanceMetrics, PerformanceTracker
from .risk import PositionManager

logger = logging.getLogger(__name__)

DAY_MS = 24 * 60 * 60 * 1000

# Parameters that need the indicator frame recomputed when they change
INDICATOR_FIELDS = (
    'rsi_period', 'fast_ma_period', 'slow_ma_period', 'macd_fast', 'macd_slow',
    'macd_signal', 'bb_period', 'bb_deviation', 'atr_period'
)


@dataclass
class EngineSnapshot:
    """Read-only view pushed to subscribers after every processed tick."""
    symbol: str
    timestamp: Optional[int]
    price: Optional[float]
    indicators: IndicatorSnapshot
    signal: Optional[CompositeSignal]
    analysis: MarketAnalysis
    metrics: PerformanceMetrics
    parameters: StrategyParameters
    open_trade: Optional[Trade]
    is_running: bool
    data_gap: bool

    def to_dict(self) -> dict:
        return {
            'symbol': self.symbol,
            'timestamp': self.timestamp,
            'price': self.price,
            'indicators': self.indicators.to_dict(),
            'signal': self.signal.to_dict() if self.signal else None,
            'analysis': self.analysis.to_dict(),
            'metrics': self.metrics.to_dict(),
            'parameters': self.parameters.to_dict(),
            'open_trade': self.open_trade.to_dict() if self.open_trade else None,
            'is_running': self.is_running,
            'data_gap': self.data_gap
        }


class StrategyEngine:
    """
    Adaptive multi-indicator engine for one symbol.

    Coordinates the live pipeline:
    1. CANDLES: aggregate ticks into the rolling price buffer
    2. INDICATORS: recompute the indicator frame
    3. ANALYSIS: classify the market (throttled)
    4. SIGNAL: fuse indicator votes into BUY / SELL / HOLD
    5. POSITION: stop-loss / take-profit, entries and reversals
    6. PERFORMANCE: metrics on every close
    7. SELF-CORRECTION: periodic parameter re-tuning
    """

    def __init__(self, broker: BrokerAdapter, parameters: Optional[StrategyParameters] = None,
                 config: Optional[SystemConfig] = None):
        self.config = config or SystemConfig()
        self.weight_floor = self.config.adaptation.weight_floor
        self.parameters = (parameters or self.config.parameters).validate(self.weight_floor)
        self.symbol = self.parameters.symbol
        self.timeframe = self.parameters.timeframe

        # Components
        self.execution = ExecutionEngine(broker, self.config.execution)
        self.features = FeatureEngine(self.config.analysis)
        self.classifier = MarketConditionClassifier(self.config.analysis)
        self.fusion = SignalFusion(self.config.signal)
        self.positions = PositionManager(self.execution, self.symbol, self.config.risk)
        self.tracker = PerformanceTracker(self.config.monitoring)
        self.controller = SelfCorrectionController(self.config.adaptation)
        self.parameter_history = ParameterHistory(self.config.adaptation.parameter_history_size)

        self.buffer = PriceBuffer(self._buffer_capacity())
        self.aggregator = CandleAggregator(self.buffer, self.timeframe)

        # State
        self.initialized = False
        self.is_running = False
        self.data_gap: Optional[DataGap] = None
        self.error: Optional[str] = None
        self.indicators = IndicatorSnapshot()
        self.analysis: MarketAnalysis = DEFAULT_ANALYSIS
        self.last_signal: Optional[CompositeSignal] = None
        self.last_analysis_time: Optional[int] = None
        self.last_acted_candle: Optional[int] = None
        self.last_tick_time: Optional[int] = None

        self._lock = threading.RLock()
        self._subscribers: List[Callable[[EngineSnapshot], None]] = []
        self._stop_event = threading.Event()
        self._timer: Optional[threading.Thread] = None

        self.positions.on_trade_closed(self._on_trade_closed)

        logger.info(f"StrategyEngine created for {self.symbol} {self.timeframe.value}")

    def _buffer_capacity(self) -> int:
        return max(self.parameters.buffer_size, self.config.analysis.sentiment_slow_period + 1)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self, history=None) -> bool:
        """
        Load history, compute indicators and analysis, seed performance,
        and subscribe to ticks.

        Malformed or missing history is fatal: the error is recorded and
        re-raised.
        """
        logger.info(f"Initializing strategy engine for {self.symbol}...")

        with self._lock:
            try:
                if history is None:
                    end_ms = int(time.time() * 1000)
                    start_ms = end_ms - self.config.data.history_days * DAY_MS
                    history = self.execution.fetch_price_history(self.symbol, self.timeframe, start_ms, end_ms)

                prices = validate_price_series(history)
                if prices.empty:
                    raise DataUnavailable(f"No price history for {self.symbol}")

                self.buffer = PriceBuffer(self._buffer_capacity(), frame_to_points(prices))
                self.aggregator = CandleAggregator(self.buffer, self.timeframe)

                last_ts = int(prices['timestamp'].iloc[-1])
                self._recompute(last_ts, refresh_analysis=True)
            except EngineError as e:
                self.error = str(e)
                logger.error(f"Failed to initialize strategy engine: {e}")
                raise

            self._load_trade_history()
            self.controller.reset_clock(last_ts, self.tracker.closed_count)

            if self.config.data.subscribe_ticks:
                self.execution.subscribe(self.symbol, self.on_tick)

            self.initialized = True
            self.error = None

        if self.config.adaptation.background_timer:
            self._start_timer()

        logger.info(
            f"Strategy engine initialized with {len(self.buffer)} candles, "
            f"regime {self.analysis.regime.value}"
        )
        return True

    def _load_trade_history(self):
        try:
            trades = self.execution.fetch_trade_history(self.symbol)
        except Exception as e:
            logger.warning(f"Trade history unavailable, starting with empty performance: {e}")
            return
        self.positions.seed(trades)
        self.tracker.seed(trades)

    def start(self):
        """Resume signal evaluation."""
        with self._lock:
            if not self.initialized:
                raise EngineError("Engine is not initialized")
            self.is_running = True
        logger.info(f"Strategy engine started for {self.symbol}")

    def stop(self):
        """Pause signal evaluation; state is kept."""
        with self._lock:
            self.is_running = False
        logger.info(f"Strategy engine stopped for {self.symbol}")

    def toggle(self) -> bool:
        if self.is_running:
            self.stop()
        else:
            self.start()
        return self.is_running

    def cleanup(self):
        """Stop, unsubscribe and release broker resources."""
        self.stop()
        self._stop_event.set()
        if self._timer is not None:
            self._timer.join(timeout=5)
            self._timer = None

        if self.initialized and self.config.data.subscribe_ticks:
            try:
                self.execution.unsubscribe(self.symbol)
            except Exception as e:
                logger.warning(f"Unsubscribe from {self.symbol} failed: {e}")

        self.execution.shutdown()
        self._subscribers.clear()
        logger.info(f"Strategy engine for {self.symbol} cleaned up")

    # ------------------------------------------------------------------
    # Tick path
    # ------------------------------------------------------------------

    def on_tick(self, tick: PriceTick) -> Optional[EngineSnapshot]:
        """Process one tick; returns the resulting snapshot, or None if the tick was ignored."""
        if tick.symbol != self.symbol:
            logger.debug(f"Ignoring tick for {tick.symbol} on {self.symbol} engine")
            return None

        with self._lock:
            if not self.initialized:
                logger.debug("Tick before initialization ignored")
                return None
            if self.data_gap is not None:
                self.on_stream_resumed()

            # 1. Candles
            update = self.aggregator.update(tick)
            if update == CandleUpdate.DROPPED:
                return None
            self.last_tick_time = tick.timestamp

            # 2-3. Indicators and analysis
            previous, current = self._recompute(tick.timestamp, refresh_analysis=update == CandleUpdate.NEW_CANDLE)

            # 4-5. Signal and position
            signal = None
            if self.is_running:
                signal = self.fusion.evaluate(previous, current, self.parameters, self.analysis)
                self._step_position(tick, signal, current)
            self.last_signal = signal

            # 7. Self-correction
            if self.controller.is_due(tick.timestamp, self.tracker):
                self._self_correct(tick.timestamp)

            snapshot = self._snapshot()

        self._notify(snapshot)
        return snapshot

    def _recompute(self, now_ms: int, refresh_analysis: bool = False):
        prices = self.buffer.to_frame()
        frame = self.features.compute_frame(prices, self.parameters)
        previous, current = self.features.latest(prices, frame)
        self.indicators = current

        interval_ms = self.config.analysis.analysis_interval_seconds * 1000
        if (refresh_analysis or self.last_analysis_time is None
                or now_ms - self.last_analysis_time >= interval_ms):
            self.analysis = self.classifier.classify(prices, frame, self.parameters.atr_period)
            self.last_analysis_time = now_ms

        return previous, current

    def _step_position(self, tick: PriceTick, signal: CompositeSignal, current: IndicatorSnapshot):
        candle = self.buffer.last().timestamp
        # Entries and reversals at most once per candle; exits are checked every tick
        step_signal = signal if candle != self.last_acted_candle else None

        update = self.positions.evaluate(
            tick.price, tick.timestamp, step_signal, current.atr,
            self.analysis.volatility, self.parameters
        )

        reversed_ = update.closed is not None and update.closed.exit_reason == ExitReason.REVERSAL
        if update.opened is not None or reversed_:
            self.last_acted_candle = candle
        if update.error:
            self.error = update.error

    def _on_trade_closed(self, trade: Trade):
        self.tracker.record_trade(trade)

    # ------------------------------------------------------------------
    # Data gaps
    # ------------------------------------------------------------------

    def on_stream_interrupted(self, reason: str = "tick stream disconnected"):
        """Keep last indicators; nothing is fabricated until ticks resume."""
        with self._lock:
            self.data_gap = DataGap(reason)
        logger.warning(f"Data gap for {self.symbol}: {reason}")

    def on_stream_resumed(self):
        with self._lock:
            self.data_gap = None
        logger.info(f"Tick stream for {self.symbol} resumed")

    # ------------------------------------------------------------------
    # Parameters
    # ------------------------------------------------------------------

    def update_parameters(self, changes: Optional[Dict[str, Any]] = None, **kwargs) -> StrategyParameters:
        """Validate and apply a partial update. Raises InvalidParameters without mutating on failure."""
        changes = {**(changes or {}), **kwargs}
        with self._lock:
            candidate = self.parameters.replace(**changes)
            fixed = [name for name in ('symbol', 'timeframe') if getattr(candidate, name) != getattr(self.parameters, name)]
            if fixed:
                raise InvalidParameters([f"{name} cannot change on a running engine" for name in fixed])
            candidate.validate(self.weight_floor)

            self._apply_parameters(candidate)
        logger.info(f"Parameters updated: {sorted(changes)}")
        return candidate

    def _apply_parameters(self, new: StrategyParameters):
        self.parameter_history.push(self.parameters)
        self._swap_parameters(new)

    def _swap_parameters(self, new: StrategyParameters):
        old = self.parameters
        self.parameters = new
        self.buffer.resize(self._buffer_capacity())

        changed = any(getattr(old, f) != getattr(new, f) for f in INDICATOR_FIELDS)
        if changed and self.initialized and len(self.buffer):
            self._recompute(self.last_tick_time or self.buffer.last().timestamp)

    def rollback_parameters(self) -> Optional[StrategyParameters]:
        """Restore the most recently replaced parameters."""
        with self._lock:
            previous = self.parameter_history.pop()
            if previous is None:
                logger.warning("No parameter history to roll back to")
                return None
            self._swap_parameters(previous)
        logger.info("Parameters rolled back")
        return previous

    def apply_combination_rules(self, rules: CombinationRules) -> StrategyParameters:
        """Install optimizer rules: thresholds and confirmations in fusion, weights in parameters."""
        with self._lock:
            params = self.update_parameters(weights=dict(rules.weights))
            self.fusion.set_rules(rules)
        return params

    def run_self_correction(self) -> Optional[StrategyParameters]:
        """Re-tune now if enough performance history exists."""
        now_ms = self.last_tick_time or int(time.time() * 1000)
        with self._lock:
            return self._self_correct(now_ms)

    def _self_correct(self, now_ms: int) -> Optional[StrategyParameters]:
        try:
            adjusted = self.controller.run(self.parameters, self.analysis, self.tracker, now_ms)
        except InvalidParameters as e:
            logger.error(f"Self-correction produced invalid parameters, keeping current: {e}")
            return None
        if adjusted is None:
            return None
        self._apply_parameters(adjusted)
        return adjusted

    def _start_timer(self):
        interval = self.config.adaptation.interval_seconds

        def loop():
            while not self._stop_event.wait(interval):
                try:
                    self.run_self_correction()
                except Exception as e:
                    logger.error(f"Self-correction timer error: {e}")

        self._stop_event.clear()
        self._timer = threading.Thread(target=loop, name=f"self-correction-{self.symbol}", daemon=True)
        self._timer.start()
        logger.info(f"Self-correction timer started ({interval}s)")

    # ------------------------------------------------------------------
    # Observers and getters
    # ------------------------------------------------------------------

    def subscribe(self, callback: Callable[[EngineSnapshot], None]) -> Callable[[], None]:
        """Register a snapshot callback; returns a function that unregisters it."""
        self._subscribers.append(callback)

        def unsubscribe():
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _notify(self, snapshot: EngineSnapshot):
        for callback in list(self._subscribers):
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"Snapshot subscriber error: {e}")

    def _snapshot(self) -> EngineSnapshot:
        return EngineSnapshot(
            symbol=self.symbol,
            timestamp=self.indicators.timestamp,
            price=self.indicators.price,
            indicators=self.indicators,
            signal=self.last_signal,
            analysis=self.analysis,
            metrics=self.tracker.metrics,
            parameters=self.parameters,
            open_trade=self.positions.open_trade,
            is_running=self.is_running,
            data_gap=self.data_gap is not None
        )

    def get_snapshot(self) -> EngineSnapshot:
        with self._lock:
            return self._snapshot()

    def get_indicator_values(self) -> IndicatorSnapshot:
        return self.indicators

    def get_performance_metrics(self) -> PerformanceMetrics:
        return self.tracker.metrics

    def get_parameters(self) -> StrategyParameters:
        return self.parameters

    def get_market_analysis(self) -> MarketAnalysis:
        return self.analysis

    def get_trades(self) -> List[Trade]:
        with self._lock:
            return self.positions.get_trades()

    def get_parameter_history(self) -> List[StrategyParameters]:
        return self.parameter_history.to_list()

    def get_performance_history(self) -> List[PerformanceMetrics]:
        return self.tracker.get_history()

    def get_adaptation_count(self) -> int:
        return self.controller.adaptation_count

    def get_error(self) -> Optional[str]:
        return self.error

    def get_status(self) -> Dict[str, Any]:
        """Get comprehensive engine status."""
        with self._lock:
            open_trade = self.positions.open_trade
            return {
                'symbol': self.symbol,
                'timeframe': self.timeframe.value,
                'initialized': self.initialized,
                'running': self.is_running,
                'auto_trading': self.parameters.enable_auto_trading,
                'trading_enabled': self.execution.trading_enabled,
                'data_gap': self.data_gap is not None,
                'data_gap_reason': str(self.data_gap) if self.data_gap else None,
                'candles': len(self.buffer),
                'dropped_ticks': self.aggregator.dropped_ticks,
                'position': self.positions.state.value,
                'open_trade': open_trade.to_dict() if open_trade else None,
                'closed_trades': self.tracker.closed_count,
                'failed_broker_calls': self.execution.failed_calls,
                'adaptation_count': self.controller.adaptation_count,
                'indicators_ready': self.indicators.is_ready,
                'analysis': self.analysis.to_dict(),
                'last_signal': self.last_signal.to_dict() if self.last_signal else None,
                'error': self.error
            }


def _print_results(title: str, results: Dict[str, Any]):
    print("\n" + "=" * 50)
    print(title)
    print("=" * 50)
    for key, value in results.items():
        if isinstance(value, float):
            print(f"{key}: {value:.4f}")
        else:
            print(f"{key}: {value}")


PAPER_TICKS_PER_CANDLE = 4
PAPER_CANDLES = 150


def run_paper(config: SystemConfig):
    """Replay synthetic ticks through a paper-broker engine."""
    from .data import DataManager, MockDataSource
    from .execution import MockBroker

    data_manager = DataManager(config.data)
    broker = MockBroker(data_manager)
    params = config.parameters.replace(enable_auto_trading=True)
    engine = StrategyEngine(broker, params, config)

    try:
        engine.initialize()
        engine.start()

        source = data_manager.source
        if not isinstance(source, MockDataSource):
            source = MockDataSource(config.data.mock_volatility, config.data.mock_seed)

        last = engine.buffer.last()
        step_ms = params.timeframe.period_ms // PAPER_TICKS_PER_CANDLE
        ticks = source.generate_ticks(
            params.symbol, last.timestamp + step_ms,
            PAPER_CANDLES * PAPER_TICKS_PER_CANDLE, step_ms, last.close
        )
        for tick in ticks:
            broker.publish_tick(tick)

        engine.stop()
        open_trade = engine.positions.open_trade
        if open_trade is not None:
            engine.positions.close_position(ticks[-1].price, ticks[-1].timestamp, ExitReason.MANUAL, engine.parameters)

        print(engine.tracker.generate_report(params.symbol))
        _print_results("ENGINE STATUS", {
            k: v for k, v in engine.get_status().items() if not isinstance(v, dict)
        })
    finally:
        engine.cleanup()


def run_backtest(config: SystemConfig):
    from .data import DataManager
    from .optimizer import BacktestSimulator

    params = config.parameters
    end_ms = int(time.time() * 1000)
    start_ms = end_ms - config.optimizer.history_days * DAY_MS
    prices = DataManager(config.data).get_price_history(params.symbol, params.timeframe, start_ms, end_ms)

    simulator = BacktestSimulator(config.optimizer, config.analysis, config.signal, config.risk)
    result = simulator.run(prices, params)
    _print_results("BACKTEST RESULTS", {'symbol': params.symbol, 'bars': len(prices), **result.to_dict()})


def run_optimize(config: SystemConfig):
    from .data import DataManager
    from .execution import MockBroker
    from .optimizer import StrategyOptimizer

    broker = MockBroker(DataManager(config.data))
    optimizer = StrategyOptimizer(broker, config.parameters, config)

    def progress(done: int, total: int):
        if done % 25 == 0 or done == total:
            logger.info(f"Evaluated {done}/{total} candidates")

    cancel = threading.Event()
    try:
        result = optimizer.optimize(cancel_event=cancel, progress=progress)
    except KeyboardInterrupt:
        cancel.set()
        print("\nOptimization cancelled")
        return

    _print_results("OPTIMIZATION RESULTS", {
        'method': result.method.value,
        'metric': result.metric,
        'candidates_evaluated': result.candidates_evaluated,
        'regime': result.market_analysis.regime.value,
        'volatility': result.market_analysis.volatility.value,
        'sentiment': result.market_analysis.sentiment.value,
        **{f"best_{k}": v for k, v in result.best_result.to_dict().items()},
    })
    _print_results("OPTIMIZED PARAMETERS", result.optimized_parameters.to_dict())
    _print_results("COMBINATION RULES", result.combination_rules.to_dict())


def main():
    """Main entry point for the forex engine."""
    import argparse
    from .config import OptimizationMethod, OptimizationMetric, Timeframe

    parser = argparse.ArgumentParser(description='Adaptive Multi-Indicator Forex Engine')
    parser.add_argument('--mode', choices=['paper', 'backtest', 'optimize'],
                        default='paper', help='Run mode')
    parser.add_argument('--symbol', type=str, help='Instrument, e.g. EURUSD')
    parser.add_argument('--timeframe', choices=[t.value for t in Timeframe], help='Candle timeframe')
    parser.add_argument('--source', choices=['mock', 'yfinance'], help='Historical data source')
    parser.add_argument('--days', type=int, help='Days of history to load')
    parser.add_argument('--method', choices=[m.value for m in OptimizationMethod], help='Optimization method')
    parser.add_argument('--metric', choices=[m.value for m in OptimizationMetric], help='Optimization metric')
    parser.add_argument('--config', type=str, help='Path to config file')
    parser.add_argument('--seed', type=int, help='Random seed for mock data and genetic search')
    parser.add_argument('--log-level', type=str, help='Logging level (default from config)')

    args = parser.parse_args()

    # Create configuration
    config = SystemConfig.load(args.config) if args.config else SystemConfig()
    config.mode = TradingMode(args.mode)

    changes = {}
    if args.symbol:
        changes['symbol'] = args.symbol.upper()
    if args.timeframe:
        changes['timeframe'] = args.timeframe
    if changes:
        config.parameters = config.parameters.replace(**changes)
    if args.source:
        config.data.source = args.source
    if args.days:
        config.data.history_days = args.days
        config.optimizer.history_days = args.days
    if args.method:
        config.optimizer.method = OptimizationMethod(args.method)
    if args.metric:
        config.optimizer.metric = OptimizationMetric(args.metric)
    if args.seed is not None:
        config.data.mock_seed = args.seed
        config.optimizer.seed = args.seed

    # Configure logging
    logging.basicConfig(
        level=getattr(logging, (args.log_level or config.monitoring.log_level).upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        filename=config.monitoring.log_file
    )

    if config.mode == TradingMode.BACKTEST:
        run_backtest(config)
    elif config.mode == TradingMode.OPTIMIZE:
        run_optimize(config)
    else:
        try:
            run_paper(config)
        except KeyboardInterrupt:
            print("\nShutting down...")


if __name__ == "__main__":
    main()
