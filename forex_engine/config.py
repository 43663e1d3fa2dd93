"""
Configuration Management
========================
Strategy parameters and per-component configuration for the decision engine.

StrategyParameters are the only mutable tuning surface of a live engine;
every other config here is fixed for the lifetime of an instance.
"""

from dataclasses import dataclass, field, fields, asdict, replace as dc_replace
from typing import Dict, List, Optional, Any
from enum import Enum
import json
import math
import os

from .exceptions import InvalidParameters


WEIGHT_FLOOR = 0.1
WEIGHT_TOLERANCE = 1e-6
INDICATORS = ("rsi", "macd", "ma", "bb")


class TradingMode(Enum):
    """Engine operation modes."""
    PAPER = "paper"
    BACKTEST = "backtest"
    OPTIMIZE = "optimize"
    LIVE = "live"


class Timeframe(Enum):
    """Candle timeframes."""
    MINUTE = "1m"
    MINUTE_5 = "5m"
    MINUTE_15 = "15m"
    MINUTE_30 = "30m"
    HOUR = "1h"
    HOUR_4 = "4h"
    DAY = "1d"
    WEEK = "1w"

    @property
    def period_ms(self) -> int:
        """Candle length in milliseconds."""
        return _TIMEFRAME_MS[self]


_TIMEFRAME_MS = {
    Timeframe.MINUTE: 60_000,
    Timeframe.MINUTE_5: 5 * 60_000,
    Timeframe.MINUTE_15: 15 * 60_000,
    Timeframe.MINUTE_30: 30 * 60_000,
    Timeframe.HOUR: 60 * 60_000,
    Timeframe.HOUR_4: 4 * 60 * 60_000,
    Timeframe.DAY: 24 * 60 * 60_000,
    Timeframe.WEEK: 7 * 24 * 60 * 60_000,
}


class OptimizationMethod(Enum):
    """Offline search strategies."""
    GRID = "grid"
    WALK_FORWARD = "walk_forward"
    GENETIC = "genetic"


class OptimizationMetric(Enum):
    """Backtest metric maximised by the optimizer."""
    PROFIT_FACTOR = "profit_factor"
    WIN_RATE = "win_rate"
    NET_PROFIT = "net_profit"
    SHARPE_RATIO = "sharpe_ratio"


def normalize_weights(raw: Dict[str, float], floor: float = WEIGHT_FLOOR) -> Dict[str, float]:
    """
    Scale weights to sum to 1 with every weight >= floor.

    Weights that would fall under the floor are pinned to it and the
    remaining mass is shared proportionally among the rest, so the floor
    survives the final renormalization.
    """
    keys = list(raw)
    if not keys:
        return {}
    if floor * len(keys) > 1.0 + WEIGHT_TOLERANCE:
        raise ValueError(f"Weight floor {floor} too high for {len(keys)} indicators")

    free = {k: max(0.0, float(raw[k])) if math.isfinite(raw[k]) else 0.0 for k in keys}
    pinned: Dict[str, float] = {}
    scaled: Dict[str, float] = {}

    while free:
        remaining = 1.0 - floor * len(pinned)
        free_total = sum(free.values())
        if free_total <= 0:
            scaled = {k: remaining / len(free) for k in free}
            break
        scaled = {k: v / free_total * remaining for k, v in free.items()}
        below = [k for k, v in scaled.items() if v < floor]
        if not below:
            break
        for k in below:
            pinned[k] = floor
            del free[k]
        scaled = {}

    result = {**pinned, **scaled}
    return {k: result[k] for k in keys}


@dataclass
class IndicatorWeights:
    """Composite-signal weight per indicator."""
    rsi: float = 0.25
    macd: float = 0.25
    ma: float = 0.25
    bb: float = 0.25

    @property
    def total(self) -> float:
        return self.rsi + self.macd + self.ma + self.bb

    def as_dict(self) -> Dict[str, float]:
        return {'rsi': self.rsi, 'macd': self.macd, 'ma': self.ma, 'bb': self.bb}

    @classmethod
    def from_dict(cls, data: Dict[str, float]) -> 'IndicatorWeights':
        return cls(**{k: float(data[k]) for k in INDICATORS if k in data})

    def normalized(self, floor: float = WEIGHT_FLOOR) -> 'IndicatorWeights':
        return IndicatorWeights.from_dict(normalize_weights(self.as_dict(), floor))


@dataclass
class StrategyParameters:
    """Live tuning surface of one symbol's strategy."""
    symbol: str = "EURUSD"
    timeframe: Timeframe = Timeframe.HOUR

    # RSI
    rsi_period: int = 14
    overbought_threshold: float = 70.0
    oversold_threshold: float = 30.0

    # Moving averages
    fast_ma_period: int = 9
    slow_ma_period: int = 21

    # MACD
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9

    # Bollinger Bands
    bb_period: int = 20
    bb_deviation: float = 2.0

    # Volatility
    atr_period: int = 14

    # Risk
    position_size: float = 1.0
    stop_loss_percent: float = 1.0
    take_profit_percent: float = 2.0
    enable_auto_trading: bool = False

    weights: IndicatorWeights = field(default_factory=IndicatorWeights)

    @property
    def max_period(self) -> int:
        """Longest lookback any indicator needs."""
        return max(
            self.rsi_period,
            self.slow_ma_period,
            self.macd_slow + self.macd_signal,
            self.bb_period,
            self.atr_period,
        )

    @property
    def lookback(self) -> int:
        return self.max_period + 50

    @property
    def buffer_size(self) -> int:
        return self.max_period + 100

    def validate(self, weight_floor: float = WEIGHT_FLOOR) -> 'StrategyParameters':
        """Raise InvalidParameters listing every violated invariant."""
        violations: List[str] = []

        if not self.symbol:
            violations.append("symbol must not be empty")
        if not isinstance(self.timeframe, Timeframe):
            violations.append(f"unknown timeframe {self.timeframe!r}")

        for name in ('rsi_period', 'fast_ma_period', 'slow_ma_period', 'macd_fast',
                     'macd_slow', 'macd_signal', 'bb_period', 'atr_period'):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 1:
                violations.append(f"{name} must be a positive integer, got {value!r}")

        if not 0 <= self.oversold_threshold < self.overbought_threshold <= 100:
            violations.append(
                f"thresholds must satisfy 0 <= oversold < overbought <= 100, "
                f"got {self.oversold_threshold}/{self.overbought_threshold}"
            )
        if self.fast_ma_period >= self.slow_ma_period:
            violations.append(f"fast_ma_period {self.fast_ma_period} must be < slow_ma_period {self.slow_ma_period}")
        if self.macd_fast >= self.macd_slow:
            violations.append(f"macd_fast {self.macd_fast} must be < macd_slow {self.macd_slow}")

        for name in ('bb_deviation', 'position_size', 'stop_loss_percent', 'take_profit_percent'):
            value = getattr(self, name)
            if not math.isfinite(value) or value <= 0:
                violations.append(f"{name} must be > 0, got {value}")

        weights = self.weights.as_dict()
        if not all(math.isfinite(w) for w in weights.values()):
            violations.append("weights must be finite")
        else:
            if abs(self.weights.total - 1.0) > WEIGHT_TOLERANCE:
                violations.append(f"weights must sum to 1.0, got {self.weights.total:.6f}")
            for name, w in weights.items():
                if w < weight_floor - WEIGHT_TOLERANCE:
                    violations.append(f"{name} weight {w:.4f} below floor {weight_floor}")

        if violations:
            raise InvalidParameters(violations)
        return self

    def replace(self, **changes) -> 'StrategyParameters':
        """Copy with changes applied. Does not validate."""
        known = {f.name for f in fields(self)}
        unknown = [k for k in changes if k not in known]
        if unknown:
            raise InvalidParameters([f"unknown parameter {k!r}" for k in unknown])

        if 'timeframe' in changes and not isinstance(changes['timeframe'], Timeframe):
            try:
                changes['timeframe'] = Timeframe(changes['timeframe'])
            except ValueError:
                raise InvalidParameters([f"unknown timeframe {changes['timeframe']!r}"])
        if 'weights' in changes and isinstance(changes['weights'], dict):
            merged = {**self.weights.as_dict(), **changes['weights']}
            changes['weights'] = IndicatorWeights.from_dict(merged)

        return dc_replace(self, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data['timeframe'] = self.timeframe.value
        return data

    @classmethod
    def from_dict(cls, data: dict) -> 'StrategyParameters':
        data = dict(data)
        if 'timeframe' in data:
            data['timeframe'] = Timeframe(data['timeframe'])
        if 'weights' in data:
            data['weights'] = IndicatorWeights.from_dict(data['weights'])
        return cls(**data)


@dataclass
class DataConfig:
    """Data module configuration."""
    source: str = "mock"  # mock, yfinance
    history_days: int = 30
    subscribe_ticks: bool = True

    # Fetching
    use_cache: bool = True
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 64
    max_retries: int = 3
    base_delay_seconds: float = 1.0

    # Mock source
    mock_volatility: float = 0.002
    mock_seed: Optional[int] = 42


@dataclass
class AnalysisConfig:
    """Market condition classifier configuration."""
    adx_period: int = 14
    adx_lookback: int = 10
    candle_lookback: int = 10
    sentiment_fast_period: int = 50
    sentiment_slow_period: int = 200
    min_points: int = 50

    trend_threshold: float = 25.0
    high_volatility_threshold: float = 1.5
    low_volatility_threshold: float = 0.8

    # Live recompute throttle (a new candle always triggers a recompute)
    analysis_interval_seconds: int = 300


@dataclass
class SignalConfig:
    """Signal fusion configuration."""
    buy_threshold: float = 0.5
    sell_threshold: float = -0.5
    # Symmetric threshold used in the volatile regime; None keeps the defaults above
    volatile_threshold: Optional[float] = 0.6


@dataclass
class RiskConfig:
    """Stop-loss / take-profit configuration."""
    atr_multiplier_low: float = 1.0
    atr_multiplier_medium: float = 1.5
    atr_multiplier_high: float = 2.0
    take_profit_atr_factor: float = 1.5


@dataclass
class ExecutionConfig:
    """Broker call configuration."""
    broker_timeout_seconds: Optional[float] = 10.0
    max_workers: int = 2


@dataclass
class MonitoringConfig:
    """Performance tracking and logging configuration."""
    history_size: int = 10
    success_window: int = 50
    profit_factor_cap: float = 999.0

    # Logging
    log_level: str = "INFO"
    log_file: Optional[str] = None


@dataclass
class AdaptationConfig:
    """Self-correction configuration."""
    interval_seconds: int = 3600
    every_n_trades: int = 0  # 0 disables the trade-count trigger
    min_trades: int = 5
    min_history: int = 2
    parameter_history_size: int = 10
    weight_floor: float = WEIGHT_FLOOR
    background_timer: bool = False


@dataclass
class OptimizerConfig:
    """Offline optimizer configuration."""
    method: OptimizationMethod = OptimizationMethod.GRID
    metric: OptimizationMetric = OptimizationMetric.PROFIT_FACTOR
    history_days: int = 90

    # Backtest
    initial_equity: float = 10000.0
    annualization_factor: int = 252
    close_open_at_end: bool = True

    # Walk-forward
    walk_forward_windows: int = 3

    # Genetic
    population_size: int = 20
    generations: int = 5
    mutation_rate: float = 0.1
    elite_count: int = 2
    tournament_size: int = 3
    seed: Optional[int] = 42

    # Parallel candidate evaluation
    parallel: bool = False
    workers: Optional[int] = None

    # Correlation-aware weighting
    rsi_macd_correlation_threshold: float = 0.7
    ma_correlation_threshold: float = 0.9
    include_related_symbols: bool = False


@dataclass
class SystemConfig:
    """Master engine configuration."""
    mode: TradingMode = TradingMode.PAPER
    parameters: StrategyParameters = field(default_factory=StrategyParameters)

    # Component configs
    data: DataConfig = field(default_factory=DataConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    signal: SignalConfig = field(default_factory=SignalConfig)
    risk: RiskConfig = field(default_factory=RiskConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    monitoring: MonitoringConfig = field(default_factory=MonitoringConfig)
    adaptation: AdaptationConfig = field(default_factory=AdaptationConfig)
    optimizer: OptimizerConfig = field(default_factory=OptimizerConfig)

    def save(self, filepath: str):
        """Save configuration to JSON file."""
        directory = os.path.dirname(filepath)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(filepath, 'w') as f:
            json.dump(self._to_dict(), f, indent=2)

    @classmethod
    def load(cls, filepath: str) -> 'SystemConfig':
        """Load configuration from JSON file."""
        with open(filepath, 'r') as f:
            data = json.load(f)
        return cls._from_dict(data)

    def _to_dict(self) -> dict:
        optimizer = asdict(self.optimizer)
        optimizer['method'] = self.optimizer.method.value
        optimizer['metric'] = self.optimizer.metric.value
        return {
            'mode': self.mode.value,
            'parameters': self.parameters.to_dict(),
            'data': asdict(self.data),
            'analysis': asdict(self.analysis),
            'signal': asdict(self.signal),
            'risk': asdict(self.risk),
            'execution': asdict(self.execution),
            'monitoring': asdict(self.monitoring),
            'adaptation': asdict(self.adaptation),
            'optimizer': optimizer,
        }

    @classmethod
    def _from_dict(cls, data: Dict[str, Any]) -> 'SystemConfig':
        optimizer = dict(data.get('optimizer', {}))
        if 'method' in optimizer:
            optimizer['method'] = OptimizationMethod(optimizer['method'])
        if 'metric' in optimizer:
            optimizer['metric'] = OptimizationMetric(optimizer['metric'])

        return cls(
            mode=TradingMode(data.get('mode', 'paper')),
            parameters=StrategyParameters.from_dict(data.get('parameters', {})),
            data=DataConfig(**data.get('data', {})),
            analysis=AnalysisConfig(**data.get('analysis', {})),
            signal=SignalConfig(**data.get('signal', {})),
            risk=RiskConfig(**data.get('risk', {})),
            execution=ExecutionConfig(**data.get('execution', {})),
            monitoring=MonitoringConfig(**data.get('monitoring', {})),
            adaptation=AdaptationConfig(**data.get('adaptation', {})),
            optimizer=OptimizerConfig(**optimizer),
        )


# Default configuration instance
DEFAULT_CONFIG = SystemConfig()
