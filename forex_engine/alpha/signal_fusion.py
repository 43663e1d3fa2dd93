"""
Signal Fusion Module
====================
Per-indicator directional votes combined into one weighted composite score.

Core principle: votes fire on crossing events, not on levels, so a
persisting condition produces a single signal. Bollinger Bands are the
exception: they vote on band touches because they mark extremes.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional, Tuple
import logging

from ..analysis import MarketAnalysis, MarketRegime
from ..features import IndicatorSnapshot

logger = logging.getLogger(__name__)

SCORE_TOLERANCE = 1e-9


class SignalAction(Enum):
    """Composite decision."""
    BUY = "buy"
    SELL = "sell"
    HOLD = "hold"


@dataclass(frozen=True)
class IndicatorVotes:
    """Discrete vote per indicator: +1 buy, -1 sell, 0 neutral."""
    rsi: int = 0
    macd: int = 0
    ma: int = 0
    bb: int = 0

    def as_dict(self) -> Dict[str, int]:
        return {'rsi': self.rsi, 'macd': self.macd, 'ma': self.ma, 'bb': self.bb}


@dataclass
class CompositeSignal:
    """Outcome of one fusion pass."""
    action: SignalAction
    score: float
    votes: IndicatorVotes
    buy_threshold: float
    sell_threshold: float
    timestamp: Optional[int] = None
    price: Optional[float] = None
    rejected_by: Optional[str] = None

    @property
    def is_entry(self) -> bool:
        return self.action != SignalAction.HOLD

    def to_dict(self) -> dict:
        return {
            'action': self.action.value,
            'score': self.score,
            'votes': self.votes.as_dict(),
            'buy_threshold': self.buy_threshold,
            'sell_threshold': self.sell_threshold,
            'timestamp': self.timestamp,
            'price': self.price,
            'rejected_by': self.rejected_by
        }


def rsi_vote(prev: Optional[float], cur: Optional[float], oversold: float, overbought: float) -> int:
    """+1 crossing up through oversold, -1 crossing down through overbought."""
    if prev is None or cur is None:
        return 0
    if prev < oversold <= cur:
        return 1
    if prev > overbought >= cur:
        return -1
    return 0


def macd_vote(prev_hist: Optional[float], cur_hist: Optional[float]) -> int:
    """+1 when the histogram turns non-negative, -1 when it turns negative."""
    if prev_hist is None or cur_hist is None:
        return 0
    if prev_hist < 0 <= cur_hist:
        return 1
    if prev_hist >= 0 > cur_hist:
        return -1
    return 0


def ma_vote(prev_fast: Optional[float], prev_slow: Optional[float],
            cur_fast: Optional[float], cur_slow: Optional[float]) -> int:
    """+1 when fast crosses above slow, -1 when it falls back to or below slow."""
    if None in (prev_fast, prev_slow, cur_fast, cur_slow):
        return 0
    if prev_fast <= prev_slow and cur_fast > cur_slow:
        return 1
    if prev_fast > prev_slow and cur_fast <= cur_slow:
        return -1
    return 0


def bb_vote(price: Optional[float], lower: Optional[float], upper: Optional[float]) -> int:
    """+1 at or below the lower band, -1 at or above the upper band."""
    if None in (price, lower, upper):
        return 0
    if price <= lower:
        return 1
    if price >= upper:
        return -1
    return 0


# Confirmation checks: (action, score, snapshot) -> allowed
ConfirmationCheck = Callable[[SignalAction, float, IndicatorSnapshot], bool]


def _trend_confirmation(action: SignalAction, score: float, snap: IndicatorSnapshot) -> bool:
    if snap.ma_fast is None or snap.ma_slow is None:
        return False
    if action == SignalAction.BUY:
        return snap.ma_fast > snap.ma_slow
    return snap.ma_fast < snap.ma_slow


def _range_confirmation(action: SignalAction, score: float, snap: IndicatorSnapshot) -> bool:
    if snap.rsi is None:
        return False
    if action == SignalAction.BUY:
        return snap.rsi <= 40
    return snap.rsi >= 60


def _volatility_confirmation(action: SignalAction, score: float, snap: IndicatorSnapshot) -> bool:
    return abs(score) >= 0.6 - SCORE_TOLERANCE


CONFIRMATION_CHECKS: Dict[str, ConfirmationCheck] = {
    'trend_confirmation': _trend_confirmation,
    'range_confirmation': _range_confirmation,
    'volatility_confirmation': _volatility_confirmation,
}


@dataclass(frozen=True)
class ConfirmationRule:
    """Named extra condition an entry signal must satisfy."""
    name: str
    description: str = ""

    def allows(self, action: SignalAction, score: float, snapshot: IndicatorSnapshot) -> bool:
        return CONFIRMATION_CHECKS[self.name](action, score, snapshot)

    def to_dict(self) -> dict:
        return {'name': self.name, 'description': self.description}


@dataclass
class CombinationRules:
    """Weights, thresholds and confirmation rules for fusing votes."""
    weights: Dict[str, float]
    buy_threshold: float = 0.5
    sell_threshold: float = -0.5
    confirmation_rules: List[ConfirmationRule] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            'weights': dict(self.weights),
            'thresholds': {'buy': self.buy_threshold, 'sell': self.sell_threshold},
            'confirmation_rules': [r.to_dict() for r in self.confirmation_rules]
        }


class SignalFusion:
    """
    Turns consecutive indicator snapshots into a composite signal.

    Weights always come from the current StrategyParameters; thresholds
    and confirmation rules come from the installed CombinationRules when
    present, otherwise from SignalConfig.
    """

    def __init__(self, config=None, rules: Optional[CombinationRules] = None):
        from ..config import SignalConfig
        self.config = config or SignalConfig()
        self.rules = rules

    def set_rules(self, rules: Optional[CombinationRules]):
        self.rules = rules
        if rules is not None:
            logger.info(
                f"Combination rules installed: thresholds {rules.buy_threshold:+.2f}/"
                f"{rules.sell_threshold:+.2f}, confirmations {[r.name for r in rules.confirmation_rules]}"
            )

    def thresholds(self, analysis: Optional[MarketAnalysis] = None) -> Tuple[float, float]:
        if self.rules is not None:
            return self.rules.buy_threshold, self.rules.sell_threshold

        buy, sell = self.config.buy_threshold, self.config.sell_threshold
        volatile = analysis is not None and analysis.regime == MarketRegime.VOLATILE
        if volatile and self.config.volatile_threshold is not None:
            buy, sell = self.config.volatile_threshold, -self.config.volatile_threshold
        return buy, sell

    @staticmethod
    def compute_votes(prev: IndicatorSnapshot, cur: IndicatorSnapshot, params) -> IndicatorVotes:
        return IndicatorVotes(
            rsi=rsi_vote(prev.rsi, cur.rsi, params.oversold_threshold, params.overbought_threshold),
            macd=macd_vote(prev.macd_histogram, cur.macd_histogram),
            ma=ma_vote(prev.ma_fast, prev.ma_slow, cur.ma_fast, cur.ma_slow),
            bb=bb_vote(cur.price, cur.bb_lower, cur.bb_upper)
        )

    @staticmethod
    def composite_score(votes: IndicatorVotes, weights: Dict[str, float]) -> float:
        return sum(vote * weights[name] for name, vote in votes.as_dict().items())

    def evaluate(self, prev: IndicatorSnapshot, cur: IndicatorSnapshot, params,
                 analysis: Optional[MarketAnalysis] = None) -> CompositeSignal:
        """Fuse votes for the current bar into BUY, SELL or HOLD."""
        votes = self.compute_votes(prev, cur, params)
        score = self.composite_score(votes, params.weights.as_dict())
        buy_threshold, sell_threshold = self.thresholds(analysis)

        if score >= buy_threshold - SCORE_TOLERANCE:
            action = SignalAction.BUY
        elif score <= sell_threshold + SCORE_TOLERANCE:
            action = SignalAction.SELL
        else:
            action = SignalAction.HOLD

        signal = CompositeSignal(
            action=action,
            score=score,
            votes=votes,
            buy_threshold=buy_threshold,
            sell_threshold=sell_threshold,
            timestamp=cur.timestamp,
            price=cur.price
        )

        if action != SignalAction.HOLD and self.rules is not None:
            for rule in self.rules.confirmation_rules:
                if not rule.allows(action, score, cur):
                    logger.info(f"{action.value.upper()} signal ({score:+.2f}) rejected by {rule.name}")
                    signal.action = SignalAction.HOLD
                    signal.rejected_by = rule.name
                    break

        if signal.action != SignalAction.HOLD:
            logger.info(f"Composite signal {signal.action.value.upper()} score={score:+.3f} votes={votes.as_dict()}")
        return signal
