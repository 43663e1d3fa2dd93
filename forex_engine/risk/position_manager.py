"""
Position & Trade Lifecycle Module
=================================
Single-position state machine per symbol: FLAT -> OPEN -> FLAT.

Core principle: "Exactly one position, always protected"
Entries carry a stop-loss and take-profit sized as the wider of a
percentage distance and an ATR multiple; an opposite signal closes
before it opens, never hedges.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple
import logging

from ..analysis import VolatilityLevel
from ..alpha import CompositeSignal, SignalAction
from ..exceptions import BrokerExecutionFailure, EngineError
from ..execution import ExecutionEngine, ExitReason, Trade, TradeDirection

logger = logging.getLogger(__name__)


class PositionState(Enum):
    """Position state per symbol."""
    FLAT = "flat"
    OPEN = "open"


@dataclass
class PositionUpdate:
    """What one evaluation step changed."""
    opened: Optional[Trade] = None
    closed: Optional[Trade] = None
    error: Optional[str] = None

    @property
    def changed(self) -> bool:
        return self.opened is not None or self.closed is not None


def atr_multiplier(volatility: VolatilityLevel, config=None) -> float:
    """ATR multiple for stop distance by volatility level."""
    from ..config import RiskConfig
    config = config or RiskConfig()
    return {
        VolatilityLevel.LOW: config.atr_multiplier_low,
        VolatilityLevel.MEDIUM: config.atr_multiplier_medium,
        VolatilityLevel.HIGH: config.atr_multiplier_high,
    }[volatility]


def compute_stop_levels(direction: TradeDirection, price: float, atr: Optional[float],
                        volatility: VolatilityLevel, params, config=None) -> Tuple[float, float]:
    """
    Stop-loss and take-profit prices for a new position.

    Each distance is the larger of the percentage distance and the ATR
    distance (ATR x multiplier for the stop, x take_profit_atr_factor
    more for the target).
    """
    from ..config import RiskConfig
    config = config or RiskConfig()

    stop_distance = price * params.stop_loss_percent / 100
    target_distance = price * params.take_profit_percent / 100

    if atr is not None and atr > 0:
        mult = atr_multiplier(volatility, config)
        stop_distance = max(stop_distance, atr * mult)
        target_distance = max(target_distance, atr * mult * config.take_profit_atr_factor)

    sign = direction.sign
    return price - sign * stop_distance, price + sign * target_distance


class PositionManager:
    """
    Owns the open trade and the closed-trade ledger for one symbol.

    Responsibilities:
    - Stop-loss / take-profit checks on every price update
    - Signal-driven entries and close-then-open reversals
    - Auto-trading gate on every broker-mutating call
    - Failed open leaves the position flat; failed close leaves it open
    """

    def __init__(self, execution: ExecutionEngine, symbol: str, config=None):
        from ..config import RiskConfig
        self.config = config or RiskConfig()
        self.execution = execution
        self.symbol = symbol

        self.open_trade: Optional[Trade] = None
        self.closed_trades: List[Trade] = []
        self.last_error: Optional[str] = None

        # Callbacks
        self._on_open: List[Callable[[Trade], None]] = []
        self._on_close: List[Callable[[Trade], None]] = []

    @property
    def state(self) -> PositionState:
        return PositionState.OPEN if self.open_trade is not None else PositionState.FLAT

    def on_trade_opened(self, callback: Callable[[Trade], None]):
        self._on_open.append(callback)

    def on_trade_closed(self, callback: Callable[[Trade], None]):
        self._on_close.append(callback)

    def seed(self, trades: Iterable[Trade]):
        """Load historical closed trades without firing callbacks."""
        loaded = [t for t in trades if not t.is_open]
        self.closed_trades.extend(sorted(loaded, key=lambda t: t.exit_time or 0))
        logger.info(f"Seeded {len(loaded)} historical trades for {self.symbol}")

    def get_trades(self) -> List[Trade]:
        trades = list(self.closed_trades)
        if self.open_trade is not None:
            trades.append(self.open_trade)
        return trades

    def evaluate(self, price: float, timestamp: int, signal: Optional[CompositeSignal],
                 atr: Optional[float], volatility: VolatilityLevel, params) -> PositionUpdate:
        """
        One decision step at the current price.

        1. Stop-loss, then take-profit, on the open trade
        2. If nothing exited, act on the signal (entry or reversal)
        3. Re-check the single-position invariant
        """
        update = PositionUpdate()

        # 1. Protective exits
        exit_reason = self.exit_reason(price)
        if exit_reason is not None:
            update.closed = self._close(price, timestamp, exit_reason, params)
            if update.closed is None and params.enable_auto_trading:
                update.error = self.last_error
            # No re-entry on the bar that stopped us out
            self._check_invariant()
            return update

        # 2. Signal-driven transitions
        if signal is not None and signal.action != SignalAction.HOLD:
            direction = TradeDirection.BUY if signal.action == SignalAction.BUY else TradeDirection.SELL

            if self.open_trade is not None and self.open_trade.direction == direction:
                logger.debug(f"{direction.value.upper()} signal ignored, already in {direction.value} position")
            else:
                if self.open_trade is not None:
                    update.closed = self._close(price, timestamp, ExitReason.REVERSAL, params)
                    if update.closed is None:
                        if params.enable_auto_trading:
                            update.error = self.last_error
                        self._check_invariant()
                        return update

                update.opened = self._open(direction, price, timestamp, signal, atr, volatility, params)
                if update.opened is None and params.enable_auto_trading:
                    update.error = self.last_error

        # 3. Invariant
        self._check_invariant()
        return update

    def exit_reason(self, price: float) -> Optional[ExitReason]:
        """Protective exit triggered at this price, stop-loss first."""
        trade = self.open_trade
        if trade is None:
            return None

        if trade.direction == TradeDirection.BUY:
            if price <= trade.stop_loss:
                return ExitReason.STOP_LOSS
            if price >= trade.take_profit:
                return ExitReason.TAKE_PROFIT
        else:
            if price >= trade.stop_loss:
                return ExitReason.STOP_LOSS
            if price <= trade.take_profit:
                return ExitReason.TAKE_PROFIT
        return None

    def close_position(self, price: float, timestamp: int, reason: ExitReason, params) -> Optional[Trade]:
        """Close the open trade outside the signal path (manual, end of data)."""
        if self.open_trade is None:
            return None
        closed = self._close(price, timestamp, reason, params)
        self._check_invariant()
        return closed

    def _open(self, direction: TradeDirection, price: float, timestamp: int,
              signal: CompositeSignal, atr: Optional[float],
              volatility: VolatilityLevel, params) -> Optional[Trade]:
        if not params.enable_auto_trading:
            logger.info(
                f"{direction.value.upper()} signal detected ({signal.score:+.2f}) "
                f"for {self.symbol}, but auto-trading is disabled"
            )
            return None

        stop_loss, take_profit = compute_stop_levels(direction, price, atr, volatility, params, self.config)

        try:
            result = self.execution.open_trade(
                self.symbol, direction, params.position_size, stop_loss, take_profit
            )
        except BrokerExecutionFailure as e:
            self.last_error = str(e)
            logger.error(f"Failed to open {direction.value} {self.symbol}: {e}")
            return None

        trade = Trade(
            id=result.id,
            symbol=self.symbol,
            direction=direction,
            entry_price=price,
            stop_loss=stop_loss,
            take_profit=take_profit,
            entry_time=timestamp,
            size=params.position_size,
            indicator_signals=signal.votes.as_dict(),
            score=signal.score
        )
        self.open_trade = trade
        self.last_error = None
        logger.info(
            f"Opened {direction.value.upper()} {self.symbol} @ {price:.5f} "
            f"SL {stop_loss:.5f} TP {take_profit:.5f} (score {signal.score:+.2f})"
        )

        for callback in self._on_open:
            try:
                callback(trade)
            except Exception as e:
                logger.error(f"Trade-open callback error: {e}")
        return trade

    def _close(self, price: float, timestamp: int, reason: ExitReason, params) -> Optional[Trade]:
        trade = self.open_trade
        if not params.enable_auto_trading:
            logger.info(f"{reason.value} exit for {self.symbol} @ {price:.5f} skipped, auto-trading is disabled")
            return None

        try:
            self.execution.close_trade(trade.id)
        except BrokerExecutionFailure as e:
            self.last_error = str(e)
            logger.error(f"Failed to close trade {trade.id} ({reason.value}): {e}; will retry on next tick")
            return None

        closed = trade.closed(price, timestamp, reason)
        self.open_trade = None
        self.closed_trades.append(closed)
        self.last_error = None
        logger.info(
            f"Closed {closed.direction.value.upper()} {self.symbol} @ {price:.5f} "
            f"({reason.value}), profit {closed.profit:+.5f} ({closed.profit_percent:+.2f}%)"
        )

        for callback in self._on_close:
            try:
                callback(closed)
            except Exception as e:
                logger.error(f"Trade-close callback error: {e}")
        return closed

    def _check_invariant(self):
        open_count = sum(1 for t in self.get_trades() if t.is_open)
        if open_count > 1:
            raise EngineError(f"Single-position invariant violated for {self.symbol}: {open_count} open trades")
