"""
Execution Module
================
Broker adapter contract, paper broker, and timeout-guarded execution.

Core principle: "A broker failure is an outcome, not a crash"
Every mutating broker call runs under a timeout and comes back either
accepted or as a BrokerExecutionFailure.
"""

import pandas as pd
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Callable, Dict, List, Optional
import logging
import threading
import time
import uuid

from ..config import Timeframe
from ..exceptions import BrokerExecutionFailure, DataUnavailable
from ..data import DataManager, PriceTick

logger = logging.getLogger(__name__)


class TradeDirection(Enum):
    """Trade direction."""
    BUY = "buy"
    SELL = "sell"

    @property
    def sign(self) -> int:
        return 1 if self is TradeDirection.BUY else -1

    @property
    def opposite(self) -> 'TradeDirection':
        return TradeDirection.SELL if self is TradeDirection.BUY else TradeDirection.BUY


class TradeStatus(Enum):
    """Trade lifecycle status."""
    OPEN = "open"
    CLOSED = "closed"


class ExitReason(Enum):
    """Why a trade was closed."""
    STOP_LOSS = "stop_loss"
    TAKE_PROFIT = "take_profit"
    REVERSAL = "reversal"
    MANUAL = "manual"
    END_OF_DATA = "end_of_data"


@dataclass(frozen=True)
class Trade:
    """
    One position from entry to exit.

    Frozen: closing produces a new closed Trade, so a closed record can
    never change again.
    """
    id: str
    symbol: str
    direction: TradeDirection
    entry_price: float
    stop_loss: float
    take_profit: float
    entry_time: int
    size: float = 1.0
    exit_price: Optional[float] = None
    exit_time: Optional[int] = None
    profit: Optional[float] = None
    status: TradeStatus = TradeStatus.OPEN
    exit_reason: Optional[ExitReason] = None
    indicator_signals: Dict[str, int] = field(default_factory=dict)
    score: float = 0.0

    @property
    def is_open(self) -> bool:
        return self.status == TradeStatus.OPEN

    @property
    def profit_percent(self) -> Optional[float]:
        if self.profit is None:
            return None
        return self.profit / self.entry_price * 100

    def closed(self, exit_price: float, exit_time: int, reason: ExitReason) -> 'Trade':
        """Closed copy of this trade. Profit is the per-unit price difference."""
        if not self.is_open:
            raise ValueError(f"Trade {self.id} is already closed")
        profit = (exit_price - self.entry_price) * self.direction.sign
        return replace(
            self,
            exit_price=exit_price,
            exit_time=exit_time,
            profit=profit,
            status=TradeStatus.CLOSED,
            exit_reason=reason
        )

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'symbol': self.symbol,
            'direction': self.direction.value,
            'entry_price': self.entry_price,
            'exit_price': self.exit_price,
            'stop_loss': self.stop_loss,
            'take_profit': self.take_profit,
            'entry_time': self.entry_time,
            'exit_time': self.exit_time,
            'size': self.size,
            'profit': self.profit,
            'profit_percent': self.profit_percent,
            'status': self.status.value,
            'exit_reason': self.exit_reason.value if self.exit_reason else None,
            'indicator_signals': dict(self.indicator_signals),
            'score': self.score
        }


@dataclass
class TradeResult:
    """Broker response to an open or close request."""
    id: Optional[str]
    accepted: bool
    reason: str = ""


TickCallback = Callable[[PriceTick], None]


class BrokerAdapter(ABC):
    """Capabilities the engine consumes from a broker client."""

    @abstractmethod
    def get_price_history(self, symbol: str, timeframe: Timeframe,
                          from_ms: int, to_ms: int) -> pd.DataFrame:
        """OHLCV candles for the range. Raises DataUnavailable when the venue has none."""
        pass

    @abstractmethod
    def subscribe_price_ticks(self, symbol: str, callback: TickCallback):
        """Deliver live ticks for a symbol (at-least-once)."""
        pass

    @abstractmethod
    def unsubscribe(self, symbol: str):
        """Stop tick delivery for a symbol."""
        pass

    @abstractmethod
    def place_trade(self, symbol: str, direction: TradeDirection, size: float,
                    stop_loss: float, take_profit: float) -> TradeResult:
        """Open a position."""
        pass

    @abstractmethod
    def close_trade(self, trade_id: str) -> TradeResult:
        """Close a position."""
        pass

    @abstractmethod
    def get_trade_history(self, symbol: str) -> List[Trade]:
        """Closed trades for a symbol."""
        pass


class MockBroker(BrokerAdapter):
    """
    Paper broker for simulation and testing.

    Orders fill immediately. Price history comes from a DataManager
    (synthetic by default). `reject_orders`, `reject_closes`,
    `raise_on_call` and `latency_seconds` simulate venue failures.
    """

    def __init__(self, data_manager: DataManager = None, latency_seconds: float = 0.0):
        self.data_manager = data_manager or DataManager()
        self.latency_seconds = latency_seconds

        self.reject_orders = False
        self.reject_closes = False
        self.raise_on_call: Optional[Exception] = None

        self.open_positions: Dict[str, dict] = {}
        self.history: Dict[str, List[Trade]] = {}
        self.subscribers: Dict[str, TickCallback] = {}
        self.placed: List[dict] = []
        self.closed_ids: List[str] = []
        self._lock = threading.Lock()

    def _simulate(self):
        if self.latency_seconds:
            time.sleep(self.latency_seconds)
        if self.raise_on_call is not None:
            raise self.raise_on_call

    def get_price_history(self, symbol: str, timeframe: Timeframe,
                          from_ms: int, to_ms: int) -> pd.DataFrame:
        return self.data_manager.get_price_history(symbol, timeframe, from_ms, to_ms)

    def subscribe_price_ticks(self, symbol: str, callback: TickCallback):
        with self._lock:
            self.subscribers[symbol] = callback
        logger.info(f"MockBroker subscribed to {symbol}")

    def unsubscribe(self, symbol: str):
        with self._lock:
            self.subscribers.pop(symbol, None)
        logger.info(f"MockBroker unsubscribed from {symbol}")

    def publish_tick(self, tick: PriceTick):
        """Push a tick to the subscriber of its symbol."""
        with self._lock:
            callback = self.subscribers.get(tick.symbol)
        if callback is not None:
            callback(tick)

    def place_trade(self, symbol: str, direction: TradeDirection, size: float,
                    stop_loss: float, take_profit: float) -> TradeResult:
        self._simulate()
        if self.reject_orders:
            return TradeResult(None, False, "Order rejected by venue")
        if size <= 0:
            return TradeResult(None, False, "Invalid size")

        trade_id = str(uuid.uuid4())
        order = {
            'id': trade_id,
            'symbol': symbol,
            'direction': direction,
            'size': size,
            'stop_loss': stop_loss,
            'take_profit': take_profit
        }
        with self._lock:
            self.open_positions[trade_id] = order
            self.placed.append(order)
        logger.info(f"MockBroker filled {direction.value} {size} {symbol} (SL {stop_loss:.5f} TP {take_profit:.5f})")
        return TradeResult(trade_id, True)

    def close_trade(self, trade_id: str) -> TradeResult:
        self._simulate()
        if self.reject_closes:
            return TradeResult(trade_id, False, "Close rejected by venue")
        with self._lock:
            if trade_id not in self.open_positions:
                return TradeResult(trade_id, False, "Trade not found")
            del self.open_positions[trade_id]
            self.closed_ids.append(trade_id)
        return TradeResult(trade_id, True)

    def record_closed(self, trade: Trade):
        """Add a closed trade to the venue history."""
        with self._lock:
            self.history.setdefault(trade.symbol, []).append(trade)

    def get_trade_history(self, symbol: str) -> List[Trade]:
        self._simulate()
        with self._lock:
            return list(self.history.get(symbol, []))


class ExecutionEngine:
    """
    Issues broker calls on behalf of the position manager.

    Responsibilities:
    - Timeout on every mutating call
    - Rejections, timeouts and exceptions reported as BrokerExecutionFailure
    - Kill switch (disable/enable trading)
    - Read-side passthrough: history, trade history, tick subscription
    """

    def __init__(self, broker: BrokerAdapter, config=None):
        from ..config import ExecutionConfig
        self.config = config or ExecutionConfig()
        self.broker = broker

        self.trading_enabled = True
        self.failed_calls = 0
        self._executor: Optional[ThreadPoolExecutor] = None
        if self.config.broker_timeout_seconds:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.max_workers,
                thread_name_prefix="broker"
            )

    def shutdown(self):
        """Release the broker worker threads."""
        if self._executor is not None:
            self._executor.shutdown(wait=False)
            self._executor = None
        logger.info("ExecutionEngine shutdown")

    def _call(self, operation: str, func, *args) -> TradeResult:
        """Run a broker call under the configured timeout."""
        try:
            if self._executor is None:
                result = func(*args)
            else:
                future = self._executor.submit(func, *args)
                try:
                    result = future.result(timeout=self.config.broker_timeout_seconds)
                except FutureTimeout:
                    future.cancel()
                    self.failed_calls += 1
                    raise BrokerExecutionFailure(
                        f"{operation} timed out after {self.config.broker_timeout_seconds}s",
                        operation=operation, timed_out=True
                    )
        except BrokerExecutionFailure:
            raise
        except Exception as e:
            self.failed_calls += 1
            raise BrokerExecutionFailure(f"{operation} failed: {e}", operation=operation) from e

        if not result.accepted:
            self.failed_calls += 1
            raise BrokerExecutionFailure(f"{operation} rejected: {result.reason}", operation=operation)
        return result

    def open_trade(self, symbol: str, direction: TradeDirection, size: float,
                   stop_loss: float, take_profit: float) -> TradeResult:
        if not self.trading_enabled:
            raise BrokerExecutionFailure("Trading is disabled", operation="place_trade")
        return self._call("place_trade", self.broker.place_trade,
                          symbol, direction, size, stop_loss, take_profit)

    def close_trade(self, trade_id: str) -> TradeResult:
        if not self.trading_enabled:
            raise BrokerExecutionFailure("Trading is disabled", operation="close_trade")
        return self._call("close_trade", self.broker.close_trade, trade_id)

    def fetch_price_history(self, symbol: str, timeframe: Timeframe,
                            from_ms: int, to_ms: int) -> pd.DataFrame:
        try:
            df = self.broker.get_price_history(symbol, timeframe, from_ms, to_ms)
        except DataUnavailable:
            raise
        except Exception as e:
            raise DataUnavailable(f"Price history for {symbol} unavailable: {e}") from e
        if df is None or len(df) == 0:
            raise DataUnavailable(f"No price history for {symbol} {timeframe.value}")
        return df

    def fetch_trade_history(self, symbol: str) -> List[Trade]:
        return list(self.broker.get_trade_history(symbol))

    def subscribe(self, symbol: str, callback: TickCallback):
        self.broker.subscribe_price_ticks(symbol, callback)

    def unsubscribe(self, symbol: str):
        self.broker.unsubscribe(symbol)

    def disable_trading(self, reason: str = ""):
        """Disable trading (kill switch)."""
        self.trading_enabled = False
        logger.warning(f"Trading DISABLED: {reason}")

    def enable_trading(self):
        """Enable trading."""
        self.trading_enabled = True
        logger.info("Trading enabled")
