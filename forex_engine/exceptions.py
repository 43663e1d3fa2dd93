"""
Engine Errors
=============
Error taxonomy shared by every stage of the decision pipeline.

Indicator and classifier code degrades to explicit "not ready" results
instead of raising; these exceptions cover the cases that must surface.
"""

from typing import List, Optional


class EngineError(Exception):
    """Base class for all engine errors."""


class InsufficientData(EngineError):
    """Fewer price points than a computation requires."""

    def __init__(self, message: str, required: int = 0, available: int = 0):
        super().__init__(message)
        self.required = required
        self.available = available


class InvalidParameters(EngineError):
    """Strategy parameters violate one or more invariants."""

    def __init__(self, violations: List[str]):
        self.violations = list(violations)
        super().__init__("Invalid strategy parameters: " + "; ".join(self.violations))


class BrokerExecutionFailure(EngineError):
    """A broker call was rejected, raised, or timed out."""

    def __init__(self, message: str, operation: str = "", timed_out: bool = False):
        super().__init__(message)
        self.operation = operation
        self.timed_out = timed_out


class DataGap(EngineError):
    """The live tick stream is interrupted."""


class DataUnavailable(EngineError):
    """The venue has no data for the requested range."""


class MalformedData(EngineError):
    """Historical data is structurally broken (ordering, NaN, bad OHLC)."""

    def __init__(self, message: str, index: Optional[int] = None):
        super().__init__(message)
        self.index = index


class OptimizationCancelled(EngineError):
    """Optimization stopped early by a cancel request."""

    def __init__(self, message: str = "Optimization cancelled", evaluated: int = 0):
        super().__init__(message)
        self.evaluated = evaluated
