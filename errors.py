"""Error types raised by the BSP gradient descent job.

Every fatal condition has its own type so a runtime can tell a bad
configuration apart from a diverged run or an unreadable partition.
"""

from __future__ import annotations
from typing import Any, Optional


class GradientDescentError(Exception):
    """Base class for all fatal training conditions.

    Attributes:
        message: Human-readable description
        context: Structured key-value context for logging
    """

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.message = message
        self.context = dict(context or {})
        if cause is not None:
            self.__cause__ = cause

    def __str__(self) -> str:
        if not self.context:
            return self.message
        ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
        return f"{self.message} ({ctx})"


class ConfigurationError(GradientDescentError):
    """Invalid option or a regression model that cannot be instantiated."""


class PartitionReadError(GradientDescentError):
    """The substrate failed to read a data partition."""


class DimensionProbeError(GradientDescentError):
    """Bootstrap could not determine the feature dimensionality."""


class DivergenceError(GradientDescentError):
    """Mean cost went up between two iterations: the learning rate is too large."""

    def __init__(self, alpha: float, previous_cost: float, cost: float, iteration: int):
        super().__init__(
            f"gradient descent failed to converge with alpha {alpha}",
            context={"previous_cost": previous_cost, "cost": cost, "iteration": iteration},
        )
        self.alpha = alpha
        self.previous_cost = previous_cost
        self.cost = cost
        self.iteration = iteration

    def __reduce__(self):
        return (DivergenceError, (self.alpha, self.previous_cost, self.cost, self.iteration))


class PeerAbortedError(GradientDescentError):
    """Raised on a peer whose barrier was broken by another peer's failure."""
