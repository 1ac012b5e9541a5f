"""Regression models scored by the gradient descent coordinator."""

import math

import torch

from errors import ConfigurationError

# keeps log() finite for saturated logistic predictions
EPSILON = 1e-12


class RegressionModel:
    """Hypothesis and per-example cost for one regression family.

    Both methods take theta and x as 1-D float64 tensors of equal length.
    """

    name = "base"

    def hypothesis(self, theta: torch.Tensor, x: torch.Tensor) -> float:
        raise NotImplementedError

    def cost_for_example(self, x: torch.Tensor, y: float, theta: torch.Tensor) -> float:
        raise NotImplementedError


class LinearRegressionModel(RegressionModel):
    """h(x) = theta . x, squared-error cost."""

    name = "linear"

    def hypothesis(self, theta, x):
        return float(torch.dot(theta, x))

    def cost_for_example(self, x, y, theta):
        # float ** raises OverflowError where * gives inf
        diff = self.hypothesis(theta, x) - y
        return diff * diff / 2


class LogisticRegressionModel(RegressionModel):
    """h(x) = sigmoid(theta . x), cross-entropy cost for labels in [0, 1]."""

    name = "logistic"

    def hypothesis(self, theta, x):
        return float(torch.sigmoid(torch.dot(theta, x)))

    def cost_for_example(self, x, y, theta):
        h = min(max(self.hypothesis(theta, x), EPSILON), 1 - EPSILON)
        return -y * math.log(h) - (1 - y) * math.log(1 - h)


MODELS = {
    "linear": LinearRegressionModel,
    "logistic": LogisticRegressionModel,
}


def build_regression_model(name: str) -> RegressionModel:
    """Instantiate a model from its configuration string.

    Accepts the short name ("linear") or the class name
    ("LinearRegressionModel"), case-insensitively.
    """
    key = (name or "").strip().lower()
    for short, model_cls in MODELS.items():
        if key in (short, model_cls.__name__.lower()):
            return model_cls()
    raise ConfigurationError(
        f"cannot instantiate regression model {name!r}", {"choices": ", ".join(MODELS)}
    )
