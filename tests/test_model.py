import math

import pytest
import torch

from errors import ConfigurationError
from model import LinearRegressionModel, LogisticRegressionModel, build_regression_model


def t(*values):
    return torch.tensor(values, dtype=torch.float64)


def test_linear_hypothesis_and_cost():
    model = LinearRegressionModel()
    theta, x = t(2.0, -1.0), t(1.0, 3.0)
    assert model.hypothesis(theta, x) == pytest.approx(-1.0)
    assert model.cost_for_example(x, 1.0, theta) == pytest.approx(2.0)


def test_logistic_hypothesis_and_cost():
    model = LogisticRegressionModel()
    theta, x = t(0.0, 0.0), t(1.0, 5.0)
    assert model.hypothesis(theta, x) == pytest.approx(0.5)
    assert model.cost_for_example(x, 1.0, theta) == pytest.approx(math.log(2))
    assert model.cost_for_example(x, 0.0, theta) == pytest.approx(math.log(2))


def test_logistic_cost_stays_finite_when_saturated():
    model = LogisticRegressionModel()
    cost = model.cost_for_example(t(1.0), 0.0, t(1000.0))
    assert math.isfinite(cost)
    assert cost > 20


@pytest.mark.parametrize(
    "name,cls",
    [
        ("linear", LinearRegressionModel),
        ("LINEAR", LinearRegressionModel),
        ("LinearRegressionModel", LinearRegressionModel),
        ("logistic", LogisticRegressionModel),
        (" LogisticRegressionModel ", LogisticRegressionModel),
    ],
)
def test_factory(name, cls):
    assert isinstance(build_regression_model(name), cls)


@pytest.mark.parametrize("name", ["", "polynomial", "org.example.Model", None])
def test_factory_rejects_unknown(name):
    with pytest.raises(ConfigurationError):
        build_regression_model(name)
