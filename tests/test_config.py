import pytest

from config import GradientDescentConfig
from errors import ConfigurationError


def test_defaults():
    cfg = GradientDescentConfig()
    assert cfg.initial_theta_value == 10
    assert cfg.alpha == pytest.approx(0.003)
    assert cfg.threshold == pytest.approx(0.1)
    assert cfg.regression_model == "linear"
    assert cfg.leader_policy == "middle"
    assert cfg.max_iterations == 0


def test_from_dotted_options():
    cfg = GradientDescentConfig.from_dict(
        {
            "initial.theta.values": "3",
            "alpha": "0.5",
            "threshold": 0.01,
            "regression.model.class": "logistic",
            "unrelated.option": "ignored",
        }
    )
    assert cfg.initial_theta_value == 3
    assert cfg.alpha == 0.5
    assert cfg.threshold == 0.01
    assert cfg.regression_model == "logistic"


def test_field_names_are_accepted():
    cfg = GradientDescentConfig.from_dict({"alpha": 0.2, "leader_policy": "min-name"})
    assert cfg.alpha == 0.2
    assert cfg.leader_policy == "min-name"


def test_round_trip_through_dotted_form():
    cfg = GradientDescentConfig(alpha=0.25, leader_policy="explicit", leader_peer="peer-3")
    assert GradientDescentConfig.from_dict(cfg.to_dict()) == cfg


@pytest.mark.parametrize(
    "options",
    [
        {"alpha": 0},
        {"alpha": -1},
        {"threshold": -0.1},
        {"alpha": "fast"},
        {"leader.policy": "oldest"},
        {"leader.policy": "explicit"},
        {"max.iterations": -2},
    ],
)
def test_invalid_options(options):
    with pytest.raises(ConfigurationError):
        GradientDescentConfig.from_dict(options)
