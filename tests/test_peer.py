import pickle

import pytest

from config import GradientDescentConfig
from errors import ConfigurationError, DivergenceError
from peer import elect_leader

NAMES = ["peer-0", "peer-1", "peer-2", "peer-3"]


@pytest.mark.parametrize("n,expected", [(1, 0), (2, 1), (3, 1), (4, 2), (7, 3)])
def test_middle_leader_is_floor_half(n, expected):
    names = [f"p{i}" for i in range(n)]
    assert elect_leader(names, GradientDescentConfig()) == names[expected]


def test_min_name_leader_ignores_enumeration_order():
    cfg = GradientDescentConfig(leader_policy="min-name")
    assert elect_leader(["c", "a", "b"], cfg) == "a"
    assert elect_leader(["b", "c", "a"], cfg) == "a"


def test_explicit_leader():
    cfg = GradientDescentConfig(leader_policy="explicit", leader_peer="peer-3")
    assert elect_leader(NAMES, cfg) == "peer-3"


def test_explicit_leader_must_be_a_peer():
    cfg = GradientDescentConfig(leader_policy="explicit", leader_peer="peer-9")
    with pytest.raises(ConfigurationError):
        elect_leader(NAMES, cfg)


def test_no_peers():
    with pytest.raises(ConfigurationError):
        elect_leader([], GradientDescentConfig())


def test_divergence_error_survives_pickling():
    # Ray ships worker exceptions back to the driver pickled
    err = pickle.loads(pickle.dumps(DivergenceError(0.5, 1.0, 2.0, 4)))
    assert isinstance(err, DivergenceError)
    assert err.alpha == 0.5 and err.iteration == 4
    assert "failed to converge with alpha 0.5" in str(err)
