from __future__ import annotations
from dataclasses import dataclass, fields
from typing import Any, Mapping, Optional

from errors import ConfigurationError

LEADER_POLICIES = ("middle", "min-name", "explicit")

# dotted option name -> dataclass field
OPTION_NAMES = {
    "initial.theta.values": "initial_theta_value",
    "alpha": "alpha",
    "threshold": "threshold",
    "regression.model.class": "regression_model",
    "leader.policy": "leader_policy",
    "leader.peer": "leader_peer",
    "max.iterations": "max_iterations",
}


@dataclass
class GradientDescentConfig:
    initial_theta_value: int = 10  # scalar fill for every entry of theta
    alpha: float = 0.003  # learning rate
    threshold: float = 0.1  # convergence threshold on mean cost
    regression_model: str = "linear"  # "linear" | "logistic"
    leader_policy: str = "middle"  # how the single writer is chosen
    leader_peer: Optional[str] = None  # peer name when leader_policy == "explicit"
    max_iterations: int = 0  # 0 = run until convergence or divergence

    @classmethod
    def from_dict(cls, options: Mapping[str, Any]) -> GradientDescentConfig:
        """Build a config from dotted option names (or field names).

        Unknown keys are ignored so a job configuration can carry options
        meant for other components.
        """
        types = {f.name: f.type for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in options.items():
            name = OPTION_NAMES.get(key, key)
            if name not in types:
                continue
            kwargs[name] = _coerce(name, value)
        cfg = cls(**kwargs)
        cfg.validate()
        return cfg

    def to_dict(self) -> dict[str, Any]:
        return {option: getattr(self, name) for option, name in OPTION_NAMES.items()}

    def validate(self):
        if not self.alpha > 0:
            raise ConfigurationError("alpha must be positive", {"alpha": self.alpha})
        if self.threshold < 0:
            raise ConfigurationError("threshold must not be negative", {"threshold": self.threshold})
        if self.leader_policy not in LEADER_POLICIES:
            raise ConfigurationError(
                f"unknown leader policy {self.leader_policy!r}", {"choices": ", ".join(LEADER_POLICIES)}
            )
        if self.leader_policy == "explicit" and not self.leader_peer:
            raise ConfigurationError("leader.policy=explicit requires leader.peer")
        if self.max_iterations < 0:
            raise ConfigurationError("max.iterations must not be negative", {"max_iterations": self.max_iterations})


def _coerce(name: str, value: Any) -> Any:
    try:
        if name in ("initial_theta_value", "max_iterations"):
            return int(value)
        if name in ("alpha", "threshold"):
            return float(value)
        return None if value is None else str(value)
    except (TypeError, ValueError) as e:
        raise ConfigurationError(f"invalid value for {name}: {value!r}", cause=e) from e
