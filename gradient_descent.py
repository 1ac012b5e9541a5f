"""Batch gradient descent as a sequence of BSP supersteps.

Every peer runs `train` on its own partition. One iteration is four
supersteps separated by barriers:

  1. evaluate_cost      local cost sum/count, sent to every other peer
  2. aggregate_cost     global mean cost, convergence test
  3. evaluate_gradient  local partial gradient, sent to every other peer
  4. aggregate_gradient global gradient, one update of theta

All peers see the same aggregates, so they take the same convergence
decision and keep identical copies of theta without further coordination.
"""

from __future__ import annotations
import math
import sys
import time
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Iterator, Optional

import torch

from config import GradientDescentConfig
from errors import DimensionProbeError, DivergenceError, GradientDescentError, PartitionReadError
from logger import logger
from model import RegressionModel, build_regression_model
from peer import BSPPeer, OutputRecord, elect_leader

if TYPE_CHECKING:
    from metrics import MetricsCollector

# previous cost before the first iteration, so the divergence test cannot fire
INITIAL_COST = sys.float_info.max
BYTES_PER_DOUBLE = 8


@dataclass(frozen=True)
class CostPartial:
    total: float
    count: int

    def __add__(self, other: CostPartial) -> CostPartial:
        return CostPartial(self.total + other.total, self.count + other.count)

    def mean(self) -> float:
        return self.total / self.count

    def to_payload(self) -> torch.Tensor:
        return torch.tensor([self.total, float(self.count)], dtype=torch.float64)

    @classmethod
    def from_payload(cls, payload: torch.Tensor) -> CostPartial:
        return cls(float(payload[0]), int(payload[1]))


@dataclass(frozen=True)
class TrainingState:
    """Loop-carried state of one peer between iterations."""
    theta: torch.Tensor
    cost: float = INITIAL_COST
    iteration: int = 0
    converged: bool = False


@dataclass
class TrainingResult:
    peer_name: str
    theta: list[float]
    cost: float
    iterations: int
    converged: bool
    is_leader: bool


@dataclass
class RunResult:
    """Per-peer results of a whole job plus everything the leader wrote."""
    results: list[TrainingResult]
    outputs: list[OutputRecord] = field(default_factory=list)

    @property
    def leader(self) -> TrainingResult:
        return next(r for r in self.results if r.is_leader)


def iter_partition(peer: BSPPeer) -> Iterator[tuple[torch.Tensor, float]]:
    """Yield every remaining record of the local partition."""
    while True:
        try:
            record = peer.read_next()
        except OSError as e:
            raise PartitionReadError(f"{peer.peer_name}: failed to read partition", cause=e) from e
        if record is None:
            return
        yield record


def broadcast(peer: BSPPeer, payload: torch.Tensor) -> int:
    """Send payload to every peer but this one; returns bytes sent."""
    sent = 0
    for name in peer.all_peer_names():
        if name != peer.peer_name:
            peer.send(name, payload)
            sent += payload.numel() * BYTES_PER_DOUBLE
    return sent


def drain_remote(peer: BSPPeer) -> list[torch.Tensor]:
    """Payloads received since the last barrier, minus anything this peer sent itself."""
    return [m.payload for m in peer.drain_messages() if m.sender != peer.peer_name]


# --------------------------- Bootstrap ---------------------------


def probe_dimension(peer: BSPPeer) -> int:
    """Read one record to learn the feature count, then rewind the partition."""
    try:
        record = peer.read_next()
    except OSError as e:
        raise DimensionProbeError(f"{peer.peer_name}: cannot read input vector size", cause=e) from e
    peer.reopen_input()
    if record is None:
        raise DimensionProbeError(f"{peer.peer_name}: cannot read input vector size, partition is empty")
    x, _ = record
    return int(x.numel())


def bootstrap(peer: BSPPeer, cfg: GradientDescentConfig, is_leader: bool) -> torch.Tensor:
    """Create theta on the leader and hand a copy to every other peer.

    Costs one barrier. Followers return only after theta has arrived.
    """
    theta = None
    if is_leader:
        size = probe_dimension(peer)
        theta = torch.full((size,), float(cfg.initial_theta_value), dtype=torch.float64)
        broadcast(peer, theta)
        logger.info(f"{peer.peer_name}: sending theta of size {size}")
    else:
        logger.info(f"{peer.peer_name}: getting theta")

    peer.sync()
    received = drain_remote(peer)

    if theta is None:
        if not received:
            raise DimensionProbeError(f"{peer.peer_name}: no theta received from the leader")
        theta = received[0].to(torch.float64).clone()
    return theta


# --------------------------- Supersteps ---------------------------


def evaluate_cost(peer: BSPPeer, model: RegressionModel, theta: torch.Tensor) -> CostPartial:
    """Superstep 1: score the whole partition and share (sum, count)."""
    total = 0.0
    count = 0
    for x, y in iter_partition(peer):
        total += model.cost_for_example(x, y, theta)
        count += 1

    local = CostPartial(total, count)
    broadcast(peer, local.to_payload())
    peer.sync()
    return local


def collect_contributions(peer: BSPPeer, local: torch.Tensor) -> list[torch.Tensor]:
    """Every peer's contribution for this superstep, in all_peer_names() order.

    The local value stands in for this peer; self-sends are dropped so it
    counts once. Summing in one fixed order gives bit-identical totals on
    every peer.
    """
    by_sender = {peer.peer_name: local}
    for message in peer.drain_messages():
        if message.sender == peer.peer_name:
            continue
        if message.sender in by_sender:
            raise GradientDescentError(f"{peer.peer_name}: duplicate message from {message.sender}")
        by_sender[message.sender] = message.payload

    names = list(peer.all_peer_names())
    missing = [name for name in names if name not in by_sender]
    if missing:
        raise GradientDescentError(f"{peer.peer_name}: no contribution from {', '.join(missing)}")
    return [by_sender[name] for name in names]


def aggregate_cost(peer: BSPPeer, local: CostPartial) -> CostPartial:
    """Superstep 2 (first half): add every remote (sum, count) to the local pair."""
    result = CostPartial(0.0, 0)
    for payload in collect_contributions(peer, local.to_payload()):
        result = result + CostPartial.from_payload(payload)
    return result


def check_convergence(cost: float, previous_cost: float, cfg: GradientDescentConfig, iteration: int) -> bool:
    """Superstep 2 (second half): decide whether to stop.

    Raises DivergenceError if the mean cost went up (or is NaN), returns
    True once it is zero or under the threshold.
    """
    if math.isnan(cost) or cost > previous_cost:
        raise DivergenceError(cfg.alpha, previous_cost, cost, iteration)
    return cost == 0 or cost < cfg.threshold


def evaluate_gradient(peer: BSPPeer, model: RegressionModel, theta: torch.Tensor) -> torch.Tensor:
    """Superstep 3: per-feature sum of (h(theta, x) - y) * x_j over the partition."""
    delta = torch.zeros_like(theta)
    for x, y in iter_partition(peer):
        difference = model.hypothesis(theta, x) - y
        delta += difference * x

    broadcast(peer, delta)
    peer.sync()
    return delta


def aggregate_gradient(peer: BSPPeer, local: torch.Tensor) -> torch.Tensor:
    """Superstep 4 (first half): sum all partial gradients feature-wise.

    Every message is accumulated before anything touches theta.
    """
    gradient = torch.zeros_like(local)
    for part in collect_contributions(peer, local):
        if part.shape != gradient.shape:
            raise GradientDescentError(
                f"{peer.peer_name}: partial gradient has shape {tuple(part.shape)}, expected {tuple(gradient.shape)}"
            )
        gradient += part
    return gradient


def apply_update(theta: torch.Tensor, gradient: torch.Tensor, alpha: float) -> torch.Tensor:
    """Superstep 4 (second half): theta_j <- theta_j - alpha * gradient_j, once."""
    return theta - alpha * gradient


# --------------------------- Driver ---------------------------


def run_iteration(
    peer: BSPPeer,
    model: RegressionModel,
    state: TrainingState,
    cfg: GradientDescentConfig,
    is_leader: bool,
) -> TrainingState:
    """Run the four supersteps once and return the next state.

    A converged state carries the final cost and the unchanged theta.
    """
    iteration = state.iteration + 1

    local_cost = evaluate_cost(peer, model, state.theta)
    total = aggregate_cost(peer, local_cost)
    if total.count == 0:
        raise PartitionReadError(f"{peer.peer_name}: no training examples on any peer")
    cost = total.mean()

    if check_convergence(cost, state.cost, cfg, iteration):
        logger.info(f"{peer.peer_name}: finishing! cost={cost:.6g} after {iteration} iterations")
        return replace(state, cost=cost, iteration=iteration, converged=True)
    logger.info(f"{peer.peer_name}: cost is {cost:.6g} (iteration {iteration})")

    peer.reopen_input()
    peer.sync()

    local_gradient = evaluate_gradient(peer, model, state.theta)
    gradient = aggregate_gradient(peer, local_gradient)
    theta = apply_update(state.theta, gradient, cfg.alpha)
    logger.debug(f"{peer.peer_name}: new theta for cost {cost:.6g} is {theta.tolist()}")

    if is_leader:
        peer.write(theta, cost)

    peer.reopen_input()
    peer.sync()
    return TrainingState(theta=theta, cost=cost, iteration=iteration)


def train(
    peer: BSPPeer,
    cfg: GradientDescentConfig,
    model: Optional[RegressionModel] = None,
    metrics: Optional[MetricsCollector] = None,
) -> TrainingResult:
    """Fit theta on this peer's partition in lock-step with the other peers.

    Returns on convergence (or after cfg.max_iterations, when set); raises
    DivergenceError if the cost goes up. Either way, once an iteration has
    completed, the leader writes the last accepted (theta, cost) on the way out.
    """
    if model is None:
        model = build_regression_model(cfg.regression_model)
    leader = elect_leader(list(peer.all_peer_names()), cfg)
    is_leader = peer.peer_name == leader
    logger.debug(f"{peer.peer_name}: leader is {leader}, model={model.name}, alpha={cfg.alpha}, threshold={cfg.threshold}")

    state: Optional[TrainingState] = None
    try:
        state = TrainingState(theta=bootstrap(peer, cfg, is_leader))
        dim = state.theta.numel()
        cost_bytes = (peer.num_peers - 1) * 2 * BYTES_PER_DOUBLE
        gradient_bytes = (peer.num_peers - 1) * dim * BYTES_PER_DOUBLE

        while not state.converged:
            if cfg.max_iterations and state.iteration >= cfg.max_iterations:
                logger.warning(f"{peer.peer_name}: stopping after {state.iteration} iterations without convergence")
                break
            t0 = time.time()
            state = run_iteration(peer, model, state, cfg, is_leader)
            if metrics:
                metrics.record_iteration(
                    peer=peer.peer_name,
                    step=state.iteration,
                    cost=state.cost,
                    latency_ms=(time.time() - t0) * 1000,
                    comm_bytes=cost_bytes if state.converged else cost_bytes + gradient_bytes,
                )
                if is_leader and not state.converged:
                    metrics.record_output(peer.peer_name, state.iteration, state.cost)
    finally:
        # no cost has been measured before the first iteration completes
        if state is not None and state.iteration > 0:
            logger.info(f"{peer.peer_name}: computation finished with cost {state.cost:.6g} for theta {state.theta.tolist()}")
            if is_leader:
                peer.write(state.theta, state.cost)
            if metrics:
                if is_leader:
                    metrics.record_output(peer.peer_name, state.iteration, state.cost)
                metrics.record_final(peer.peer_name, state.iteration, state.cost, state.converged)

    return TrainingResult(
        peer_name=peer.peer_name,
        theta=state.theta.tolist(),
        cost=state.cost,
        iterations=state.iteration,
        converged=state.converged,
        is_leader=is_leader,
    )
