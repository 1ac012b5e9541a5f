"""End-to-end runs on the threaded runtime: the properties the protocol promises."""

from concurrent.futures import ThreadPoolExecutor

import pytest
import torch

from config import GradientDescentConfig
from conftest import constant_partitions
from data import make_linear_data, shard
from errors import ConfigurationError, DimensionProbeError, DivergenceError
from gradient_descent import (
    CostPartial,
    aggregate_cost,
    aggregate_gradient,
    evaluate_cost,
    evaluate_gradient,
)
from metrics import MetricsCollector
from model import LinearRegressionModel
from train_local import LocalBSPRuntime, run_local


def run_on_every_peer(runtime, fn):
    with ThreadPoolExecutor(max_workers=runtime.num_peers) as pool:
        return list(pool.map(fn, runtime.peers))


# --------------------------- Convergence / divergence ---------------------------


def test_single_peer_converges_below_threshold():
    cfg = GradientDescentConfig(alpha=0.1, threshold=0.01)
    result = run_local(cfg, constant_partitions([5]))

    leader = result.leader
    assert leader.converged
    assert leader.cost < 0.01
    assert leader.iterations <= 50
    assert leader.theta == pytest.approx([1.0], abs=0.15)


def test_cost_never_increases():
    cfg = GradientDescentConfig(alpha=0.1, threshold=0.01)
    metrics = MetricsCollector(mode="local", run_id="monotone")
    run_local(cfg, constant_partitions([5]), metrics=metrics)

    costs = [cost for _, cost in metrics.cost_history]
    assert len(costs) > 2
    assert all(later <= earlier for earlier, later in zip(costs, costs[1:]))


@pytest.mark.parametrize("sizes", [[5], [2, 2, 1]])
def test_large_alpha_diverges(sizes):
    cfg = GradientDescentConfig(alpha=100, threshold=0.01)
    with pytest.raises(DivergenceError, match="failed to converge with alpha 100"):
        run_local(cfg, constant_partitions(sizes))


def test_divergence_still_writes_last_accepted_state():
    cfg = GradientDescentConfig(alpha=100, threshold=0.01)
    runtime = LocalBSPRuntime(constant_partitions([5]))
    with pytest.raises(DivergenceError):
        runtime.run(cfg)

    outputs = runtime.outputs()
    # one write after iteration 1, then the final write on the way out
    assert len(outputs) == 2
    assert outputs[-1].theta == outputs[0].theta == [10.0 - 100 * 5 * 9.0]
    assert outputs[-1].cost == pytest.approx(40.5)


def test_overflowing_cost_is_reported_as_divergence():
    # theta reaches ~ -4.5e161 after one update; its squared error overflows to inf
    cfg = GradientDescentConfig(alpha=1e160, threshold=0.01)
    runtime = LocalBSPRuntime(constant_partitions([2, 3]))
    with pytest.raises(DivergenceError):
        runtime.run(cfg)

    outputs = runtime.outputs()
    assert outputs[-1].cost == pytest.approx(40.5)
    assert {o.peer_name for o in outputs} == {"peer-1"}


def test_max_iterations_stops_without_convergence():
    cfg = GradientDescentConfig(alpha=0.01, threshold=0.0, max_iterations=3)
    result = run_local(cfg, constant_partitions([2, 2]))
    assert all(r.iterations == 3 and not r.converged for r in result.results)


# --------------------------- Aggregation ---------------------------


def test_cost_aggregation_conserves_sum_and_count():
    runtime = LocalBSPRuntime(shard(*make_linear_data(10, 3, seed=1), 3))
    theta = torch.full((3,), 0.5, dtype=torch.float64)
    model = LinearRegressionModel()

    def both(peer):
        local = evaluate_cost(peer, model, theta)
        return local, aggregate_cost(peer, local)

    outcomes = run_on_every_peer(runtime, both)
    locals_ = [local for local, _ in outcomes]
    totals = {total for _, total in outcomes}

    assert len(totals) == 1
    total = totals.pop()
    assert total.count == 10 == sum(len(p.partition) for p in runtime.peers)
    assert total.total == pytest.approx(sum(l.total for l in locals_))


def test_self_sends_are_not_double_counted():
    runtime = LocalBSPRuntime(constant_partitions([3, 5, 2]))

    def send_to_everyone(peer):
        local = CostPartial(float(len(peer.partition)), len(peer.partition))
        for name in peer.all_peer_names():
            peer.send(name, local.to_payload())
        peer.sync()
        return aggregate_cost(peer, local)

    totals = run_on_every_peer(runtime, send_to_everyone)
    assert all(t == CostPartial(10.0, 10) for t in totals)


def test_gradient_aggregation_is_the_sum_of_partials():
    runtime = LocalBSPRuntime(shard(*make_linear_data(12, 4, seed=2), 4))
    theta = torch.zeros(4, dtype=torch.float64)
    model = LinearRegressionModel()

    def both(peer):
        local = evaluate_gradient(peer, model, theta)
        return local, aggregate_gradient(peer, local)

    outcomes = run_on_every_peer(runtime, both)
    expected = sum(local for local, _ in outcomes)
    for _, gradient in outcomes:
        assert torch.allclose(gradient, expected)
    assert all(torch.equal(outcomes[0][1], g) for _, g in outcomes)


def test_messages_are_not_visible_before_the_barrier():
    runtime = LocalBSPRuntime(constant_partitions([1, 1]))

    def exchange(peer):
        other = [n for n in peer.all_peer_names() if n != peer.peer_name][0]
        peer.send(other, torch.tensor([1.0], dtype=torch.float64))
        early = peer.drain_messages()
        peer.sync()
        late = peer.drain_messages()
        again = peer.drain_messages()
        return early, late, again

    for early, late, again in run_on_every_peer(runtime, exchange):
        assert early == []
        assert len(late) == 1
        assert again == []


# --------------------------- Replicas / leader ---------------------------


def test_all_peers_end_with_identical_theta_of_probed_dimension():
    X, y = make_linear_data(60, 4, noise=0.0, seed=3)
    cfg = GradientDescentConfig(alpha=0.005, threshold=0.05, initial_theta_value=0, max_iterations=300)
    result = run_local(cfg, shard(X, y, 3))

    thetas = [r.theta for r in result.results]
    assert all(len(t) == 4 for t in thetas)
    assert all(t == thetas[0] for t in thetas)
    assert len({r.iterations for r in result.results}) == 1
    assert all(len(o.theta) == 4 for o in result.outputs)


@pytest.mark.parametrize("num_peers,leader", [(1, "peer-0"), (2, "peer-1"), (4, "peer-2"), (5, "peer-2")])
def test_only_the_middle_peer_writes(num_peers, leader):
    cfg = GradientDescentConfig(alpha=0.05, threshold=0.01)
    result = run_local(cfg, constant_partitions([1] * num_peers))

    assert result.outputs
    assert {o.peer_name for o in result.outputs} == {leader}
    assert [r.peer_name for r in result.results if r.is_leader] == [leader]
    # the last record is the final state
    assert result.outputs[-1].cost == result.leader.cost


def test_explicit_leader_policy():
    cfg = GradientDescentConfig(alpha=0.05, threshold=0.01, leader_policy="explicit", leader_peer="peer-0")
    result = run_local(cfg, constant_partitions([1, 1, 1]))
    assert {o.peer_name for o in result.outputs} == {"peer-0"}


# --------------------------- Failures ---------------------------


def test_empty_leader_partition_fails_bootstrap():
    # peer-1 is the leader of two peers and has nothing to probe
    with pytest.raises(DimensionProbeError):
        run_local(GradientDescentConfig(), constant_partitions([3, 0]))


def test_unknown_model_is_a_configuration_error():
    with pytest.raises(ConfigurationError):
        run_local(GradientDescentConfig(regression_model="quadratic"), constant_partitions([2, 2]))


def test_runtime_rejects_duplicate_peer_names():
    with pytest.raises(ValueError):
        LocalBSPRuntime(constant_partitions([1, 1]), peer_names=["a", "a"])


def test_converging_iteration_counts_only_cost_traffic():
    metrics = MetricsCollector(mode="local", run_id="comm")
    run_local(GradientDescentConfig(alpha=0.05, threshold=0.01), constant_partitions([1, 1]), metrics=metrics)

    iterations = [e for e in metrics.events if e.event_type == "iteration"]
    last = max(e.step for e in iterations)
    # one other peer: 2 doubles of cost, plus 1 double of gradient when not converged
    assert {e.comm_bytes for e in iterations if e.step == last} == {16}
    assert {e.comm_bytes for e in iterations if e.step < last} == {24}
