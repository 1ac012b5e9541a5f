"""BSP runtime on Ray actors.

A single BSPMessageBroker actor holds every mailbox and the barrier
counter; each BSPWorker actor owns one partition and runs the coordinator.
Broker methods never block, so workers poll for the barrier to release.
"""

from __future__ import annotations
import os
import time
from typing import TYPE_CHECKING, Optional, Sequence

import ray
import torch
from ray.exceptions import RayTaskError

from config import GradientDescentConfig
from errors import PeerAbortedError
from gradient_descent import RunResult, train
from logger import logger
from metrics import MetricsCollector
from peer import Message, OutputRecord
from utils import setup_actor_logging

if TYPE_CHECKING:
    from data import TensorPartition
    from model import RegressionModel

POLL_INTERVAL_SEC = 0.001
PROJECT_DIR = os.path.dirname(os.path.abspath(__file__))


def init_ray(**kwargs):
    """ray.init() with this checkout importable from every worker process."""
    runtime_env = kwargs.pop("runtime_env", {"env_vars": {"PYTHONPATH": PROJECT_DIR}})
    return ray.init(ignore_reinit_error=True, include_dashboard=False, runtime_env=runtime_env, **kwargs)


@ray.remote(num_cpus=0)
class BSPMessageBroker:

    def __init__(self, peer_names: Sequence[str]):
        # Configure logging for this Ray actor
        self.logger = setup_actor_logging()

        self.peer_names = list(peer_names)
        self.pending: dict[str, list[Message]] = {name: [] for name in self.peer_names}
        self.delivered: dict[str, list[Message]] = {name: [] for name in self.peer_names}
        self.arrived: set[str] = set()
        self.generation = 0  # number of completed barriers
        self.abort_reason: Optional[str] = None
        self.outputs: list[OutputRecord] = []

    def send(self, sender: str, target: str, payload: torch.Tensor):
        self.pending[target].append(Message(sender, payload))

    def arrive(self, peer_name: str) -> int:
        """Register peer_name at the current barrier; returns the generation it waits to pass."""
        target = self.generation + 1
        self.arrived.add(peer_name)
        if len(self.arrived) == len(self.peer_names):
            # Everyone is here: last superstep's messages become visible
            self.delivered = self.pending
            self.pending = {name: [] for name in self.peer_names}
            self.arrived.clear()
            self.generation += 1
            self.logger.debug(f"Broker: barrier {self.generation} released")
        return target

    def poll(self) -> tuple[int, Optional[str]]:
        return self.generation, self.abort_reason

    def drain(self, peer_name: str) -> list[Message]:
        messages = self.delivered[peer_name]
        self.delivered[peer_name] = []
        return messages

    def write(self, record: OutputRecord):
        self.outputs.append(record)

    def get_outputs(self) -> list[OutputRecord]:
        return list(self.outputs)

    def abort(self, reason: str):
        if self.abort_reason is None:
            self.abort_reason = reason
            self.logger.debug(f"Broker: aborted: {reason}")


class RayBSPPeer:
    """BSPPeer backed by a BSPMessageBroker; lives inside a BSPWorker actor."""

    def __init__(self, broker, peer_names: Sequence[str], index: int, partition: TensorPartition):
        self.broker = broker
        self._peer_names = list(peer_names)
        self.peer_index = index
        self.peer_name = self._peer_names[index]
        self.num_peers = len(self._peer_names)
        self.partition = partition

    def all_peer_names(self):
        return list(self._peer_names)

    def read_next(self):
        return self.partition.read_next()

    def reopen_input(self):
        self.partition.reopen()

    def send(self, peer_name: str, payload: torch.Tensor):
        if peer_name not in self._peer_names:
            raise ValueError(f"unknown peer {peer_name!r}")
        # Calls from one caller run in submission order, so sends land before our arrive()
        self.broker.send.remote(self.peer_name, peer_name, payload.clone())

    def sync(self):
        target = ray.get(self.broker.arrive.remote(self.peer_name))
        while True:
            generation, abort_reason = ray.get(self.broker.poll.remote())
            if abort_reason is not None:
                raise PeerAbortedError(f"{self.peer_name}: job aborted: {abort_reason}")
            if generation >= target:
                return
            # Backoff before retrying
            time.sleep(POLL_INTERVAL_SEC)

    def drain_messages(self) -> list[Message]:
        return ray.get(self.broker.drain.remote(self.peer_name))

    def write(self, theta: torch.Tensor, cost: float):
        ray.get(self.broker.write.remote(OutputRecord(theta.tolist(), float(cost), self.peer_name)))


@ray.remote
class BSPWorker:

    def __init__(self, broker, peer_names: Sequence[str], index: int, partition: TensorPartition, cfg: GradientDescentConfig):
        # Configure logging for this Ray actor
        self.logger = setup_actor_logging()

        self.broker = broker
        self.peer = RayBSPPeer(broker, peer_names, index, partition)
        self.cfg = cfg

    def run(self, model: Optional[RegressionModel] = None, collect_metrics: bool = False) -> dict:
        """Run the coordinator; returns the result and recorded events for the driver."""
        metrics = MetricsCollector(mode="ray", run_id=self.peer.peer_name) if collect_metrics else None
        self.logger.debug(f"Ray: {self.peer.peer_name} starting")
        try:
            result = train(self.peer, self.cfg, model=model, metrics=metrics)
        except Exception as e:
            self.broker.abort.remote(f"{self.peer.peer_name} failed: {type(e).__name__}: {e}")
            raise
        return {
            "result": result,
            "events": metrics.events if metrics else [],
        }


class RayBSPRuntime:
    """Runs one BSPWorker actor per partition around a shared broker."""

    def __init__(self, partitions: Sequence[TensorPartition]):
        if not partitions:
            raise ValueError("need at least one partition")
        self.partitions = list(partitions)
        self.peer_names = [f"peer-{i}" for i in range(len(self.partitions))]
        self.broker = BSPMessageBroker.remote(self.peer_names)

    def outputs(self) -> list[OutputRecord]:
        return ray.get(self.broker.get_outputs.remote())

    def run(
        self,
        cfg: GradientDescentConfig,
        metrics: Optional[MetricsCollector] = None,
        model: Optional[RegressionModel] = None,
    ) -> RunResult:
        workers = [
            BSPWorker.remote(self.broker, self.peer_names, i, partition, cfg)
            for i, partition in enumerate(self.partitions)
        ]
        logger.debug(f"Ray: started {len(workers)} workers")
        refs = [w.run.remote(model, metrics is not None) for w in workers]

        stats, failures = [], []
        for ref in refs:
            try:
                stats.append(ray.get(ref))
            except RayTaskError as e:
                failures.append(_unwrap(e))

        if failures:
            raise next((e for e in failures if not isinstance(e, PeerAbortedError)), failures[0])

        if metrics:
            for s in stats:
                metrics.extend(s["events"])
        return RunResult(results=[s["result"] for s in stats], outputs=self.outputs())


def _unwrap(error: RayTaskError) -> BaseException:
    cause = getattr(error, "cause", None)
    return cause if isinstance(cause, BaseException) else error


def run_ray(
    cfg: GradientDescentConfig,
    partitions: Sequence[TensorPartition],
    metrics: Optional[MetricsCollector] = None,
    model: Optional[RegressionModel] = None,
) -> RunResult:
    """Train with one Ray actor per partition. call init_ray() first."""
    if metrics:
        metrics.start_training()
    try:
        return RayBSPRuntime(partitions).run(cfg, metrics=metrics, model=model)
    finally:
        if metrics:
            metrics.stop_training()
