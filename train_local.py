"""In-process BSP runtime: one thread per peer, a shared barrier, in-memory mailboxes."""

from __future__ import annotations
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Optional, Sequence

import torch

from config import GradientDescentConfig
from errors import PeerAbortedError
from gradient_descent import RunResult, TrainingResult, train
from logger import logger
from peer import Message, OutputRecord

if TYPE_CHECKING:
    from data import TensorPartition
    from metrics import MetricsCollector
    from model import RegressionModel


class LocalPeer:
    """A peer of LocalBSPRuntime; only ever used from its own thread."""

    def __init__(self, runtime: LocalBSPRuntime, index: int, partition: TensorPartition):
        self.runtime = runtime
        self.peer_index = index
        self.peer_name = runtime.peer_names[index]
        self.num_peers = runtime.num_peers
        self.partition = partition

    def all_peer_names(self):
        return list(self.runtime.peer_names)

    def read_next(self):
        return self.partition.read_next()

    def reopen_input(self):
        self.partition.reopen()

    def send(self, peer_name: str, payload: torch.Tensor):
        target = self.runtime.index_of(peer_name)
        self.runtime.outboxes[self.peer_index].append((target, Message(self.peer_name, payload.clone())))

    def sync(self):
        try:
            self.runtime.barrier.wait()
        except threading.BrokenBarrierError as e:
            raise PeerAbortedError(f"{self.peer_name}: barrier broken by a failed peer") from e

    def drain_messages(self) -> list[Message]:
        inbox = self.runtime.inboxes[self.peer_index]
        messages = list(inbox)
        inbox.clear()
        return messages

    def write(self, theta: torch.Tensor, cost: float):
        self.runtime.record_output(OutputRecord(theta.tolist(), float(cost), self.peer_name))


class LocalBSPRuntime:
    """Runs N peers as threads of this process.

    Messages queued during a superstep are moved to their targets by the
    barrier action, which runs exactly once per barrier while every peer
    is parked, so they become visible only after the barrier. Messages
    that are not drained before the next barrier are dropped.
    """

    def __init__(self, partitions: Sequence[TensorPartition], peer_names: Optional[Sequence[str]] = None):
        if not partitions:
            raise ValueError("need at least one partition")
        self.num_peers = len(partitions)
        self.peer_names = list(peer_names) if peer_names else [f"peer-{i}" for i in range(self.num_peers)]
        if len(self.peer_names) != self.num_peers or len(set(self.peer_names)) != self.num_peers:
            raise ValueError("peer names must be unique, one per partition")
        self._index = {name: i for i, name in enumerate(self.peer_names)}

        self.outboxes: list[list[tuple[int, Message]]] = [[] for _ in range(self.num_peers)]
        self.inboxes: list[list[Message]] = [[] for _ in range(self.num_peers)]
        self.barrier = threading.Barrier(self.num_peers, action=self._deliver)
        self.superstep = 0
        self._outputs: list[OutputRecord] = []
        self._output_lock = threading.Lock()
        self.peers = [LocalPeer(self, i, p) for i, p in enumerate(partitions)]

    def index_of(self, peer_name: str) -> int:
        try:
            return self._index[peer_name]
        except KeyError:
            raise ValueError(f"unknown peer {peer_name!r}") from None

    def outputs(self) -> list[OutputRecord]:
        with self._output_lock:
            return list(self._outputs)

    def record_output(self, record: OutputRecord):
        with self._output_lock:
            self._outputs.append(record)

    def _deliver(self):
        inboxes: list[list[Message]] = [[] for _ in range(self.num_peers)]
        for outbox in self.outboxes:
            for target, message in outbox:
                inboxes[target].append(message)
            outbox.clear()
        self.inboxes = inboxes
        self.superstep += 1

    def abort(self):
        self.barrier.abort()

    def run(
        self,
        cfg: GradientDescentConfig,
        metrics: Optional[MetricsCollector] = None,
        model: Optional[RegressionModel] = None,
    ) -> RunResult:
        """Train on every peer and wait for all of them.

        If any peer fails the barrier is broken so the rest stop too, and
        the first failure that is not a PeerAbortedError is re-raised.
        """

        def peer_main(peer: LocalPeer) -> TrainingResult:
            try:
                return train(peer, cfg, model=model, metrics=metrics)
            except BaseException:
                self.abort()
                raise

        logger.debug(f"Local: starting {self.num_peers} peers")
        with ThreadPoolExecutor(max_workers=self.num_peers, thread_name_prefix="bsp-peer") as pool:
            futures = [pool.submit(peer_main, peer) for peer in self.peers]
            errors = [f.exception() for f in futures]

        failures = [e for e in errors if e is not None]
        if failures:
            root = next((e for e in failures if not isinstance(e, PeerAbortedError)), failures[0])
            raise root

        results = [f.result() for f in futures]
        logger.debug(f"Local: all peers finished after {self.superstep} supersteps")
        return RunResult(results=results, outputs=self.outputs())


def run_local(
    cfg: GradientDescentConfig,
    partitions: Sequence[TensorPartition],
    metrics: Optional[MetricsCollector] = None,
    model: Optional[RegressionModel] = None,
) -> RunResult:
    """Train with one thread per partition."""
    if metrics:
        metrics.start_training()
    try:
        return LocalBSPRuntime(partitions).run(cfg, metrics=metrics, model=model)
    finally:
        if metrics:
            metrics.stop_training()
