"""
Metrics collection for BSP gradient descent runs.

Collects metrics in-memory during training and writes to JSONL at the end
to minimize performance impact.
"""

from __future__ import annotations
import json
import threading
import time
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional


@dataclass
class MetricEvent:
    """Unified event schema for all metrics."""
    event_type: str  # "iteration", "output", "final"
    step: int
    timestamp: float
    cost: Optional[float] = None
    latency_ms: Optional[float] = None
    comm_bytes: Optional[int] = None
    peer: Optional[str] = None
    converged: Optional[bool] = None
    mode: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary, omitting None values."""
        d = asdict(self)
        return {k: v for k, v in d.items() if v is not None}


class MetricsCollector:
    """In-memory metrics collector shared by all peers of one run.

    The threaded runtime lets several peers record into the same
    collector, so appends go through a lock.
    """

    def __init__(self, mode: str, run_id: str):
        self.mode = mode
        self.run_id = run_id
        self.events: list[MetricEvent] = []
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

        # Aggregated stats
        self.total_comm_bytes = 0
        self.cost_history: list[tuple[int, float]] = []  # (iteration, cost), leader only
        self._lock = threading.Lock()

    def start_training(self):
        """Mark training start time."""
        self.start_time = time.time()

    def stop_training(self):
        """Mark training end time."""
        self.end_time = time.time()

    def record_iteration(self, peer: str, step: int, cost: float, latency_ms: float, comm_bytes: int = 0):
        """Record one full iteration (four supersteps) on one peer.

        Args:
            peer: Peer name
            step: Iteration number, starting at 1
            cost: Mean cost agreed on in the convergence test
            latency_ms: Wall time of the iteration
            comm_bytes: Bytes this peer sent during the iteration
        """
        event = MetricEvent(
            event_type="iteration",
            step=step,
            timestamp=time.time(),
            cost=cost,
            latency_ms=latency_ms,
            comm_bytes=comm_bytes if comm_bytes > 0 else None,
            peer=peer,
            mode=self.mode,
        )
        with self._lock:
            self.events.append(event)
            self.total_comm_bytes += comm_bytes

    def record_output(self, peer: str, step: int, cost: float):
        """Record a leader write of (theta, cost)."""
        event = MetricEvent(
            event_type="output",
            step=step,
            timestamp=time.time(),
            cost=cost,
            peer=peer,
            mode=self.mode,
        )
        with self._lock:
            self.events.append(event)
            self.cost_history.append((step, cost))

    def record_final(self, peer: str, step: int, cost: float, converged: bool):
        """Record the terminal state of one peer."""
        event = MetricEvent(
            event_type="final",
            step=step,
            timestamp=time.time(),
            cost=cost,
            peer=peer,
            converged=converged,
            mode=self.mode,
        )
        with self._lock:
            self.events.append(event)

    def extend(self, events: list[MetricEvent]):
        """Merge events recorded by a collector in another process."""
        with self._lock:
            for event in events:
                self.events.append(event)
                if event.comm_bytes:
                    self.total_comm_bytes += event.comm_bytes
                if event.event_type == "output":
                    self.cost_history.append((event.step, event.cost))

    def get_summary(self) -> dict:
        """Return aggregated summary statistics."""
        if not self.events:
            return {}

        iterations = [e for e in self.events if e.event_type == "iteration"]
        finals = [e for e in self.events if e.event_type == "final"]

        summary = {
            "mode": self.mode,
            "run_id": self.run_id,
            "total_events": len(self.events),
            "total_comm_bytes": self.total_comm_bytes,
        }

        if self.start_time and self.end_time:
            summary["training_time_sec"] = self.end_time - self.start_time

        if self.cost_history:
            summary["initial_cost"] = self.cost_history[0][1]
            summary["final_cost"] = self.cost_history[-1][1]
            summary["num_outputs"] = len(self.cost_history)

        if iterations:
            summary["iterations"] = max(e.step for e in iterations)
            latencies = [e.latency_ms for e in iterations if e.latency_ms is not None]
            if latencies:
                summary["avg_iteration_latency_ms"] = sum(latencies) / len(latencies)

        if finals:
            summary["converged"] = all(e.converged for e in finals)

        return summary

    def write_jsonl(self, path: Path):
        """Write all events to a JSONL file.

        Args:
            path: Path to output JSONL file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with open(path, "w") as f:
            for event in self.events:
                # Add run_id to each event
                event_dict = event.to_dict()
                event_dict["run_id"] = self.run_id
                f.write(json.dumps(event_dict) + "\n")
