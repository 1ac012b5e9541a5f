"""What the coordinator needs from a BSP runtime, and leader designation."""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

import torch

from config import GradientDescentConfig
from errors import ConfigurationError


@dataclass(frozen=True)
class Message:
    """A payload delivered after a barrier, tagged with the sending peer."""
    sender: str
    payload: torch.Tensor


@dataclass(frozen=True)
class OutputRecord:
    """One (theta, cost) pair written through the single-writer channel."""
    theta: list[float]
    cost: float
    peer_name: str

    def to_dict(self) -> dict:
        return {"theta": self.theta, "cost": self.cost, "peer": self.peer_name}


class BSPPeer(Protocol):
    """Per-peer view of a bulk-synchronous runtime."""
    peer_name: str
    peer_index: int
    num_peers: int

    def all_peer_names(self) -> Sequence[str]:
        """Every peer name, in the same order on every peer."""
        ...

    def read_next(self) -> Optional[tuple[torch.Tensor, float]]:
        """Next (features, label) of the local partition, None when exhausted."""
        ...

    def reopen_input(self) -> None:
        """Rewind the partition cursor to the first record."""
        ...

    def send(self, peer_name: str, payload: torch.Tensor) -> None:
        """Queue a payload; it becomes visible to the target after the next sync()."""
        ...

    def sync(self) -> None:
        """Block until every peer has arrived at this barrier."""
        ...

    def drain_messages(self) -> list[Message]:
        """Messages delivered by the last barrier; each is returned once."""
        ...

    def write(self, theta: torch.Tensor, cost: float) -> None:
        """Emit an output record. Only the leader calls this."""
        ...


def elect_leader(peer_names: Sequence[str], cfg: GradientDescentConfig) -> str:
    """Pick the single peer that bootstraps theta and writes output.

    Every peer evaluates this on the same inputs, so all agree on the
    leader without exchanging messages.
    """
    if not peer_names:
        raise ConfigurationError("cannot elect a leader among zero peers")
    if cfg.leader_policy == "middle":
        return peer_names[len(peer_names) // 2]
    if cfg.leader_policy == "min-name":
        return min(peer_names)
    if cfg.leader_policy == "explicit":
        if cfg.leader_peer not in peer_names:
            raise ConfigurationError(
                f"leader.peer {cfg.leader_peer!r} is not a peer of this job", {"peers": ", ".join(peer_names)}
            )
        return cfg.leader_peer
    raise ConfigurationError(f"unknown leader policy {cfg.leader_policy!r}")
