"""Shared fixtures: a scripted single peer and small partition builders."""

import torch

from data import TensorPartition
from peer import Message


class FakePeer:
    """A BSPPeer that records what the coordinator does instead of talking to anyone.

    Messages placed in `inbox` are returned by the next drain_messages().
    """

    def __init__(self, X, y, name="peer-0", peer_names=("peer-0",), inbox=None):
        self.partition = TensorPartition(torch.as_tensor(X, dtype=torch.float64), torch.as_tensor(y, dtype=torch.float64))
        self.peer_name = name
        self._peer_names = list(peer_names)
        self.peer_index = self._peer_names.index(name)
        self.num_peers = len(self._peer_names)
        self.inbox = list(inbox or [])
        self.sent = []
        self.writes = []
        self.syncs = 0
        self.reopens = 0

    def all_peer_names(self):
        return list(self._peer_names)

    def read_next(self):
        return self.partition.read_next()

    def reopen_input(self):
        self.reopens += 1
        self.partition.reopen()

    def send(self, peer_name, payload):
        self.sent.append((peer_name, payload.clone()))

    def sync(self):
        self.syncs += 1

    def drain_messages(self):
        messages, self.inbox = self.inbox, []
        return messages

    def write(self, theta, cost):
        self.writes.append((theta.tolist(), cost))


def message(sender, values):
    return Message(sender, torch.tensor(values, dtype=torch.float64))


def constant_partitions(sizes, x=1.0, y=1.0):
    """Partitions of single-feature rows x=[x], y=y with the given row counts."""
    return [
        TensorPartition(torch.full((n, 1), x, dtype=torch.float64), torch.full((n,), y, dtype=torch.float64))
        for n in sizes
    ]
