from __future__ import annotations
from typing import Optional

import pandas as pd
import torch

from errors import PartitionReadError


class TensorPartition:
    """One peer's slice of the training set behind a restartable read cursor.

    read_next() walks the rows lazily and returns None once the partition is
    exhausted; reopen() rewinds to the first row.
    """

    def __init__(self, X: torch.Tensor, y: torch.Tensor):
        if X.dim() != 2 or y.dim() != 1 or X.shape[0] != y.shape[0]:
            raise ValueError(f"expected X (n, d) and y (n,), got {tuple(X.shape)} and {tuple(y.shape)}")
        self.X = X.to(torch.float64)
        self.y = y.to(torch.float64)
        self.N = self.X.shape[0]
        self._cursor = 0

    def __len__(self):
        return self.N

    def read_next(self) -> Optional[tuple[torch.Tensor, float]]:
        if self._cursor >= self.N:
            return None
        i = self._cursor
        self._cursor += 1
        return self.X[i], float(self.y[i])

    def reopen(self):
        self._cursor = 0


def shard(X: torch.Tensor, y: torch.Tensor, num_peers: int) -> list[TensorPartition]:
    """Split rows into num_peers contiguous partitions.

    The first len(X) % num_peers partitions get one extra row.
    """
    if num_peers < 1:
        raise ValueError("num_peers must be >= 1")
    N = X.shape[0]
    per, extra = divmod(N, num_peers)
    partitions = []
    start = 0
    for i in range(num_peers):
        end = start + per + (1 if i < extra else 0)
        partitions.append(TensorPartition(X[start:end], y[start:end]))
        start = end
    return partitions


def make_linear_data(n: int, d: int, noise: float = 0.1, seed: int = 0) -> tuple[torch.Tensor, torch.Tensor]:
    """Synthetic linear regression data.

    Args:
        n: Number of samples
        d: Feature dimension including the leading bias column of ones
        noise: Std of gaussian label noise
        seed: Random seed for reproducibility
    """
    gen = torch.Generator().manual_seed(seed)
    X = _with_bias(torch.rand(n, d - 1, generator=gen, dtype=torch.float64))
    w_true = torch.randn(d, generator=gen, dtype=torch.float64)
    y = X @ w_true + noise * torch.randn(n, generator=gen, dtype=torch.float64)
    return X, y


def make_logistic_data(n: int, d: int, noise: float = 0.1, seed: int = 0) -> tuple[torch.Tensor, torch.Tensor]:
    """Synthetic binary labels from a random separating hyperplane.

    Labels are flipped with probability `noise`.
    """
    gen = torch.Generator().manual_seed(seed)
    X = _with_bias(torch.randn(n, d - 1, generator=gen, dtype=torch.float64))
    w_true = torch.randn(d, generator=gen, dtype=torch.float64)
    y = (X @ w_true > 0).to(torch.float64)
    flip = torch.rand(n, generator=gen) < noise
    y[flip] = 1 - y[flip]
    return X, y


def _with_bias(X: torch.Tensor) -> torch.Tensor:
    return torch.cat([torch.ones(X.shape[0], 1, dtype=X.dtype), X], dim=1)


def load_csv(path, label_column: str) -> tuple[torch.Tensor, torch.Tensor]:
    """Read a numeric CSV into (features, labels); the label column is split off."""
    try:
        df = pd.read_csv(path)
    except (OSError, pd.errors.ParserError, pd.errors.EmptyDataError) as e:
        raise PartitionReadError(f"cannot read input {path}", {"path": str(path)}, cause=e) from e

    if label_column not in df.columns:
        raise PartitionReadError(f"label column {label_column!r} not found", {"path": str(path)})

    try:
        y = torch.tensor(df[label_column].to_numpy(dtype="float64"))
        X = torch.tensor(df.drop(columns=[label_column]).to_numpy(dtype="float64"))
    except ValueError as e:
        raise PartitionReadError(f"non-numeric values in {path}", {"path": str(path)}, cause=e) from e
    return X, y
