# bsp_gradient_descent.py
"""
Batch gradient descent over partitioned data, run as a Bulk-Synchronous-Parallel job.

Every peer holds one partition and a replica of theta. Each iteration is four
supersteps separated by barriers: distributed cost, convergence test,
distributed gradient, aggregated update. The leader peer bootstraps theta and
is the only one that writes (theta, cost) records.

Two runtimes:
  1) local  one thread per peer in this process
  2) ray    one Ray actor per peer around a message-broker actor

Prereqs (Python 3.9+):
    pip install -e .

Run examples:
    python main.py --runtime local --num-peers 4 --n 2000 --dim 5 --alpha 0.0001
    python main.py --runtime ray   --num-peers 4 --model logistic --alpha 0.0005 --threshold 0.3
    python main.py --csv houses.csv --label-column price --num-peers 3

Notes:
- The update uses the summed (not averaged) gradient, so alpha has to shrink
  as the data set grows; a too-large alpha stops the run with a divergence error.
- Writes config.json, meta.json, events.jsonl and output.jsonl to --outdir/<run-id>.
"""

from __future__ import annotations
import argparse
import json
import socket
import sys
import time
from datetime import datetime
from pathlib import Path

import ray
import torch

from config import GradientDescentConfig, LEADER_POLICIES
from data import load_csv, make_linear_data, make_logistic_data, shard
from errors import ConfigurationError, GradientDescentError, PartitionReadError
from logger import logger, set_verbose
from metrics import MetricsCollector
from model import MODELS
from train_local import LocalBSPRuntime
from train_ray import RayBSPRuntime, init_ray
from utils import set_seed


def write_outputs(records, path: Path):
    """One JSON object per leader write: {"theta": [...], "cost": c, "peer": name}."""
    with open(path, "w") as f:
        for record in records:
            f.write(json.dumps(record.to_dict()) + "\n")


def build_config(args) -> GradientDescentConfig:
    return GradientDescentConfig.from_dict(
        {
            "initial.theta.values": args.initial_theta,
            "alpha": args.alpha,
            "threshold": args.threshold,
            "regression.model.class": args.model,
            "leader.policy": args.leader_policy,
            "leader.peer": args.leader_peer,
            "max.iterations": args.max_iterations,
        }
    )


def load_data(args) -> tuple[torch.Tensor, torch.Tensor]:
    if args.csv:
        logger.info(f"Loading {args.csv} (label column {args.label_column!r})")
        return load_csv(args.csv, args.label_column)
    make = make_logistic_data if args.model.lower().startswith("logistic") else make_linear_data
    logger.info(f"Creating synthetic {args.model} data with N={args.n}, dim={args.dim}, noise={args.noise}, seed={args.seed}")
    return make(args.n, args.dim, noise=args.noise, seed=args.seed)


def main():
    parser = argparse.ArgumentParser(description="BSP batch gradient descent")
    parser.add_argument("--runtime", choices=["local", "ray"], default="local")
    parser.add_argument("--num-peers", type=int, default=4)
    parser.add_argument("--csv", type=str, default=None, help="Numeric CSV input (default: synthetic data)")
    parser.add_argument("--label-column", type=str, default="y", help="Label column of --csv")
    parser.add_argument("--n", type=int, default=2000, help="Synthetic samples")
    parser.add_argument("--dim", type=int, default=5, help="Synthetic feature dimension, bias included")
    parser.add_argument("--noise", type=float, default=0.1)
    parser.add_argument("--seed", type=int, default=1337)
    parser.add_argument("--model", type=str, default="linear", choices=sorted(MODELS))
    parser.add_argument("--alpha", type=float, default=0.003, help="Learning rate")
    parser.add_argument("--threshold", type=float, default=0.1, help="Stop once mean cost drops below this")
    parser.add_argument("--initial-theta", type=int, default=10, help="Initial value of every theta entry")
    parser.add_argument("--leader-policy", choices=LEADER_POLICIES, default="middle")
    parser.add_argument("--leader-peer", type=str, default=None, help="Leader name for --leader-policy explicit")
    parser.add_argument("--max-iterations", type=int, default=0, help="0 = until convergence")
    parser.add_argument("--outdir", type=str, default="runs", help="Output directory for logs and metrics")
    parser.add_argument("--run-name", type=str, default=None, help="Custom run name (default: auto-generated)")
    parser.add_argument("--no-logging", action="store_true", help="Disable metrics logging")
    parser.add_argument("--verbose", action="store_true", help="Log theta after every update")
    args = parser.parse_args()

    set_verbose(args.verbose)
    set_seed(args.seed)

    try:
        cfg = build_config(args)
        if args.num_peers < 1:
            raise ConfigurationError("--num-peers must be at least 1", {"num_peers": args.num_peers})
        X, y = load_data(args)
        if X.shape[0] == 0:
            raise PartitionReadError("input has no rows", {"csv": args.csv})
    except GradientDescentError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    num_peers = min(args.num_peers, X.shape[0])
    logger.info(f"Sharding {X.shape[0]} samples with {X.shape[1]} features into {num_peers} partitions")
    partitions = shard(X, y, num_peers)

    run_id = args.run_name
    if not run_id:
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        run_id = f"{timestamp}-{args.runtime}-{cfg.regression_model}-p{num_peers}-a{cfg.alpha:g}"

    run_dir = Path(args.outdir) / run_id
    run_dir.mkdir(parents=True, exist_ok=True)

    metrics = None
    if not args.no_logging:
        metrics = MetricsCollector(mode=args.runtime, run_id=run_id)

    # Save config
    config_dict = {
        "runtime": args.runtime,
        "num_peers": num_peers,
        "csv": args.csv,
        "n": int(X.shape[0]),
        "dim": int(X.shape[1]),
        "noise": args.noise,
        "seed": args.seed,
        **cfg.to_dict(),
    }
    with open(run_dir / "config.json", "w") as f:
        json.dump(config_dict, f, indent=2)

    meta_dict = {
        "run_id": run_id,
        "runtime": args.runtime,
        "hostname": socket.gethostname(),
        "timestamp": datetime.now().isoformat(),
        "torch_version": torch.__version__,
        "ray_version": ray.__version__,
    }

    exit_code = 0
    runtime = None
    try:
        if args.runtime == "ray":
            init_ray()
            runtime = RayBSPRuntime(partitions)
        else:
            runtime = LocalBSPRuntime(partitions)

        t0 = time.time()
        if metrics:
            metrics.start_training()
        try:
            result = runtime.run(cfg, metrics=metrics)
        finally:
            if metrics:
                metrics.stop_training()
        dt = time.time() - t0
        meta_dict["training_time_sec"] = dt

        leader = result.leader
        status = "converged" if leader.converged else "stopped"
        logger.info(f"{status} after {leader.iterations} iterations, cost={leader.cost:.6g}, elapsed {dt:.2f}s")
        logger.info(f"theta = {leader.theta}")
    except GradientDescentError as e:
        logger.error(f"Error: {e}")
        exit_code = 1
    finally:
        if runtime is not None:
            write_outputs(runtime.outputs(), run_dir / "output.jsonl")
        with open(run_dir / "meta.json", "w") as f:
            json.dump(meta_dict, f, indent=2)
        if metrics:
            metrics.write_jsonl(run_dir / "events.jsonl")
            summary = metrics.get_summary()
            print("\nMetrics summary:")
            for key, value in summary.items():
                if key not in ("mode", "run_id"):
                    print(f"  {key}: {value}")
        if args.runtime == "ray":
            ray.shutdown()

    sys.exit(exit_code)


if __name__ == "__main__":
    main()
