#!/usr/bin/env python3
"""Plot BSP gradient descent runs.

Usage:
    python plot.py runs/20261019-*                  # Plot all matching runs
    python plot.py runs/run1/ runs/run2/            # Plot specific runs
    python plot.py --outdir cost_plots runs/*       # Custom output directory
"""

from __future__ import annotations
import argparse
import json
from pathlib import Path
from typing import Any

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd

from utils import format_duration


def _read_jsonl(path: Path) -> pd.DataFrame:
    if not path.exists():
        return pd.DataFrame()
    with open(path) as f:
        return pd.DataFrame([json.loads(line) for line in f if line.strip()])


def load_run(run_path: Path) -> dict[str, Any]:
    """Load a single run's config, meta, events and leader outputs."""
    run_path = Path(run_path)

    with open(run_path / "config.json") as f:
        config = json.load(f)

    with open(run_path / "meta.json") as f:
        meta = json.load(f)

    df = _read_jsonl(run_path / "events.jsonl")

    duration_sec = meta.get("training_time_sec")
    if duration_sec is None and not df.empty and "timestamp" in df.columns:
        timestamps = df["timestamp"].dropna()
        if len(timestamps) > 0:
            duration_sec = timestamps.max() - timestamps.min()

    return {
        "config": config,
        "meta": meta,
        "events": df,
        "outputs": _read_jsonl(run_path / "output.jsonl"),
        "path": run_path,
        "duration_sec": duration_sec,
    }


def run_label(run: dict) -> str:
    config = run["config"]
    label = f"{config['regression.model.class']} α={config['alpha']:g} (p={config['num_peers']})"
    if run.get("duration_sec") is not None:
        label += f" ({format_duration(run['duration_sec'])})"
    return label


def plot_cost_vs_iteration(runs: list[dict], outdir: Path):
    """Mean cost after each iteration, as agreed on by the peers."""
    fig, ax = plt.subplots(figsize=(10, 6))
    thresholds = set()

    for run in runs:
        df = run["events"]
        if df.empty or "event_type" not in df.columns:
            continue

        # Every peer records the same cost; keep one row per iteration
        it = df[df["event_type"] == "iteration"].drop_duplicates("step").sort_values("step")
        if it.empty:
            continue
        ax.plot(it["step"].values, it["cost"].values, marker="o", label=run_label(run), linewidth=2, markersize=4)
        thresholds.add(run["config"]["threshold"])

    for threshold in sorted(thresholds):
        ax.axhline(threshold, color="gray", linestyle="--", linewidth=1, label=f"threshold={threshold:g}")

    ax.set_xlabel("Iteration", fontsize=12)
    ax.set_ylabel("Mean cost", fontsize=12)
    ax.set_yscale("log")
    ax.set_title("Cost vs Iteration", fontsize=14, fontweight="bold")
    ax.legend(fontsize=10)
    ax.grid(True, alpha=0.3)

    outfile = outdir / "cost_vs_iteration.png"
    plt.tight_layout()
    plt.savefig(outfile, dpi=150)
    print(f"📈 Saved: {outfile}")
    plt.close()


def plot_iteration_latency(runs: list[dict], outdir: Path):
    """Per-peer iteration latency; the slowest peer sets the pace of every barrier."""
    fig, ax = plt.subplots(figsize=(10, 6))
    labels, means, stds = [], [], []

    for run in runs:
        df = run["events"]
        if df.empty or "event_type" not in df.columns:
            continue
        it = df[df["event_type"] == "iteration"]
        if it.empty or "latency_ms" not in it.columns:
            continue
        for peer, group in it.groupby("peer"):
            labels.append(f"{run['meta']['run_id'][-24:]}\n{peer}")
            means.append(group["latency_ms"].mean())
            stds.append(group["latency_ms"].std(ddof=0))

    if not labels:
        print("⚠️  No iteration events found for latency plot")
        plt.close()
        return

    x = np.arange(len(labels))
    ax.bar(x, means, yerr=stds, capsize=4, alpha=0.8)
    ax.set_xticks(x)
    ax.set_xticklabels(labels, rotation=45, ha="right", fontsize=8)
    ax.set_ylabel("Iteration latency (ms)", fontsize=12)
    ax.set_title("Iteration Latency per Peer", fontsize=14, fontweight="bold")
    ax.grid(True, axis="y", alpha=0.3)

    outfile = outdir / "iteration_latency.png"
    plt.tight_layout()
    plt.savefig(outfile, dpi=150)
    print(f"📈 Saved: {outfile}")
    plt.close()


def plot_theta_trajectory(runs: list[dict], outdir: Path):
    """Each theta entry over the leader's output records, one panel per run."""
    runs = [r for r in runs if not r["outputs"].empty]
    if not runs:
        print("⚠️  No output records found for theta plot")
        return

    fig, axes = plt.subplots(1, len(runs), figsize=(6 * len(runs), 5), squeeze=False)
    for ax, run in zip(axes[0], runs):
        theta = np.array(run["outputs"]["theta"].tolist())
        for j in range(theta.shape[1]):
            ax.plot(np.arange(1, len(theta) + 1), theta[:, j], label=f"θ[{j}]", linewidth=1.5)
        ax.set_xlabel("Output record", fontsize=11)
        ax.set_ylabel("Value", fontsize=11)
        ax.set_title(run_label(run), fontsize=11)
        if theta.shape[1] <= 10:
            ax.legend(fontsize=8)
        ax.grid(True, alpha=0.3)

    outfile = outdir / "theta_trajectory.png"
    plt.tight_layout()
    plt.savefig(outfile, dpi=150)
    print(f"📈 Saved: {outfile}")
    plt.close()


def main():
    parser = argparse.ArgumentParser(description="Plot BSP gradient descent runs")
    parser.add_argument("runs", nargs="+", type=str, help="Run directories to plot (supports globs)")
    parser.add_argument("--outdir", type=str, default="cost_plots", help="Output directory for plots")
    args = parser.parse_args()

    # Expand globs and collect run directories
    run_paths = []
    for pattern in args.runs:
        path = Path(pattern)
        if path.is_dir() and (path / "config.json").exists():
            run_paths.append(path)
        else:
            for match in Path(".").glob(str(path)):
                if match.is_dir() and (match / "config.json").exists():
                    run_paths.append(match)

    if not run_paths:
        print("❌ No valid run directories found")
        print("   Each run directory must contain config.json and meta.json")
        return

    print(f"📂 Found {len(run_paths)} run(s):")
    for p in run_paths:
        print(f"   - {p}")

    runs = []
    for path in run_paths:
        try:
            run = load_run(path)
            runs.append(run)
            print(f"✅ Loaded: {run['meta']['run_id']}")
        except (OSError, ValueError, KeyError) as e:
            print(f"⚠️  Failed to load {path}: {e}")

    if not runs:
        print("❌ No runs loaded successfully")
        return

    outdir = Path(args.outdir)
    outdir.mkdir(parents=True, exist_ok=True)
    print(f"\n📊 Generating plots in: {outdir}")

    plot_cost_vs_iteration(runs, outdir)
    plot_iteration_latency(runs, outdir)
    plot_theta_trajectory(runs, outdir)

    print("\n✅ All plots generated successfully!")


if __name__ == "__main__":
    main()
