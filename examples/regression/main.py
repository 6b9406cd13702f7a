"""
Robust regression case study - main entry point

Supports three modes:
- resimulation: block resimulation MH (line, outlier indicators, outlier rate)
- drift: Gaussian-drift proposals with deterministic outlier flips
- ransac: RANSAC-seeded proposals followed by Gaussian drift
"""

import argparse
from functools import partial

import jax.numpy as jnp
import jax.random as jrand

from examples.regression.core import (
    block_resimulation_update,
    gaussian_drift_update,
    line_kernel,
    line_model,
    ransac_update,
    regression_model,
    run_inference,
    summarize,
)
from examples.regression.data import generate_dataset


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="gentrace robust regression - Bayesian line fitting with outliers"
    )

    parser.add_argument(
        "mode",
        choices=["resimulation", "drift", "ransac"],
        nargs="?",
        default="resimulation",
        help="Inference program (default: resimulation)",
    )
    parser.add_argument(
        "--n-points", type=int, default=11, help="Number of data points (default: 11)"
    )
    parser.add_argument(
        "--prob-outlier",
        type=float,
        default=0.0,
        help="Outlier rate of the synthetic data (default: 0.0)",
    )
    parser.add_argument(
        "--n-iters",
        type=int,
        default=500,
        help="Iterations per run (default: 500)",
    )
    parser.add_argument(
        "--n-runs", type=int, default=5, help="Independent runs (default: 5)"
    )
    parser.add_argument(
        "--baseline-noise",
        type=float,
        default=1.0,
        help="Noise of the fixed-noise comparison model (default: 1.0)",
    )
    parser.add_argument(
        "--seed", type=int, default=42, help="Random seed (default: 42)"
    )

    return parser.parse_args()


def select_update(mode, ys):
    if mode == "resimulation":
        return block_resimulation_update
    if mode == "drift":
        return gaussian_drift_update
    return partial(ransac_update, ys=ys)


def main():
    args = parse_args()
    key = jrand.key(args.seed)
    data_key, key = jrand.split(key)

    xs = jnp.linspace(-5.0, 5.0, args.n_points)
    data = generate_dataset(data_key, xs=xs, prob_outlier=args.prob_outlier)
    ys = data["ys"]
    print(f"=== Robust regression: {args.mode} ===")
    print(f"true parameters: {data['true_params']}")
    print(f"outliers in data: {jnp.flatnonzero(data['outliers']).tolist()}")

    update = select_update(args.mode, ys)
    kernel = line_kernel()

    def line_update(k, trace):
        trace, _ = kernel(k, trace)
        return trace

    outlier_scores, line_scores = [], []
    for run, run_key in enumerate(jrand.split(key, args.n_runs)):
        model_key, line_key = jrand.split(run_key)
        traces = run_inference(
            model_key, regression_model, (xs,), ys, update, args.n_iters
        )
        baseline = run_inference(
            line_key, line_model, (xs, args.baseline_noise), ys, line_update, args.n_iters
        )
        outlier_scores.append(jnp.mean(jnp.array([t.get_score() for t in traces])))
        line_scores.append(jnp.mean(jnp.array([t.get_score() for t in baseline])))
        print(f"\nrun {run}: {summarize(traces[-1])}")

    print(f"\nmean score, outlier model:    {float(jnp.mean(jnp.array(outlier_scores))):.3f}")
    print(f"mean score, fixed-noise line: {float(jnp.mean(jnp.array(line_scores))):.3f}")


if __name__ == "__main__":
    main()
