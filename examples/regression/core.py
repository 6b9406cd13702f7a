"""
Robust Bayesian linear regression with outliers.

Each datum is either generated by the line (with Gaussian noise) or is an
outlier drawn with a wide standard deviation. Inference alternates
Metropolis-Hastings moves over blocks of addresses:

- resimulation of the line parameters and noise,
- resimulation (or deterministic flips) of each `is_outlier` indicator,
- resimulation of the outlier rate,

with optional data-driven moves seeded by RANSAC.
"""

import jax.numpy as jnp
import jax.random as jrand

from gentrace import (
    bernoulli,
    choice_map,
    cycle,
    gamma,
    gen,
    mh,
    mh_kernel,
    normal,
    select,
    uniform,
)
from gentrace.extras import RANSACParams, fit_line_with

OUTLIER_STD = 10.0


### Models ###
@gen
def regression_model(xs):
    prob_outlier = yield uniform(0.0, 0.5) @ "prob_outlier"
    noise = yield gamma(1.0, 1.0) @ "noise"
    slope = yield normal(0.0, 2.0) @ "slope"
    intercept = yield normal(0.0, 2.0) @ "intercept"

    ys = []
    for i, x in enumerate(xs):
        is_outlier = yield bernoulli(prob_outlier) @ ("data", i, "is_outlier")
        std = jnp.where(is_outlier, OUTLIER_STD, noise)
        y = yield normal(slope * x + intercept, std) @ ("data", i, "y")
        ys.append(y)
    return jnp.stack(ys)


@gen
def line_model(xs, noise):
    """The same line with a fixed noise level and no outlier process."""
    slope = yield normal(0.0, 2.0) @ "slope"
    intercept = yield normal(0.0, 2.0) @ "intercept"

    ys = []
    for i, x in enumerate(xs):
        y = yield normal(slope * x + intercept, noise) @ ("data", i, "y")
        ys.append(y)
    return jnp.stack(ys)


def observations(ys):
    """Constrain `("data", i, "y")` to `ys[i]`."""
    return choice_map({("data", i, "y"): y for i, y in enumerate(ys)})


### Proposals ###
@gen
def line_proposal(trace, step=0.5):
    """Gaussian drift around the current slope and intercept."""
    yield normal(trace["slope"], step) @ "slope"
    yield normal(trace["intercept"], step) @ "intercept"


@gen
def is_outlier_proposal(trace, i):
    """Deterministically flip the outlier indicator of datum `i`."""
    prev = trace["data", i, "is_outlier"]
    yield bernoulli(jnp.where(prev, 0.0, 1.0)) @ ("data", i, "is_outlier")


@gen
def ransac_proposal(trace, xs, ys, key, params=RANSACParams()):
    """Propose a line near a RANSAC fit of the data."""
    slope_guess, intercept_guess = fit_line_with(key, xs, ys, params)
    yield normal(slope_guess, 0.1) @ "slope"
    yield normal(intercept_guess, 1.0) @ "intercept"


### Inference programs ###
def block_resimulation_kernel(n):
    """One sweep of resimulation blocks for a dataset of `n` points."""
    blocks = [
        mh_kernel(select("slope")),
        mh_kernel(select("intercept")),
        mh_kernel(select("noise")),
    ]
    blocks += [mh_kernel(select(("data", i, "is_outlier"))) for i in range(n)]
    blocks.append(mh_kernel(select("prob_outlier")))
    return cycle(*blocks)


def line_kernel():
    """Resimulation sweep for `line_model`, which has no outlier blocks."""
    return cycle(mh_kernel(select("slope")), mh_kernel(select("intercept")))


def block_resimulation_update(key, trace):
    (xs,) = trace.get_args()
    trace, _ = block_resimulation_kernel(len(xs))(key, trace)
    return trace


def gaussian_drift_update(key, trace, n_drift=20):
    (xs,) = trace.get_args()
    keys = iter(jrand.split(key, 2 * n_drift + len(xs) + 1))
    for _ in range(n_drift):
        trace, _ = mh(next(keys), trace, select("noise"))
        trace, _ = mh(next(keys), trace, line_proposal)
    for i in range(len(xs)):
        trace, _ = mh(next(keys), trace, is_outlier_proposal, (i,))
    trace, _ = mh(next(keys), trace, select("prob_outlier"))
    return trace


def ransac_update(key, trace, ys, n_ransac=5, params=RANSACParams()):
    """A few RANSAC-seeded jumps followed by a Gaussian-drift sweep."""
    (xs,) = trace.get_args()
    ransac_key, drift_key = jrand.split(key)
    for k in jrand.split(ransac_key, n_ransac):
        heuristic_key, mh_key = jrand.split(k)
        trace, _ = mh(mh_key, trace, ransac_proposal, (xs, ys, heuristic_key, params))
    return gaussian_drift_update(drift_key, trace)


def run_inference(key, model, args, ys, update, n_iters):
    """Start from `generate` on the observations and apply `update` repeatedly.

    Returns the list of traces after each iteration.
    """
    init_key, key = jrand.split(key)
    trace, _ = model.generate(init_key, args, observations(ys))
    traces = []
    for k in jrand.split(key, n_iters):
        trace = update(k, trace)
        traces.append(trace)
    return traces


def summarize(trace):
    """Plain mapping of the latent parameters, for display."""
    choices = trace.get_choices()
    summary = {
        "slope": choices.get_float("slope"),
        "intercept": choices.get_float("intercept"),
        "score": float(trace.get_score()),
    }
    if choices.has_value("noise"):
        summary["noise"] = choices.get_float("noise")
        summary["prob_outlier"] = choices.get_float("prob_outlier")
        data = choices.get_submap("data")
        summary["outliers"] = [
            i for i in range(len(trace.get_args()[0])) if data.get_bool((i, "is_outlier"))
        ]
    return summary
