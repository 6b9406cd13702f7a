"""
Synthetic datasets for the robust regression example.

Data are drawn from `regression_model` itself, with the line parameters
and outlier rate fixed through `generate` constraints.
"""

import jax.numpy as jnp
import jax.random as jrand

from gentrace import choice_map

from examples.regression.core import regression_model


def default_xs(n_points=11, low=-5.0, high=5.0):
    return jnp.linspace(low, high, n_points)


def generate_dataset(
    key=None,
    xs=None,
    slope=-1.0,
    intercept=2.0,
    noise=0.5,
    prob_outlier=0.0,
    seed=42,
):
    """
    Sample `ys` for the given inputs from the regression model.

    Args:
        key: JAX random key (if None, uses seed)
        xs: Input locations (default: -5, -4, ..., 5)
        slope: True slope
        intercept: True intercept
        noise: Standard deviation of inlier noise
        prob_outlier: Probability that a point is an outlier
        seed: Random seed (used if key is None)

    Returns:
        Dictionary with:
            - xs: Input locations
            - ys: Observed values
            - outliers: Boolean mask of the points drawn as outliers
            - true_params: True parameters dict
    """
    if key is None:
        key = jrand.key(seed)
    if xs is None:
        xs = default_xs()

    params = {
        "slope": slope,
        "intercept": intercept,
        "noise": noise,
        "prob_outlier": prob_outlier,
    }
    trace, _ = regression_model.generate(key, (xs,), choice_map(params))
    choices = trace.get_choices()
    outliers = jnp.array(
        [bool(choices["data", i, "is_outlier"]) for i in range(len(xs))]
    )
    return {
        "xs": jnp.asarray(xs),
        "ys": trace.get_retval(),
        "outliers": outliers,
        "true_params": params,
    }


def generate_outlier_dataset(key=None, prob_outlier=0.2, seed=7, **kwargs):
    """Same as `generate_dataset`, with a non-zero outlier rate."""
    return generate_dataset(key=key, prob_outlier=prob_outlier, seed=seed, **kwargs)
