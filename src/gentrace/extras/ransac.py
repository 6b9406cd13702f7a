"""
RANSAC line fitting, used to seed data-driven proposals.

`fit_line` fits `iters` least-squares lines, each through a random subset
of `subset_size` distinct points, and returns the line with the most
inliers (points whose residual is below `eps`). All hypotheses are fitted
at once with `jax.vmap`. The randomness comes from the explicit key, so
for a fixed key the heuristic is a pure function of the data.
"""

import jax
import jax.numpy as jnp
import jax.random as jrand

from gentrace.core import (
    Array,
    ArrayLike,
    DimensionMismatch,
    InvalidParameter,
    PRNGKey,
    Pytree,
)


@Pytree.dataclass
class RANSACParams(Pytree):
    """Settings for `fit_line`.

    Attributes:
        iters: Number of random hypotheses.
        subset_size: Points per hypothesis.
        eps: Inlier threshold on the absolute residual.
    """

    iters: int = Pytree.static(default=10)
    subset_size: int = Pytree.static(default=3)
    eps: float = Pytree.static(default=1.0)


def _least_squares(xs: Array, ys: Array) -> Array:
    design = jnp.stack([xs, jnp.ones_like(xs)], axis=1)
    coeffs, *_ = jnp.linalg.lstsq(design, ys)
    return coeffs


def fit_line(
    key: PRNGKey,
    xs: ArrayLike,
    ys: ArrayLike,
    subset_size: int = 3,
    iters: int = 10,
    eps: float = 1.0,
) -> tuple[Array, Array]:
    """
    Robustly fit `y = slope * x + intercept`.

    Args:
        key: PRNG key for subset selection
        xs: Input locations
        ys: Observed values, same length as `xs`
        subset_size: Points per hypothesis (>= 2)
        iters: Number of hypotheses (>= 1)
        eps: Inlier threshold

    Returns:
        `(slope, intercept)` of the hypothesis with the most inliers; ties
        go to the earliest hypothesis.
    """
    dtype = jnp.result_type(float)
    xs = jnp.asarray(xs, dtype=dtype)
    ys = jnp.asarray(ys, dtype=dtype)
    if xs.ndim != 1 or ys.ndim != 1:
        raise DimensionMismatch(
            f"xs and ys must be vectors, got shapes {xs.shape} and {ys.shape}"
        )
    if xs.shape[0] != ys.shape[0]:
        raise DimensionMismatch(
            f"xs has {xs.shape[0]} points but ys has {ys.shape[0]}"
        )
    if subset_size < 2:
        raise InvalidParameter(f"subset_size must be at least 2, got {subset_size}")
    if iters < 1:
        raise InvalidParameter(f"iters must be at least 1, got {iters}")
    if xs.shape[0] < subset_size:
        raise InvalidParameter(
            f"need at least subset_size={subset_size} points, got {xs.shape[0]}"
        )

    n = xs.shape[0]

    def hypothesis(k):
        idx = jrand.choice(k, n, shape=(subset_size,), replace=False)
        slope, intercept = _least_squares(xs[idx], ys[idx])
        inliers = jnp.sum(jnp.abs(ys - (slope * xs + intercept)) < eps)
        return slope, intercept, inliers

    slopes, intercepts, inliers = jax.vmap(hypothesis)(jrand.split(key, iters))
    best = jnp.argmax(inliers)
    return slopes[best], intercepts[best]


def fit_line_with(key: PRNGKey, xs: ArrayLike, ys: ArrayLike, params: RANSACParams):
    """`fit_line` with settings taken from a `RANSACParams`."""
    return fit_line(
        key,
        xs,
        ys,
        subset_size=params.subset_size,
        iters=params.iters,
        eps=params.eps,
    )
