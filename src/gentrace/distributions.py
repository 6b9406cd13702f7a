"""Standard probability distributions for gentrace.

Each distribution is a `Distribution` generative function: it can be
called at an address inside a `@gen` program, or used on its own through
`sample`, `logpdf` and the GFI methods. Most are built on TensorFlow
Probability; parameters are checked eagerly and bad ones raise
`InvalidParameter`. Values outside the support score `-inf`.
"""

from functools import partial

import jax
import jax.numpy as jnp
import jax.random as jrand
import numpy as np
from tensorflow_probability.substrates import jax as tfp

from gentrace.core import (
    DimensionMismatch,
    InvalidParameter,
    distribution,
    tfp_distribution,
)

tfd = tfp.distributions


def _float_dtype():
    return jnp.result_type(float)


###############
# Validation  #
###############


def _require(ok, name: str, message: str) -> None:
    if not bool(np.all(ok)):
        raise InvalidParameter(f"{name}: {message}")


def _check_normal(loc, scale):
    _require(np.asarray(scale) > 0, "Normal", f"scale must be positive, got {scale}")


def _check_gamma(shape, rate):
    _require(np.asarray(shape) > 0, "Gamma", f"shape must be positive, got {shape}")
    _require(np.asarray(rate) > 0, "Gamma", f"rate must be positive, got {rate}")


def _check_beta(a, b):
    _require(np.asarray(a) > 0, "Beta", f"concentration1 must be positive, got {a}")
    _require(np.asarray(b) > 0, "Beta", f"concentration0 must be positive, got {b}")


def _check_probability(name):
    def check(p):
        p = np.asarray(p)
        _require((p >= 0) & (p <= 1), name, f"probability must lie in [0, 1], got {p}")

    return check


def _check_uniform(low, high):
    _require(
        np.asarray(low) < np.asarray(high),
        "Uniform",
        f"low must be below high, got low={low}, high={high}",
    )


def _check_uniform_discrete(low, high):
    for bound in (low, high):
        b = np.asarray(bound)
        _require(
            b.dtype.kind in "iu"
            or (b.dtype.kind == "f" and np.all(np.isfinite(b) & (np.floor(b) == b))),
            "UniformDiscrete",
            f"bounds must be finite integers, got {bound}",
        )
    _require(
        np.asarray(low) <= np.asarray(high),
        "UniformDiscrete",
        f"low must not exceed high, got low={low}, high={high}",
    )


def _check_categorical(probs):
    probs = np.asarray(probs)
    _require(probs.ndim == 1 and probs.size > 0, "Categorical", "probs must be a non-empty vector")
    _require(probs >= 0, "Categorical", f"probs must be non-negative, got {probs}")
    _require(
        np.isclose(probs.sum(), 1.0, atol=1e-5),
        "Categorical",
        f"probs must sum to 1, got {probs.sum()}",
    )


def _check_multivariate_normal(mean, cov):
    mean, cov = np.asarray(mean), np.asarray(cov)
    if mean.ndim != 1:
        raise DimensionMismatch(f"MultivariateNormal: mean must be a vector, got shape {mean.shape}")
    d = mean.shape[0]
    if cov.shape != (d, d):
        raise DimensionMismatch(
            f"MultivariateNormal: covariance must have shape {(d, d)}, got {cov.shape}"
        )
    _require(np.allclose(cov, cov.T), "MultivariateNormal", "covariance must be symmetric")
    try:
        np.linalg.cholesky(cov)
    except np.linalg.LinAlgError:
        raise InvalidParameter(
            "MultivariateNormal: covariance must be positive definite"
        ) from None


def _check_positive(name, what):
    def check(x):
        _require(np.asarray(x) > 0, name, f"{what} must be positive, got {x}")

    return check


##########################
# Continuous             #
##########################

normal = tfp_distribution(
    tfd.Normal,
    name="Normal",
    validate=_check_normal,
)
"""Normal (Gaussian) distribution.

Args:
    loc: Mean of the distribution.
    scale: Standard deviation (> 0).
"""

gamma = tfp_distribution(
    lambda shape, rate: tfd.Gamma(
        concentration=shape,
        rate=rate,
        force_probs_to_zero_outside_support=True,
    ),
    name="Gamma",
    validate=_check_gamma,
)
"""Gamma distribution for positive continuous values.

Args:
    shape: Shape parameter (alpha > 0).
    rate: Rate parameter (beta > 0).
"""

uniform = tfp_distribution(
    tfd.Uniform,
    name="Uniform",
    validate=_check_uniform,
)
"""Uniform distribution on the interval `[low, high)`.

Args:
    low: Lower bound of the distribution.
    high: Upper bound of the distribution.
"""

beta = tfp_distribution(
    lambda a, b: tfd.Beta(a, b, force_probs_to_zero_outside_support=True),
    name="Beta",
    validate=_check_beta,
)
"""Beta distribution on the interval [0, 1].

Args:
    concentration1: Alpha parameter (> 0).
    concentration0: Beta parameter (> 0).
"""

exponential = tfp_distribution(
    lambda rate: tfd.Exponential(rate, force_probs_to_zero_outside_support=True),
    name="Exponential",
    validate=_check_positive("Exponential", "rate"),
)
"""Exponential distribution for positive continuous values.

Args:
    rate: Rate parameter (> 0).
"""


def _mvn(mean, cov):
    return tfd.MultivariateNormalTriL(loc=mean, scale_tril=jnp.linalg.cholesky(cov))


multivariate_normal = tfp_distribution(
    _mvn,
    name="MultivariateNormal",
    validate=_check_multivariate_normal,
)
"""Multivariate normal distribution.

Args:
    mean: Mean vector of length `d`.
    cov: `d x d` covariance matrix (positive definite).
"""

##########################
# Discrete               #
##########################


def _bernoulli_support(v, p):
    v = jnp.asarray(v)
    return (v == 0) | (v == 1)


bernoulli = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.bool_),
    name="Bernoulli",
    validate=_check_probability("Bernoulli"),
    discrete=True,
    support=_bernoulli_support,
)
"""Bernoulli distribution over `True`/`False`.

Args:
    p: Probability of `True`.
"""

flip = bernoulli


@partial(jax.jit, static_argnames=("sample_shape",))
def _uniform_discrete_sample(key, low, high, sample_shape=()):
    shape = sample_shape + jnp.broadcast_shapes(jnp.shape(low), jnp.shape(high))
    return jrand.randint(key, shape, low, jnp.asarray(high) + 1)


@jax.jit
def _uniform_discrete_logpdf(v, low, high):
    n = jnp.asarray(high - low + 1, dtype=_float_dtype())
    inside = (v >= low) & (v <= high) & (jnp.floor(v) == v)
    return jnp.where(inside, -jnp.log(n), -jnp.inf)


uniform_discrete = distribution(
    _uniform_discrete_sample,
    _uniform_discrete_logpdf,
    name="UniformDiscrete",
    validate=_check_uniform_discrete,
    discrete=True,
)
"""Uniform distribution over the integers `low..high` (both inclusive).

Args:
    low: Smallest value.
    high: Largest value.
"""


def _categorical_support(v, probs):
    v = jnp.asarray(v)
    return (v >= 0) & (v < jnp.shape(probs)[-1]) & (jnp.floor(v) == v)


categorical = tfp_distribution(
    lambda probs: tfd.Categorical(probs=probs),
    name="Categorical",
    validate=_check_categorical,
    discrete=True,
    support=_categorical_support,
)
"""Categorical distribution over the indices `0..len(probs)-1`.

Args:
    probs: Probability of each index (non-negative, summing to 1).
"""
