"""
Shared fixtures for gentrace tests.

Double precision is enabled for the whole session so that density
identities can be checked to 1e-9.
"""

import jax

jax.config.update("jax_enable_x64", True)

import jax.numpy as jnp  # noqa: E402
import jax.random as jrand  # noqa: E402
import pytest  # noqa: E402

from gentrace import Trace, gen, normal  # noqa: E402


# ============================================================================
# Keys and tolerances
# ============================================================================


@pytest.fixture
def base_key():
    """Base random key for tests."""
    return jrand.key(42)


@pytest.fixture
def key_sequence(base_key):
    """Generator of independent keys split from the base key."""

    def _keys(n):
        return list(jrand.split(base_key, n))

    return _keys


@pytest.fixture
def exact_tolerance():
    """Tolerance for identities that hold exactly up to rounding."""
    return 1e-9


@pytest.fixture
def standard_tolerance():
    """Tolerance for deterministic numerical comparisons."""
    return 1e-6


# ============================================================================
# Models
# ============================================================================


@pytest.fixture
def simple_normal_model():
    """Single normal choice at "x"."""

    @gen
    def model(mu, sigma):
        x = yield normal(mu, sigma) @ "x"
        return x

    return model


@pytest.fixture
def normal_normal_model():
    """Conjugate model: mu ~ N(0, 1), y ~ N(mu, 0.5)."""

    @gen
    def model():
        mu = yield normal(0.0, 1.0) @ "mu"
        y = yield normal(mu, 0.5) @ "y"
        return y

    return model


# ============================================================================
# Helpers
# ============================================================================


class Helpers:
    @staticmethod
    def assert_valid_trace(trace):
        assert isinstance(trace, Trace)
        assert jnp.isfinite(trace.get_score())
        assert trace.get_choices() is not None

    @staticmethod
    def sum_site_densities(trace):
        """Score recomputed by scoring every recorded site on its own."""
        total = 0.0
        subtraces = trace.subtraces
        if isinstance(subtraces, dict):
            subtraces = subtraces.values()
        for sub in subtraces:
            if hasattr(sub, "subtraces"):
                total += Helpers.sum_site_densities(sub)
            else:
                total += float(sub.get_gen_fn().logpdf(sub.get_retval(), *sub.get_args()))
        return total


@pytest.fixture
def helpers():
    return Helpers
