"""
Test cases for gentrace distributions.

These tests validate the distributions module:
- Log densities against TensorFlow Probability and closed forms
- Sampling (shapes, support, rough moments)
- Parameter validation and out-of-support values
- The generative function interface on a single random choice
"""

import jax
import jax.numpy as jnp
import jax.random as jrand
import pytest
import tensorflow_probability.substrates.jax as tfp

from gentrace.core import (
    ROOT,
    AddressNotFound,
    AllSel,
    ChoiceMap,
    DimensionMismatch,
    InvalidParameter,
    NoneSel,
    TypeMismatch,
    UnvisitedConstraintWarning,
    choice_map,
    gen,
)
from gentrace.distributions import (
    bernoulli,
    beta,
    categorical,
    exponential,
    flip,
    gamma,
    multivariate_normal,
    normal,
    uniform,
    uniform_discrete,
)

tfd = tfp.distributions


# =============================================================================
# TEST FIXTURES AND HELPERS
# =============================================================================


@pytest.fixture
def key():
    """Standard random key for reproducible tests."""
    return jrand.key(42)


def assert_matches_tfp(dist, tfp_dist, params, values, tolerance=1e-5):
    """Log densities through `assess` agree with the TFP distribution."""
    for v in values:
        logp, retval = dist.assess(params, ChoiceMap.value(v))
        expected = tfp_dist.log_prob(v)
        assert jnp.allclose(logp, expected, atol=tolerance), (
            f"log density differs at {v}: gentrace={logp}, TFP={expected}"
        )
        assert retval is v


# =============================================================================
# CONTINUOUS DISTRIBUTIONS
# =============================================================================


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_normal_consistency():
    assert_matches_tfp(normal, tfd.Normal(1.0, 2.0), (1.0, 2.0), [-3.0, 0.0, 1.0, 4.5])


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_normal_closed_form(standard_tolerance):
    logp = normal.logpdf(0.0, 0.0, 1.0)
    assert jnp.abs(logp + 0.5 * jnp.log(2 * jnp.pi)) < standard_tolerance


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_gamma_shape_rate(standard_tolerance):
    # Gamma(shape=2, rate=3) at 1: 2 log 3 - 3
    logp = gamma.logpdf(1.0, 2.0, 3.0)
    assert jnp.abs(logp - (2 * jnp.log(3.0) - 3.0)) < standard_tolerance
    assert gamma.logpdf(-1.0, 2.0, 3.0) == -jnp.inf


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_uniform_support():
    assert_matches_tfp(uniform, tfd.Uniform(0.0, 2.0), (0.0, 2.0), [0.1, 1.9])
    assert uniform.logpdf(3.0, 0.0, 2.0) == -jnp.inf
    assert uniform.logpdf(-0.5, 0.0, 2.0) == -jnp.inf


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_beta_and_exponential():
    assert_matches_tfp(beta, tfd.Beta(2.0, 5.0), (2.0, 5.0), [0.1, 0.5, 0.9])
    assert_matches_tfp(exponential, tfd.Exponential(1.5), (1.5,), [0.2, 3.0])
    assert exponential.logpdf(-1.0, 1.5) == -jnp.inf


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_multivariate_normal(key, standard_tolerance):
    mean = jnp.zeros(2)
    cov = jnp.eye(2)
    logp = multivariate_normal.logpdf(mean, mean, cov)
    assert jnp.abs(logp + jnp.log(2 * jnp.pi)) < standard_tolerance

    sample = multivariate_normal.sample(key, mean, cov)
    assert sample.shape == (2,)

    with pytest.raises(DimensionMismatch):
        multivariate_normal.logpdf(mean, mean, jnp.eye(3))
    with pytest.raises(InvalidParameter):
        multivariate_normal.logpdf(mean, mean, jnp.array([[1.0, 2.0], [2.0, 1.0]]))


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_log_density_gradient(standard_tolerance):
    grad = normal.log_density_gradient(1.0, 0.0, 2.0)
    assert jnp.abs(grad + 0.25) < standard_tolerance
    with pytest.raises(TypeMismatch):
        bernoulli.log_density_gradient(True, 0.5)


# =============================================================================
# DISCRETE DISTRIBUTIONS
# =============================================================================


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_bernoulli(key, standard_tolerance):
    assert jnp.abs(bernoulli.logpdf(True, 0.3) - jnp.log(0.3)) < standard_tolerance
    assert jnp.abs(bernoulli.logpdf(False, 0.3) - jnp.log(0.7)) < standard_tolerance
    assert bernoulli.logpdf(True, 0.0) == -jnp.inf
    assert bernoulli.logpdf(False, 0.0) == 0.0
    assert bernoulli.logpdf(1, 0.3) == bernoulli.logpdf(True, 0.3)
    assert bernoulli.logpdf(2, 0.3) == -jnp.inf
    assert bernoulli.logpdf(0.5, 0.3) == -jnp.inf

    samples = bernoulli.sample(key, 0.3, sample_shape=(4000,))
    assert samples.dtype == jnp.bool_
    assert jnp.abs(jnp.mean(samples) - 0.3) < 0.05


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_flip_is_bernoulli():
    assert flip is bernoulli


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_uniform_discrete(key, standard_tolerance):
    assert jnp.abs(uniform_discrete.logpdf(3, 1, 4) + jnp.log(4.0)) < standard_tolerance
    assert uniform_discrete.logpdf(5, 1, 4) == -jnp.inf
    assert uniform_discrete.logpdf(0, 1, 4) == -jnp.inf

    samples = uniform_discrete.sample(key, 1, 4, sample_shape=(500,))
    assert jnp.all((samples >= 1) & (samples <= 4))
    assert jnp.any(samples == 4)


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_categorical(key, standard_tolerance):
    probs = jnp.array([0.2, 0.5, 0.3])
    assert jnp.abs(categorical.logpdf(1, probs) - jnp.log(0.5)) < standard_tolerance
    assert categorical.logpdf(3, probs) == -jnp.inf
    assert categorical.logpdf(-1, probs) == -jnp.inf
    assert categorical.logpdf(0.5, probs) == -jnp.inf
    assert categorical.logpdf(0.5, jnp.array([0.5, 0.5])) == -jnp.inf

    samples = categorical.sample(key, probs, sample_shape=(4000,))
    assert jnp.all((samples >= 0) & (samples < 3))
    assert jnp.abs(jnp.mean(samples == 1) - 0.5) < 0.05


# =============================================================================
# PARAMETER VALIDATION
# =============================================================================


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize(
    "dist, params",
    [
        (normal, (0.0, -1.0)),
        (normal, (0.0, 0.0)),
        (gamma, (0.0, 1.0)),
        (gamma, (1.0, -2.0)),
        (beta, (-1.0, 1.0)),
        (uniform, (1.0, 1.0)),
        (exponential, (0.0,)),
        (bernoulli, (1.5,)),
        (uniform_discrete, (4, 1)),
        (uniform_discrete, (0.5, 3)),
        (uniform_discrete, (0, float("inf"))),
        (uniform_discrete, (0, float("nan"))),
        (uniform_discrete, (0, jnp.array([1.5, 2.0]))),
        (categorical, (jnp.array([0.5, 0.6]),)),
        (categorical, (jnp.array([-0.5, 1.5]),)),
    ],
)
def test_invalid_parameters(key, dist, params):
    with pytest.raises(InvalidParameter):
        dist.sample(key, *params)
    with pytest.raises(InvalidParameter):
        dist.simulate(key, params)


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_invalid_parameters_inside_program(key):
    @gen
    def model(scale):
        return (yield normal(0.0, scale) @ "x")

    model.simulate(key, (1.0,))
    with pytest.raises(InvalidParameter):
        model.simulate(key, (-1.0,))


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
def test_validation_skipped_under_jit():
    scored = jax.jit(lambda scale: normal.logpdf(0.0, 0.0, scale))
    assert jnp.isfinite(scored(1.0))


# =============================================================================
# GENERATIVE FUNCTION INTERFACE
# =============================================================================


@pytest.mark.distributions
@pytest.mark.unit
@pytest.mark.fast
class TestDistributionGFI:
    def test_simulate(self, key, exact_tolerance):
        trace = normal.simulate(key, (0.0, 1.0))
        v = trace.get_retval()
        assert trace.get_choices()[ROOT] is v
        assert jnp.abs(trace.get_score() - normal.logpdf(v, 0.0, 1.0)) < exact_tolerance

    def test_generate_constrained(self, key, exact_tolerance):
        trace, weight = normal.generate(key, (0.0, 1.0), ChoiceMap.value(0.5))
        assert trace.get_retval() == 0.5
        assert jnp.abs(weight - normal.logpdf(0.5, 0.0, 1.0)) < exact_tolerance
        assert jnp.abs(weight - trace.get_score()) < exact_tolerance

    def test_generate_unconstrained(self, key):
        _, weight = normal.generate(key, (0.0, 1.0), ChoiceMap.empty())
        assert weight == 0.0

    def test_generate_below_root_is_unvisited(self, key):
        with pytest.warns(UnvisitedConstraintWarning):
            normal.generate(key, (0.0, 1.0), choice_map(x=1.0))

    def test_assess_requires_value(self):
        with pytest.raises(AddressNotFound):
            normal.assess((0.0, 1.0), ChoiceMap.empty())

    def test_update(self, key, exact_tolerance):
        trace = normal.simulate(key, (0.0, 1.0))
        new_trace, weight, discard = normal.update(
            key, trace, (0.0, 1.0), ChoiceMap.value(2.0)
        )
        assert new_trace.get_retval() == 2.0
        expected = normal.logpdf(2.0, 0.0, 1.0) - trace.get_score()
        assert jnp.abs(weight - expected) < exact_tolerance
        assert discard[ROOT] is trace.get_retval()

    def test_update_arguments_only(self, key, exact_tolerance):
        trace = normal.simulate(key, (0.0, 1.0))
        new_trace, weight, discard = normal.update(
            key, trace, (1.0, 1.0), ChoiceMap.empty()
        )
        v = trace.get_retval()
        expected = normal.logpdf(v, 1.0, 1.0) - normal.logpdf(v, 0.0, 1.0)
        assert jnp.abs(weight - expected) < exact_tolerance
        assert new_trace.get_retval() is v
        assert discard.is_empty()

    def test_regenerate(self, key):
        trace = normal.simulate(key, (0.0, 1.0))
        new_trace, weight = normal.regenerate(jrand.key(1), trace, (0.0, 1.0), AllSel())
        assert weight == 0.0
        assert new_trace.get_retval() != trace.get_retval()

        same, weight = normal.regenerate(jrand.key(1), trace, (0.0, 1.0), NoneSel())
        assert weight == 0.0
        assert same.get_retval() is trace.get_retval()

    def test_project(self, key):
        trace = normal.simulate(key, (0.0, 1.0))
        assert trace.project(AllSel()) == trace.get_score()
        assert trace.project(NoneSel()) == 0.0
