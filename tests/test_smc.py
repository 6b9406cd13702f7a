"""
Test cases for gentrace importance sampling.

Estimates are compared against the conjugate normal-normal model:

    mu ~ N(0, 1),  y ~ N(mu, 0.5),  y = 1
    =>  mu | y ~ N(0.8, 0.2),  log p(y) = log N(1; 0, 1.25)
"""

import logging

import jax.numpy as jnp
import jax.random as jrand
import pytest

from gentrace import (
    InvalidParameter,
    ParticleCollection,
    choice_map,
    gen,
    importance_resampling,
    importance_sampling,
    normal,
)
from gentrace.inference import effective_sample_size

POSTERIOR_MEAN = 0.8
POSTERIOR_VAR = 0.2
LOG_MARGINAL = float(normal.logpdf(1.0, 0.0, jnp.sqrt(1.25)))


@gen
def exact_posterior():
    yield normal(POSTERIOR_MEAN, jnp.sqrt(POSTERIOR_VAR)) @ "mu"


@gen
def wide_proposal(scale):
    yield normal(0.0, scale) @ "mu"


# =============================================================================
# WEIGHT STATISTICS
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_effective_sample_size():
    assert jnp.allclose(effective_sample_size(jnp.zeros(10)), 10.0)
    assert jnp.allclose(effective_sample_size(jnp.array([0.0, -jnp.inf, -jnp.inf])), 1.0)
    assert jnp.allclose(effective_sample_size(jnp.log(jnp.array([1.0, 1.0, 2.0]))), 16.0 / 6.0)


@pytest.mark.unit
@pytest.mark.fast
def test_particle_collection_statistics(key_sequence, normal_normal_model):
    traces = [normal_normal_model.simulate(k, ()) for k in key_sequence(3)]
    particles = ParticleCollection(
        traces=traces,
        log_weights=jnp.log(jnp.array([1.0, 1.0, 2.0])),
        n_samples=3,
    )
    assert jnp.allclose(particles.normalized_weights(), jnp.array([0.25, 0.25, 0.5]))
    assert jnp.allclose(particles.log_marginal_likelihood(), jnp.log(4.0 / 3.0))
    expected = 0.25 * traces[0]["mu"] + 0.25 * traces[1]["mu"] + 0.5 * traces[2]["mu"]
    assert jnp.allclose(particles.estimate(lambda tr: tr["mu"]), expected)


@pytest.mark.unit
@pytest.mark.fast
def test_resample_follows_weights(base_key, key_sequence, normal_normal_model):
    traces = [normal_normal_model.simulate(k, ()) for k in key_sequence(3)]
    particles = ParticleCollection(
        traces=traces,
        log_weights=jnp.array([-jnp.inf, 0.0, -jnp.inf]),
        n_samples=3,
    )
    for k in jrand.split(base_key, 5):
        assert particles.resample(k) is traces[1]


# =============================================================================
# IMPORTANCE SAMPLING
# =============================================================================


@pytest.mark.unit
@pytest.mark.fast
def test_importance_sampling_keeps_constraints(base_key, normal_normal_model):
    particles = importance_sampling(
        base_key, normal_normal_model, (), choice_map(y=1.0), 20
    )
    assert particles.n_samples == 20
    assert len(particles.traces) == 20
    assert particles.log_weights.shape == (20,)
    assert all(tr["y"] == 1.0 for tr in particles.traces)
    assert jnp.all(jnp.isfinite(particles.log_weights))


@pytest.mark.unit
@pytest.mark.fast
def test_importance_sampling_requires_particles(base_key, normal_normal_model):
    with pytest.raises(InvalidParameter):
        importance_sampling(base_key, normal_normal_model, (), {"y": 1.0}, 0)
    with pytest.raises(InvalidParameter):
        importance_resampling(base_key, normal_normal_model, (), {"y": 1.0}, 0)


@pytest.mark.unit
@pytest.mark.fast
def test_exact_proposal_gives_constant_weights(base_key, normal_normal_model):
    """With the posterior as proposal every weight equals log p(y)."""
    particles = importance_sampling(
        base_key,
        normal_normal_model,
        (),
        {"y": 1.0},
        50,
        proposal=exact_posterior,
    )
    assert jnp.allclose(particles.log_weights, LOG_MARGINAL, atol=1e-6)
    assert jnp.allclose(particles.effective_sample_size(), 50.0)
    assert abs(float(particles.log_marginal_likelihood()) - LOG_MARGINAL) < 1e-6


@pytest.mark.unit
@pytest.mark.fast
def test_importance_sampling_logs_ess(base_key, normal_normal_model, caplog):
    with caplog.at_level(logging.DEBUG, logger="gentrace.inference.smc"):
        importance_sampling(base_key, normal_normal_model, (), {"y": 1.0}, 5)
    assert any("effective sample size" in r.getMessage() for r in caplog.records)


@pytest.mark.integration
@pytest.mark.slow
def test_prior_proposal_estimates(base_key, normal_normal_model):
    particles = importance_sampling(
        base_key, normal_normal_model, (), {"y": 1.0}, 1000
    )
    mean = particles.estimate(lambda tr: tr["mu"])
    second = particles.estimate(lambda tr: tr["mu"] ** 2)
    assert abs(float(mean) - POSTERIOR_MEAN) < 0.1
    assert abs(float(second - mean**2) - POSTERIOR_VAR) < 0.08
    assert abs(float(particles.log_marginal_likelihood()) - LOG_MARGINAL) < 0.1


@pytest.mark.integration
@pytest.mark.slow
def test_custom_proposal_estimates(base_key, normal_normal_model):
    particles = importance_sampling(
        base_key,
        normal_normal_model,
        (),
        {"y": 1.0},
        1000,
        proposal=wide_proposal,
        proposal_args=(2.0,),
    )
    assert abs(float(particles.estimate(lambda tr: tr["mu"])) - POSTERIOR_MEAN) < 0.1
    assert abs(float(particles.log_marginal_likelihood()) - LOG_MARGINAL) < 0.15


@pytest.mark.unit
@pytest.mark.fast
def test_importance_resampling(base_key, normal_normal_model):
    trace, log_ml = importance_resampling(
        base_key, normal_normal_model, (), {"y": 1.0}, 100
    )
    assert trace["y"] == 1.0
    assert jnp.isfinite(log_ml)
    assert abs(float(log_ml) - LOG_MARGINAL) < 0.5


@pytest.mark.integration
@pytest.mark.slow
def test_importance_resampling_log_ml_average(base_key, normal_normal_model):
    estimates = [
        float(importance_resampling(k, normal_normal_model, (), {"y": 1.0}, 1000)[1])
        for k in jrand.split(base_key, 5)
    ]
    assert abs(sum(estimates) / len(estimates) - LOG_MARGINAL) < 0.05
