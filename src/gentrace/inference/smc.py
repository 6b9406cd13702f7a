"""
Importance sampling and importance resampling for gentrace.

Particles are drawn one after another from the model's `generate` (the
model's own prior serves as the proposal for unconstrained choices) or
from a custom proposal whose choices are merged with the constraints.

References:
    [1] P. D. Moral, A. Doucet, and A. Jasra, "Sequential Monte Carlo samplers,"
        Journal of the Royal Statistical Society: Series B (Statistical Methodology),
        vol. 68, no. 3, pp. 411-436, 2006.
"""

import logging

import jax
import jax.numpy as jnp
import jax.random as jrand
import jax.scipy.special

from gentrace.core import (
    GFI,
    Any,
    Callable,
    ChoiceMap,
    InvalidParameter,
    PRNGKey,
    Pytree,
    R,
    Trace,
    Weight,
    X,
    as_choice_map,
)

logger = logging.getLogger(__name__)


def effective_sample_size(log_weights: jnp.ndarray) -> jnp.ndarray:
    """
    Compute the effective sample size from log importance weights.

    Args:
        log_weights: Array of log importance weights

    Returns:
        Effective sample size in [1, num_samples]
    """
    log_weights_normalized = log_weights - jax.scipy.special.logsumexp(log_weights)
    weights_normalized = jnp.exp(log_weights_normalized)
    return 1.0 / jnp.sum(weights_normalized**2)


@Pytree.dataclass
class ParticleCollection(Pytree):
    """Result of importance sampling containing traces, weights, and statistics."""

    traces: list
    log_weights: jnp.ndarray
    n_samples: int = Pytree.static()

    def normalized_weights(self) -> jnp.ndarray:
        return jnp.exp(
            self.log_weights - jax.scipy.special.logsumexp(self.log_weights)
        )

    def effective_sample_size(self) -> jnp.ndarray:
        return effective_sample_size(self.log_weights)

    def log_marginal_likelihood(self) -> jnp.ndarray:
        """
        Estimate log marginal likelihood using importance sampling.

        Returns:
            `logsumexp(log_weights) - log(n_samples)`, the log of the mean
            importance weight. Its exponential is an unbiased estimate of
            the marginal likelihood of the constraints.
        """
        return jax.scipy.special.logsumexp(self.log_weights) - jnp.log(self.n_samples)

    def estimate(self, fn: Callable[[Trace[X, R]], Any]) -> Any:
        """
        Compute weighted estimate of a function applied to particle traces.

        Args:
            fn: Function to apply to each particle's trace

        Returns:
            Weighted estimate: sum(w_i * fn(x_i)) / sum(w_i)

        Examples:
            >>> particles.estimate(lambda tr: tr["mu"])  # Posterior mean
            >>> particles.estimate(lambda tr: tr["mu"] ** 2)  # Second moment
        """
        values = jnp.stack([jnp.asarray(fn(tr)) for tr in self.traces])
        weights = self.normalized_weights()
        if values.ndim == 1:
            return jnp.sum(weights * values)
        return jnp.tensordot(weights, values, axes=1)

    def resample(self, key: PRNGKey) -> Trace[X, R]:
        """Draw one particle with probability proportional to its weight."""
        index = jrand.categorical(key, self.log_weights)
        return self.traces[int(index)]


def _check_particles(n: int) -> None:
    if n < 1:
        raise InvalidParameter(f"number of particles must be at least 1, got {n}")


def importance_sampling(
    key: PRNGKey,
    model: GFI[X, R],
    args: tuple,
    constraints: Any,
    n_samples: int,
    proposal: GFI | None = None,
    proposal_args: tuple = (),
) -> ParticleCollection:
    """
    Draw weighted particles for `model` conditioned on `constraints`.

    Without a proposal each particle is `model.generate(args, constraints)`
    and its weight is the generate weight. With a proposal, the proposal is
    simulated on `proposal_args`, its choices are merged with the
    constraints, and the weight is the model weight minus the proposal score.

    Args:
        key: PRNG key
        model: Target generative function
        args: Arguments for the model
        constraints: Observed choices (`ChoiceMap` or dict)
        n_samples: Number of particles (>= 1)
        proposal: Optional custom proposal generative function
        proposal_args: Arguments for the proposal

    Returns:
        ParticleCollection with traces and log weights
    """
    _check_particles(n_samples)
    constraints = as_choice_map(constraints)

    traces, log_weights = [], []
    for particle_key in jrand.split(key, n_samples):
        if proposal is None:
            tr, w = model.generate(particle_key, args, constraints)
        else:
            propose_key, generate_key = jrand.split(particle_key)
            proposed, q, _ = proposal.propose(propose_key, proposal_args)
            merged: ChoiceMap = proposed.merge(constraints)
            tr, p = model.generate(generate_key, args, merged)
            w = p - q
        traces.append(tr)
        log_weights.append(w)

    particles = ParticleCollection(
        traces=traces,
        log_weights=jnp.stack(log_weights),
        n_samples=n_samples,
    )
    logger.debug(
        "importance sampling: %d particles, effective sample size %.2f",
        n_samples,
        float(particles.effective_sample_size()),
    )
    return particles


def importance_resampling(
    key: PRNGKey,
    model: GFI[X, R],
    args: tuple,
    constraints: Any,
    n_particles: int,
    proposal: GFI | None = None,
    proposal_args: tuple = (),
) -> tuple[Trace[X, R], Weight]:
    """
    Sampling importance resampling: draw `n_particles` particles and keep
    one chosen in proportion to its weight.

    Returns:
        `(trace, log_ml_estimate)` where `log_ml_estimate` is the log of
        the mean importance weight.
    """
    _check_particles(n_particles)
    sample_key, resample_key = jrand.split(key)
    particles = importance_sampling(
        sample_key,
        model,
        args,
        constraints,
        n_particles,
        proposal=proposal,
        proposal_args=proposal_args,
    )
    return particles.resample(resample_key), particles.log_marginal_likelihood()
