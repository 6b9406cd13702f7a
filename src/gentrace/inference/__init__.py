"""Inference algorithms built on the generative function interface."""

from .mcmc import (
    MCMCResult,
    acceptance_probability,
    chain,
    compute_ess,
    compute_rhat,
    cycle,
    mh,
    mh_kernel,
)
from .smc import (
    ParticleCollection,
    effective_sample_size,
    importance_resampling,
    importance_sampling,
)

__all__ = [
    "MCMCResult",
    "ParticleCollection",
    "acceptance_probability",
    "chain",
    "compute_ess",
    "compute_rhat",
    "cycle",
    "effective_sample_size",
    "importance_resampling",
    "importance_sampling",
    "mh",
    "mh_kernel",
]
