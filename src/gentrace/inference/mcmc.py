"""
MCMC (Markov Chain Monte Carlo) inference for gentrace.

This module provides Metropolis-Hastings in its two standard forms, plus
the plumbing used to build inference programs out of it:

- `mh` with a `Selection` resimulates the selected addresses from the
  model's prior via `regenerate`.
- `mh` with a proposal generative function proposes new values with a
  user program that receives the current trace, applies them with
  `update`, and scores the reverse move with `assess`.
- `cycle` composes kernels into one block-scheduled sweep, and `chain`
  iterates a kernel with burn-in, thinning and several chains.

References
----------

**Metropolis-Hastings Algorithm:**
- Metropolis, N., Rosenbluth, A. W., Rosenbluth, M. N., Teller, A. H., & Teller, E. (1953).
  "Equation of state calculations by fast computing machines."
  The Journal of Chemical Physics, 21(6), 1087-1092.
- Hastings, W. K. (1970). "Monte Carlo sampling methods using Markov chains and their applications."
  Biometrika, 57(1), 97-109.

**Implementation Reference:**
- Gen.jl MH implementation: https://github.com/probcomp/Gen.jl/blob/master/src/inference/mh.jl
"""

import logging

import jax.numpy as jnp
import jax.random as jrand

from gentrace.core import (
    GFI,
    Address,
    Any,
    Callable,
    FloatArray,
    InvalidParameter,
    NoneSel,
    PRNGKey,
    Pytree,
    R,
    Selection,
    Trace,
    X,
)

logger = logging.getLogger(__name__)

# A kernel maps a key and a trace to a new trace and its acceptance record.
MCMCKernel = Callable[[PRNGKey, Trace[X, R]], tuple[Trace[X, R], Any]]


def compute_rhat(samples: jnp.ndarray) -> FloatArray:
    """
    Compute potential scale reduction factor (R-hat) for MCMC convergence.

    R-hat compares between-chain and within-chain variance to assess convergence.
    Values close to 1.0 indicate good convergence.

    Args:
        samples: Array of shape (n_chains, n_samples) containing MCMC samples

    Returns:
        R-hat statistic. Values < 1.01 typically indicate convergence.
    """
    samples = jnp.asarray(samples, dtype=jnp.result_type(float))
    n_chains, n_samples = samples.shape

    if n_chains < 2 or n_samples < 2:
        return jnp.array(jnp.nan)

    chain_means = jnp.mean(samples, axis=1)

    # Between-chain variance
    B = n_samples * jnp.var(chain_means, ddof=1)

    # Within-chain variance
    W = jnp.mean(jnp.var(samples, axis=1, ddof=1))

    var_plus = ((n_samples - 1) * W + B) / n_samples
    return jnp.sqrt(var_plus / W)


def compute_ess(samples: jnp.ndarray) -> FloatArray:
    """
    Effective sample size from the lag-1 autocorrelation of the pooled chains.

    Args:
        samples: Array of shape (n_chains, n_samples)

    Returns:
        Approximate effective sample size, `N / (1 + 2 * rho_1)`.
    """
    samples = jnp.asarray(samples, dtype=jnp.result_type(float))
    n_chains, n_samples = samples.shape
    flat = samples.reshape(-1)
    if flat.shape[0] < 3 or jnp.var(flat) == 0:
        return jnp.array(float(flat.shape[0]))
    lag1 = jnp.corrcoef(flat[:-1], flat[1:])[0, 1]
    lag1 = jnp.clip(lag1, 0.0, 0.99)
    return (n_chains * n_samples) / (1 + 2 * lag1)


@Pytree.dataclass
class MCMCResult(Pytree):
    """Result of MCMC chain sampling containing traces and diagnostics.

    With one chain, `traces` is the list of kept traces and `accepts` has a
    leading step axis. With several chains, `traces` is a list of such
    lists and `accepts` has a leading chain axis.
    """

    traces: list
    accepts: jnp.ndarray
    acceptance_rate: FloatArray
    n_steps: int = Pytree.static()
    n_chains: int = Pytree.static()

    # Between-chain diagnostics per scalar address (only when n_chains > 1)
    rhat: dict | None = None
    ess: dict | None = None

    def samples(self, addr: Any) -> jnp.ndarray:
        """Values at `addr` stacked along the step (and chain) axes."""
        if self.n_chains == 1:
            return jnp.stack([jnp.asarray(tr[addr]) for tr in self.traces])
        return jnp.stack(
            [jnp.stack([jnp.asarray(tr[addr]) for tr in run]) for run in self.traces]
        )


def acceptance_probability(log_alpha: Any) -> float:
    """`min(1, exp(log_alpha))`, with NaN (a degenerate proposal) mapped to 0."""
    log_alpha = jnp.asarray(log_alpha)
    alpha = jnp.where(
        jnp.isnan(log_alpha),
        0.0,
        jnp.exp(jnp.minimum(0.0, log_alpha)),
    )
    return float(alpha)


def _accept(key: PRNGKey, log_alpha: Any) -> bool:
    return bool(jrand.uniform(key) < acceptance_probability(log_alpha))


def mh(
    key: PRNGKey,
    trace: Trace[X, R],
    selection_or_proposal: Selection | GFI,
    proposal_args: tuple = (),
) -> tuple[Trace[X, R], bool]:
    """
    Single Metropolis-Hastings step.

    Given a `Selection`, the selected addresses are resimulated from the
    prior with `regenerate`, whose weight is the log acceptance ratio.

    Given a proposal generative function, the proposal is run on
    `(trace, *proposal_args)` to pick new values; `update` applies them
    to the model, and the proposal is assessed on the discarded values
    (with the new trace as its argument) for the reverse move.

    Args:
        key: PRNG key
        trace: Current trace state
        selection_or_proposal: Addresses to resimulate, or a proposal
        proposal_args: Extra arguments passed to the proposal

    Returns:
        `(trace, accepted)`. On rejection the input trace is returned.
    """
    if isinstance(selection_or_proposal, Selection):
        return _resimulation_mh(key, trace, selection_or_proposal)
    return _proposal_mh(key, trace, selection_or_proposal, proposal_args)


def _resimulation_mh(
    key: PRNGKey,
    trace: Trace[X, R],
    selection: Selection,
) -> tuple[Trace[X, R], bool]:
    if isinstance(selection, NoneSel):
        return trace, True
    regen_key, accept_key = jrand.split(key)
    model = trace.get_gen_fn()
    new_trace, log_weight = model.regenerate(
        regen_key, trace, trace.get_args(), selection
    )
    if _accept(accept_key, log_weight):
        return new_trace, True
    return trace, False


def _proposal_mh(
    key: PRNGKey,
    trace: Trace[X, R],
    proposal: GFI,
    proposal_args: tuple,
) -> tuple[Trace[X, R], bool]:
    propose_key, update_key, accept_key = jrand.split(key, 3)
    model = trace.get_gen_fn()

    # Forward move
    fwd_choices, fwd_score, _ = proposal.propose(propose_key, (trace, *proposal_args))
    new_trace, model_weight, discard = model.update(
        update_key, trace, trace.get_args(), fwd_choices
    )

    # Reverse move: the proposal must be able to put the old values back
    bwd_score, _ = proposal.assess((new_trace, *proposal_args), discard)

    log_alpha = model_weight + bwd_score - fwd_score
    if _accept(accept_key, log_alpha):
        return new_trace, True
    return trace, False


def mh_kernel(
    selection_or_proposal: Selection | GFI,
    proposal_args: tuple = (),
) -> MCMCKernel:
    """Fix the proposal of `mh`, giving a kernel `(key, trace) -> (trace, accepted)`."""

    def kernel(key, trace):
        return mh(key, trace, selection_or_proposal, proposal_args)

    return kernel


def cycle(*kernels: MCMCKernel) -> MCMCKernel:
    """
    Run kernels one after another, each on the trace the previous one left.

    The composite kernel reports one acceptance entry per block, so a
    sweep over `n` blocks yields a boolean array of length `n`.
    """
    if not kernels:
        raise InvalidParameter("cycle needs at least one kernel")

    def kernel(key, trace):
        keys = jrand.split(key, len(kernels))
        accepted = []
        for k, block in zip(keys, kernels):
            trace, acc = block(k, trace)
            accepted.append(jnp.atleast_1d(jnp.asarray(acc)))
        return trace, jnp.concatenate(accepted)

    return kernel


def _scalar_addresses(runs: list) -> list[Address]:
    common = None
    for run in runs:
        for tr in run:
            addrs = {
                a
                for a, v in tr.get_choices().items()
                if jnp.ndim(v) == 0 and jnp.asarray(v).dtype.kind in "biuf"
            }
            common = addrs if common is None else common & addrs
    return sorted(common or ())


def chain(mcmc_kernel: MCMCKernel):
    """
    Higher-order function that creates MCMC chain algorithms from kernels.

    Args:
        mcmc_kernel: Kernel `(key, trace) -> (trace, accepted)`, e.g. from
            `mh_kernel` or `cycle`

    Returns:
        `run_chain(key, trace, n_steps, *, burn_in=0,
        autocorrelation_resampling=1, n_chains=1) -> MCMCResult`
    """

    def run_single(key, trace, n_steps, burn_in, thin):
        traces, accepts = [], []
        for step_key in jrand.split(key, n_steps):
            trace, accepted = mcmc_kernel(step_key, trace)
            traces.append(trace)
            accepts.append(jnp.asarray(accepted))
        keep = range(burn_in, n_steps, thin)
        return [traces[i] for i in keep], jnp.stack([accepts[i] for i in keep])

    def run_chain(
        key: PRNGKey,
        initial_trace: Trace[X, R],
        n_steps: int,
        *,
        burn_in: int = 0,
        autocorrelation_resampling: int = 1,
        n_chains: int = 1,
    ) -> MCMCResult:
        """
        Run MCMC chain with the configured kernel.

        Args:
            key: PRNG key
            initial_trace: Starting trace (shared by every chain)
            n_steps: Total number of steps to run (before burn-in/thinning)
            burn_in: Number of initial steps to discard as burn-in
            autocorrelation_resampling: Keep every N-th sample (thinning)
            n_chains: Number of independent chains, run one after another

        Returns:
            MCMCResult with traces, acceptances, and diagnostics
        """
        if n_steps < 1:
            raise InvalidParameter(f"n_steps must be at least 1, got {n_steps}")
        if not 0 <= burn_in < n_steps:
            raise InvalidParameter(
                f"burn_in must lie in [0, n_steps), got {burn_in} for {n_steps} steps"
            )
        if autocorrelation_resampling < 1:
            raise InvalidParameter(
                "autocorrelation_resampling must be at least 1, "
                f"got {autocorrelation_resampling}"
            )
        if n_chains < 1:
            raise InvalidParameter(f"n_chains must be at least 1, got {n_chains}")

        runs, accepts = [], []
        for i, chain_key in enumerate(jrand.split(key, n_chains)):
            traces, acc = run_single(
                chain_key,
                initial_trace,
                n_steps,
                burn_in,
                autocorrelation_resampling,
            )
            runs.append(traces)
            accepts.append(acc)
            logger.debug(
                "chain %d finished: %d steps kept, acceptance rate %s",
                i,
                len(traces),
                jnp.mean(acc, axis=0),
            )

        if n_chains == 1:
            return MCMCResult(
                traces=runs[0],
                accepts=accepts[0],
                acceptance_rate=jnp.mean(accepts[0], axis=0),
                n_steps=len(runs[0]),
                n_chains=1,
            )

        # Between-chain diagnostics
        combined = jnp.stack(accepts)
        rhat, ess = {}, {}
        for addr in _scalar_addresses(runs):
            samples = jnp.array(
                [[jnp.asarray(tr[addr], dtype=float) for tr in run] for run in runs]
            )
            rhat[addr] = compute_rhat(samples)
            ess[addr] = compute_ess(samples)

        return MCMCResult(
            traces=runs,
            accepts=combined,
            acceptance_rate=jnp.mean(combined, axis=(0, 1)),
            n_steps=len(runs[0]),
            n_chains=n_chains,
            rhat=rhat,
            ess=ess,
        )

    return run_chain
