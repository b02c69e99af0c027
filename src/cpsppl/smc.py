"""
Sequential Monte Carlo over CPS executions.

Particles are executions advanced in lockstep from one factor to the next.
Every factor a particle absorbs adds to its log weight; once all particles
have reached their next factor (or finished), the population is resampled
and optionally rejuvenated with Metropolis-Hastings moves that target the
posterior over the factors seen so far.
"""

import logging
import math
from dataclasses import dataclass, field

import jax.numpy as jnp
import jax.random as jrand
import numpy as np

from cpsppl.core import (
    ConfigurationError,
    InferenceError,
    PRNGKey,
    Pytree,
    Sequence,
    Store,
)
from cpsppl.marginal import Marginal, logsumexp
from cpsppl.mcmc import ExecutionTrace, MHKernel

logger = logging.getLogger(__name__)

RESAMPLING_METHODS = ("multinomial", "systematic")


def effective_sample_size(log_weights: Sequence[float]) -> float:
    """
    Compute the effective sample size from log importance weights.

    Args:
        log_weights: Log importance weights

    Returns:
        Effective sample size in [1, num_samples]
    """
    total = logsumexp(log_weights)
    weights_normalized = np.exp(np.asarray(log_weights, dtype=np.float64) - total)
    return float(1.0 / np.sum(weights_normalized**2))


def systematic_resample(key: PRNGKey, log_weights: Sequence[float], n_samples: int) -> list[int]:
    """
    Systematic resampling from importance weights.

    Args:
        key: PRNG key for the single uniform offset
        log_weights: Log importance weights
        n_samples: Number of samples to draw

    Returns:
        Indices of the selected particles
    """
    total = logsumexp(log_weights)
    weights = np.exp(np.asarray(log_weights, dtype=np.float64) - total)
    cumsum = np.cumsum(weights)
    cumsum /= cumsum[-1]

    u = float(jrand.uniform(key))
    positions = (np.arange(n_samples) + u) / n_samples
    indices = np.searchsorted(cumsum, positions, side="right")
    return [int(ix) for ix in np.minimum(indices, len(weights) - 1)]


def multinomial_resample(key: PRNGKey, log_weights: Sequence[float], n_samples: int) -> list[int]:
    indices = jrand.categorical(
        key, jnp.asarray(log_weights, dtype=jnp.float32), shape=(n_samples,)
    )
    return [int(ix) for ix in indices]


def resample_indices(
    key: PRNGKey,
    log_weights: Sequence[float],
    n_samples: int,
    method: str = "multinomial",
) -> list[int]:
    if method == "multinomial":
        return multinomial_resample(key, log_weights, n_samples)
    elif method == "systematic":
        return systematic_resample(key, log_weights, n_samples)
    else:
        raise ConfigurationError(f"Unknown resampling method: {method}")


@Pytree.dataclass
class Particle(Pytree):
    """An execution together with its importance weight. A weight of `-inf`
    marks a particle whose execution was abandoned."""

    trace: ExecutionTrace
    log_weight: float

    @property
    def alive(self) -> bool:
        return self.log_weight > -math.inf

    @property
    def finished(self) -> bool:
        return self.trace.done or not self.alive


def advance_particle(kernel: MHKernel, particle: Particle) -> Particle:
    """Run a particle up to and including its next factor, adding the
    factor to its weight."""
    if particle.finished:
        return particle
    trace = kernel.extend(particle.trace, limit=particle.trace.factors + 1)
    if trace is None:
        return Particle(particle.trace, -math.inf)
    increment = trace.likelihood - particle.trace.likelihood
    return Particle(trace, particle.log_weight + increment)


class ParticleDegeneracyError(InferenceError):
    """Raised when every particle in a population has zero weight."""


def log_mean_weight(particles: Sequence[Particle]) -> float:
    total = logsumexp([p.log_weight for p in particles])
    if total == -math.inf:
        raise ParticleDegeneracyError("Every particle has zero weight.")
    return total - math.log(len(particles))


@dataclass(kw_only=True)
class SMC(MHKernel):
    """Sequential Monte Carlo with optional MH rejuvenation.

    The returned `Marginal` is weighted by the final particles, and its
    `normalization_constant` estimates the log marginal likelihood.
    """

    particles: int = 100
    rejuv_steps: int = 0
    resampling: str = "multinomial"
    _diagnostics: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if self.particles < 1:
            raise ConfigurationError(f"particles must be at least 1, got {self.particles}.")
        if self.rejuv_steps < 0:
            raise ConfigurationError(
                f"rejuv_steps must be non-negative, got {self.rejuv_steps}."
            )
        if self.resampling not in RESAMPLING_METHODS:
            raise ConfigurationError(
                f"Unknown resampling method {self.resampling!r}; expected one of {RESAMPLING_METHODS}."
            )

    def advance(self, particle: Particle) -> Particle:
        return advance_particle(self, particle)

    def resample(self, particles: list[Particle]) -> list[Particle]:
        indices = resample_indices(
            self.split_key(),
            [p.log_weight for p in particles],
            len(particles),
            self.resampling,
        )
        return [Particle(particles[ix].trace, 0.0) for ix in indices]

    def rejuvenate(self, particle: Particle, limit: int) -> Particle:
        """MH moves targeting the posterior over executions taken up to their
        `limit`-th factor, finished particles included."""
        trace = particle.trace
        for _ in range(self.rejuv_steps):
            trace, _ = self.mh_step(trace, limit)
        return Particle(trace, particle.log_weight)

    def filter(self, particles: list[Particle]) -> tuple[float, list[Particle]]:
        """Advance a population until every particle has finished.

        Args:
            particles: The initial population, all with weights of the same
                scale (normally zero).

        Returns:
            The log marginal likelihood estimate accumulated over this run, and
            the surviving final particles.
        """
        log_z = 0.0
        rounds = 0
        min_ess = float(len(particles))
        while True:
            particles = [self.advance(p) for p in particles]
            if all(p.finished for p in particles):
                break
            rounds += 1
            log_z += log_mean_weight(particles)
            min_ess = min(min_ess, effective_sample_size([p.log_weight for p in particles]))
            # Unfinished particles are all suspended at the same factor.
            limit = max(p.trace.factors for p in particles if not p.finished)
            particles = self.resample(particles)
            if self.rejuv_steps:
                particles = [self.rejuvenate(p, limit) for p in particles]
            logger.debug("SMC round %d: log Z = %.4f", rounds, log_z)
        log_z += log_mean_weight(particles)
        self._diagnostics = {"rounds": rounds, "min_ess": min_ess}
        return log_z, [p for p in particles if p.alive]

    def estimate(self, s: Store) -> Marginal:
        start = self.start(s)
        log_z, particles = self.filter([Particle(start, 0.0)] * self.particles)
        return Marginal.from_log_weights(
            [p.trace.value for p in particles],
            [p.log_weight for p in particles],
            normalization_constant=log_z,
            diagnostics=dict(self._diagnostics),
        )
