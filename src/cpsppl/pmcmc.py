"""
Particle marginal Metropolis-Hastings.

The chain's state is the prefix of an execution up to and including its
first factor. Each sweep proposes a new prefix with a single-site MH move,
runs an inner SMC from the prefix to estimate the marginal likelihood of
the remaining factors, and accepts or rejects the pair with the
likelihood estimate in place of the exact likelihood.
"""

import logging
import math
from dataclasses import dataclass

from cpsppl.core import (
    ConfigurationError,
    InferenceError,
    Store,
    installed,
    log_uniform,
)
from cpsppl.marginal import Marginal
from cpsppl.mcmc import ExecutionTrace, MHKernel
from cpsppl.smc import SMC, Particle, ParticleDegeneracyError, resample_indices

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class PMCMC(MHKernel):
    """PMMH with `particles` inner particles, run for `sweeps` sweeps.

    Each sweep records one value, drawn from the population of the most
    recently accepted inner SMC run. The estimate carries no normalization
    constant.
    """

    particles: int = 100
    sweeps: int = 100
    max_init_attempts: int = 10_000

    def __post_init__(self):
        if self.particles < 1:
            raise ConfigurationError(f"particles must be at least 1, got {self.particles}.")
        if self.sweeps < 1:
            raise ConfigurationError(f"sweeps must be at least 1, got {self.sweeps}.")

    def run_inner(self, prefix: ExecutionTrace) -> tuple[float, list[Particle]]:
        """Estimate the log likelihood of `prefix` and the posterior over its
        completions."""
        inner = SMC(
            program=self.program,
            key=self.split_key(),
            address=self.address,
            particles=self.particles,
        )
        with installed(inner):
            log_z, population = inner.filter([Particle(prefix, 0.0)] * self.particles)
        return prefix.likelihood + log_z, population

    def draw(self, population: list[Particle]):
        [ix] = resample_indices(self.split_key(), [p.log_weight for p in population], 1)
        return population[ix].trace.value

    def propose(self, s: Store, prefix: ExecutionTrace) -> tuple[ExecutionTrace, float] | None:
        """Propose a prefix. Returns it with the log acceptance ratio of the
        prior and proposal terms, or `None` for a zero-probability proposal."""
        if not prefix.choices:
            return prefix, 0.0
        proposal = self.regenerate(prefix, limit=1)
        if proposal is None:
            return None
        new, log_alpha = proposal
        # The MH ratio includes the prefix likelihood; the inner SMC estimate
        # accounts for it instead.
        return new, log_alpha - (new.likelihood - prefix.likelihood)

    def start_chain(self, s: Store) -> tuple[ExecutionTrace, float, list[Particle]]:
        """Find an initial prefix whose inner SMC run keeps at least one
        particle alive."""
        for attempt in range(self.max_init_attempts):
            prefix = self.initialize(s, limit=1, max_attempts=self.max_init_attempts)
            try:
                log_z, population = self.run_inner(prefix)
            except ParticleDegeneracyError:
                logger.debug("PMCMC initialization attempt %d lost every particle", attempt + 1)
                continue
            return prefix, log_z, population
        raise InferenceError(
            f"No initial prefix with a surviving particle found in {self.max_init_attempts} attempts."
        )

    def estimate(self, s: Store) -> Marginal:
        prefix, log_z, population = self.start_chain(s)
        values = []
        accepted = 0
        for sweep in range(self.sweeps):
            proposal = self.propose(s, prefix)
            if proposal is not None:
                new, log_alpha = proposal
                try:
                    new_log_z, new_population = self.run_inner(new)
                except ParticleDegeneracyError:
                    # Every inner particle died: the proposal has zero likelihood.
                    new_log_z, new_population = -math.inf, []
                log_alpha += new_log_z - log_z
                if new_population and log_uniform(self.split_key()) < log_alpha:
                    prefix, log_z, population = new, new_log_z, new_population
                    accepted += 1
            values.append(self.draw(population))
            logger.debug("PMCMC sweep %d: log Z = %.4f", sweep + 1, log_z)
        return Marginal.from_samples(
            values, diagnostics={"acceptance_rate": accepted / self.sweeps}
        )
