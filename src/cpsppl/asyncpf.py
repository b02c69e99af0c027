"""
Asynchronous particle filter (particle cascade).

Particles run one at a time from a buffer instead of in lockstep. When a
particle reaches its `j`-th factor, its weight is compared with the running
mean of the weights seen at factor `j` so far, and it spawns children in
proportion to the ratio. New root particles are started until enough
particles have finished; the remaining buffer is then drained.
"""

import logging
import math
from dataclasses import dataclass, field

import numpy as np

from cpsppl.core import (
    ConfigurationError,
    InferenceError,
    Store,
    log_uniform,
)
from cpsppl.marginal import Marginal, logsumexp
from cpsppl.mcmc import MHKernel
from cpsppl.smc import Particle, advance_particle

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class AsyncPF(MHKernel):
    """Particle cascade producing at least `particles` finished particles.

    `buffer_size` bounds how many children a single arrival may add beyond
    those already waiting; it defaults to `particles`. `max_roots` bounds
    the number of root particles started, defaulting to a thousand per
    requested particle.
    """

    particles: int = 100
    buffer_size: int | None = None
    max_roots: int | None = None
    _arrivals: dict = field(default_factory=dict, init=False, repr=False)

    def __post_init__(self):
        if self.particles < 1:
            raise ConfigurationError(f"particles must be at least 1, got {self.particles}.")
        if self.buffer_size is None:
            self.buffer_size = self.particles
        if self.buffer_size < 1:
            raise ConfigurationError(f"buffer_size must be at least 1, got {self.buffer_size}.")
        if self.max_roots is None:
            self.max_roots = 1000 * self.particles

    def arrive(self, j: int, log_weight: float) -> float:
        """Fold an arriving weight into the running mean at factor `j` and
        return the updated log mean."""
        count, log_mean = self._arrivals.get(j, (0, -math.inf))
        count += 1
        if count == 1:
            log_mean = log_weight
        else:
            log_mean = float(np.logaddexp(log_mean + math.log(count - 1), log_weight)) - math.log(count)
        self._arrivals[j] = (count, log_mean)
        return log_mean

    def children(self, particle: Particle, buffered: int) -> list[Particle]:
        log_mean = self.arrive(particle.trace.factors, particle.log_weight)
        log_ratio = particle.log_weight - log_mean
        if log_ratio < 0.0:
            if log_uniform(self.split_key()) < log_ratio:
                return [Particle(particle.trace, log_mean)]
            return []
        count = min(math.floor(math.exp(log_ratio)), max(1, self.buffer_size - buffered))
        return [Particle(particle.trace, particle.log_weight - math.log(count))] * count

    def process(self, particle: Particle, buffer: list[Particle], finished: list[Particle]) -> None:
        particle = advance_particle(self, particle)
        if not particle.alive:
            return
        if particle.trace.done:
            finished.append(particle)
            return
        buffer.extend(self.children(particle, len(buffer)))

    def estimate(self, s: Store) -> Marginal:
        self._arrivals = {}
        buffer: list[Particle] = []
        finished: list[Particle] = []
        roots = 0
        while len(finished) < self.particles:
            if buffer:
                particle = buffer.pop()
            else:
                if roots >= self.max_roots:
                    raise InferenceError(
                        f"AsyncPF finished {len(finished)} of {self.particles} particles "
                        f"from {roots} roots."
                    )
                roots += 1
                particle = Particle(self.start(s), 0.0)
            self.process(particle, buffer, finished)
        while buffer:
            self.process(buffer.pop(), buffer, finished)

        log_weights = [p.log_weight for p in finished]
        log_z = logsumexp(log_weights) - math.log(roots)
        logger.debug("AsyncPF finished %d particles from %d roots", len(finished), roots)
        return Marginal.from_log_weights(
            [p.trace.value for p in finished],
            log_weights,
            normalization_constant=log_z,
            diagnostics={"roots": roots, "finished": len(finished)},
        )
