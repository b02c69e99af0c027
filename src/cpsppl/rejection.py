"""Rejection sampling.

Each attempt runs the program forward, drawing every choice from its
prior. In the default mode the attempt is accepted with probability
`exp(score - max_score)` once it completes. In incremental mode the test is
made as each factor arrives, so an attempt is abandoned at the first
failure; this requires every factor to be non-positive.
"""

import logging
import math
from dataclasses import dataclass, field

from cpsppl.core import (
    Address,
    Any,
    Callable,
    ConfigurationError,
    Continuation,
    Coroutine,
    InferenceError,
    Signal,
    Step,
    Store,
    log_uniform,
    start_program,
    trampoline,
)
from cpsppl.marginal import Marginal

logger = logging.getLogger(__name__)


@dataclass(kw_only=True)
class Rejection(Coroutine):
    program: Callable[..., Step]
    samples: int = 100
    max_score: float = 0.0
    incremental: bool = False
    max_attempts: int = 1_000_000
    _score: float = field(default=0.0, init=False, repr=False)
    _threshold: float = field(default=0.0, init=False, repr=False)
    _accepted: list = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        if self.samples < 1:
            raise ConfigurationError(f"samples must be at least 1, got {self.samples}.")
        if self.max_attempts < self.samples:
            raise ConfigurationError(
                f"max_attempts ({self.max_attempts}) is smaller than samples ({self.samples})."
            )

    def sample(self, s: Store, k: Continuation, a: Address, dist: Any) -> Step:
        return k(s, dist.sample(self.split_key()))

    def factor(self, s: Store, k: Continuation, a: Address, score: float) -> Step:
        if self.incremental:
            if score > 0.0:
                raise ConfigurationError(
                    f"Incremental rejection requires factors <= 0, got {score} at {a}."
                )
            self._score += score
            if self._threshold >= self._score:
                return Signal.REJECTED
            return k(s, None)
        self._score += score
        return k(s, None)

    def exit(self, s: Store, value: Any) -> Step:
        if self.incremental:
            self._accepted.append(value)
            return Signal.DONE
        if self._score > self.max_score:
            raise ConfigurationError(
                f"Score {self._score} exceeded max_score {self.max_score}; raise max_score."
            )
        if self._threshold < self._score - self.max_score:
            self._accepted.append(value)
            return Signal.DONE
        return Signal.REJECTED

    def estimate(self, s: Store) -> Marginal:
        self._accepted = []
        attempts = 0
        while len(self._accepted) < self.samples:
            if attempts >= self.max_attempts:
                raise InferenceError(
                    f"Rejection accepted {len(self._accepted)} of {self.samples} samples "
                    f"in {self.max_attempts} attempts."
                )
            attempts += 1
            self._score = 0.0
            # One uniform per attempt, compared against the running score.
            self._threshold = log_uniform(self.split_key())
            outcome = trampoline(start_program(self.program, self.address, s))
            if not isinstance(outcome, Signal):
                raise InferenceError(
                    f"Program returned {outcome!r} without reaching its final continuation."
                )
        logger.debug("Rejection accepted %d samples in %d attempts", self.samples, attempts)
        return Marginal.from_samples(
            self._accepted,
            diagnostics={"attempts": attempts, "acceptance_rate": self.samples / attempts},
        )
