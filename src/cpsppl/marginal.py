"""The result type every inference strategy returns."""

import math

import jax.numpy as jnp
import jax.random as jrand
import numpy as np

from cpsppl.core import (
    Any,
    Callable,
    InferenceError,
    PRNGKey,
    Pytree,
    Sequence,
    serialize,
    value_key,
)


def logsumexp(log_weights: Sequence[float]) -> float:
    """Log of the summed weights, in float64. `-inf` for an empty or all-zero
    collection."""
    if len(log_weights) == 0:
        return -math.inf
    return float(np.logaddexp.reduce(np.asarray(log_weights, dtype=np.float64)))


def _label(value: Any) -> Any:
    try:
        hash(value)
    except TypeError:
        return serialize(value)
    return value


@Pytree.dataclass
class Marginal(Pytree):
    """A normalized distribution over the values a program returned.

    `values` holds each distinct value once, in first-seen order, and
    `log_probs` the matching normalized log-probabilities. Sample-based
    strategies also keep the raw `samples` they recorded.
    `normalization_constant` is the log marginal likelihood estimate, or
    `None` when the strategy does not produce one.
    """

    values: tuple
    log_probs: tuple
    normalization_constant: float | None = None
    samples: tuple = ()
    diagnostics: dict = Pytree.field(default_factory=dict)

    @staticmethod
    def from_log_weights(
        values: Sequence[Any],
        log_weights: Sequence[float],
        *,
        normalization_constant: float | None = None,
        samples: Sequence[Any] = (),
        diagnostics: dict | None = None,
    ) -> "Marginal":
        """Group equal values, summing their weights, and normalize."""
        if len(values) != len(log_weights):
            raise ValueError("values and log_weights must have the same length.")
        groups: dict[Any, tuple[Any, list[float]]] = {}
        for value, log_weight in zip(values, log_weights):
            entry = groups.setdefault(value_key(value), (value, []))
            entry[1].append(float(log_weight))
        totals = [logsumexp(weights) for _, weights in groups.values()]
        total = logsumexp(totals)
        if not math.isfinite(total):
            raise InferenceError("The marginal has no probability mass.")
        return Marginal(
            tuple(value for value, _ in groups.values()),
            tuple(t - total for t in totals),
            normalization_constant,
            tuple(samples),
            dict(diagnostics or {}),
        )

    @staticmethod
    def from_samples(
        samples: Sequence[Any],
        *,
        normalization_constant: float | None = None,
        diagnostics: dict | None = None,
    ) -> "Marginal":
        """Equally weighted samples."""
        return Marginal.from_log_weights(
            samples,
            [0.0] * len(samples),
            normalization_constant=normalization_constant,
            samples=samples,
            diagnostics=diagnostics,
        )

    def support(self) -> tuple:
        return self.values

    def score(self, value: Any) -> float:
        key = value_key(value)
        for v, lp in zip(self.values, self.log_probs):
            if value_key(v) == key:
                return lp
        return -math.inf

    def prob(self, value: Any) -> float:
        return math.exp(self.score(value))

    def histogram(self) -> dict:
        """Probability of each value, keyed by the value itself, or by its
        serialization when it is unhashable. Use `prob` to tell apart values
        that compare equal across types."""
        return {_label(v): math.exp(lp) for v, lp in zip(self.values, self.log_probs)}

    def map(self) -> tuple[Any, float]:
        """The most probable value and its probability."""
        best = int(np.argmax(self.log_probs))
        return self.values[best], math.exp(self.log_probs[best])

    def sample(self, key: PRNGKey) -> Any:
        index = int(jrand.categorical(key, jnp.asarray(self.log_probs)))
        return self.values[index]

    def expectation(self, f: Callable[[Any], Any] | None = None) -> float:
        f = f if f is not None else (lambda v: v)
        return float(
            sum(math.exp(lp) * float(f(v)) for v, lp in zip(self.values, self.log_probs))
        )

    def variance(self, f: Callable[[Any], Any] | None = None) -> float:
        f = f if f is not None else (lambda v: v)
        mean = self.expectation(f)
        return self.expectation(lambda v: (float(f(v)) - mean) ** 2)

    def std(self, f: Callable[[Any], Any] | None = None) -> float:
        return math.sqrt(self.variance(f))
