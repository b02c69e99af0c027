"""Elementary distributions for CPS programs.

Every distribution is built from a TensorFlow Probability (JAX substrate)
constructor by `tfp_distribution`. Sampling and density evaluation are
compiled once per family with `jax.jit`; samples come back as Python
scalars (or arrays for vector-valued families) so programs can branch on
them directly.
"""

import math

import jax
import jax.numpy as jnp
import numpy as np

from cpsppl._compat import ensure_jax_tfp_compat
from cpsppl.core import (
    Any,
    Callable,
    InferenceError,
    PRNGKey,
    Pytree,
)

ensure_jax_tfp_compat()

from tensorflow_probability.substrates import jax as tfp  # noqa: E402

tfd = tfp.distributions


def to_python(x):
    x = jax.device_get(x)
    if np.ndim(x) == 0:
        return x.item()
    return jnp.asarray(x)


def to_int(x):
    return int(jax.device_get(x).item())


def as_float_arrays(*params):
    return tuple(jnp.asarray(p, dtype=jnp.float32) for p in params)


@Pytree.dataclass
class Family(Pytree):
    """A parametric family of distributions. Calling a `Family` with
    parameters binds them into a `Distribution`."""

    name: str = Pytree.static()
    sampler: Callable[..., Any] = Pytree.static()
    log_density: Callable[..., Any] = Pytree.static()
    prepare: Callable[..., tuple] = Pytree.static(default=as_float_arrays)
    enumerate_support: Callable[..., tuple] | None = Pytree.static(default=None)
    cast: Callable[[Any], Any] = Pytree.static(default=to_python)
    value_dtype: Any = Pytree.static(default=None)

    def __call__(self, *params) -> "Distribution":
        return Distribution(self, params)

    def __repr__(self) -> str:
        return f"Family({self.name})"


@Pytree.dataclass
class Distribution(Pytree):
    """A family with bound parameters: the object handed to `sample` and
    `observe`."""

    family: Family
    params: tuple

    @property
    def name(self) -> str:
        return self.family.name

    @property
    def enumerable(self) -> bool:
        return self.family.enumerate_support is not None

    def sample(self, key: PRNGKey) -> Any:
        family = self.family
        return family.cast(family.sampler(key, *family.prepare(*self.params)))

    def logpdf(self, value: Any) -> float:
        family = self.family
        if family.value_dtype is not None:
            value = jnp.asarray(value, dtype=family.value_dtype)
        lp = family.log_density(value, *family.prepare(*self.params))
        return float(jnp.sum(lp))

    def support(self) -> tuple:
        if self.family.enumerate_support is None:
            raise InferenceError(f"{self.name} has no enumerable support.")
        return self.family.enumerate_support(*self.params)

    def accepts(self, value: Any) -> bool:
        """Whether `value` could have been drawn from this distribution."""
        if self.enumerable:
            return value in self.support()
        return math.isfinite(self.logpdf(value))

    def __repr__(self) -> str:
        return f"{self.name}{self.params!r}"


def tfp_distribution(
    dist: Callable[..., "tfd.Distribution"],
    /,
    name: str,
    *,
    support: Callable[..., tuple] | None = None,
    prepare: Callable[..., tuple] = as_float_arrays,
    cast: Callable[[Any], Any] = to_python,
    value_dtype: Any = None,
) -> Family:
    def keyful_sampler(key, *args):
        d = dist(*args)
        return d.sample(seed=key)

    def logpdf(v, *args):
        d = dist(*args)
        return d.log_prob(v)

    return Family(
        name,
        jax.jit(keyful_sampler),
        jax.jit(logpdf),
        prepare,
        support,
        cast,
        value_dtype,
    )


#####################
# Discrete families #
#####################

flip = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.bool_),
    name="Flip",
    support=lambda p=0.5: (True, False),
    prepare=lambda p=0.5: as_float_arrays(p),
    value_dtype=jnp.bool_,
)
"""Flip distribution (Bernoulli with boolean output).

Args:
    p: Probability of True outcome, 0.5 when omitted.
"""

bernoulli = tfp_distribution(
    lambda p: tfd.Bernoulli(probs=p, dtype=jnp.int32),
    name="Bernoulli",
    support=lambda p: (0, 1),
    value_dtype=jnp.int32,
)
"""Bernoulli distribution over {0, 1}.

Args:
    p: Probability of 1.
"""

categorical = tfp_distribution(
    lambda probs: tfd.Categorical(probs=probs),
    name="Categorical",
    support=lambda probs: tuple(range(len(probs))),
    cast=to_int,
    value_dtype=jnp.int32,
)
"""Categorical distribution over the indices of `probs`.

Args:
    probs: Probability of each index (normalized by TFP).
"""

random_integer = tfp_distribution(
    lambda logits: tfd.Categorical(logits=logits),
    name="RandomInteger",
    support=lambda n: tuple(range(n)),
    prepare=lambda n: (jnp.zeros(n, dtype=jnp.float32),),
    cast=to_int,
    value_dtype=jnp.int32,
)
"""Uniform distribution over {0, ..., n - 1}.

Args:
    n: Number of outcomes.
"""

binomial = tfp_distribution(
    lambda n, p: tfd.Binomial(total_count=n, probs=p),
    name="Binomial",
    support=lambda n, p: tuple(range(int(n) + 1)),
    cast=to_int,
    value_dtype=jnp.float32,
)
"""Binomial distribution.

Args:
    n: Number of trials.
    p: Success probability of each trial.
"""

geometric = tfp_distribution(
    lambda p: tfd.Geometric(probs=p),
    name="Geometric",
    cast=to_int,
    value_dtype=jnp.float32,
)
"""Number of failures before the first success.

Args:
    p: Success probability of each trial.
"""

poisson = tfp_distribution(
    tfd.Poisson,
    name="Poisson",
    cast=to_int,
    value_dtype=jnp.float32,
)
"""Poisson distribution.

Args:
    rate: Expected count.
"""

#######################
# Continuous families #
#######################

uniform = tfp_distribution(
    tfd.Uniform,
    name="Uniform",
    value_dtype=jnp.float32,
)
"""Uniform distribution on [low, high).

Args:
    low: Lower bound.
    high: Upper bound.
"""

gaussian = tfp_distribution(
    tfd.Normal,
    name="Gaussian",
    value_dtype=jnp.float32,
)
"""Normal distribution.

Args:
    mu: Mean.
    sigma: Standard deviation (> 0).
"""

beta = tfp_distribution(
    tfd.Beta,
    name="Beta",
    value_dtype=jnp.float32,
)
"""Beta distribution on the interval [0, 1].

Args:
    a: Alpha parameter (> 0).
    b: Beta parameter (> 0).
"""

exponential = tfp_distribution(
    tfd.Exponential,
    name="Exponential",
    value_dtype=jnp.float32,
)
"""Exponential distribution.

Args:
    rate: Rate parameter (> 0).
"""

gamma = tfp_distribution(
    lambda shape, scale: tfd.Gamma(concentration=shape, rate=1.0 / scale),
    name="Gamma",
    value_dtype=jnp.float32,
)
"""Gamma distribution.

Args:
    shape: Shape parameter (> 0).
    scale: Scale parameter (> 0).
"""
