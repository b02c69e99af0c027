"""Tensors and the parameter registry.

`param` creates a value the first time a call site is reached and returns
the same value whenever that call site is reached again, under any
strategy. Call sites are identified by relative address.
"""

import logging

import jax.numpy as jnp
import jax.random as jrand

from cpsppl.core import (
    Address,
    Any,
    Callable,
    Continuation,
    PRNGKey,
    Sequence,
    Step,
    Store,
    current,
    relative_address,
)

logger = logging.getLogger(__name__)

_registry: dict[Address, Any] = {}


def register_params(name: Address, make: Callable[[], Any]) -> Any:
    if name not in _registry:
        _registry[name] = make()
        logger.debug("Registered parameter at %s", name)
    return _registry[name]


def get_params() -> dict[Address, Any]:
    return dict(_registry)


def clear_params() -> None:
    _registry.clear()


def vector(s: Store, k: Continuation, a: Address, values: Sequence[Any]) -> Step:
    return k(s, jnp.asarray(values, dtype=jnp.float32).reshape(-1, 1))


def matrix(s: Store, k: Continuation, a: Address, rows: Sequence[Sequence[Any]]) -> Step:
    return k(s, jnp.asarray(rows, dtype=jnp.float32))


def zeros(s: Store, k: Continuation, a: Address, dims: Sequence[int]) -> Step:
    return k(s, jnp.zeros(tuple(dims), dtype=jnp.float32))


def param(
    s: Store,
    k: Continuation,
    a: Address,
    init: Any,
    mean: float = 0.0,
    sd: float = 0.0,
    key: PRNGKey | None = None,
) -> Step:
    """Deliver the parameter registered at this call site, creating it on
    first use.

    When `init` is a list of dimensions, the parameter is a tensor of that
    shape, filled with `mean` when `sd` is zero and drawn elementwise from
    a Gaussian with mean `mean` and standard deviation `sd` otherwise. Any
    other `init` is used as the initial value as is.
    """

    def make():
        if not isinstance(init, (list, tuple)):
            return init
        dims = tuple(init)
        if sd == 0:
            return jnp.full(dims, mean, dtype=jnp.float32)
        sub_key = key if key is not None else current().split_key()
        return mean + sd * jrand.normal(sub_key, dims)

    return k(s, register_params(relative_address(a), make))
