"""Entry points: running CPS functions from Python, and choosing a strategy
by name."""

import logging

from cpsppl.asyncpf import AsyncPF
from cpsppl.core import (
    Address,
    Any,
    Callable,
    ConfigurationError,
    Continuation,
    PRNGKey,
    Step,
    Store,
    coroutine_stack,
    current,
    trampoline,
)
from cpsppl.enumeration import Enumerate
from cpsppl.marginal import Marginal
from cpsppl.mcmc import MCMC
from cpsppl.pmcmc import PMCMC
from cpsppl.rejection import Rejection
from cpsppl.smc import SMC

logger = logging.getLogger(__name__)

METHODS = {
    "enumerate": Enumerate,
    "rejection": Rejection,
    "mcmc": MCMC,
    "smc": SMC,
    "pmcmc": PMCMC,
    "asyncpf": AsyncPF,
}


def _identity(s: Store, value: Any) -> Any:
    return value


def run(
    fn: Callable[..., Step],
    *args,
    store: Store | None = None,
    address: Address | None = None,
) -> Any:
    """Trampoline the CPS function `fn` to completion and return the value
    delivered to its final continuation."""
    s = Store() if store is None else store
    a = Address.root() if address is None else address
    return trampoline(fn(s, _identity, a, *args))


def cps_infer(
    s: Store,
    k: Continuation,
    a: Address,
    program: Callable[..., Step],
    method: str,
    key: PRNGKey | None = None,
    **options,
) -> Step:
    """Run `program` under the strategy named `method` and deliver its
    `Marginal` to `k`.

    Inference nested inside another strategy draws its key from the enclosing
    strategy when `key` is not given.
    """
    if method not in METHODS:
        raise ConfigurationError(
            f"Unknown inference method {method!r}; expected one of {sorted(METHODS)}."
        )
    if key is None and coroutine_stack and current().key is not None:
        key = current().split_key()
    strategy = METHODS[method](program=program, key=key, address=a, **options)
    logger.debug("Running %s at %s", type(strategy).__name__, a)
    return strategy.run(s, k)


def infer(
    program: Callable[..., Step],
    method: str,
    *,
    key: PRNGKey | None = None,
    store: Store | None = None,
    address: Address | None = None,
    **options,
) -> Marginal:
    """Run inference over the CPS program `program(s, k, a)` from Python.

    Examples
    --------

    ```{python}
    import jax.random as jrand
    from cpsppl import flip, infer, sample


    def coin(s, k, a):
        return sample(s, k, a.extend("coin"), flip(0.5))


    infer(coin, "mcmc", key=jrand.key(0), samples=100).prob(True)
    ```
    """

    def entry(s: Store, k: Continuation, a: Address) -> Step:
        return cps_infer(s, k, a, program, method, key=key, **options)

    return run(entry, store=store, address=address)
