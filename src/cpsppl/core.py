import json
import math
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from functools import partial
from typing import overload

import beartype.typing as btyping
import jax
import jax.random as jrand
import jaxtyping as jtyping
import numpy as np
import penzai.pz as pz
from typing_extensions import dataclass_transform

##########
# Typing #
##########

Any = btyping.Any
PRNGKey = jtyping.PRNGKeyArray
Array = jtyping.Array
ArrayLike = jtyping.ArrayLike
Callable = btyping.Callable
Sequence = btyping.Sequence
Iterator = btyping.Iterator
TypeVar = btyping.TypeVar

R = TypeVar("R")

# A step is whatever a CPS function returns: a `Bounce`, a strategy
# `Signal`, or the final value handed back by the outermost continuation.
Step = Any
Continuation = Callable[..., Step]

##########
# Errors #
##########


class ConfigurationError(ValueError):
    """Raised when a strategy or primitive is given options it cannot run with."""


class InferenceError(RuntimeError):
    """Raised when a strategy cannot produce a result, or a program breaks the
    calling convention."""


##########
# Pytree #
##########


class Pytree(pz.Struct):
    """`Pytree` is an abstract base class which registers a class with JAX's `Pytree`
    system. JAX's `Pytree` system tracks how data classes should behave across
    JAX-transformed function boundaries, like `jax.jit` or `jax.vmap`.

    The immutable records of the execution core (addresses, stores, traces,
    particles, marginals) are `Pytree` dataclasses: they are frozen, so forking
    an execution shares them without copying.

    * `Pytree.static(...)`: the value of the field is embedded in the
    `PyTreeDef` of any instance of the class. Continuations, addresses and
    other Python objects which JAX must never trace go here.
    * `Pytree.field(...)` or no annotation: the value is a leaf (or a nested
    `Pytree`) which JAX will flatten.
    """

    @staticmethod
    @overload
    def dataclass(
        incoming: None = None,
        /,
        **kwargs,
    ) -> Callable[[type[R]], type[R]]: ...

    @staticmethod
    @overload
    def dataclass(
        incoming: type[R],
        /,
        **kwargs,
    ) -> type[R]: ...

    @dataclass_transform(
        frozen_default=True,
    )
    @staticmethod
    def dataclass(
        incoming: type[R] | None = None,
        /,
        **kwargs,
    ) -> type[R] | Callable[[type[R]], type[R]]:
        """
        Denote that a class (which is inheriting `Pytree`) should be treated
        as a frozen dataclass, and derive its JAX `Pytree` interfaces from the
        declared fields.

        Examples
        --------

        ```{python}
        from cpsppl import Pytree


        @Pytree.dataclass
        class Visit(Pytree):
            label: str = Pytree.static()
            weight: float


        Visit("root", 0.0)
        ```
        """

        return pz.pytree_dataclass(
            incoming,
            overwrite_parent_init=True,
            **kwargs,
        )

    @staticmethod
    def static(**kwargs):
        """Declare a field of a `Pytree` dataclass to be static.
        Fields which are provided with default values must come after
        required fields in the dataclass declaration."""
        return field(metadata={"pytree_node": False}, **kwargs)

    @staticmethod
    def field(**kwargs):
        """Declare a field of a `Pytree` dataclass to be dynamic.
        Alternatively, one can leave the annotation off in the declaration."""
        return field(**kwargs)


#############
# Addresses #
#############


@Pytree.dataclass
class Index(Pytree):
    """Address token for the `position`-th element of a mapped collection.

    Index tokens never compare equal to the string or integer tokens the
    compiler emits for call sites, so element addresses cannot collide with
    call-site addresses.
    """

    position: int = Pytree.static()

    def __str__(self) -> str:
        return f"$${self.position}"


@Pytree.dataclass
class Address(Pytree):
    """A structured address: an immutable sequence of tokens naming one
    dynamic point in a program's execution.

    Extending the same address with the same token always produces an equal
    address, so re-executing a program from the same store and continuation
    revisits the same addresses.
    """

    tokens: tuple = Pytree.static(default=())

    @staticmethod
    def root() -> "Address":
        return Address(())

    def extend(self, token: Any) -> "Address":
        return Address(self.tokens + (token,))

    def index(self, position: int) -> "Address":
        return self.extend(Index(position))

    def startswith(self, prefix: "Address") -> bool:
        n = len(prefix.tokens)
        return self.tokens[:n] == prefix.tokens

    def relative_to(self, prefix: "Address") -> "Address":
        if not self.startswith(prefix):
            raise ValueError(f"{self} does not extend {prefix}")
        return Address(self.tokens[len(prefix.tokens) :])

    def __str__(self) -> str:
        return "/" + "/".join(str(token) for token in self.tokens)


#########
# Store #
#########


@Pytree.dataclass
class Store(Pytree):
    """The program's global state, threaded explicitly through every CPS
    call. Updates return a new `Store`; an existing store is never changed, so
    a continuation re-invoked with an older store sees the older state."""

    data: dict = Pytree.field(default_factory=dict)

    def get(self, key: Any, default: Any = None) -> Any:
        return self.data.get(key, default)

    def set(self, key: Any, value: Any) -> "Store":
        return Store({**self.data, key: value})

    def __getitem__(self, key: Any) -> Any:
        return self.data[key]

    def __setitem__(self, key, value):
        raise TypeError("Store is immutable, use Store.set to derive an updated store.")

    def __contains__(self, key: Any) -> bool:
        return key in self.data

    def __len__(self) -> int:
        return len(self.data)


##############
# Trampoline #
##############


class Bounce:
    """A suspended step of a CPS computation, resumed by `trampoline`."""

    __slots__ = ("thunk",)

    def __init__(self, thunk: Callable[[], Step]):
        self.thunk = thunk


def trampoline(step: Step) -> Step:
    """Resume bounces until a non-`Bounce` step comes back, keeping the
    native call stack bounded by the depth between two bounces."""
    while isinstance(step, Bounce):
        step = step.thunk()
    return step


class Signal(Enum):
    """Sentinels a strategy returns from a primitive in place of calling the
    continuation."""

    DONE = "done"
    SUSPENDED = "suspended"
    REJECTED = "rejected"


##############
# Coroutines #
##############

coroutine_stack: list["Coroutine"] = []


@contextmanager
def installed(coroutine: "Coroutine") -> Iterator["Coroutine"]:
    """Make `coroutine` the active strategy for the duration of the block.

    The previous strategy becomes active again on every exit path, including
    exceptions raised by the program or by the strategy itself.
    """
    coroutine_stack.append(coroutine)
    try:
        yield coroutine
    finally:
        coroutine_stack.pop()


def current() -> "Coroutine":
    if not coroutine_stack:
        raise InferenceError(
            "No inference strategy is active; random primitives must run inside `infer`."
        )
    return coroutine_stack[-1]


@dataclass(kw_only=True)
class Coroutine(ABC):
    """An inference strategy, as seen by the random primitives.

    The strategy receives every `sample` and `factor` the program performs
    while it is installed, together with the store, continuation and address
    at that point. It decides whether and how often to call the continuation.

    Subclasses implement `sample`, `factor`, `exit` and `estimate`; the
    minibatch hooks default to "every index, in order" and "nothing to do".
    """

    key: PRNGKey | None = None
    address: Address = field(default_factory=Address.root)

    @abstractmethod
    def sample(self, s: Store, k: Continuation, a: Address, dist: Any) -> Step:
        raise NotImplementedError

    @abstractmethod
    def factor(self, s: Store, k: Continuation, a: Address, score: float) -> Step:
        raise NotImplementedError

    @abstractmethod
    def exit(self, s: Store, value: Any) -> Step:
        """Receive the value of one complete execution of the program."""
        raise NotImplementedError

    @abstractmethod
    def estimate(self, s: Store) -> Any:
        """Run the program to completion under this strategy and return its
        `Marginal`."""
        raise NotImplementedError

    def observe(self, s: Store, k: Continuation, a: Address, dist: Any, value: Any) -> Step:
        return self.factor(s, lambda s, _: k(s, value), a, dist.logpdf(value))

    def map_data_fetch(
        self,
        previous: list[int] | None,
        data: Sequence[Any],
        options: Any,
        address: Address,
    ) -> list[int]:
        return []

    def map_data_final(self, address: Address) -> None:
        pass

    def split_key(self) -> PRNGKey:
        if self.key is None:
            raise ConfigurationError(
                f"{type(self).__name__} needs a PRNG key; pass `key=jax.random.key(...)`."
            )
        self.key, sub_key = jrand.split(self.key)
        return sub_key

    def run(self, s: Store, k: Continuation) -> Step:
        with installed(self):
            marginal = self.estimate(s)
        return Bounce(lambda: k(s, marginal))


###################
# CPS primitives  #
###################


def halt(s: Store, value: Any) -> Step:
    """The continuation at the end of every program run by a strategy."""
    return current().exit(s, value)


def sample(s: Store, k: Continuation, a: Address, dist: Any) -> Step:
    coroutine = current()
    return Bounce(lambda: coroutine.sample(s, k, a, dist))


def factor(s: Store, k: Continuation, a: Address, score: Any) -> Step:
    coroutine = current()
    score = float(score)
    return Bounce(lambda: coroutine.factor(s, k, a, score))


def observe(s: Store, k: Continuation, a: Address, dist: Any, value: Any) -> Step:
    coroutine = current()
    return Bounce(lambda: coroutine.observe(s, k, a, dist, value))


def apply(s: Store, k: Continuation, a: Address, fn: Callable[..., Step], args: Sequence[Any]) -> Step:
    return fn(s, k, a, *args)


def relative_address(a: Address) -> Address:
    """Strip the address at which the active strategy was installed, so the
    same program run under different enclosing inferences yields the same
    relative addresses."""
    if not coroutine_stack:
        return a
    base = current().address
    if a.startswith(base):
        return a.relative_to(base)
    return a


def get_relative_address(s: Store, k: Continuation, a: Address) -> Step:
    return k(s, relative_address(a))


#############
# Utilities #
#############


def _jsonable(value):
    if isinstance(value, (jax.Array, np.ndarray, np.generic)):
        return np.asarray(value).tolist()
    if isinstance(value, (Address, Index)):
        return str(value)
    return repr(value)


def serialize(value: Any) -> str:
    """A canonical string for `value`, used for cache keys and for grouping
    unhashable values in a `Marginal`."""
    return json.dumps(value, default=_jsonable, sort_keys=True, separators=(",", ":"))


def value_key(value: Any) -> Any:
    """Grouping key for a returned value. Values of different types never
    share a key, even when they compare equal: `True`, `1` and `1.0` are
    three values."""
    if isinstance(value, tuple):
        return tuple, tuple(value_key(v) for v in value)
    try:
        hash(value)
    except TypeError:
        return type(value), serialize(value)
    return type(value), value


def log_uniform(key: PRNGKey) -> float:
    u = float(jrand.uniform(key))
    return math.log(u) if u > 0.0 else -math.inf


def continue_with(k: Continuation, s: Store) -> Step:
    """Resume a continuation that expects no meaningful value."""
    return k(s, None)


def start_program(program: Callable[..., Step], address: Address, s: Store) -> Step:
    return program(s, halt, address)


def resume_at(k: Continuation) -> Callable[[Store], Step]:
    return partial(continue_with, k)
