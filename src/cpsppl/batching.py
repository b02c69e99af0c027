"""Minibatch coordination for `map_data`.

`map_data` applies a CPS function to elements of a data set. Which elements
are visited is decided by the active strategy through its `map_data_fetch`
hook, which also sees the indices used at the same call site last time.
"""

import logging
from dataclasses import dataclass

from cpsppl.core import (
    Address,
    Any,
    Bounce,
    Callable,
    ConfigurationError,
    Continuation,
    InferenceError,
    Sequence,
    Step,
    Store,
    current,
    relative_address,
)

logger = logging.getLogger(__name__)

# Last index list used at each call site, keyed by relative address.
# Shared across runs and strategies for the lifetime of the process.
_minibatches: dict[Address, list[int]] = {}


@dataclass(frozen=True)
class MapDataOptions:
    batch_size: int


def previous_minibatch(address: Address) -> list[int] | None:
    return _minibatches.get(address)


def clear_minibatches() -> None:
    _minibatches.clear()


def _validate_indices(indices: Any, n: int) -> list[int]:
    try:
        indices = [int(ix) for ix in indices]
    except TypeError as e:
        raise InferenceError(f"map_data_fetch must return a list of indices, got {indices!r}.") from e
    for ix in indices:
        if not 0 <= ix < n:
            raise InferenceError(f"map_data_fetch returned index {ix} outside a data set of size {n}.")
    return indices


def map_data(
    s: Store,
    k: Continuation,
    a: Address,
    data: Sequence[Any],
    fn: Callable[..., Step],
    batch_size: int | None = None,
) -> Step:
    """Run `fn(s, k, a.index(i), data[i], i)` for the indices the active
    strategy selects, and deliver the tuple of results in visit order."""
    n = len(data)
    if batch_size is not None and not 0 < batch_size <= n:
        raise ConfigurationError(f"batch_size must be in 1..{n}, got {batch_size}.")
    if n == 0:
        return k(s, ())
    batch_size = n if batch_size is None else batch_size

    coroutine = current()
    rel = relative_address(a)
    indices = _validate_indices(
        coroutine.map_data_fetch(
            _minibatches.get(rel),
            data,
            MapDataOptions(batch_size),
            rel,
        ),
        n,
    )
    _minibatches[rel] = indices
    if not indices:
        indices = list(range(n))
    logger.debug("map_data at %s visits %d of %d elements", rel, len(indices), n)

    def visit(s: Store, position: int, results: tuple) -> Step:
        if position == len(indices):
            coroutine.map_data_final(rel)
            return k(s, results)
        ix = indices[position]

        def next_element(s: Store, value: Any) -> Step:
            return Bounce(lambda: visit(s, position + 1, results + (value,)))

        return fn(s, next_element, a.index(ix), data[ix], ix)

    return visit(s, 0, ())
