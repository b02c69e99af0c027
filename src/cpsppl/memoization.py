"""Memoization of CPS functions.

`cache(s, k, a, f)` delivers a memoized version of the CPS function `f`.
Arguments are keyed by their serialization. A cached function must be
deterministic: a result computed under one execution of the program is
returned to every later execution.
"""

import logging
from collections import OrderedDict
from dataclasses import dataclass, field

from cpsppl.core import (
    Address,
    Any,
    Callable,
    ConfigurationError,
    Continuation,
    Step,
    Store,
    serialize,
)

logger = logging.getLogger(__name__)

# Unbounded caches announce once that they have grown this large.
SIZE_NOTICE_THRESHOLD = 10_000


class LRUCache:
    """Mapping from serialized arguments to results, evicting the least
    recently used entry once `max_size` is reached."""

    def __init__(self, max_size: int | None = None):
        self.max_size = max_size
        self._entries: OrderedDict[str, Any] = OrderedDict()

    def __contains__(self, key: str) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    def get(self, key: str) -> Any:
        self._entries.move_to_end(key)
        return self._entries[key]

    def put(self, key: str, value: Any) -> None:
        if key in self._entries:
            self._entries.move_to_end(key)
        elif self.max_size is not None and len(self._entries) >= self.max_size:
            evicted, _ = self._entries.popitem(last=False)
            logger.debug("Evicted %s from cache", evicted)
        self._entries[key] = value

    def peek(self, key: str) -> Any:
        return self._entries[key]

    def keys(self) -> list[str]:
        return list(self._entries)

    def clear(self) -> None:
        self._entries.clear()


@dataclass
class Memoized:
    """A memoized CPS function: call it as `memo(s, k, a, *args)`."""

    f: Callable[..., Step]
    entries: LRUCache
    announced: bool = field(default=False, repr=False)

    def __call__(self, s: Store, k: Continuation, a: Address, *args) -> Step:
        key = serialize(args)
        if key in self.entries:
            return k(s, self.entries.get(key))

        def store_result(s: Store, value: Any) -> Step:
            if key in self.entries:
                logger.debug("Already in cache: %s", key)
                old = serialize(self.entries.peek(key))
                if old != serialize(value):
                    logger.warning(
                        "Cache entry for %s differs between executions: %s and %s",
                        key,
                        old,
                        serialize(value),
                    )
            self.entries.put(key, value)
            if (
                self.entries.max_size is None
                and not self.announced
                and len(self.entries) >= SIZE_NOTICE_THRESHOLD
            ):
                self.announced = True
                logger.info(
                    "Cache of %s holds %d entries; pass max_size to cache() to bound it.",
                    getattr(self.f, "__name__", self.f),
                    len(self.entries),
                )
            return k(s, value)

        return self.f(s, store_result, a, *args)


def memoize(f: Callable[..., Step], max_size: int | None = None) -> Memoized:
    if max_size is not None and max_size < 1:
        raise ConfigurationError(f"max_size must be at least 1, got {max_size}.")
    return Memoized(f, LRUCache(max_size))


def cache(
    s: Store,
    k: Continuation,
    a: Address,
    f: Callable[..., Step],
    max_size: int | None = None,
) -> Step:
    return k(s, memoize(f, max_size))
