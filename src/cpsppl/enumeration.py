"""Exact inference by exhaustive enumeration.

Every `sample` forks the execution once per support value. Forks are
`Branch` records queued on a frontier; the traversal strategy decides
which one resumes next. Each completed execution contributes its value
with weight equal to the product of its choice probabilities and factors.
"""

import heapq
import itertools as it
import logging
import math
from collections import deque
from dataclasses import dataclass, field

from cpsppl.core import (
    Address,
    Any,
    Callable,
    ConfigurationError,
    Continuation,
    Coroutine,
    InferenceError,
    Pytree,
    Signal,
    Step,
    Store,
    start_program,
    trampoline,
)
from cpsppl.marginal import Marginal, logsumexp

logger = logging.getLogger(__name__)

STRATEGIES = ("depth-first", "breadth-first", "likely-first")


@Pytree.dataclass
class Branch(Pytree):
    """One unexplored fork: the continuation of a `sample` together with the
    value it will be resumed with."""

    k: Continuation = Pytree.static()
    store: Store
    value: Any
    score: float


class Frontier:
    """Queue of pending branches, ordered by the traversal strategy."""

    def __init__(self, strategy: str):
        self.strategy = strategy
        self._items: Any = deque() if strategy == "breadth-first" else []
        self._counter = it.count()

    def __len__(self) -> int:
        return len(self._items)

    def push_all(self, branches: list[Branch]) -> None:
        if self.strategy == "likely-first":
            for branch in branches:
                heapq.heappush(self._items, (-branch.score, next(self._counter), branch))
        elif self.strategy == "depth-first":
            # Reversed, so the first support value is explored first.
            self._items.extend(reversed(branches))
        else:
            self._items.extend(branches)

    def pop(self) -> Branch:
        if self.strategy == "likely-first":
            return heapq.heappop(self._items)[2]
        if self.strategy == "breadth-first":
            return self._items.popleft()
        return self._items.pop()


@dataclass(kw_only=True)
class Enumerate(Coroutine):
    """Exact enumeration of every execution path of `program`.

    `max_executions` stops the search after that many completed executions,
    which makes programs with unbounded support usable (the result is then
    normalized over the executions found). `strategy` orders the frontier;
    it defaults to "likely-first" when `max_executions` is set and to
    "depth-first" otherwise.
    """

    program: Callable[..., Step]
    max_executions: int | None = None
    strategy: str | None = None
    _frontier: Frontier = field(init=False, repr=False)
    _score: float = field(default=0.0, init=False, repr=False)
    _values: list = field(default_factory=list, init=False, repr=False)
    _scores: list = field(default_factory=list, init=False, repr=False)

    def __post_init__(self):
        if self.max_executions is not None and self.max_executions < 1:
            raise ConfigurationError(
                f"max_executions must be at least 1, got {self.max_executions}."
            )
        if self.strategy is None:
            self.strategy = "depth-first" if self.max_executions is None else "likely-first"
        if self.strategy not in STRATEGIES:
            raise ConfigurationError(
                f"Unknown enumeration strategy {self.strategy!r}; expected one of {STRATEGIES}."
            )

    def sample(self, s: Store, k: Continuation, a: Address, dist: Any) -> Step:
        branches = []
        for value in dist.support():
            lp = dist.logpdf(value)
            if lp == -math.inf:
                continue
            branches.append(Branch(k, s, value, self._score + lp))
        self._frontier.push_all(branches)
        return Signal.SUSPENDED

    def factor(self, s: Store, k: Continuation, a: Address, score: float) -> Step:
        self._score += score
        if self._score == -math.inf or math.isnan(self._score):
            return Signal.REJECTED
        return k(s, None)

    def exit(self, s: Store, value: Any) -> Step:
        self._values.append(value)
        self._scores.append(self._score)
        return Signal.DONE

    def _exhausted(self) -> bool:
        if self.max_executions is not None and len(self._values) >= self.max_executions:
            return True
        return len(self._frontier) == 0

    def estimate(self, s: Store) -> Marginal:
        self._frontier = Frontier(self.strategy)
        self._score = 0.0
        self._values, self._scores = [], []

        step = start_program(self.program, self.address, s)
        while True:
            outcome = trampoline(step)
            if not isinstance(outcome, Signal):
                raise InferenceError(
                    f"Program returned {outcome!r} without reaching its final continuation."
                )
            if self._exhausted():
                break
            branch = self._frontier.pop()
            self._score = branch.score
            step = branch.k(branch.store, branch.value)

        if not self._values:
            raise InferenceError("Enumerate found no execution with nonzero probability.")
        logger.debug(
            "Enumerate finished %d executions, %d branches left",
            len(self._values),
            len(self._frontier),
        )
        return Marginal.from_log_weights(
            self._values,
            self._scores,
            normalization_constant=logsumexp(self._scores),
            diagnostics={"executions": len(self._values)},
        )
