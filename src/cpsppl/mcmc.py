"""
Single-site Metropolis-Hastings over execution traces.

An `ExecutionTrace` records, for every random choice, the continuation and
store at the point the choice was made. A proposal picks one choice
uniformly, redraws it from its prior and re-invokes its continuation.
Later choices keep their old values where the same address is reached
again, and are drawn fresh otherwise.

`MHKernel` is the strategy that builds and regenerates traces; `MCMC`,
`SMC` (for rejuvenation) and `PMCMC` extend it.
"""

import logging
import math
from dataclasses import dataclass, field
from functools import partial

import jax.random as jrand

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
    log_uniform,
    resume_at,
    start_program,
    trampoline,
)
from cpsppl.marginal import Marginal

logger = logging.getLogger(__name__)


@Pytree.dataclass
class Choice(Pytree):
    """One random choice of an execution.

    `score`, `prior` and `factors` are the trace totals just before the
    choice was made, so regenerating from here restores them exactly.
    """

    address: Address = Pytree.static()
    dist: Any
    value: Any
    choice_score: float
    k: Continuation = Pytree.static()
    store: Store
    score: float
    prior: float
    factors: int = Pytree.static()


@Pytree.dataclass
class ExecutionTrace(Pytree):
    """An execution of the program, complete or suspended at a factor.

    `score` is the total log density (choices plus factors) and `prior` the
    part contributed by choices alone. A suspended trace resumes with
    `resume(store)`; a finished trace holds the program's `value`.
    """

    choices: tuple
    score: float
    prior: float
    factors: int = Pytree.static()
    done: bool = Pytree.static()
    store: Store
    resume: Callable[[Store], Step] | None = Pytree.static(default=None)
    value: Any = None

    @property
    def likelihood(self) -> float:
        return self.score - self.prior

    def by_address(self) -> dict[Address, Choice]:
        table = {}
        for choice in self.choices:
            table.setdefault(choice.address, choice)
        return table


@dataclass(kw_only=True)
class MHKernel(Coroutine):
    """Runs `program` while recording an `ExecutionTrace`.

    With a factor `limit`, execution suspends once the trace has absorbed
    that many factors; the suspended trace can be extended later. A factor
    of `-inf` abandons the execution.
    """

    program: Callable[..., Step]
    _choices: list = field(default_factory=list, init=False, repr=False)
    _score: float = field(default=0.0, init=False, repr=False)
    _prior: float = field(default=0.0, init=False, repr=False)
    _factors: int = field(default=0, init=False, repr=False)
    _limit: int | None = field(default=None, init=False, repr=False)
    _old: dict = field(default_factory=dict, init=False, repr=False)
    _reused: set = field(default_factory=set, init=False, repr=False)
    _fresh: float = field(default=0.0, init=False, repr=False)
    _result: ExecutionTrace | None = field(default=None, init=False, repr=False)

    # Coroutine interface.

    def sample(self, s: Store, k: Continuation, a: Address, dist: Any) -> Step:
        old = self._old.get(a)
        if old is not None and a not in self._reused and dist.accepts(old.value):
            self._reused.add(a)
            value = old.value
            lp = dist.logpdf(value)
        else:
            value = dist.sample(self.split_key())
            lp = dist.logpdf(value)
            self._fresh += lp
        if lp == -math.inf:
            return Signal.REJECTED
        self._record(s, k, a, dist, value, lp)
        return k(s, value)

    def factor(self, s: Store, k: Continuation, a: Address, score: float) -> Step:
        if score == -math.inf or math.isnan(score):
            return Signal.REJECTED
        self._score += score
        self._factors += 1
        if self._limit is not None and self._factors >= self._limit:
            self._result = self._snapshot(s, done=False, resume=resume_at(k))
            return Signal.SUSPENDED
        return k(s, None)

    def exit(self, s: Store, value: Any) -> Step:
        self._result = self._snapshot(s, done=True, value=value)
        return Signal.DONE

    # Trace bookkeeping.

    def _record(self, s, k, a, dist, value, lp):
        self._choices.append(
            Choice(a, dist, value, lp, k, s, self._score, self._prior, self._factors)
        )
        self._score += lp
        self._prior += lp

    def _snapshot(self, s, *, done, resume=None, value=None) -> ExecutionTrace:
        return ExecutionTrace(
            tuple(self._choices),
            self._score,
            self._prior,
            self._factors,
            done,
            s,
            resume,
            value,
        )

    def _begin(self, *, choices=(), score=0.0, prior=0.0, factors=0, limit=None, old=None):
        self._choices = list(choices)
        self._score = score
        self._prior = prior
        self._factors = factors
        self._limit = limit
        self._old = {} if old is None else old.by_address()
        self._reused = set()
        self._fresh = 0.0
        self._result = None

    def _run(self, step: Step) -> ExecutionTrace | None:
        outcome = trampoline(step)
        if outcome is Signal.REJECTED:
            return None
        if not isinstance(outcome, Signal):
            raise InferenceError(
                f"Program returned {outcome!r} without reaching its final continuation."
            )
        return self._result

    # Proposals.

    def start(self, s: Store) -> ExecutionTrace:
        """An empty trace that resumes at the start of the program."""
        return ExecutionTrace(
            (), 0.0, 0.0, 0, False, s, partial(start_program, self.program, self.address)
        )

    def extend(self, trace: ExecutionTrace, limit: int | None = None) -> ExecutionTrace | None:
        """Resume a suspended trace until `limit` factors have been absorbed or
        the program finishes. Returns `None` if the execution is abandoned."""
        if trace.done:
            return trace
        self._begin(
            choices=trace.choices,
            score=trace.score,
            prior=trace.prior,
            factors=trace.factors,
            limit=limit,
        )
        return self._run(trace.resume(trace.store))

    def simulate(self, s: Store, limit: int | None = None) -> ExecutionTrace | None:
        return self.extend(self.start(s), limit)

    def initialize(self, s: Store, limit: int | None = None, max_attempts: int = 10_000) -> ExecutionTrace:
        """Simulate until an execution with nonzero probability is found."""
        for attempt in range(max_attempts):
            trace = self.simulate(s, limit)
            if trace is not None and trace.score > -math.inf:
                logger.debug("Initialized trace after %d attempts", attempt + 1)
                return trace
        raise InferenceError(
            f"No execution with nonzero probability found in {max_attempts} attempts."
        )

    def regenerate(
        self, trace: ExecutionTrace, limit: int | None = None
    ) -> tuple[ExecutionTrace, float] | None:
        """Propose a new trace by redrawing one uniformly chosen choice.

        Args:
            trace: The current trace.
            limit: Factor limit of the target. With a limit, the chain runs
                over executions taken up to their `limit`-th factor or to the
                end, whichever comes first: a trace suspended at the limit
                and a trace that finished before it are both states of that
                chain, and proposals move freely between them. `trace` must
                itself be such a state.

        Returns:
            The proposed trace and the log acceptance ratio, or `None` when the
            proposal has zero probability.
        """
        n = len(trace.choices)
        if n == 0:
            return None
        index = int(jrand.randint(self.split_key(), (), 0, n))
        regen = trace.choices[index]
        value = regen.dist.sample(self.split_key())
        lp = regen.dist.logpdf(value)
        if lp == -math.inf:
            return None

        self._begin(
            choices=trace.choices[:index],
            score=regen.score,
            prior=regen.prior,
            factors=regen.factors,
            limit=limit,
            old=trace,
        )
        self._reused.update(choice.address for choice in trace.choices[: index + 1])
        self._record(regen.store, regen.k, regen.address, regen.dist, value, lp)
        new = self._run(regen.k(regen.store, value))
        if new is None:
            return None

        fw = -math.log(n) + lp + self._fresh
        bw = (
            -math.log(len(new.choices))
            + regen.choice_score
            + sum(
                choice.choice_score
                for choice in trace.choices[index + 1 :]
                if choice.address not in self._reused
            )
        )
        return new, new.score - trace.score + bw - fw

    def mh_step(self, trace: ExecutionTrace, limit: int | None = None) -> tuple[ExecutionTrace, bool]:
        """One Metropolis-Hastings step. Returns the next trace and whether the
        proposal was accepted."""
        proposal = self.regenerate(trace, limit)
        if proposal is None:
            return trace, False
        new, log_alpha = proposal
        if log_uniform(self.split_key()) < log_alpha:
            return new, True
        return trace, False

    def exit_value(self, trace: ExecutionTrace) -> Any:
        if not trace.done:
            raise InferenceError("The trace is suspended and has no value yet.")
        return trace.value


@dataclass(kw_only=True)
class MCMC(MHKernel):
    """Single-site Metropolis-Hastings.

    Runs `burn + samples * lag` steps from an initial trace found by
    rejection and records the value of every `lag`-th step after burn-in.
    """

    samples: int = 100
    burn: int = 0
    lag: int = 1
    max_init_attempts: int = 10_000
    verbose: bool = False

    def __post_init__(self):
        if self.samples < 1:
            raise ConfigurationError(f"samples must be at least 1, got {self.samples}.")
        if self.burn < 0:
            raise ConfigurationError(f"burn must be non-negative, got {self.burn}.")
        if self.lag < 1:
            raise ConfigurationError(f"lag must be at least 1, got {self.lag}.")

    def estimate(self, s: Store) -> Marginal:
        trace = self.initialize(s, max_attempts=self.max_init_attempts)
        total = self.burn + self.samples * self.lag
        values = []
        accepted = 0
        for step in range(total):
            trace, ok = self.mh_step(trace)
            accepted += ok
            if step >= self.burn and (step - self.burn + 1) % self.lag == 0:
                values.append(self.exit_value(trace))

        rate = accepted / total
        if self.verbose:
            logger.info("MCMC acceptance rate: %.3f over %d steps", rate, total)
        return Marginal.from_samples(values, diagnostics={"acceptance_rate": rate})
