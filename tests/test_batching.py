"""
Test cases for `map_data` and the minibatch hooks.
"""

import math
from dataclasses import dataclass, field

import pytest

from cpsppl import (
    Address,
    ConfigurationError,
    Enumerate,
    InferenceError,
    Store,
    factor,
    flip,
    infer,
    map_data,
    previous_minibatch,
    sample,
    trampoline,
)
from cpsppl.core import installed


@dataclass(kw_only=True)
class Subsampling(Enumerate):
    """Enumerate with scripted minibatch choices, recording every hook call."""

    picks: list = field(default_factory=list)
    fetches: list = field(default_factory=list)
    finals: list = field(default_factory=list)

    def map_data_fetch(self, previous, data, options, address):
        self.fetches.append((previous, options.batch_size, address))
        return self.picks.pop(0) if self.picks else []

    def map_data_final(self, address):
        self.finals.append(address)


def doubling(s, k, a, x, ix):
    return k(s, 2 * x)


def program_over(data, batch_size=None, visited=None):
    def observe_all(s, k, a, x, ix):
        if visited is not None:
            visited.append(a)
        return k(s, x)

    def program(s, k, a):
        return map_data(s, k, a.extend("map"), data, observe_all, batch_size)

    return program


def run_under(strategy, s=None):
    with installed(strategy):
        return strategy.estimate(Store() if s is None else s)


@pytest.mark.unit
@pytest.mark.fast
def test_results_in_data_order_by_default():
    marginal = infer(
        lambda s, k, a: map_data(s, k, a.extend("map"), [1, 2, 3], doubling), "enumerate"
    )
    assert marginal.support() == ((2, 4, 6),)


@pytest.mark.unit
@pytest.mark.fast
def test_empty_data_delivers_empty_tuple():
    marginal = infer(lambda s, k, a: map_data(s, k, a, [], doubling), "enumerate")
    assert marginal.support() == ((),)


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize("batch_size", [1, 3])
def test_empty_data_rejects_explicit_batch_size(batch_size):
    with pytest.raises(ConfigurationError):
        infer(program_over([], batch_size), "enumerate")


@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize("batch_size", [0, -1, 4])
def test_invalid_batch_size(batch_size):
    with pytest.raises(ConfigurationError):
        infer(program_over([1, 2, 3], batch_size), "enumerate")


@pytest.mark.unit
@pytest.mark.fast
def test_hook_selects_and_orders_elements():
    visited = []
    strategy = Subsampling(program=program_over([10, 20, 30, 40], 2, visited), picks=[[3, 1]])
    marginal = run_under(strategy)
    assert marginal.support() == ((40, 20),)
    root = Address.root().extend("map")
    assert visited == [root.index(3), root.index(1)]
    assert strategy.fetches == [(None, 2, root)]
    assert strategy.finals == [root]
    assert previous_minibatch(root) == [3, 1]


@pytest.mark.unit
@pytest.mark.fast
def test_hook_sees_previous_minibatch():
    program = program_over([10, 20, 30], 1)
    run_under(Subsampling(program=program, picks=[[2]]))
    strategy = Subsampling(program=program, picks=[[0]])
    run_under(strategy)
    assert strategy.fetches[0][0] == [2]


@pytest.mark.unit
@pytest.mark.fast
def test_empty_selection_means_all():
    strategy = Subsampling(program=program_over([1, 2, 3], 2), picks=[[]])
    assert run_under(strategy).support() == ((1, 2, 3),)


@pytest.mark.unit
@pytest.mark.fast
def test_bad_hook_output_is_reported():
    strategy = Subsampling(program=program_over([1, 2]), picks=[[5]])
    with pytest.raises(InferenceError):
        run_under(strategy)


@pytest.mark.unit
@pytest.mark.fast
def test_element_addresses_are_stable_across_executions():
    """Re-executing the same program visits the same element addresses."""
    first, second = [], []
    run_under(Enumerate(program=program_over([5, 6], visited=first)))
    run_under(Enumerate(program=program_over([5, 6], visited=second)))
    assert first == second
    assert len(set(first)) == 2


@pytest.mark.integration
@pytest.mark.fast
def test_map_data_with_random_elements(helpers):
    """Each element flips a coin conditioned on the observed datum."""

    def element(s, k, a, datum, ix):
        def with_coin(s, coin):
            return factor(s, lambda s, _: k(s, coin), a.extend("obs"), 0.0 if coin == datum else math.log(0.25))

        return sample(s, with_coin, a.extend("coin"), flip(0.5))

    def program(s, k, a):
        return map_data(s, lambda s, coins: k(s, sum(coins)), a.extend("map"), [True, True], element)

    marginal = infer(program, "enumerate")
    # Each coin is True with probability 1 / (1 + 0.25) = 0.8.
    helpers.assert_hist_close(marginal, {2: 0.64, 1: 0.32, 0: 0.04}, tol=1e-6)


@pytest.mark.unit
@pytest.mark.fast
def test_long_data_does_not_exhaust_the_stack():
    data = list(range(5000))
    strategy = Enumerate(program=lambda s, k, a: map_data(s, k, a, data, doubling))
    with installed(strategy):
        result = trampoline(map_data(Store(), lambda s, v: v, Address.root(), data, doubling))
    assert result[-1] == 2 * 4999
