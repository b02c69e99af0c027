"""
Test cases for memoization of CPS functions.
"""

import logging

import pytest
from conftest import fair_coin

import cpsppl.memoization as memoization
from cpsppl import ConfigurationError, LRUCache, cache, infer, memoize, run


def counting(calls):
    def square(s, k, a, x):
        calls.append(x)
        return k(s, x * x)

    return square


@pytest.mark.unit
@pytest.mark.fast
class TestLRUCache:
    def test_evicts_least_recently_used(self):
        lru = LRUCache(max_size=2)
        lru.put("a", 1)
        lru.put("b", 2)
        lru.get("a")
        lru.put("c", 3)
        assert lru.keys() == ["a", "c"]

    def test_unbounded_keeps_everything(self):
        lru = LRUCache()
        for i in range(50):
            lru.put(str(i), i)
        assert len(lru) == 50


@pytest.mark.unit
@pytest.mark.fast
def test_hit_skips_the_function():
    calls = []
    memo = run(cache, counting(calls))
    assert run(memo, 3) == 9
    assert run(memo, 3) == 9
    assert run(memo, 4) == 16
    assert calls == [3, 4]


@pytest.mark.unit
@pytest.mark.fast
def test_bounded_cache_recomputes_evicted_entries():
    calls = []
    memo = memoize(counting(calls), max_size=1)
    run(memo, 1)
    run(memo, 2)
    run(memo, 1)
    assert calls == [1, 2, 1]
    assert len(memo.entries) == 1


@pytest.mark.unit
@pytest.mark.fast
def test_arguments_are_keyed_by_serialization():
    calls = []
    memo = memoize(counting(calls))
    run(memo, 2.0)
    run(memo, 2)
    assert calls == [2.0, 2]


@pytest.mark.integration
@pytest.mark.fast
def test_cached_random_function_is_shared_across_executions(helpers):
    """A memoized random function returns the value of its first execution to
    every later execution, so the enumerated marginal collapses to it."""
    memo = memoize(fair_coin)

    def program(s, k, a):
        def first(s, x):
            return memo(s, lambda s, y: k(s, (x, y)), a.extend("second"))

        return memo(s, first, a.extend("first"))

    marginal = infer(program, "enumerate")
    for x, y in marginal.support():
        assert x == y


@pytest.mark.unit
@pytest.mark.fast
def test_divergent_values_are_logged_not_raised(caplog):
    """When the entry is filled while the function is still running, the
    values are compared and the newer one is kept."""

    def inner_first(s, k, a, x):
        # Fill the entry for `x` from inside the outer computation.
        memo.entries.put('["go"]', "inner")
        return k(s, "outer")

    memo = memoize(inner_first)
    with caplog.at_level(logging.WARNING, logger="cpsppl.memoization"):
        assert run(memo, "go") == "outer"
    assert "differs" in caplog.text
    assert memo.entries.peek('["go"]') == "outer"


@pytest.mark.unit
@pytest.mark.fast
def test_size_notice_is_logged_once(monkeypatch, caplog):
    monkeypatch.setattr(memoization, "SIZE_NOTICE_THRESHOLD", 3)
    memo = memoize(counting([]))
    with caplog.at_level(logging.INFO, logger="cpsppl.memoization"):
        for i in range(6):
            run(memo, i)
    assert caplog.text.count("max_size") == 1


@pytest.mark.unit
@pytest.mark.fast
def test_invalid_max_size():
    with pytest.raises(ConfigurationError):
        memoize(counting([]), max_size=0)
