"""
Shared fixtures and programs for the cpsppl test suite.

Programs are written by hand in continuation-passing style: every function
takes the store `s`, continuation `k` and address `a`, and extends `a` with a
distinct token at each call site.
"""

import math

import jax.random as jrand
import pytest

from cpsppl import (
    clear_minibatches,
    clear_params,
    coroutine_stack,
    factor,
    flip,
    gaussian,
    observe,
    sample,
)

# =============================================================================
# PROGRAMS
# =============================================================================


def fair_coin(s, k, a):
    """coin ~ Flip(0.5); return coin"""
    return sample(s, k, a.extend("coin"), flip(0.5))


def deterministic(s, k, a):
    """No random choices: always returns 7."""
    return k(s, 7)


def two_coins_at_least_one(s, k, a):
    """
    x ~ Flip(0.5); y ~ Flip(0.5); condition(x or y); return x

    P(x = True) = 2 / 3, and the evidence is 3 / 4.
    """

    def with_x(s, x):
        def with_y(s, y):
            return factor(
                s,
                lambda s, _: k(s, x),
                a.extend("condition"),
                0.0 if (x or y) else -math.inf,
            )

        return sample(s, with_y, a.extend("y"), flip(0.5))

    return sample(s, with_x, a.extend("x"), flip(0.5))


def store_counter(s, k, a):
    """Writes the store before and after a choice; always returns 2."""
    s = s.set("count", 1)

    def after(s, coin):
        s = s.set("count", s["count"] + 1)
        return k(s, s["count"])

    return sample(s, after, a.extend("coin"), flip(0.5))


def varying_factors(s, k, a):
    """
    x ~ Flip(0.5); x: factor(log 0.8) twice; not x: factor(log 0.2) once.

    P(x = True) = 0.64 / 0.84 and the evidence is 0.42.
    """

    def with_x(s, x):
        done = lambda s, _: k(s, x)
        if x:
            return factor(
                s,
                lambda s, _: factor(s, done, a.extend("second"), math.log(0.8)),
                a.extend("first"),
                math.log(0.8),
            )
        return factor(s, done, a.extend("only"), math.log(0.2))

    return sample(s, with_x, a.extend("x"), flip(0.5))


def late_factor(s, k, a):
    """
    x ~ Flip(0.5); x: factor(log 0.5); return x

    Only one branch reaches a factor. P(x = True) = 1 / 3.
    """

    def with_x(s, x):
        if x:
            return factor(s, lambda s, _: k(s, x), a.extend("half"), math.log(0.5))
        return k(s, x)

    return sample(s, with_x, a.extend("x"), flip(0.5))


def gaussian_mean(s, k, a):
    """
    mu ~ Normal(0, 1); observe Normal(mu, 0.5) = 1.5; return mu

    Posterior mean 1.2, posterior standard deviation sqrt(0.2).
    """

    def with_mu(s, mu):
        return observe(s, lambda s, _: k(s, mu), a.extend("y"), gaussian(mu, 0.5), 1.5)

    return sample(s, with_mu, a.extend("mu"), gaussian(0.0, 1.0))


def geometric_flips(s, k, a):
    """Number of failed flips before the first success, one flip per level."""

    def loop(s, n, a):
        def with_stop(s, stop):
            if stop:
                return k(s, n)
            return loop(s, n + 1, a.extend("more"))

        return sample(s, with_stop, a.extend("flip"), flip(0.5))

    return loop(s, 0, a)


GAUSSIAN_MEAN_LOG_Z = -0.5 * math.log(2 * math.pi * 1.25) - 1.5**2 / (2 * 1.25)


# =============================================================================
# FIXTURES
# =============================================================================


@pytest.fixture
def base_key():
    """Standard random key for reproducible tests."""
    return jrand.key(42)


@pytest.fixture(autouse=True)
def clean_global_state():
    """Process-wide registries start empty and the strategy stack is left
    balanced by every test."""
    clear_minibatches()
    clear_params()
    yield
    assert coroutine_stack == []


class Helpers:
    @staticmethod
    def assert_hist_close(marginal, expected, tol=0.1):
        support = set(marginal.histogram()) | set(expected)
        for value in support:
            got = marginal.prob(value)
            want = expected.get(value, 0.0)
            assert abs(got - want) <= tol, f"P({value!r}) = {got}, expected {want}"

    @staticmethod
    def assert_log_z_close(marginal, expected, tol=0.1):
        assert marginal.normalization_constant is not None
        assert abs(marginal.normalization_constant - expected) <= tol, (
            f"log Z = {marginal.normalization_constant}, expected {expected}"
        )


@pytest.fixture
def helpers():
    return Helpers
