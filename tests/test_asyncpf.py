"""
Test cases for the asynchronous particle filter.
"""

import math

import pytest
from conftest import (
    GAUSSIAN_MEAN_LOG_Z,
    deterministic,
    fair_coin,
    gaussian_mean,
    store_counter,
    two_coins_at_least_one,
    varying_factors,
)

from cpsppl import AsyncPF, ConfigurationError, InferenceError, Store, factor, infer, installed
from cpsppl.smc import Particle


@pytest.mark.asyncpf
@pytest.mark.integration
class TestAsyncPF:
    def test_fair_coin(self, base_key, helpers):
        marginal = infer(fair_coin, "asyncpf", key=base_key, particles=1000)
        helpers.assert_hist_close(marginal, {True: 0.5, False: 0.5})
        helpers.assert_log_z_close(marginal, 0.0, tol=1e-6)

    def test_conditioned(self, base_key, helpers):
        marginal = infer(two_coins_at_least_one, "asyncpf", key=base_key, particles=1000)
        helpers.assert_hist_close(marginal, {True: 2 / 3, False: 1 / 3})
        helpers.assert_log_z_close(marginal, math.log(0.75))

    def test_varying_factors(self, base_key, helpers):
        marginal = infer(varying_factors, "asyncpf", key=base_key, particles=1000)
        helpers.assert_hist_close(marginal, {True: 0.64 / 0.84, False: 0.2 / 0.84})
        helpers.assert_log_z_close(marginal, math.log(0.42), tol=0.15)

    @pytest.mark.slow
    def test_gaussian_evidence(self, base_key, helpers):
        marginal = infer(gaussian_mean, "asyncpf", key=base_key, particles=1000)
        helpers.assert_log_z_close(marginal, GAUSSIAN_MEAN_LOG_Z, tol=0.15)
        assert marginal.expectation() == pytest.approx(1.2, abs=0.15)


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
def test_finishes_at_least_the_requested_particles(base_key):
    marginal = infer(varying_factors, "asyncpf", key=base_key, particles=50)
    assert marginal.diagnostics["finished"] >= 50
    assert marginal.diagnostics["roots"] >= 1


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize("program,expected", [(deterministic, 7), (store_counter, 2)])
def test_programs_without_factors(base_key, helpers, program, expected):
    marginal = infer(program, "asyncpf", key=base_key, particles=10)
    helpers.assert_hist_close(marginal, {expected: 1.0}, tol=0.0)
    assert marginal.diagnostics["roots"] == 10


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
def test_running_mean_per_factor():
    kernel = AsyncPF(program=fair_coin)
    assert kernel.arrive(1, math.log(2.0)) == pytest.approx(math.log(2.0))
    assert kernel.arrive(1, math.log(4.0)) == pytest.approx(math.log(3.0))
    assert kernel.arrive(2, 0.0) == pytest.approx(0.0)


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
def test_heavy_particles_branch_within_the_buffer(base_key):
    kernel = AsyncPF(program=varying_factors, key=base_key, buffer_size=3)
    with installed(kernel):
        trace = kernel.simulate(Store(), limit=1)
        for _ in range(4):
            kernel.arrive(trace.factors, math.log(0.1))
        heavy = Particle(trace, math.log(10.0))
        children = kernel.children(heavy, buffered=0)
    assert len(children) == 3
    total = math.log(sum(math.exp(c.log_weight) for c in children))
    assert total == pytest.approx(heavy.log_weight)


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
def test_gives_up_after_max_roots(base_key):
    def impossible(s, k, a):
        return factor(s, k, a.extend("never"), -math.inf)

    with pytest.raises(InferenceError):
        infer(impossible, "asyncpf", key=base_key, particles=5, max_roots=20)


@pytest.mark.asyncpf
@pytest.mark.unit
@pytest.mark.fast
@pytest.mark.parametrize("options", [{"particles": 0}, {"buffer_size": 0}])
def test_invalid_options(options):
    with pytest.raises(ConfigurationError):
        AsyncPF(program=fair_coin, **options)
