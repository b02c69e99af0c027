from beartype import BeartypeConf
from beartype.claw import beartype_this_package

conf = BeartypeConf(
    is_color=True,
    is_debug=False,
    is_pep484_tower=True,
    violation_type=TypeError,
)

beartype_this_package(conf=conf)

from .asyncpf import AsyncPF
from .batching import (
    MapDataOptions,
    clear_minibatches,
    map_data,
    previous_minibatch,
)
from .memoization import LRUCache, Memoized, cache, memoize
from .core import (
    Address,
    Bounce,
    ConfigurationError,
    Coroutine,
    Index,
    InferenceError,
    Pytree,
    Signal,
    Store,
    apply,
    coroutine_stack,
    current,
    factor,
    get_relative_address,
    halt,
    installed,
    observe,
    relative_address,
    sample,
    serialize,
    trampoline,
)
from .distributions import (
    Distribution,
    Family,
    bernoulli,
    beta,
    binomial,
    categorical,
    exponential,
    flip,
    gamma,
    gaussian,
    geometric,
    poisson,
    random_integer,
    tfp_distribution,
    uniform,
)
from .enumeration import Enumerate
from .inference import METHODS, cps_infer, infer, run
from .io import (
    LibraryLogFilter,
    display,
    read_dataset_json,
    read_json,
    setup_logging,
    write_json,
)
from .marginal import Marginal
from .mcmc import MCMC, Choice, ExecutionTrace, MHKernel
from .params import clear_params, get_params, matrix, param, vector, zeros
from .pmcmc import PMCMC
from .rejection import Rejection
from .smc import SMC, Particle, effective_sample_size, systematic_resample

__all__ = [
    "METHODS",
    "MCMC",
    "PMCMC",
    "SMC",
    "Address",
    "AsyncPF",
    "Bounce",
    "Choice",
    "ConfigurationError",
    "Coroutine",
    "Distribution",
    "Enumerate",
    "ExecutionTrace",
    "Family",
    "Index",
    "InferenceError",
    "LibraryLogFilter",
    "LRUCache",
    "MHKernel",
    "MapDataOptions",
    "Marginal",
    "Memoized",
    "Particle",
    "Pytree",
    "Rejection",
    "Signal",
    "Store",
    "apply",
    "bernoulli",
    "beta",
    "binomial",
    "cache",
    "categorical",
    "clear_minibatches",
    "clear_params",
    "coroutine_stack",
    "cps_infer",
    "current",
    "display",
    "effective_sample_size",
    "exponential",
    "factor",
    "flip",
    "gamma",
    "gaussian",
    "geometric",
    "get_params",
    "get_relative_address",
    "halt",
    "infer",
    "installed",
    "map_data",
    "matrix",
    "memoize",
    "observe",
    "param",
    "poisson",
    "previous_minibatch",
    "random_integer",
    "read_dataset_json",
    "read_json",
    "relative_address",
    "run",
    "sample",
    "serialize",
    "setup_logging",
    "systematic_resample",
    "tfp_distribution",
    "trampoline",
    "uniform",
    "vector",
    "write_json",
    "zeros",
]
