"""Compatibility shims between TensorFlow Probability's JAX substrate and
recent JAX releases.

Installed once, before `cpsppl.distributions` imports TFP.
"""

from __future__ import annotations

import jax


def ensure_jax_tfp_compat() -> None:
    """TFP 0.25 still looks up ``jax.interpreters.xla.pytype_aval_mappings``,
    which JAX 0.7 moved to ``jax.core.pytype_aval_mappings``."""

    xla_interpreter = getattr(jax.interpreters, "xla", None)
    mappings = getattr(jax.core, "pytype_aval_mappings", None)
    if xla_interpreter is None or mappings is None:
        return
    if not hasattr(xla_interpreter, "pytype_aval_mappings"):
        xla_interpreter.pytype_aval_mappings = mappings
