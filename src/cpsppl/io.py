"""File I/O, display and logging setup.

The CPS wrappers here take the usual `(s, k, a)` prefix so programs can
call them like any other primitive.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

import jax
import jax.numpy as jnp
import numpy as np

from cpsppl.core import Address, Any, Continuation, Step, Store


class LibraryLogFilter(logging.Filter):
    """Drop records below `threshold` from the loggers of the libraries the
    package runs on (JAX and its compiler backends by default)."""

    def __init__(
        self,
        libraries: tuple[str, ...] = ("jax", "jaxlib", "absl"),
        threshold: int = logging.WARNING,
    ):
        super().__init__()
        self.libraries = libraries
        self.threshold = threshold

    def filter(self, record: logging.LogRecord) -> bool:
        root = record.name.partition(".")[0]
        return root not in self.libraries or record.levelno >= self.threshold


def setup_logging(level: str = "INFO", logger_name: str = "cpsppl") -> None:
    """Attach a console handler to the `cpsppl` logger in place of the
    handlers it already has. Library records below WARNING are filtered out.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param str logger_name: Logger to configure; "" configures the root
        logger, so a host script sees JAX warnings next to cpsppl messages.
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    handler = logging.StreamHandler()
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    handler.setLevel(numeric_level)
    handler.addFilter(LibraryLogFilter())
    target = logging.getLogger(logger_name)
    target.setLevel(numeric_level)
    for existing in list(target.handlers):
        target.removeHandler(existing)
    target.addHandler(handler)


def _json_default(value):
    if isinstance(value, (jax.Array, np.ndarray, np.generic)):
        return np.asarray(value).tolist()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def read_json(s: Store, k: Continuation, a: Address, path: str | Path) -> Step:
    return k(s, json.loads(Path(path).read_text(encoding="utf-8")))


def read_dataset_json(s: Store, k: Continuation, a: Address, path: str | Path) -> Step:
    """Read a JSON array of rows, delivering each row as a column tensor."""
    rows = json.loads(Path(path).read_text(encoding="utf-8"))
    return k(s, [jnp.asarray(row, dtype=jnp.float32).reshape(len(row), 1) for row in rows])


def write_json(s: Store, k: Continuation, a: Address, path: str | Path, obj: Any) -> Step:
    Path(path).write_text(json.dumps(obj, default=_json_default), encoding="utf-8")
    return k(s, None)


def display(s: Store, k: Continuation, a: Address, *values: Any) -> Step:
    print(*(jax.device_get(v) for v in values))
    return k(s, None)
