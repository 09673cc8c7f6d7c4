"""Structured total least squares in JAX.

Extended Summary
----------------
Errors-in-variables (Deming) regression with a trust-region solver that
exploits the block structure of the Jacobian. Parameters and per
observation data corrections are fitted jointly, and rank deficiency is
handled by rank-revealing decompositions.

Routine Listings
----------------
:mod:`tls`
    Structured Jacobian, Newton and Cauchy steps, trial moves and driver.
:mod:`types`
    PyTree containers and scalar type aliases.
:mod:`utils`
    Errors, decomposition primitives and model adapters.

Examples
--------
>>> import deming as dm
>>> fgg = dm.utils.fgg_from_model(lambda p, xi: p[0] + p[1] * xi)
>>> result = dm.tls.fit_tls(fgg, x, y, p0=jnp.zeros(2))
>>> result.report.p

Notes
-----
Importing the package enables 64-bit floating point in JAX. The package
logger ``deming`` has a ``NullHandler``; configure logging in the
application to see iteration records.
"""

import logging
import os
from importlib.metadata import version

# Enable multi-threaded CPU execution for JAX (before importing JAX)
os.environ.setdefault(
    "XLA_FLAGS",
    "--xla_cpu_multi_thread_eigen=true intra_op_parallelism_threads=0",
)

import jax  # noqa: E402

jax.config.update("jax_enable_x64", True)

from . import tls, types, utils  # noqa: E402, I001

logging.getLogger(__name__).addHandler(logging.NullHandler())

__version__: str = version("deming")

__all__: list[str] = [
    "__version__",
    "tls",
    "types",
    "utils",
]
