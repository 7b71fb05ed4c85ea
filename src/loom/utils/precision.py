"""Floating-point precision switch.

JAX computes in float32 unless x64 is enabled before arrays are created.
Gradient checks need float64; training is usually fine with float32.
"""

from __future__ import annotations

import logging

import jax

logger = logging.getLogger(__name__)


def configure_precision(x64: bool) -> None:
    """Enable or disable 64-bit floats for arrays created from now on.

    :param bool x64: True for float64 defaults, False for float32.
    """
    jax.config.update("jax_enable_x64", bool(x64))
    logger.debug("jax_enable_x64=%s", bool(x64))


def x64_enabled() -> bool:
    """Return True if 64-bit floats are currently the default."""
    return bool(jax.config.jax_enable_x64)
