"""Test session configuration."""

from __future__ import annotations

import os

# Gradient checks compare against finite differences, which needs float64 on CPU.
os.environ.setdefault("JAX_PLATFORMS", "cpu")

from collections.abc import Callable
from pathlib import Path

import jax
import pytest

jax.config.update("jax_enable_x64", True)

from loom.config import Config  # noqa: E402
from tests.helpers.config_factories import make_small_run_cfg  # noqa: E402


@pytest.fixture
def small_run_cfg_factory() -> Callable[..., tuple[Config, Path]]:
    """Expose the shared small-run config factory."""
    return make_small_run_cfg


@pytest.fixture
def small_run_cfg(tmp_path: Path) -> tuple[Config, Path]:
    """Provide a smoke-sized run config tuple for tests."""
    return make_small_run_cfg(tmp_path)


@pytest.fixture
def key() -> jax.Array:
    """Fixed PRNG key for parameter initialization."""
    return jax.random.PRNGKey(0)
