"""Tests for config variable interpolation."""

from __future__ import annotations

import warnings
from pathlib import Path

import pytest

from loom.config import load_config


def _write_config(tmp_path: Path, text: str) -> Path:
    """Write a temporary config file.

    :param Path tmp_path: Temporary directory for test files.
    :param str text: Config contents to write.
    :return Path: Path to the written config file.
    """
    path = tmp_path / "config.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_variables_resolve_and_interpolate(tmp_path: Path) -> None:
    """Variables should resolve to typed values and interpolate into strings."""
    cfg_path = _write_config(
        tmp_path,
        """
variables:
  hidden: 24
  lens:
    max: 9
model:
  hidden_size: $variables.hidden
data:
  max_len: $variables.lens.max
logging:
  project: "loom-h{$variables.hidden}-l${variables.lens.max}"
""",
    )
    cfg = load_config(cfg_path)
    assert cfg.model.hidden_size == 24
    assert cfg.data.max_len == 9
    assert cfg.logging.project == "loom-h24-l9"


def test_variables_missing_reference_raises(tmp_path: Path) -> None:
    """Missing variable references should raise a ValueError."""
    cfg_path = _write_config(
        tmp_path,
        """
variables:
  hidden: 24
model:
  hidden_size: $variables.missing
""",
    )
    with pytest.raises(ValueError, match="Unknown variable reference"):
        load_config(cfg_path)


def test_variables_cycle_raises(tmp_path: Path) -> None:
    """Circular variable references should raise a ValueError."""
    cfg_path = _write_config(
        tmp_path,
        """
variables:
  a: $variables.b
  b: $variables.a
model:
  hidden_size: $variables.a
""",
    )
    with pytest.raises(ValueError, match="Circular variable reference"):
        load_config(cfg_path)


def test_unresolved_variable_pattern_warns(tmp_path: Path) -> None:
    """A variable-like pattern outside the supported forms should warn."""
    cfg_path = _write_config(
        tmp_path,
        """
variables:
  hidden: 24
logging:
  project: "loom-$variables.hidden-run"
""",
    )
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        load_config(cfg_path)
    assert any("unresolved variable-like patterns" in str(w.message) for w in caught)
