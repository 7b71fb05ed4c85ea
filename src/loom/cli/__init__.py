"""CLI entrypoints for loom.

Invoked via ``pyproject.toml`` entrypoints::

    loom train <config.yaml> ...

Keep these modules thin: argument parsing + calling into library code.
"""

from __future__ import annotations

__all__ = ["cli"]

from loom.cli.main import cli
