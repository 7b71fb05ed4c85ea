"""Filesystem + metrics logging utilities.

loom uses deliberately boring IO:
- a run directory containing a config snapshot + metrics.jsonl
- JSONL is append-only and resilient (works even if the process crashes)
"""

from __future__ import annotations

import contextlib
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from rich.logging import RichHandler

from loom.config import Config

_NOISY_CONSOLE_PREFIXES = ("jax", "jaxlib", "absl")


class _ConsoleNoiseFilter(logging.Filter):
    """Hide noisy third-party INFO logs from the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        for prefix in _NOISY_CONSOLE_PREFIXES:
            if record.name.startswith(prefix):
                return record.levelno >= logging.WARNING
        return True


def _console_handler(level: int, *, use_rich: bool) -> logging.Handler:
    """Build a console handler with optional Rich formatting."""
    if use_rich:
        handler: logging.Handler = RichHandler(
            show_time=True,
            show_level=True,
            show_path=False,
            markup=True,
            rich_tracebacks=False,
        )
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(message)s"))

    handler.setLevel(level)
    handler.addFilter(_ConsoleNoiseFilter())
    return handler


def setup_python_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure Python logging with a single console handler.

    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: If True, use Rich for nicer console logs.
    """
    numeric_level = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric_level)
    for handler in list(root.handlers):
        root.removeHandler(handler)
    root.addHandler(_console_handler(numeric_level, use_rich=use_rich))


def add_file_logging(path: Path, *, level: str) -> None:
    """Attach a file handler that captures all logs.

    Calling twice with the same path is a no-op.

    :param Path path: Log file path.
    :param str level: Log level name (DEBUG, INFO, WARNING, ERROR).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    root = logging.getLogger()
    for handler in root.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == str(path.resolve()):
            return
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(getattr(logging, level, logging.INFO))
    file_handler.setFormatter(
        logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s")
    )
    root.addHandler(file_handler)


def create_run_dir(cfg: Config, *, config_path: str | Path | None) -> Path:
    """Create a fresh run directory and snapshot the config into it.

    - If cfg.logging.run_dir is None, a timestamped directory is created under
      ``runs/<project>/``.
    - If it is set, it must not exist yet (or be empty).

    Writes config_resolved.json and, when available, config_original.yaml.

    :param Config cfg: Training configuration.
    :param config_path: Optional path to the original YAML config.
    :raises RuntimeError: If the directory already exists and is not empty.
    :return Path: Path to the run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists() and any(run_dir.iterdir()):
            raise RuntimeError(
                f"Run dir already exists: {run_dir}. "
                "Refusing to clobber. Set logging.run_dir to a new path."
            )
        run_dir.mkdir(parents=True, exist_ok=True)
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
        run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / "config_resolved.json").write_text(
        json.dumps(cfg.to_dict(), indent=2, sort_keys=True)
    )
    if config_path is not None:
        src = Path(config_path)
        if src.exists():
            (run_dir / "config_original.yaml").write_text(src.read_text())

    return run_dir


class MetricsWriter:
    """Append-only JSONL metrics writer."""

    def __init__(self, path: str | Path):
        """Initialize the metrics writer.

        :param path: Path to the JSONL file.
        """
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1)

    def write(self, row: dict[str, Any]) -> None:
        """Write a metrics row to the JSONL file.

        :param dict[str, Any] row: Dictionary of metrics to write.
        """
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        with contextlib.suppress(OSError):
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
