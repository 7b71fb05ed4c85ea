# SPDX-License-Identifier: Apache-2.0

"""Configuration for loom training runs.

One config system: if a knob doesn't live in these dataclasses, it doesn't exist.

We use:
- YAML files for readability
- dot-path overrides for quick experiment changes

The loader is strict: mis-typed keys or invalid values fail fast with error
messages that say exactly what to fix.
"""

from __future__ import annotations

import re
import warnings
from collections.abc import Iterable
from dataclasses import asdict, dataclass, replace
from pathlib import Path
from typing import Any, Literal

import yaml

CellKind = Literal["lstm", "gru", "irnn"]
HeadKind = Literal["linear", "none"]
TaskKind = Literal["even_odd", "echo"]
GradienterKind = Literal["bptt", "truncated", "full_r"]
CostKind = Literal["mse", "cross_entropy", "sigmoid_ce"]
OptimName = Literal["adam", "adamw", "sgd", "rmsprop"]
LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CELL_KINDS = ("lstm", "gru", "irnn")
HEAD_KINDS = ("linear", "none")
TASK_KINDS = ("even_odd", "echo")
GRADIENTER_KINDS = ("bptt", "truncated", "full_r")
COST_KINDS = ("mse", "cross_entropy", "sigmoid_ce")
OPTIM_NAMES = ("adam", "adamw", "sgd", "rmsprop")


@dataclass(frozen=True)
class ModelConfig:
    """Recurrent stack configuration.

    The block is ``num_layers`` cells of ``cell`` kind stacked on top of each other,
    followed by a stateless linear head (``head="linear"``) that maps the last
    hidden output to the task's output width.
    """

    cell: CellKind = "lstm"
    hidden_size: int = 32
    num_layers: int = 1
    head: HeadKind = "linear"
    # IRNN only
    identity_scale: float = 1.0


@dataclass(frozen=True)
class DataConfig:
    """Synthetic sequence task configuration.

    - even_odd: one-hot bits in, running parity bit out (two outputs)
    - echo: random vectors in, the input from ``echo_delay`` steps ago out
    """

    task: TaskKind = "even_odd"
    train_samples: int = 256
    eval_samples: int = 64
    min_len: int = 1
    max_len: int = 16
    seed: int = 0

    # echo only
    echo_width: int = 4
    echo_delay: int = 1


@dataclass(frozen=True)
class EngineConfig:
    """Gradient engine configuration.

    ``max_lanes`` and ``max_workers`` follow the GradHelper convention: 0 picks the
    default (15 lanes per sub-batch, one worker per CPU).
    """

    gradienter: GradienterKind = "bptt"
    cost: CostKind = "sigmoid_ce"
    head_size: int = 8
    tail_size: int = 4
    max_lanes: int = 0
    max_workers: int = 0
    x64: bool = False


@dataclass(frozen=True)
class TrainConfig:
    """Training loop configuration."""

    seed: int = 0
    steps: int = 200
    batch_size: int = 32
    log_every: int = 10
    eval_every: int = 50
    eval_batch_size: int = 64


@dataclass(frozen=True)
class OptimConfig:
    """Optax optimizer configuration with optional warmup+cosine decay."""

    name: OptimName = "adam"
    lr: float = 1e-2
    weight_decay: float = 0.0
    momentum: float = 0.0
    grad_clip_norm: float = 1.0
    warmup_steps: int = 0
    decay_steps: int | None = None
    min_lr_ratio: float = 0.0
    schedule: bool = False


@dataclass(frozen=True)
class LoggingConfig:
    """Logging configuration for run directory and metrics output."""

    project: str = "loom"
    run_dir: str | None = None
    metrics_file: str = "metrics.jsonl"
    level: LogLevel = "INFO"
    console_use_rich: bool = True
    log_file: str | None = "train.log"


@dataclass(frozen=True)
class DebugConfig:
    """Debug configuration."""

    nan_check: bool = True


@dataclass(frozen=True)
class Config:
    """Top-level configuration combining all sub-configs for a training run."""

    model: ModelConfig = ModelConfig()
    data: DataConfig = DataConfig()
    engine: EngineConfig = EngineConfig()
    train: TrainConfig = TrainConfig()
    optim: OptimConfig = OptimConfig()
    logging: LoggingConfig = LoggingConfig()
    debug: DebugConfig = DebugConfig()

    def to_dict(self) -> dict[str, Any]:
        """Convert the entire config tree to a nested dictionary.

        :return dict[str, Any]: Nested dict representation of all config fields.
        """
        return asdict(self)


# ------------------------------ Loading ---------------------------------


def _set_by_dotted_path(obj: Any, path: str, raw_value: str) -> Any:
    """Set a dataclass field by dotted path, returning a new object.

    Example: path="train.batch_size", raw_value="4"

    :param Any obj: Root dataclass to modify.
    :param str path: Dot-separated path to the field (e.g., "train.batch_size").
    :param str raw_value: String value to set, cast to the field's current type.
    :raises ValueError: If the path is invalid or contains unknown keys.
    :return Any: New dataclass with the field updated.
    """
    parts = path.split(".")
    if not path or any(not p for p in parts):
        raise ValueError(f"Invalid override path: {path!r}")

    cur = obj
    parents: list[tuple[Any, str]] = []
    for p in parts[:-1]:
        if not hasattr(cur, p):
            raise ValueError(f"Unknown config key: {path!r} (missing {p!r})")
        parents.append((cur, p))
        cur = getattr(cur, p)

    leaf = parts[-1]
    if not hasattr(cur, leaf):
        raise ValueError(f"Unknown config key: {path!r} (missing {leaf!r})")

    new = _cast_like(getattr(cur, leaf), raw_value)

    # Rebuild frozen dataclasses from the bottom up
    cur_new = replace(cur, **{leaf: new})
    for parent, field in reversed(parents):
        cur_new = replace(parent, **{field: cur_new})
    return cur_new


def _cast_like(old: Any, raw: str) -> Any:
    """Cast a string override to the type of `old`.

    :param Any old: Reference value whose type determines the cast.
    :param str raw: String value to cast.
    :raises ValueError: If the cast fails (e.g., invalid boolean string).
    :return Any: Value cast to the type of `old`.
    """
    if isinstance(old, bool):
        if raw.lower() in {"true", "1", "yes", "y"}:
            return True
        if raw.lower() in {"false", "0", "no", "n"}:
            return False
        raise ValueError(f"Expected boolean, got {raw!r}")
    if isinstance(old, int):
        return int(raw)
    if isinstance(old, float):
        return float(raw)
    if old is None:
        if raw.lower() in {"null", "none"}:
            return None
        # Parse YAML scalars to recover numeric/bool types when the default is None.
        try:
            parsed = yaml.safe_load(raw)
        except yaml.YAMLError:
            return raw
        return raw if parsed is None else parsed
    return raw


def load_config(path: str | Path, overrides: Iterable[str] | None = None) -> Config:
    """Load a YAML config file and apply dot-path overrides.

    Overrides format: "train.steps=2000".

    :param path: Path to the YAML config file.
    :param overrides: Optional list of dot-path overrides.
    :raises ValueError: If an override is malformed or the config is invalid.
    :return Config: Validated configuration object.
    """
    path = Path(path)
    with path.open("r") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Config file {path} must contain a mapping at the top level")

    cfg = _from_nested_dict(_resolve_variables(data))

    for o in overrides or ():
        if "=" not in o:
            raise ValueError(f"Invalid override {o!r}. Expected format like train.steps=123")
        k, v = o.split("=", 1)
        cfg = _set_by_dotted_path(cfg, k.strip(), v.strip())

    validate_config(cfg)
    return cfg


_VAR_INLINE_RE = re.compile(r"\{\$variables\.([A-Za-z0-9_.-]+)\}")
_VAR_BRACE_RE = re.compile(r"\$\{variables\.([A-Za-z0-9_.-]+)\}")
_VAR_FULL_RE = re.compile(r"\$variables\.([A-Za-z0-9_.-]+)$")
_VAR_SUSPICIOUS_RE = re.compile(r"\$variables\.[A-Za-z0-9_.-]+")


def _resolve_variables(data: dict[str, Any]) -> dict[str, Any]:
    """Resolve variable references in a config dict before dataclass parsing.

    Supported forms:
    - Exact value: "$variables.foo" -> replaced with the referenced value (type preserved).
    - Inline string: "h{$variables.hidden}" or "${variables.hidden}" -> interpolated.

    Variable definitions live under the top-level key "variables" and may be nested.

    :param dict[str, Any] data: Raw YAML-loaded data.
    :raises ValueError: If a variable reference is missing or circular.
    :return dict[str, Any]: Data with variables resolved (variables removed).
    """
    raw_vars = data.get("variables") or {}
    if not isinstance(raw_vars, dict):
        raise ValueError("variables must be a mapping if provided")

    resolved: dict[str, Any] = {}
    resolving: list[str] = []

    def _lookup_var(path: str) -> Any:
        if path in resolved:
            return resolved[path]
        if path in resolving:
            cycle = " -> ".join(resolving + [path])
            raise ValueError(f"Circular variable reference: {cycle}")

        cur: Any = raw_vars
        for part in path.split("."):
            if not isinstance(cur, dict) or part not in cur:
                raise ValueError(f"Unknown variable reference: variables.{path}")
            cur = cur[part]

        resolving.append(path)
        value = _resolve_value(cur)
        resolving.pop()
        resolved[path] = value
        return value

    def _sub_var(match: re.Match[str]) -> str:
        return str(_lookup_var(match.group(1)))

    def _resolve_value(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _resolve_value(v) for k, v in value.items()}
        if isinstance(value, list):
            return [_resolve_value(v) for v in value]
        if isinstance(value, str):
            full = _VAR_FULL_RE.fullmatch(value)
            if full:
                return _lookup_var(full.group(1))
            out = _VAR_INLINE_RE.sub(_sub_var, value)
            out = _VAR_BRACE_RE.sub(_sub_var, out)
            remaining = _VAR_SUSPICIOUS_RE.findall(out)
            if remaining:
                warnings.warn(
                    f"String contains unresolved variable-like patterns: {remaining}. "
                    "Use {$variables.name} or ${variables.name} for inline substitution.",
                    stacklevel=2,
                )
            return out
        return value

    return {k: _resolve_value(v) for k, v in data.items() if k != "variables"}


_SECTIONS: dict[str, type] = {
    "model": ModelConfig,
    "data": DataConfig,
    "engine": EngineConfig,
    "train": TrainConfig,
    "optim": OptimConfig,
    "logging": LoggingConfig,
    "debug": DebugConfig,
}


def _from_nested_dict(data: dict[str, Any]) -> Config:
    """Convert a nested dict into Config dataclasses.

    :param dict[str, Any] data: Nested dictionary from YAML parsing.
    :raises ValueError: If a section or key is unknown.
    :return Config: Fully constructed Config with all sub-configs.
    """
    unknown = sorted(set(data) - set(_SECTIONS))
    if unknown:
        raise ValueError(f"Unknown config sections: {unknown}. Expected {sorted(_SECTIONS)}")
    sections = {}
    for name, cls in _SECTIONS.items():
        section = data.get(name) or {}
        try:
            sections[name] = cls(**section)
        except TypeError as e:
            raise ValueError(f"Invalid keys in config section {name!r}: {e}") from e
    return Config(**sections)


# ------------------------------ Validation ---------------------------------


def _vfail(msg: str) -> None:
    """Raise ValueError with a standardized config validation prefix.

    :param str msg: Validation failure message.
    :raises ValueError: Always.
    """
    raise ValueError(f"Config validation failed: {msg}")


def _validate_model(cfg: Config) -> None:
    m = cfg.model
    if m.cell not in CELL_KINDS:
        _vfail(f"model.cell must be one of {CELL_KINDS}, got {m.cell!r}")
    if m.head not in HEAD_KINDS:
        _vfail(f"model.head must be one of {HEAD_KINDS}, got {m.head!r}")
    if m.hidden_size <= 0:
        _vfail(f"model.hidden_size must be positive, got {m.hidden_size}")
    if m.num_layers <= 0:
        _vfail(f"model.num_layers must be positive, got {m.num_layers}")
    if m.identity_scale <= 0:
        _vfail(f"model.identity_scale must be positive, got {m.identity_scale}")


def _validate_data(cfg: Config) -> None:
    d = cfg.data
    if d.task not in TASK_KINDS:
        _vfail(f"data.task must be one of {TASK_KINDS}, got {d.task!r}")
    if d.train_samples <= 0:
        _vfail(f"data.train_samples must be positive, got {d.train_samples}")
    if d.eval_samples < 0:
        _vfail(f"data.eval_samples must be >= 0, got {d.eval_samples}")
    if d.min_len < 0:
        _vfail(f"data.min_len must be >= 0, got {d.min_len}")
    if d.max_len < d.min_len:
        _vfail(f"data.max_len ({d.max_len}) must be >= data.min_len ({d.min_len})")
    if d.max_len == 0:
        _vfail("data.max_len must be positive")
    if d.task == "echo":
        if d.echo_width <= 0:
            _vfail(f"data.echo_width must be positive, got {d.echo_width}")
        if d.echo_delay < 0:
            _vfail(f"data.echo_delay must be >= 0, got {d.echo_delay}")


def _validate_engine(cfg: Config) -> None:
    e = cfg.engine
    if e.gradienter not in GRADIENTER_KINDS:
        _vfail(f"engine.gradienter must be one of {GRADIENTER_KINDS}, got {e.gradienter!r}")
    if e.cost not in COST_KINDS:
        _vfail(f"engine.cost must be one of {COST_KINDS}, got {e.cost!r}")
    if e.gradienter == "truncated":
        if e.head_size < 1:
            _vfail(f"engine.head_size must be >= 1, got {e.head_size}")
        if e.tail_size < 0:
            _vfail(f"engine.tail_size must be >= 0, got {e.tail_size}")
    if e.max_lanes < 0:
        _vfail(f"engine.max_lanes must be >= 0, got {e.max_lanes}")
    if e.max_workers < 0:
        _vfail(f"engine.max_workers must be >= 0, got {e.max_workers}")
    if e.gradienter == "full_r" and cfg.data.max_len > 500:
        warnings.warn(
            f"engine.gradienter='full_r' recurses once per timestep; data.max_len={cfg.data.max_len} "
            "may exceed the interpreter recursion limit.",
            stacklevel=2,
        )


def _validate_train(cfg: Config) -> None:
    t = cfg.train
    if t.steps <= 0:
        _vfail(f"train.steps must be positive, got {t.steps}")
    if t.batch_size <= 0:
        _vfail(f"train.batch_size must be positive, got {t.batch_size}")
    if t.log_every <= 0:
        _vfail(f"train.log_every must be positive, got {t.log_every}")
    if t.eval_every < 0:
        _vfail(f"train.eval_every must be >= 0, got {t.eval_every}")
    if t.eval_batch_size <= 0:
        _vfail(f"train.eval_batch_size must be positive, got {t.eval_batch_size}")


def _validate_optim(cfg: Config) -> None:
    o = cfg.optim
    if o.name not in OPTIM_NAMES:
        _vfail(f"optim.name must be one of {OPTIM_NAMES}, got {o.name!r}")
    if o.lr <= 0:
        _vfail(f"optim.lr must be positive, got {o.lr}")
    if o.weight_decay < 0:
        _vfail(f"optim.weight_decay must be >= 0, got {o.weight_decay}")
    if o.momentum < 0 or o.momentum >= 1:
        _vfail(f"optim.momentum must be in [0, 1), got {o.momentum}")
    if o.grad_clip_norm < 0:
        _vfail(f"optim.grad_clip_norm must be >= 0, got {o.grad_clip_norm}")
    if o.warmup_steps < 0:
        _vfail(f"optim.warmup_steps must be >= 0, got {o.warmup_steps}")
    if o.decay_steps is not None and o.decay_steps <= 0:
        _vfail(f"optim.decay_steps must be positive when set, got {o.decay_steps}")
    if o.min_lr_ratio < 0 or o.min_lr_ratio > 1:
        _vfail(f"optim.min_lr_ratio must be in [0, 1], got {o.min_lr_ratio}")
    if o.schedule and o.warmup_steps >= cfg.train.steps:
        _vfail(f"optim.warmup_steps ({o.warmup_steps}) must be < train.steps ({cfg.train.steps})")


def _validate_logging(cfg: Config) -> None:
    if cfg.logging.log_file is not None and not str(cfg.logging.log_file).strip():
        _vfail("logging.log_file must be a non-empty string or null")
    if cfg.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR"):
        _vfail(f"logging.level must be DEBUG/INFO/WARNING/ERROR, got {cfg.logging.level!r}")


def validate_config(cfg: Config) -> None:
    """Validate config with actionable error messages."""
    _validate_model(cfg)
    _validate_data(cfg)
    _validate_engine(cfg)
    _validate_train(cfg)
    _validate_optim(cfg)
    _validate_logging(cfg)


def resolve_decay_duration(cfg: Config) -> int:
    """Resolve cosine decay duration (post-warmup) in steps.

    If `optim.decay_steps` is unset, the schedule ends at `train.steps`.

    :param Config cfg: Training configuration.
    :return int: Decay duration in steps.
    """
    if cfg.optim.decay_steps is None:
        return int(cfg.train.steps) - int(cfg.optim.warmup_steps)
    return int(cfg.optim.decay_steps)
