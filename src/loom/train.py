"""Training loop.

Gradients come from the gradient engine (BPTT / truncated BPTT / recursive BPTT
over a worker pool), not from ``jax.grad`` over the whole model: the engine walks
the lane batch one timestep at a time and sums parameter gradients into pooled
buffers. This module only turns those buffers into an Optax update.

Rules:
1) The block is rebuilt from ``(params, static)`` after every update; the
   gradienter is handed the new block before the next gradient call.
2) Gradients are summed over samples by the engine and divided by the number of
   timesteps in the batch here, so the learning rate does not depend on lengths.
"""

from __future__ import annotations

import logging
import math
import time
from pathlib import Path
from typing import Any, Callable

import equinox as eqx
import jax
import jax.numpy as jnp
import optax
from tqdm import tqdm

from loom.config import Config, resolve_decay_duration
from loom.data import accuracy, batches, build_datasets, task_sizes
from loom.model import build_block, build_cost, build_gradienter
from loom.runner import total_cost
from loom.utils.io import MetricsWriter, add_file_logging, create_run_dir
from loom.utils.precision import configure_precision
from loom.utils.tree import param_count, sample_tensor_stats

logger = logging.getLogger(__name__)


def _weight_decay_mask(params: Any) -> Any:
    """Apply weight decay to matrices (ndim >= 2), not to biases or start states."""
    return jax.tree_util.tree_map(lambda x: x.ndim >= 2, params)


def build_schedule(cfg: Config) -> Callable[[Any], Any]:
    """Constant learning rate, or warmup + cosine decay when ``optim.schedule`` is set."""
    o = cfg.optim
    if not o.schedule:
        return optax.constant_schedule(o.lr)
    return optax.warmup_cosine_decay_schedule(
        init_value=0.0,
        peak_value=o.lr,
        warmup_steps=o.warmup_steps,
        decay_steps=o.warmup_steps + resolve_decay_duration(cfg),
        end_value=o.lr * o.min_lr_ratio,
    )


def build_optimizer(
    cfg: Config, params: Any
) -> tuple[optax.GradientTransformation, Callable[[Any], Any]]:
    """Create the Optax optimizer and its schedule function (for logging).

    :param Config cfg: Run configuration (``optim`` section).
    :param Any params: Parameter pytree (used for the weight-decay mask).
    :raises ValueError: If the optimizer name is unknown.
    :return tuple: (optimizer, schedule).
    """
    o = cfg.optim
    schedule = build_schedule(cfg)

    transforms = []
    if o.grad_clip_norm and o.grad_clip_norm > 0:
        transforms.append(optax.clip_by_global_norm(o.grad_clip_norm))

    if o.name == "adam":
        transforms.append(optax.adam(learning_rate=schedule))
    elif o.name == "adamw":
        transforms.append(
            optax.adamw(
                learning_rate=schedule,
                weight_decay=o.weight_decay,
                mask=_weight_decay_mask(params),
            )
        )
    elif o.name == "sgd":
        transforms.append(optax.sgd(learning_rate=schedule, momentum=o.momentum or None))
    elif o.name == "rmsprop":
        transforms.append(optax.rmsprop(learning_rate=schedule, momentum=o.momentum))
    else:
        raise ValueError(f"Unknown optimizer {o.name!r}")

    return optax.chain(*transforms), schedule


def _timesteps(batch: list[Any]) -> int:
    return sum(len(s) for s in batch)


def run(cfg: Config, *, config_path: str | None = None, dry_run: bool = False) -> Path:
    """Run a training job and return the run directory.

    ``dry_run`` builds everything, computes one gradient and exits without
    updating parameters.

    :raises RuntimeError: If ``debug.nan_check`` is on and the loss goes non-finite.
    """
    if cfg.engine.x64:
        configure_precision(True)

    run_dir = create_run_dir(cfg, config_path=config_path)
    if cfg.logging.log_file:
        add_file_logging(run_dir / cfg.logging.log_file, level=cfg.logging.level)
    metrics_path = run_dir / cfg.logging.metrics_file

    key = jax.random.PRNGKey(cfg.train.seed)
    input_size, output_size = task_sizes(cfg)
    block = build_block(cfg, key=key, input_size=input_size, output_size=output_size)
    logger.info("params: %s", f"{param_count(block):,}")
    for stats in sample_tensor_stats(block):
        logger.debug("init %s", stats)

    train_samples, eval_samples = build_datasets(cfg)
    cost_func = build_cost(cfg)
    gradienter = build_gradienter(cfg, block, cost_func)

    params, static = eqx.partition(block, eqx.is_inexact_array)
    tx, schedule = build_optimizer(cfg, params)
    opt_state = tx.init(params)
    data_it = batches(train_samples, cfg.train.batch_size, seed=cfg.train.seed)

    if dry_run:
        batch = next(data_it)
        grad = gradienter.gradient(batch)
        norm = float(optax.global_norm(grad.to_tree()))
        logger.info("dry run: gradient over %d samples, norm %.4g", len(batch), norm)
        return run_dir

    t0 = time.perf_counter()
    with MetricsWriter(metrics_path) as mw:
        for step in tqdm(range(1, cfg.train.steps + 1), desc="train", dynamic_ncols=True):
            batch = next(data_it)
            n_steps = max(_timesteps(batch), 1)

            gradienter.learner = block
            grad = gradienter.gradient(batch)
            grads = jax.tree_util.tree_map(lambda g: g / n_steps, grad.to_tree())
            loss = total_cost(block, cost_func, batch, batch_size=len(batch)) / n_steps

            if cfg.debug.nan_check and not math.isfinite(loss):
                raise RuntimeError(f"Non-finite loss at step {step}: {loss}")

            grad_norm = float(optax.global_norm(grads))
            updates, opt_state = tx.update(grads, opt_state, params)
            params = optax.apply_updates(params, updates)
            block = eqx.combine(params, static)

            log_now = step % cfg.train.log_every == 0 or step == cfg.train.steps
            eval_now = bool(eval_samples) and cfg.train.eval_every > 0 and step % cfg.train.eval_every == 0
            if log_now or eval_now:
                row: dict[str, Any] = {
                    "step": step,
                    "loss": loss,
                    "grad_norm": grad_norm,
                    "lr": float(jnp.asarray(schedule(step - 1))),
                    "timesteps": n_steps,
                    "wall_time_s": time.perf_counter() - t0,
                }
                if eval_now:
                    eval_steps = max(_timesteps(eval_samples), 1)
                    row["eval_loss"] = (
                        total_cost(block, cost_func, eval_samples, batch_size=cfg.train.eval_batch_size)
                        / eval_steps
                    )
                    row["eval_accuracy"] = accuracy(
                        block, eval_samples, task=cfg.data.task, batch_size=cfg.train.eval_batch_size
                    )
                mw.write(row)
                logger.debug("step %d loss %.5f grad_norm %.4g", step, loss, grad_norm)

    if eval_samples:
        acc = accuracy(block, eval_samples, task=cfg.data.task, batch_size=cfg.train.eval_batch_size)
        logger.info("final eval accuracy: %.3f", acc)
    return run_dir
