"""Synthetic sequence tasks.

Both tasks are generated host-side with numpy from a seed, so a run is fully
reproducible from its config.

- ``even_odd``: each timestep is a one-hot bit (``[1, 0]`` for 0, ``[0, 1]`` for 1);
  the target is the parity of the bits seen so far as ``[1, 0]`` (even) or
  ``[0, 1]`` (odd).
- ``echo``: random vectors in; the target at timestep ``t`` is the input from
  timestep ``t - delay`` (zeros before that).
"""

from __future__ import annotations

import logging
from collections.abc import Sequence as Seq

import jax.numpy as jnp
import numpy as np

from loom.block import Block
from loom.config import Config
from loom.runner import run_lanes
from loom.types import Sequence

logger = logging.getLogger(__name__)


def task_sizes(cfg: Config) -> tuple[int, int]:
    """Return (input_size, output_size) of the configured task."""
    if cfg.data.task == "even_odd":
        return 2, 2
    if cfg.data.task == "echo":
        return cfg.data.echo_width, cfg.data.echo_width
    raise ValueError(f"Unknown data.task {cfg.data.task!r}")


def even_odd_sequence(bits: Seq[int]) -> Sequence:
    """Build one parity sample from a bit string."""
    inputs = np.zeros((len(bits), 2))
    outputs = np.zeros((len(bits), 2))
    parity = 0
    for t, b in enumerate(bits):
        inputs[t, int(b)] = 1.0
        parity ^= int(b)
        outputs[t, parity] = 1.0
    return Sequence(inputs, outputs)


def echo_sequence(inputs: np.ndarray, delay: int) -> Sequence:
    """Build one echo sample: outputs are ``inputs`` shifted ``delay`` steps later."""
    outputs = np.zeros_like(inputs)
    if delay < len(inputs):
        outputs[delay:] = inputs[: len(inputs) - delay]
    return Sequence(inputs, outputs)


def make_samples(cfg: Config, n: int, *, seed: int) -> list[Sequence]:
    """Generate ``n`` samples of the configured task.

    :param Config cfg: Run configuration (``data`` section).
    :param int n: Number of samples.
    :param int seed: Seed for the numpy generator.
    :return list[Sequence]: Samples with lengths in [min_len, max_len].
    """
    d = cfg.data
    rng = np.random.default_rng(seed)
    samples = []
    for _ in range(n):
        length = int(rng.integers(d.min_len, d.max_len + 1))
        if d.task == "even_odd":
            samples.append(even_odd_sequence(rng.integers(0, 2, size=length).tolist()))
        elif d.task == "echo":
            samples.append(echo_sequence(rng.uniform(-1, 1, size=(length, d.echo_width)), d.echo_delay))
        else:
            raise ValueError(f"Unknown data.task {d.task!r}")
    return samples


def build_datasets(cfg: Config) -> tuple[list[Sequence], list[Sequence]]:
    """Return (train, eval) sample lists with independent seeds."""
    train = make_samples(cfg, cfg.data.train_samples, seed=cfg.data.seed)
    evals = make_samples(cfg, cfg.data.eval_samples, seed=cfg.data.seed + 1)
    logger.info(
        "task=%s train=%d eval=%d lengths=[%d, %d]",
        cfg.data.task,
        len(train),
        len(evals),
        cfg.data.min_len,
        cfg.data.max_len,
    )
    return train, evals


def batches(samples: list[Sequence], batch_size: int, *, seed: int):
    """Yield shuffled mini-batches forever, reshuffling after every pass."""
    rng = np.random.default_rng(seed)
    while True:
        order = rng.permutation(len(samples))
        for i in range(0, len(order), batch_size):
            yield [samples[j] for j in order[i : i + batch_size]]


def accuracy(block: Block, samples: list[Sequence], *, task: str, batch_size: int = 64) -> float:
    """Fraction of timesteps the block gets right.

    even_odd counts a timestep as correct when the arg-max of the output matches the
    target's; echo when every component is within 0.1 of the target.
    """
    correct = 0
    total = 0
    for i in range(0, len(samples), batch_size):
        chunk = samples[i : i + batch_size]
        outputs = run_lanes(block, [s.inputs for s in chunk])
        for seq, actual in zip(chunk, outputs, strict=True):
            if not len(seq):
                continue
            if task == "even_odd":
                hits = jnp.argmax(actual, axis=1) == jnp.argmax(seq.outputs, axis=1)
            else:
                hits = jnp.all(jnp.abs(actual - seq.outputs) < 0.1, axis=1)
            correct += int(jnp.sum(hits))
            total += len(seq)
    return correct / total if total else 0.0
