"""Inference without gradient bookkeeping."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from loom.block import Block
from loom.cost import CostFunc
from loom.seqprop import active_lanes, continuing, gather_step
from loom.state import take_lanes
from loom.types import Sequence, as_steps, as_vector, float_dtype

logger = logging.getLogger(__name__)


def stack_rows(rows: list[list[jax.Array]], width: int) -> list[jax.Array]:
    out = []
    for r in rows:
        if r:
            out.append(jnp.stack(r))
        else:
            out.append(jnp.zeros((0, width), dtype=float_dtype()))
    return out


def run_lanes(block: Block, seqs: list[jax.Array]) -> list[jax.Array]:
    """Run ``block`` over a batch of input sequences with the lane protocol.

    :param Block block: Block to evaluate.
    :param list seqs: Input sequences, each [T, in_size] (T may be 0).
    :return list: Output sequences in lane order; empty inputs give [0, out] arrays.
    """
    lengths = np.array([int(s.shape[0]) for s in seqs], dtype=np.int64)
    rows: list[list[jax.Array]] = [[] for _ in seqs]
    width = 0
    states = None
    t = 0
    while True:
        lanes = active_lanes(lengths, t)
        if lanes.size == 0:
            break
        if states is None:
            states = block.start_state(len(lanes))
        out = block.batch(states, gather_step(seqs, lanes, t))
        width = int(out.outputs.shape[1])
        for j, lane in enumerate(lanes):
            rows[int(lane)].append(out.outputs[j])
        states = take_lanes(out.states, continuing(lengths, lanes, t))
        t += 1
    return stack_rows(rows, width)


class Runner:
    """Drives a block one timestep at a time for a single sequence."""

    def __init__(self, block: Block):
        self.block = block
        self._state: Any = None

    def reset(self) -> None:
        """Forget the carried state; the next step starts from the start state."""
        self._state = None

    def step_time(self, x: Any) -> jax.Array:
        """Feed one input vector and return the block's output vector."""
        if self._state is None:
            self._state = self.block.start_state(1)
        out = self.block.batch(self._state, as_vector(x)[None, :])
        self._state = out.states
        return out.outputs[0]

    def run_all(self, inputs: Iterable[Any]) -> list[jax.Array]:
        """Evaluate whole input sequences as one lane batch.

        Independent of (and does not touch) the state used by `step_time`.
        """
        return run_lanes(self.block, [as_steps(s) for s in inputs])


def total_cost(
    block: Block,
    cost_func: CostFunc,
    samples: Iterable[Sequence],
    batch_size: int = 32,
) -> float:
    """Summed cost of ``block`` over every timestep of every sample.

    :param int batch_size: Sequences evaluated per lane batch.
    :raises ValueError: If batch_size is not positive.
    """
    if batch_size < 1:
        raise ValueError(f"batch_size must be >= 1, got {batch_size}")
    samples = list(samples)
    total = 0.0
    for i in range(0, len(samples), batch_size):
        chunk = samples[i : i + batch_size]
        outputs = run_lanes(block, [s.inputs for s in chunk])
        for seq, actual in zip(chunk, outputs, strict=True):
            if len(seq):
                total += float(cost_func.total(actual, seq.outputs))
    logger.debug("total cost over %d samples: %.6g", len(samples), total)
    return total
