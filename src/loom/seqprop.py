"""Forward memory for back-propagation through time.

`SeqProp` drives a block over a batch of variable-length sequences one timestep at
a time (the lane protocol) and remembers what it needs to run backward:

- lane ``l`` takes part in timestep ``t`` iff ``len(seqs[l]) > t``
- the state entering timestep ``t`` is the start state when ``t == 0``, else the
  lane's state from timestep ``t - 1``
- once a lane drops out it never comes back

Backward passes walk the memory newest-first. State gradients handed to an older
timestep are re-expanded onto that timestep's (wider) lane set with zeros for the
lanes that ended there. The start state receives the state gradient of timestep 0.

`SeqRProp` is the same machine with R-derivatives carried in lockstep.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from loom.block import Block, BlockROutput
from loom.cost import CostFunc
from loom.gradient import Gradient, RGradient
from loom.state import scatter_lanes, take_lanes
from loom.types import Sequence


def active_lanes(lengths: np.ndarray, t: int) -> np.ndarray:
    """Indices of the lanes whose sequence has a timestep ``t``."""
    return np.nonzero(lengths > t)[0]


def continuing(lengths: np.ndarray, lanes: np.ndarray, t: int) -> np.ndarray:
    """Positions within ``lanes`` whose sequence continues past timestep ``t``."""
    return np.nonzero(lengths[lanes] > t + 1)[0]


def gather_step(steps: list[jax.Array], lanes: np.ndarray, t: int) -> jax.Array:
    """Stack timestep ``t`` of the selected sequences into a [lanes, width] batch."""
    return jnp.stack([steps[int(lane)][t] for lane in lanes])


@dataclass
class PropStep:
    """What one forward timestep leaves behind for the backward pass."""

    t: int
    lanes: np.ndarray
    keep: np.ndarray
    expected: jax.Array
    output: Any


class SeqProp:
    """Forward memory for ordinary gradients."""

    def __init__(self, block: Block, cost_func: CostFunc, seqs: Iterable[Sequence]):
        self.block = block
        self.cost_func = cost_func
        self.seqs = [s for s in seqs if len(s) > 0]
        self.lengths = np.array([len(s) for s in self.seqs], dtype=np.int64)
        self.memory: list[PropStep] = []
        self.t = 0
        self._last: PropStep | None = None

    def __len__(self) -> int:
        return len(self.memory)

    def _start(self, lanes: int) -> Any:
        return self.block.start_state(lanes)

    def _run_block(self, states: Any, inputs: jax.Array) -> Any:
        return self.block.batch(states, inputs)

    def time_step(self) -> bool:
        """Run the block on every active lane for the next timestep.

        :return bool: False (and no work done) once every sequence has ended.
        """
        lanes = active_lanes(self.lengths, self.t)
        if lanes.size == 0:
            return False
        if self._last is None:
            states = self._start(len(lanes))
        else:
            states = take_lanes(self._last.output.states, self._last.keep)
        inputs = gather_step([s.inputs for s in self.seqs], lanes, self.t)
        expected = gather_step([s.outputs for s in self.seqs], lanes, self.t)
        output = self._run_block(states, inputs)
        step = PropStep(
            t=self.t,
            lanes=lanes,
            keep=continuing(self.lengths, lanes, self.t),
            expected=expected,
            output=output,
        )
        self.memory.append(step)
        self._last = step
        self.t += 1
        return True

    def run(self) -> None:
        """Step until every sequence has ended."""
        while self.time_step():
            pass

    def truncate(self, n: int) -> None:
        """Forget all but the newest ``n`` timesteps. Carried states are kept."""
        if len(self.memory) > n:
            self.memory = self.memory[len(self.memory) - n :] if n > 0 else []

    def _window(self, head_size: int, tail_size: int) -> tuple[int, int]:
        n = len(self.memory)
        return n - (head_size + tail_size), n - head_size

    def back_propagate(self, grad: Gradient, head_size: int, tail_size: int) -> None:
        """Accumulate parameter gradients from the newest timesteps.

        Output gradients are taken for the newest ``head_size`` timesteps; state
        gradients flow ``tail_size`` timesteps further back.

        :param Gradient grad: Accumulator (learner-shaped).
        :param int head_size: Timesteps whose outputs contribute cost.
        :param int tail_size: Extra older timesteps to propagate state through.
        """
        if head_size == 0 or not self.memory:
            return
        low_idx, low_head = self._window(head_size, tail_size)
        state_up = None
        for i in range(len(self.memory) - 1, max(low_idx, 0) - 1, -1):
            step = self.memory[i]
            upstream = None
            if i >= low_head:
                upstream = self.cost_func.gradient(step.output.outputs, step.expected)
            bp: Any = step.output.propagate(upstream, state_up)
            grad.accumulate(bp.grads)
            if step.t == 0:
                grad.accumulate(self.block.propagate_start(bp.states))
            if i > low_idx and i > 0:
                prev = self.memory[i - 1]
                state_up = scatter_lanes(bp.states, prev.keep, prev.output.states)


class SeqRProp(SeqProp):
    """Forward memory carrying R-derivatives along ``rv``."""

    def __init__(self, block: Block, cost_func: CostFunc, seqs: Iterable[Sequence], rv: Any):
        super().__init__(block, cost_func, seqs)
        self.rv = rv

    def _start(self, lanes: int) -> Any:
        return self.block.start_r_state(self.rv, lanes)

    def _run_block(self, states: Any, inputs: jax.Array) -> BlockROutput:
        return self.block.batch_r(self.rv, states, inputs, None)

    def back_propagate_r(
        self, grad: Gradient, r_grad: RGradient, head_size: int, tail_size: int
    ) -> None:
        """Like `back_propagate`, also accumulating R-gradients into ``r_grad``."""
        if head_size == 0 or not self.memory:
            return
        low_idx, low_head = self._window(head_size, tail_size)
        state_up = None
        for i in range(len(self.memory) - 1, max(low_idx, 0) - 1, -1):
            step = self.memory[i]
            out: BlockROutput = step.output
            upstream = r_upstream = None
            if i >= low_head:
                upstream, r_upstream = self.cost_func.gradient_r(out.outputs, out.r_outputs, step.expected)
            bp = out.propagate_r(upstream, r_upstream, state_up)
            grad.accumulate(bp.grads)
            r_grad.accumulate(bp.r_grads)
            if step.t == 0:
                start_g, start_rg = self.block.propagate_start_r(self.rv, bp.states)
                grad.accumulate(start_g)
                r_grad.accumulate(start_rg)
            if i > low_idx and i > 0:
                prev = self.memory[i - 1]
                state_up = scatter_lanes(bp.states, prev.keep, prev.output.states)
