"""Gradienters: full BPTT, truncated BPTT and recursive full BPTT.

All three share the same shape:

    gradienter.gradient(samples) -> Gradient
    gradienter.r_gradient(rv, samples) -> (Gradient, RGradient)

Samples are sorted longest-first, split into sub-batches of at most ``max_lanes``
sequences and spread over ``max_workers`` threads by a `GradHelper`. Gradients are
sums over samples (no averaging).

``learner`` may be replaced between calls (e.g. after an optimizer step) as long as
its parameter layout stays the same. Results are owned by the gradienter's pool and
stay valid until the next call.
"""

from __future__ import annotations

import abc
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

import numpy as np

from loom.cost import CostFunc
from loom.grad_helper import GradHelper
from loom.gradient import Gradient, ParamArena, RGradient
from loom.seqprop import SeqProp, SeqRProp, active_lanes, continuing, gather_step
from loom.state import scatter_lanes, take_lanes
from loom.types import Sequence


def sort_seqs(samples: Iterable[Sequence]) -> list[Sequence]:
    """Order samples longest-first so sub-batches hold similar lengths."""
    return sorted(samples, key=len, reverse=True)


@dataclass
class Gradienter(abc.ABC):
    """Shared plumbing: sample sorting, the lazily built `GradHelper`, arena checks."""

    learner: Any
    cost_func: CostFunc
    max_lanes: int = 0
    max_workers: int = 0
    _helper: GradHelper | None = field(default=None, init=False, repr=False)

    def _grad_helper(self) -> GradHelper:
        if self._helper is None:
            self._helper = GradHelper(
                ParamArena(self.learner),
                self._run_batch,
                self._run_batch_r,
                max_concurrency=self.max_workers,
                max_sub_batch=self.max_lanes,
            )
        else:
            self._helper.arena.check(self.learner)
            self._helper.max_concurrency = self.max_workers
            self._helper.max_sub_batch = self.max_lanes
        return self._helper

    def gradient(self, samples: Iterable[Sequence]) -> Gradient:
        """Summed cost gradient over ``samples``."""
        return self._grad_helper().gradient(sort_seqs(samples))

    def r_gradient(self, rv: Any, samples: Iterable[Sequence]) -> tuple[Gradient, RGradient]:
        """Summed gradient and its R-derivative along ``rv`` over ``samples``."""
        return self._grad_helper().r_gradient(rv, sort_seqs(samples))

    @abc.abstractmethod
    def _run_batch(self, seqs: list[Sequence], grad: Gradient) -> None:
        """Add the summed gradient of one sub-batch into ``grad``."""

    @abc.abstractmethod
    def _run_batch_r(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient) -> None:
        """Add one sub-batch's gradient and R-gradient into ``grad`` and ``r_grad``."""


@dataclass
class BPTT(Gradienter):
    """Full back-propagation through time over every timestep."""

    def _run_batch(self, seqs: list[Sequence], grad: Gradient) -> None:
        prop = SeqProp(self.learner, self.cost_func, seqs)
        prop.run()
        prop.back_propagate(grad, len(prop), 0)

    def _run_batch_r(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient) -> None:
        prop = SeqRProp(self.learner, self.cost_func, seqs, rv)
        prop.run()
        prop.back_propagate_r(grad, r_grad, len(prop), 0)


@dataclass
class TruncatedBPTT(Gradienter):
    """BPTT over sliding windows.

    Sequences are cut into chunks of ``head_size`` timesteps. Each chunk's output
    gradients are propagated back through the chunk and ``tail_size`` older
    timesteps, then memory is trimmed to the newest ``tail_size`` timesteps. State
    keeps flowing forward across chunks.

    For classic truncated BPTT use ``head_size=1`` and ``tail_size=k``.
    """

    head_size: int = 1
    tail_size: int = 0

    def __post_init__(self) -> None:
        if self.head_size < 1:
            raise ValueError(f"head_size must be >= 1, got {self.head_size}")
        if self.tail_size < 0:
            raise ValueError(f"tail_size must be >= 0, got {self.tail_size}")

    def _run_batch(self, seqs: list[Sequence], grad: Gradient) -> None:
        prop = SeqProp(self.learner, self.cost_func, seqs)
        head = 0
        while prop.time_step():
            head += 1
            if head == self.head_size:
                prop.back_propagate(grad, head, self.tail_size)
                head = 0
                prop.truncate(self.tail_size)
        prop.back_propagate(grad, head, self.tail_size)

    def _run_batch_r(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient) -> None:
        prop = SeqRProp(self.learner, self.cost_func, seqs, rv)
        head = 0
        while prop.time_step():
            head += 1
            if head == self.head_size:
                prop.back_propagate_r(grad, r_grad, head, self.tail_size)
                head = 0
                prop.truncate(self.tail_size)
        prop.back_propagate_r(grad, r_grad, head, self.tail_size)


@dataclass
class FullRGradienter(Gradienter):
    """Full BPTT computed recursively, one timestep per stack frame.

    Produces the same gradients as `BPTT` without an explicit memory list. Recursion
    depth equals the longest sequence, so keep sequences well under the interpreter
    recursion limit.
    """

    def _run_batch(self, seqs: list[Sequence], grad: Gradient) -> None:
        self._run(None, seqs, grad, None)

    def _run_batch_r(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient) -> None:
        self._run(rv, seqs, grad, r_grad)

    def _run(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient | None) -> None:
        seqs = [s for s in seqs if len(s) > 0]
        if not seqs:
            return
        lengths = np.array([len(s) for s in seqs], dtype=np.int64)
        lanes = active_lanes(lengths, 0)
        block = self.learner
        if r_grad is None:
            start = block.start_state(len(lanes))
        else:
            start = block.start_r_state(rv, len(lanes))
        down = self._step(rv, seqs, lengths, lanes, 0, start, grad, r_grad)
        if r_grad is None:
            grad.accumulate(block.propagate_start(down))
        else:
            start_g, start_rg = block.propagate_start_r(rv, down)
            grad.accumulate(start_g)
            r_grad.accumulate(start_rg)

    def _step(
        self,
        rv: Any,
        seqs: list[Sequence],
        lengths: np.ndarray,
        lanes: np.ndarray,
        t: int,
        states: Any,
        grad: Gradient,
        r_grad: RGradient | None,
    ) -> Any:
        block = self.learner
        inputs = gather_step([s.inputs for s in seqs], lanes, t)
        expected = gather_step([s.outputs for s in seqs], lanes, t)
        keep = continuing(lengths, lanes, t)

        if r_grad is None:
            out = block.batch(states, inputs)
        else:
            out = block.batch_r(rv, states, inputs, None)

        state_up = None
        if keep.size:
            later = self._step(
                rv, seqs, lengths, lanes[keep], t + 1, take_lanes(out.states, keep), grad, r_grad
            )
            state_up = scatter_lanes(later, keep, out.states)

        if r_grad is None:
            bp = out.propagate(self.cost_func.gradient(out.outputs, expected), state_up)
            grad.accumulate(bp.grads)
            return bp.states

        upstream, r_upstream = self.cost_func.gradient_r(out.outputs, out.r_outputs, expected)
        rbp = out.propagate_r(upstream, r_upstream, state_up)
        grad.accumulate(rbp.grads)
        r_grad.accumulate(rbp.r_grads)
        return rbp.states
