"""Sequence-to-sequence functions built on top of blocks.

A `SeqFunc` maps a list of input sequences (each a ``[T, width]`` array, T may
differ per sequence and may be 0) to a list of output sequences of the same
lengths. Unlike a `Block` it carries no state between calls, which makes it easy
to compose: run one function over whole sequences, then feed the results into the
next one (`ComposedSeqFunc`), or read the sequences in both directions
(`Bidirectional`).

Backward passes return parameter gradients as a flat list of leaves in the
function's parameter order (the order of ``eqx.filter(func, eqx.is_inexact_array)``),
which is what `Gradient.accumulate` consumes.
"""

from __future__ import annotations

import abc
from collections.abc import Callable, Iterable
from dataclasses import dataclass
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np

from loom.block import Block, child_rv, param_tree, pullback, rv_or_zeros
from loom.bptt import Gradienter
from loom.gradient import Gradient, RGradient
from loom.runner import stack_rows
from loom.seqprop import active_lanes, continuing, gather_step
from loom.state import scatter_lanes, split_rows, take_lanes
from loom.types import Sequence


@dataclass(frozen=True)
class SeqBackprop:
    """Parameter gradients (flat leaf list) and per-sequence input gradients."""

    grads: list[jax.Array]
    inputs: list[jax.Array]


@dataclass(frozen=True)
class SeqRBackprop:
    grads: list[jax.Array]
    r_grads: list[jax.Array]
    inputs: list[jax.Array]
    r_inputs: list[jax.Array]


class SeqResult(abc.ABC):
    """Output sequences of a `SeqFunc` call plus the way back."""

    outputs: list[jax.Array]

    @abc.abstractmethod
    def propagate(self, upstream: list[jax.Array | None]) -> SeqBackprop:
        """Back-propagate per-sequence output gradients (None entries mean zero)."""


class SeqRResult(abc.ABC):
    outputs: list[jax.Array]
    r_outputs: list[jax.Array]

    @abc.abstractmethod
    def propagate_r(
        self, upstream: list[jax.Array | None], r_upstream: list[jax.Array | None] | None
    ) -> SeqRBackprop:
        """Back-propagate gradients and their R-derivatives."""


class SeqFunc(eqx.Module):
    """A differentiable function from sequences to sequences."""

    @abc.abstractmethod
    def apply_seqs(self, seqs: list[jax.Array]) -> SeqResult:
        """Evaluate the function on a batch of input sequences."""

    @abc.abstractmethod
    def apply_seqs_r(
        self, rv: Any, seqs: list[jax.Array], r_seqs: list[jax.Array] | None = None
    ) -> SeqRResult:
        """Evaluate with R-derivatives along ``rv`` (``r_seqs`` None means zero)."""


# ------------------------------ helpers ------------------------------


def _leaves(tree: Any) -> list[jax.Array]:
    return jax.tree_util.tree_leaves(tree)


def _zero_leaves(module: Any) -> list[jax.Array]:
    return [jnp.zeros_like(x) for x in _leaves(param_tree(module))]


def _add_leaves(acc: list[jax.Array], tree: Any) -> list[jax.Array]:
    leaves = _leaves(tree)
    if len(leaves) != len(acc):
        raise ValueError(f"Gradient has {len(leaves)} leaves, expected {len(acc)}")
    return [a + b for a, b in zip(acc, leaves, strict=True)]


def _fill(upstream: list[jax.Array | None] | None, like: list[jax.Array]) -> list[jax.Array]:
    """Replace missing upstream gradients with zeros shaped like the outputs."""
    if upstream is None:
        return [jnp.zeros_like(x) for x in like]
    if len(upstream) != len(like):
        raise ValueError(f"Got upstream for {len(upstream)} sequences, expected {len(like)}")
    return [jnp.zeros_like(x) if u is None else u for u, x in zip(upstream, like, strict=True)]


def _lengths(seqs: list[jax.Array]) -> np.ndarray:
    return np.array([int(s.shape[0]) for s in seqs], dtype=np.int64)


def _reverse(seqs: list[jax.Array]) -> list[jax.Array]:
    return [s[::-1] for s in seqs]


# ------------------------------ BlockSeqFunc ------------------------------


class _BlockPass:
    """Lane-protocol forward pass that keeps every timestep for the backward pass."""

    def __init__(self, block: Block, seqs: list[jax.Array], rv: Any = None, r_seqs=None, r=False):
        self.block = block
        self.rv = rv
        self.r = r
        self.seqs = seqs
        self.lengths = _lengths(seqs)
        self.steps: list[tuple[np.ndarray, np.ndarray, Any]] = []
        rows: list[list[jax.Array]] = [[] for _ in seqs]
        r_rows: list[list[jax.Array]] = [[] for _ in seqs]
        width = 0
        states = None
        t = 0
        while True:
            lanes = active_lanes(self.lengths, t)
            if lanes.size == 0:
                break
            inputs = gather_step(seqs, lanes, t)
            if r:
                if states is None:
                    states = block.start_r_state(rv, len(lanes))
                r_inputs = None if r_seqs is None else gather_step(r_seqs, lanes, t)
                out = block.batch_r(rv, states, inputs, r_inputs)
            else:
                if states is None:
                    states = block.start_state(len(lanes))
                out = block.batch(states, inputs)
            keep = continuing(self.lengths, lanes, t)
            self.steps.append((lanes, keep, out))
            width = int(out.outputs.shape[1])
            for j, lane in enumerate(lanes):
                rows[int(lane)].append(out.outputs[j])
                if r:
                    r_rows[int(lane)].append(out.r_outputs[j])
            states = take_lanes(out.states, keep)
            t += 1
        self.outputs = stack_rows(rows, width)
        self.r_outputs = stack_rows(r_rows, width) if r else None

    def _input_grads(self, rows: list[list[Any]]) -> list[jax.Array]:
        return [
            jnp.stack(r) if r else jnp.zeros_like(s) for r, s in zip(rows, self.seqs, strict=True)
        ]

    def backward(self, upstream, r_upstream=None):
        block = self.block
        upstream = _fill(upstream, self.outputs)
        if self.r:
            r_upstream = _fill(r_upstream, self.outputs)
        grads = _zero_leaves(block)
        r_grads = _zero_leaves(block) if self.r else None
        in_rows: list[list[Any]] = [[None] * int(n) for n in self.lengths]
        r_in_rows: list[list[Any]] = [[None] * int(n) for n in self.lengths]
        state_up = None
        for t in range(len(self.steps) - 1, -1, -1):
            lanes, _, out = self.steps[t]
            up = gather_step(upstream, lanes, t)
            if self.r:
                bp = out.propagate_r(up, gather_step(r_upstream, lanes, t), state_up)
                r_grads = _add_leaves(r_grads, bp.r_grads)
            else:
                bp = out.propagate(up, state_up)
            grads = _add_leaves(grads, bp.grads)
            for j, lane in enumerate(lanes):
                in_rows[int(lane)][t] = bp.inputs[j]
                if self.r:
                    r_in_rows[int(lane)][t] = bp.r_inputs[j]
            if t == 0:
                if self.r:
                    start_g, start_rg = block.propagate_start_r(self.rv, bp.states)
                    grads = _add_leaves(grads, start_g)
                    r_grads = _add_leaves(r_grads, start_rg)
                else:
                    grads = _add_leaves(grads, block.propagate_start(bp.states))
            else:
                _, prev_keep, prev_out = self.steps[t - 1]
                state_up = scatter_lanes(bp.states, prev_keep, prev_out.states)
        if self.r:
            return SeqRBackprop(
                grads=grads,
                r_grads=r_grads,
                inputs=self._input_grads(in_rows),
                r_inputs=self._input_grads(r_in_rows),
            )
        return SeqBackprop(grads=grads, inputs=self._input_grads(in_rows))


class _BlockSeqResult(SeqResult):
    def __init__(self, run: _BlockPass):
        self._run = run
        self.outputs = run.outputs

    def propagate(self, upstream):
        return self._run.backward(upstream)


class _BlockSeqRResult(SeqRResult):
    def __init__(self, run: _BlockPass):
        self._run = run
        self.outputs = run.outputs
        self.r_outputs = run.r_outputs

    def propagate_r(self, upstream, r_upstream):
        return self._run.backward(upstream, r_upstream)


class BlockSeqFunc(SeqFunc):
    """Runs a block over each sequence from its start state."""

    block: Block

    def apply_seqs(self, seqs):
        return _BlockSeqResult(_BlockPass(self.block, list(seqs)))

    def apply_seqs_r(self, rv, seqs, r_seqs=None):
        run = _BlockPass(self.block, list(seqs), rv=child_rv(rv, "block"), r_seqs=r_seqs, r=True)
        return _BlockSeqRResult(run)


# ------------------------------ MapSeqFunc ------------------------------


def _map_fn(static: Any) -> Callable[[Any, jax.Array], jax.Array]:
    def apply(params: Any, rows: jax.Array) -> jax.Array:
        return jax.vmap(eqx.combine(params, static))(rows)

    return apply


def _split_like(flat: jax.Array, lengths: np.ndarray) -> list[jax.Array]:
    """Undo the row concatenation of the non-empty sequences."""
    chunks = iter(jnp.split(flat, np.cumsum(lengths[lengths > 0])[:-1].tolist()))
    return [next(chunks) if n > 0 else None for n in lengths]


class _MapPass:
    def __init__(self, f: Any, seqs: list[jax.Array], rv: Any = None, r_seqs=None, r=False):
        self.r = r
        self.seqs = seqs
        self.lengths = _lengths(seqs)
        self.params, static = eqx.partition(f, eqx.is_inexact_array)
        self.fn = _map_fn(static)
        self.empty = not np.any(self.lengths > 0)
        if self.empty:
            self.outputs = [jnp.zeros((0, 0), dtype=s.dtype) for s in seqs]
            self.r_outputs = list(self.outputs) if r else None
            return
        self.flat = self._concat(seqs)
        if r:
            self.tangents = (
                rv_or_zeros(rv, self.params),
                jnp.zeros_like(self.flat) if r_seqs is None else self._concat(r_seqs),
            )
            flat_out, r_flat_out = jax.jvp(self.fn, (self.params, self.flat), self.tangents)
            self.r_outputs = self._unconcat(r_flat_out)
        else:
            flat_out = self.fn(self.params, self.flat)
            self.r_outputs = None
        self.outputs = self._unconcat(flat_out)

    def _concat(self, seqs: list[jax.Array]) -> jax.Array:
        return jnp.concatenate([s for s, n in zip(seqs, self.lengths, strict=True) if n > 0])

    def _unconcat(self, flat: jax.Array) -> list[jax.Array]:
        width = int(flat.shape[1])
        parts = _split_like(flat, self.lengths)
        return [jnp.zeros((0, width), dtype=flat.dtype) if p is None else p for p in parts]

    def _in_grads(self, flat: jax.Array) -> list[jax.Array]:
        parts = _split_like(flat, self.lengths)
        return [jnp.zeros_like(s) if p is None else p for p, s in zip(parts, self.seqs, strict=True)]

    def backward(self, upstream, r_upstream=None):
        zero = _leaves(jax.tree_util.tree_map(jnp.zeros_like, self.params))
        if self.empty:
            ins = [jnp.zeros_like(s) for s in self.seqs]
            if self.r:
                return SeqRBackprop(grads=zero, r_grads=list(zero), inputs=ins, r_inputs=list(ins))
            return SeqBackprop(grads=zero, inputs=ins)
        cot = self._concat(_fill(upstream, self.outputs))
        if self.r:
            r_cot = self._concat(_fill(r_upstream, self.outputs))
            (g_p, g_x), (rg_p, rg_x) = jax.jvp(
                pullback(self.fn), (self.params, self.flat, cot), self.tangents + (r_cot,)
            )
            return SeqRBackprop(
                grads=_add_leaves(zero, g_p),
                r_grads=_add_leaves(list(zero), rg_p),
                inputs=self._in_grads(g_x),
                r_inputs=self._in_grads(rg_x),
            )
        _, vjp_fn = jax.vjp(self.fn, self.params, self.flat)
        g_p, g_x = vjp_fn(cot)
        return SeqBackprop(grads=_add_leaves(zero, g_p), inputs=self._in_grads(g_x))


class _MapResult(SeqResult):
    def __init__(self, run: _MapPass):
        self._run = run
        self.outputs = run.outputs

    def propagate(self, upstream):
        return self._run.backward(upstream)


class _MapRResult(SeqRResult):
    def __init__(self, run: _MapPass):
        self._run = run
        self.outputs = run.outputs
        self.r_outputs = run.r_outputs

    def propagate_r(self, upstream, r_upstream):
        return self._run.backward(upstream, r_upstream)


class MapSeqFunc(SeqFunc):
    """Applies a vector function independently at every timestep.

    ``f`` is typically an eqx module such as ``eqx.nn.Linear`` or an
    ``eqx.nn.Sequential``; every timestep of every sequence is pushed through it
    as one batch.
    """

    f: Callable[[jax.Array], jax.Array]

    def apply_seqs(self, seqs):
        return _MapResult(_MapPass(self.f, list(seqs)))

    def apply_seqs_r(self, rv, seqs, r_seqs=None):
        return _MapRResult(_MapPass(self.f, list(seqs), rv=child_rv(rv, "f"), r_seqs=r_seqs, r=True))


# ------------------------------ composition ------------------------------


class _ComposedResult(SeqResult):
    def __init__(self, results: list[SeqResult]):
        self._results = results
        self.outputs = results[-1].outputs

    def propagate(self, upstream):
        grads: list[list[jax.Array]] = []
        for res in reversed(self._results):
            bp = res.propagate(upstream)
            grads.append(bp.grads)
            upstream = bp.inputs
        return SeqBackprop(grads=[g for part in reversed(grads) for g in part], inputs=upstream)


class _ComposedRResult(SeqRResult):
    def __init__(self, results: list[SeqRResult]):
        self._results = results
        self.outputs = results[-1].outputs
        self.r_outputs = results[-1].r_outputs

    def propagate_r(self, upstream, r_upstream):
        grads: list[list[jax.Array]] = []
        r_grads: list[list[jax.Array]] = []
        for res in reversed(self._results):
            bp = res.propagate_r(upstream, r_upstream)
            grads.append(bp.grads)
            r_grads.append(bp.r_grads)
            upstream, r_upstream = bp.inputs, bp.r_inputs
        return SeqRBackprop(
            grads=[g for part in reversed(grads) for g in part],
            r_grads=[g for part in reversed(r_grads) for g in part],
            inputs=upstream,
            r_inputs=r_upstream,
        )


class ComposedSeqFunc(SeqFunc):
    """Feeds each function's output sequences into the next one."""

    funcs: tuple[SeqFunc, ...]

    def __init__(self, funcs: Iterable[SeqFunc]):
        """:raises ValueError: If ``funcs`` is empty."""
        funcs = tuple(funcs)
        if not funcs:
            raise ValueError("ComposedSeqFunc needs at least one function")
        self.funcs = funcs

    def apply_seqs(self, seqs):
        results = []
        seqs = list(seqs)
        for f in self.funcs:
            res = f.apply_seqs(seqs)
            results.append(res)
            seqs = res.outputs
        return _ComposedResult(results)

    def apply_seqs_r(self, rv, seqs, r_seqs=None):
        results = []
        seqs = list(seqs)
        for i, f in enumerate(self.funcs):
            res = f.apply_seqs_r(child_rv(rv, "funcs", i), seqs, r_seqs)
            results.append(res)
            seqs, r_seqs = res.outputs, res.r_outputs
        return _ComposedRResult(results)


def _concat_inner(a: list[jax.Array], b: list[jax.Array]) -> list[jax.Array]:
    return [jnp.concatenate([x, y], axis=1) for x, y in zip(a, b, strict=True)]


def _split_inner(grads: list[jax.Array], widths: list[int]) -> tuple[list[jax.Array], list[jax.Array]]:
    return [g[:, :w] for g, w in zip(grads, widths, strict=True)], [
        g[:, w:] for g, w in zip(grads, widths, strict=True)
    ]


class _BidirectionalResult(SeqResult):
    def __init__(self, fwd: SeqResult, bwd: SeqResult, out: SeqResult):
        self._fwd, self._bwd, self._out = fwd, bwd, out
        self.outputs = out.outputs

    def propagate(self, upstream):
        out_bp = self._out.propagate(upstream)
        widths = [int(x.shape[1]) for x in self._fwd.outputs]
        up_f, up_b = _split_inner(out_bp.inputs, widths)
        fwd_bp = self._fwd.propagate(up_f)
        bwd_bp = self._bwd.propagate(_reverse(up_b))
        inputs = [f + b for f, b in zip(fwd_bp.inputs, _reverse(bwd_bp.inputs), strict=True)]
        return SeqBackprop(grads=fwd_bp.grads + bwd_bp.grads + out_bp.grads, inputs=inputs)


class _BidirectionalRResult(SeqRResult):
    def __init__(self, fwd: SeqRResult, bwd: SeqRResult, out: SeqRResult):
        self._fwd, self._bwd, self._out = fwd, bwd, out
        self.outputs = out.outputs
        self.r_outputs = out.r_outputs

    def propagate_r(self, upstream, r_upstream):
        out_bp = self._out.propagate_r(upstream, r_upstream)
        widths = [int(x.shape[1]) for x in self._fwd.outputs]
        up_f, up_b = _split_inner(out_bp.inputs, widths)
        r_up_f, r_up_b = _split_inner(out_bp.r_inputs, widths)
        fwd_bp = self._fwd.propagate_r(up_f, r_up_f)
        bwd_bp = self._bwd.propagate_r(_reverse(up_b), _reverse(r_up_b))
        return SeqRBackprop(
            grads=fwd_bp.grads + bwd_bp.grads + out_bp.grads,
            r_grads=fwd_bp.r_grads + bwd_bp.r_grads + out_bp.r_grads,
            inputs=[f + b for f, b in zip(fwd_bp.inputs, _reverse(bwd_bp.inputs), strict=True)],
            r_inputs=[
                f + b for f, b in zip(fwd_bp.r_inputs, _reverse(bwd_bp.r_inputs), strict=True)
            ],
        )


class Bidirectional(SeqFunc):
    """Reads sequences forwards and backwards, then combines both readings.

    ``backward`` sees every sequence reversed; its outputs are reversed back so that
    timestep ``t`` of both readings line up. ``output`` receives
    ``[forward_t, backward_t]`` at every timestep.
    """

    forward: SeqFunc
    backward: SeqFunc
    output: SeqFunc

    def apply_seqs(self, seqs):
        seqs = list(seqs)
        fwd = self.forward.apply_seqs(seqs)
        bwd = self.backward.apply_seqs(_reverse(seqs))
        out = self.output.apply_seqs(_concat_inner(fwd.outputs, _reverse(bwd.outputs)))
        return _BidirectionalResult(fwd, bwd, out)

    def apply_seqs_r(self, rv, seqs, r_seqs=None):
        seqs = list(seqs)
        r_rev = None if r_seqs is None else _reverse(r_seqs)
        fwd = self.forward.apply_seqs_r(child_rv(rv, "forward"), seqs, r_seqs)
        bwd = self.backward.apply_seqs_r(child_rv(rv, "backward"), _reverse(seqs), r_rev)
        out = self.output.apply_seqs_r(
            child_rv(rv, "output"),
            _concat_inner(fwd.outputs, _reverse(bwd.outputs)),
            _concat_inner(fwd.r_outputs, _reverse(bwd.r_outputs)),
        )
        return _BidirectionalRResult(fwd, bwd, out)


# ------------------------------ adapters ------------------------------


class SeqFuncFunc(eqx.Module):
    """Exposes a `SeqFunc` as a plain vector function.

    The input vector holds one or more sequences back to back, each timestep
    ``in_size`` entries wide; the result is the output sequences flattened the same
    way. The whole forward pass is traced by JAX, so the result can be differentiated
    like any other jax function.
    """

    seq_func: SeqFunc
    in_size: int = eqx.field(static=True)

    def __call__(self, x: jax.Array) -> jax.Array:
        return self.batch(x, 1)

    def batch(self, x: jax.Array, n: int) -> jax.Array:
        """Treat ``x`` as ``n`` equally long sequences.

        :raises ValueError: If ``x`` does not split into ``n`` sequences of whole timesteps.
        """
        rows = split_rows(x, self.in_size)
        if n < 1 or rows.shape[0] % n != 0:
            raise ValueError(f"{rows.shape[0]} timesteps do not split into {n} sequences")
        seqs = jnp.split(rows, n) if rows.shape[0] else [rows] * n
        outputs = self.seq_func.apply_seqs(list(seqs)).outputs
        return jnp.concatenate([o.reshape(-1) for o in outputs])


@dataclass
class SeqFuncGradienter(Gradienter):
    """Gradients of a cost summed over every timestep of a `SeqFunc`'s outputs.

    ``learner`` is the `SeqFunc`; the sharding, pooling and threading are the same as
    for `BPTT`.
    """

    def _upstream(self, res: Any, seqs: list[Sequence]):
        return [
            self.cost_func.gradient(out, s.outputs) if len(s) else None
            for out, s in zip(res.outputs, seqs, strict=True)
        ]

    def _run_batch(self, seqs: list[Sequence], grad: Gradient) -> None:
        res = self.learner.apply_seqs([s.inputs for s in seqs])
        grad.accumulate(res.propagate(self._upstream(res, seqs)).grads)

    def _run_batch_r(self, rv: Any, seqs: list[Sequence], grad: Gradient, r_grad: RGradient) -> None:
        res = self.learner.apply_seqs_r(rv, [s.inputs for s in seqs])
        upstream, r_upstream = [], []
        for out, r_out, s in zip(res.outputs, res.r_outputs, seqs, strict=True):
            if len(s):
                u, ru = self.cost_func.gradient_r(out, r_out, s.outputs)
            else:
                u = ru = None
            upstream.append(u)
            r_upstream.append(ru)
        bp = res.propagate_r(upstream, r_upstream)
        grad.accumulate(bp.grads)
        r_grad.accumulate(bp.r_grads)

