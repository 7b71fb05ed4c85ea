"""Composition operators over blocks.

- `StackedBlock`: depth-wise stacking; each child reads the previous child's output.
- `ParallelBlock`: every child reads the same input; outputs are concatenated.
- `StateOutBlock`: exposes a wrapped block's state as its output.

Parameter gradients of a composite are tuples of the children's gradients, which
flatten to the same leaf order as the composite's own parameters.
"""

from __future__ import annotations

from typing import Any

import jax
import jax.numpy as jnp
import numpy as np

from loom.block import Block, BlockOutput, BlockROutput, child_rv
from loom.state import (
    CompositeState,
    VecRState,
    VecState,
    add_states,
    pack_states,
    split_state,
)
from loom.types import Backprop, RBackprop


def _require_blocks(name: str, blocks: Any) -> tuple[Block, ...]:
    blocks = tuple(blocks)
    if not blocks:
        raise ValueError(f"{name} requires at least one sub-block")
    return blocks


def _add_arrays(a: jax.Array | None, b: jax.Array | None) -> jax.Array | None:
    if a is None:
        return b
    if b is None:
        return a
    return a + b


# ------------------------------ Stacking ---------------------------------


class _StackedOutput(BlockOutput):
    def __init__(self, outs: list[BlockOutput], sizes: list[int]):
        self._outs = outs
        self._sizes = sizes
        self.outputs = outs[-1].outputs
        self.states = pack_states(o.states for o in outs)

    def propagate(self, upstream, state_upstream):
        state_parts = split_state(state_upstream, self._sizes)
        n = len(self._outs)
        grads: list[Any] = [None] * n
        downstream: list[Any] = [None] * n
        for i in reversed(range(n)):
            bp = self._outs[i].propagate(upstream, state_parts[i])
            grads[i] = bp.grads
            downstream[i] = bp.states
            upstream = bp.inputs
        return Backprop(grads=tuple(grads), inputs=upstream, states=pack_states(downstream))


class _StackedROutput(BlockROutput):
    def __init__(self, outs: list[BlockROutput], sizes: list[int]):
        self._outs = outs
        self._sizes = sizes
        self.outputs = outs[-1].outputs
        self.r_outputs = outs[-1].r_outputs
        self.states = pack_states(o.states for o in outs)

    def propagate_r(self, upstream, r_upstream, state_upstream):
        state_parts = split_state(state_upstream, self._sizes)
        n = len(self._outs)
        grads: list[Any] = [None] * n
        r_grads: list[Any] = [None] * n
        downstream: list[Any] = [None] * n
        for i in reversed(range(n)):
            bp = self._outs[i].propagate_r(upstream, r_upstream, state_parts[i])
            grads[i], r_grads[i], downstream[i] = bp.grads, bp.r_grads, bp.states
            upstream, r_upstream = bp.inputs, bp.r_inputs
        return RBackprop(
            grads=tuple(grads),
            r_grads=tuple(r_grads),
            inputs=upstream,
            r_inputs=r_upstream,
            states=pack_states(downstream),
        )


class StackedBlock(Block):
    """Blocks applied one after another within a single timestep.

    The state is the concatenation of the children's states (a `CompositeState`
    when some child does not use vector states).
    """

    blocks: tuple[Block, ...]

    def __init__(self, blocks: Any):
        """Stack ``blocks`` bottom to top.

        :raises ValueError: If ``blocks`` is empty.
        """
        self.blocks = _require_blocks("StackedBlock", blocks)

    def _sizes(self) -> list[int]:
        return [b.state_size() for b in self.blocks]

    def state_size(self) -> int:
        return sum(self._sizes())

    def start_state(self, lanes: int) -> Any:
        return pack_states(b.start_state(lanes) for b in self.blocks)

    def start_r_state(self, rv: Any, lanes: int) -> Any:
        return pack_states(
            b.start_r_state(child_rv(rv, "blocks", i), lanes) for i, b in enumerate(self.blocks)
        )

    def propagate_start(self, upstream: Any) -> Any:
        parts = split_state(upstream, self._sizes())
        return tuple(b.propagate_start(p) for b, p in zip(self.blocks, parts, strict=True))

    def propagate_start_r(self, rv: Any, upstream: Any) -> tuple[Any, Any]:
        parts = split_state(upstream, self._sizes())
        pairs = [
            b.propagate_start_r(child_rv(rv, "blocks", i), p)
            for i, (b, p) in enumerate(zip(self.blocks, parts, strict=True))
        ]
        return tuple(g for g, _ in pairs), tuple(rg for _, rg in pairs)

    def batch(self, states: Any, inputs: jax.Array) -> BlockOutput:
        sizes = self._sizes()
        outs: list[BlockOutput] = []
        x = inputs
        for block, state in zip(self.blocks, split_state(states, sizes), strict=True):
            out = block.batch(state, x)
            outs.append(out)
            x = out.outputs
        return _StackedOutput(outs, sizes)

    def batch_r(self, rv: Any, states: Any, inputs: jax.Array, r_inputs: jax.Array | None) -> BlockROutput:
        sizes = self._sizes()
        outs: list[BlockROutput] = []
        x, r_x = inputs, r_inputs
        for i, (block, state) in enumerate(zip(self.blocks, split_state(states, sizes), strict=True)):
            out = block.batch_r(child_rv(rv, "blocks", i), state, x, r_x)
            outs.append(out)
            x, r_x = out.outputs, out.r_outputs
        return _StackedROutput(outs, sizes)


# ------------------------------ Parallel ---------------------------------


def _split_upstream(upstream: jax.Array | None, widths: list[int]) -> list[jax.Array | None]:
    if upstream is None:
        return [None] * len(widths)
    if int(upstream.shape[-1]) != sum(widths):
        raise ValueError(
            f"Upstream width {upstream.shape[-1]} does not match parallel outputs {widths}"
        )
    return jnp.split(upstream, np.cumsum(widths)[:-1].tolist(), axis=-1)


def _composite_parts(state: Any, n: int) -> list[Any]:
    if state is None:
        return [None] * n
    if not isinstance(state, CompositeState):
        raise TypeError(f"ParallelBlock expects CompositeState, got {type(state).__name__}")
    if len(state.parts) != n:
        raise ValueError(f"Composite state has {len(state.parts)} parts, expected {n}")
    return list(state.parts)


class _ParallelOutput(BlockOutput):
    def __init__(self, outs: list[BlockOutput]):
        self._outs = outs
        self._widths = [int(o.outputs.shape[-1]) for o in outs]
        self.outputs = jnp.concatenate([o.outputs for o in outs], axis=-1)
        self.states = CompositeState(tuple(o.states for o in outs))

    def propagate(self, upstream, state_upstream):
        ups = _split_upstream(upstream, self._widths)
        state_parts = _composite_parts(state_upstream, len(self._outs))
        grads, downstream = [], []
        in_grads = None
        for out, up, s_up in zip(self._outs, ups, state_parts, strict=True):
            bp = out.propagate(up, s_up)
            grads.append(bp.grads)
            downstream.append(bp.states)
            in_grads = _add_arrays(in_grads, bp.inputs)
        return Backprop(
            grads=tuple(grads), inputs=in_grads, states=CompositeState(tuple(downstream))
        )


class _ParallelROutput(BlockROutput):
    def __init__(self, outs: list[BlockROutput]):
        self._outs = outs
        self._widths = [int(o.outputs.shape[-1]) for o in outs]
        self.outputs = jnp.concatenate([o.outputs for o in outs], axis=-1)
        self.r_outputs = jnp.concatenate([o.r_outputs for o in outs], axis=-1)
        self.states = CompositeState(tuple(o.states for o in outs))

    def propagate_r(self, upstream, r_upstream, state_upstream):
        ups = _split_upstream(upstream, self._widths)
        r_ups = _split_upstream(r_upstream, self._widths)
        state_parts = _composite_parts(state_upstream, len(self._outs))
        grads, r_grads, downstream = [], [], []
        in_grads = r_in_grads = None
        for out, up, r_up, s_up in zip(self._outs, ups, r_ups, state_parts, strict=True):
            bp = out.propagate_r(up, r_up, s_up)
            grads.append(bp.grads)
            r_grads.append(bp.r_grads)
            downstream.append(bp.states)
            in_grads = _add_arrays(in_grads, bp.inputs)
            r_in_grads = _add_arrays(r_in_grads, bp.r_inputs)
        return RBackprop(
            grads=tuple(grads),
            r_grads=tuple(r_grads),
            inputs=in_grads,
            r_inputs=r_in_grads,
            states=CompositeState(tuple(downstream)),
        )


class ParallelBlock(Block):
    """Blocks fed the same input, with outputs concatenated in child order.

    The state is always a `CompositeState` with one part per child.
    """

    blocks: tuple[Block, ...]

    def __init__(self, blocks: Any):
        """Run ``blocks`` side by side.

        :raises ValueError: If ``blocks`` is empty.
        """
        self.blocks = _require_blocks("ParallelBlock", blocks)

    def state_size(self) -> int:
        return sum(b.state_size() for b in self.blocks)

    def start_state(self, lanes: int) -> CompositeState:
        return CompositeState(tuple(b.start_state(lanes) for b in self.blocks))

    def start_r_state(self, rv: Any, lanes: int) -> CompositeState:
        return CompositeState(
            tuple(b.start_r_state(child_rv(rv, "blocks", i), lanes) for i, b in enumerate(self.blocks))
        )

    def propagate_start(self, upstream: Any) -> Any:
        parts = _composite_parts(upstream, len(self.blocks))
        return tuple(b.propagate_start(p) for b, p in zip(self.blocks, parts, strict=True))

    def propagate_start_r(self, rv: Any, upstream: Any) -> tuple[Any, Any]:
        parts = _composite_parts(upstream, len(self.blocks))
        pairs = [
            b.propagate_start_r(child_rv(rv, "blocks", i), p)
            for i, (b, p) in enumerate(zip(self.blocks, parts, strict=True))
        ]
        return tuple(g for g, _ in pairs), tuple(rg for _, rg in pairs)

    def batch(self, states: Any, inputs: jax.Array) -> BlockOutput:
        parts = _composite_parts(states, len(self.blocks))
        return _ParallelOutput([b.batch(s, inputs) for b, s in zip(self.blocks, parts, strict=True)])

    def batch_r(self, rv: Any, states: Any, inputs: jax.Array, r_inputs: jax.Array | None) -> BlockROutput:
        parts = _composite_parts(states, len(self.blocks))
        return _ParallelROutput(
            [
                b.batch_r(child_rv(rv, "blocks", i), s, inputs, r_inputs)
                for i, (b, s) in enumerate(zip(self.blocks, parts, strict=True))
            ]
        )


# ------------------------------ State out --------------------------------


def _state_vector(states: Any) -> jax.Array:
    if not isinstance(states, VecState):
        raise TypeError(f"StateOutBlock requires a vector state, got {type(states).__name__}")
    return states.vector


class _StateOutOutput(BlockOutput):
    def __init__(self, inner: BlockOutput):
        self._inner = inner
        self.outputs = _state_vector(inner.states)
        self.states = inner.states

    def propagate(self, upstream, state_upstream):
        merged = upstream
        if state_upstream is not None:
            merged = _add_arrays(merged, state_upstream.vector)
        return self._inner.propagate(None, None if merged is None else VecState(merged))


class _StateOutROutput(BlockROutput):
    def __init__(self, inner: BlockROutput):
        if not isinstance(inner.states, VecRState):
            raise TypeError(
                f"StateOutBlock requires a vector R-state, got {type(inner.states).__name__}"
            )
        self._inner = inner
        self.outputs = inner.states.vector
        self.r_outputs = inner.states.r_vector
        self.states = inner.states

    def propagate_r(self, upstream, r_upstream, state_upstream):
        out_up = None
        if upstream is not None or r_upstream is not None:
            out_up = VecRState(
                upstream if upstream is not None else jnp.zeros_like(self.outputs),
                r_upstream if r_upstream is not None else jnp.zeros_like(self.outputs),
            )
        return self._inner.propagate_r(None, None, add_states(out_up, state_upstream))


class StateOutBlock(Block):
    """Reports the wrapped block's new state as the output.

    The wrapped block's own output is discarded. Gradients on the output are added
    to the gradient on the wrapped block's new state.
    """

    block: Block

    def state_size(self) -> int:
        return self.block.state_size()

    def start_state(self, lanes: int) -> Any:
        return self.block.start_state(lanes)

    def start_r_state(self, rv: Any, lanes: int) -> Any:
        return self.block.start_r_state(child_rv(rv, "block"), lanes)

    def propagate_start(self, upstream: Any) -> Any:
        return self.block.propagate_start(upstream)

    def propagate_start_r(self, rv: Any, upstream: Any) -> tuple[Any, Any]:
        return self.block.propagate_start_r(child_rv(rv, "block"), upstream)

    def batch(self, states: Any, inputs: jax.Array) -> BlockOutput:
        return _StateOutOutput(self.block.batch(states, inputs))

    def batch_r(self, rv: Any, states: Any, inputs: jax.Array, r_inputs: jax.Array | None) -> BlockROutput:
        return _StateOutROutput(self.block.batch_r(child_rv(rv, "block"), states, inputs, r_inputs))
