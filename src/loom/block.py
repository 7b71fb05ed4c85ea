"""The Block abstraction and its leaf implementation.

A Block maps (input, state) -> (output, new state) for a batch of lanes at once.
Blocks are immutable `eqx.Module`s: parameters are the inexact-array leaves and
nothing about a call is stored on the block itself, so the same block can be
driven from several worker threads as long as nobody swaps its parameters
mid-call.

Every forward call returns a result object whose backward callback turns upstream
gradients (on the outputs and on the new states) into:
- parameter gradients (a pytree in the block's parameter leaf order)
- gradients on the lane inputs
- gradients on the lane states that entered the call

The R variants carry a directional derivative along a parameter perturbation
``rv`` (a pytree shaped like the block's filtered parameters) next to every value
and every gradient. Backward R passes yield exact Hessian-vector products.

Leaf blocks delegate all differentiation to JAX:
- ``jax.vjp`` for the backward pass
- ``jax.jvp`` for R forward passes
- ``jax.jvp`` of the ``vjp`` pullback for R backward passes
"""

from __future__ import annotations

import abc
from collections.abc import Callable
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp

from loom.state import RState, State, VecRState, VecState, broadcast_vector, check_lanes
from loom.types import Backprop, RBackprop, float_dtype


def param_tree(module: Any) -> Any:
    """Return the parameter pytree of a module (inexact arrays, None elsewhere)."""
    return eqx.filter(module, eqx.is_inexact_array)


def zero_grads(module: Any) -> Any:
    """Return an all-zero gradient pytree for a module."""
    return jax.tree_util.tree_map(jnp.zeros_like, param_tree(module))


def rv_or_zeros(rv: Any, params: Any) -> Any:
    """Use ``rv`` as the tangent for ``params``, or zeros when rv is None."""
    if rv is None:
        return jax.tree_util.tree_map(jnp.zeros_like, params)
    return rv


def child_rv(rv: Any, name: str, index: int | None = None) -> Any:
    """Select the sub-tree of a perturbation vector that belongs to one child.

    :param Any rv: Perturbation pytree shaped like the parent's parameters, or None.
    :param str name: Field name holding the child (or tuple of children).
    :param int | None index: Position within a tuple field.
    :return Any: The child's perturbation, or None.
    """
    if rv is None:
        return None
    sub = getattr(rv, name)
    return sub if index is None else sub[index]


class BlockOutput(abc.ABC):
    """Result of `Block.batch`.

    :ivar outputs: Lane outputs, shape [lanes, out_size].
    :ivar states: New lane states.
    """

    outputs: jax.Array
    states: State

    @abc.abstractmethod
    def propagate(self, upstream: jax.Array | None, state_upstream: Any) -> Backprop:
        """Back-propagate upstream gradients through this call.

        :param upstream: Gradient on ``outputs`` (None means zero).
        :param state_upstream: Gradient on ``states`` (None means zero).
        :return Backprop: Parameter, input and incoming-state gradients.
        """


class BlockROutput(abc.ABC):
    """Result of `Block.batch_r`.

    :ivar outputs: Lane outputs.
    :ivar r_outputs: R-derivative of the outputs.
    :ivar states: New lane states as an R-state.
    """

    outputs: jax.Array
    r_outputs: jax.Array
    states: RState

    @abc.abstractmethod
    def propagate_r(
        self,
        upstream: jax.Array | None,
        r_upstream: jax.Array | None,
        state_upstream: Any,
    ) -> RBackprop:
        """Back-propagate gradients and their R-derivatives through this call.

        :param upstream: Gradient on ``outputs`` (None means zero).
        :param r_upstream: R-derivative of ``upstream`` (None means zero).
        :param state_upstream: R-state gradient on ``states`` (None means zero).
        :return RBackprop: Both channels for parameters, inputs and incoming states.
        """


class Block(eqx.Module):
    """A recurrent computation unit evaluated over a batch of lanes."""

    @abc.abstractmethod
    def state_size(self) -> int:
        """Return the number of state entries carried per lane."""

    @abc.abstractmethod
    def start_state(self, lanes: int) -> State:
        """Return the initial state for ``lanes`` lanes."""

    @abc.abstractmethod
    def start_r_state(self, rv: Any, lanes: int) -> RState:
        """Return the initial R-state for ``lanes`` lanes."""

    @abc.abstractmethod
    def propagate_start(self, upstream: Any) -> Any:
        """Back-propagate state gradients (summed over lanes) into the start state.

        :param upstream: State gradient for the lanes that began at the start state.
        :return Any: Parameter gradient pytree.
        """

    @abc.abstractmethod
    def propagate_start_r(self, rv: Any, upstream: Any) -> tuple[Any, Any]:
        """Like `propagate_start`, returning (grads, r_grads)."""

    @abc.abstractmethod
    def batch(self, states: State, inputs: jax.Array) -> BlockOutput:
        """Run one timestep for every lane.

        :param State states: Lane states (leading axis = lanes).
        :param jax.Array inputs: Lane inputs, shape [lanes, in_size].
        :return BlockOutput: Outputs, new states and the backward callback.
        """

    @abc.abstractmethod
    def batch_r(
        self, rv: Any, states: RState, inputs: jax.Array, r_inputs: jax.Array | None
    ) -> BlockROutput:
        """Like `batch`, carrying R-derivatives along ``rv``."""


# ------------------------------ Leaf blocks ------------------------------


def _lane_fn(static: Any) -> Callable[[Any, jax.Array, jax.Array], tuple[jax.Array, jax.Array]]:
    """Build ``(params, inputs, states) -> (outputs, new_states)`` over all lanes."""

    def apply(params: Any, inputs: jax.Array, states: jax.Array) -> tuple[jax.Array, jax.Array]:
        block = eqx.combine(params, static)
        return jax.vmap(block.cell)(inputs, states)

    return apply


def pullback(fn: Callable[..., Any]) -> Callable[..., Any]:
    """Turn ``fn`` into ``(*primals, cotangent) -> vjp`` so it can be pushed forward."""

    def pull(*args: Any) -> Any:
        *primals, cotangent = args
        _, vjp_fn = jax.vjp(fn, *primals)
        return vjp_fn(cotangent)

    return pull


def _zeros_or(x: jax.Array | None, like: jax.Array) -> jax.Array:
    return jnp.zeros_like(like) if x is None else x


class _LeafOutput(BlockOutput):
    def __init__(self, fn, params, inputs, states):
        self._fn = fn
        self._primals = (params, inputs, states)
        outputs, new_states = fn(params, inputs, states)
        self.outputs = outputs
        self.states = VecState(new_states)

    def propagate(self, upstream, state_upstream):
        _, vjp_fn = jax.vjp(self._fn, *self._primals)
        cot = (
            _zeros_or(upstream, self.outputs),
            _zeros_or(None if state_upstream is None else state_upstream.vector, self.states.vector),
        )
        grads, in_grads, state_grads = vjp_fn(cot)
        return Backprop(grads=grads, inputs=in_grads, states=VecState(state_grads))


class _LeafROutput(BlockROutput):
    def __init__(self, fn, primals, tangents):
        self._fn = fn
        self._primals = primals
        self._tangents = tangents
        (outputs, new_states), (r_outputs, r_new_states) = jax.jvp(fn, primals, tangents)
        self.outputs = outputs
        self.r_outputs = r_outputs
        self.states = VecRState(new_states, r_new_states)

    def propagate_r(self, upstream, r_upstream, state_upstream):
        if state_upstream is None:
            s_up, r_s_up = None, None
        else:
            s_up, r_s_up = state_upstream.vector, state_upstream.r_vector
        cot = (_zeros_or(upstream, self.outputs), _zeros_or(s_up, self.states.vector))
        r_cot = (_zeros_or(r_upstream, self.outputs), _zeros_or(r_s_up, self.states.vector))
        (grads, in_grads, state_grads), (r_grads, r_in_grads, r_state_grads) = jax.jvp(
            pullback(self._fn), self._primals + (cot,), self._tangents + (r_cot,)
        )
        return RBackprop(
            grads=grads,
            r_grads=r_grads,
            inputs=in_grads,
            r_inputs=r_in_grads,
            states=VecRState(state_grads, r_state_grads),
        )


class LeafBlock(Block):
    """A block defined by a single-lane cell function and a start vector.

    Subclasses implement `cell` (one lane, one timestep) and `start_vector`; the
    batching, vector-state handling and all derivatives come from here.
    """

    @abc.abstractmethod
    def cell(self, x: jax.Array, state: jax.Array) -> tuple[jax.Array, jax.Array]:
        """Map one lane's (input, state) to (output, new state)."""

    @abc.abstractmethod
    def start_vector(self) -> jax.Array:
        """Return the start state of a single lane."""

    def _start_fn(self, static: Any) -> Callable[[Any], jax.Array]:
        return lambda p: eqx.combine(p, static).start_vector()

    def start_state(self, lanes: int) -> VecState:
        return VecState(broadcast_vector(self.start_vector(), lanes))

    def start_r_state(self, rv: Any, lanes: int) -> VecRState:
        params, static = eqx.partition(self, eqx.is_inexact_array)
        vec, r_vec = jax.jvp(self._start_fn(static), (params,), (rv_or_zeros(rv, params),))
        return VecRState(broadcast_vector(vec, lanes), broadcast_vector(r_vec, lanes))

    def propagate_start(self, upstream: VecState) -> Any:
        params, static = eqx.partition(self, eqx.is_inexact_array)
        _, vjp_fn = jax.vjp(self._start_fn(static), params)
        (grads,) = vjp_fn(jnp.sum(upstream.vector, axis=0))
        return grads

    def propagate_start_r(self, rv: Any, upstream: VecRState) -> tuple[Any, Any]:
        params, static = eqx.partition(self, eqx.is_inexact_array)
        total = jnp.sum(upstream.vector, axis=0)
        r_total = jnp.sum(upstream.r_vector, axis=0)
        (grads,), (r_grads,) = jax.jvp(
            pullback(self._start_fn(static)),
            (params, total),
            (rv_or_zeros(rv, params), r_total),
        )
        return grads, r_grads

    def batch(self, states: State, inputs: jax.Array) -> BlockOutput:
        if not isinstance(states, VecState):
            raise TypeError(f"{type(self).__name__} expects VecState, got {type(states).__name__}")
        check_lanes(states, int(inputs.shape[0]))
        params, static = eqx.partition(self, eqx.is_inexact_array)
        return _LeafOutput(_lane_fn(static), params, inputs, states.vector)

    def batch_r(
        self, rv: Any, states: RState, inputs: jax.Array, r_inputs: jax.Array | None
    ) -> BlockROutput:
        if not isinstance(states, VecRState):
            raise TypeError(f"{type(self).__name__} expects VecRState, got {type(states).__name__}")
        check_lanes(states, int(inputs.shape[0]))
        params, static = eqx.partition(self, eqx.is_inexact_array)
        primals = (params, inputs, states.vector)
        tangents = (rv_or_zeros(rv, params), _zeros_or(r_inputs, inputs), states.r_vector)
        return _LeafROutput(_lane_fn(static), primals, tangents)


class FuncBlock(LeafBlock):
    """Leaf block around a vector function of ``[input, state]``.

    ``f`` maps the concatenation of one lane's input and state to the concatenation
    of its output and new state. The last ``state_size`` entries of the result are
    the new state; everything before them is the output.

    The start state is the trainable ``start`` vector when given, zeros otherwise.
    """

    f: Callable[[jax.Array], jax.Array]
    n_state: int = eqx.field(static=True)
    start: jax.Array | None

    def __init__(
        self,
        f: Callable[[jax.Array], jax.Array],
        state_size: int,
        start: jax.Array | None = None,
    ):
        """Wrap ``f`` as a block.

        :param f: Vector function (typically an eqx module) of ``[input, state]``.
        :param int state_size: Number of state entries per lane.
        :param start: Optional trainable start vector of length ``state_size``.
        :raises ValueError: If state_size is negative or start has the wrong shape.
        """
        if state_size < 0:
            raise ValueError(f"state_size must be >= 0, got {state_size}")
        if start is not None:
            start = jnp.asarray(start, dtype=float_dtype())
            if start.shape != (state_size,):
                raise ValueError(f"start must have shape ({state_size},), got {start.shape}")
        self.f = f
        self.n_state = state_size
        self.start = start

    def state_size(self) -> int:
        return self.n_state

    def start_vector(self) -> jax.Array:
        if self.start is None:
            return jnp.zeros((self.n_state,), dtype=float_dtype())
        return self.start

    def cell(self, x: jax.Array, state: jax.Array) -> tuple[jax.Array, jax.Array]:
        out = self.f(jnp.concatenate([x, state]))
        split = out.shape[0] - self.n_state
        if split < 0:
            raise ValueError(
                f"FuncBlock function produced {out.shape[0]} values, fewer than state_size={self.n_state}"
            )
        return out[:split], out[split:]
