"""Recurrent state variants and lane bookkeeping.

A block's state for a timestep is a pytree whose leaves carry a leading *lane*
axis, one row per active sequence. There are exactly three variants:

- `VecState(vector)`: a plain ``[lanes, size]`` vector state.
- `VecRState(vector, r_vector)`: the same, plus its R-derivative.
- `CompositeState(parts)`: one sub-state per child block (parallel composition,
  or stacking over children whose states are not all vectors).

Gradients with respect to a state reuse the state's own structure: a `VecState`
holds the gradient, a `VecRState` holds gradient and R-gradient. ``None`` stands in
for an all-zero upstream gradient everywhere in this package.

Lane helpers (`take_lanes`, `scatter_lanes`) are tree maps over the lane axis, so
they work on every variant without inspecting it.
"""

from __future__ import annotations

from collections.abc import Iterable, Sequence
from typing import Any, Union

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np


class VecState(eqx.Module):
    """Vector-backed state (or state gradient), shape [lanes, size]."""

    vector: jax.Array


class VecRState(eqx.Module):
    """Vector-backed state with its R-derivative, both shape [lanes, size]."""

    vector: jax.Array
    r_vector: jax.Array


class CompositeState(eqx.Module):
    """A tuple of child states, one per sub-block."""

    parts: tuple[Any, ...]


State = Union[VecState, CompositeState]
RState = Union[VecRState, CompositeState]
StateGrad = State
RStateGrad = RState


def lane_count(state: Any) -> int:
    """Return the number of lanes in a state pytree.

    :param Any state: Any state variant.
    :raises ValueError: If the state has no array leaves.
    :return int: Size of the leading lane axis.
    """
    leaves = jax.tree_util.tree_leaves(state)
    if not leaves:
        raise ValueError("State has no array leaves; cannot infer lane count")
    return int(leaves[0].shape[0])


def check_lanes(state: Any, lanes: int) -> None:
    """Fail fast when a state batch does not have ``lanes`` rows.

    :param Any state: State pytree passed to a block.
    :param int lanes: Number of input lanes.
    :raises ValueError: If any leaf disagrees with the input lane count.
    """
    for leaf in jax.tree_util.tree_leaves(state):
        if leaf.ndim == 0 or int(leaf.shape[0]) != lanes:
            raise ValueError(
                f"Lane count mismatch: {lanes} input lanes but state leaf has shape {leaf.shape}"
            )


def take_lanes(state: Any, keep: np.ndarray) -> Any:
    """Select lanes (rows) from every leaf of a state pytree."""
    return jax.tree_util.tree_map(lambda x: x[keep], state)


def scatter_lanes(grad: Any, keep: np.ndarray, like: Any) -> Any:
    """Re-expand a lane-narrowed gradient onto a wider lane set.

    Lanes of ``like`` that are not listed in ``keep`` receive zeros: those
    sequences ended and no gradient flows back into their final state.

    :param Any grad: Gradient pytree with ``len(keep)`` lanes, or None.
    :param np.ndarray keep: Row positions in ``like`` that ``grad`` covers.
    :param Any like: Template pytree with the wider lane set.
    :return Any: Gradient pytree shaped like ``like`` (None if ``grad`` is None).
    """
    if grad is None:
        return None
    return jax.tree_util.tree_map(lambda z, g: jnp.zeros_like(z).at[keep].set(g), like, grad)


def zeros_like_state(state: Any) -> Any:
    return jax.tree_util.tree_map(jnp.zeros_like, state)


def add_states(a: Any, b: Any) -> Any:
    """Sum two state gradients, treating None as zero."""
    if a is None:
        return b
    if b is None:
        return a
    return jax.tree_util.tree_map(jnp.add, a, b)


def broadcast_vector(vector: jax.Array, lanes: int) -> jax.Array:
    """Repeat a single state vector across ``lanes`` rows."""
    return jnp.broadcast_to(vector, (lanes,) + tuple(vector.shape))


def pack_states(parts: Iterable[Any]) -> Any:
    """Join child states into one state.

    Vector states are concatenated along the feature axis; anything else is kept
    as a `CompositeState`.
    """
    parts = tuple(parts)
    if parts and all(isinstance(p, VecState) for p in parts):
        return VecState(jnp.concatenate([p.vector for p in parts], axis=-1))
    if parts and all(isinstance(p, VecRState) for p in parts):
        return VecRState(
            jnp.concatenate([p.vector for p in parts], axis=-1),
            jnp.concatenate([p.r_vector for p in parts], axis=-1),
        )
    return CompositeState(parts)


def _split_cols(x: jax.Array, sizes: Sequence[int]) -> list[jax.Array]:
    offsets = np.cumsum(sizes)[:-1].tolist()
    return jnp.split(x, offsets, axis=-1)


def split_state(state: Any, sizes: Sequence[int]) -> list[Any]:
    """Inverse of `pack_states`.

    :param Any state: Packed state (or state gradient), or None.
    :param sizes: State size of each child, in order.
    :raises ValueError: If the state does not match the child layout.
    :return list[Any]: One state per child (all None when ``state`` is None).
    """
    n = len(sizes)
    if state is None:
        return [None] * n
    if isinstance(state, VecState):
        width = int(state.vector.shape[-1])
        if width != sum(sizes):
            raise ValueError(f"State width {width} does not match child state sizes {list(sizes)}")
        return [VecState(v) for v in _split_cols(state.vector, sizes)]
    if isinstance(state, VecRState):
        width = int(state.vector.shape[-1])
        if width != sum(sizes):
            raise ValueError(f"State width {width} does not match child state sizes {list(sizes)}")
        return [
            VecRState(v, rv)
            for v, rv in zip(
                _split_cols(state.vector, sizes), _split_cols(state.r_vector, sizes), strict=True
            )
        ]
    if isinstance(state, CompositeState):
        if len(state.parts) != n:
            raise ValueError(f"Composite state has {len(state.parts)} parts, expected {n}")
        return list(state.parts)
    raise TypeError(f"Unknown state variant: {type(state).__name__}")


def split_rows(vector: jax.Array, width: int) -> jax.Array:
    """Reshape a flat vector into rows of ``width`` entries.

    :param jax.Array vector: Flat vector.
    :param int width: Row width.
    :raises ValueError: If the length is not a multiple of ``width``.
    :return jax.Array: Array of shape [len(vector) // width, width].
    """
    n = int(vector.shape[0])
    if width <= 0 or n % width != 0:
        raise ValueError(f"Vector of length {n} is not divisible into rows of width {width}")
    return vector.reshape(n // width, width)
