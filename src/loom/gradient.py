"""Parameter arena, gradient accumulators and the gradient pool.

Parameters are addressed by stable integer *handles*: handle ``i`` is the i-th
leaf of ``eqx.filter(learner, eqx.is_inexact_array)``. The arena records the shape
of every handle once; accumulators are one numpy buffer per handle.

Rules:
1) Accumulators are never resized. Only zeroing and in-place addition happen after
   allocation.
2) A pooled accumulator has exactly one owner between checkout and return.
   `GradientPool.borrow()` is the scoped way to do that: the buffer goes back to
   the pool on every exit path.
3) The free list is only touched by the coordinating thread.
"""

from __future__ import annotations

import contextlib
from collections.abc import Iterator
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np


class ParamArena:
    """Handle table for a learner's parameters."""

    def __init__(self, learner: Any):
        """Index the parameters of ``learner``.

        :param Any learner: Any module (block or seq func).
        """
        params = eqx.filter(learner, eqx.is_inexact_array)
        with_path, self.treedef = jax.tree_util.tree_flatten_with_path(params)
        self.paths = tuple(jax.tree_util.keystr(path) for path, _ in with_path)
        self.shapes = tuple(tuple(leaf.shape) for _, leaf in with_path)
        self.dtypes = tuple(np.dtype(leaf.dtype) for _, leaf in with_path)

    def __len__(self) -> int:
        return len(self.shapes)

    def matches(self, learner: Any) -> bool:
        """Return True if ``learner`` has the same parameter layout."""
        leaves = jax.tree_util.tree_leaves(eqx.filter(learner, eqx.is_inexact_array))
        return tuple(tuple(x.shape) for x in leaves) == self.shapes

    def check(self, learner: Any) -> None:
        """Fail fast if ``learner`` no longer matches this arena.

        :raises ValueError: If the parameter layout changed.
        """
        if not self.matches(learner):
            raise ValueError(
                "Learner parameter layout changed since the gradient arena was built; "
                "create a new gradienter for the new learner"
            )

    def unflatten(self, leaves: list[Any]) -> Any:
        """Rebuild a parameter-shaped pytree from per-handle leaves."""
        return jax.tree_util.tree_unflatten(self.treedef, leaves)


class Gradient:
    """Accumulator with one zero-initialized buffer per parameter handle."""

    def __init__(self, arena: ParamArena):
        self.arena = arena
        self.buffers = [np.zeros(shape, dtype=dtype) for shape, dtype in zip(arena.shapes, arena.dtypes, strict=True)]

    def __len__(self) -> int:
        return len(self.buffers)

    def __getitem__(self, handle: int) -> np.ndarray:
        return self.buffers[handle]

    def zero(self) -> None:
        for buf in self.buffers:
            buf.fill(0)

    def accumulate(self, tree: Any) -> None:
        """Add a parameter-shaped pytree of contributions.

        :param Any tree: Pytree whose leaves follow the arena's handle order, or None.
        :raises ValueError: If the leaf count or any leaf shape disagrees with the arena.
        """
        if tree is None:
            return
        leaves = jax.tree_util.tree_leaves(tree)
        if len(leaves) != len(self.buffers):
            raise ValueError(
                f"Gradient contribution has {len(leaves)} leaves, arena has {len(self.buffers)}"
            )
        for handle, (buf, leaf) in enumerate(zip(self.buffers, leaves, strict=True)):
            if tuple(leaf.shape) != buf.shape:
                raise ValueError(
                    f"Gradient leaf {self.arena.paths[handle]} has shape {tuple(leaf.shape)}, "
                    f"expected {buf.shape}"
                )
            buf += np.asarray(leaf)

    def add(self, other: Gradient) -> None:
        """Add another accumulator over the same arena in place."""
        if other.arena is not self.arena:
            raise ValueError("Cannot add gradients from different parameter arenas")
        for buf, o in zip(self.buffers, other.buffers, strict=True):
            buf += o

    def scale(self, s: float) -> None:
        for buf in self.buffers:
            buf *= s

    def flatten(self) -> np.ndarray:
        """Concatenate every buffer into one flat vector (handle order)."""
        if not self.buffers:
            return np.zeros((0,))
        return np.concatenate([buf.ravel() for buf in self.buffers])

    def to_tree(self) -> Any:
        """Return the accumulated gradient as a parameter-shaped pytree of jax arrays."""
        return self.arena.unflatten([jnp.asarray(buf) for buf in self.buffers])

    def items(self) -> Iterator[tuple[str, np.ndarray]]:
        """Yield ``(parameter path, buffer)`` pairs in handle order."""
        yield from zip(self.arena.paths, self.buffers, strict=True)


class RGradient(Gradient):
    """Accumulator for R-gradients (directional derivatives of the gradient)."""


class GradientPool:
    """Free list of zeroed accumulators for one parameter arena."""

    def __init__(self, arena: ParamArena):
        self.arena = arena
        self._free: list[Gradient] = []
        self._free_r: list[RGradient] = []
        self._outstanding: set[int] = set()

    def _checkout(self, free: list[Any], cls: type[Gradient]) -> Any:
        if free:
            g = free.pop()
            g.zero()
        else:
            g = cls(self.arena)
        self._outstanding.add(id(g))
        return g

    def alloc(self) -> Gradient:
        """Check out a zeroed `Gradient`."""
        return self._checkout(self._free, Gradient)

    def alloc_r(self) -> RGradient:
        """Check out a zeroed `RGradient`."""
        return self._checkout(self._free_r, RGradient)

    def free(self, g: Gradient) -> None:
        """Return an accumulator to the pool.

        :raises ValueError: If ``g`` was not checked out from this pool.
        """
        if id(g) not in self._outstanding:
            raise ValueError("Gradient was not checked out from this pool (double free?)")
        self._outstanding.discard(id(g))
        if isinstance(g, RGradient):
            self._free_r.append(g)
        else:
            self._free.append(g)

    @property
    def outstanding(self) -> int:
        """Number of accumulators currently checked out."""
        return len(self._outstanding)

    @contextlib.contextmanager
    def borrow(self) -> Iterator[Gradient]:
        """Scoped checkout of a `Gradient`."""
        g = self.alloc()
        try:
            yield g
        finally:
            self.free(g)

    @contextlib.contextmanager
    def borrow_r(self) -> Iterator[RGradient]:
        """Scoped checkout of an `RGradient`."""
        g = self.alloc_r()
        try:
            yield g
        finally:
            self.free(g)


def zero_rvector(learner: Any) -> Any:
    """Return an all-zero perturbation vector for ``learner``."""
    return jax.tree_util.tree_map(jnp.zeros_like, eqx.filter(learner, eqx.is_inexact_array))


def random_rvector(learner: Any, key: jax.Array, *, scale: float = 1.0) -> Any:
    """Return a Gaussian perturbation vector shaped like the learner's parameters.

    :param Any learner: Block or seq func.
    :param jax.Array key: PRNG key.
    :param float scale: Standard deviation of every entry.
    :return Any: Parameter-shaped pytree.
    """
    leaves, treedef = jax.tree_util.tree_flatten(eqx.filter(learner, eqx.is_inexact_array))
    keys = jax.random.split(key, max(len(leaves), 1))
    noise = [scale * jax.random.normal(k, x.shape, x.dtype) for k, x in zip(keys, leaves, strict=False)]
    return jax.tree_util.tree_unflatten(treedef, noise)
