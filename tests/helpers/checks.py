"""Reference gradients for checking the engine.

Two independent references:
- `jax.grad` through a plain forward pass (exact, cheap)
- centered finite differences over every parameter component (slow, numeric)
"""

from __future__ import annotations

from collections.abc import Callable
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
from jax.flatten_util import ravel_pytree

from loom.cost import CostFunc
from loom.runner import run_lanes
from loom.types import Sequence

FD_EPS = 1e-5


def block_cost(block: Any, cost_func: CostFunc, samples: list[Sequence]) -> jax.Array:
    """Summed cost of a block over every timestep, traceable by JAX."""
    outputs = run_lanes(block, [s.inputs for s in samples])
    total = jnp.zeros(())
    for out, s in zip(outputs, samples, strict=True):
        if len(s):
            total = total + cost_func.total(out, s.outputs)
    return total


def seq_func_cost(func: Any, cost_func: CostFunc, samples: list[Sequence]) -> jax.Array:
    """Summed cost of a seq func over every timestep, traceable by JAX."""
    outputs = func.apply_seqs([s.inputs for s in samples]).outputs
    total = jnp.zeros(())
    for out, s in zip(outputs, samples, strict=True):
        if len(s):
            total = total + cost_func.total(out, s.outputs)
    return total


def flat_loss(
    learner: Any, loss: Callable[[Any], jax.Array]
) -> tuple[jax.Array, Callable[[jax.Array], jax.Array]]:
    """Return the flat parameter vector of ``learner`` and a jitted loss over it."""
    params, static = eqx.partition(learner, eqx.is_inexact_array)
    x0, unravel = ravel_pytree(params)

    @jax.jit
    def f(x: jax.Array) -> jax.Array:
        return loss(eqx.combine(unravel(x), static))

    return x0, f


def flat(tree: Any) -> np.ndarray:
    """Concatenate every leaf of a pytree (or list of leaves) in flattening order."""
    leaves = jax.tree_util.tree_leaves(tree)
    if not leaves:
        return np.zeros((0,))
    return np.concatenate([np.ravel(np.asarray(x)) for x in leaves])


def exact_grad(learner: Any, loss: Callable[[Any], jax.Array]) -> np.ndarray:
    """Flat gradient of ``loss`` at ``learner`` via `jax.grad`."""
    x0, f = flat_loss(learner, loss)
    return np.asarray(jax.grad(f)(x0))


def exact_r_grad(learner: Any, loss: Callable[[Any], jax.Array], rv: Any) -> np.ndarray:
    """Flat Hessian-vector product of ``loss`` along ``rv``."""
    x0, f = flat_loss(learner, loss)
    r, _ = ravel_pytree(rv)
    _, hvp = jax.jvp(jax.grad(f), (x0,), (r,))
    return np.asarray(hvp)


def finite_diff_grad(learner: Any, loss: Callable[[Any], jax.Array], eps: float = FD_EPS) -> np.ndarray:
    """Centered finite-difference gradient over every parameter component."""
    x0, f = flat_loss(learner, loss)
    x0 = np.asarray(x0)
    out = np.zeros_like(x0)
    for i in range(x0.size):
        step = np.zeros_like(x0)
        step[i] = eps
        out[i] = (float(f(jnp.asarray(x0 + step))) - float(f(jnp.asarray(x0 - step)))) / (2 * eps)
    return out


def finite_diff_r_grad(
    learner: Any, loss: Callable[[Any], jax.Array], rv: Any, eps: float = FD_EPS
) -> np.ndarray:
    """Centered finite difference of the gradient along ``rv``."""
    x0, f = flat_loss(learner, loss)
    r, _ = ravel_pytree(rv)
    grad = jax.jit(jax.grad(f))
    return (np.asarray(grad(x0 + eps * r)) - np.asarray(grad(x0 - eps * r))) / (2 * eps)
