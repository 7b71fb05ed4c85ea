"""Pytree helpers for blocks, gradients and perturbation vectors.

Keep it minimal: this is not a generic library.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp


def param_count(module: Any) -> int:
    """Count the scalar parameters of a block or seq func.

    :param Any module: Any pytree; only inexact array leaves are counted.
    :return int: Total number of scalar parameters.
    """
    leaves = jax.tree_util.tree_leaves(eqx.filter(module, eqx.is_inexact_array))
    return sum(int(x.size) for x in leaves)


def tree_allclose(a: Any, b: Any, *, rtol: float = 1e-6, atol: float = 1e-6) -> bool:
    """Tree-wise allclose for arrays.

    :param Any a: First pytree.
    :param Any b: Second pytree.
    :param float rtol: Relative tolerance.
    :param float atol: Absolute tolerance.
    :return bool: True if both trees have the same leaf shapes and all leaves are close.
    """
    la = jax.tree_util.tree_leaves(a)
    lb = jax.tree_util.tree_leaves(b)
    if len(la) != len(lb):
        return False
    for xa, xb in zip(la, lb, strict=True):
        if jnp.shape(xa) != jnp.shape(xb):
            return False
        if not jnp.allclose(xa, xb, rtol=rtol, atol=atol):
            return False
    return True


def max_abs_diff(a: Any, b: Any) -> float:
    """Largest absolute elementwise difference between two trees of equal layout.

    :raises ValueError: If the trees have different leaf counts or shapes.
    """
    la = jax.tree_util.tree_leaves(a)
    lb = jax.tree_util.tree_leaves(b)
    if len(la) != len(lb):
        raise ValueError(f"Trees have {len(la)} and {len(lb)} leaves")
    worst = 0.0
    for xa, xb in zip(la, lb, strict=True):
        if jnp.shape(xa) != jnp.shape(xb):
            raise ValueError(f"Leaf shapes differ: {jnp.shape(xa)} vs {jnp.shape(xb)}")
        if jnp.size(xa):
            worst = max(worst, float(jnp.max(jnp.abs(jnp.asarray(xa) - jnp.asarray(xb)))))
    return worst


@dataclass(frozen=True)
class TensorStats:
    """Statistics for a single tensor (shape, dtype, mean, std, min, max)."""

    shape: tuple[int, ...]
    dtype: str
    mean: float
    std: float
    min: float
    max: float


def sample_tensor_stats(module: Any, *, max_tensors: int = 8) -> list[TensorStats]:
    """Sample a few parameter tensors and compute simple stats.

    This catches obviously broken initialization (all-zeros, NaNs, infs) early.

    :param Any module: Block or any pytree of parameters.
    :param int max_tensors: Maximum number of tensors to sample.
    :return list[TensorStats]: Statistics for sampled tensors.
    """
    leaves = jax.tree_util.tree_leaves(eqx.filter(module, eqx.is_inexact_array))
    out: list[TensorStats] = []
    for x in leaves[:max_tensors]:
        if x.size == 0:
            continue
        xf = x.astype(jnp.float32)
        out.append(
            TensorStats(
                shape=tuple(x.shape),
                dtype=str(x.dtype),
                mean=float(jnp.mean(xf)),
                std=float(jnp.std(xf)),
                min=float(jnp.min(xf)),
                max=float(jnp.max(xf)),
            )
        )
    return out
