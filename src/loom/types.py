"""Core pytrees and shared types.

Keep this file small: it defines the **runtime contracts** between subsystems.

- `Sequence` is one training sample: aligned input/target timesteps.
- `Backprop` / `RBackprop` are what a block's backward callback hands back.

**Sequence contract**

  inputs:  [T, in_size]
  outputs: [T, out_size]

T may be zero. Empty sequences are legal samples; they contribute nothing and are
filtered out before any lane is assigned.

**Backprop contract**

`grads` is a pytree whose leaves follow the block's parameter order
(`eqx.filter(block, eqx.is_inexact_array)` flattening order). Composite blocks return
tuples of their children's grads, which flatten to the same leaf order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import equinox as eqx
import jax
import jax.numpy as jnp

from loom.state import RStateGrad, StateGrad


def float_dtype() -> Any:
    """Return the default floating dtype (float64 when x64 is enabled)."""
    return jnp.result_type(float)


def as_steps(x: Any) -> jax.Array:
    """Convert an array-like of timesteps into a float ``[T, width]`` array.

    :param Any x: Nested list or array of shape [T, width]; an empty list is [0, 0].
    :raises ValueError: If the result is not two-dimensional.
    :return jax.Array: Floating array of timesteps.
    """
    arr = jnp.asarray(x)
    if arr.ndim == 1 and arr.size == 0:
        arr = arr.reshape(0, 0)
    if arr.ndim != 2:
        raise ValueError(f"Expected a [T, width] array of timesteps, got shape {arr.shape}")
    if not jnp.issubdtype(arr.dtype, jnp.inexact):
        arr = arr.astype(float_dtype())
    return arr


def as_vector(x: Any) -> jax.Array:
    """Convert an array-like into a floating 1-D vector."""
    arr = jnp.asarray(x)
    if arr.ndim != 1:
        raise ValueError(f"Expected a vector, got shape {arr.shape}")
    if not jnp.issubdtype(arr.dtype, jnp.inexact):
        arr = arr.astype(float_dtype())
    return arr


class Sequence(eqx.Module):
    """A training sample: input timesteps and the desired output at each timestep."""

    inputs: jax.Array
    outputs: jax.Array

    def __init__(self, inputs: Any, outputs: Any):
        """Build a sequence from array-likes.

        :param Any inputs: Input timesteps, shape [T, in_size].
        :param Any outputs: Target timesteps, shape [T, out_size].
        :raises ValueError: If the timestep counts differ.
        """
        inputs = as_steps(inputs)
        outputs = as_steps(outputs)
        if inputs.shape[0] != outputs.shape[0]:
            raise ValueError(
                f"Sequence has {inputs.shape[0]} inputs but {outputs.shape[0]} outputs"
            )
        self.inputs = inputs
        self.outputs = outputs

    def __len__(self) -> int:
        return int(self.inputs.shape[0])


@dataclass(frozen=True)
class Backprop:
    """Result of back-propagating one block call.

    `inputs` is the gradient with respect to the lane inputs, `states` the gradient
    with respect to the lane states that entered the call.
    """

    grads: Any
    inputs: jax.Array
    states: StateGrad


@dataclass(frozen=True)
class RBackprop:
    """Like `Backprop`, with R-derivatives carried alongside every gradient."""

    grads: Any
    r_grads: Any
    inputs: jax.Array
    r_inputs: jax.Array
    states: RStateGrad
