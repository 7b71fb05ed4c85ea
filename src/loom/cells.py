"""Gated and identity recurrent cells.

Each cell is a `LeafBlock`: it only defines the single-lane step and the start
vector. Gates are plain `eqx.nn.Linear` layers over concatenated inputs.
"""

from __future__ import annotations

import math

import equinox as eqx
import jax
import jax.numpy as jnp

from loom.block import LeafBlock
from loom.types import float_dtype

INITIAL_REMEMBER_BIAS = 1.0


class LSTM(LeafBlock):
    """Long short-term memory cell.

    State per lane is ``[cell, output]`` (2 * hidden_size entries). The input,
    input-gate and remember-gate layers read ``[x, cell, last_output]``; the output
    gate reads ``[x, new_cell, last_output]``. The start state is trainable.
    """

    input_value: eqx.nn.Linear
    input_gate: eqx.nn.Linear
    remember_gate: eqx.nn.Linear
    output_gate: eqx.nn.Linear
    init_state: jax.Array
    hidden_size: int = eqx.field(static=True)

    def __init__(self, input_size: int, hidden_size: int, *, key: jax.Array):
        """Initialize the LSTM.

        :param int input_size: Input vector size.
        :param int hidden_size: Number of hidden units.
        :param jax.Array key: PRNG key for initialization.
        """
        k_val, k_in, k_rem, k_out = jax.random.split(key, 4)
        gate_in = input_size + 2 * hidden_size
        dtype = float_dtype()
        self.hidden_size = hidden_size
        self.input_value = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_val)
        self.input_gate = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_in)
        remember = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_rem)
        # Start out biased toward remembering.
        self.remember_gate = eqx.tree_at(
            lambda layer: layer.bias, remember, jnp.full((hidden_size,), INITIAL_REMEMBER_BIAS, dtype)
        )
        self.output_gate = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_out)
        self.init_state = jnp.zeros((2 * hidden_size,), dtype=dtype)

    def state_size(self) -> int:
        return 2 * self.hidden_size

    def start_vector(self) -> jax.Array:
        return self.init_state

    def cell(self, x: jax.Array, state: jax.Array) -> tuple[jax.Array, jax.Array]:
        cell, last_out = state[: self.hidden_size], state[self.hidden_size :]
        gate_in = jnp.concatenate([x, cell, last_out])
        value = jnp.tanh(self.input_value(gate_in))
        in_gate = jax.nn.sigmoid(self.input_gate(gate_in))
        remember = jax.nn.sigmoid(self.remember_gate(gate_in))
        new_cell = remember * cell + value * in_gate
        out_gate = jax.nn.sigmoid(self.output_gate(jnp.concatenate([x, new_cell, last_out])))
        out = out_gate * jnp.tanh(new_cell)
        return out, jnp.concatenate([new_cell, out])


class GRU(LeafBlock):
    """Gated recurrent unit; output and state are both the hidden vector."""

    input_value: eqx.nn.Linear
    reset_gate: eqx.nn.Linear
    update_gate: eqx.nn.Linear
    init_state: jax.Array
    hidden_size: int = eqx.field(static=True)

    def __init__(self, input_size: int, hidden_size: int, *, key: jax.Array):
        k_val, k_reset, k_update = jax.random.split(key, 3)
        gate_in = input_size + hidden_size
        dtype = float_dtype()
        self.hidden_size = hidden_size
        self.input_value = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_val)
        self.reset_gate = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_reset)
        self.update_gate = eqx.nn.Linear(gate_in, hidden_size, dtype=dtype, key=k_update)
        self.init_state = jnp.zeros((hidden_size,), dtype=dtype)

    def state_size(self) -> int:
        return self.hidden_size

    def start_vector(self) -> jax.Array:
        return self.init_state

    def cell(self, x: jax.Array, state: jax.Array) -> tuple[jax.Array, jax.Array]:
        gate_in = jnp.concatenate([x, state])
        reset = jax.nn.sigmoid(self.reset_gate(gate_in))
        update = jax.nn.sigmoid(self.update_gate(gate_in))
        value = jnp.tanh(self.input_value(jnp.concatenate([x, reset * state])))
        new_state = update * state + (1 - update) * value
        return new_state, new_state


class IRNN(LeafBlock):
    """ReLU RNN with identity-initialized recurrent weights.

    The block outputs its new state so other blocks can be stacked on top of it.
    The start state is fixed at zero.
    """

    layer: eqx.nn.Linear
    hidden_size: int = eqx.field(static=True)

    def __init__(
        self,
        input_size: int,
        hidden_size: int,
        *,
        identity_scale: float = 1.0,
        key: jax.Array,
    ):
        """Initialize the IRNN.

        :param int input_size: Input vector size.
        :param int hidden_size: Number of hidden units.
        :param float identity_scale: Diagonal value of the recurrent weight block.
        :param jax.Array key: PRNG key for the input weights.
        """
        dtype = float_dtype()
        scale = 1.0 / math.sqrt(max(input_size, 1))
        w_in = jax.random.uniform(
            key, (hidden_size, input_size), dtype=dtype, minval=-scale, maxval=scale
        )
        w_rec = identity_scale * jnp.eye(hidden_size, dtype=dtype)
        layer = eqx.nn.Linear(input_size + hidden_size, hidden_size, dtype=dtype, key=key)
        layer = eqx.tree_at(lambda l: l.weight, layer, jnp.concatenate([w_in, w_rec], axis=1))
        self.layer = eqx.tree_at(lambda l: l.bias, layer, jnp.zeros((hidden_size,), dtype))
        self.hidden_size = hidden_size

    def state_size(self) -> int:
        return self.hidden_size

    def start_vector(self) -> jax.Array:
        return jnp.zeros((self.hidden_size,), dtype=float_dtype())

    def cell(self, x: jax.Array, state: jax.Array) -> tuple[jax.Array, jax.Array]:
        new_state = jax.nn.relu(self.layer(jnp.concatenate([x, state])))
        return new_state, new_state
