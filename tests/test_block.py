"""Leaf blocks: batching, start states and all four derivative passes."""

from __future__ import annotations

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import pytest
from jax.flatten_util import ravel_pytree

from loom.block import FuncBlock, param_tree
from loom.cells import LSTM
from loom.gradient import random_rvector
from loom.state import VecRState, VecState
from tests.helpers.checks import flat

EPS = 1e-5


def _lstm_call(key: jax.Array):
    block = LSTM(2, 3, key=key)
    rng = np.random.default_rng(0)
    inputs = jnp.asarray(rng.normal(size=(4, 2)))
    states = jnp.asarray(rng.normal(size=(4, 6)))
    up = jnp.asarray(rng.normal(size=(4, 3)))
    state_up = jnp.asarray(rng.normal(size=(4, 6)))
    return block, inputs, states, up, state_up


def _probe(block, inputs, states, up, state_up) -> float:
    out = block.batch(VecState(states), inputs)
    return float(jnp.sum(out.outputs * up) + jnp.sum(out.states.vector * state_up))


def test_func_block_splits_output_and_state() -> None:
    """The last state_size entries of f([x, s]) become the new state."""
    block = FuncBlock(lambda v: 2 * v, 1)
    out = block.batch(block.start_state(3), jnp.ones((3, 2)))
    assert out.outputs.shape == (3, 2)
    assert out.states.vector.shape == (3, 1)
    assert jnp.allclose(out.outputs, 2.0)
    assert jnp.allclose(out.states.vector, 0.0)


def test_func_block_validates_arguments() -> None:
    """Negative state sizes and badly shaped start vectors are rejected."""
    with pytest.raises(ValueError, match="state_size"):
        FuncBlock(jnp.tanh, -1)
    with pytest.raises(ValueError, match="start must have shape"):
        FuncBlock(jnp.tanh, 2, start=jnp.zeros(3))


def test_func_block_too_few_values_raises() -> None:
    """A function that cannot fill the state is a usage error."""
    block = FuncBlock(lambda v: v[:1], 2)
    with pytest.raises(ValueError, match="fewer than state_size"):
        block.batch(block.start_state(1), jnp.ones((1, 1)))


def test_batch_rejects_wrong_state_variant_and_lanes(key: jax.Array) -> None:
    """Leaf blocks need a vector state with one row per input lane."""
    block = LSTM(2, 3, key=key)
    with pytest.raises(TypeError, match="VecState"):
        block.batch(VecRState(jnp.zeros((1, 6)), jnp.zeros((1, 6))), jnp.zeros((1, 2)))
    with pytest.raises(ValueError, match="Lane count mismatch"):
        block.batch(block.start_state(2), jnp.zeros((3, 2)))


def test_start_state_broadcasts_and_collects_lane_sums() -> None:
    """Every lane starts from the same vector; its gradient is the lane sum."""
    block = FuncBlock(jnp.tanh, 2, start=jnp.array([0.5, -0.5]))
    start = block.start_state(3)
    assert start.vector.shape == (3, 2)
    assert jnp.allclose(start.vector[2], jnp.array([0.5, -0.5]))

    upstream = VecState(jnp.arange(6.0).reshape(3, 2))
    grads = block.propagate_start(upstream)
    assert jnp.allclose(grads.start, jnp.array([6.0, 9.0]))


def test_propagate_matches_finite_differences(key: jax.Array) -> None:
    """Input and incoming-state gradients match centered differences."""
    block, inputs, states, up, state_up = _lstm_call(key)
    bp = block.batch(VecState(states), inputs).propagate(up, VecState(state_up))

    for arr, grad, which in ((inputs, bp.inputs, "x"), (states, bp.states.vector, "s")):
        fd = np.zeros(arr.shape)
        for idx in np.ndindex(arr.shape):
            step = jnp.zeros(arr.shape).at[idx].set(EPS)
            if which == "x":
                hi = _probe(block, inputs + step, states, up, state_up)
                lo = _probe(block, inputs - step, states, up, state_up)
            else:
                hi = _probe(block, inputs, states + step, up, state_up)
                lo = _probe(block, inputs, states - step, up, state_up)
            fd[idx] = (hi - lo) / (2 * EPS)
        np.testing.assert_allclose(np.asarray(grad), fd, atol=1e-6)


def test_parameter_grads_match_finite_differences(key: jax.Array) -> None:
    """Parameter gradients of one call match centered differences."""
    block, inputs, states, up, state_up = _lstm_call(key)
    bp = block.batch(VecState(states), inputs).propagate(up, VecState(state_up))

    params, static = eqx.partition(block, eqx.is_inexact_array)
    x0, unravel = ravel_pytree(params)
    x0 = np.asarray(x0)
    fd = np.zeros_like(x0)
    for i in range(x0.size):
        step = np.zeros_like(x0)
        step[i] = EPS
        hi = _probe(eqx.combine(unravel(jnp.asarray(x0 + step)), static), inputs, states, up, state_up)
        lo = _probe(eqx.combine(unravel(jnp.asarray(x0 - step)), static), inputs, states, up, state_up)
        fd[i] = (hi - lo) / (2 * EPS)
    np.testing.assert_allclose(flat(bp.grads), fd, atol=1e-6)


def test_missing_upstream_means_zero(key: jax.Array) -> None:
    """None upstream gradients behave exactly like explicit zeros."""
    block, inputs, states, up, _ = _lstm_call(key)
    out = block.batch(VecState(states), inputs)
    a = out.propagate(up, None)
    b = out.propagate(up, VecState(jnp.zeros_like(states)))
    np.testing.assert_allclose(flat(a.grads), flat(b.grads))
    np.testing.assert_allclose(np.asarray(a.states.vector), np.asarray(b.states.vector))


def test_batch_r_outputs_are_directional_derivatives(key: jax.Array) -> None:
    """R outputs equal the derivative of the outputs along rv."""
    block, inputs, states, _, _ = _lstm_call(key)
    rv = random_rvector(block, jax.random.PRNGKey(3))
    r_states = jnp.ones_like(states) * 0.1
    out = block.batch_r(rv, VecRState(states, r_states), inputs, None)

    plain = block.batch(VecState(states), inputs)
    assert jnp.allclose(out.outputs, plain.outputs)

    def shifted(sign: float):
        moved = eqx.apply_updates(block, jax.tree_util.tree_map(lambda r: sign * EPS * r, rv))
        return moved.batch(VecState(states + sign * EPS * r_states), inputs).outputs

    fd = (shifted(1.0) - shifted(-1.0)) / (2 * EPS)
    np.testing.assert_allclose(np.asarray(out.r_outputs), np.asarray(fd), atol=1e-6)


def test_propagate_r_is_derivative_of_propagate(key: jax.Array) -> None:
    """R-gradients equal the derivative of the gradients along rv."""
    block, inputs, states, up, state_up = _lstm_call(key)
    rv = random_rvector(block, jax.random.PRNGKey(4))
    r_up = jnp.ones_like(up) * 0.2
    zeros = jnp.zeros_like(states)

    out = block.batch_r(rv, VecRState(states, zeros), inputs, None)
    rbp = out.propagate_r(up, r_up, VecRState(state_up, zeros))

    def grads_at(sign: float) -> np.ndarray:
        moved = eqx.apply_updates(block, jax.tree_util.tree_map(lambda r: sign * EPS * r, rv))
        bp = moved.batch(VecState(states), inputs).propagate(up + sign * EPS * r_up, VecState(state_up))
        return np.concatenate([flat(bp.grads), np.ravel(bp.inputs), np.ravel(bp.states.vector)])

    fd = (grads_at(1.0) - grads_at(-1.0)) / (2 * EPS)
    actual = np.concatenate(
        [flat(rbp.r_grads), np.ravel(rbp.r_inputs), np.ravel(rbp.states.r_vector)]
    )
    np.testing.assert_allclose(actual, fd, atol=1e-6)
    np.testing.assert_allclose(
        flat(rbp.grads), flat(block.batch(VecState(states), inputs).propagate(up, VecState(state_up)).grads)
    )


def test_param_tree_filters_static_fields(key: jax.Array) -> None:
    """Only float arrays count as parameters."""
    block = LSTM(2, 3, key=key)
    leaves = jax.tree_util.tree_leaves(param_tree(block))
    assert all(jnp.issubdtype(x.dtype, jnp.inexact) for x in leaves)
    assert sum(x.size for x in leaves) == 4 * (3 * 8 + 3) + 6
