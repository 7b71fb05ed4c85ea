"""Sequence functions: block wrapping, composition, bidirectional reading."""

from __future__ import annotations

import equinox as eqx
import jax
import jax.numpy as jnp
import numpy as np
import pytest

from loom.bptt import BPTT
from loom.cells import GRU, LSTM
from loom.cost import MeanSquaredCost, SigmoidCECost
from loom.gradient import random_rvector
from loom.runner import run_lanes
from loom.seqfunc import (
    Bidirectional,
    BlockSeqFunc,
    ComposedSeqFunc,
    MapSeqFunc,
    SeqFuncFunc,
    SeqFuncGradienter,
)
from tests.helpers.blocks import lstm_square_stack, random_samples
from tests.helpers.checks import exact_grad, exact_r_grad, flat, seq_func_cost


def _linear(n_in: int, n_out: int, seed: int) -> eqx.nn.Linear:
    return eqx.nn.Linear(n_in, n_out, dtype=jnp.float64, key=jax.random.PRNGKey(seed))


def _bidirectional() -> Bidirectional:
    k1, k2 = jax.random.split(jax.random.PRNGKey(21))
    return Bidirectional(
        BlockSeqFunc(LSTM(2, 3, key=k1)),
        BlockSeqFunc(GRU(2, 2, key=k2)),
        MapSeqFunc(_linear(5, 2, 22)),
    )


def _composed() -> ComposedSeqFunc:
    return ComposedSeqFunc(
        [BlockSeqFunc(LSTM(2, 3, key=jax.random.PRNGKey(23))), MapSeqFunc(_linear(3, 2, 24))]
    )


def test_block_seq_func_matches_runner(key: jax.Array) -> None:
    """Wrapping a block does not change its outputs."""
    block = lstm_square_stack(2, 3, 1, key=key)
    seqs = [s.inputs for s in random_samples(4, 2, 3, seed=30)]
    res = BlockSeqFunc(block).apply_seqs(seqs)
    for a, b in zip(res.outputs, run_lanes(block, seqs), strict=True):
        np.testing.assert_allclose(np.asarray(a), np.asarray(b))


def test_block_seq_func_gradient_equals_bptt(key: jax.Array) -> None:
    """A seq-func gradienter over a wrapped block reproduces BPTT."""
    block = lstm_square_stack(2, 3, 1, key=key)
    cost = MeanSquaredCost()
    samples = random_samples(6, 2, 3, seed=31)
    rv = random_rvector(block, jax.random.PRNGKey(1))

    want_g, want_rg = BPTT(block, cost, max_workers=1).r_gradient(rv, samples)
    got_g, got_rg = SeqFuncGradienter(BlockSeqFunc(block), cost, max_workers=1).r_gradient(
        BlockSeqFunc(rv), samples
    )
    np.testing.assert_allclose(got_g.flatten(), want_g.flatten(), atol=1e-10)
    np.testing.assert_allclose(got_rg.flatten(), want_rg.flatten(), atol=1e-10)


def test_input_gradients_match_autodiff() -> None:
    """Per-sequence input gradients of a composed function match jax.grad."""
    func = _composed()
    cost = MeanSquaredCost()
    samples = random_samples(4, 2, 2, seed=32)
    inputs = [s.inputs for s in samples]

    def loss(xs):
        outs = func.apply_seqs(xs).outputs
        return sum(cost.total(o, s.outputs) for o, s in zip(outs, samples, strict=True) if len(s))

    res = func.apply_seqs(inputs)
    upstream = [cost.gradient(o, s.outputs) if len(s) else None for o, s in zip(res.outputs, samples)]
    bp = res.propagate(upstream)
    expected = jax.grad(loss)(inputs)
    for got, want in zip(bp.inputs, expected, strict=True):
        assert got.shape == want.shape
        np.testing.assert_allclose(np.asarray(got), np.asarray(want), atol=1e-10)


@pytest.mark.parametrize("make", [_composed, _bidirectional], ids=["composed", "bidirectional"])
def test_seq_func_gradients_match_autodiff(make) -> None:
    """Gradient and R-gradient of composite seq funcs match jax.grad / jvp."""
    func = make()
    cost = SigmoidCECost()
    samples = random_samples(5, 2, 2, seed=33)
    loss = lambda f: seq_func_cost(f, cost, samples)  # noqa: E731
    rv = random_rvector(func, jax.random.PRNGKey(3))

    g = SeqFuncGradienter(func, cost, max_lanes=2, max_workers=1)
    np.testing.assert_allclose(g.gradient(samples).flatten(), exact_grad(func, loss), atol=1e-9)
    grad, r_grad = g.r_gradient(rv, samples)
    np.testing.assert_allclose(grad.flatten(), exact_grad(func, loss), atol=1e-9)
    np.testing.assert_allclose(r_grad.flatten(), exact_r_grad(func, loss, rv), atol=1e-8)


def test_bidirectional_aligns_both_readings() -> None:
    """Output t sees forward step t and backward step t of the reversed reading."""
    func = _bidirectional()
    seqs = [s.inputs for s in random_samples(3, 2, 2, seed=34, with_empty=False)]
    res = func.apply_seqs(seqs)

    fwd = func.forward.apply_seqs(seqs).outputs
    bwd = func.backward.apply_seqs([s[::-1] for s in seqs]).outputs
    for out, f, b in zip(res.outputs, fwd, bwd, strict=True):
        joined = jnp.concatenate([f, b[::-1]], axis=1)
        np.testing.assert_allclose(np.asarray(out), np.asarray(jax.vmap(func.output.f)(joined)))


def test_gradienter_concurrency_and_empty_samples() -> None:
    """Threaded and serial runs agree; empty samples contribute nothing."""
    func = _bidirectional()
    cost = MeanSquaredCost()
    samples = random_samples(9, 2, 2, seed=35)
    serial = SeqFuncGradienter(func, cost, max_lanes=2, max_workers=1).gradient(samples)
    serial = serial.flatten().copy()
    threaded = SeqFuncGradienter(func, cost, max_lanes=2, max_workers=3).gradient(samples)
    np.testing.assert_allclose(threaded.flatten(), serial, atol=1e-10)

    only_empty = SeqFuncGradienter(func, cost, max_workers=1).gradient(samples[:1])
    assert not np.any(only_empty.flatten())


def test_map_seq_func_all_empty() -> None:
    """Mapping over nothing returns empty outputs and zero gradients."""
    func = MapSeqFunc(_linear(2, 3, 40))
    res = func.apply_seqs([jnp.zeros((0, 2))])
    assert res.outputs[0].shape[0] == 0
    bp = res.propagate([None])
    assert not np.any(flat(bp.grads))
    assert bp.inputs[0].shape == (0, 2)


def test_composed_requires_functions() -> None:
    """An empty composition is rejected."""
    with pytest.raises(ValueError, match="at least one"):
        ComposedSeqFunc([])


def test_seq_func_func_flattens_sequences() -> None:
    """The vector adapter flattens outputs and is differentiable by JAX."""
    func = _composed()
    ff = SeqFuncFunc(func, in_size=2)
    x = jnp.asarray(np.random.default_rng(36).normal(size=(12,)))

    rows = x.reshape(6, 2)
    want = jnp.concatenate([o.reshape(-1) for o in func.apply_seqs([rows[:3], rows[3:]]).outputs])
    np.testing.assert_allclose(np.asarray(ff.batch(x, 2)), np.asarray(want))
    assert ff(x).shape == (12,)

    res = func.apply_seqs([rows])
    bp = res.propagate(res.outputs)
    grad_x = jax.grad(lambda v: 0.5 * jnp.sum(ff(v) ** 2))(x)
    np.testing.assert_allclose(np.asarray(grad_x), np.asarray(bp.inputs[0].reshape(-1)), atol=1e-10)

    with pytest.raises(ValueError, match="do not split"):
        ff.batch(x, 4)
