"""Lane protocol and forward memory."""

from __future__ import annotations

import jax
import numpy as np

from loom.cost import MeanSquaredCost
from loom.gradient import Gradient, ParamArena
from loom.seqprop import SeqProp, SeqRProp, active_lanes, continuing
from tests.helpers.blocks import lstm_square_stack, random_samples
from tests.helpers.checks import block_cost, exact_grad


def test_active_and_continuing_lanes() -> None:
    """Lane l is active at t iff len > t; it continues iff len > t + 1."""
    lengths = np.array([3, 0, 1, 2])
    assert active_lanes(lengths, 0).tolist() == [0, 2, 3]
    assert active_lanes(lengths, 1).tolist() == [0, 3]
    assert active_lanes(lengths, 3).tolist() == []
    lanes = active_lanes(lengths, 0)
    assert continuing(lengths, lanes, 0).tolist() == [0, 2]


def test_memory_holds_one_step_per_timestep(key: jax.Array) -> None:
    """Memory length equals the longest sequence; lanes shrink monotonically."""
    block = lstm_square_stack(2, 3, 1, key=key)
    samples = random_samples(4, 2, 3, seed=4, max_len=5)
    prop = SeqProp(block, MeanSquaredCost(), samples)
    prop.run()

    assert len(prop) == max(len(s) for s in samples)
    widths = [len(step.lanes) for step in prop.memory]
    assert widths == sorted(widths, reverse=True)
    assert not prop.time_step()


def test_empty_sequences_never_take_a_lane(key: jax.Array) -> None:
    """Zero-length samples are dropped before lanes are assigned."""
    block = lstm_square_stack(2, 3, 1, key=key)
    samples = random_samples(2, 2, 3, seed=5)
    prop = SeqProp(block, MeanSquaredCost(), samples)
    assert len(prop.seqs) == 2
    prop.run()
    assert all(len(step.lanes) <= 2 for step in prop.memory)


def test_truncate_keeps_newest_steps_and_carries_state(key: jax.Array) -> None:
    """Truncation drops old memory but the next step still sees the carried state."""
    block = lstm_square_stack(2, 3, 1, key=key)
    samples = random_samples(3, 2, 3, seed=6, min_len=4, max_len=4, with_empty=False)
    full = SeqProp(block, MeanSquaredCost(), samples)
    full.run()

    cut = SeqProp(block, MeanSquaredCost(), samples)
    cut.time_step()
    cut.time_step()
    cut.truncate(0)
    assert len(cut) == 0
    cut.time_step()
    cut.truncate(5)
    assert len(cut) == 1
    assert cut.memory[0].t == 2
    np.testing.assert_allclose(
        np.asarray(cut.memory[0].output.outputs), np.asarray(full.memory[2].output.outputs)
    )


def test_back_propagate_over_everything_is_full_gradient(key: jax.Array) -> None:
    """head = len(memory), tail = 0 gives the exact gradient, start state included."""
    block = lstm_square_stack(2, 3, 1, key=key)
    cost = MeanSquaredCost()
    samples = random_samples(3, 2, 3, seed=7)
    prop = SeqProp(block, cost, samples)
    prop.run()
    grad = Gradient(ParamArena(block))
    prop.back_propagate(grad, len(prop), 0)

    expected = exact_grad(block, lambda b: block_cost(b, cost, samples))
    np.testing.assert_allclose(grad.flatten(), expected, atol=1e-9)


def test_zero_head_is_a_no_op(key: jax.Array) -> None:
    """Nothing is accumulated when no output is in the window."""
    block = lstm_square_stack(2, 3, 1, key=key)
    prop = SeqRProp(block, MeanSquaredCost(), random_samples(2, 2, 3), None)
    prop.run()
    grad = Gradient(ParamArena(block))
    r_grad = Gradient(ParamArena(block))
    prop.back_propagate_r(grad, r_grad, 0, 3)
    assert not np.any(grad.flatten())
    assert not np.any(r_grad.flatten())
