"""State variants, packing and lane bookkeeping."""

from __future__ import annotations

import jax.numpy as jnp
import numpy as np
import pytest

from loom.state import (
    CompositeState,
    VecRState,
    VecState,
    add_states,
    check_lanes,
    lane_count,
    pack_states,
    scatter_lanes,
    split_rows,
    split_state,
    take_lanes,
)


def test_pack_vector_states_concatenates_features() -> None:
    """Vector states pack into one wider vector state."""
    a = VecState(jnp.ones((2, 3)))
    b = VecState(jnp.zeros((2, 1)))
    packed = pack_states([a, b])
    assert isinstance(packed, VecState)
    assert packed.vector.shape == (2, 4)

    parts = split_state(packed, [3, 1])
    assert jnp.array_equal(parts[0].vector, a.vector)
    assert jnp.array_equal(parts[1].vector, b.vector)


def test_pack_mixed_states_stays_composite() -> None:
    """A non-vector child keeps the packed state composite."""
    inner = CompositeState((VecState(jnp.ones((2, 1))),))
    packed = pack_states([VecState(jnp.ones((2, 2))), inner])
    assert isinstance(packed, CompositeState)
    assert split_state(packed, [2, 1])[1] is inner


def test_pack_r_states_splits_both_channels() -> None:
    """R-states keep value and R-derivative aligned through pack/split."""
    a = VecRState(jnp.ones((1, 2)), 2 * jnp.ones((1, 2)))
    b = VecRState(3 * jnp.ones((1, 1)), 4 * jnp.ones((1, 1)))
    left, right = split_state(pack_states([a, b]), [2, 1])
    assert jnp.array_equal(left.r_vector, a.r_vector)
    assert jnp.array_equal(right.vector, b.vector)


def test_split_state_rejects_wrong_width() -> None:
    """A vector state that does not match the child sizes fails fast."""
    with pytest.raises(ValueError, match="does not match"):
        split_state(VecState(jnp.ones((2, 5))), [2, 2])


def test_split_state_none_means_zero_for_every_child() -> None:
    """A missing state gradient splits into missing child gradients."""
    assert split_state(None, [1, 2, 3]) == [None, None, None]


def test_take_and_scatter_lanes_fill_ended_lanes_with_zeros() -> None:
    """Scattering a narrowed gradient zeros the lanes that were dropped."""
    like = VecState(jnp.arange(6.0).reshape(3, 2))
    keep = np.array([0, 2])
    narrowed = take_lanes(like, keep)
    assert narrowed.vector.shape == (2, 2)

    wide = scatter_lanes(narrowed, keep, like)
    assert jnp.array_equal(wide.vector[1], jnp.zeros(2))
    assert jnp.array_equal(wide.vector[2], like.vector[2])
    assert scatter_lanes(None, keep, like) is None


def test_add_states_treats_none_as_zero() -> None:
    """None is the additive identity for state gradients."""
    s = VecState(jnp.ones((1, 2)))
    assert add_states(None, s) is s
    assert add_states(s, None) is s
    assert jnp.array_equal(add_states(s, s).vector, 2 * jnp.ones((1, 2)))


def test_lane_count_and_check_lanes() -> None:
    """Lane count is the leading axis; mismatches raise."""
    state = CompositeState((VecState(jnp.ones((4, 2))), VecState(jnp.ones((4, 0)))))
    assert lane_count(state) == 4
    check_lanes(state, 4)
    with pytest.raises(ValueError, match="Lane count mismatch"):
        check_lanes(state, 3)
    with pytest.raises(ValueError, match="no array leaves"):
        lane_count(CompositeState(()))


def test_split_rows_requires_whole_rows() -> None:
    """Flat vectors split into rows only when the width divides the length."""
    assert split_rows(jnp.arange(6.0), 3).shape == (2, 3)
    with pytest.raises(ValueError, match="not divisible"):
        split_rows(jnp.arange(5.0), 3)
