"""Concurrent sub-batch gradient accumulation."""

from __future__ import annotations

import threading

import jax.numpy as jnp
import numpy as np
import pytest

from loom.grad_helper import DEFAULT_MAX_SUB_BATCH, GradHelper
from loom.gradient import Gradient, ParamArena, RGradient


def _arena() -> ParamArena:
    return ParamArena({"w": jnp.zeros(3)})


def _sum_task(calls: list[tuple[str, int]]):
    lock = threading.Lock()

    def comp_grad(samples: list[float], grad: Gradient) -> None:
        with lock:
            calls.append((threading.current_thread().name, len(samples)))
        for s in samples:
            grad.accumulate({"w": jnp.full(3, float(s))})

    return comp_grad


def test_small_batches_run_synchronously() -> None:
    """Fewer samples than one sub-batch run inline in a single call."""
    calls: list[tuple[str, int]] = []
    helper = GradHelper(_arena(), _sum_task(calls), max_concurrency=4, max_sub_batch=0)
    samples = list(range(DEFAULT_MAX_SUB_BATCH - 1))

    grad = helper.gradient(samples)
    assert np.allclose(grad[0], sum(samples))
    assert calls == [(threading.current_thread().name, len(samples))]


def test_concurrency_does_not_change_the_sum() -> None:
    """One worker and many workers produce the same gradient."""
    samples = [0.5 * i for i in range(37)]
    serial = GradHelper(_arena(), _sum_task([]), max_concurrency=1, max_sub_batch=4)
    calls: list[tuple[str, int]] = []
    parallel = GradHelper(_arena(), _sum_task(calls), max_concurrency=5, max_sub_batch=4)

    expected = serial.gradient(samples).flatten().copy()
    actual = parallel.gradient(samples).flatten()
    np.testing.assert_allclose(actual, expected)
    assert sorted(n for _, n in calls) == [1] + [4] * 9
    assert all(name.startswith("loom-grad") for name, _ in calls)


def test_single_worker_still_splits_into_sub_batches() -> None:
    """With one worker, every call sees at most max_sub_batch samples and the sum holds."""
    calls: list[tuple[str, int]] = []
    helper = GradHelper(_arena(), _sum_task(calls), max_concurrency=1, max_sub_batch=4)
    samples = [float(i) for i in range(10)]

    grad = helper.gradient(samples)
    np.testing.assert_allclose(grad[0], np.full(3, sum(samples)))
    assert [n for _, n in calls] == [4, 4, 2]
    assert {name for name, _ in calls} == {threading.current_thread().name}
    assert helper.pool.outstanding == 1


def test_single_worker_r_gradient_splits_into_sub_batches() -> None:
    """The synchronous R path honours the sub-batch limit too."""
    sizes: list[int] = []

    def comp_r_grad(rv: float, samples: list[float], grad: Gradient, r_grad: RGradient) -> None:
        sizes.append(len(samples))
        for s in samples:
            grad.accumulate({"w": jnp.full(3, s)})
            r_grad.accumulate({"w": jnp.full(3, rv * s)})

    helper = GradHelper(_arena(), _sum_task([]), comp_r_grad, max_concurrency=1, max_sub_batch=3)
    grad, r_grad = helper.r_gradient(2.0, [1.0] * 7)
    assert sizes == [3, 3, 1]
    np.testing.assert_allclose(grad[0], np.full(3, 7.0))
    np.testing.assert_allclose(r_grad[0], np.full(3, 14.0))


def test_results_return_to_pool_on_next_call() -> None:
    """Only the latest result stays checked out."""
    helper = GradHelper(_arena(), _sum_task([]), max_concurrency=3, max_sub_batch=2)
    helper.gradient([1.0] * 10)
    assert helper.pool.outstanding == 1
    helper.gradient([1.0] * 10)
    assert helper.pool.outstanding == 1


def test_worker_error_propagates_and_releases_buffers() -> None:
    """A failing sub-batch re-raises in the caller with the pool intact."""

    def comp_grad(samples: list[float], grad: Gradient) -> None:
        if 3.0 in samples:
            raise RuntimeError("bad sample")
        grad.accumulate({"w": jnp.ones(3)})

    helper = GradHelper(_arena(), comp_grad, max_concurrency=3, max_sub_batch=2)
    with pytest.raises(RuntimeError, match="bad sample"):
        helper.gradient([1.0, 2.0, 3.0, 4.0, 5.0, 6.0])
    assert helper.pool.outstanding == 0

    sync = GradHelper(_arena(), comp_grad, max_concurrency=1)
    with pytest.raises(RuntimeError, match="bad sample"):
        sync.gradient([3.0])
    assert sync.pool.outstanding == 0


def test_r_gradient_fills_both_accumulators() -> None:
    """The R task receives rv and a (Gradient, RGradient) pair per worker."""

    def comp_r_grad(rv: float, samples: list[float], grad: Gradient, r_grad: RGradient) -> None:
        for s in samples:
            grad.accumulate({"w": jnp.full(3, s)})
            r_grad.accumulate({"w": jnp.full(3, rv * s)})

    helper = GradHelper(
        _arena(), _sum_task([]), comp_r_grad, max_concurrency=2, max_sub_batch=3
    )
    grad, r_grad = helper.r_gradient(2.0, [1.0, 2.0, 3.0, 4.0])
    assert isinstance(r_grad, RGradient)
    assert np.allclose(grad[0], 10.0)
    assert np.allclose(r_grad[0], 20.0)
    assert helper.pool.outstanding == 2


def test_r_gradient_requires_r_function() -> None:
    """Asking for R-gradients without an R task is an error."""
    helper = GradHelper(_arena(), _sum_task([]))
    with pytest.raises(ValueError, match="without an R gradient"):
        helper.r_gradient(None, [1.0])
