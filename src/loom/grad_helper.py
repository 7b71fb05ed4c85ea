"""Concurrent gradient accumulation over sub-batches.

`GradHelper` splits a sample list into sub-batches, lets a bounded pool of worker
threads drain them from a shared queue, and sums the per-worker partial
accumulators into one result.

Ownership rules:
- The coordinating thread checks out every worker accumulator before the workers
  start and returns them after the join barrier. Workers never touch the pool.
- The result of a call belongs to the caller until the next call on the same
  helper, which returns it to the pool. Copy it if you need it longer.
- A worker exception is re-raised in the caller after all workers stopped; the
  accumulators are returned to the pool either way.
"""

from __future__ import annotations

import contextlib
import logging
import os
import queue
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from typing import Any

from loom.gradient import Gradient, GradientPool, ParamArena, RGradient

logger = logging.getLogger(__name__)

DEFAULT_MAX_SUB_BATCH = 15

GradFn = Callable[[list[Any], Gradient], None]
RGradFn = Callable[[Any, list[Any], Gradient, RGradient], None]


def default_concurrency() -> int:
    """Number of CPUs available to this process."""
    if hasattr(os, "sched_getaffinity"):
        return max(len(os.sched_getaffinity(0)), 1)
    return os.cpu_count() or 1


def _drain(work: queue.Queue, task: Callable[..., None], accs: tuple[Any, ...]) -> None:
    while True:
        try:
            chunk = work.get_nowait()
        except queue.Empty:
            return
        task(chunk, *accs)


class GradHelper:
    """Runs a per-sub-batch gradient function over a whole sample list."""

    def __init__(
        self,
        arena: ParamArena,
        comp_grad: GradFn,
        comp_r_grad: RGradFn | None = None,
        *,
        max_concurrency: int = 0,
        max_sub_batch: int = 0,
    ):
        """Create a helper.

        :param ParamArena arena: Parameter layout of the learner.
        :param comp_grad: ``(samples, grad)`` adding one sub-batch's gradient into ``grad``.
        :param comp_r_grad: ``(rv, samples, grad, r_grad)``, the R variant.
        :param int max_concurrency: Worker cap; 0 means one per available CPU.
        :param int max_sub_batch: Samples per sub-batch; 0 means DEFAULT_MAX_SUB_BATCH.
        """
        self.arena = arena
        self.pool = GradientPool(arena)
        self.comp_grad = comp_grad
        self.comp_r_grad = comp_r_grad
        self.max_concurrency = max_concurrency
        self.max_sub_batch = max_sub_batch
        self._last: list[Gradient] = []

    def _limits(self) -> tuple[int, int]:
        sub_batch = self.max_sub_batch if self.max_sub_batch > 0 else DEFAULT_MAX_SUB_BATCH
        workers = self.max_concurrency if self.max_concurrency > 0 else default_concurrency()
        return sub_batch, workers

    def _reclaim(self) -> None:
        for g in self._last:
            self.pool.free(g)
        self._last = []

    def gradient(self, samples: list[Any]) -> Gradient:
        """Compute the summed gradient over ``samples``.

        :param samples: Sample list (already sorted, if sorting matters to the caller).
        :return Gradient: Pool-owned result, valid until the next call.
        """
        self._reclaim()
        (grad,) = self._run(list(samples), self.comp_grad, (self.pool.borrow,), (self.pool.alloc,))
        self._last = [grad]
        return grad

    def r_gradient(self, rv: Any, samples: list[Any]) -> tuple[Gradient, RGradient]:
        """Compute the summed gradient and R-gradient over ``samples``.

        :raises ValueError: If the helper has no R gradient function.
        """
        if self.comp_r_grad is None:
            raise ValueError("GradHelper was built without an R gradient function")
        self._reclaim()
        comp_r_grad = self.comp_r_grad

        def task(chunk: list[Any], grad: Gradient, r_grad: RGradient) -> None:
            comp_r_grad(rv, chunk, grad, r_grad)

        grad, r_grad = self._run(
            list(samples),
            task,
            (self.pool.borrow, self.pool.borrow_r),
            (self.pool.alloc, self.pool.alloc_r),
        )
        self._last = [grad, r_grad]
        return grad, r_grad

    def _run(
        self,
        samples: list[Any],
        task: Callable[..., None],
        borrowers: tuple[Callable[[], Any], ...],
        allocators: tuple[Callable[[], Any], ...],
    ) -> tuple[Any, ...]:
        sub_batch, workers = self._limits()
        if len(samples) < sub_batch or workers < 2:
            results = tuple(alloc() for alloc in allocators)
            try:
                for i in range(0, len(samples), sub_batch):
                    task(samples[i : i + sub_batch], *results)
            except BaseException:
                for r in results:
                    self.pool.free(r)
                raise
            return results

        work: queue.Queue = queue.Queue()
        for i in range(0, len(samples), sub_batch):
            work.put(samples[i : i + sub_batch])
        n_workers = min(workers, work.qsize())
        logger.debug(
            "gradient over %d samples: %d sub-batches on %d workers",
            len(samples),
            work.qsize(),
            n_workers,
        )

        with contextlib.ExitStack() as stack:
            partials = [
                tuple(stack.enter_context(borrow()) for borrow in borrowers) for _ in range(n_workers)
            ]
            with ThreadPoolExecutor(max_workers=n_workers, thread_name_prefix="loom-grad") as executor:
                futures = [executor.submit(_drain, work, task, accs) for accs in partials]
                for fut in futures:
                    fut.result()
            results = tuple(alloc() for alloc in allocators)
            for accs in partials:
                for result, acc in zip(results, accs, strict=True):
                    result.add(acc)
        return results
