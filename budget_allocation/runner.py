"""Timeout-bounded parallel execution of validator solvers.

Each task runs in its own worker thread with its own cancel event. A task
that raises or misses its deadline yields no result; the whole batch is
bounded by a global deadline after which every pending task is abandoned.
Iterative solvers watch their cancel event and stop at the next iteration
boundary, so abandoned work does not keep burning CPU.
"""

import concurrent.futures
import logging
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

from budget_allocation.models import AlgorithmResult

logger = logging.getLogger(__name__)

SolverFn = Callable[[threading.Event], AlgorithmResult]
T = TypeVar("T")


@dataclass(frozen=True)
class ValidatorTask:
    """One validator algorithm to run.

    Parameters
    ----------
    name : str
        Algorithm name, used in logs and in ``ValidatorOutcome.missing``.
    solver_fn : Callable[[threading.Event], AlgorithmResult]
        Runs the algorithm. Receives a cancel event that is set once the
        task's result is no longer wanted.
    timeout_s : float
        Per-task deadline in seconds, measured from batch start.
    """

    name: str
    solver_fn: SolverFn
    timeout_s: float


@dataclass(frozen=True)
class ValidatorOutcome:
    """Completed results in task order, and names of tasks that produced none."""

    results: list[AlgorithmResult]
    missing: list[str]


def run_validators(
    tasks: Sequence[ValidatorTask],
    global_timeout_s: float,
    max_workers: int | None = None,
) -> ValidatorOutcome:
    """Run ``tasks`` concurrently under per-task and global deadlines.

    Parameters
    ----------
    tasks : Sequence[ValidatorTask]
        Algorithms to run.
    global_timeout_s : float
        Deadline for the whole batch in seconds.
    max_workers : int, optional
        Thread pool size. Defaults to one worker per task.

    Returns
    -------
    ValidatorOutcome
        Task failures and timeouts are logged and reported in ``missing``;
        this function does not raise for them.
    """
    if not tasks:
        return ValidatorOutcome(results=[], missing=[])

    start = time.monotonic()
    global_deadline = start + max(0.0, global_timeout_s)
    executor = concurrent.futures.ThreadPoolExecutor(
        max_workers=max_workers or len(tasks), thread_name_prefix="validator"
    )
    cancel_events = [threading.Event() for _ in tasks]
    futures = [executor.submit(task.solver_fn, event) for task, event in zip(tasks, cancel_events)]
    deadlines = [min(start + max(0.0, task.timeout_s), global_deadline) for task in tasks]

    expired: set[int] = set()
    try:
        pending = set(range(len(tasks)))
        while pending:
            pending = {i for i in pending if not futures[i].done()}
            now = time.monotonic()
            for i in [i for i in pending if deadlines[i] <= now]:
                cancel_events[i].set()
                expired.add(i)
                pending.discard(i)
                logger.warning("Algorithm %s timed out after %.2fs", tasks[i].name, now - start)
            if not pending:
                break
            concurrent.futures.wait(
                [futures[i] for i in pending],
                timeout=min(deadlines[i] for i in pending) - now,
                return_when=concurrent.futures.FIRST_COMPLETED,
            )
    finally:
        for event in cancel_events:
            event.set()
        executor.shutdown(wait=False, cancel_futures=True)

    results, missing = [], []
    for i, (task, future) in enumerate(zip(tasks, futures)):
        if i in expired:
            missing.append(task.name)
            continue
        try:
            results.append(future.result(timeout=0))
        except Exception:
            logger.exception("Algorithm %s failed", task.name)
            missing.append(task.name)

    logger.info("Validators: %d of %d completed", len(results), len(tasks))
    return ValidatorOutcome(results=results, missing=missing)


def call_with_timeout(fn: Callable[..., T], timeout_s: float, *args: Any) -> T:
    """Run ``fn(*args)`` in a worker thread and wait at most ``timeout_s``.

    Raises
    ------
    TimeoutError
        If ``fn`` has not returned in time. The call is abandoned, not
        interrupted.
    """
    executor = concurrent.futures.ThreadPoolExecutor(max_workers=1, thread_name_prefix="external")
    try:
        future = executor.submit(fn, *args)
        try:
            return future.result(timeout=max(0.0, timeout_s))
        except concurrent.futures.TimeoutError as exc:
            raise TimeoutError(f"{getattr(fn, '__name__', 'call')} did not finish within {timeout_s:.2f}s") from exc
    finally:
        executor.shutdown(wait=False, cancel_futures=True)
