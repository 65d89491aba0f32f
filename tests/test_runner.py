"""Unit tests for timeout-bounded validator execution."""

import logging
import time

import pytest

from budget_allocation.models import AlgorithmResult, Allocation
from budget_allocation.runner import ValidatorTask, call_with_timeout, run_validators


def _returns(name):
    def solver_fn(cancel_event):
        return AlgorithmResult(name=name, allocation=Allocation.equal(), confidence=0.7, performance=1.0)

    return solver_fn


def _waits_for_cancel(cancel_event):
    cancel_event.wait(5.0)
    return AlgorithmResult(name="slow", allocation=Allocation.equal(), confidence=0.7, performance=1.0)


def _fails(cancel_event):
    raise RuntimeError("boom")


class TestRunValidators:
    def test_all_complete_in_task_order(self):
        tasks = [ValidatorTask(name, _returns(name), timeout_s=5.0) for name in ("gradient", "bayesian", "heuristic")]
        outcome = run_validators(tasks, global_timeout_s=10.0)
        assert [r.name for r in outcome.results] == ["gradient", "bayesian", "heuristic"]
        assert outcome.missing == []

    def test_empty(self):
        outcome = run_validators([], global_timeout_s=1.0)
        assert outcome.results == []
        assert outcome.missing == []

    def test_per_task_timeout_cancels(self, caplog):
        tasks = [ValidatorTask("fast", _returns("fast"), 5.0), ValidatorTask("slow", _waits_for_cancel, 0.05)]
        started = time.monotonic()
        with caplog.at_level(logging.WARNING, logger="budget_allocation.runner"):
            outcome = run_validators(tasks, global_timeout_s=10.0)
        assert time.monotonic() - started < 4.0
        assert [r.name for r in outcome.results] == ["fast"]
        assert outcome.missing == ["slow"]
        assert "Algorithm slow timed out" in caplog.text

    def test_global_timeout_bounds_batch(self):
        tasks = [ValidatorTask(f"slow{i}", _waits_for_cancel, 5.0) for i in range(2)]
        started = time.monotonic()
        outcome = run_validators(tasks, global_timeout_s=0.05)
        assert time.monotonic() - started < 4.0
        assert outcome.results == []
        assert outcome.missing == ["slow0", "slow1"]

    def test_zero_timeout_yields_nothing(self):
        outcome = run_validators([ValidatorTask("slow", _waits_for_cancel, 5.0)], global_timeout_s=0)
        assert outcome.missing == ["slow"]

    def test_failure_reported_missing(self, caplog):
        tasks = [ValidatorTask("broken", _fails, 5.0), ValidatorTask("ok", _returns("ok"), 5.0)]
        with caplog.at_level(logging.ERROR, logger="budget_allocation.runner"):
            outcome = run_validators(tasks, global_timeout_s=10.0)
        assert [r.name for r in outcome.results] == ["ok"]
        assert outcome.missing == ["broken"]
        assert "Algorithm broken failed" in caplog.text


class TestCallWithTimeout:
    def test_returns_value(self):
        assert call_with_timeout(lambda a, b: a + b, 1.0, 2, 3) == 5

    def test_times_out(self):
        with pytest.raises(TimeoutError, match="did not finish"):
            call_with_timeout(time.sleep, 0.05, 1.0)

    def test_exceptions_propagate(self):
        def broken():
            raise ValueError("bad reply")

        with pytest.raises(ValueError, match="bad reply"):
            call_with_timeout(broken, 1.0)
