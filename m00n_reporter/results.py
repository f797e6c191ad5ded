"""
Run-wide result aggregation shared by all worker threads.
"""

import threading
from dataclasses import dataclass
from typing import Dict, List, Optional

from m00n_reporter.models import TestExecution, TestStatus


class AtomicCounter:
    """Integer counter safe for concurrent increments."""

    def __init__(self, value: int = 0):
        self._value = value
        self._lock = threading.Lock()

    def increment(self, amount: int = 1) -> int:
        with self._lock:
            self._value += amount
            return self._value

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def reset(self) -> None:
        with self._lock:
            self._value = 0


@dataclass(frozen=True)
class RunSummary:
    total: int
    executions: int
    passed: int
    failed: int
    skipped: int
    retried: int
    attachments: int
    errors: int
    duration_ms: int

    @property
    def pass_rate(self) -> float:
        """Passed over passed + failed, in percent. Skips are excluded."""
        decided = self.passed + self.failed
        if decided == 0:
            return 0.0
        return self.passed * 100.0 / decided


class ResultAggregator:
    """
    Tracks active executions and the final outcome of every logical test.

    A logical test is identified by its ``"<suite>#<test>"`` key. The last
    attempt to complete decides its outcome.
    """

    def __init__(self):
        self.started = AtomicCounter()
        self.retried = AtomicCounter()
        self.completed = AtomicCounter()
        self.attachments = AtomicCounter()
        self.errors = AtomicCounter()
        self.duration_ms = AtomicCounter()
        self._active: Dict[str, TestExecution] = {}
        self._outcomes: Dict[str, TestStatus] = {}
        self._lock = threading.Lock()

    def start(self, execution: TestExecution) -> None:
        self.started.increment()
        if execution.retry > 0:
            self.retried.increment()
        with self._lock:
            self._active[execution.key] = execution

    def lookup(self, key: str) -> Optional[TestExecution]:
        with self._lock:
            return self._active.get(key)

    def finish(self, execution: TestExecution) -> None:
        self.completed.increment()
        self.duration_ms.increment(execution.duration or 0)
        with self._lock:
            if self._active.get(execution.key) is execution:
                del self._active[execution.key]
            self._outcomes[execution.key] = execution.status

    def count(self, status: TestStatus) -> int:
        with self._lock:
            return sum(1 for outcome in self._outcomes.values() if outcome == status)

    def summary(self) -> RunSummary:
        with self._lock:
            outcomes = list(self._outcomes.values())
        return RunSummary(
            total=len(outcomes),
            executions=self.started.value,
            passed=outcomes.count(TestStatus.PASSED),
            failed=outcomes.count(TestStatus.FAILED),
            skipped=outcomes.count(TestStatus.SKIPPED),
            retried=self.retried.value,
            attachments=self.attachments.value,
            errors=self.errors.value,
            duration_ms=self.duration_ms.value,
        )

    def reset(self) -> None:
        for counter in (
            self.started, self.retried, self.completed,
            self.attachments, self.errors, self.duration_ms,
        ):
            counter.reset()
        with self._lock:
            self._active.clear()
            self._outcomes.clear()


def render_summary(
    summary: RunSummary,
    run_id: Optional[str] = None,
    server_url: Optional[str] = None,
) -> List[str]:
    """Terminal lines describing the run."""
    lines = [
        f"Tests: {summary.total} ({summary.executions} executions)",
        f"Passed: {summary.passed}  Failed: {summary.failed}  "
        f"Skipped: {summary.skipped}  Retried: {summary.retried}",
        f"Pass rate: {summary.pass_rate:.1f}%",
        f"Attachments uploaded: {summary.attachments}",
    ]
    if summary.errors:
        lines.append(f"Delivery errors: {summary.errors}")
    if run_id:
        lines.append(f"Run ID: {run_id}")
    if server_url:
        lines.append(f"Dashboard: {server_url.rstrip('/')}")
    return lines
