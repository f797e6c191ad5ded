"""
Event correlation: which events belong to which test execution.

A test execution moves IDLE -> ACTIVE (``begin``) -> REPORTED (``report``)
-> IDLE (``end``). Two observers report the outcome, the test-body
interceptor and the report watcher; only the first one is delivered.
"""

import logging
import re
import unittest
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional

import pytest

from m00n_reporter.context import CorrelationState, activate, clear, current_state
from m00n_reporter.models import (
    TestExecution,
    TestStatus,
    build_title_path,
    execution_key,
)

if TYPE_CHECKING:
    from m00n_reporter.reporter import Reporter

logger = logging.getLogger("m00n_reporter")

_ATTEMPT_SUFFIX = re.compile(r"[\s\-–:]*\bAttempt\s*(\d+)\s*$", re.IGNORECASE)

SKIP_EXCEPTIONS = (pytest.skip.Exception, unittest.SkipTest)


@dataclass(frozen=True)
class RetryIdentity:
    base_name: str
    attempt: int = 0

    @property
    def retry_index(self) -> int:
        return self.attempt - 1 if self.attempt > 0 else 0


def parse_retry_identity(display_name: str) -> RetryIdentity:
    """
    Split a trailing ``Attempt N`` marker off a display name.

    >>> parse_retry_identity("Flaky test - Attempt 2")
    RetryIdentity(base_name='Flaky test', attempt=2)
    >>> parse_retry_identity("test_x[1599]")
    RetryIdentity(base_name='test_x[1599]', attempt=0)
    """
    match = _ATTEMPT_SUFFIX.search(display_name)
    if match is None:
        return RetryIdentity(display_name, 0)
    base = display_name[:match.start()].strip()
    return RetryIdentity(base or display_name, int(match.group(1)))


def is_xfail(exc: BaseException) -> bool:
    return isinstance(exc, pytest.xfail.Exception)


def classify_abort(exc: BaseException) -> TestStatus:
    """
    Skipped only for a skip-type exception with no chained cause.

    A skip raised while handling another error (``raise SkipTest(...) from e``)
    hides a real failure and is reported as failed.
    """
    if isinstance(exc, SKIP_EXCEPTIONS):
        if exc.__cause__ is None:
            return TestStatus.SKIPPED
        logger.debug(f"Skip raised from {type(exc.__cause__).__name__}, reporting as failed")
    return TestStatus.FAILED


class EventCorrelator:
    """Binds test executions to the current execution context."""

    def __init__(self, reporter: "Reporter"):
        self.reporter = reporter

    def begin(
        self,
        suite: str,
        test_name: str,
        file_path: str,
        attempt: Optional[int] = None,
    ) -> Optional[TestExecution]:
        """
        Start a new execution and make it current.

        Args:
            suite: Suite display name (class path or module).
            test_name: Test display name, possibly with an ``Attempt N`` suffix.
            file_path: Source file relative to the rootdir.
            attempt: 1-based attempt number from the test runner, if known.
                Takes precedence over the display-name suffix.

        Returns:
            The new execution, or None when no run is in progress.
        """
        if not self.reporter.running:
            clear()
            return None

        identity = parse_retry_identity(test_name)
        if attempt is not None and attempt > 0:
            identity = RetryIdentity(identity.base_name, attempt)

        execution = TestExecution(
            key=execution_key(suite, identity.base_name),
            title_path=build_title_path(
                self.reporter.config.project, file_path, suite, identity.base_name
            ),
            file_path=file_path,
            retry=identity.retry_index,
        )
        self.reporter.start_test(execution)
        activate(CorrelationState(execution=execution, reporter=self.reporter))
        return execution

    def report(self, status: TestStatus, error: Optional[BaseException] = None) -> bool:
        """
        Complete the current execution.

        Returns:
            True if this call delivered the completion, False if there was no
            current execution or it had already been reported.
        """
        state = current_state()
        if state is None:
            logger.debug(f"No active execution to report {status.value}")
            return False
        if state.reported:
            logger.debug(f"{state.execution.test_name} already reported, ignoring {status.value}")
            return False

        state.reported = True
        if status == TestStatus.FAILED:
            state.failed = True
        state.execution.end(status, error)
        self.reporter.complete_test(state.execution)
        return True

    def report_exception(self, exc: BaseException) -> Optional[TestStatus]:
        """
        Report an exception raised by the test body.

        xfail outcomes are left for the report watcher, which knows whether
        the test was expected to fail.
        """
        if is_xfail(exc):
            return None
        status = classify_abort(exc)
        self.report(status, exc)
        return status

    def report_disabled(self, suite: str, test_name: str, file_path: str) -> Optional[TestExecution]:
        """Report a test skipped before any execution was started for it."""
        if not self.reporter.running:
            return None

        identity = parse_retry_identity(test_name)
        execution = TestExecution(
            key=execution_key(suite, identity.base_name),
            title_path=build_title_path(
                self.reporter.config.project, file_path, suite, identity.base_name
            ),
            file_path=file_path,
        )
        self.reporter.start_test(execution)
        execution.end(TestStatus.SKIPPED)
        self.reporter.complete_test(execution)
        return execution

    def end(self) -> Optional[CorrelationState]:
        """Clear the current execution, reported or not."""
        state = clear()
        if state is not None and not state.reported:
            logger.debug(f"{state.execution.test_name} ended without a reported outcome")
        return state
