"""
In-memory data model for runs, test executions, steps and attachments.
"""

import time
import traceback
import uuid
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, PrivateAttr


def utc_now() -> str:
    """Current time as an ISO-8601 UTC timestamp."""
    return datetime.now(timezone.utc).isoformat()


def new_id() -> str:
    return str(uuid.uuid4())


class TestStatus(str, Enum):
    __test__ = False

    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    SKIPPED = "skipped"


class RunStatus(str, Enum):
    RUNNING = "running"
    PASSED = "passed"
    FAILED = "failed"
    FINISHED = "finished"


class StepStateError(Exception):
    """Raised when a finished step is modified."""
    pass


# ============================================================================
# Errors and Attachments
# ============================================================================

class ErrorInfo(BaseModel):
    """Message, stack text and exception class name of a failure."""
    message: Optional[str] = None
    stack: Optional[str] = None
    kind: Optional[str] = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> "ErrorInfo":
        stack = "".join(traceback.format_exception(type(exc), exc, exc.__traceback__))
        return cls(message=str(exc), stack=stack, kind=type(exc).__name__)


class Attachment(BaseModel):
    """A named binary artifact, either inline bytes or a file on disk."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    name: str
    content_type: str
    data: Optional[bytes] = None
    path: Optional[Path] = None

    @property
    def size(self) -> int:
        if self.data is not None:
            return len(self.data)
        if self.path is not None and self.path.is_file():
            return self.path.stat().st_size
        return 0

    @property
    def is_file(self) -> bool:
        return self.path is not None

    @classmethod
    def from_bytes(cls, name: str, data: bytes, content_type: str) -> "Attachment":
        return cls(name=name, data=data, content_type=content_type)

    @classmethod
    def from_path(cls, name: str, path: Path, content_type: str) -> "Attachment":
        return cls(name=name, path=Path(path), content_type=content_type)

    @classmethod
    def screenshot(cls, name: str, data: bytes) -> "Attachment":
        return cls.from_bytes(_with_suffix(name, ".png"), data, "image/png")

    @classmethod
    def trace(cls, name: str, data: bytes) -> "Attachment":
        return cls.from_bytes(_with_suffix(name, ".zip"), data, "application/zip")

    @classmethod
    def video(cls, name: str, data: bytes) -> "Attachment":
        return cls.from_bytes(_with_suffix(name, ".webm"), data, "video/webm")


def _with_suffix(name: str, suffix: str) -> str:
    return name if name.endswith(suffix) else name + suffix


# ============================================================================
# Steps and Test Executions
# ============================================================================

class Step(BaseModel):
    """A titled, timed unit of work inside a test execution."""
    title: str
    category: str = "step"
    index: int
    nesting_level: int = 0
    status: TestStatus = TestStatus.RUNNING
    duration: Optional[int] = None
    error: Optional[ErrorInfo] = None

    _started: float = PrivateAttr(default_factory=time.monotonic)

    @property
    def finished(self) -> bool:
        return self.status != TestStatus.RUNNING

    def __setattr__(self, name: str, value: Any) -> None:
        if not name.startswith("_") and self.finished:
            raise StepStateError(f"Step {self.index} '{self.title}' is {self.status.value} and cannot change")
        super().__setattr__(name, value)

    def finish(self, error: Optional[BaseException] = None) -> "Step":
        """Move the step out of ``running``; passed unless an error is given."""
        if self.finished:
            raise StepStateError(f"Step {self.index} '{self.title}' is already {self.status.value}")
        self.duration = int((time.monotonic() - self._started) * 1000)
        if error is not None:
            self.error = ErrorInfo.from_exception(error)
            self.status = TestStatus.FAILED
        else:
            self.status = TestStatus.PASSED
        return self


class TestExecution(BaseModel):
    """One attempt of one test."""

    __test__ = False

    id: str = Field(default_factory=new_id)
    run_id: Optional[str] = None
    key: str
    title_path: List[str]
    file_path: str = ""
    retry: int = 0
    started_at: str = Field(default_factory=utc_now)
    ended_at: Optional[str] = None
    status: TestStatus = TestStatus.RUNNING
    duration: Optional[int] = None
    error: Optional[ErrorInfo] = None
    steps: List[Step] = Field(default_factory=list)
    attachments: List[Attachment] = Field(default_factory=list)

    _started: float = PrivateAttr(default_factory=time.monotonic)

    @property
    def completed(self) -> bool:
        return self.status != TestStatus.RUNNING

    @property
    def test_name(self) -> str:
        return self.title_path[-1] if self.title_path else ""

    def add_step(self, title: str, category: str = "step", nesting_level: int = 0) -> Step:
        step = Step(title=title, category=category, index=len(self.steps), nesting_level=nesting_level)
        self.steps.append(step)
        return step

    def add_attachment(self, attachment: Attachment) -> None:
        self.attachments.append(attachment)

    def end(self, status: TestStatus, error: Optional[BaseException] = None) -> None:
        self.ended_at = utc_now()
        self.duration = int((time.monotonic() - self._started) * 1000)
        self.status = TestStatus(status)
        if error is not None:
            self.error = ErrorInfo.from_exception(error)


def build_title_path(project: str, file_path: str, suite: str, test_name: str) -> List[str]:
    """
    Title path used to correlate start and completion on the server.

    [0] project, [1] shard (always empty), [2] file path, [3] suite, [4] test.
    """
    return [project or "", "", file_path or "", suite or "", test_name or ""]


def execution_key(suite: str, test_name: str) -> str:
    return f"{suite}#{test_name}"


class RunContext(BaseModel):
    """State of the current run as assigned by the server."""
    run_id: Optional[str] = None
    started_at: Optional[str] = None
    ended_at: Optional[str] = None
    status: Optional[RunStatus] = None
    started: bool = False
    ended: bool = False

    _started: float = PrivateAttr(default=0.0)

    def begin(self, run_id: str) -> None:
        self.run_id = run_id
        self.started_at = utc_now()
        self.status = RunStatus.RUNNING
        self.started = True
        self._started = time.monotonic()

    def finish(self, status: RunStatus) -> None:
        self.ended_at = utc_now()
        self.status = RunStatus(status)
        self.ended = True

    @property
    def elapsed_ms(self) -> int:
        if not self._started:
            return 0
        return int((time.monotonic() - self._started) * 1000)

    def reset(self) -> None:
        self.run_id = None
        self.started_at = None
        self.ended_at = None
        self.status = None
        self.started = False
        self.ended = False
        self._started = 0.0
