"""
Execution-context-local correlation state.

Each thread (and each asyncio task, which copies its parent's context) sees
its own current test execution, so concurrent tests never share state.
"""

from contextvars import ContextVar
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from m00n_reporter.models import TestExecution

if TYPE_CHECKING:
    from m00n_reporter.reporter import Reporter


@dataclass
class ArtifactSession:
    """Playwright objects and capture flags bound to one execution."""
    page: Any = None
    context: Any = None
    trace_path: Optional[str] = None
    video_path_supplier: Any = None
    screenshot_captured: bool = False
    trace_captured: bool = False
    video_captured: bool = False


@dataclass
class CorrelationState:
    execution: TestExecution
    reporter: "Reporter"
    reported: bool = False
    failed: bool = False
    artifacts: ArtifactSession = field(default_factory=ArtifactSession)


_current: ContextVar[Optional[CorrelationState]] = ContextVar("m00n_current_state", default=None)


def current_state() -> Optional[CorrelationState]:
    return _current.get()


def activate(state: CorrelationState) -> None:
    _current.set(state)


def clear() -> Optional[CorrelationState]:
    state = _current.get()
    _current.set(None)
    return state
