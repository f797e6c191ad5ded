"""
Playwright artifact capture for failed tests.

Pages and browser contexts are registered explicitly, either through the
functions below or the ``m00n_playwright`` fixture. On failure the reporter
captures, independently and best-effort:

- a full-page screenshot
- the Playwright trace (when tracing was started on the context)
- the page video, after fixture teardown has closed the context

Only the synchronous Playwright API is supported; async API objects are
skipped.
"""

import inspect
import logging
import re
import time
from pathlib import Path
from typing import Any, Callable, Optional, Union

from m00n_reporter.context import ArtifactSession, CorrelationState, current_state
from m00n_reporter.models import Attachment

logger = logging.getLogger("m00n_reporter")

SCREENSHOT_NAME = "failure-screenshot.png"
TRACE_NAME = "trace.zip"
VIDEO_NAME = "video.webm"
TRACE_DIR = Path("test-results") / "traces"

VIDEO_TIMEOUT_SECONDS = 2.0
VIDEO_POLL_SECONDS = 0.1

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


# ============================================================================
# Registration
# ============================================================================

def _session() -> Optional[ArtifactSession]:
    state = current_state()
    if state is None:
        logger.debug("No active test execution, artifact registration ignored")
        return None
    return state.artifacts


def register_page(page: Any) -> None:
    session = _session()
    if session is not None:
        session.page = page


def register_context(context: Any) -> None:
    session = _session()
    if session is not None:
        session.context = context


def set_trace_path(path: Union[str, Path]) -> None:
    session = _session()
    if session is not None:
        session.trace_path = str(path)


def set_video_path_supplier(supplier: Callable[[], Any]) -> None:
    session = _session()
    if session is not None:
        session.video_path_supplier = supplier


def mark_screenshot_captured() -> None:
    """Skip automatic screenshot capture for the current test."""
    session = _session()
    if session is not None:
        session.screenshot_captured = True


def mark_trace_captured() -> None:
    """Skip automatic trace capture for the current test."""
    session = _session()
    if session is not None:
        session.trace_captured = True


def attach(
    name: str,
    data: Optional[bytes] = None,
    path: Optional[Union[str, Path]] = None,
    content_type: str = "application/octet-stream",
) -> Optional[Attachment]:
    """
    Attach an artifact to the current test execution.

    Exactly one of ``data`` or ``path`` should be given.
    """
    state = current_state()
    if state is None:
        logger.debug(f"No active test execution, attachment {name} dropped")
        return None

    if path is not None:
        attachment = Attachment.from_path(name, Path(path), content_type)
    else:
        attachment = Attachment.from_bytes(name, data or b"", content_type)
    state.reporter.attach(state.execution, attachment)
    return attachment


# ============================================================================
# Capture
# ============================================================================

def _is_async(method: Any) -> bool:
    return inspect.iscoroutinefunction(method)


def _sanitize(name: str) -> str:
    return _UNSAFE.sub("_", name).strip("_") or "test"


def capture_screenshot(state: CorrelationState) -> Optional[Attachment]:
    session = state.artifacts
    if session.screenshot_captured or session.page is None:
        return None
    session.screenshot_captured = True

    try:
        screenshot = session.page.screenshot
        if _is_async(screenshot):
            logger.debug("Async Playwright page, screenshot skipped")
            return None
        data = screenshot(full_page=True)
    except Exception as e:
        logger.warning(f"Failed to capture screenshot: {e}")
        return None

    attachment = Attachment.screenshot(SCREENSHOT_NAME, data)
    state.reporter.attach(state.execution, attachment)
    logger.debug(f"Captured screenshot ({len(data)} bytes)")
    return attachment


def capture_trace(state: CorrelationState) -> Optional[Attachment]:
    session = state.artifacts
    if session.trace_captured or session.context is None:
        return None
    session.trace_captured = True

    path = Path(session.trace_path) if session.trace_path else (
        TRACE_DIR / f"{_sanitize(state.execution.test_name)}-trace.zip"
    )
    try:
        stop = session.context.tracing.stop
        if _is_async(stop):
            logger.debug("Async Playwright context, trace skipped")
            return None
        path.parent.mkdir(parents=True, exist_ok=True)
        stop(path=str(path))
        data = path.read_bytes()
    except Exception as e:
        logger.warning(f"Failed to capture trace: {e}")
        return None

    attachment = Attachment.trace(TRACE_NAME, data)
    state.reporter.attach(state.execution, attachment)
    logger.debug(f"Captured trace from {path}")
    return attachment


def capture_on_failure(state: CorrelationState) -> None:
    """Screenshot and trace; each is attempted even if the other fails."""
    capture_screenshot(state)
    capture_trace(state)


def _video_path(session: ArtifactSession) -> Optional[Path]:
    if session.video_path_supplier is not None:
        value = session.video_path_supplier()
        return Path(value) if value else None

    video = getattr(session.page, "video", None) if session.page is not None else None
    if video is None:
        return None
    if _is_async(video.path):
        logger.debug("Async Playwright page, video skipped")
        return None
    value = video.path()
    return Path(value) if value else None


def wait_for_stable_file(
    path: Path,
    timeout: float = VIDEO_TIMEOUT_SECONDS,
    interval: float = VIDEO_POLL_SECONDS,
) -> bool:
    """
    Poll until the file size is non-zero and unchanged between two checks.

    Returns False on timeout; the caller may still read whatever exists.
    """
    deadline = time.monotonic() + timeout
    last_size = -1
    while time.monotonic() < deadline:
        size = path.stat().st_size if path.is_file() else 0
        if size > 0 and size == last_size:
            return True
        last_size = size
        time.sleep(interval)
    return False


def capture_video(state: CorrelationState) -> Optional[Attachment]:
    """Read the page video once the browser context has been closed."""
    session = state.artifacts
    if session.video_captured:
        return None
    session.video_captured = True

    try:
        path = _video_path(session)
        if path is None:
            return None
        if not wait_for_stable_file(path):
            logger.debug(f"Video {path} still growing after {VIDEO_TIMEOUT_SECONDS}s")
        if not path.is_file():
            logger.debug(f"Video {path} was never written")
            return None
        data = path.read_bytes()
    except Exception as e:
        logger.warning(f"Failed to capture video: {e}")
        return None

    attachment = Attachment.video(VIDEO_NAME, data)
    state.reporter.attach(state.execution, attachment)
    logger.debug(f"Captured video ({len(data)} bytes)")
    return attachment
