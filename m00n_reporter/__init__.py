"""
M00n Reporter
=============

A pytest plugin that streams test runs, tests, steps and attachments to a
M00n Report dashboard.

Usage:
    # Automatically via pytest plugin (auto-loaded)
    M00N_SERVER_URL=http://localhost:4000 M00N_API_KEY=... pytest tests/

    # Steps
    @step("Open {url}")
    def open_page(page, url):
        page.goto(url)

    with step("Submit the form"):
        ...

    # Step recording without editing call sites
    login = step_proxy(LoginPage(page))

    # CLI
    m00n-reporter check
    m00n-reporter run pytest tests/
"""

__version__ = "1.0.0"

from m00n_reporter.artifacts import (
    attach,
    mark_screenshot_captured,
    mark_trace_captured,
    register_context,
    register_page,
    set_trace_path,
    set_video_path_supplier,
)
from m00n_reporter.config import ReporterConfig
from m00n_reporter.reporter import Reporter
from m00n_reporter.steps import StepProxy, step, step_proxy

__all__ = [
    "Reporter",
    "ReporterConfig",
    "StepProxy",
    "attach",
    "mark_screenshot_captured",
    "mark_trace_captured",
    "register_context",
    "register_page",
    "set_trace_path",
    "set_video_path_supplier",
    "step",
    "step_proxy",
    "__version__",
]
