"""
Pytest plugin for M00n reporting.

This plugin:
- Auto-loads via pytest11 entry point
- Reads options from the command line, environment, ini file and m00n.properties
- Registers the reporting hooks only when a server URL and API key are configured
- Starts the run after collection and ends it when the session finishes
- Correlates setup, call and teardown of every test (and every rerun) into
  one reported execution
- Captures Playwright artifacts on failure
"""

import logging
from pathlib import Path
from typing import Any, Callable, Optional, Tuple, Union

import pytest

from m00n_reporter import artifacts
from m00n_reporter.config import ReporterConfig
from m00n_reporter.context import current_state
from m00n_reporter.correlator import EventCorrelator, classify_abort
from m00n_reporter.models import Attachment, TestStatus
from m00n_reporter.reporter import Reporter

logger = logging.getLogger("m00n_reporter")

PLUGIN_NAME = "m00n-reporter"

INI_OPTIONS = (
    ("enabled", "Enable M00n reporting (true/false)"),
    ("server_url", "M00n server URL"),
    ("api_key", "M00n project API key"),
    ("launch", "Launch name of the run"),
    ("tags", "Comma-separated run tags"),
    ("debug", "Log every request and response"),
    ("timeout", "Request timeout in milliseconds"),
    ("max_retries", "Attempts per request"),
    ("project", "Project name, first element of every title path"),
)

OBSERVED_OUTCOMES = (
    Exception,
    pytest.skip.Exception,
    pytest.fail.Exception,
)


# ============================================================================
# Test Description
# ============================================================================

def describe(item: pytest.Item) -> Tuple[str, str, str]:
    """
    Suite, display name and file path of a test item.

    The suite is the chain of test classes joined with " > ", or the module
    name for module-level tests. A ``title`` marker replaces the display name;
    parametrize ids are kept.
    """
    file_path = item.nodeid.split("::")[0]
    classes = [node.name for node in item.listchain() if isinstance(node, pytest.Class)]
    suite = " > ".join(classes) if classes else Path(file_path).stem

    name = item.name
    marker = item.get_closest_marker("title")
    if marker is not None and marker.args:
        name = str(marker.args[0])
        callspec = getattr(item, "callspec", None)
        if callspec is not None:
            name = f"{name}[{callspec.id}]"
    return suite, name, file_path


# ============================================================================
# Reporting Plugin
# ============================================================================

class ReporterPlugin:
    """Hook implementations bound to one Reporter."""

    def __init__(self, reporter: Reporter):
        self.reporter = reporter
        self.correlator = EventCorrelator(reporter)

    @pytest.hookimpl(trylast=True)
    def pytest_collection_finish(self, session: pytest.Session):
        if session.config.option.collectonly:
            return
        self.reporter.start_run(len(session.items))

    @pytest.hookimpl(tryfirst=True)
    def pytest_runtest_setup(self, item: pytest.Item):
        suite, name, file_path = describe(item)
        attempt = getattr(item, "execution_count", None)
        self.correlator.begin(suite, name, file_path, attempt=attempt)

    @pytest.hookimpl(wrapper=True)
    def pytest_pyfunc_call(self, pyfuncitem: pytest.Function):
        try:
            return (yield)
        except BaseException as exc:
            if isinstance(exc, OBSERVED_OUTCOMES) and pyfuncitem.get_closest_marker("xfail") is None:
                self.correlator.report_exception(exc)
            raise

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_makereport(self, item: pytest.Item, call: pytest.CallInfo):
        report = yield
        try:
            self._watch(item, call, report)
        except Exception as e:
            logger.error(f"Failed to report {item.nodeid}: {e}")
        return report

    @pytest.hookimpl(wrapper=True)
    def pytest_runtest_teardown(self, item: pytest.Item, nextitem: Optional[pytest.Item]):
        try:
            return (yield)
        finally:
            state = current_state()
            if state is not None and state.failed:
                artifacts.capture_video(state)

    def pytest_sessionfinish(self, session: pytest.Session, exitstatus: int):
        self.reporter.end_run()

    def pytest_terminal_summary(self, terminalreporter: Any):
        if not self.reporter.run.started:
            return
        terminalreporter.write_sep("=", "M00n report")
        for line in self.reporter.summary_lines():
            terminalreporter.write_line(line)

    def pytest_unconfigure(self, config: pytest.Config):
        self.reporter.shutdown()

    def _watch(self, item: pytest.Item, call: pytest.CallInfo, report: pytest.TestReport):
        state = current_state()
        if state is None:
            if report.when == "setup" and report.skipped:
                self.correlator.report_disabled(*describe(item))
            return

        error = call.excinfo.value if call.excinfo is not None else None

        if report.when == "teardown":
            if not state.reported:
                self.correlator.report(
                    TestStatus.FAILED if report.failed else TestStatus.PASSED, error
                )
            self.correlator.end()
            return

        status = _outcome(report, error)
        if status is None:
            return
        if status == TestStatus.FAILED:
            state.failed = True
        self.correlator.report(status, error)
        if state.failed:
            artifacts.capture_on_failure(state)


def _outcome(report: pytest.TestReport, error: Optional[BaseException]) -> Optional[TestStatus]:
    if report.passed:
        return TestStatus.PASSED if report.when == "call" else None
    if report.skipped:
        if hasattr(report, "wasxfail") or error is None:
            return TestStatus.SKIPPED
        return classify_abort(error)
    return TestStatus.FAILED


# ============================================================================
# Fixture
# ============================================================================

class PlaywrightArtifacts:
    """Registration handle returned by the ``m00n_playwright`` fixture."""

    def register_page(self, page: Any) -> Any:
        artifacts.register_page(page)
        return page

    def register_context(self, context: Any) -> Any:
        artifacts.register_context(context)
        return context

    def set_trace_path(self, path: Union[str, Path]) -> None:
        artifacts.set_trace_path(path)

    def set_video_path_supplier(self, supplier: Callable[[], Any]) -> None:
        artifacts.set_video_path_supplier(supplier)

    def mark_screenshot_captured(self) -> None:
        artifacts.mark_screenshot_captured()

    def mark_trace_captured(self) -> None:
        artifacts.mark_trace_captured()

    def attach(
        self,
        name: str,
        data: Optional[bytes] = None,
        path: Optional[Union[str, Path]] = None,
        content_type: str = "application/octet-stream",
    ) -> Optional[Attachment]:
        return artifacts.attach(name, data=data, path=path, content_type=content_type)


@pytest.fixture
def m00n_playwright() -> PlaywrightArtifacts:
    """
    Register Playwright objects for failure artifacts.

    Example:
        def test_login(page, context, m00n_playwright):
            m00n_playwright.register_page(page)
            m00n_playwright.register_context(context)
    """
    return PlaywrightArtifacts()


# ============================================================================
# Pytest Hooks
# ============================================================================

def pytest_addoption(parser: pytest.Parser):
    group = parser.getgroup("m00n", "M00n dashboard reporting")
    group.addoption("--m00n-server-url", dest="m00n_server_url", help="M00n server URL")
    group.addoption("--m00n-api-key", dest="m00n_api_key", help="M00n project API key")
    group.addoption("--m00n-launch", dest="m00n_launch", help="Launch name of the run")
    group.addoption("--m00n-tags", dest="m00n_tags", help="Comma-separated run tags")
    group.addoption("--m00n-project", dest="m00n_project", help="Project name")
    group.addoption(
        "--m00n-debug", dest="m00n_debug", action="store_true", default=False,
        help="Log every request and response",
    )
    group.addoption(
        "--no-m00n", dest="m00n_disabled", action="store_true", default=False,
        help="Disable M00n reporting",
    )

    for name, help_text in INI_OPTIONS:
        parser.addini(f"m00n_{name}", help_text, default="")


def load_config(config: pytest.Config) -> ReporterConfig:
    """Resolve the reporter configuration from pytest options and ini values."""
    option = config.option
    overrides = {
        "server_url": option.m00n_server_url,
        "api_key": option.m00n_api_key,
        "launch": option.m00n_launch,
        "tags": option.m00n_tags,
        "project": option.m00n_project,
        "debug": "true" if option.m00n_debug else None,
        "enabled": "false" if option.m00n_disabled else None,
    }
    file_values = {name: config.getini(f"m00n_{name}") for name, _ in INI_OPTIONS}
    return ReporterConfig.load(overrides=overrides, file_values=file_values)


def pytest_configure(config: pytest.Config):
    """Called after command line options are parsed."""
    config.addinivalue_line("markers", "title(name): display name reported to M00n")

    reporter_config = load_config(config)
    if reporter_config.debug:
        logger.setLevel(logging.DEBUG)

    if not reporter_config.enabled or config.pluginmanager.has_plugin(PLUGIN_NAME):
        return

    config.pluginmanager.register(ReporterPlugin(Reporter(reporter_config)), PLUGIN_NAME)
    logger.debug("m00n reporter plugin registered")
