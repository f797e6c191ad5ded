"""
Example: Failure artifacts.

When a test fails the reporter uploads a full-page screenshot, the Playwright
trace and the page video of every registered page and context.

Requires pytest-playwright; record video with:
    pytest examples/test_example_artifacts.py --video=on
"""

import pytest

from m00n_reporter import attach


@pytest.fixture
def traced_context(context, m00n_playwright):
    context.tracing.start(screenshots=True, snapshots=True)
    m00n_playwright.register_context(context)
    m00n_playwright.set_trace_path("test-results/traces/search-trace.zip")
    yield context


def test_search_results(page, traced_context, m00n_playwright):
    m00n_playwright.register_page(page)

    page.goto("https://example.com/search?q=shoes")
    attach("query.txt", data=b"q=shoes", content_type="text/plain")

    # Fails on purpose: screenshot, trace and video are uploaded.
    assert page.locator(".result").count() > 0


def test_own_screenshot(page, m00n_playwright):
    m00n_playwright.register_page(page)
    m00n_playwright.mark_screenshot_captured()

    page.goto("https://example.com")
    attach("home.png", data=page.screenshot(), content_type="image/png")
