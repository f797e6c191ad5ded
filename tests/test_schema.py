"""
Tests for the data model and wire schemas.

Validates:
- camelCase wire field names
- Completion payload carries steps and error detail
- Step state transitions
- Attachment factories
"""

import pytest

from m00n_reporter.models import (
    Attachment,
    ErrorInfo,
    RunContext,
    RunStatus,
    StepStateError,
    TestExecution,
    TestStatus,
    build_title_path,
    execution_key,
)
from m00n_reporter.payloads import (
    RunStartAck,
    RunStartPayload,
    StepStreamPayload,
    TestCompletePayload,
    TestStartPayload,
)


@pytest.fixture
def execution():
    execution = TestExecution(
        run_id="run-1",
        key=execution_key("LoginTests", "test_login"),
        title_path=build_title_path("web", "tests/test_login.py", "LoginTests", "test_login"),
        file_path="tests/test_login.py",
        retry=1,
    )
    return execution


class TestTitlePath:
    def test_layout(self):
        assert build_title_path("web", "tests/a.py", "Suite", "test_x") == [
            "web", "", "tests/a.py", "Suite", "test_x",
        ]

    def test_missing_parts_are_empty_strings(self):
        assert build_title_path(None, None, None, None) == ["", "", "", "", ""]

    def test_execution_key(self):
        assert execution_key("Suite", "test_x") == "Suite#test_x"


class TestSteps:
    def test_indices_follow_insertion_order(self, execution):
        first = execution.add_step("Open page")
        second = execution.add_step("Click", nesting_level=1)
        assert (first.index, second.index) == (0, 1)
        assert second.nesting_level == 1

    def test_finish_passed(self, execution):
        step = execution.add_step("Open page")
        step.finish()
        assert step.status == TestStatus.PASSED
        assert step.duration is not None and step.duration >= 0

    def test_finish_failed_records_error(self, execution):
        step = execution.add_step("Open page")
        step.finish(ValueError("no such page"))
        assert step.status == TestStatus.FAILED
        assert step.error.message == "no such page"
        assert step.error.kind == "ValueError"

    def test_finished_step_is_immutable(self, execution):
        step = execution.add_step("Open page")
        step.finish()
        with pytest.raises(StepStateError):
            step.finish(ValueError("late"))
        with pytest.raises(StepStateError):
            step.title = "Renamed"
        with pytest.raises(StepStateError):
            step.status = TestStatus.FAILED
        assert step.status == TestStatus.PASSED
        assert step.title == "Open page"


class TestAttachments:
    def test_factories(self):
        assert Attachment.screenshot("shot", b"x").name == "shot.png"
        assert Attachment.screenshot("shot.png", b"x").content_type == "image/png"
        assert Attachment.trace("trace", b"x").content_type == "application/zip"
        assert Attachment.video("video.webm", b"x").name == "video.webm"

    def test_size_and_read(self, tmp_path):
        path = tmp_path / "log.txt"
        path.write_bytes(b"hello")
        on_disk = Attachment.from_path("log.txt", path, "text/plain")
        inline = Attachment.from_bytes("data.bin", b"abc", "application/octet-stream")

        assert on_disk.is_file and on_disk.size == 5 and on_disk.path.read_bytes() == b"hello"
        assert not inline.is_file and inline.size == 3 and inline.data == b"abc"

    def test_unique_ids(self):
        assert Attachment.from_bytes("a", b"", "x").id != Attachment.from_bytes("a", b"", "x").id


class TestPayloads:
    def test_run_start_field_names(self):
        payload = RunStartPayload(
            launch="Nightly", tags=["smoke"], total=3, startedAt="2026-01-01T00:00:00+00:00",
            attributes={"framework": "pytest"},
        )
        assert payload.model_dump() == {
            "launch": "Nightly",
            "tags": ["smoke"],
            "total": 3,
            "startedAt": "2026-01-01T00:00:00+00:00",
            "attributes": {"framework": "pytest"},
        }

    def test_run_start_ack(self):
        assert RunStartAck.model_validate({"runId": "abc", "extra": 1}).runId == "abc"
        assert RunStartAck.model_validate({}).runId is None

    def test_test_start(self, execution):
        data = TestStartPayload.from_execution(execution).model_dump()
        assert data["runId"] == "run-1"
        assert data["testId"] == execution.id
        assert data["titlePath"] == ["web", "", "tests/test_login.py", "LoginTests", "test_login"]
        assert data["filePath"] == "tests/test_login.py"
        assert data["retry"] == 1

    def test_test_complete_with_steps_and_error(self, execution):
        execution.add_step("Open page").finish()
        execution.add_step("Submit", nesting_level=1).finish(AssertionError("bad"))
        try:
            raise AssertionError("expected 1 == 2")
        except AssertionError as e:
            execution.end(TestStatus.FAILED, e)

        data = TestCompletePayload.from_execution(execution).model_dump()

        assert data["status"] == "failed"
        assert data["endedAt"] is not None
        assert data["error"]["message"] == "expected 1 == 2"
        assert data["error"]["name"] == "AssertionError"
        assert "Traceback" in data["error"]["stack"]
        assert [s["title"] for s in data["steps"]] == ["Open page", "Submit"]
        assert data["steps"][1]["nestingLevel"] == 1
        assert data["steps"][1]["error"]["message"] == "bad"
        assert data["attachments"] == []

    def test_start_and_complete_share_title_path(self, execution):
        start = TestStartPayload.from_execution(execution)
        execution.end(TestStatus.PASSED)
        complete = TestCompletePayload.from_execution(execution)
        assert start.titlePath == complete.titlePath

    def test_step_stream_item(self, execution):
        step = execution.add_step("Open page", category="navigation")

        data = StepStreamPayload.single(execution, step, "append").model_dump()

        assert data == {"items": [{
            "runId": "run-1",
            "testId": execution.id,
            "title": "Open page",
            "category": "navigation",
            "status": "running",
            "duration": None,
            "stepIndex": 0,
            "nestingLevel": 0,
            "action": "append",
            "error": None,
        }]}


class TestRunContext:
    def test_lifecycle(self):
        run = RunContext()
        run.begin("run-1")
        assert run.started and not run.ended
        assert run.status == RunStatus.RUNNING

        run.finish(RunStatus.PASSED)
        assert run.ended and run.ended_at is not None

        run.reset()
        assert run.run_id is None and not run.started and not run.ended


def test_error_info_from_exception():
    try:
        raise KeyError("missing")
    except KeyError as e:
        info = ErrorInfo.from_exception(e)
    assert info.kind == "KeyError"
    assert "KeyError" in info.stack
