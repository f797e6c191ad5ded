"""
Pydantic schemas for the M00n ingest API.

Field names match the JSON the server expects (camelCase).
"""

from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from m00n_reporter.models import ErrorInfo, Step, TestExecution


# ============================================================================
# Run Lifecycle
# ============================================================================

class RunStartPayload(BaseModel):
    """Body of POST /run/start."""
    launch: str
    tags: List[str] = Field(default_factory=list)
    total: int
    startedAt: str
    attributes: Dict[str, str] = Field(default_factory=dict)


class RunStartAck(BaseModel):
    """Server response to /run/start."""
    runId: Optional[str] = None
    error: Optional[str] = None


class RunEndPayload(BaseModel):
    """Body of POST /run/end."""
    runId: str
    status: Literal["running", "passed", "failed", "finished"]
    endedAt: str


# ============================================================================
# Test Lifecycle
# ============================================================================

class ErrorPayload(BaseModel):
    message: Optional[str] = None
    stack: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_info(cls, info: ErrorInfo) -> "ErrorPayload":
        return cls(message=info.message, stack=info.stack, name=info.kind)


class StepErrorPayload(BaseModel):
    message: Optional[str] = None
    stack: Optional[str] = None


class StepPayload(BaseModel):
    title: str
    category: str
    status: str
    duration: Optional[int] = None
    nestingLevel: int = 0
    index: int
    error: Optional[StepErrorPayload] = None

    @classmethod
    def from_step(cls, step: Step) -> "StepPayload":
        return cls(
            title=step.title,
            category=step.category,
            status=step.status.value,
            duration=step.duration,
            nestingLevel=step.nesting_level,
            index=step.index,
            error=_step_error(step),
        )


class TestStartPayload(BaseModel):
    """Body of POST /test/start."""

    __test__ = False

    runId: str
    testId: str
    titlePath: List[str]
    filePath: str
    retry: int
    startedAt: str

    @classmethod
    def from_execution(cls, execution: TestExecution) -> "TestStartPayload":
        return cls(
            runId=execution.run_id,
            testId=execution.id,
            titlePath=list(execution.title_path),
            filePath=execution.file_path,
            retry=execution.retry,
            startedAt=execution.started_at,
        )


class TestCompletePayload(BaseModel):
    """Body of POST /test/complete."""

    __test__ = False

    testId: str
    runId: str
    filePath: str
    titlePath: List[str]
    retry: int
    startedAt: str
    endedAt: Optional[str] = None
    status: str
    duration: Optional[int] = None
    error: Optional[ErrorPayload] = None
    steps: List[StepPayload] = Field(default_factory=list)
    attachments: List[dict] = Field(default_factory=list)

    @classmethod
    def from_execution(cls, execution: TestExecution) -> "TestCompletePayload":
        return cls(
            testId=execution.id,
            runId=execution.run_id,
            filePath=execution.file_path,
            titlePath=list(execution.title_path),
            retry=execution.retry,
            startedAt=execution.started_at,
            endedAt=execution.ended_at,
            status=execution.status.value,
            duration=execution.duration,
            error=ErrorPayload.from_info(execution.error) if execution.error else None,
            steps=[StepPayload.from_step(step) for step in execution.steps],
        )


# ============================================================================
# Step Stream
# ============================================================================

class StepStreamItem(BaseModel):
    runId: str
    testId: str
    title: str
    category: str
    status: str
    duration: Optional[int] = None
    stepIndex: int
    nestingLevel: int = 0
    action: Literal["append", "end"]
    error: Optional[StepErrorPayload] = None


class StepStreamPayload(BaseModel):
    """Body of POST /steps/stream."""
    items: List[StepStreamItem]

    @classmethod
    def single(
        cls, execution: TestExecution, step: Step, action: Literal["append", "end"]
    ) -> "StepStreamPayload":
        item = StepStreamItem(
            runId=execution.run_id,
            testId=execution.id,
            title=step.title,
            category=step.category,
            status=step.status.value,
            duration=step.duration,
            stepIndex=step.index,
            nestingLevel=step.nesting_level,
            action=action,
            error=_step_error(step),
        )
        return cls(items=[item])


def _step_error(step: Step) -> Optional[StepErrorPayload]:
    if step.error is None:
        return None
    return StepErrorPayload(message=step.error.message, stack=step.error.stack)
