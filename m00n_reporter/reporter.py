"""
Reporter service: run, test, step and attachment delivery.

This module provides:
- Run lifecycle (health check, run/start, run/end) under a single lock
- Synchronous test/start and test/complete delivery
- Fire-and-forget step streaming
- Bounded concurrent attachment uploads
- Delivery error accounting and self-disable on permanent errors
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Dict, List, Literal, Optional

from m00n_reporter.config import ReporterConfig
from m00n_reporter.models import (
    Attachment,
    RunContext,
    RunStatus,
    Step,
    TestExecution,
    TestStatus,
    utc_now,
)
from m00n_reporter.payloads import (
    RunEndPayload,
    RunStartAck,
    RunStartPayload,
    StepStreamPayload,
    TestCompletePayload,
    TestStartPayload,
)
from m00n_reporter.results import ResultAggregator, RunSummary, render_summary
from m00n_reporter.transport import (
    ATTACHMENT_UPLOAD,
    RUN_END,
    RUN_START,
    STEPS_STREAM,
    TEST_COMPLETE,
    TEST_START,
    DeliveryError,
    HttpTransport,
    PermanentDeliveryError,
)
from m00n_reporter.worker import BackgroundAsyncWorker

logger = logging.getLogger("m00n_reporter")

UPLOAD_CONCURRENCY = 4
UPLOAD_WAIT_SECONDS = 60.0
SHUTDOWN_GRACE_SECONDS = 30.0

RUN_ATTRIBUTES = {"framework": "pytest", "language": "Python"}


class Reporter:
    """
    Delivers one test run to the M00n server.

    Hooks call into a Reporter from synchronous code; every network call runs
    on the background worker loop. Delivery failures never propagate to the
    caller.

    Example:
        reporter = Reporter(ReporterConfig.load())
        reporter.start_run(total=3)
        ...
        reporter.end_run()
        reporter.shutdown()
    """

    def __init__(
        self,
        config: ReporterConfig,
        transport: Optional[HttpTransport] = None,
        worker: Optional[BackgroundAsyncWorker] = None,
        aggregator: Optional[ResultAggregator] = None,
    ):
        self.config = config
        self.transport = transport or HttpTransport(config)
        self.worker = worker or BackgroundAsyncWorker()
        self.aggregator = aggregator or ResultAggregator()
        self.run = RunContext()
        self._disabled = False
        self._run_lock = threading.Lock()
        self._uploads: List[concurrent.futures.Future] = []
        self._uploads_lock = threading.Lock()
        self._upload_slots: Optional[asyncio.Semaphore] = None
        self._upload_loop: Optional[asyncio.AbstractEventLoop] = None

        if config.enabled and not config.has_valid_url():
            self.disable(f"invalid server URL {config.server_url!r}")

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def active(self) -> bool:
        """Configured and not disabled."""
        return self.config.enabled and not self._disabled

    @property
    def running(self) -> bool:
        """A run has started on the server and has not ended."""
        return self.active and self.run.started and not self.run.ended

    def disable(self, reason: str) -> None:
        if not self._disabled:
            logger.warning(f"M00n reporting disabled: {reason}")
        self._disabled = True

    # ------------------------------------------------------------------
    # Run lifecycle
    # ------------------------------------------------------------------

    def start_run(self, total: int) -> Optional[str]:
        """
        Start a run on the server.

        Only the first call of a run contacts the server; concurrent or
        repeated calls return the same run ID. A call after a finished run
        begins a fresh one.

        Returns:
            The server-assigned run ID, or None if reporting is unavailable.
        """
        if not self.active:
            return None

        with self._run_lock:
            if self.run.started and not self.run.ended:
                return self.run.run_id
            if self.run.ended:
                self.run.reset()
                self.aggregator.reset()

            if not self._call(self.transport.health_check(), "health check"):
                self.disable(f"server {self.config.server_url} is not healthy")
                return None

            payload = RunStartPayload(
                launch=self.config.launch,
                tags=list(self.config.tags),
                total=total,
                startedAt=utc_now(),
                attributes={**RUN_ATTRIBUTES, **self.config.attributes},
            )
            response = self._deliver(self.transport.post(RUN_START, payload), "run/start")
            if response is None:
                return None

            ack = RunStartAck.model_validate(response)
            if not ack.runId:
                logger.error(f"run/start returned no runId: {ack.error or response}")
                self.aggregator.errors.increment()
                return None

            self.run.begin(ack.runId)
            logger.info(f"Started run {ack.runId} ({total} tests)")
            return ack.runId

    def end_run(self, status: Optional[RunStatus] = None) -> None:
        """
        Finish the run after pending uploads have been given time to complete.

        The status defaults to failed if any test finally failed, passed if
        any passed, else finished.
        """
        with self._run_lock:
            if not self.running:
                return

            self.wait_for_uploads()
            if status is None:
                status = self._derive_status()

            ended_at = utc_now()
            payload = RunEndPayload(runId=self.run.run_id, status=status.value, endedAt=ended_at)
            self._deliver(self.transport.post(RUN_END, payload), "run/end")
            self.run.finish(status)
            logger.info(f"Ended run {self.run.run_id} with status {status.value}")

    def _derive_status(self) -> RunStatus:
        if self.aggregator.count(TestStatus.FAILED):
            return RunStatus.FAILED
        if self.aggregator.count(TestStatus.PASSED):
            return RunStatus.PASSED
        return RunStatus.FINISHED

    # ------------------------------------------------------------------
    # Test lifecycle
    # ------------------------------------------------------------------

    def start_test(self, execution: TestExecution) -> bool:
        """Register the execution and deliver test/start. Blocks until sent."""
        if not self.running:
            return False

        execution.run_id = self.run.run_id
        self.aggregator.start(execution)
        self._deliver(
            self.transport.post(TEST_START, TestStartPayload.from_execution(execution)),
            "test/start",
        )
        if self.config.debug:
            logger.debug(f"Test started: {execution.test_name} (retry {execution.retry})")
        return True

    def complete_test(self, execution: TestExecution) -> None:
        """Deliver test/complete, then upload attachments queued during the test."""
        if execution.run_id is None:
            return

        self.aggregator.finish(execution)
        if not self.running:
            return

        self._deliver(
            self.transport.post(TEST_COMPLETE, TestCompletePayload.from_execution(execution)),
            "test/complete",
        )
        for attachment in list(execution.attachments):
            self._schedule_upload(execution, attachment)

    def stream_step(
        self, execution: TestExecution, step: Step, action: Literal["append", "end"]
    ) -> None:
        """Send one step event without waiting for the server."""
        if not self.running or execution.run_id is None:
            return
        payload = StepStreamPayload.single(execution, step, action)
        self.worker.run_async(self.transport.post_quietly(STEPS_STREAM, payload))

    # ------------------------------------------------------------------
    # Attachments
    # ------------------------------------------------------------------

    def attach(self, execution: TestExecution, attachment: Attachment) -> None:
        """
        Attach an artifact to an execution.

        Before completion the attachment is queued and uploaded right after
        test/complete; afterwards it is uploaded immediately.
        """
        execution.add_attachment(attachment)
        if execution.completed and execution.run_id is not None:
            self._schedule_upload(execution, attachment)

    def _schedule_upload(self, execution: TestExecution, attachment: Attachment) -> None:
        if not self.running:
            return
        future = self.worker.submit(self._upload(execution, attachment))
        with self._uploads_lock:
            self._uploads.append(future)

    async def _upload(self, execution: TestExecution, attachment: Attachment) -> None:
        async with self._slots():
            try:
                await self.transport.upload_attachment(
                    ATTACHMENT_UPLOAD, execution.id, execution.run_id, attachment
                )
                self.aggregator.attachments.increment()
                logger.debug(f"Uploaded {attachment.name} ({attachment.size} bytes)")
            except PermanentDeliveryError as e:
                self._permanent(e)
            except (DeliveryError, OSError) as e:
                self.aggregator.errors.increment()
                logger.warning(f"Failed to upload {attachment.name}: {e}")

    def _slots(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._upload_slots is None or self._upload_loop is not loop:
            self._upload_slots = asyncio.Semaphore(UPLOAD_CONCURRENCY)
            self._upload_loop = loop
        return self._upload_slots

    def wait_for_uploads(self, timeout: float = UPLOAD_WAIT_SECONDS) -> None:
        """Wait up to ``timeout`` seconds for each pending upload."""
        with self._uploads_lock:
            futures, self._uploads = self._uploads, []
        for future in futures:
            try:
                future.result(timeout=timeout)
            except concurrent.futures.TimeoutError:
                future.cancel()
                self.aggregator.errors.increment()
                logger.warning(f"Attachment upload did not finish within {timeout}s")
            except concurrent.futures.CancelledError:
                logger.debug("Attachment upload was cancelled")

    # ------------------------------------------------------------------
    # Summary and shutdown
    # ------------------------------------------------------------------

    def summary(self) -> RunSummary:
        return self.aggregator.summary()

    def summary_lines(self) -> List[str]:
        return render_summary(self.summary(), self.run.run_id, self.config.server_url)

    def shutdown(self, grace: float = SHUTDOWN_GRACE_SECONDS) -> None:
        """Flush uploads, close the HTTP client and stop the worker."""
        if not self.worker.running:
            return
        self.wait_for_uploads(timeout=grace)
        try:
            self.worker.run_sync(self.transport.aclose(), timeout=grace)
        except Exception as e:
            logger.debug(f"Error closing transport: {e}")
        self.worker.stop(grace)

    # ------------------------------------------------------------------
    # Delivery helpers
    # ------------------------------------------------------------------

    def _call(self, coro: Coroutine[Any, Any, Any], what: str) -> Any:
        try:
            return self.worker.run_sync(coro)
        except Exception as e:
            logger.warning(f"{what} failed: {e}")
            return None

    def _deliver(self, coro: Coroutine[Any, Any, Any], what: str) -> Optional[Dict[str, Any]]:
        if self._disabled:
            coro.close()
            return None
        try:
            return self.worker.run_sync(coro)
        except PermanentDeliveryError as e:
            self._permanent(e)
        except DeliveryError as e:
            self.aggregator.errors.increment()
            logger.warning(f"Failed to send {what}: {e}")
        except Exception as e:
            self.aggregator.errors.increment()
            logger.error(f"Unexpected error sending {what}: {e}")
        return None

    def _permanent(self, error: PermanentDeliveryError) -> None:
        self.aggregator.errors.increment()
        if not self._disabled:
            logger.error(
                f"M00n server rejected the request ({error.code}); "
                f"no further results will be sent"
            )
        self._disabled = True
