"""
Background event loop for network delivery.

pytest hooks are synchronous and tests may run their own event loops, so all
HTTP I/O runs on a dedicated loop in a daemon thread.
"""

import asyncio
import concurrent.futures
import logging
import threading
from typing import Any, Coroutine, Optional, Set

logger = logging.getLogger("m00n_reporter")


class BackgroundAsyncWorker:
    """
    Runs coroutines on an event loop owned by a background thread.

    - ``run_sync`` blocks the caller until the coroutine finishes
    - ``run_async`` schedules without waiting; errors are logged
    - ``submit`` returns a future the caller can wait on later
    """

    def __init__(self):
        self.thread: Optional[threading.Thread] = None
        self.loop: Optional[asyncio.AbstractEventLoop] = None
        self._started = False
        self._ready = threading.Event()
        self._lock = threading.Lock()
        self._pending: Set[concurrent.futures.Future] = set()
        self._pending_lock = threading.Lock()

    @property
    def running(self) -> bool:
        return self._started and self.loop is not None and self.loop.is_running()

    def start(self):
        """Start the background worker thread and wait for its loop."""
        with self._lock:
            if self._started:
                return

            self._ready.clear()
            self.thread = threading.Thread(
                target=self._run_loop, name="m00n-reporter-worker", daemon=True
            )
            self.thread.start()
            self._ready.wait()
            self._started = True
            logger.debug("Background async worker started")

    def _run_loop(self):
        self.loop = asyncio.new_event_loop()
        asyncio.set_event_loop(self.loop)
        self.loop.call_soon(self._ready.set)
        try:
            self.loop.run_forever()
        finally:
            self.loop.close()

    def submit(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Schedule a coroutine and return its concurrent future."""
        if not self._started:
            self.start()

        future = asyncio.run_coroutine_threadsafe(coro, self.loop)
        with self._pending_lock:
            self._pending.add(future)
        future.add_done_callback(self._discard)
        return future

    def run_sync(self, coro: Coroutine[Any, Any, Any], timeout: Optional[float] = None) -> Any:
        """
        Run a coroutine on the background loop and wait for its result.

        Raises:
            Whatever the coroutine raises, or ``concurrent.futures.TimeoutError``.
        """
        future = self.submit(coro)
        try:
            return future.result(timeout=timeout)
        except concurrent.futures.TimeoutError:
            future.cancel()
            raise

    def run_async(self, coro: Coroutine[Any, Any, Any]) -> concurrent.futures.Future:
        """Fire-and-forget scheduling; failures are logged at debug level."""
        future = self.submit(coro)
        future.add_done_callback(_log_failure)
        return future

    def pending(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def drain(self, timeout: float) -> bool:
        """Wait for all scheduled work. Returns False if some is still pending."""
        with self._pending_lock:
            futures = list(self._pending)
        if not futures:
            return True
        _, not_done = concurrent.futures.wait(futures, timeout=timeout)
        return not not_done

    def stop(self, grace: float = 30.0):
        """Drain pending work for up to ``grace`` seconds, cancel the rest and stop."""
        with self._lock:
            if not self._started:
                return

            if not self.drain(grace):
                with self._pending_lock:
                    leftovers = list(self._pending)
                logger.warning(f"Cancelling {len(leftovers)} pending deliveries after {grace}s")
                for future in leftovers:
                    future.cancel()

            if self.loop and self.loop.is_running():
                self._cancel_remaining()
                self.loop.call_soon_threadsafe(self.loop.stop)
            if self.thread is not None:
                self.thread.join(timeout=5)

            self.thread = None
            self.loop = None
            self._started = False
            logger.debug("Background async worker stopped")

    def _cancel_remaining(self):
        """Cancel tasks still on the loop and let them finish unwinding."""
        try:
            asyncio.run_coroutine_threadsafe(_cancel_tasks(), self.loop).result(timeout=5)
        except Exception as e:
            logger.debug(f"Error cancelling pending tasks: {e}")

    def _discard(self, future: concurrent.futures.Future):
        with self._pending_lock:
            self._pending.discard(future)


async def _cancel_tasks():
    tasks = [task for task in asyncio.all_tasks() if task is not asyncio.current_task()]
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)


def _log_failure(future: concurrent.futures.Future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.debug(f"Background task failed: {error}")
