"""
Event loop running on its own thread, backing the client's transport I/O.

The run sequence talks to it from another thread with blocking-style calls
(submit a coroutine, wait for its result) and fire-and-forget callbacks.
Shutdown is graceful and idempotent: every caller gets the same future.
"""

import asyncio
import contextlib
import logging
import threading
from concurrent.futures import FIRST_COMPLETED, Future, wait
from typing import Awaitable, Callable, List

logger = logging.getLogger(__name__)

CLOSE_TIMEOUT = 5.0


class EventLoopGroup:
    def __init__(self, name: str = "scriptclient-io"):
        self.name = name
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._run_loop, name=name, daemon=True)
        self._lock = threading.Lock()
        self._started = False
        self._shutdown_future: Future = None
        self._terminated: Future = Future()
        self._closers: List[Callable[[], Awaitable]] = []

    @property
    def loop(self) -> asyncio.AbstractEventLoop:
        return self._loop

    @property
    def is_shutting_down(self) -> bool:
        return self._shutdown_future is not None

    def start(self) -> bool:
        """Start the loop thread. Returns False if shutdown was already requested."""
        with self._lock:
            if self._started:
                raise RuntimeError(f"Event loop group {self.name} cannot be started twice")
            if self._shutdown_future is not None:
                return False
            self._started = True
        self._thread.start()
        logger.debug(f"Event loop group {self.name} started")
        return True

    def _run_loop(self):
        asyncio.set_event_loop(self._loop)
        try:
            self._loop.run_forever()
        finally:
            try:
                self._loop.run_until_complete(self._loop.shutdown_asyncgens())
            except Exception as e:
                logger.warning(f"Failed to shut down async generators on {self.name}: {e}")
            self._loop.close()
            self._terminated.set_result(True)
            logger.debug(f"Event loop group {self.name} terminated")

    def submit(self, coro) -> Future:
        """Schedule a coroutine on the loop; returns a concurrent future."""
        if self.is_shutting_down:
            coro.close()
            raise ConnectionError(f"Event loop group {self.name} is shut down")
        try:
            return asyncio.run_coroutine_threadsafe(coro, self._loop)
        except RuntimeError as e:
            coro.close()
            raise ConnectionError(f"Event loop group {self.name} is closed: {e}") from e

    def run_sync(self, coro):
        """Run a coroutine on the loop and block until it finishes or the group terminates."""
        future = self.submit(coro)
        wait([future, self._terminated], return_when=FIRST_COMPLETED)
        if not future.done():
            future.cancel()
            raise ConnectionError(f"Event loop group {self.name} shut down while waiting")
        return future.result()

    def call_soon(self, callback, *args):
        """Fire-and-forget a callback on the loop thread."""
        if self.is_shutting_down:
            raise ConnectionError(f"Event loop group {self.name} is shut down")
        try:
            self._loop.call_soon_threadsafe(callback, *args)
        except RuntimeError as e:
            raise ConnectionError(f"Event loop group {self.name} is closed: {e}") from e

    def add_closer(self, closer: Callable[[], Awaitable]):
        """Register a coroutine function awaited first during shutdown."""
        self._closers.append(closer)

    def shutdown_gracefully(self) -> Future:
        """Release the loop and its thread. Safe to call repeatedly and from any thread."""
        with self._lock:
            if self._shutdown_future is not None:
                return self._shutdown_future
            self._shutdown_future = self._terminated
            started = self._started

        if not started:
            self._loop.close()
            self._terminated.set_result(True)
            return self._shutdown_future

        logger.debug(f"Shutting down event loop group {self.name}")
        try:
            self._loop.call_soon_threadsafe(self._spawn_drain)
        except RuntimeError as e:
            # loop already closed underneath us
            logger.warning(f"Event loop group {self.name} was closed before shutdown: {e}")
        return self._shutdown_future

    def _spawn_drain(self):
        self._loop.create_task(self._drain())

    async def _drain(self):
        for closer in self._closers:
            try:
                await asyncio.wait_for(closer(), timeout=CLOSE_TIMEOUT)
            except Exception as e:
                logger.warning(f"Error while closing resources on {self.name}: {e}")

        current = asyncio.current_task()
        pending = [t for t in asyncio.all_tasks(self._loop) if t is not current]
        for task in pending:
            task.cancel()
        with contextlib.suppress(Exception):
            await asyncio.gather(*pending, return_exceptions=True)

        self._loop.stop()
