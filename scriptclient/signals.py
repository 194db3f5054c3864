"""
One-shot completion signals shared between the client and a test harness.

A signal settles exactly once, either with a value or with an exception.
Later attempts are ignored so that several failure paths can race to settle
the same signal without raising.
"""

import asyncio
import logging
import threading
from concurrent.futures import Future
from typing import Any, Optional

logger = logging.getLogger(__name__)


class CompletionSignal:
    def __init__(self, name: str):
        self.name = name
        self._future: Future = Future()
        self._lock = threading.Lock()

    def set(self, value: Any = None) -> bool:
        """Settle with a value. Returns False if the signal was already settled."""
        with self._lock:
            if self._future.done():
                logger.debug(f"Signal '{self.name}' already settled, ignoring value {value!r}")
                return False
            self._future.set_result(value)
        return True

    def fail(self, exc: BaseException) -> bool:
        """Settle with an exception. Returns False if the signal was already settled."""
        with self._lock:
            if self._future.done():
                logger.debug(f"Signal '{self.name}' already settled, ignoring failure {exc!r}")
                return False
            self._future.set_exception(exc)
        return True

    def done(self) -> bool:
        return self._future.done()

    def view(self) -> "SignalView":
        return SignalView(self)

    def __repr__(self):
        return f"<CompletionSignal {self.name} done={self.done()}>"


class SignalView:
    """Read-only, awaitable view of a CompletionSignal."""

    def __init__(self, signal: CompletionSignal):
        self._signal = signal

    @property
    def name(self) -> str:
        return self._signal.name

    @property
    def future(self) -> Future:
        return self._signal._future

    def done(self) -> bool:
        return self._signal.done()

    def result(self, timeout: Optional[float] = None) -> Any:
        """Block until settled; raise the stored exception on failure."""
        return self.future.result(timeout=timeout)

    def exception(self, timeout: Optional[float] = None) -> Optional[BaseException]:
        return self.future.exception(timeout=timeout)

    def succeeded(self) -> bool:
        return self.done() and self.future.exception() is None

    def __await__(self):
        return asyncio.wrap_future(self.future).__await__()

    def __repr__(self):
        return f"<SignalView {self.name} done={self.done()}>"
