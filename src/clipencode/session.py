"""Encoding session core — the state machine every provider's session shares.

States:

    ACCEPTING -> FINALIZING -> SUCCEEDED | FAILED | CANCELLED

A session reaches exactly one terminal state. Whoever calls
Completion.claim() first (natural exit, engine failure or cancel) decides
it; every later attempt is a no-op. On terminal entry the progress channel
closes, resolved inputs and other registered cleanups run once, and only
then is the completion value published.

Subclasses implement the engine side:
  _write_frame(data)  deliver one wire unit, in order
  _close_input()      signal end of input
  _abort()            stop the engine immediately (cancel)
and call _succeed(output) / _fail(error) when the engine settles.
"""

from __future__ import annotations

import abc
import logging
import threading
from concurrent.futures import Future
from enum import Enum
from typing import Any, Callable

from .config import SessionConfig
from .errors import CancelledError, EncoderError, SessionStateError
from .frames import encode_frame

LOGGER = logging.getLogger(__name__)


class SessionState(str, Enum):
    ACCEPTING = "accepting"
    FINALIZING = "finalizing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionState.SUCCEEDED, SessionState.FAILED, SessionState.CANCELLED)


# ── Single-assignment result ──────────────────────────────────────


class Completion:
    """A value that is decided once and published once.

    claim() is the race point: it returns True for exactly one caller, who
    must then call resolve() or reject(). The gap between the two lets the
    winner run cleanup before anyone waiting on the value wakes up.
    """

    def __init__(self) -> None:
        self._future: Future = Future()
        self._lock = threading.Lock()
        self._claimed = False

    def claim(self) -> bool:
        with self._lock:
            if self._claimed:
                return False
            self._claimed = True
            return True

    @property
    def claimed(self) -> bool:
        return self._claimed

    def resolve(self, value: Any) -> None:
        self._future.set_result(value)

    def reject(self, error: BaseException) -> None:
        self._future.set_exception(error)

    def done(self) -> bool:
        return self._future.done()

    def result(self, timeout: float | None = None) -> Any:
        return self._future.result(timeout)

    def exception(self, timeout: float | None = None) -> BaseException | None:
        return self._future.exception(timeout)

    def add_done_callback(self, fn: Callable[[Future], None]) -> None:
        self._future.add_done_callback(fn)


# ── Progress ──────────────────────────────────────────────────────


class ProgressChannel:
    """Fan-out of progress values in [0, 1].

    Values only go up: anything lower than or equal to the last emitted
    value is dropped. After close() nothing is delivered.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._subscribers: list[Callable[[float], None]] = []
        self._values: list[float] = []
        self._closed = False

    def subscribe(self, callback: Callable[[float], None]) -> Callable[[], None]:
        """Register a callback; returns a function that unsubscribes it."""
        with self._lock:
            self._subscribers.append(callback)

        def _unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return _unsubscribe

    @property
    def values(self) -> list[float]:
        with self._lock:
            return list(self._values)

    @property
    def latest(self) -> float:
        with self._lock:
            return self._values[-1] if self._values else 0.0

    @property
    def closed(self) -> bool:
        return self._closed

    def emit(self, value: float) -> bool:
        with self._lock:
            if self._closed:
                return False
            value = min(max(float(value), 0.0), 1.0)
            if self._values and value <= self._values[-1]:
                return False
            self._values.append(value)
            for callback in list(self._subscribers):
                try:
                    callback(value)
                except Exception:
                    LOGGER.exception("Progress subscriber raised")
            return True

    def close(self, final: float | None = None) -> None:
        with self._lock:
            if self._closed:
                return
            if final is not None:
                self.emit(final)
            self._closed = True
            self._subscribers.clear()


# ── Session ───────────────────────────────────────────────────────


class EncodingSession(abc.ABC):
    """One in-flight render. Driven sequentially by a single caller."""

    def __init__(self, config: SessionConfig) -> None:
        self.config = config
        self.progress = ProgressChannel()
        self._completion = Completion()
        self._state = SessionState.ACCEPTING
        self._state_lock = threading.Lock()
        self._frames_written = 0
        self._cleanups: list[Callable[[SessionState], None]] = []
        self._terminal = threading.Event()

    # -- public API -------------------------------------------------

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def frames_written(self) -> int:
        return self._frames_written

    @property
    def is_terminal(self) -> bool:
        return self._state.is_terminal

    def add_frame(self, frame) -> None:
        """Submit the next frame. Blocks only while the engine is behind.

        Raises:
            SessionStateError: after finalize(), cancel() or engine exit.
            InvalidConfigurationError: frame does not match the geometry.
        """
        self._require_accepting()
        data = encode_frame(frame, self.config.width, self.config.height, self.config.frame_format)
        self._require_accepting()
        self._write_frame(data)
        self._frames_written += 1
        if self.config.total_frames > 0:
            self.progress.emit(min(self._frames_written / self.config.total_frames, 0.99))

    def finalize(self) -> None:
        """Close the engine's input. A no-op once finalizing or terminal."""
        with self._state_lock:
            if self._state is not SessionState.ACCEPTING:
                return
            self._state = SessionState.FINALIZING
        LOGGER.debug("Finalizing after %d frames", self._frames_written)
        self._close_input()

    def cancel(self) -> bool:
        """Stop the engine and reject with CancelledError.

        Returns False when the session had already settled.
        """
        if not self._completion.claim():
            return False
        LOGGER.info("Cancelling encoding session after %d frames", self._frames_written)
        self.progress.close()
        try:
            self._abort()
        except OSError as exc:
            LOGGER.warning("Error while stopping engine: %s", exc)
        self._finish(SessionState.CANCELLED, error=CancelledError())
        return True

    def result(self, timeout: float | None = None) -> str:
        """Block until terminal; return the output identifier or raise its error."""
        return self._completion.result(timeout)

    def wait(self, timeout: float | None = None) -> SessionState | None:
        """Block until terminal without raising. None on timeout."""
        if self._terminal.wait(timeout):
            return self._state
        return None

    def add_cleanup(self, callback: Callable[[SessionState], None]) -> None:
        """Run callback(terminal_state) once on terminal entry, before publishing."""
        self._cleanups.append(callback)

    def add_done_callback(self, callback: Callable[["EncodingSession"], None]) -> None:
        """Run callback(session) after the completion value is published."""
        self._completion.add_done_callback(lambda _future: callback(self))

    # -- engine side ------------------------------------------------

    @abc.abstractmethod
    def _write_frame(self, data: bytes) -> None: ...

    @abc.abstractmethod
    def _close_input(self) -> None: ...

    @abc.abstractmethod
    def _abort(self) -> None: ...

    def _report_engine_frame(self, frame: int) -> None:
        if self.config.total_frames > 0:
            self.progress.emit(min(frame / self.config.total_frames, 0.99))

    def _succeed(self, output: str) -> bool:
        if not self._completion.claim():
            return False
        self.progress.close(final=1.0)
        self._finish(SessionState.SUCCEEDED, value=output)
        return True

    def _fail(self, error: EncoderError) -> bool:
        if not self._completion.claim():
            return False
        LOGGER.error("Encoding failed: %s", error.message)
        self.progress.close()
        self._finish(SessionState.FAILED, error=error)
        return True

    # -- internals --------------------------------------------------

    def _require_accepting(self) -> None:
        state = self._state
        if state is SessionState.ACCEPTING:
            return
        cause = None
        if self._completion.done():
            cause = self._completion.exception()
        raise SessionStateError(f"Cannot add frames to a session that is {state.value}") from cause

    def _finish(self, state: SessionState, *, value: str | None = None, error: BaseException | None = None) -> None:
        with self._state_lock:
            self._state = state
        for cleanup in self._cleanups:
            try:
                cleanup(state)
            except Exception as exc:
                LOGGER.warning("Session cleanup failed: %s", exc)
        self._cleanups = []
        if error is not None:
            self._completion.reject(error)
        else:
            self._completion.resolve(value)
        self._terminal.set()


__all__ = ["Completion", "EncodingSession", "ProgressChannel", "SessionState"]
