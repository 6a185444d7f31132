"""Sandboxed provider — buffer every frame, encode once, hand back a handle.

Meant for hosts where the encoder may not touch the caller's filesystem or
stream into a long-lived pipe. Frames are spooled (memory first, then a
private temp file), the engine runs once on finalize inside a private
scratch directory, and the encoded bytes move into an OutputStore. The
session resolves to an opaque handle; read_output(handle) returns the
bytes and release_output(handle) frees them.
"""

from __future__ import annotations

import logging
import shlex
import shutil
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path

from .assets import release_inputs
from .config import SessionConfig
from .diagnostics import engine_version
from .errors import EngineExecutionError, InvalidConfigurationError
from .process_provider import build_ffmpeg_args
from .provider import EncoderProvider
from .session import EncodingSession, SessionState
from .settings import EngineSettings

LOGGER = logging.getLogger(__name__)

HANDLE_SCHEME = "clipencode-output://"
SPOOL_MAX_MEMORY = 64 * 1024 * 1024


class OutputStore:
    """In-memory home for encoded outputs, keyed by opaque handle."""

    def __init__(self) -> None:
        self._items: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def put(self, data: bytes) -> str:
        handle = f"{HANDLE_SCHEME}{uuid.uuid4().hex}"
        with self._lock:
            self._items[handle] = data
        return handle

    def get(self, handle: str) -> bytes:
        with self._lock:
            if handle not in self._items:
                raise InvalidConfigurationError("Unknown output handle", field_name="handle", invalid_value=handle)
            return self._items[handle]

    def release(self, handle: str) -> bool:
        with self._lock:
            return self._items.pop(handle, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._items.clear()

    def __len__(self) -> int:
        return len(self._items)


class SandboxedEncodingSession(EncodingSession):
    def __init__(self, config: SessionConfig, store: OutputStore, settings: EngineSettings) -> None:
        super().__init__(config)
        self._store = store
        self._settings = settings
        self._spool = tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_MEMORY)
        self._process: subprocess.Popen | None = None
        self._process_lock = threading.Lock()
        self._scratch: Path | None = None
        self.add_cleanup(self._cleanup)

    def _write_frame(self, data: bytes) -> None:
        self._spool.write(data)

    def _close_input(self) -> None:
        threading.Thread(target=self._encode, name="clipencode-sandbox", daemon=True).start()

    def _abort(self) -> None:
        with self._process_lock:
            process = self._process
        if process is not None and process.poll() is None:
            process.kill()
            try:
                process.wait(timeout=self._settings.kill_timeout)
            except subprocess.TimeoutExpired:
                LOGGER.error("Sandboxed ffmpeg did not exit after SIGKILL")

    def _encode(self) -> None:
        self._scratch = Path(tempfile.mkdtemp(prefix="clipencode_sandbox_"))
        if self._completion.claimed:
            shutil.rmtree(self._scratch, ignore_errors=True)
            return
        frames_path = self._scratch / "frames.bin"
        output_path = self._scratch / Path(self.config.output).name

        try:
            self._spool.seek(0)
            with open(frames_path, "wb") as fh:
                shutil.copyfileobj(self._spool, fh)
        except (OSError, ValueError) as exc:
            self._fail(EngineExecutionError("Failed to stage frames for encoding", diagnostics=str(exc)))
            return

        command = [
            self._settings.ffmpeg_binary,
            *build_ffmpeg_args(self.config, str(output_path), video_input=str(frames_path)),
        ]
        LOGGER.info("Running sandboxed FFmpeg: %s", shlex.join(command))
        with self._process_lock:
            if self._completion.claimed:
                return
            try:
                self._process = subprocess.Popen(
                    command, stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.PIPE,
                )
            except OSError as exc:
                self._fail(EngineExecutionError(f"Failed to start ffmpeg: {exc}", command=command))
                return

        _, stderr = self._process.communicate()
        exit_code = self._process.returncode
        if exit_code != 0:
            self._fail(
                EngineExecutionError(
                    "FFmpeg encoding failed",
                    exit_code=exit_code,
                    diagnostics=stderr.decode("utf-8", errors="replace"),
                    command=command,
                )
            )
            return
        try:
            data = output_path.read_bytes()
        except OSError as exc:
            self._fail(EngineExecutionError("FFmpeg produced no output", diagnostics=str(exc), command=command))
            return
        handle = self._store.put(data)
        if not self._succeed(handle):
            self._store.release(handle)

    def _cleanup(self, state: SessionState) -> None:
        self._spool.close()
        release_inputs(self.config.inputs, self.config.scratch_dir)
        if self._scratch is not None:
            shutil.rmtree(self._scratch, ignore_errors=True)


class SandboxedEncoderProvider(EncoderProvider):
    """Isolated engine: outputs never leave the provider's store as paths."""

    name = "Sandboxed"

    def __init__(self, settings: EngineSettings | None = None) -> None:
        super().__init__()
        self.settings = settings or EngineSettings.from_env()
        self.store = OutputStore()
        self._available: bool | None = None
        self._session: SandboxedEncodingSession | None = None

    @property
    def ffmpeg_binary(self) -> str:
        return self.settings.ffmpeg_binary

    def is_available(self) -> bool:
        if self._available is None:
            self._available = engine_version(self.settings.ffmpeg_binary) is not None
        return self._available

    def start_session(self, config: SessionConfig) -> SandboxedEncodingSession:
        self._ensure_usable()
        config.validate()
        session = SandboxedEncodingSession(config, self.store, self.settings)
        self._session = session
        return session

    def read_output(self, handle: str) -> bytes:
        return self.store.get(handle)

    def release_output(self, handle: str) -> bool:
        return self.store.release(handle)

    def _release(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.is_terminal:
            session.cancel()
        self.store.clear()
