"""Native provider — ffmpeg as a child process fed through stdin.

Each session keeps four threads alive from spawn:
  - frame writer:  bounded queue -> engine stdin, in submission order
  - stdout drain:  reads and discards stdout so the engine never blocks
  - stderr reader: splits on \\r / \\n, keeps the text, parses frame=N
  - exit watcher:  maps the exit code to SUCCEEDED or FAILED

add_frame() blocks only while the queue is full, which is how a slow
engine throttles a fast producer.
"""

from __future__ import annotations

import logging
import queue
import re
import shlex
import shutil
import subprocess
import tempfile
import threading
from collections import deque
from pathlib import Path
from typing import Callable, Sequence

from .assets import release_inputs
from .config import FrameFormat, SessionConfig
from .diagnostics import engine_version
from .errors import EngineExecutionError, EngineUnavailableError, SessionStateError
from .provider import EncoderProvider
from .session import EncodingSession, SessionState
from .settings import INSTALLATION_INSTRUCTIONS, EngineSettings

LOGGER = logging.getLogger(__name__)

OUTPUT_DIR_PREFIX = "clipencode_"
DIAGNOSTIC_TAIL_LINES = 2000

_PROGRESS_RE = re.compile(r"(?:^|\s)frame=\s*(\d+)")
_LINE_SPLIT_RE = re.compile(r"[\r\n]")
_CLOSE = object()

ProcessFactory = Callable[[Sequence[str]], subprocess.Popen]


# ── Pure helpers ──────────────────────────────────────────────────


def parse_progress_frame(line: str) -> int | None:
    """Return the output frame number from one ffmpeg stats line.

    >>> parse_progress_frame("frame=   42 fps= 30 q=28.0 size=     256kB")
    42
    >>> parse_progress_frame("keyframe=1") is None
    True
    """
    match = _PROGRESS_RE.search(line)
    if match is None:
        return None
    return int(match.group(1))


def build_ffmpeg_args(config: SessionConfig, output_path: str, *, video_input: str = "-") -> list[str]:
    """Build the ffmpeg argument list (binary excluded).

    Order: overwrite flag, canvas input, one declaration per resolved input,
    filter graph and mappings, video codec flags, audio codec flags (only
    when an audio label exists), output path. Identical configs give
    identical lists.
    """
    fps = str(config.fps)
    args = ["-y"]
    if config.frame_format is FrameFormat.PNG:
        args += ["-f", "image2pipe", "-c:v", "png", "-framerate", fps, "-i", video_input]
    else:
        args += [
            "-f", "rawvideo",
            "-pixel_format", "rgba",
            "-video_size", f"{config.width}x{config.height}",
            "-framerate", fps,
            "-i", video_input,
        ]

    for item in config.inputs:
        if item.seek_seconds > 0:
            args += ["-ss", f"{item.seek_seconds:.3f}"]
        args += ["-i", str(item.path)]

    if config.filter_graph:
        args += ["-filter_complex", config.filter_graph, "-map", config.video_output_label]
        if config.audio_output_label:
            args += ["-map", config.audio_output_label]
        else:
            args.append("-an")
    else:
        if config.inputs:
            args += ["-map", "0:v"]
        args += ["-vf", f"fps={config.fps},format={config.pixel_format}", "-an"]

    args += [
        "-c:v", config.video_codec,
        "-preset", config.preset,
        "-crf", str(config.crf),
        "-pix_fmt", config.pixel_format,
    ]
    if config.filter_graph and config.audio_output_label:
        args += ["-c:a", config.audio_codec, "-b:a", config.audio_bitrate]
    args += list(config.extra_output_args)
    args.append(output_path)
    return args


def place_output(output: str) -> tuple[Path, Path | None]:
    """Return (output path, generated directory or None).

    Absolute paths are used as-is; bare names go in a fresh temp directory.
    """
    candidate = Path(output)
    if candidate.is_absolute():
        candidate.parent.mkdir(parents=True, exist_ok=True)
        return candidate, None
    out_dir = Path(tempfile.mkdtemp(prefix=OUTPUT_DIR_PREFIX))
    return out_dir / candidate.name, out_dir


def discard_output(output_path: Path, output_dir: Path | None) -> None:
    """Remove a partial output and any directory generated for it."""
    try:
        output_path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Failed to delete partial output %s: %s", output_path, exc)
    if output_dir is not None:
        shutil.rmtree(output_dir, ignore_errors=True)


def stop_process(process: subprocess.Popen, terminate_timeout: float = 5.0, kill_timeout: float = 2.0) -> int | None:
    """Terminate, then kill if the process ignores it. Returns the exit code."""
    if process.poll() is not None:
        return process.returncode
    LOGGER.info("Terminating ffmpeg (pid=%s)", process.pid)
    process.terminate()
    try:
        return process.wait(timeout=terminate_timeout)
    except subprocess.TimeoutExpired:
        pass
    LOGGER.warning("ffmpeg ignored SIGTERM; sending SIGKILL (pid=%s)", process.pid)
    process.kill()
    try:
        return process.wait(timeout=kill_timeout)
    except subprocess.TimeoutExpired:
        LOGGER.error("ffmpeg still running after SIGKILL (pid=%s)", process.pid)
        return None


def _spawn(command: Sequence[str]) -> subprocess.Popen:
    return subprocess.Popen(
        list(command),
        stdin=subprocess.PIPE,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
    )


# ── Session ───────────────────────────────────────────────────────


class ProcessEncodingSession(EncodingSession):
    """A session backed by one running ffmpeg process."""

    def __init__(
        self,
        config: SessionConfig,
        process: subprocess.Popen,
        command: Sequence[str],
        output_path: Path,
        output_dir: Path | None = None,
        settings: EngineSettings | None = None,
        queue_size: int = 4,
    ) -> None:
        super().__init__(config)
        self.process = process
        self.command = tuple(command)
        self.output_path = output_path
        self._output_dir = output_dir
        self._settings = settings or EngineSettings()
        self._queue: queue.Queue = queue.Queue(maxsize=max(1, queue_size))
        self._stop = threading.Event()
        self._diagnostics: deque[str] = deque(maxlen=DIAGNOSTIC_TAIL_LINES)
        self._pipe_error: OSError | None = None
        self._graceful_stop = False

        self.add_cleanup(self._cleanup)

        self._stderr_thread = threading.Thread(target=self._read_stderr, name="clipencode-stderr", daemon=True)
        self._threads = [
            threading.Thread(target=self._write_loop, name="clipencode-writer", daemon=True),
            threading.Thread(target=self._drain_stdout, name="clipencode-stdout", daemon=True),
            self._stderr_thread,
            threading.Thread(target=self._watch_exit, name="clipencode-exit", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    @property
    def diagnostics(self) -> str:
        return "\n".join(self._diagnostics)

    # -- EncodingSession hooks --------------------------------------

    def _write_frame(self, data: bytes) -> None:
        self._enqueue(data)

    def _close_input(self) -> None:
        try:
            self._enqueue(_CLOSE)
        except SessionStateError:
            LOGGER.debug("Engine already settled before end of input")

    def _abort(self) -> None:
        self._stop.set()
        if self._graceful_stop:
            stop_process(self.process, self._settings.terminate_timeout, self._settings.kill_timeout)
        elif self.process.poll() is None:
            self.process.kill()
            try:
                self.process.wait(timeout=self._settings.kill_timeout)
            except subprocess.TimeoutExpired:
                LOGGER.error("ffmpeg did not exit after SIGKILL (pid=%s)", self.process.pid)

    def _enqueue(self, item) -> None:
        while True:
            if self.is_terminal or self._completion.claimed:
                raise SessionStateError(f"Cannot write to a session that is {self.state.value}")
            try:
                self._queue.put(item, timeout=0.1)
                return
            except queue.Full:
                continue

    # -- worker threads ---------------------------------------------

    def _write_loop(self) -> None:
        stdin = self.process.stdin
        while not self._stop.is_set():
            try:
                item = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is _CLOSE:
                break
            if self._pipe_error is not None:
                continue
            try:
                stdin.write(item)
            except (BrokenPipeError, ValueError, OSError) as exc:
                # Keep consuming so producers never block on a dead engine.
                LOGGER.debug("ffmpeg stdin closed early: %s", exc)
                self._pipe_error = exc if isinstance(exc, OSError) else OSError(str(exc))
        try:
            stdin.close()
        except OSError as exc:
            LOGGER.debug("Closing ffmpeg stdin failed: %s", exc)

    def _drain_stdout(self) -> None:
        stream = self.process.stdout
        if stream is None:
            return
        while stream.read(65536):
            pass

    def _read_stderr(self) -> None:
        stream = self.process.stderr
        if stream is None:
            return
        pending = ""
        while True:
            chunk = stream.read1(8192) if hasattr(stream, "read1") else stream.read(8192)
            if not chunk:
                break
            pending += chunk.decode("utf-8", errors="replace")
            *lines, pending = _LINE_SPLIT_RE.split(pending)
            for line in lines:
                self._handle_stderr_line(line)
        if pending:
            self._handle_stderr_line(pending)

    def _handle_stderr_line(self, line: str) -> None:
        if not line.strip():
            return
        self._diagnostics.append(line)
        frame = parse_progress_frame(line)
        if frame is not None:
            self._report_engine_frame(frame)

    def _watch_exit(self) -> None:
        exit_code = self.process.wait()
        # Let the reader collect the last diagnostic lines before judging.
        self._stderr_thread.join(timeout=self._settings.terminate_timeout)
        self._stop.set()
        LOGGER.info("ffmpeg exited with %s after %d frames", exit_code, self.frames_written)
        if exit_code == 0:
            self._succeed(str(self.output_path))
        else:
            self._fail(
                EngineExecutionError(
                    "FFmpeg encoding failed",
                    exit_code=exit_code,
                    diagnostics=self.diagnostics,
                    command=self.command,
                )
            )

    def _cleanup(self, state: SessionState) -> None:
        release_inputs(self.config.inputs, self.config.scratch_dir)
        if state is not SessionState.SUCCEEDED:
            discard_output(self.output_path, self._output_dir)

    def stop(self) -> bool:
        """Cancel, stopping the engine with terminate/kill escalation instead of a kill."""
        self._graceful_stop = True
        return self.cancel()


# ── Provider ──────────────────────────────────────────────────────


class ProcessEncoderProvider(EncoderProvider):
    """Runs ffmpeg as a child process. Works on Linux, macOS and Windows."""

    name = "Process"

    def __init__(
        self,
        settings: EngineSettings | None = None,
        process_factory: ProcessFactory | None = None,
        queue_size: int | None = None,
    ) -> None:
        super().__init__()
        self.settings = settings or EngineSettings.from_env()
        self._process_factory = process_factory or _spawn
        self._queue_size = queue_size or self.settings.frame_queue_size
        self._available: bool | None = None
        self._session: ProcessEncodingSession | None = None

    @property
    def ffmpeg_binary(self) -> str:
        return self.settings.ffmpeg_binary

    def is_available(self) -> bool:
        if self._available is None:
            self._available = engine_version(self.settings.ffmpeg_binary) is not None
            if not self._available:
                LOGGER.warning("ffmpeg not found at %s", self.settings.ffmpeg_binary)
        return self._available

    def start_session(self, config: SessionConfig) -> ProcessEncodingSession:
        self._ensure_usable()
        config.validate()

        output_path, output_dir = place_output(config.output)
        command = [self.settings.ffmpeg_binary, *build_ffmpeg_args(config, str(output_path))]
        LOGGER.info("Starting FFmpeg: %s", shlex.join(command))
        try:
            process = self._process_factory(command)
        except OSError as exc:
            discard_output(output_path, output_dir)
            raise EngineUnavailableError(
                f"Failed to start ffmpeg: {exc}",
                installation_instructions=INSTALLATION_INSTRUCTIONS,
            ) from exc

        session = ProcessEncodingSession(
            config,
            process,
            command,
            output_path,
            output_dir=output_dir,
            settings=self.settings,
            queue_size=self._queue_size,
        )
        self._session = session
        return session

    def _release(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.is_terminal:
            session.stop()


__all__ = [
    "ProcessEncoderProvider",
    "ProcessEncodingSession",
    "build_ffmpeg_args",
    "parse_progress_frame",
    "place_output",
    "stop_process",
]
