"""Host-embedded provider — ffmpeg driven through imageio_ffmpeg's frame writer.

imageio_ffmpeg.write_frames is a generator that owns its own ffmpeg
pipe: frames go in with send(), close() flushes and waits for the encoder.
It takes raw pixels and at most one audio file, so this provider accepts
raw RGBA transport with zero or one resolved input. The writer cannot run a
filter graph: a graph is accepted only when it does nothing beyond the
canvas fps/format conversion and a plain relabel of the one audio input.
Trims, fades, delays, volume and overlays need the process provider.

Cancelling throws a BaseException into the writer, which makes
imageio_ffmpeg kill ffmpeg instead of waiting for it to finish the file.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import imageio_ffmpeg

from .assets import release_inputs
from .config import FrameFormat, SessionConfig
from .errors import EngineExecutionError, EngineUnavailableError, InvalidConfigurationError
from .process_provider import discard_output, place_output
from .provider import EncoderProvider
from .session import EncodingSession, SessionState
from .settings import INSTALLATION_INSTRUCTIONS

LOGGER = logging.getLogger(__name__)

_RELABEL_FILTERS = ("anull", "acopy")


class _WriterAbort(BaseException):
    """Thrown into the frame writer; imageio_ffmpeg kills ffmpeg on non-Exception errors."""


def is_passthrough_graph(config: SessionConfig) -> bool:
    """True when the writer's own options already do everything the graph asks."""
    if not config.filter_graph:
        return True
    canvas = f"[0:v]fps={config.fps},format={config.pixel_format}{config.video_output_label}"
    head, *audio = config.filter_graph.split(";")
    if head != canvas:
        return False
    if not audio:
        return True
    if len(audio) > 1 or config.audio_output_label is None:
        return False
    return audio[0] in {f"[1:a]{name}{config.audio_output_label}" for name in _RELABEL_FILTERS}


class EmbeddedEncodingSession(EncodingSession):
    def __init__(self, config: SessionConfig, writer, output_path: Path, output_dir: Path | None) -> None:
        super().__init__(config)
        self.output_path = output_path
        self._output_dir = output_dir
        self._writer = writer
        self._writer_lock = threading.Lock()
        self.add_cleanup(self._cleanup)

    def _write_frame(self, data: bytes) -> None:
        try:
            with self._writer_lock:
                self._writer.send(data)
        except (OSError, RuntimeError, ValueError, StopIteration) as exc:
            error = EngineExecutionError("FFmpeg encoding failed", diagnostics=str(exc))
            self._fail(error)
            raise error from exc

    def _close_input(self) -> None:
        threading.Thread(target=self._close_writer, name="clipencode-embedded-close", daemon=True).start()

    def _abort(self) -> None:
        try:
            with self._writer_lock:
                self._writer.throw(_WriterAbort())
        except _WriterAbort:
            LOGGER.debug("Embedded ffmpeg writer killed for %s", self.output_path)
        except (OSError, RuntimeError, ValueError, StopIteration) as exc:
            LOGGER.warning("Embedded ffmpeg writer failed while stopping: %s", exc)

    def _close_writer(self) -> None:
        try:
            with self._writer_lock:
                self._writer.close()
        except (OSError, RuntimeError) as exc:
            self._fail(EngineExecutionError("FFmpeg encoding failed", diagnostics=str(exc)))
            return
        if self.output_path.is_file() and self.output_path.stat().st_size > 0:
            self._succeed(str(self.output_path))
        else:
            self._fail(EngineExecutionError("FFmpeg produced no output", diagnostics=str(self.output_path)))

    def _cleanup(self, state: SessionState) -> None:
        release_inputs(self.config.inputs, self.config.scratch_dir)
        if state is not SessionState.SUCCEEDED:
            discard_output(self.output_path, self._output_dir)


class EmbeddedEncoderProvider(EncoderProvider):
    """Encodes through imageio_ffmpeg's bundled binary."""

    name = "Embedded"

    def __init__(self, ffmpeg_log_level: str = "warning") -> None:
        super().__init__()
        self._log_level = ffmpeg_log_level
        self._session: EmbeddedEncodingSession | None = None

    @property
    def ffmpeg_binary(self) -> str | None:
        try:
            return imageio_ffmpeg.get_ffmpeg_exe()
        except RuntimeError:
            return None

    def is_available(self) -> bool:
        return self.ffmpeg_binary is not None

    def start_session(self, config: SessionConfig) -> EmbeddedEncodingSession:
        self._ensure_usable()
        config.validate()
        if config.frame_format is not FrameFormat.RAW_RGBA:
            raise InvalidConfigurationError(
                "The embedded engine only accepts raw RGBA frames",
                field_name="frame_format",
                invalid_value=config.frame_format.value,
            )
        if len(config.inputs) > 1:
            raise InvalidConfigurationError(
                "The embedded engine supports at most one media input",
                field_name="inputs",
                invalid_value=len(config.inputs),
            )
        if not is_passthrough_graph(config):
            raise InvalidConfigurationError(
                "The embedded engine cannot apply a filter graph (trims, fades, delays, volume "
                "or overlays); use the process provider",
                field_name="filter_graph",
                invalid_value=config.filter_graph,
            )
        audio = config.inputs[0] if config.inputs else None
        if audio is not None and audio.seek_seconds > 0:
            raise InvalidConfigurationError(
                "The embedded engine cannot seek media inputs",
                field_name="seek_seconds",
                invalid_value=audio.seek_seconds,
            )

        output_path, output_dir = place_output(config.output)
        writer = imageio_ffmpeg.write_frames(
            str(output_path),
            (config.width, config.height),
            pix_fmt_in="rgba",
            pix_fmt_out=config.pixel_format,
            fps=config.fps,
            quality=None,
            codec=config.video_codec,
            macro_block_size=1,
            ffmpeg_log_level=self._log_level,
            output_params=["-preset", config.preset, "-crf", str(config.crf), *config.extra_output_args],
            audio_path=str(audio.path) if audio is not None and config.has_audio else None,
            audio_codec=config.audio_codec if audio is not None and config.has_audio else None,
        )
        try:
            writer.send(None)  # prime the generator; starts ffmpeg
        except (OSError, RuntimeError) as exc:
            discard_output(output_path, output_dir)
            raise EngineUnavailableError(
                f"Failed to start the embedded ffmpeg writer: {exc}",
                installation_instructions=INSTALLATION_INSTRUCTIONS,
            ) from exc
        LOGGER.info("Started embedded ffmpeg writer for %s", output_path)

        session = EmbeddedEncodingSession(config, writer, output_path, output_dir)
        self._session = session
        return session

    def _release(self) -> None:
        session, self._session = self._session, None
        if session is not None and not session.is_terminal:
            session.cancel()
