"""Configuration objects for a render job and an encoding session.

RenderConfig describes the whole job as handed over by the front end:
timeline geometry, audio tracks, embedded video clips and optional
encoding overrides. SessionConfig is what a provider actually needs to
start the engine; it is derived from a RenderConfig by the encoder service
once every media reference has been resolved to a local path.

All objects are frozen: they are produced once and only read here.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from pathlib import Path
from typing import Mapping

from .errors import InvalidConfigurationError


# ── Frame / time conversion ───────────────────────────────────────


def frames_to_ms(frames: int, fps: int) -> int:
    """Convert a frame count to milliseconds at the given fps."""
    return round(frames * 1000 / fps)


def ms_to_frames(ms: int, fps: int) -> int:
    """Convert milliseconds to a frame count at the given fps."""
    return round(ms * fps / 1000)


# ── Enumerations ──────────────────────────────────────────────────


class AudioSourceType(str, Enum):
    ASSET = "asset"
    FILE = "file"
    URL = "url"


class SyncBehavior(str, Enum):
    """How synced audio behaves once its end anchor is known."""

    STOP_WHEN_ENDS = "stop_when_ends"
    LOOP_TO_MATCH = "loop_to_match"


class RenderQuality(str, Enum):
    """Quality tiers. Each tier maps to a constant rate factor."""

    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    LOSSLESS = "lossless"

    @property
    def crf(self) -> int:
        return QUALITY_CRF[self]


QUALITY_CRF = {
    RenderQuality.LOW: 30,
    RenderQuality.MEDIUM: 23,
    RenderQuality.HIGH: 18,
    RenderQuality.LOSSLESS: 0,
}


class FrameFormat(str, Enum):
    """How each frame travels to the engine."""

    RAW_RGBA = "raw_rgba"
    PNG = "png"


# ── Media references ──────────────────────────────────────────────

ASSET_PREFIXES = ("assets/", "packages/")


@dataclass(frozen=True)
class AudioSource:
    """Where an audio file is loaded from (bundled asset, local file, URL)."""

    kind: AudioSourceType
    uri: str

    @classmethod
    def infer(cls, uri: str) -> "AudioSource":
        """Classify a bare reference string by its shape."""
        if uri.startswith(("http://", "https://")):
            return cls(AudioSourceType.URL, uri)
        if uri.startswith(ASSET_PREFIXES):
            return cls(AudioSourceType.ASSET, uri)
        return cls(AudioSourceType.FILE, uri)


@dataclass(frozen=True)
class AudioSyncConfig:
    """Ties an audio track's start/end to named anchors on the timeline."""

    start_anchor: str | None = None
    end_anchor: str | None = None
    start_offset: int = 0
    end_offset: int = 0
    behavior: SyncBehavior = SyncBehavior.STOP_WHEN_ENDS

    @property
    def has_sync(self) -> bool:
        return self.start_anchor is not None or self.end_anchor is not None


@dataclass(frozen=True)
class AudioTrackConfig:
    """An audio clip placed on the composition timeline.

    All positions are in composition frames. trim_start_frame / trim_end_frame
    cut the source before it is placed; start_frame positions it.
    """

    source: AudioSource
    start_frame: int
    duration_in_frames: int
    trim_start_frame: int = 0
    trim_end_frame: int | None = None
    volume: float = 1.0
    fade_in_frames: int = 0
    fade_out_frames: int = 0
    loop: bool = False
    sync: AudioSyncConfig | None = None

    def trim_start_ms(self, fps: int) -> int:
        return frames_to_ms(self.trim_start_frame, fps)

    def trim_end_ms(self, fps: int) -> int | None:
        if self.trim_end_frame is None:
            return None
        return frames_to_ms(self.trim_end_frame, fps)

    def resolve_sync(self, anchors: Mapping[str, tuple[int, int | None]]) -> "AudioTrackConfig":
        """Return a copy placed according to the sync anchors.

        anchors maps anchor id -> (start_frame, end_frame or None). Anchors
        that are missing leave the corresponding field unchanged. The
        returned track has no sync config.
        """
        if self.sync is None or not self.sync.has_sync:
            return self

        start = self.start_frame
        duration = self.duration_in_frames
        loop = self.loop

        if self.sync.start_anchor is not None and self.sync.start_anchor in anchors:
            start = anchors[self.sync.start_anchor][0] + self.sync.start_offset

        if self.sync.end_anchor is not None and self.sync.end_anchor in anchors:
            end = anchors[self.sync.end_anchor][1]
            if end is not None:
                duration = max(0, end + self.sync.end_offset - start)
                if self.sync.behavior is SyncBehavior.LOOP_TO_MATCH:
                    loop = True

        return replace(self, start_frame=start, duration_in_frames=duration, loop=loop, sync=None)

    def validate(self, where: str = "audio track") -> None:
        for name in ("start_frame", "duration_in_frames", "trim_start_frame"):
            value = getattr(self, name)
            if value < 0:
                raise InvalidConfigurationError(
                    f"{where}: {name} must be >= 0", field_name=name, invalid_value=value,
                )
        if self.trim_end_frame is not None and self.trim_end_frame < self.trim_start_frame:
            raise InvalidConfigurationError(
                f"{where}: trim_end_frame ({self.trim_end_frame}) is before "
                f"trim_start_frame ({self.trim_start_frame})",
                field_name="trim_end_frame",
                invalid_value=self.trim_end_frame,
            )


@dataclass(frozen=True)
class EmbeddedVideoConfig:
    """A video clip embedded in the composition.

    By default the front end has already drawn the clip's pixels into the
    canvas, so only its audio is taken from the file. With composite=True
    the filter graph overlays the clip onto the canvas itself.
    """

    video_path: str
    id: str
    start_frame: int
    duration_in_frames: int
    trim_start_seconds: float = 0.0
    width: int = 0
    height: int = 0
    position_x: float = 0.0
    position_y: float = 0.0
    include_audio: bool = True
    audio_volume: float = 1.0
    audio_fade_in_frames: int = 0
    audio_fade_out_frames: int = 0
    composite: bool = False

    @property
    def end_frame(self) -> int:
        return self.start_frame + self.duration_in_frames

    def start_seconds(self, fps: int) -> float:
        return self.start_frame / fps

    def end_seconds(self, fps: int) -> float:
        return self.end_frame / fps

    def duration_seconds(self, fps: int) -> float:
        return self.duration_in_frames / fps

    @property
    def source(self) -> AudioSource:
        return AudioSource.infer(self.video_path)


# ── Render job ────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimelineConfig:
    fps: int
    duration_in_frames: int
    width: int
    height: int

    def validate(self) -> None:
        for name in ("fps", "width", "height"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise InvalidConfigurationError(
                    f"timeline: {name} must be a positive integer", field_name=name, invalid_value=value,
                )
        if self.duration_in_frames < 0:
            raise InvalidConfigurationError(
                "timeline: duration_in_frames must be >= 0",
                field_name="duration_in_frames",
                invalid_value=self.duration_in_frames,
            )


@dataclass(frozen=True)
class EncodingConfig:
    """Optional per-job encoding overrides."""

    quality: RenderQuality = RenderQuality.MEDIUM
    crf_override: int | None = None
    preset_override: str | None = None
    frame_format: FrameFormat = FrameFormat.RAW_RGBA
    video_codec: str = "libx264"
    pixel_format: str = "yuv420p"

    @property
    def crf(self) -> int:
        if self.crf_override is not None:
            return self.crf_override
        return self.quality.crf

    @property
    def preset(self) -> str:
        return self.preset_override or "medium"


@dataclass(frozen=True)
class RenderConfig:
    timeline: TimelineConfig
    audio_tracks: tuple[AudioTrackConfig, ...] = ()
    embedded_videos: tuple[EmbeddedVideoConfig, ...] = ()
    encoding: EncodingConfig | None = None

    @property
    def effective_encoding(self) -> EncodingConfig:
        return self.encoding or EncodingConfig()

    def validate(self) -> None:
        """Reject a job whose timeline or tracks cannot be turned into a graph.

        Raises:
            InvalidConfigurationError: naming the offending field.
        """
        self.timeline.validate()
        for i, track in enumerate(self.audio_tracks):
            track.validate(f"audio track {i}")


# ── Session ───────────────────────────────────────────────────────


@dataclass(frozen=True)
class ResolvedInput:
    """A media reference materialized as an engine-readable local path."""

    path: Path
    seek_seconds: float = 0.0
    delete_after_use: bool = False
    source: str | None = None


# Pixel formats that subsample chroma 2x2 and so need even dimensions.
_SUBSAMPLED_FORMATS = {"yuv420p", "yuvj420p", "nv12", "yuv420p10le"}


@dataclass(frozen=True)
class SessionConfig:
    """Everything a provider needs to start one encoding session."""

    width: int
    height: int
    fps: int
    total_frames: int
    output: str
    video_codec: str = "libx264"
    preset: str = "medium"
    pixel_format: str = "yuv420p"
    crf: int = 23
    inputs: tuple[ResolvedInput, ...] = ()
    scratch_dir: Path | None = None
    filter_graph: str | None = None
    video_output_label: str | None = None
    audio_output_label: str | None = None
    frame_format: FrameFormat = FrameFormat.RAW_RGBA
    audio_codec: str = "aac"
    audio_bitrate: str = "192k"
    extra_output_args: tuple[str, ...] = field(default_factory=tuple)

    @property
    def frame_size(self) -> int:
        """Bytes per raw RGBA frame."""
        return self.width * self.height * 4

    @property
    def has_audio(self) -> bool:
        return self.audio_output_label is not None

    def validate(self) -> None:
        """Reject values the engine cannot be asked to encode.

        Raises:
            InvalidConfigurationError: naming the offending field.
        """
        for name in ("width", "height", "fps"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise InvalidConfigurationError(
                    f"{name} must be a positive integer", field_name=name, invalid_value=value,
                )
        if self.total_frames < 0:
            raise InvalidConfigurationError(
                "total_frames must be >= 0", field_name="total_frames", invalid_value=self.total_frames,
            )
        if self.pixel_format in _SUBSAMPLED_FORMATS and (self.width % 2 or self.height % 2):
            raise InvalidConfigurationError(
                f"{self.pixel_format} requires even output dimensions, got {self.width}x{self.height}",
                field_name="pixel_format",
                invalid_value=self.pixel_format,
            )
        if not 0 <= self.crf <= 63:
            raise InvalidConfigurationError("crf must be within 0-63", field_name="crf", invalid_value=self.crf)
        if not self.output:
            raise InvalidConfigurationError("output must be a file name or path", field_name="output", invalid_value=self.output)
        if self.filter_graph:
            if not self.video_output_label:
                raise InvalidConfigurationError(
                    "a filter graph needs a video output label",
                    field_name="video_output_label",
                    invalid_value=self.video_output_label,
                )
        elif self.video_output_label or self.audio_output_label:
            raise InvalidConfigurationError(
                "output labels given without a filter graph",
                field_name="filter_graph",
                invalid_value=self.filter_graph,
            )


__all__ = [
    "AudioSource",
    "AudioSourceType",
    "AudioSyncConfig",
    "AudioTrackConfig",
    "EmbeddedVideoConfig",
    "EncodingConfig",
    "FrameFormat",
    "QUALITY_CRF",
    "RenderConfig",
    "RenderQuality",
    "ResolvedInput",
    "SessionConfig",
    "SyncBehavior",
    "TimelineConfig",
    "frames_to_ms",
    "ms_to_frames",
]
