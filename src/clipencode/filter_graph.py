"""Filter graph builder — one ffmpeg filter_complex string per render job.

Input numbering the graph assumes (the encoder service resolves inputs in
the same order):
  - Input 0:      the composition canvas (frames piped on stdin)
  - Inputs 1..N:  embedded video files, one per EmbeddedVideoConfig
  - Inputs N+1..: separate audio tracks, one per AudioTrackConfig

Embedded videos usually contribute audio only; their pixels are already in
the canvas. A clip with composite=True is also overlaid onto the canvas
for its time window.

The builder is pure: identical RenderConfig -> byte-identical graph. All
time values are written with three decimals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import AudioTrackConfig, EmbeddedVideoConfig, RenderConfig

LOGGER = logging.getLogger(__name__)

VIDEO_OUTPUT_LABEL = "[v_out]"
AUDIO_OUTPUT_LABEL = "[a_mix_out]"


@dataclass(frozen=True)
class FilterGraph:
    graph: str
    video_output_label: str
    audio_output_label: str | None = None
    embedded_video_count: int = 0


def _fades(fade_in_frames: int, fade_out_frames: int, duration: float, fps: int) -> list[str]:
    filters = []
    if fade_in_frames > 0:
        filters.append(f"afade=t=in:st=0:d={fade_in_frames / fps:.3f}")
    if fade_out_frames > 0:
        fade_out = fade_out_frames / fps
        start = max(duration - fade_out, 0.0)
        filters.append(f"afade=t=out:st={start:.3f}:d={fade_out:.3f}")
    return filters


def _placement(volume: float, start_frame: int, fps: int) -> list[str]:
    filters = []
    if volume != 1.0:
        filters.append(f"volume={volume:g}")
    delay_ms = round(start_frame / fps * 1000)
    if delay_ms > 0:
        filters.append(f"adelay={delay_ms}|{delay_ms}")
    return filters


def embedded_audio_chain(video: EmbeddedVideoConfig, fps: int, in_label: str, out_label: str) -> str:
    """Audio chain for an embedded clip. The input is already seeked with -ss."""
    duration = video.duration_seconds(fps)
    filters = [f"atrim=start=0:end={duration:.3f}", "asetpts=PTS-STARTPTS"]
    filters += _fades(video.audio_fade_in_frames, video.audio_fade_out_frames, duration, fps)
    filters += _placement(video.audio_volume, video.start_frame, fps)
    return f"{in_label}{','.join(filters)}{out_label}"


def audio_track_chain(track: AudioTrackConfig, fps: int, in_label: str, out_label: str) -> str:
    """Audio chain for a separate track: source trim, loop, length, fades, placement."""
    trim_start = track.trim_start_frame / fps
    trim_end = track.trim_end_frame / fps if track.trim_end_frame is not None else None
    duration = track.duration_in_frames / fps

    filters = []
    if trim_start > 0 or trim_end is not None:
        end = trim_start + duration
        if trim_end is not None:
            end = min(trim_end, end)
        filters.append(f"atrim=start={trim_start:.3f}:end={end:.3f}")
        filters.append("asetpts=PTS-STARTPTS")

    if track.loop:
        filters.append("aloop=loop=-1:size=2e9")

    filters.append(f"atrim=start=0:end={duration:.3f}")
    filters.append("asetpts=PTS-STARTPTS")
    filters += _fades(track.fade_in_frames, track.fade_out_frames, duration, fps)
    filters += _placement(track.volume, track.start_frame, fps)
    return f"{in_label}{','.join(filters)}{out_label}"


class FilterGraphBuilder:
    """Builds the filter_complex expression for a RenderConfig."""

    def build(self, config: RenderConfig) -> FilterGraph:
        config.validate()
        fps = config.timeline.fps
        pix_fmt = config.effective_encoding.pixel_format
        videos = config.embedded_videos
        first_track_input = 1 + len(videos)

        parts = self._video_sections(videos, fps, pix_fmt)

        audio_parts = []
        audio_labels = []
        for i, video in enumerate(videos):
            if not video.include_audio or video.duration_in_frames <= 0:
                LOGGER.debug("Skipping audio for embedded video %d (%s)", i, video.id)
                continue
            label = f"[a_embedded_{i}]"
            audio_parts.append(embedded_audio_chain(video, fps, f"[{i + 1}:a]", label))
            audio_labels.append(label)

        for i, track in enumerate(config.audio_tracks):
            label = f"[a_track_{i}]"
            audio_parts.append(audio_track_chain(track, fps, f"[{first_track_input + i}:a]", label))
            audio_labels.append(label)

        # One source: relabel its output. Several: mix them.
        if len(audio_labels) == 1:
            last = audio_parts.pop()
            audio_parts.append(last[: last.rindex("[")] + AUDIO_OUTPUT_LABEL)
        elif len(audio_labels) > 1:
            audio_parts.append(
                "".join(audio_labels)
                + f"amix=inputs={len(audio_labels)}:duration=longest:dropout_transition=0"
                + AUDIO_OUTPUT_LABEL
            )

        graph = ";".join(parts + audio_parts)
        audio_label = AUDIO_OUTPUT_LABEL if audio_labels else None
        LOGGER.debug(
            "Filter graph: %d embedded videos, %d audio sources, audio label %s",
            len(videos), len(audio_labels), audio_label,
        )
        return FilterGraph(
            graph=graph,
            video_output_label=VIDEO_OUTPUT_LABEL,
            audio_output_label=audio_label,
            embedded_video_count=len(videos),
        )

    def _video_sections(self, videos, fps: int, pix_fmt: str) -> list[str]:
        composited = [
            (i, v) for i, v in enumerate(videos) if v.composite and v.duration_in_frames > 0
        ]
        if not composited:
            return [f"[0:v]fps={fps},format={pix_fmt}{VIDEO_OUTPUT_LABEL}"]

        parts = [f"[0:v]fps={fps},format={pix_fmt}[v_base]"]
        base = "[v_base]"
        for n, (i, video) in enumerate(composited):
            start = video.start_seconds(fps)
            end = video.end_seconds(fps)
            clip = [
                f"trim=duration={video.duration_seconds(fps):.3f}",
                f"setpts=PTS-STARTPTS+{start:.3f}/TB",
            ]
            if video.width > 0 and video.height > 0:
                clip.append(f"scale={video.width}:{video.height}")
            parts.append(f"[{i + 1}:v]{','.join(clip)}[v_clip_{i}]")

            out = VIDEO_OUTPUT_LABEL if n == len(composited) - 1 else f"[v_ov_{i}]"
            parts.append(
                f"{base}[v_clip_{i}]overlay=x={video.position_x:g}:y={video.position_y:g}"
                f":enable='between(t,{start:.3f},{end:.3f})'{out}"
            )
            base = out
        return parts


def build(config: RenderConfig) -> FilterGraph:
    """Build the filter graph for a render job."""
    return FilterGraphBuilder().build(config)
