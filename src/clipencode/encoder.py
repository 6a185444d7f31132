"""Encoder service — turns a RenderConfig into a running encoding session.

Start-up pipeline:
  1. Check the registry is idle and the timeline is encodable (before
     any download).
  2. Resolve embedded videos, then audio tracks, to local inputs.
  3. Build the filter graph and map the quality tier to a CRF.
  4. Start a session through the registry.

If anything after step 2 fails, the resolved batch is released before the
error propagates. A resolution failure stops the pipeline before any
engine process exists.
"""

from __future__ import annotations

import logging
from typing import Callable, Iterable

from .assets import AssetResolver, ResolvedBatch
from .config import RenderConfig, SessionConfig
from .filter_graph import FilterGraphBuilder
from .registry import EncoderRegistry
from .session import EncodingSession

LOGGER = logging.getLogger(__name__)


class VideoEncoderService:
    def __init__(
        self,
        registry: EncoderRegistry,
        resolver: AssetResolver | None = None,
        builder: FilterGraphBuilder | None = None,
    ) -> None:
        self.registry = registry
        self.resolver = resolver or AssetResolver()
        self.builder = builder or FilterGraphBuilder()

    def session_config_for(self, config: RenderConfig, output: str, batch: ResolvedBatch) -> SessionConfig:
        """Combine a job, its resolved inputs and its filter graph."""
        encoding = config.effective_encoding
        graph = self.builder.build(config)
        timeline = config.timeline
        return SessionConfig(
            width=timeline.width,
            height=timeline.height,
            fps=timeline.fps,
            total_frames=timeline.duration_in_frames,
            output=output,
            video_codec=encoding.video_codec,
            preset=encoding.preset,
            pixel_format=encoding.pixel_format,
            crf=encoding.crf,
            inputs=batch.inputs,
            scratch_dir=batch.scratch_dir,
            filter_graph=graph.graph,
            video_output_label=graph.video_output_label,
            audio_output_label=graph.audio_output_label,
            frame_format=encoding.frame_format,
        )

    def start_encoding(self, config: RenderConfig, output: str = "output.mp4") -> EncodingSession:
        """Resolve media and start a session. Frames are pushed by the caller."""
        self.registry.ensure_idle()
        config.validate()
        batch = self.resolver.resolve_render_inputs(config)
        try:
            session_config = self.session_config_for(config, output, batch)
            session = self.registry.start_session(session_config)
        except BaseException:
            batch.release()
            raise
        LOGGER.info(
            "Started %s session: %dx%d @ %d fps, %d frames, %d inputs",
            self.registry.provider_name,
            session_config.width,
            session_config.height,
            session_config.fps,
            session_config.total_frames,
            len(session_config.inputs),
        )
        return session

    def encode(
        self,
        config: RenderConfig,
        frames: Iterable,
        output: str = "output.mp4",
        on_progress: Callable[[float], None] | None = None,
    ) -> str:
        """Encode an iterable of frames and return the output identifier.

        Any exception while feeding frames cancels the session before it
        propagates.
        """
        session = self.start_encoding(config, output)
        if on_progress is not None:
            session.progress.subscribe(on_progress)
        try:
            for frame in frames:
                session.add_frame(frame)
            session.finalize()
        except BaseException:
            session.cancel()
            raise
        return session.result()
