"""clipencode — the encoding backend for programmatic video composition.

Streams rendered frames into ffmpeg, mixes in audio tracks and embedded
video audio through one filter graph, and produces a single muxed file.
Media references are resolved to local files for the duration of a
session and cleaned up on every exit path.
"""
