"""Frame transport — normalize a submitted frame into the engine's wire unit.

A frame may arrive as raw bytes, a numpy array (H, W, 4) or (H, W, 3), or a
PIL image. For raw RGBA transport the wire unit is exactly width*height*4
bytes; for PNG transport it is one Pillow-encoded PNG image. Geometry is
fixed at session start, so any frame of another size is rejected here
rather than corrupting the stream.
"""

import io

import numpy as np
from PIL import Image

from .config import FrameFormat
from .errors import InvalidConfigurationError


def _frame_to_array(frame, width: int, height: int) -> np.ndarray:
    """Return an (H, W, 4) uint8 RGBA array for any accepted frame type."""
    if isinstance(frame, Image.Image):
        arr = np.asarray(frame.convert("RGBA"))
    elif isinstance(frame, np.ndarray):
        arr = frame
    elif isinstance(frame, (bytes, bytearray, memoryview)):
        expected = width * height * 4
        if len(frame) != expected:
            raise InvalidConfigurationError(
                f"Frame has {len(frame)} bytes, expected {expected} ({width}x{height} RGBA)",
                field_name="frame",
                invalid_value=len(frame),
            )
        arr = np.frombuffer(bytes(frame), dtype=np.uint8).reshape(height, width, 4)
    else:
        raise InvalidConfigurationError(
            f"Unsupported frame type: {type(frame).__name__}",
            field_name="frame",
            invalid_value=type(frame).__name__,
        )

    if arr.ndim != 3 or arr.shape[2] not in (3, 4):
        raise InvalidConfigurationError(
            f"Frame array must be (H, W, 3) or (H, W, 4), got {arr.shape}",
            field_name="frame",
            invalid_value=arr.shape,
        )
    if arr.shape[0] != height or arr.shape[1] != width:
        raise InvalidConfigurationError(
            f"Frame is {arr.shape[1]}x{arr.shape[0]}, session expects {width}x{height}",
            field_name="frame",
            invalid_value=(arr.shape[1], arr.shape[0]),
        )
    if arr.dtype != np.uint8:
        arr = np.clip(arr, 0, 255).astype(np.uint8)
    if arr.shape[2] == 3:
        alpha = np.full((height, width, 1), 255, dtype=np.uint8)
        arr = np.concatenate([arr, alpha], axis=2)
    return arr


def to_rgba_bytes(frame, width: int, height: int) -> bytes:
    """Raw RGBA bytes of exactly width*height*4 length."""
    if isinstance(frame, (bytes, bytearray, memoryview)):
        expected = width * height * 4
        if len(frame) != expected:
            raise InvalidConfigurationError(
                f"Frame has {len(frame)} bytes, expected {expected} ({width}x{height} RGBA)",
                field_name="frame",
                invalid_value=len(frame),
            )
        return bytes(frame)
    return np.ascontiguousarray(_frame_to_array(frame, width, height)).tobytes()


def to_png_bytes(frame, width: int, height: int) -> bytes:
    """Encode a frame as one PNG image.

    Already-encoded PNG bytes pass through after their decoded size is
    checked against the session geometry.
    """
    if isinstance(frame, (bytes, bytearray)) and bytes(frame[:8]) == b"\x89PNG\r\n\x1a\n":
        with Image.open(io.BytesIO(frame)) as img:
            if img.size != (width, height):
                raise InvalidConfigurationError(
                    f"PNG frame is {img.size[0]}x{img.size[1]}, session expects {width}x{height}",
                    field_name="frame",
                    invalid_value=img.size,
                )
        return bytes(frame)

    arr = _frame_to_array(frame, width, height)
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format="PNG")
    return buf.getvalue()


def encode_frame(frame, width: int, height: int, frame_format: FrameFormat) -> bytes:
    """Normalize a frame to the wire unit of the given transport format."""
    if frame_format is FrameFormat.PNG:
        return to_png_bytes(frame, width, height)
    return to_rgba_bytes(frame, width, height)


def solid_frame(width: int, height: int, rgba: tuple[int, int, int, int]) -> bytes:
    """A single-color raw RGBA frame. Handy for placeholder and test frames."""
    return bytes(rgba) * (width * height)
