"""Encoded image bytes → RGBA pixel buffer."""

from __future__ import annotations

import cv2
import numpy as np

from selfie_capture.errors import DecodeError


def decode(data: bytes) -> np.ndarray:
    """
    Decode a JPEG/PNG byte string into an RGBA array (H × W × 4, uint8).

    Raises :class:`DecodeError` for empty or malformed input; no partially
    decoded buffer is ever returned.
    """
    if not data:
        raise DecodeError("No image data.")

    raw = np.frombuffer(data, dtype=np.uint8)
    try:
        bgr = cv2.imdecode(raw, cv2.IMREAD_COLOR)
    except cv2.error as exc:
        raise DecodeError(f"Image decode failed: {exc}") from exc
    if bgr is None or bgr.size == 0:
        raise DecodeError(f"Could not decode {len(data)} bytes as an image.")

    return bgr_to_rgba(bgr)


def bgr_to_rgba(frame: np.ndarray) -> np.ndarray:
    """Convert an OpenCV BGR frame to the RGBA layout the gate expects."""
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)
