"""
Frame acquisition.

Defines the :class:`Frame` value returned by a frame source, the
:class:`FrameSource` protocol the capture session depends on, and an
OpenCV ``VideoCapture`` implementation for webcams.

Two kinds of request are made:

  - *probes* (``low_latency=True``): the latest frame, downscaled and
    JPEG-encoded at a low ``quality`` so the readiness check stays cheap.
  - the *final capture* (``low_latency=False``): a full-resolution frame
    written to disk as JPEG, returned by location.
"""

from __future__ import annotations

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Protocol, Tuple

import cv2
import numpy as np

from selfie_capture.errors import FatalCameraError, TransientCameraError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Frame:
    """
    Result of one camera request.

    Exactly one of ``pixels`` (RGBA, H × W × 4), ``encoded`` (image bytes)
    or ``location`` (path of a saved image) is normally set.
    """

    width: int
    height: int
    pixels: Optional[np.ndarray] = None
    encoded: Optional[bytes] = None
    location: Optional[str] = None


class FrameSource(Protocol):
    async def request_frame(self, *, quality: float, low_latency: bool) -> Frame:
        ...


class OpenCVFrameSource:
    """
    Webcam frame source backed by ``cv2.VideoCapture``.

    Parameters
    ----------
    resolution:
        (width, height) requested from the device.
    camera_index:
        OpenCV camera index.
    flip_horizontal:
        Mirror the image left-to-right (selfie view).
    output_dir:
        Directory where final captures are written.
    probe_max_side:
        Longest side, in pixels, of the downscaled probe frame.
    """

    def __init__(
        self,
        resolution: Tuple[int, int] = (1280, 720),
        camera_index: int = 0,
        flip_horizontal: bool = True,
        output_dir: Path = Path("captures"),
        probe_max_side: int = 320,
    ) -> None:
        self.resolution = resolution
        self.camera_index = camera_index
        self.flip_horizontal = flip_horizontal
        self.output_dir = Path(output_dir)
        self.probe_max_side = probe_max_side

        self._cap: "cv2.VideoCapture | None" = None
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def open(self) -> None:
        """Open the device and apply the requested resolution."""
        cap = cv2.VideoCapture(self.camera_index)
        if not cap.isOpened():
            raise FatalCameraError(
                f"Cannot open video capture device index={self.camera_index}"
            )
        w, h = self.resolution
        cap.set(cv2.CAP_PROP_FRAME_WIDTH, w)
        cap.set(cv2.CAP_PROP_FRAME_HEIGHT, h)
        self._cap = cap
        logger.info("Camera opened – index=%d resolution=%s", self.camera_index, self.resolution)

    def close(self) -> None:
        """Release the device."""
        if self._cap is None:
            return
        with self._lock:
            self._cap.release()
            self._cap = None
        logger.info("Camera closed.")

    @property
    def is_open(self) -> bool:
        return self._cap is not None

    def __enter__(self) -> "OpenCVFrameSource":
        self.open()
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Frame acquisition
    # ------------------------------------------------------------------

    def read_frame(self) -> np.ndarray:
        """
        Grab one BGR frame (H × W × 3, uint8) for preview or capture.

        Raises :class:`TransientCameraError` when the device returns no frame
        and :class:`FatalCameraError` when the camera is not open.
        """
        with self._lock:
            if self._cap is None:
                raise FatalCameraError("Camera is not open.  Call open() first.")
            ok, frame = self._cap.read()
        if not ok or frame is None:
            raise TransientCameraError("Camera not ready: read() returned no frame.")
        if self.flip_horizontal:
            frame = cv2.flip(frame, 1)
        return frame

    async def request_frame(self, *, quality: float, low_latency: bool) -> Frame:
        if low_latency:
            return await asyncio.to_thread(self._probe_frame, quality)
        return await asyncio.to_thread(self._final_frame, quality)

    # ------------------------------------------------------------------
    # Private helpers
    # ------------------------------------------------------------------

    def _probe_frame(self, quality: float) -> Frame:
        frame = self.read_frame()
        h, w = frame.shape[:2]
        scale = self.probe_max_side / max(h, w)
        if scale < 1.0:
            frame = cv2.resize(
                frame, (max(1, int(w * scale)), max(1, int(h * scale))),
                interpolation=cv2.INTER_AREA,
            )
        ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, _jpeg_quality(quality)])
        if not ok:
            raise TransientCameraError("Camera not ready: probe frame could not be encoded.")
        return Frame(width=frame.shape[1], height=frame.shape[0], encoded=buf.tobytes())

    def _final_frame(self, quality: float) -> Frame:
        frame = self.read_frame()
        self.output_dir.mkdir(parents=True, exist_ok=True)
        path = self.output_dir / f"capture_{int(time.time() * 1000)}.jpg"
        if not cv2.imwrite(str(path), frame, [cv2.IMWRITE_JPEG_QUALITY, _jpeg_quality(quality)]):
            raise FatalCameraError(f"Could not write capture to {path}")
        logger.info("Saved full-resolution capture to %s", path)
        return Frame(width=frame.shape[1], height=frame.shape[0], location=str(path))


def _jpeg_quality(quality: float) -> int:
    """Map a 0 – 1 quality to OpenCV's 1 – 100 JPEG scale."""
    return int(round(max(0.01, min(1.0, quality)) * 100))
