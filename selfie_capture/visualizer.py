"""
Live preview overlay.

Draws onto each preview frame:
  • The oval guide, green when the shutter is enabled and red otherwise.
  • The readiness message in a badge above the oval.
  • A shutter hint at the bottom of the frame.
  • Optional frame-rate counter.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from selfie_capture.gate import QualityState
from selfie_capture.oval import OvalGuide

# ---------------------------------------------------------------------------
# Colour palette (BGR)
# ---------------------------------------------------------------------------
_GREEN = (94, 197,  34)
_RED   = (68,  68, 239)
_WHITE = (255, 255, 255)
_GREY  = (150, 150, 150)
_DARK  = (30, 30, 30)

# Hershey fonts are ASCII only.
_ASCII = str.maketrans({"•": "-", "…": "..."})


def display_text(message: str) -> str:
    return message.translate(_ASCII)


class Visualizer:
    """
    Draws the capture UI onto OpenCV BGR frames in-place.

    Parameters
    ----------
    show_fps:
        Whether to overlay computed FPS in the top-right corner.
    thickness:
        Line thickness of the oval guide.
    """

    def __init__(self, show_fps: bool = True, thickness: int = 3) -> None:
        self.show_fps = show_fps
        self.thickness = thickness

        self._fps_tick = cv2.getTickCount()
        self._fps_display: float = 0.0

    def draw(self, frame: np.ndarray, quality: QualityState, capturing: bool = False) -> np.ndarray:
        """
        Annotate *frame* in-place and return it.

        Parameters
        ----------
        frame:
            BGR preview frame.
        quality:
            Latest readiness reading.
        capturing:
            True while the final photo is being taken.
        """
        self._update_fps()
        h, w = frame.shape[:2]
        colour = _GREEN if quality.ok else _RED

        # --- Oval guide -------------------------------------------------------
        oval = OvalGuide.for_frame(w, h)
        centre = (int(round(oval.cx)), int(round(oval.cy)))
        axes = (int(round(oval.rx)), int(round(oval.ry)))
        cv2.ellipse(frame, centre, axes, 0, 0, 360, colour, self.thickness, cv2.LINE_AA)

        # --- Message badge ----------------------------------------------------
        text = "Saving..." if capturing else display_text(quality.message)
        self._draw_badge(frame, text, (centre[0], max(24, int(oval.cy - oval.ry) - 16)), colour)

        # --- Shutter hint -----------------------------------------------------
        enabled = quality.ok and not capturing
        hint = "SPACE: take photo   Q: quit" if enabled else "Q: quit"
        cv2.putText(
            frame, hint, (16, h - 16),
            cv2.FONT_HERSHEY_SIMPLEX, 0.55, _WHITE if enabled else _GREY, 1, cv2.LINE_AA,
        )

        # --- FPS counter ------------------------------------------------------
        if self.show_fps:
            cv2.putText(
                frame, f"FPS {self._fps_display:.1f}", (w - 100, 20),
                cv2.FONT_HERSHEY_SIMPLEX, 0.45, _WHITE, 1, cv2.LINE_AA,
            )

        return frame

    # ------------------------------------------------------------------
    # Private drawing helpers
    # ------------------------------------------------------------------

    def _draw_badge(
        self,
        frame: np.ndarray,
        text: str,
        anchor: Tuple[int, int],
        colour: Tuple[int, int, int],
    ) -> None:
        font, scale, thick = cv2.FONT_HERSHEY_SIMPLEX, 0.6, 2
        (tw, th), base = cv2.getTextSize(text, font, scale, thick)
        x = max(4, anchor[0] - tw // 2)
        y = anchor[1]
        cv2.rectangle(frame, (x - 8, y - th - 8), (x + tw + 8, y + base + 4), _DARK, -1)
        cv2.rectangle(frame, (x - 8, y - th - 8), (x + tw + 8, y + base + 4), colour, 1)
        cv2.putText(frame, text, (x, y), font, scale, _WHITE, thick, cv2.LINE_AA)

    def _update_fps(self) -> None:
        """Compute rolling FPS."""
        now = cv2.getTickCount()
        elapsed = (now - self._fps_tick) / cv2.getTickFrequency()
        if elapsed > 0:
            self._fps_display = 1.0 / elapsed
        self._fps_tick = now
