"""
Readiness gate.

Turns frame metrics and the dominant skin blob into a single
:class:`QualityState`: may the shutter be pressed, and what should the user
be told?

Conditions come in two tiers:

  - *Blockers* disable the shutter.  Only the first two are shown so the
    user is never asked to fix more than two things at once.
  - *Tips* keep the shutter enabled; only the first is shown.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from selfie_capture.blob import FaceBlob, extract_face_blob
from selfie_capture.metrics import FrameMetrics, aggregate
from selfie_capture.oval import build_grid

logger = logging.getLogger(__name__)

DEFAULT_MESSAGE = "Center your face in the oval."
READY_MESSAGE = "Ready"

MSG_CENTER = "center your face"
MSG_CLOSER = "move closer"
MSG_BACK = "move back"
MSG_DARK = "find brighter light"
MSG_BRIGHT = "avoid harsh light"
MSG_BLUR = "hold still"

TIP_DARK = "brighter light improves accuracy"
TIP_BRIGHT = "avoid harsh direct light"
TIP_CAST = "neutral light improves accuracy"
TIP_BLUR = "hold still"

MAX_BLOCK_REASONS = 2


@dataclass(frozen=True)
class GateThresholds:
    """Tunable limits for :func:`evaluate`.  Defaults match the shipped UX."""

    min_samples: int = 500

    # Face-in-oval
    min_skin_ratio: float = 0.14
    min_face_area_ratio: float = 0.06
    max_center_distance: float = 0.56
    min_face_luma_std: float = 5.0
    min_bbox_norm: float = 0.28
    max_bbox_norm: float = 0.98

    # Lighting – hard limits
    extreme_dark_luma: float = 45.0
    extreme_dark_ratio: float = 0.42
    extreme_bright_luma: float = 215.0
    extreme_bright_ratio: float = 0.36

    # Lighting – tips
    moderate_dark_luma: float = 60.0
    moderate_dark_ratio: float = 0.28
    moderate_bright_luma: float = 200.0
    moderate_bright_ratio: float = 0.26
    max_cast: float = 0.22

    # Blur
    extreme_blur: float = 12.0
    moderate_blur: float = 16.0


DEFAULT_THRESHOLDS = GateThresholds()


@dataclass(frozen=True)
class QualityDebug:
    mean_luma: float
    cast_magnitude: float
    sharpness: float
    skin_ratio: float
    face_area_ratio: float
    face_center_distance: float
    face_luma_std_dev: float


@dataclass(frozen=True)
class QualityState:
    ok: bool
    message: str
    debug: Optional[QualityDebug] = field(default=None, compare=False)


NOT_READY = QualityState(ok=False, message=DEFAULT_MESSAGE)


def evaluate(
    metrics: FrameMetrics,
    blob: FaceBlob,
    thresholds: GateThresholds = DEFAULT_THRESHOLDS,
) -> QualityState:
    """Combine *metrics* and *blob* into a :class:`QualityState`."""
    t = thresholds
    if metrics.count < t.min_samples:
        return NOT_READY

    extreme_dark = metrics.mean_luma < t.extreme_dark_luma or metrics.dark_ratio > t.extreme_dark_ratio
    extreme_bright = (metrics.mean_luma > t.extreme_bright_luma
                      or metrics.bright_ratio > t.extreme_bright_ratio)
    extreme_blur = metrics.sharpness < t.extreme_blur

    moderate_dark = metrics.mean_luma < t.moderate_dark_luma or metrics.dark_ratio > t.moderate_dark_ratio
    moderate_bright = (metrics.mean_luma > t.moderate_bright_luma
                       or metrics.bright_ratio > t.moderate_bright_ratio)
    moderate_blur = metrics.sharpness < t.moderate_blur
    strong_cast = abs(metrics.cast_magnitude) > t.max_cast

    not_centered = (
        metrics.skin_ratio < t.min_skin_ratio
        or blob.face_area_ratio < t.min_face_area_ratio
        or blob.center_distance > t.max_center_distance
        or blob.luma_std < t.min_face_luma_std
    )
    # Size hints only make sense once there is a blob to size.
    too_far = blob.present and (blob.bbox_width_norm < t.min_bbox_norm
                                or blob.bbox_height_norm < t.min_bbox_norm)
    too_close = blob.present and (blob.bbox_width_norm > t.max_bbox_norm
                                  or blob.bbox_height_norm > t.max_bbox_norm)

    blocks: List[str] = []
    if not_centered:
        blocks.append(MSG_CENTER)
    if too_far:
        blocks.append(MSG_CLOSER)
    if too_close:
        blocks.append(MSG_BACK)
    if extreme_dark:
        blocks.append(MSG_DARK)
    if extreme_bright:
        blocks.append(MSG_BRIGHT)
    if extreme_blur:
        blocks.append(MSG_BLUR)

    tips: List[str] = []
    if moderate_dark and not extreme_dark:
        tips.append(TIP_DARK)
    if moderate_bright and not extreme_bright:
        tips.append(TIP_BRIGHT)
    if strong_cast:
        tips.append(TIP_CAST)
    if moderate_blur and not extreme_blur:
        tips.append(TIP_BLUR)

    ok = not blocks
    if ok:
        message = f"{READY_MESSAGE} • {tips[0]}" if tips else READY_MESSAGE
    else:
        message = "Adjust: " + " + ".join(blocks[:MAX_BLOCK_REASONS])

    return QualityState(
        ok=ok,
        message=message,
        debug=QualityDebug(
            mean_luma=metrics.mean_luma,
            cast_magnitude=metrics.cast_magnitude,
            sharpness=metrics.sharpness,
            skin_ratio=metrics.skin_ratio,
            face_area_ratio=blob.face_area_ratio,
            face_center_distance=blob.center_distance,
            face_luma_std_dev=blob.luma_std,
        ),
    )


def assess_frame(
    pixels: np.ndarray,
    thresholds: GateThresholds = DEFAULT_THRESHOLDS,
) -> QualityState:
    """
    Run the full readiness pipeline on one frame.

    Parameters
    ----------
    pixels:
        RGBA image array (H × W × 4, uint8).  Zero-sized arrays are accepted
        and reported as not ready.
    """
    if pixels.ndim != 3 or pixels.shape[2] < 3:
        raise ValueError(f"Expected an H × W × 4 RGBA array, got shape {pixels.shape}")

    grid = build_grid(pixels)
    metrics = aggregate(pixels, grid)
    if metrics.count < thresholds.min_samples:
        logger.debug("Only %d samples inside the oval – not enough to judge.", metrics.count)
        return NOT_READY

    blob = extract_face_blob(grid)
    state = evaluate(metrics, blob, thresholds)
    logger.debug(
        "Assessed %dx%d frame: ok=%s message=%r debug=%s",
        pixels.shape[1], pixels.shape[0], state.ok, state.message, state.debug,
    )
    return state
