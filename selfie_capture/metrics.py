"""
Global frame statistics over the oval.

All statistics are taken over every sample inside the oval, not only the
skin-like ones:

  - mean BT.709 luminance and the share of very dark / very bright samples
  - share of skin-like samples
  - colour cast: ``(meanR - meanB) / (meanLuma + 1)``, positive when warm
  - sharpness: mean absolute luminance step to the right and down
    neighbours ``step`` pixels away.  A coarse blur proxy, not an edge
    detector.
"""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np

from selfie_capture.oval import SamplingGrid, luminance

DARK_LUMA = 35.0
BRIGHT_LUMA = 225.0


@dataclass(frozen=True)
class FrameMetrics:
    count: int
    mean_luma: float = 0.0
    dark_ratio: float = 0.0
    bright_ratio: float = 0.0
    skin_ratio: float = 0.0
    cast_magnitude: float = 0.0
    sharpness: float = 0.0


def _rgb_at(pixels: np.ndarray, ys: np.ndarray, xs: np.ndarray):
    px = pixels[ys, xs, :3].astype(np.float64)
    return px[..., 0], px[..., 1], px[..., 2]


def aggregate(pixels: np.ndarray, grid: SamplingGrid) -> FrameMetrics:
    """
    Compute :class:`FrameMetrics` for *pixels* sampled on *grid*.

    Returns a metrics object with ``count == 0`` for an empty grid; the
    readiness gate treats small counts as "not enough information".
    """
    count = grid.inside_count
    if count == 0:
        return FrameMetrics(count=0)

    h, w = pixels.shape[:2]
    gy, gx = np.nonzero(grid.inside)
    xs = grid.x0 + gx * grid.step
    ys = grid.y0 + gy * grid.step

    r, g, b = _rgb_at(pixels, ys, xs)
    lum = luminance(r, g, b)

    mean_luma = float(lum.mean())
    dark = int(np.count_nonzero(lum < DARK_LUMA))
    bright = int(np.count_nonzero(lum > BRIGHT_LUMA))
    skin = int(np.count_nonzero(grid.skin & grid.inside))

    cast = (float(r.mean()) - float(b.mean())) / (mean_luma + 1.0)

    # Sharpness proxy: only samples whose right and down neighbours exist.
    has_nb = (xs + grid.step < w) & (ys + grid.step < h)
    if has_nb.any():
        sx, sy, sl = xs[has_nb], ys[has_nb], lum[has_nb]
        lum_right = luminance(*_rgb_at(pixels, sy, sx + grid.step))
        lum_down = luminance(*_rgb_at(pixels, sy + grid.step, sx))
        grad = np.abs(sl - lum_right) + np.abs(sl - lum_down)
        sharpness = float(grad.mean())
    else:
        sharpness = 0.0

    return FrameMetrics(
        count=count,
        mean_luma=mean_luma,
        dark_ratio=dark / count,
        bright_ratio=bright / count,
        skin_ratio=skin / count,
        cast_magnitude=cast,
        sharpness=sharpness,
    )
