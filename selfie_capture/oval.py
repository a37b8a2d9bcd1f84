"""
Oval guide and sampling grid.

The oval is the elliptical region a user is asked to place their face in.
Its proportions are fixed relative to the frame so that the live readiness
probe and the crop applied to the final photo agree on what "centred" means.

The sampling grid is a sparse lattice (every ``step`` pixels) over the
bounding box of the oval.  Each cell records whether it lies inside the
ellipse, whether its pixel is skin-like and its BT.709 luminance.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Tuple

import numpy as np

from selfie_capture.skin import skin_mask

# ---------------------------------------------------------------------------
# Proportional oval constants (shared with the final crop)
# ---------------------------------------------------------------------------
OVAL_CENTER_X = 0.5
OVAL_CENTER_Y = 0.42
OVAL_RX = 0.34
OVAL_RY = 0.32

MIN_STEP = 2
MAX_STEP = 8
STEP_DIVISOR = 160


def luminance(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    """Perceptual brightness (ITU-R BT.709 weights)."""
    return 0.2126 * r + 0.7152 * g + 0.0722 * b


def sample_step(width: int, height: int) -> int:
    """Grid spacing in pixels: ``clamp(min(w, h) // 160, 2, 8)``."""
    return max(MIN_STEP, min(MAX_STEP, min(width, height) // STEP_DIVISOR))


@dataclass(frozen=True)
class OvalGuide:
    """Ellipse in pixel coordinates."""

    cx: float
    cy: float
    rx: float
    ry: float

    @classmethod
    def for_frame(cls, width: int, height: int) -> "OvalGuide":
        return cls(
            cx=width * OVAL_CENTER_X,
            cy=height * OVAL_CENTER_Y,
            rx=width * OVAL_RX,
            ry=height * OVAL_RY,
        )

    def normalized_distance(self, x: float, y: float) -> float:
        """Distance from the centre with each axis scaled by its radius."""
        if self.rx <= 0 or self.ry <= 0:
            return math.inf
        return math.hypot((x - self.cx) / self.rx, (y - self.cy) / self.ry)

    def contains(self, x: float, y: float) -> bool:
        return self.normalized_distance(x, y) <= 1.0

    def crop_box(self, width: int, height: int) -> Tuple[int, int, int, int]:
        """Return ``(x, y, w, h)`` of the oval's bounding box clipped to the frame."""
        x0 = max(0, int(math.floor(self.cx - self.rx)))
        y0 = max(0, int(math.floor(self.cy - self.ry)))
        x1 = min(width, int(math.ceil(self.cx + self.rx)))
        y1 = min(height, int(math.ceil(self.cy + self.ry)))
        return x0, y0, max(0, x1 - x0), max(0, y1 - y0)


def crop_to_oval(image: np.ndarray) -> np.ndarray:
    """
    Crop *image* (H × W × C) to the bounding box of its proportional oval.

    Uses the same :class:`OvalGuide` proportions as the live probe, so a
    photo that passed the readiness gate is cropped around the same face
    region the user framed.
    """
    h, w = image.shape[:2]
    x, y, cw, ch = OvalGuide.for_frame(w, h).crop_box(w, h)
    return image[y:y + ch, x:x + cw]


@dataclass
class SamplingGrid:
    """
    Sparse samples over the oval's bounding box.

    ``inside``, ``skin`` and ``luma`` are parallel ``(grid_h, grid_w)``
    arrays.  Cell ``[gy, gx]`` corresponds to pixel
    ``(x0 + gx * step, y0 + gy * step)``.
    """

    oval: OvalGuide
    x0: int
    y0: int
    step: int
    inside: np.ndarray
    skin: np.ndarray
    luma: np.ndarray

    @property
    def grid_w(self) -> int:
        return int(self.inside.shape[1]) if self.inside.ndim == 2 else 0

    @property
    def grid_h(self) -> int:
        return int(self.inside.shape[0]) if self.inside.ndim == 2 else 0

    @property
    def inside_count(self) -> int:
        return int(np.count_nonzero(self.inside))

    def pixel_coords(self, gx: int, gy: int) -> Tuple[int, int]:
        return self.x0 + gx * self.step, self.y0 + gy * self.step

    @classmethod
    def empty(cls, oval: OvalGuide, step: int = MIN_STEP) -> "SamplingGrid":
        shape = (0, 0)
        return cls(
            oval=oval,
            x0=0,
            y0=0,
            step=step,
            inside=np.zeros(shape, dtype=bool),
            skin=np.zeros(shape, dtype=bool),
            luma=np.zeros(shape, dtype=np.float64),
        )


def grid_axes(width: int, height: int, oval: OvalGuide, step: int) -> Tuple[np.ndarray, np.ndarray]:
    """Pixel x and y coordinates of the grid columns and rows."""
    x0 = min(max(int(math.floor(oval.cx - oval.rx)), 0), width - 1)
    x1 = min(max(int(math.floor(oval.cx + oval.rx)), 0), width - 1)
    y0 = min(max(int(math.floor(oval.cy - oval.ry)), 0), height - 1)
    y1 = min(max(int(math.floor(oval.cy + oval.ry)), 0), height - 1)
    return np.arange(x0, x1 + 1, step), np.arange(y0, y1 + 1, step)


def build_grid(pixels: np.ndarray) -> SamplingGrid:
    """
    Sample *pixels* over the oval and classify every inside sample.

    Parameters
    ----------
    pixels:
        RGBA image array (H × W × 4, uint8).  Only the first three channels
        are read.
    """
    h, w = pixels.shape[:2]
    oval = OvalGuide.for_frame(w, h)
    if w == 0 or h == 0:
        return SamplingGrid.empty(oval)

    step = sample_step(w, h)
    xs, ys = grid_axes(w, h, oval, step)

    xn = (xs - oval.cx) / oval.rx
    yn = (ys - oval.cy) / oval.ry
    inside = (yn[:, None] ** 2 + xn[None, :] ** 2) <= 1.0

    patch = pixels[ys[:, None], xs[None, :], :3].astype(np.float64)
    r, g, b = patch[..., 0], patch[..., 1], patch[..., 2]

    skin = skin_mask(r, g, b) & inside
    luma = np.where(inside, luminance(r, g, b), 0.0)

    return SamplingGrid(
        oval=oval,
        x0=int(xs[0]),
        y0=int(ys[0]),
        step=step,
        inside=inside,
        skin=skin,
        luma=luma,
    )
