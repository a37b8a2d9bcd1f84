"""Synthetic frames shared by the test modules."""

from __future__ import annotations

import numpy as np
import pytest

SKIN_RGB = (180, 140, 110)
BACKDROP_RGB = (60, 80, 150)   # blue-ish, never classified as skin


def make_flat_frame(rgb, size: int = 300) -> np.ndarray:
    """Uniform RGBA frame."""
    frame = np.zeros((size, size, 4), dtype=np.uint8)
    frame[:, :, :3] = rgb
    frame[:, :, 3] = 255
    return frame


def make_face_frame(
    size: int = 300,
    face_noise: int = 15,
    backdrop_noise: int = 25,
    scale_x: float = 0.7,
    scale_y: float = 0.75,
    offset: tuple = (0.0, 0.0),
    seed: int = 7,
) -> np.ndarray:
    """
    RGBA frame with a noisy skin-toned ellipse on a noisy blue backdrop.

    The ellipse is centred on the guide oval (shifted by *offset*, in
    pixels) and sized ``scale_x`` / ``scale_y`` of the oval radii.
    """
    rng = np.random.default_rng(seed)
    h = w = size
    yy, xx = np.mgrid[0:h, 0:w]
    cx, cy = w * 0.5 + offset[0], h * 0.42 + offset[1]
    rx, ry = w * 0.34 * scale_x, h * 0.32 * scale_y
    face = ((xx - cx) / rx) ** 2 + ((yy - cy) / ry) ** 2 <= 1.0

    skin = np.array(SKIN_RGB) + rng.integers(-face_noise, face_noise + 1, (h, w, 3))
    backdrop = np.array(BACKDROP_RGB) + rng.integers(-backdrop_noise, backdrop_noise + 1, (h, w, 3))

    frame = np.empty((h, w, 4), dtype=np.uint8)
    frame[:, :, :3] = np.clip(np.where(face[:, :, None], skin, backdrop), 0, 255)
    frame[:, :, 3] = 255
    return frame


@pytest.fixture
def face_frame() -> np.ndarray:
    return make_face_frame()
