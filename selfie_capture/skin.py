"""
Skin-like pixel classifier.

Two deliberately permissive rules are OR-ed together so that a wide range
of skin tones and lighting conditions pass:

  - An RGB heuristic: red-dominant, not too dark, some saturation.
  - A YCbCr heuristic (ITU-R BT.601 coefficients), which tends to catch
    skin under mixed or tinted lighting that the RGB rule misses.

A missed skin pixel costs more than a false one here: the readiness gate
downstream rejects frames with too little skin, and repeatedly blocking a
real face is the worse failure for the user.
"""

from __future__ import annotations

import numpy as np


def ycbcr(r, g, b):
    """Return ``(Y, Cb, Cr)`` using BT.601 full-range coefficients."""
    y = 0.299 * r + 0.587 * g + 0.114 * b
    cb = 128 - 0.168736 * r - 0.331264 * g + 0.5 * b
    cr = 128 + 0.5 * r - 0.418688 * g - 0.081312 * b
    return y, cb, cr


def skin_mask(r: np.ndarray, g: np.ndarray, b: np.ndarray) -> np.ndarray:
    """
    Element-wise skin classification.

    Parameters
    ----------
    r, g, b:
        Channel arrays of identical shape, values in 0 – 255 (any numeric
        dtype; integer inputs are promoted to float).

    Returns
    -------
    numpy.ndarray
        Boolean array, *True* where the pixel is skin-like.
    """
    r = np.asarray(r, dtype=np.float64)
    g = np.asarray(g, dtype=np.float64)
    b = np.asarray(b, dtype=np.float64)

    hi = np.maximum(np.maximum(r, g), b)
    lo = np.minimum(np.minimum(r, g), b)

    rgb_rule = (
        (r > 45) & (g > 18) & (b > 12)
        & (r >= g) & (r >= b)
        & (np.abs(r - g) > 8)
        & (hi - lo > 12)
    )

    y, cb, cr = ycbcr(r, g, b)
    ycbcr_rule = (y > 28) & (cb >= 75) & (cb <= 145) & (cr >= 132) & (cr <= 190)

    return rgb_rule | ycbcr_rule


def is_skin(r: float, g: float, b: float) -> bool:
    """Scalar convenience wrapper around :func:`skin_mask`."""
    return bool(skin_mask(r, g, b))
