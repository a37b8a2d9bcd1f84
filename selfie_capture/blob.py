"""
Largest connected skin region on the sampling grid.

A frame can have plenty of skin-coloured samples without containing a face
(wood panelling, a beige wall, a hand at the edge of the oval).  Requiring a
single dominant, centred, textured blob rejects most of those cases.

Connectivity is 4-neighbour in grid space.  The flood fill uses an explicit
stack so large regions never hit the interpreter recursion limit.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import List

from selfie_capture.oval import SamplingGrid


@dataclass(frozen=True)
class FaceBlob:
    """
    Summary of the dominant skin component.

    Attributes
    ----------
    area:
        Number of grid cells in the component (0 when no skin was found).
    centroid_x, centroid_y:
        Mean pixel coordinates of the component's samples.
    face_area_ratio:
        ``area`` over the number of samples inside the oval.
    center_distance:
        Centroid distance from the oval centre, each axis normalised by its
        radius.  1.0 (the oval boundary) when there is no blob.
    bbox_width_norm, bbox_height_norm:
        Bounding-box size (inclusive of one grid step) over the oval
        diameters ``2·rx`` and ``2·ry``.
    luma_std:
        Standard deviation of the component's luminance samples.
    """

    area: int = 0
    centroid_x: float = 0.0
    centroid_y: float = 0.0
    face_area_ratio: float = 0.0
    center_distance: float = 1.0
    bbox_width_norm: float = 0.0
    bbox_height_norm: float = 0.0
    luma_std: float = 0.0

    @property
    def present(self) -> bool:
        return self.area > 0


@dataclass
class _Component:
    area: int = 0
    sum_x: float = 0.0
    sum_y: float = 0.0
    min_x: int = 0
    max_x: int = 0
    min_y: int = 0
    max_y: int = 0
    luma_sum: float = 0.0
    luma_sq_sum: float = 0.0


def _flood(
    seed: int,
    grid_w: int,
    grid_h: int,
    member: List[bool],
    visited: List[bool],
    luma: List[float],
    grid: SamplingGrid,
) -> _Component:
    comp = _Component(min_x=2 ** 31, max_x=-1, min_y=2 ** 31, max_y=-1)
    stack = [seed]
    visited[seed] = True

    while stack:
        cur = stack.pop()
        gx, gy = cur % grid_w, cur // grid_w
        px, py = grid.pixel_coords(gx, gy)

        comp.area += 1
        comp.sum_x += px
        comp.sum_y += py
        comp.min_x = min(comp.min_x, px)
        comp.max_x = max(comp.max_x, px)
        comp.min_y = min(comp.min_y, py)
        comp.max_y = max(comp.max_y, py)
        lv = luma[cur]
        comp.luma_sum += lv
        comp.luma_sq_sum += lv * lv

        neighbours = []
        if gx > 0:
            neighbours.append(cur - 1)
        if gx + 1 < grid_w:
            neighbours.append(cur + 1)
        if gy > 0:
            neighbours.append(cur - grid_w)
        if gy + 1 < grid_h:
            neighbours.append(cur + grid_w)

        for ni in neighbours:
            if visited[ni] or not member[ni]:
                continue
            visited[ni] = True
            stack.append(ni)

    return comp


def extract_face_blob(grid: SamplingGrid) -> FaceBlob:
    """Find the largest 4-connected ``inside ∧ skin`` component of *grid*."""
    grid_w, grid_h = grid.grid_w, grid.grid_h
    total = grid.inside_count
    if total == 0 or grid_w == 0 or grid_h == 0:
        return FaceBlob()

    member = (grid.inside & grid.skin).ravel().tolist()
    luma = grid.luma.ravel().tolist()
    visited = [False] * len(member)

    best = None
    for i, is_member in enumerate(member):
        if not is_member or visited[i]:
            continue
        comp = _flood(i, grid_w, grid_h, member, visited, luma, grid)
        if best is None or comp.area > best.area:
            best = comp

    if best is None:
        return FaceBlob()

    oval = grid.oval
    fx = best.sum_x / best.area
    fy = best.sum_y / best.area
    mean = best.luma_sum / best.area
    var = best.luma_sq_sum / best.area - mean * mean

    return FaceBlob(
        area=best.area,
        centroid_x=fx,
        centroid_y=fy,
        face_area_ratio=best.area / total,
        center_distance=oval.normalized_distance(fx, fy),
        bbox_width_norm=(best.max_x - best.min_x + grid.step) / (2 * oval.rx),
        bbox_height_norm=(best.max_y - best.min_y + grid.step) / (2 * oval.ry),
        luma_std=math.sqrt(max(0.0, var)),
    )
