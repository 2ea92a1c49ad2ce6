# Computes homography matrices that keep the warped image on a non-negative canvas.

import math
from dataclasses import dataclass
from typing import Iterable, Tuple

import cv2
import numpy as np

from chessboard_grid import (
    FloorProjectionError,
    ImageSize,
    Point2D,
    Quad,
    as_point_array,
    extract_image_corners,
)

MIN_CORRESPONDENCES = 4

# Sub-pixel slack below which fitting noise is not worth a whole pixel
PIXEL_TOLERANCE = 1e-3


def _whole_pixels(value: float) -> int:
    return int(math.ceil(max(0.0, value - PIXEL_TOLERANCE)))


class DegenerateCorrespondence(FloorProjectionError):
    """Not enough independent point pairs to fit a homography"""


class HorizonInsideCanvas(DegenerateCorrespondence):
    """The projection's horizon line crosses the source canvas"""


@dataclass(frozen=True)
class BoundingExtent:
    """Axis-aligned extent of a set of points"""
    min_x: float
    max_x: float
    min_y: float
    max_y: float

    @classmethod
    def of(cls, points: Iterable) -> "BoundingExtent":
        coordinates = as_point_array(list(points))
        if len(coordinates) == 0:
            raise ValueError("Cannot compute the extent of an empty point set")
        min_x, min_y = coordinates.min(axis=0)
        max_x, max_y = coordinates.max(axis=0)
        return cls(float(min_x), float(max_x), float(min_y), float(max_y))

    @property
    def width(self) -> float:
        return self.max_x - self.min_x

    @property
    def height(self) -> float:
        return self.max_y - self.min_y


@dataclass(frozen=True)
class CanvasSafeHomography:
    """
    Projective transform whose output stays in non-negative coordinates.

    The shift is already folded into `matrix`; anything placed in destination
    space from pre-shift coordinates (such as the target rectangle) has to be
    translated by `shift` as well.
    """
    matrix: np.ndarray
    shift: Tuple[int, int]
    transformed_source_bounds: Quad

    @property
    def canvas_size(self) -> ImageSize:
        """
        Output canvas covering the transformed source bounds.

        The canvas starts at the origin, so it reaches out to the far edges of
        the bounds rather than matching their width and height.
        """
        extent = BoundingExtent.of(self.transformed_source_bounds)
        return ImageSize(
            width=_whole_pixels(extent.max_x),
            height=_whole_pixels(extent.max_y),
        )


def fit_robust_homography(from_points, to_points) -> np.ndarray:
    """
    Fit a 3x3 homography mapping from_points onto to_points with RANSAC.

    Args:
        from_points: Source points, any shape accepted by as_point_array
        to_points: Destination points, same count as from_points

    Returns:
        3x3 float64 homography matrix

    Raises:
        DegenerateCorrespondence: fewer than 4 independent correspondences
    """
    src = as_point_array(from_points).astype(np.float32)
    dst = as_point_array(to_points).astype(np.float32)

    if len(src) != len(dst):
        raise DegenerateCorrespondence(
            f"Point count mismatch: {len(src)} source vs {len(dst)} destination points"
        )
    if len(src) < MIN_CORRESPONDENCES:
        raise DegenerateCorrespondence(
            f"Need at least {MIN_CORRESPONDENCES} correspondences, got {len(src)}"
        )
    for name, pts in (("source", src), ("destination", dst)):
        distinct = len(np.unique(pts, axis=0))
        if distinct < MIN_CORRESPONDENCES:
            raise DegenerateCorrespondence(
                f"Need at least {MIN_CORRESPONDENCES} distinct {name} points, got {distinct}"
            )

    try:
        H, _ = cv2.findHomography(src, dst, method=cv2.RANSAC)
    except cv2.error as error:
        raise DegenerateCorrespondence(f"Homography failed: {error}") from error
    if H is None:
        raise DegenerateCorrespondence("Homography failed. Check point order / non-collinearity.")

    return H


def apply_homography(points, homography_matrix: np.ndarray) -> Tuple[Point2D, ...]:
    """Transform a batch of points through a homography"""
    # OpenCV requires points as (N, 1, 2) for perspectiveTransform
    src = as_point_array(points).astype(np.float32).reshape(-1, 1, 2)
    transformed = cv2.perspectiveTransform(src, np.asarray(homography_matrix, dtype=np.float64))
    return tuple(Point2D(float(x), float(y)) for x, y in transformed.reshape(-1, 2))


def compute_shift(extent: BoundingExtent) -> Tuple[int, int]:
    """Smallest integer translation that moves the extent into x >= 0, y >= 0"""
    return _whole_pixels(-extent.min_x), _whole_pixels(-extent.min_y)


def ensure_canvas_before_horizon(corners: Quad, homography_matrix: np.ndarray) -> None:
    """
    Reject homographies whose horizon line runs through the given corners.

    Points on opposite sides of the horizon get projective weights of opposite
    sign and land on opposite sides of infinity, so no translation can bring
    all of them into non-negative coordinates.

    Raises:
        HorizonInsideCanvas: the weights differ in sign or one of them is zero
    """
    homogeneous = np.column_stack([corners.as_array(), np.ones(len(corners), dtype=np.float32)])
    weights = homogeneous @ np.asarray(homography_matrix, dtype=np.float64)[2]
    if not (np.all(weights > 0) or np.all(weights < 0)):
        raise HorizonInsideCanvas(
            f"Canvas crosses the horizon of the projection (corner weights {np.round(weights, 6).tolist()})"
        )


def build_canvas_safe_homography(
    source_quad: Quad,
    target_quad: Quad,
    source_canvas_size: ImageSize
) -> CanvasSafeHomography:
    """
    Compute a homography from source_quad to target_quad that keeps the whole
    source canvas inside non-negative destination coordinates.

    A first fit projects the corners of the source canvas; if any of them land
    at negative coordinates the target is translated by the smallest integer
    shift that fixes it and the homography is fitted again.

    Args:
        source_quad: Pattern corners as photographed
        target_quad: Where those corners should land
        source_canvas_size: Size of the image the source quad lives in

    Returns:
        CanvasSafeHomography with the final matrix, the shift and the
        shifted positions of the source canvas corners

    Raises:
        DegenerateCorrespondence: the quads cannot define a homography
        HorizonInsideCanvas: part of the canvas would be mapped beyond infinity
    """
    # find preliminary homography matrix
    preliminary_matrix = fit_robust_homography(source_quad, target_quad)

    canvas_corners = extract_image_corners(source_canvas_size)
    ensure_canvas_before_horizon(canvas_corners, preliminary_matrix)
    transformed_bounds = Quad(*apply_homography(canvas_corners, preliminary_matrix))

    # apply offsets
    dx, dy = compute_shift(BoundingExtent.of(transformed_bounds))
    shifted_target = target_quad.shifted(dx, dy)
    shifted_bounds = transformed_bounds.shifted(dx, dy)

    # recalculate homography accounting offsets
    matrix = fit_robust_homography(source_quad, shifted_target)

    return CanvasSafeHomography(
        matrix=matrix,
        shift=(dx, dy),
        transformed_source_bounds=shifted_bounds,
    )
