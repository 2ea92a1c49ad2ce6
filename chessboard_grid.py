"""
Chessboard corner ordering.

OpenCV reports chessboard inner corners as a flat list whose scan order depends
on how the board was photographed: row by row or column by column, left to right
or right to left, top to bottom or bottom to top. This module recovers the
physical row/column layout of those points from geometric cues alone and reduces
the ordered grid to its four outer corners.

Conventions used throughout:
    - grid[row][col] with row index growing downward (image y) and column
      index growing rightward (image x)
    - quads are always ordered bottom-left, bottom-right, top-right, top-left
"""

import math
from dataclasses import dataclass
from enum import IntEnum
from typing import Iterator, NamedTuple, Sequence, Tuple

import numpy as np


# ================================
# ERRORS
# ================================

class FloorProjectionError(RuntimeError):
    """Base class for every failure while projecting an image to the floor"""


class AmbiguousOrientation(FloorProjectionError):
    """None of the scan-order hypotheses matched the detected points"""


class UnsupportedOrientation(FloorProjectionError):
    """The points are in a recognized order that cannot be reconstructed yet"""


# ================================
# DATA STRUCTURES
# ================================

class Point2D(NamedTuple):
    """A single image-plane point"""
    x: float
    y: float


class ImageSize(NamedTuple):
    """Width and height of an image canvas in pixels"""
    width: int
    height: int

    @classmethod
    def of(cls, image: np.ndarray) -> "ImageSize":
        height, width = image.shape[:2]
        return cls(width=int(width), height=int(height))


class Quad(NamedTuple):
    """Four corners in canonical order"""
    bottom_left: Point2D
    bottom_right: Point2D
    top_right: Point2D
    top_left: Point2D

    @classmethod
    def from_points(cls, points) -> "Quad":
        """Build a quad from four (x, y) pairs given in canonical order"""
        coordinates = as_point_array(points)
        if len(coordinates) != 4:
            raise ValueError(f"A quad needs exactly 4 points, got {len(coordinates)}")
        return cls(*(Point2D(float(x), float(y)) for x, y in coordinates))

    def shifted(self, dx: float, dy: float) -> "Quad":
        return Quad(*(Point2D(p.x + dx, p.y + dy) for p in self))

    def as_array(self) -> np.ndarray:
        return np.array(self, dtype=np.float32)


@dataclass(frozen=True)
class GridSize:
    """Inner-corner dimensions of a chessboard pattern"""
    rows: int
    cols: int

    def __post_init__(self):
        if self.rows < 2 or self.cols < 2:
            raise ValueError(
                f"Pattern needs at least 2 rows and 2 columns, got {self.rows}x{self.cols}"
            )

    @property
    def point_count(self) -> int:
        return self.rows * self.cols

    def as_pattern_size(self) -> Tuple[int, int]:
        """OpenCV pattern size: (points per row, points per column)"""
        return (self.cols, self.rows)


@dataclass(frozen=True)
class Orientation:
    """How a flat point sequence maps onto the physical grid"""
    by_row: bool
    transposed: bool


class PointGrid:
    """Immutable rows x cols arrangement of points matching the pattern geometry"""

    def __init__(self, rows: Sequence[Sequence[Point2D]]):
        self._rows = tuple(tuple(Point2D(float(x), float(y)) for x, y in row) for row in rows)
        if not self._rows or len({len(row) for row in self._rows}) != 1:
            raise ValueError("Point grid rows must be non-empty and of equal length")

    @property
    def rows(self) -> int:
        return len(self._rows)

    @property
    def cols(self) -> int:
        return len(self._rows[0])

    def __getitem__(self, row: int) -> Tuple[Point2D, ...]:
        return self._rows[row]

    def __iter__(self) -> Iterator[Tuple[Point2D, ...]]:
        return iter(self._rows)

    def __len__(self) -> int:
        return len(self._rows)

    def __eq__(self, other) -> bool:
        if not isinstance(other, PointGrid):
            return NotImplemented
        return self._rows == other._rows

    def __repr__(self) -> str:
        return f"PointGrid(rows={self.rows}, cols={self.cols})"


class Axis(IntEnum):
    X = 0
    Y = 1


# ================================
# ORIENTATION DETECTION
# ================================

@dataclass(frozen=True)
class OrientationHypothesis:
    """One candidate scan order: the first N points should be monotonic on axis"""
    orientation: Orientation
    run_along_row: bool
    axis: Axis

    def run_length(self, size: GridSize) -> int:
        return size.cols if self.run_along_row else size.rows


# Evaluated in order, first match wins
ORIENTATION_HYPOTHESES = (
    OrientationHypothesis(Orientation(by_row=True, transposed=False), run_along_row=True, axis=Axis.X),
    OrientationHypothesis(Orientation(by_row=False, transposed=False), run_along_row=False, axis=Axis.Y),
    OrientationHypothesis(Orientation(by_row=True, transposed=True), run_along_row=True, axis=Axis.Y),
    OrientationHypothesis(Orientation(by_row=False, transposed=True), run_along_row=False, axis=Axis.X),
)


def as_point_array(points) -> np.ndarray:
    """
    Normalize detector output to an (N, 2) float64 array.

    Accepts sequences of Point2D or (x, y) pairs as well as OpenCV's
    (N, 1, 2) corner arrays.
    """
    coordinates = np.asarray(points, dtype=np.float64)
    if coordinates.size == 0:
        return coordinates.reshape(0, 2)
    if coordinates.shape[-1] != 2:
        raise ValueError(f"Expected 2D points, got array of shape {coordinates.shape}")
    return coordinates.reshape(-1, 2)


def is_monotonic_run(coordinates: np.ndarray, count: int, axis: Axis) -> bool:
    """
    Check whether the first `count` points move in one direction along `axis`.

    Every consecutive pair must step strictly the same way; an equal pair
    counts toward neither direction.
    """
    steps = np.diff(coordinates[:count, int(axis)])
    return bool(np.all(steps > 0) or np.all(steps < 0))


def detect_orientation(points, size: GridSize) -> Orientation:
    """
    Classify the scan order of raw chessboard corners.

    Args:
        points: Flat sequence of detected corners
        size: Physical inner-corner dimensions of the pattern

    Returns:
        The first orientation hypothesis whose monotonicity test holds

    Raises:
        AmbiguousOrientation: too few points, or no hypothesis holds
    """
    coordinates = as_point_array(points)
    longest_run = max(size.rows, size.cols)
    if len(coordinates) < longest_run:
        raise AmbiguousOrientation(
            f"Need at least {longest_run} points for a {size.rows}x{size.cols} pattern, "
            f"got {len(coordinates)}"
        )

    for hypothesis in ORIENTATION_HYPOTHESES:
        if is_monotonic_run(coordinates, hypothesis.run_length(size), hypothesis.axis):
            return hypothesis.orientation

    raise AmbiguousOrientation(
        f"Unexpected order of points for a {size.rows}x{size.cols} pattern"
    )


# ================================
# GRID ORGANIZATION
# ================================

def _sweep(length: int, forward: bool) -> range:
    return range(length) if forward else range(length - 1, -1, -1)


def organize_grid(points, size: GridSize) -> PointGrid:
    """
    Re-index a flat list of chessboard corners into physical row/column order.

    The first point and its two grid neighbours decide the sweep direction of
    each axis, which undoes reversed, upside-down or mirrored scan orders.

    Args:
        points: Flat sequence of rows * cols detected corners
        size: Physical inner-corner dimensions of the pattern

    Returns:
        PointGrid with grid[0][0] at the top-left of the pattern

    Raises:
        AmbiguousOrientation: wrong number of points or unrecognized order
        UnsupportedOrientation: the points are transposed relative to the size
    """
    coordinates = as_point_array(points)
    if len(coordinates) != size.point_count:
        raise AmbiguousOrientation(
            f"Expected {size.point_count} points for a {size.rows}x{size.cols} pattern, "
            f"got {len(coordinates)}"
        )

    orientation = detect_orientation(coordinates, size)
    if orientation.transposed:
        raise UnsupportedOrientation(
            f"Transposed corner order is not supported yet (by_row={orientation.by_row})"
        )

    if orientation.by_row:
        # flat index = row * cols + col
        layout = coordinates.reshape(size.rows, size.cols, 2)
    else:
        # flat index = col * rows + row
        layout = coordinates.reshape(size.cols, size.rows, 2).transpose(1, 0, 2)

    # A B
    # C
    # A: first point, B: next point along the row, C: next point down the column
    first, row_neighbour, column_neighbour = layout[0, 0], layout[0, 1], layout[1, 0]

    column_sweep = _sweep(size.cols, first[Axis.X] < row_neighbour[Axis.X])
    row_sweep = _sweep(size.rows, first[Axis.Y] < column_neighbour[Axis.Y])

    return PointGrid([
        [layout[row, col] for col in column_sweep]
        for row in row_sweep
    ])


# ================================
# CORNER EXTRACTION
# ================================

def extract_corners(grid: PointGrid) -> Quad:
    """Outer corners of an ordered grid in canonical order"""
    return Quad(
        bottom_left=grid[-1][0],
        bottom_right=grid[-1][-1],
        top_right=grid[0][-1],
        top_left=grid[0][0],
    )


def extract_image_corners(size: ImageSize) -> Quad:
    """Bounding box of a full image frame in canonical order"""
    width, height = float(size.width), float(size.height)
    return Quad(
        bottom_left=Point2D(0.0, height),
        bottom_right=Point2D(width, height),
        top_right=Point2D(width, 0.0),
        top_left=Point2D(0.0, 0.0),
    )


def bottom_left_pair(grid: PointGrid) -> Tuple[Point2D, Point2D]:
    """The bottom-left corner and its right-hand neighbour on the bottom row"""
    return grid[-1][0], grid[-1][1]


def point_distance(a: Point2D, b: Point2D) -> float:
    return math.hypot(a.x - b.x, a.y - b.y)


def angle_to_horizon(points, size: GridSize) -> float:
    """
    Angle in degrees between the pattern's bottom edge and the image horizontal.

    Always non-negative; the direction of the tilt is not reported.
    """
    start, end = bottom_left_pair(organize_grid(points, size))
    edge_length = point_distance(start, end)
    if edge_length == 0.0:
        return 0.0
    return math.degrees(math.asin(min(1.0, abs(end.y - start.y) / edge_length)))
