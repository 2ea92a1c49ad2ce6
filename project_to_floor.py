"""
Chessboard Floor Projection

This module takes photographs containing a planar chessboard and produces a
rectified "floor-plane" view of each one: the perspective is corrected as if the
camera looked straight down at the plane of the pattern. The physical size of
one chessboard square is estimated from the photograph itself, so no camera
calibration is needed.

Usage examples:
    # Rectify a single photo of a board with 4 rows x 3 columns of inner corners
    python3 project_to_floor.py photo.jpg --rows 4 --cols 3

    # Batch mode, keep the homographies and write a JSON report
    python3 project_to_floor.py shots/*.jpg --output_dir floor --save_homography --report report.json

    # Inspect the source and rectified images in a window
    python3 project_to_floor.py photo.jpg --interactive
"""

# ================================
# CONFIGURATION VARIABLES
# ================================

# Pattern configuration - inner corners of the printed chessboard
DEFAULT_PATTERN_ROWS = 4
DEFAULT_PATTERN_COLS = 3

# Output configuration
DEFAULT_OUTPUT_DIR = "floor"
DEFAULT_OUTPUT_SUFFIX = "_floor"

# Display configuration
DEFAULT_SCREEN_SIZE = (1920, 1080)
DEFAULT_SCREEN_FRACTION = 0.7

# Corner refinement configuration
SUBPIX_WINDOW = (11, 11)
SUBPIX_ZERO_ZONE = (-1, -1)
SUBPIX_MAX_ITERATIONS = 30
SUBPIX_EPSILON = 0.1

import argparse
import json
import os
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol, Tuple

import cv2
import numpy as np

from chessboard_grid import (
    FloorProjectionError,
    GridSize,
    ImageSize,
    Point2D,
    Quad,
    angle_to_horizon,
    bottom_left_pair,
    extract_corners,
    organize_grid,
    point_distance,
)
from compute_homography import CanvasSafeHomography, build_canvas_safe_homography


class PatternNotFound(FloorProjectionError):
    """The chessboard could not be found in the image"""


# ================================
# DATA STRUCTURES
# ================================

@dataclass(frozen=True)
class FloorProjection:
    """Rectified image together with where the pattern ended up"""
    image: np.ndarray
    target_quad: Quad
    source_quad: Quad
    transformed_corners: Quad
    homography: CanvasSafeHomography
    square_size: float
    raw_corners: np.ndarray


# ================================
# COLLABORATOR PROTOCOLS
# ================================

class PatternDetector(Protocol):
    """Protocol for finding chessboard corners in an image"""

    def detect(self, image: np.ndarray, pattern_size: GridSize) -> Optional[np.ndarray]:
        """Return raw corner positions, or None when the pattern is not found"""
        ...


class ImageWarper(Protocol):
    """Protocol for resampling an image through a homography"""

    def warp(
        self,
        image: np.ndarray,
        homography_matrix: np.ndarray,
        output_size: ImageSize
    ) -> np.ndarray:
        """Return a new image of output_size"""
        ...


class ImageDisplay(Protocol):
    """Protocol for showing intermediate images"""

    def show(self, window_name: str, image: np.ndarray, wait: bool = False) -> None:
        ...


class OutputHandler(Protocol):
    """Protocol for reporting per-image results"""

    def log_projection(self, image_path: str, projection: FloorProjection) -> None:
        ...

    def log_failure(self, image_path: str, error: Exception) -> None:
        ...


# ================================
# OPENCV IMPLEMENTATIONS
# ================================

class OpenCVChessboardDetector:
    """Finds chessboard corners with OpenCV and refines them to sub-pixel precision"""

    FLAGS = (
        cv2.CALIB_CB_ADAPTIVE_THRESH
        | cv2.CALIB_CB_FAST_CHECK
        | cv2.CALIB_CB_NORMALIZE_IMAGE
    )

    def detect(self, image: np.ndarray, pattern_size: GridSize) -> Optional[np.ndarray]:
        found, corners = cv2.findChessboardCorners(
            image, pattern_size.as_pattern_size(), None, self.FLAGS
        )
        if not found or corners is None:
            return None

        # optimize results
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY) if image.ndim == 3 else image
        criteria = (
            cv2.TERM_CRITERIA_EPS + cv2.TERM_CRITERIA_MAX_ITER,
            SUBPIX_MAX_ITERATIONS,
            SUBPIX_EPSILON,
        )
        return cv2.cornerSubPix(gray, corners, SUBPIX_WINDOW, SUBPIX_ZERO_ZONE, criteria)


class OpenCVPerspectiveWarper:
    """Resamples images with cv2.warpPerspective"""

    def warp(
        self,
        image: np.ndarray,
        homography_matrix: np.ndarray,
        output_size: ImageSize
    ) -> np.ndarray:
        return cv2.warpPerspective(
            image, homography_matrix, (output_size.width, output_size.height)
        )


def calculate_display_size(
    original_size: ImageSize,
    screen_size: Tuple[int, int] = DEFAULT_SCREEN_SIZE,
    screen_fraction: float = DEFAULT_SCREEN_FRACTION
) -> ImageSize:
    """
    Scale an image size so that it fits in a fraction of the screen.

    Args:
        original_size: Size of the image to show
        screen_size: (width, height) of the screen in pixels
        screen_fraction: Share of each screen dimension the image may use

    Returns:
        Scaled size preserving the aspect ratio
    """
    target_width = screen_size[0] * screen_fraction
    target_height = screen_size[1] * screen_fraction

    ratio = max(original_size.width / target_width, original_size.height / target_height)
    return ImageSize(
        width=int(round(original_size.width / ratio)),
        height=int(round(original_size.height / ratio)),
    )


class OpenCVDisplay:
    """Shows images in OpenCV windows; does nothing unless interactive"""

    def __init__(self, interactive: bool = False, screen_size: Tuple[int, int] = DEFAULT_SCREEN_SIZE):
        self.interactive = interactive
        self.screen_size = screen_size

    def show(self, window_name: str, image: np.ndarray, wait: bool = False) -> None:
        if not self.interactive:
            return

        display_size = calculate_display_size(ImageSize.of(image), self.screen_size)
        resized = cv2.resize(image, (display_size.width, display_size.height))
        cv2.imshow(window_name, resized)
        if wait:
            cv2.waitKey()


class ConsoleOutputHandler:
    """Prints projection results to the console"""

    def __init__(self, verbosity: int = 0):
        self.verbosity = verbosity

    def log_projection(self, image_path: str, projection: FloorProjection) -> None:
        height, width = projection.image.shape[:2]
        print(f"✅ {image_path}: rectified to {width}x{height} "
              f"(square {projection.square_size:.1f}px, shift {projection.homography.shift})")

        if self.verbosity >= 1:
            print(f"  source quad: {_format_quad(projection.source_quad)}")
            print(f"  target quad: {_format_quad(projection.target_quad)}")
        if self.verbosity >= 2:
            print(f"  image corners: {_format_quad(projection.transformed_corners)}")
            print("  H =\n", projection.homography.matrix)

    def log_failure(self, image_path: str, error: Exception) -> None:
        print(f"❌ {image_path}: {type(error).__name__}: {error}")


def _format_quad(quad: Quad) -> str:
    return ", ".join(f"({p.x:.1f}, {p.y:.1f})" for p in quad)


# ================================
# FLOOR PROJECTION
# ================================

def build_target_rectangle(anchor: Point2D, square_size: float, pattern_size: GridSize) -> Quad:
    """
    Axis-aligned rectangle the pattern corners should map to.

    Anchored at the photographed bottom-left corner; each square becomes
    square_size pixels on a side.
    """
    width = square_size * (pattern_size.cols - 1)
    height = square_size * (pattern_size.rows - 1)
    return Quad(
        bottom_left=Point2D(anchor.x, anchor.y),
        bottom_right=Point2D(anchor.x + width, anchor.y),
        top_right=Point2D(anchor.x + width, anchor.y - height),
        top_left=Point2D(anchor.x, anchor.y - height),
    )


class FloorProjector:
    """
    Rectifies chessboard photographs onto the plane of the board.

    Pattern detection, warping and display are injected collaborators; by
    default the OpenCV implementations are used.
    """

    def __init__(
        self,
        detector: Optional[PatternDetector] = None,
        warper: Optional[ImageWarper] = None,
        display: Optional[ImageDisplay] = None,
        interactive: bool = False
    ):
        """
        Args:
            detector: Chessboard corner detector
            warper: Perspective resampler
            display: Image display; defaults to OpenCVDisplay(interactive)
            interactive: Whether the default display opens windows
        """
        self.detector = detector or OpenCVChessboardDetector()
        self.warper = warper or OpenCVPerspectiveWarper()
        self.display = display or OpenCVDisplay(interactive=interactive)

    def project_to_floor(self, image: np.ndarray, pattern_size: GridSize) -> FloorProjection:
        """
        Rectify an image so the chessboard plane is seen straight on.

        Args:
            image: Photograph containing the chessboard
            pattern_size: Inner-corner dimensions of the chessboard

        Returns:
            FloorProjection with the warped image and the pattern location in it

        Raises:
            PatternNotFound: the detector did not find the chessboard
            AmbiguousOrientation: the corner order could not be classified
            UnsupportedOrientation: the corners are in transposed order
            DegenerateCorrespondence: the corners cannot define a homography
        """
        raw_corners = self.detector.detect(image, pattern_size)
        if raw_corners is None:
            raise PatternNotFound(
                f"No {pattern_size.rows}x{pattern_size.cols} chessboard found"
            )

        self.display.show("source", image, wait=True)

        grid = organize_grid(raw_corners, pattern_size)
        source_quad = extract_corners(grid)

        # assume that we could estimate the square size in pixels using the two
        # leftmost points at the bottom of the chessboard
        anchor, neighbour = bottom_left_pair(grid)
        square_size = point_distance(anchor, neighbour)
        target_quad = build_target_rectangle(anchor, square_size, pattern_size)

        homography = build_canvas_safe_homography(
            source_quad, target_quad, ImageSize.of(image)
        )
        rectified = self.warper.warp(image, homography.matrix, homography.canvas_size)

        self.display.show("rectified", rectified, wait=True)

        dx, dy = homography.shift
        return FloorProjection(
            image=rectified,
            target_quad=target_quad.shifted(dx, dy),
            source_quad=source_quad,
            transformed_corners=homography.transformed_source_bounds,
            homography=homography,
            square_size=square_size,
            raw_corners=np.asarray(raw_corners),
        )


# ================================
# BATCH PROCESSING
# ================================

def create_argument_parser() -> argparse.ArgumentParser:
    """
    Create and configure command-line argument parser.

    Returns:
        Configured ArgumentParser instance with all required options
    """
    parser = argparse.ArgumentParser(
        description="Project chessboard photographs onto the floor plane",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter
    )

    parser.add_argument(
        "files",
        nargs="+",
        help="Images to rectify"
    )

    # Pattern configuration
    parser.add_argument(
        "--rows",
        type=int,
        default=DEFAULT_PATTERN_ROWS,
        help="Number of inner-corner rows of the chessboard"
    )
    parser.add_argument(
        "--cols",
        type=int,
        default=DEFAULT_PATTERN_COLS,
        help="Number of inner-corner columns of the chessboard"
    )

    # Output options
    parser.add_argument(
        "--output_dir",
        default=DEFAULT_OUTPUT_DIR,
        help="Directory for rectified images"
    )
    parser.add_argument(
        "--save_homography",
        action="store_true",
        help="Also save each homography matrix as a .npy file next to its image"
    )
    parser.add_argument(
        "--report",
        type=str,
        help="Path of a JSON report describing every processed image"
    )

    # Interaction
    parser.add_argument(
        "--interactive",
        action="store_true",
        help="Show source and rectified images in a window"
    )
    parser.add_argument(
        "-v", "--verbose",
        action="count",
        default=0,
        help="Increase console output (repeat for more)"
    )

    return parser


def output_path_for(image_path: str, output_dir: str, suffix: str = DEFAULT_OUTPUT_SUFFIX) -> str:
    stem, extension = os.path.splitext(os.path.basename(image_path))
    return os.path.join(output_dir, f"{stem}{suffix}{extension or '.png'}")


def _quad_to_list(quad: Quad) -> List[List[float]]:
    return [[p.x, p.y] for p in quad]


def projection_to_record(image_path: str, projection: FloorProjection, pattern_size: GridSize) -> dict:
    """JSON-serializable summary of one successful projection"""
    height, width = projection.image.shape[:2]
    return {
        'file': image_path,
        'status': 'ok',
        'output_size': [int(width), int(height)],
        'square_size': float(projection.square_size),
        'shift': list(projection.homography.shift),
        'source_quad': _quad_to_list(projection.source_quad),
        'target_quad': _quad_to_list(projection.target_quad),
        'transformed_corners': _quad_to_list(projection.transformed_corners),
        'homography': np.asarray(projection.homography.matrix, dtype=float).tolist(),
        'angle_to_horizon': angle_to_horizon(projection.raw_corners, pattern_size),
    }


def save_report(results: List[dict], filename: str) -> None:
    """Save per-image projection results to a JSON file."""
    output = {
        'metadata': {
            'recorded_at': datetime.now().isoformat(),
            'total_images': len(results),
            'succeeded': sum(1 for result in results if result['status'] == 'ok'),
        },
        'results': results
    }

    directory = os.path.dirname(filename)
    if directory:
        os.makedirs(directory, exist_ok=True)
    with open(filename, 'w') as f:
        json.dump(output, f, indent=2)

    print(f"Saved report for {len(results)} image(s) to {filename}")


def process_files(
    image_paths: List[str],
    pattern_size: GridSize,
    projector: FloorProjector,
    output_handler: OutputHandler,
    output_dir: str = DEFAULT_OUTPUT_DIR,
    save_homography: bool = False
) -> List[dict]:
    """
    Rectify every image, writing results to output_dir.

    A failure on one image is reported and processing continues with the next.

    Returns:
        One report record per image, in input order
    """
    os.makedirs(output_dir, exist_ok=True)
    results = []

    for image_path in image_paths:
        image = cv2.imread(image_path)
        if image is None:
            error = IOError(f"Failed to load image: {image_path}")
            output_handler.log_failure(image_path, error)
            results.append({'file': image_path, 'status': 'error', 'error': str(error)})
            continue

        try:
            projection = projector.project_to_floor(image, pattern_size)
        except FloorProjectionError as error:
            output_handler.log_failure(image_path, error)
            results.append({
                'file': image_path,
                'status': 'error',
                'error': f"{type(error).__name__}: {error}",
            })
            continue

        out_path = output_path_for(image_path, output_dir)
        if not cv2.imwrite(out_path, projection.image):
            print(f"WARNING: Failed to save image (cv2.imwrite returned False): {out_path}")
        if save_homography:
            np.save(os.path.splitext(out_path)[0] + "_homography.npy", projection.homography.matrix)

        output_handler.log_projection(image_path, projection)
        record = projection_to_record(image_path, projection, pattern_size)
        record['output'] = out_path
        results.append(record)

    return results


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the floor projection tool.

    Returns:
        0 when every image was rectified, 1 otherwise
    """
    argument_parser = create_argument_parser()
    args = argument_parser.parse_args(argv)

    try:
        pattern_size = GridSize(rows=args.rows, cols=args.cols)
    except ValueError as error:
        argument_parser.error(str(error))

    projector = FloorProjector(interactive=args.interactive)
    output_handler = ConsoleOutputHandler(verbosity=args.verbose)

    try:
        results = process_files(
            args.files,
            pattern_size,
            projector,
            output_handler,
            output_dir=args.output_dir,
            save_homography=args.save_homography,
        )
    finally:
        if args.interactive:
            cv2.destroyAllWindows()

    if args.report:
        save_report(results, args.report)

    failed = [result for result in results if result['status'] != 'ok']
    print(f"Processed {len(results)} image(s), {len(failed)} failed.")
    return 1 if failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
