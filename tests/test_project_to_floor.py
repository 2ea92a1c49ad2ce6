import json
import os

import cv2
import numpy as np
import pytest

import project_to_floor
from chessboard_grid import AmbiguousOrientation, GridSize, ImageSize, Point2D, Quad
from compute_homography import apply_homography
from project_to_floor import (
    ConsoleOutputHandler,
    FloorProjector,
    OpenCVDisplay,
    PatternNotFound,
    build_target_rectangle,
    calculate_display_size,
    main,
    output_path_for,
)

PATTERN = GridSize(rows=4, cols=3)


def make_chessboard(squares_x=4, squares_y=5, square=40, margin=60):
    """White-bordered chessboard whose inner corners form a (squares_y-1) x (squares_x-1) grid"""
    height = squares_y * square + 2 * margin
    width = squares_x * square + 2 * margin
    board = np.full((height, width, 3), 255, dtype=np.uint8)
    for j in range(squares_y):
        for i in range(squares_x):
            if (i + j) % 2 == 0:
                y0, x0 = margin + j * square, margin + i * square
                board[y0:y0 + square, x0:x0 + square] = 0
    return board


def tilted_corners(rows, cols):
    """Keystoned board corners, bottom row first, in OpenCV's (N, 1, 2) layout"""
    points = [
        (150.0 + c * (60.0 - 4.0 * r) + 6.0 * r, 300.0 - r * 40.0 + 2.0 * c)
        for r in range(rows) for c in range(cols)
    ]
    return np.array(points, dtype=np.float32).reshape(-1, 1, 2)


class FakeDetector:
    def __init__(self, corners):
        self.corners = corners
        self.calls = 0

    def detect(self, image, pattern_size):
        self.calls += 1
        return self.corners


class RecordingWarper:
    def __init__(self):
        self.calls = []

    def warp(self, image, homography_matrix, output_size):
        self.calls.append((homography_matrix, output_size))
        return np.zeros((output_size.height, output_size.width, 3), dtype=np.uint8)


class RefusingWarper:
    def warp(self, image, homography_matrix, output_size):
        raise AssertionError("warp must not be called")


class RecordingDisplay:
    def __init__(self):
        self.shown = []

    def show(self, window_name, image, wait=False):
        self.shown.append(window_name)


def test_missing_pattern_fails_before_any_geometry(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("homography must not be computed")

    monkeypatch.setattr(project_to_floor, "build_canvas_safe_homography", refuse)
    detector = FakeDetector(None)
    projector = FloorProjector(detector=detector, warper=RefusingWarper(), display=RecordingDisplay())

    with pytest.raises(PatternNotFound):
        projector.project_to_floor(np.zeros((480, 640, 3), dtype=np.uint8), PATTERN)
    assert detector.calls == 1


def test_projection_with_injected_collaborators():
    corners = tilted_corners(PATTERN.rows, PATTERN.cols)
    warper = RecordingWarper()
    display = RecordingDisplay()
    projector = FloorProjector(detector=FakeDetector(corners), warper=warper, display=display)

    result = projector.project_to_floor(np.zeros((480, 640, 3), dtype=np.uint8), PATTERN)

    flat = corners.reshape(-1, 2)
    # first detected point is the bottom-left corner of the board
    assert result.source_quad.bottom_left == Point2D(*map(float, flat[0]))
    assert result.source_quad.top_left == Point2D(*map(float, flat[(PATTERN.rows - 1) * PATTERN.cols]))

    expected_square = float(np.hypot(*(flat[1] - flat[0])))
    assert result.square_size == pytest.approx(expected_square)

    dx, dy = result.homography.shift
    target = result.target_quad
    assert target.bottom_left.x == pytest.approx(flat[0][0] + dx)
    assert target.bottom_left.y == pytest.approx(flat[0][1] + dy)
    assert target.bottom_right.x - target.bottom_left.x == pytest.approx(expected_square * (PATTERN.cols - 1))
    assert target.bottom_left.y - target.top_left.y == pytest.approx(expected_square * (PATTERN.rows - 1))

    # the pattern lands on the shifted target in the rectified image
    landed = np.array(apply_homography(result.source_quad, result.homography.matrix))
    np.testing.assert_allclose(landed, np.array(target), atol=1e-2)

    assert len(warper.calls) == 1
    assert warper.calls[0][1] == result.homography.canvas_size
    assert result.image.shape[:2] == (result.homography.canvas_size.height, result.homography.canvas_size.width)
    assert np.array(result.transformed_corners).min() >= -1e-3
    assert display.shown == ["source", "rectified"]


def test_unordered_corners_surface_as_failures():
    corners = np.full((PATTERN.rows * PATTERN.cols, 1, 2), 5.0, dtype=np.float32)
    projector = FloorProjector(detector=FakeDetector(corners), warper=RefusingWarper(), display=RecordingDisplay())

    with pytest.raises(AmbiguousOrientation):
        projector.project_to_floor(np.zeros((100, 100, 3), dtype=np.uint8), PATTERN)


def test_rectifies_synthetic_chessboard_with_opencv():
    board = make_chessboard()

    result = FloorProjector().project_to_floor(board, PATTERN)

    assert result.square_size == pytest.approx(40.0, abs=1.5)
    width = result.target_quad.bottom_right.x - result.target_quad.bottom_left.x
    assert width == pytest.approx(result.square_size * (PATTERN.cols - 1))
    assert result.image.ndim == 3
    assert result.image.shape[0] > 0 and result.image.shape[1] > 0
    assert np.array(result.transformed_corners).min() >= -1e-3


def photograph_at_an_angle(board):
    """The board seen through a mild perspective, on a white background"""
    height, width = board.shape[:2]
    src = np.float32([[0, 0], [width, 0], [width, height], [0, height]])
    dst = np.float32([[30, 20], [width + 30, 45], [width + 50, height + 60], [10, height + 50]])
    warp = cv2.getPerspectiveTransform(src, dst)
    return cv2.warpPerspective(board, warp, (width + 80, height + 90), borderValue=(255, 255, 255))


def test_rectified_image_projects_onto_itself():
    projector = FloorProjector()
    first = projector.project_to_floor(photograph_at_an_angle(make_chessboard()), PATTERN)

    second = projector.project_to_floor(first.image, PATTERN)

    H = second.homography.matrix / second.homography.matrix[2, 2]
    dx, dy = second.homography.shift
    np.testing.assert_allclose(H[:2, :2], np.eye(2), atol=0.02)
    np.testing.assert_allclose(H[2, :2], [0.0, 0.0], atol=1e-4)
    assert abs(H[0, 2]) <= dx + 1.0
    assert abs(H[1, 2]) <= dy + 1.0
    assert second.square_size == pytest.approx(first.square_size, rel=0.02)


def test_build_target_rectangle():
    quad = build_target_rectangle(Point2D(10.0, 200.0), 25.0, GridSize(rows=3, cols=5))

    assert quad == Quad(
        Point2D(10.0, 200.0),
        Point2D(110.0, 200.0),
        Point2D(110.0, 150.0),
        Point2D(10.0, 150.0),
    )


def test_display_size_fits_screen_fraction():
    assert calculate_display_size(ImageSize(3840, 2160)) == ImageSize(1344, 756)
    assert calculate_display_size(ImageSize(1000, 2000)) == ImageSize(378, 756)


def test_non_interactive_display_opens_no_window(monkeypatch):
    def refuse(*args, **kwargs):
        raise AssertionError("no window expected")

    monkeypatch.setattr(cv2, "imshow", refuse)
    OpenCVDisplay(interactive=False).show("x", np.zeros((10, 10, 3), dtype=np.uint8), wait=True)


def test_output_path_for():
    assert output_path_for(os.path.join("shots", "board.jpg"), "out") == os.path.join("out", "board_floor.jpg")
    assert output_path_for("board", "out") == os.path.join("out", "board_floor.png")


def test_console_handler_reports_failure(capsys):
    ConsoleOutputHandler().log_failure("a.jpg", PatternNotFound("nope"))

    assert "PatternNotFound" in capsys.readouterr().out


def test_batch_run_continues_after_failures(tmp_path):
    board_path = tmp_path / "board.png"
    blank_path = tmp_path / "blank.png"
    cv2.imwrite(str(board_path), make_chessboard())
    cv2.imwrite(str(blank_path), np.full((200, 200, 3), 255, dtype=np.uint8))
    output_dir = tmp_path / "floor"
    report_path = tmp_path / "report.json"

    status = main([
        str(board_path), str(blank_path), str(tmp_path / "missing.png"),
        "--rows", "4", "--cols", "3",
        "--output_dir", str(output_dir),
        "--save_homography",
        "--report", str(report_path),
        "-v",
    ])

    assert status == 1
    assert (output_dir / "board_floor.png").exists()
    assert np.load(str(output_dir / "board_floor_homography.npy")).shape == (3, 3)

    report = json.loads(report_path.read_text())
    assert report["metadata"]["total_images"] == 3
    assert report["metadata"]["succeeded"] == 1
    statuses = [result["status"] for result in report["results"]]
    assert statuses == ["ok", "error", "error"]
    assert "PatternNotFound" in report["results"][1]["error"]
    assert len(report["results"][0]["homography"]) == 3
    assert report["results"][0]["angle_to_horizon"] == pytest.approx(0.0, abs=1.0)


def test_invalid_pattern_size_is_rejected(tmp_path):
    with pytest.raises(SystemExit):
        main([str(tmp_path / "x.png"), "--rows", "1"])
