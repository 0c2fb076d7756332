"""Tests for preprocessing, contour extraction, anchor detection and rectification."""

from __future__ import annotations

import itertools

import cv2
import numpy as np
import pytest

from omr_config import PAGE_HEIGHT, PAGE_WIDTH, PipelineConfig
from omr_errors import AnchorDetectionError, DegenerateAnchorsError
from omr_processor import (
    Point2D,
    Rect,
    anchor_candidate,
    anchor_corners,
    compute_transform,
    detect_anchors,
    extract_contours,
    order_corners,
    preprocess,
    quadrilateral_area,
    rectify_page,
    to_grayscale,
    validate_quadrilateral,
)


def square_mask(squares, shape=(600, 800)):
    """Binary mask (ink = 255) with filled ``(x, y, side)`` squares."""

    mask = np.zeros(shape, dtype=np.uint8)
    for x, y, side in squares:
        mask[y:y + side, x:x + side] = 255
    return mask


def test_preprocess_marks_dark_ink_as_foreground(blank_sheet):
    mask = preprocess(blank_sheet)

    assert mask.shape == blank_sheet.shape
    assert set(np.unique(mask)) <= {0, 255}
    # anchor interior is ink, page center is paper
    assert mask[48, 48] == 255
    assert mask[PAGE_HEIGHT // 2, PAGE_WIDTH // 2] == 0


def test_preprocess_accepts_color_and_alpha(blank_sheet):
    bgr = cv2.cvtColor(blank_sheet, cv2.COLOR_GRAY2BGR)
    bgra = cv2.cvtColor(blank_sheet, cv2.COLOR_GRAY2BGRA)

    expected = preprocess(blank_sheet)
    assert np.array_equal(preprocess(bgr), expected)
    assert np.array_equal(preprocess(bgra), expected)


def test_to_grayscale_rejects_empty_image():
    with pytest.raises(ValueError):
        to_grayscale(np.zeros((0, 0), dtype=np.uint8))


def test_blank_page_has_no_contours():
    page = np.full((200, 300), 255, dtype=np.uint8)
    assert extract_contours(preprocess(page)) == []


def test_contour_geometry():
    contours = extract_contours(square_mask([(10, 20, 40)]))

    assert len(contours) == 1
    contour = contours[0]
    assert contour.rect == Rect(10, 20, 40, 40)
    assert contour.area == pytest.approx(39 * 39)
    assert len(contour.approximate(0.04)) == 4


def test_detects_four_squares_ranked_by_area():
    squares = [(20, 20, 70), (700, 20, 60), (700, 500, 50), (20, 500, 40), (400, 300, 25)]
    contours = extract_contours(square_mask(squares))

    anchors = detect_anchors(contours)

    assert [a.rect for a in anchors] == [
        Rect(20, 20, 70, 70),
        Rect(700, 20, 60, 60),
        Rect(700, 500, 50, 50),
        Rect(20, 500, 40, 40),
    ]
    assert all(a.vertices == 4 for a in anchors)


def test_too_few_anchors_reports_count():
    contours = extract_contours(square_mask([(20, 20, 60), (700, 20, 60)]))

    with pytest.raises(AnchorDetectionError) as excinfo:
        detect_anchors(contours)

    assert excinfo.value.found == 2
    assert "found 2" in str(excinfo.value)


def test_non_square_candidates_are_excluded_even_if_large():
    mask = square_mask([(20, 20, 60), (700, 20, 60), (700, 500, 60), (20, 500, 60)])
    mask[250:330, 250:450] = 255  # 200x80 bar, far larger than the anchors

    anchors = detect_anchors(extract_contours(mask))

    assert len(anchors) == 4
    assert all(a.rect.width == 60 for a in anchors)


def test_candidate_filters():
    config = PipelineConfig()
    small = extract_contours(square_mask([(10, 10, 15)]))[0]  # area 196
    tall_mask = np.zeros((300, 300), dtype=np.uint8)
    tall_mask[10:110, 10:60] = 255
    tall = extract_contours(tall_mask)[0]
    disc_mask = np.zeros((300, 300), dtype=np.uint8)
    cv2.circle(disc_mask, (150, 150), 60, 255, -1)
    disc = extract_contours(disc_mask)[0]

    assert anchor_candidate(small, config) is None
    assert anchor_candidate(tall, config) is None
    assert anchor_candidate(disc, config) is None


def test_min_area_is_configurable():
    contours = extract_contours(square_mask([(20, 20, 30), (700, 20, 30), (700, 500, 30), (20, 500, 30)]))

    assert len(detect_anchors(contours, PipelineConfig(min_anchor_area=400.0))) == 4
    with pytest.raises(AnchorDetectionError):
        detect_anchors(contours, PipelineConfig(min_anchor_area=1000.0))


def test_corner_ordering_is_independent_of_input_order():
    points = [(102.0, 81.0), (498.0, 88.0), (505.0, 702.0), (95.0, 694.0)]
    expected = (
        Point2D(102.0, 81.0),
        Point2D(498.0, 88.0),
        Point2D(505.0, 702.0),
        Point2D(95.0, 694.0),
    )

    for permutation in itertools.permutations(points):
        assert order_corners(list(permutation)) == expected


def test_order_corners_requires_four_points():
    with pytest.raises(ValueError):
        order_corners([(0, 0), (1, 0), (1, 1)])


def test_anchor_corners_use_bounding_box_centers():
    contours = extract_contours(square_mask([(20, 20, 60), (700, 20, 60), (700, 500, 60), (20, 500, 60)]))

    corners = anchor_corners(detect_anchors(contours))

    assert corners == (
        Point2D(50.0, 50.0),
        Point2D(730.0, 50.0),
        Point2D(730.0, 530.0),
        Point2D(50.0, 530.0),
    )


def test_identity_rectification_reproduces_the_page():
    rng = np.random.default_rng(7)
    source = rng.integers(0, 256, size=(900, 700), dtype=np.uint8)
    source = cv2.GaussianBlur(source, (9, 9), 0)
    corners = order_corners([(0, 0), (PAGE_WIDTH, 0), (PAGE_WIDTH, PAGE_HEIGHT), (0, PAGE_HEIGHT)])

    transform = compute_transform(corners, (PAGE_WIDTH, PAGE_HEIGHT))
    rectified = rectify_page(source, transform, (PAGE_WIDTH, PAGE_HEIGHT))

    assert np.allclose(transform, np.eye(3), atol=1e-6)
    assert rectified.shape == (PAGE_HEIGHT, PAGE_WIDTH)
    diff = np.abs(rectified.astype(int) - source[:PAGE_HEIGHT, :PAGE_WIDTH].astype(int))
    assert diff.max() <= 1


def test_collinear_anchors_are_rejected():
    corners = order_corners([(0, 100), (100, 100), (200, 100), (300, 100)])

    with pytest.raises(DegenerateAnchorsError):
        validate_quadrilateral(corners)


def test_coincident_anchors_are_rejected():
    corners = order_corners([(50, 50), (50, 50), (400, 600), (50, 600)])

    with pytest.raises(DegenerateAnchorsError):
        validate_quadrilateral(corners)


def test_tiny_quadrilateral_is_rejected():
    corners = order_corners([(0, 0), (10, 0), (10, 10), (0, 10)])

    assert quadrilateral_area(corners) == pytest.approx(100.0)
    with pytest.raises(DegenerateAnchorsError):
        validate_quadrilateral(corners, min_area=1000.0)
    validate_quadrilateral(corners, min_area=50.0)
