#!/usr/bin/env python3
"""
OMR Sheet Image Processor
Binarizes a photographed answer sheet, finds the four corner anchor squares and
rectifies the page onto the canonical sheet rectangle.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List, NamedTuple, Optional, Sequence, Tuple

import cv2
import numpy as np

from omr_config import DEFAULT_CONFIG, PipelineConfig
from omr_errors import AnchorDetectionError, DegenerateAnchorsError

logger = logging.getLogger(__name__)

ANCHOR_COUNT = 4


class Point2D(NamedTuple):
    x: float
    y: float


class Rect(NamedTuple):
    x: int
    y: int
    width: int
    height: int

    @property
    def center(self) -> Point2D:
        return Point2D(self.x + self.width / 2.0, self.y + self.height / 2.0)

    @property
    def aspect_ratio(self) -> float:
        return self.width / float(self.height) if self.height else 0.0


# (top-left, top-right, bottom-right, bottom-left)
CornerOrdering = Tuple[Point2D, Point2D, Point2D, Point2D]


# ---------------------------------------------------------------------------
# Step 1: preprocessing
# ---------------------------------------------------------------------------
def to_grayscale(image: np.ndarray) -> np.ndarray:
    """Convert a BGR, BGRA or grayscale image to a single 8-bit channel."""

    if image is None or image.size == 0:
        raise ValueError("Cannot preprocess an empty image")

    if image.dtype == np.uint16:
        image = (image // 257).astype(np.uint8)
    elif image.dtype != np.uint8:
        image = cv2.convertScaleAbs(image)

    if image.ndim == 2:
        return image.copy()
    channels = image.shape[2]
    if channels == 1:
        return image[:, :, 0].copy()
    if channels == 3:
        return cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
    if channels == 4:
        return cv2.cvtColor(image, cv2.COLOR_BGRA2GRAY)
    raise ValueError(f"Unsupported channel count: {channels}")


def binarize(gray: np.ndarray, blur_kernel: int = DEFAULT_CONFIG.blur_kernel) -> np.ndarray:
    """Blur and apply Otsu's threshold so that dark ink becomes 255."""

    blurred = cv2.GaussianBlur(gray, (blur_kernel, blur_kernel), 0)
    _, mask = cv2.threshold(blurred, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
    return mask


def preprocess(image: np.ndarray, config: PipelineConfig = DEFAULT_CONFIG) -> np.ndarray:
    """Source image -> binary mask of the same dimensions."""

    return binarize(to_grayscale(image), config.blur_kernel)


# ---------------------------------------------------------------------------
# Step 2: contours
# ---------------------------------------------------------------------------
@dataclass
class Contour:
    """Closed outer boundary of one connected ink region."""

    points: np.ndarray
    area: float
    perimeter: float
    rect: Rect

    @classmethod
    def from_points(cls, points: np.ndarray) -> "Contour":
        return cls(
            points=points,
            area=float(cv2.contourArea(points)),
            perimeter=float(cv2.arcLength(points, True)),
            rect=Rect(*cv2.boundingRect(points)),
        )

    def approximate(self, epsilon_ratio: float) -> np.ndarray:
        """Polygon approximation with tolerance proportional to the perimeter."""

        return cv2.approxPolyDP(self.points, epsilon_ratio * self.perimeter, True)


def extract_contours(mask: np.ndarray) -> List[Contour]:
    """Find external contours of the foreground regions. Empty for a blank page."""

    found, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
    contours = [Contour.from_points(points) for points in found]
    logger.debug("Found %d external contours", len(contours))
    return contours


# ---------------------------------------------------------------------------
# Step 3: anchors
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class AnchorCandidate:
    contour: Contour
    rect: Rect
    area: float
    vertices: int

    @property
    def center(self) -> Point2D:
        return self.rect.center


def anchor_candidate(contour: Contour, config: PipelineConfig = DEFAULT_CONFIG) -> Optional[AnchorCandidate]:
    """Return the contour as an anchor candidate if it looks like a solid square."""

    if contour.area <= config.min_anchor_area:
        return None

    vertices = len(contour.approximate(config.epsilon_ratio))
    if vertices != 4:
        return None

    if not config.aspect_min <= contour.rect.aspect_ratio <= config.aspect_max:
        return None

    return AnchorCandidate(contour=contour, rect=contour.rect, area=contour.area, vertices=vertices)


def detect_anchors(contours: Iterable[Contour], config: PipelineConfig = DEFAULT_CONFIG) -> List[AnchorCandidate]:
    """Select the four largest square contours as the anchor set."""

    candidates = []
    for contour in contours:
        candidate = anchor_candidate(contour, config)
        if candidate is not None:
            candidates.append(candidate)

    candidates.sort(key=lambda c: c.area, reverse=True)
    logger.debug("Anchor candidates: %d (areas %s)", len(candidates), [round(c.area) for c in candidates])

    if len(candidates) < ANCHOR_COUNT:
        raise AnchorDetectionError(found=len(candidates), expected=ANCHOR_COUNT)
    return candidates[:ANCHOR_COUNT]


# ---------------------------------------------------------------------------
# Step 4: perspective
# ---------------------------------------------------------------------------
def order_corners(points: Sequence[Tuple[float, float]]) -> CornerOrdering:
    """Order four points as (top-left, top-right, bottom-right, bottom-left).

    The two points with the smallest y form the top edge; each pair is then
    ordered left to right.
    """

    if len(points) != ANCHOR_COUNT:
        raise ValueError(f"Expected {ANCHOR_COUNT} points, got {len(points)}")

    by_y = sorted((Point2D(float(x), float(y)) for x, y in points), key=lambda p: (p.y, p.x))
    top = sorted(by_y[:2], key=lambda p: p.x)
    bottom = sorted(by_y[2:], key=lambda p: p.x)
    return top[0], top[1], bottom[1], bottom[0]


def quadrilateral_area(corners: Sequence[Point2D]) -> float:
    """Shoelace area of the polygon in the given vertex order."""

    total = 0.0
    for i, (x0, y0) in enumerate(corners):
        x1, y1 = corners[(i + 1) % len(corners)]
        total += x0 * y1 - x1 * y0
    return abs(total) / 2.0


def validate_quadrilateral(corners: CornerOrdering, min_area: float = DEFAULT_CONFIG.min_quad_area) -> None:
    """Reject collinear, coincident or self-intersecting corner orderings."""

    crosses = []
    for i in range(4):
        ax, ay = corners[i]
        bx, by = corners[(i + 1) % 4]
        cx, cy = corners[(i + 2) % 4]
        crosses.append((bx - ax) * (cy - by) - (by - ay) * (cx - bx))

    convex = all(c > 0 for c in crosses) or all(c < 0 for c in crosses)
    if not convex:
        raise DegenerateAnchorsError(
            "Anchors do not form a convex quadrilateral. Please retake the picture."
        )

    area = quadrilateral_area(corners)
    if area < min_area:
        raise DegenerateAnchorsError(
            f"Anchor quadrilateral is too small ({area:.0f} < {min_area:.0f} px^2). "
            "Please retake the picture."
        )


def compute_transform(corners: CornerOrdering, output_size: Tuple[int, int]) -> np.ndarray:
    """Projective matrix mapping the ordered corners onto the output rectangle."""

    width, height = output_size
    source = np.array(corners, dtype="float32")
    destination = np.array(
        [
            [0, 0],
            [width, 0],
            [width, height],
            [0, height],
        ],
        dtype="float32",
    )

    try:
        transform = cv2.getPerspectiveTransform(source, destination)
    except cv2.error as exc:
        raise DegenerateAnchorsError(f"Perspective transform failed: {exc}") from exc

    if not np.all(np.isfinite(transform)) or abs(np.linalg.det(transform)) < 1e-12:
        raise DegenerateAnchorsError("Perspective transform is singular. Please retake the picture.")
    return transform


def rectify_page(gray: np.ndarray, transform: np.ndarray, output_size: Tuple[int, int]) -> np.ndarray:
    """Warp the grayscale sheet onto the canonical page; outside pixels read as paper."""

    return cv2.warpPerspective(
        gray,
        transform,
        output_size,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=255,
    )


def anchor_corners(anchors: Sequence[AnchorCandidate]) -> CornerOrdering:
    return order_corners([anchor.center for anchor in anchors])
