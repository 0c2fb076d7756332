"""Synthetic answer sheets for the OMR tests."""

from __future__ import annotations

import base64
import struct
from typing import Dict, Iterable, Optional, Tuple

import cv2
import numpy as np
import pytest

from omr_config import PAGE_HEIGHT, PAGE_WIDTH
from omr_sheet_generator import Box, SheetLayout, sheet_layout

WHITE = 255
BLACK = 0


def draw_rectangle(image: np.ndarray, box: Box, value: int = BLACK) -> None:
    """Fill ``box`` (page units == pixels) on a grayscale canvas."""

    x0, y0 = int(round(box.x)), int(round(box.y))
    x1, y1 = int(round(box.x + box.width)), int(round(box.y + box.height))
    image[y0:y1, x0:x1] = value


def render_sheet(
    layout: Optional[SheetLayout] = None,
    marks: Optional[Dict[int, int]] = None,
    anchors: Iterable[int] = (0, 1, 2, 3),
    size: Tuple[int, int] = (PAGE_WIDTH, PAGE_HEIGHT),
) -> np.ndarray:
    """White page with the selected anchors and fully blackened answer cells.

    ``marks`` maps a question row to the option column to fill.
    """

    layout = layout or sheet_layout()
    width, height = size
    image = np.full((height, width), WHITE, dtype=np.uint8)
    for index in anchors:
        draw_rectangle(image, layout.anchors[index])
    for row, col in (marks or {}).items():
        draw_rectangle(image, layout.cell_box(row, col))
    return image


def photograph(page: np.ndarray, corners, canvas_size: Tuple[int, int]) -> np.ndarray:
    """Project ``page`` onto a larger white canvas as if shot at an angle."""

    height, width = page.shape[:2]
    source = np.float32([[0, 0], [width, 0], [width, height], [0, height]])
    transform = cv2.getPerspectiveTransform(source, np.float32(corners))
    return cv2.warpPerspective(
        page,
        transform,
        canvas_size,
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=WHITE,
    )


def encode_png(image: np.ndarray) -> bytes:
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


def encode_jpeg(image: np.ndarray, orientation: Optional[int] = None) -> bytes:
    """JPEG bytes, optionally tagged with an EXIF Orientation value."""

    ok, buffer = cv2.imencode(".jpg", image, [cv2.IMWRITE_JPEG_QUALITY, 95])
    assert ok
    data = buffer.tobytes()
    if orientation is None:
        return data

    # big-endian TIFF header, one IFD entry: Orientation (0x0112), SHORT, count 1
    tiff = b"MM\x00\x2a" + struct.pack(">I", 8)
    tiff += struct.pack(">H", 1)
    tiff += struct.pack(">HHIHH", 0x0112, 3, 1, orientation, 0)
    tiff += struct.pack(">I", 0)
    payload = b"Exif\x00\x00" + tiff
    app1 = b"\xff\xe1" + struct.pack(">H", len(payload) + 2) + payload
    insert_at = 2  # after SOI
    if data[2:4] == b"\xff\xe0":
        # keep the JFIF APP0 segment first
        insert_at += 2 + struct.unpack(">H", data[4:6])[0]
    return data[:insert_at] + app1 + data[insert_at:]


def to_data_url(image: np.ndarray) -> str:
    return "data:image/png;base64," + base64.b64encode(encode_png(image)).decode("ascii")


@pytest.fixture
def layout() -> SheetLayout:
    return sheet_layout()


@pytest.fixture
def blank_sheet(layout: SheetLayout) -> np.ndarray:
    return render_sheet(layout)


@pytest.fixture
def marked_sheet(layout: SheetLayout) -> np.ndarray:
    return render_sheet(layout, marks={0: 2})
