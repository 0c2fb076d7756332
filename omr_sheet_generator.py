#!/usr/bin/env python3
"""
Generate an OMR answer sheet PDF matching the scanner's geometry using reportlab.

The four solid corner anchors are what the scanner rectifies on: after
rectification the anchor centers become the page corners, and the area between
them is split into one row per question and one column per option.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from pathlib import Path
from typing import NamedTuple, Optional, Tuple

from reportlab.lib import colors
from reportlab.pdfgen import canvas

from omr_config import (
    ANCHOR_INSET,
    ANCHOR_SIZE,
    DEFAULT_NUM_QUESTIONS,
    NUM_OPTIONS,
    PAGE_HEIGHT,
    PAGE_WIDTH,
    cell_resembles_anchor,
    option_letters,
)


class Box(NamedTuple):
    """Axis-aligned box in page units, origin at the top-left corner."""

    x: float
    y: float
    width: float
    height: float

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0


@dataclass(frozen=True)
class SheetLayout:
    page_width: float
    page_height: float
    num_questions: int
    num_options: int
    anchors: Tuple[Box, Box, Box, Box]  # tl, tr, br, bl

    @property
    def grid_box(self) -> Box:
        """Region between the anchor centers; it becomes the whole rectified page."""

        (x0, y0), (x1, y1) = self.anchors[0].center, self.anchors[2].center
        return Box(x0, y0, x1 - x0, y1 - y0)

    def cell_box(self, row: int, col: int) -> Box:
        grid = self.grid_box
        width = grid.width / self.num_options
        height = grid.height / self.num_questions
        return Box(grid.x + col * width, grid.y + row * height, width, height)


def sheet_layout(
    num_questions: int = DEFAULT_NUM_QUESTIONS,
    num_options: int = NUM_OPTIONS,
    page_size: Tuple[float, float] = (PAGE_WIDTH, PAGE_HEIGHT),
) -> SheetLayout:
    """Anchor and grid geometry shared by the printed sheet and the scanner."""

    if num_questions < 1:
        raise ValueError("num_questions must be >= 1")
    option_letters(num_options)
    if cell_resembles_anchor(num_questions, num_options, page_size=page_size):
        # a filled cell would be read as a fifth anchor
        raise ValueError(
            f"{num_questions} questions x {num_options} options gives near-square cells; "
            "choose another question count"
        )

    width, height = page_size
    near = ANCHOR_INSET
    far_x = width - ANCHOR_INSET - ANCHOR_SIZE
    far_y = height - ANCHOR_INSET - ANCHOR_SIZE
    anchors = (
        Box(near, near, ANCHOR_SIZE, ANCHOR_SIZE),
        Box(far_x, near, ANCHOR_SIZE, ANCHOR_SIZE),
        Box(far_x, far_y, ANCHOR_SIZE, ANCHOR_SIZE),
        Box(near, far_y, ANCHOR_SIZE, ANCHOR_SIZE),
    )
    return SheetLayout(width, height, num_questions, num_options, anchors)


def create_omr_sheet_pdf(
    filename: str = "sheets/omr_sheet.pdf",
    num_questions: int = DEFAULT_NUM_QUESTIONS,
    title: Optional[str] = None,
    num_options: int = NUM_OPTIONS,
) -> SheetLayout:
    """
    Create an OMR answer sheet PDF with corner anchors and one labelled cell per option.

    Args:
        filename (str): Output PDF filename
        num_questions (int): Objective questions on the exam (grid rows)
        title (str): Optional heading printed between the top anchors
        num_options (int): Options per question (grid columns)
    """
    layout = sheet_layout(num_questions, num_options)
    letters = option_letters(num_options)
    page_height = layout.page_height

    Path(filename).parent.mkdir(parents=True, exist_ok=True)
    c = canvas.Canvas(filename, pagesize=(layout.page_width, page_height))

    def pdf_y(y: float) -> float:
        # reportlab's origin is bottom-left
        return page_height - y

    # Anchors: solid squares, nothing else may touch them
    c.setFillColor(colors.black)
    c.setStrokeColor(colors.black)
    for box in layout.anchors:
        c.rect(box.x, pdf_y(box.y + box.height), box.width, box.height, stroke=0, fill=1)

    if title:
        c.setFont("Helvetica-Bold", 10)
        # baseline above the anchor centers, so the heading stays off the grid
        c.drawCentredString(layout.page_width / 2.0, pdf_y(layout.anchors[0].y + 12), title)

    # Faint separators between columns and rows, kept clear of the anchors
    grid = layout.grid_box
    anchor_right = layout.anchors[0].x + layout.anchors[0].width + 8
    anchor_left = layout.anchors[1].x - 8
    c.setStrokeColor(colors.Color(0.82, 0.82, 0.82))
    c.setLineWidth(0.5)
    for col in range(1, num_options):
        x = layout.cell_box(0, col).x
        c.line(x, pdf_y(grid.y), x, pdf_y(grid.y + grid.height))
    for row in range(1, num_questions):
        y = layout.cell_box(row, 0).y
        c.line(anchor_right, pdf_y(y), anchor_left, pdf_y(y))

    # Question/option label in the middle of each cell
    font_size = max(5, min(8, layout.cell_box(0, 0).height * 0.35))
    c.setFont("Helvetica", font_size)
    c.setFillColor(colors.Color(0.55, 0.55, 0.55))
    for row in range(num_questions):
        for col, letter in enumerate(letters):
            cx, cy = layout.cell_box(row, col).center
            c.drawCentredString(cx, pdf_y(cy) - font_size / 3.0, f"{row + 1}{letter}")

    c.save()
    print(f"PDF created: {filename}")
    return layout


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Generate an OMR answer sheet PDF")
    parser.add_argument("--output", type=Path, default=Path("sheets/omr_sheet.pdf"), help="Output PDF path")
    parser.add_argument(
        "--questions",
        type=int,
        default=DEFAULT_NUM_QUESTIONS,
        help="Number of objective questions (grid rows)",
    )
    parser.add_argument("--title", default=None, help="Heading printed at the top of the sheet")
    return parser.parse_args()


def main() -> None:
    args = parse_args()
    try:
        create_omr_sheet_pdf(str(args.output), num_questions=args.questions, title=args.title)
    except ValueError as exc:
        raise SystemExit(f"error: {exc}") from None


if __name__ == "__main__":
    main()
