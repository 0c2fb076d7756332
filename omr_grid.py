"""Bubble grid scoring on a rectified answer sheet.

The rectified page is split into ``num_questions`` equal rows and
``num_options`` equal columns. Each cell gets a fill ratio (share of ink pixels)
and each row resolves to the best-filled option, or UNMARKED when nothing
clears the fill threshold.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Sequence, Tuple

import cv2
import numpy as np

from omr_config import DEFAULT_CONFIG, UNMARKED, PipelineConfig
from omr_processor import Rect


@dataclass(frozen=True)
class GridScore:
    answers: Tuple[str, ...]
    ratios: np.ndarray  # (num_questions, num_options)

    def to_dict(self) -> Dict[str, object]:
        return {
            "answers": list(self.answers),
            "ratios": [[round(float(r), 4) for r in row] for row in self.ratios],
        }


def binarize_page(rectified: np.ndarray) -> np.ndarray:
    """Re-threshold a grayscale rectified page (ink -> 255)."""

    _, mask = cv2.threshold(rectified, 0, 255, cv2.THRESH_BINARY_INV | cv2.THRESH_OTSU)
    return mask


def cell_rect(
    row: int,
    col: int,
    page_size: Tuple[int, int],
    num_questions: int,
    num_options: int,
) -> Rect:
    """Pixel rectangle of cell (row, col); neighbouring cells share edges exactly."""

    width, height = page_size
    col_width = width / num_options
    row_height = height / num_questions

    x0 = int(col * col_width)
    x1 = int((col + 1) * col_width)
    y0 = int(row * row_height)
    y1 = int((row + 1) * row_height)
    return Rect(x0, y0, x1 - x0, y1 - y0)


def fill_ratio(mask: np.ndarray, rect: Rect) -> float:
    roi = mask[rect.y:rect.y + rect.height, rect.x:rect.x + rect.width]
    if roi.size == 0:
        return 0.0
    return cv2.countNonZero(roi) / float(roi.size)


def score_cells(mask: np.ndarray, num_questions: int, num_options: int) -> np.ndarray:
    """Fill ratio of every cell of the grid, shape (num_questions, num_options)."""

    height, width = mask.shape[:2]
    ratios = np.zeros((num_questions, num_options), dtype=np.float64)
    for row in range(num_questions):
        for col in range(num_options):
            rect = cell_rect(row, col, (width, height), num_questions, num_options)
            ratios[row, col] = fill_ratio(mask, rect)
    return ratios


def pick_answer(row_ratios: Sequence[float], options: str, threshold: float) -> str:
    """Best-filled option of one row; the first column wins ties."""

    if len(row_ratios) == 0:
        return UNMARKED
    best = int(np.argmax(row_ratios))
    if row_ratios[best] > threshold:
        return options[best]
    return UNMARKED


def score_answer_grid(
    mask: np.ndarray,
    num_questions: int,
    config: PipelineConfig = DEFAULT_CONFIG,
) -> GridScore:
    ratios = score_cells(mask, num_questions, config.num_options)
    options = config.options
    answers = tuple(pick_answer(row, options, config.fill_threshold) for row in ratios)
    return GridScore(answers=answers, ratios=ratios)


def visualize_grid(rectified: np.ndarray, score: GridScore, options: str) -> np.ndarray:
    """Annotated copy of the rectified page with the grid and chosen cells."""

    overlay = cv2.cvtColor(rectified, cv2.COLOR_GRAY2BGR) if rectified.ndim == 2 else rectified.copy()
    height, width = overlay.shape[:2]
    num_questions, num_options = score.ratios.shape

    for row in range(num_questions):
        for col in range(num_options):
            rect = cell_rect(row, col, (width, height), num_questions, num_options)
            chosen = score.answers[row] == options[col]
            color = (0, 200, 0) if chosen else (255, 165, 0)
            thickness = 2 if chosen else 1
            cv2.rectangle(
                overlay,
                (rect.x, rect.y),
                (rect.x + rect.width - 1, rect.y + rect.height - 1),
                color,
                thickness,
            )
            cv2.putText(
                overlay,
                f"{score.ratios[row, col]:.2f}",
                (rect.x + 3, rect.y + rect.height - 3),
                cv2.FONT_HERSHEY_SIMPLEX,
                0.3,
                color,
                1,
            )
    return overlay


def answers_by_question(answers: Sequence[str]) -> List[Dict[str, object]]:
    """1-based question numbering for reports."""

    return [
        {"question": index + 1, "answer": answer, "marked": answer != UNMARKED}
        for index, answer in enumerate(answers)
    ]
