"""Shared sheet geometry and tunable parameters for the OMR pipeline.

The page and anchor constants here are the contract between the printed answer
sheet (see omr_sheet_generator.py) and the scanner: changing one side without
the other breaks anchor detection and bubble alignment.
"""

from __future__ import annotations

import dataclasses
import json
import string
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

# Page geometry (A4 portrait in PDF points, rounded)
PAGE_WIDTH = 595
PAGE_HEIGHT = 842
PAGE_MARGIN = 40
ANCHOR_SIZE = 56
ANCHOR_INSET = PAGE_MARGIN / 2

# Answer grid
NUM_OPTIONS = 5
DEFAULT_NUM_QUESTIONS = 20
UNMARKED = "-"

# Detection thresholds
FILL_THRESHOLD = 0.4
ANCHOR_EPSILON_RATIO = 0.04
MIN_ANCHOR_AREA = 400.0
ANCHOR_ASPECT_MIN = 0.9
ANCHOR_ASPECT_MAX = 1.1
BLUR_KERNEL = 5
MIN_QUAD_AREA = 1000.0
# A filled cell within this factor of the anchor aspect band could be taken for an anchor
CELL_ASPECT_MARGIN = 0.15

# Alternate parameter set (tighter approximation, larger anchors, denser grid)
STRICT_EPSILON_RATIO = 0.02
STRICT_MIN_ANCHOR_AREA = 1000.0
STRICT_NUM_QUESTIONS = 50


def option_letters(num_options: int) -> str:
    """Return the option labels for a row, left to right ("ABCDE" for 5)."""

    if not 1 <= num_options <= len(string.ascii_uppercase):
        raise ValueError(f"num_options must be within [1, 26], got {num_options}")
    return string.ascii_uppercase[:num_options]


def grid_cell_aspect(
    num_questions: int,
    num_options: int,
    page_size: Tuple[float, float] = (PAGE_WIDTH, PAGE_HEIGHT),
) -> float:
    """Width / height of one answer cell on the printed sheet.

    The grid spans the anchor centers, which sit ANCHOR_INSET + ANCHOR_SIZE / 2
    in from every page edge.
    """

    inset = 2 * (ANCHOR_INSET + ANCHOR_SIZE / 2.0)
    width, height = page_size
    return ((width - inset) / num_options) / ((height - inset) / num_questions)


def cell_resembles_anchor(
    num_questions: int,
    num_options: int,
    aspect_range: Tuple[float, float] = (ANCHOR_ASPECT_MIN, ANCHOR_ASPECT_MAX),
    page_size: Tuple[float, float] = (PAGE_WIDTH, PAGE_HEIGHT),
) -> bool:
    """True if a fully filled cell is square enough to pass the anchor filter."""

    low, high = aspect_range
    aspect = grid_cell_aspect(num_questions, num_options, page_size)
    return low * (1.0 - CELL_ASPECT_MARGIN) <= aspect <= high * (1.0 + CELL_ASPECT_MARGIN)


@dataclass(frozen=True)
class PipelineConfig:
    """Parameters for one pipeline instance.

    ``num_questions`` is only the default row count; callers grading a real exam
    pass the exam's objective question count per request.
    """

    page_width: int = PAGE_WIDTH
    page_height: int = PAGE_HEIGHT
    num_options: int = NUM_OPTIONS
    num_questions: int = DEFAULT_NUM_QUESTIONS
    fill_threshold: float = FILL_THRESHOLD
    epsilon_ratio: float = ANCHOR_EPSILON_RATIO
    min_anchor_area: float = MIN_ANCHOR_AREA
    aspect_min: float = ANCHOR_ASPECT_MIN
    aspect_max: float = ANCHOR_ASPECT_MAX
    blur_kernel: int = BLUR_KERNEL
    min_quad_area: float = MIN_QUAD_AREA

    def validate(self) -> "PipelineConfig":
        if self.page_width <= 0 or self.page_height <= 0:
            raise ValueError("page_width and page_height must be > 0")
        option_letters(self.num_options)
        if self.num_questions < 1:
            raise ValueError("num_questions must be >= 1")
        if self.num_questions > self.page_height or self.num_options > self.page_width:
            raise ValueError("grid is finer than the rectified page")
        if self.cell_resembles_anchor(self.num_questions):
            raise ValueError(
                f"num_questions={self.num_questions} gives near-square answer cells "
                "that would be mistaken for anchors"
            )
        if not 0.0 <= self.fill_threshold < 1.0:
            raise ValueError("fill_threshold must be within [0, 1)")
        if not 0.0 < self.epsilon_ratio < 1.0:
            raise ValueError("epsilon_ratio must be within (0, 1)")
        if self.min_anchor_area < 0:
            raise ValueError("min_anchor_area must be >= 0")
        if not 0.0 < self.aspect_min <= self.aspect_max:
            raise ValueError("aspect range must satisfy 0 < aspect_min <= aspect_max")
        if self.blur_kernel < 1 or self.blur_kernel % 2 == 0:
            raise ValueError("blur_kernel must be a positive odd number")
        if self.min_quad_area < 0:
            raise ValueError("min_quad_area must be >= 0")
        return self

    @property
    def page_size(self) -> Tuple[int, int]:
        return self.page_width, self.page_height

    @property
    def options(self) -> str:
        return option_letters(self.num_options)

    def cell_resembles_anchor(self, num_questions: int) -> bool:
        return cell_resembles_anchor(
            num_questions,
            self.num_options,
            (self.aspect_min, self.aspect_max),
            self.page_size,
        )

    def replace(self, **changes: Any) -> "PipelineConfig":
        """Copy with ``changes`` applied; ``None`` values are ignored."""

        updates = {key: value for key, value in changes.items() if value is not None}
        return dataclasses.replace(self, **updates).validate()

    def to_dict(self) -> Dict[str, Any]:
        return dataclasses.asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PipelineConfig":
        known = {f.name for f in dataclasses.fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise ValueError(f"Unknown config keys: {', '.join(unknown)}")
        return cls(**dict(data)).validate()


DEFAULT_CONFIG = PipelineConfig()

PROFILES: Dict[str, PipelineConfig] = {
    "default": DEFAULT_CONFIG,
    "strict": PipelineConfig(
        epsilon_ratio=STRICT_EPSILON_RATIO,
        min_anchor_area=STRICT_MIN_ANCHOR_AREA,
        num_questions=STRICT_NUM_QUESTIONS,
    ),
}


def get_profile(name: str) -> PipelineConfig:
    try:
        return PROFILES[name]
    except KeyError:
        raise ValueError(
            f"Unknown profile {name!r}; expected one of {', '.join(sorted(PROFILES))}"
        ) from None


def load_config(path: Optional[Path] = None, profile: Optional[str] = None) -> PipelineConfig:
    """Build a config from a named profile and an optional JSON override file.

    The file may name its own ``profile``; an explicit ``profile`` argument wins.
    """

    overrides: Dict[str, Any] = {}
    if path is not None:
        with Path(path).open("r", encoding="utf-8") as f:
            data = json.load(f)
        if not isinstance(data, dict):
            raise ValueError(f"Config file must contain a JSON object: {path}")
        overrides = dict(data)

    file_profile = overrides.pop("profile", None)
    base = get_profile(profile or file_profile or "default")
    if not overrides:
        return base
    return PipelineConfig.from_dict({**base.to_dict(), **overrides})
