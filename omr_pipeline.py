"""Runs the OMR stages on one captured image and returns a tagged result.

decode -> grayscale/blur/Otsu -> contours -> anchors -> perspective ->
bubble grid. Any stage failure becomes a single failure result; no partial
answers are ever returned.
"""

from __future__ import annotations

import base64
import binascii
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import cv2
import numpy as np

from omr_config import DEFAULT_CONFIG, PipelineConfig
from omr_errors import ImageDecodeError, OMRError
from omr_grid import GridScore, binarize_page, score_answer_grid, visualize_grid
from omr_messages import Message, error_message, success_message
from omr_processor import (
    anchor_corners,
    binarize,
    compute_transform,
    detect_anchors,
    extract_contours,
    rectify_page,
    to_grayscale,
    validate_quadrilateral,
)

logger = logging.getLogger(__name__)

ImagePayload = Union[bytes, bytearray, memoryview, str, np.ndarray]

SUCCESS = "success"
FAILURE = "failure"


# ---------------------------------------------------------------------------
# Decoding
# ---------------------------------------------------------------------------
def _decode_base64(text: str) -> bytes:
    text = text.strip()
    if text.startswith("data:"):
        header, sep, text = text.partition(",")
        if not sep or not header.endswith(";base64"):
            raise ImageDecodeError("Only base64-encoded data URLs are supported.")
    try:
        return base64.b64decode("".join(text.split()), validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ImageDecodeError(f"Invalid base64 image data: {exc}") from exc


def decode_image(payload: ImagePayload) -> np.ndarray:
    """Decode raw bytes, a base64 data URL or a bare base64 string.

    Encoded images are loaded as 8-bit BGR with the EXIF orientation applied,
    so phone photos come out upright. Arrays are taken as already decoded
    (OpenCV channel order).
    """

    if isinstance(payload, np.ndarray):
        if payload.size == 0:
            raise ImageDecodeError("Image is empty.")
        return payload

    if isinstance(payload, str):
        data = _decode_base64(payload)
    elif isinstance(payload, (bytes, bytearray, memoryview)):
        data = bytes(payload)
    else:
        raise ImageDecodeError(f"Unsupported image payload type: {type(payload).__name__}")

    if not data:
        raise ImageDecodeError("Image payload is empty.")

    image = cv2.imdecode(np.frombuffer(data, dtype=np.uint8), cv2.IMREAD_COLOR)
    if image is None or image.size == 0:
        raise ImageDecodeError("Failed to decode image payload.")
    return image


# ---------------------------------------------------------------------------
# Buffers and results
# ---------------------------------------------------------------------------
class StageBuffers:
    """Holds the intermediate buffers of one run; everything is dropped on exit."""

    def __init__(self) -> None:
        self._held: Dict[str, Any] = {}
        self.released: List[str] = []

    def __enter__(self) -> "StageBuffers":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        self.release_all()
        return False

    def hold(self, name: str, value: Any) -> Any:
        if name in self._held:
            self.release(name)
        self._held[name] = value
        return value

    def release(self, *names: str) -> None:
        for name in names:
            if name not in self._held:
                continue
            value = self._held.pop(name)
            if isinstance(value, list):
                value.clear()
            self.released.append(name)

    def release_all(self) -> None:
        self.release(*reversed(list(self._held)))

    @property
    def live(self) -> Tuple[str, ...]:
        return tuple(self._held)


@dataclass(frozen=True)
class PipelineResult:
    kind: str
    answers: Tuple[str, ...] = ()
    reason: str = ""
    code: str = ""
    score: Optional[GridScore] = field(default=None, compare=False, repr=False)

    @classmethod
    def success(cls, score: GridScore) -> "PipelineResult":
        return cls(kind=SUCCESS, answers=score.answers, score=score)

    @classmethod
    def failure(cls, reason: str, code: str) -> "PipelineResult":
        return cls(kind=FAILURE, reason=reason, code=code)

    @property
    def ok(self) -> bool:
        return self.kind == SUCCESS

    def to_message(self) -> Message:
        if self.ok:
            return success_message(self.answers)
        return error_message(self.reason)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            data: Dict[str, Any] = {"kind": self.kind, "answers": list(self.answers)}
            if self.score is not None:
                data["ratios"] = self.score.to_dict()["ratios"]
            return data
        return {"kind": self.kind, "reason": self.reason, "code": self.code}


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------
class OMRPipeline:
    def __init__(self, config: PipelineConfig = DEFAULT_CONFIG, debug_dir: Optional[Path] = None):
        self.config = config.validate()
        self.debug_dir = Path(debug_dir) if debug_dir is not None else None
        self.last_buffers: Optional[StageBuffers] = None

    def question_count(self, num_questions: Optional[int]) -> int:
        if num_questions is None:
            return self.config.num_questions
        if isinstance(num_questions, bool) or not isinstance(num_questions, (int, np.integer)):
            raise ValueError(f"num_questions must be an integer, got {num_questions!r}")
        if not 1 <= num_questions <= self.config.page_height:
            raise ValueError(
                f"num_questions must be within [1, {self.config.page_height}], got {num_questions}"
            )
        if self.config.cell_resembles_anchor(int(num_questions)):
            raise ValueError(
                f"num_questions={num_questions} gives near-square answer cells "
                "that would be mistaken for anchors"
            )
        return int(num_questions)

    def process(self, payload: ImagePayload, num_questions: Optional[int] = None) -> PipelineResult:
        """Decode ``payload`` and grade it; never raises for stage failures."""

        buffers = StageBuffers()
        self.last_buffers = buffers
        with buffers:
            try:
                rows = self.question_count(num_questions)
                score = self._run_stages(payload, rows, buffers)
            except OMRError as exc:
                logger.warning("OMR processing failed (%s): %s", exc.code, exc)
                return PipelineResult.failure(str(exc), exc.code)
            except cv2.error as exc:
                logger.error("OpenCV error during OMR processing: %s", exc)
                return PipelineResult.failure(f"Image processing failed: {exc}", "vision_error")
            except ValueError as exc:
                logger.warning("Invalid OMR request: %s", exc)
                return PipelineResult.failure(str(exc), "invalid_request")

        marked = sum(1 for answer in score.answers if answer in self.config.options)
        logger.info("Graded %d questions, %d marked", len(score.answers), marked)
        return PipelineResult.success(score)

    def _run_stages(self, payload: ImagePayload, num_questions: int, buffers: StageBuffers) -> GridScore:
        # every local is deleted together with its buffer
        config = self.config

        image = buffers.hold("source", decode_image(payload))
        gray = buffers.hold("gray", to_grayscale(image))
        buffers.release("source")
        del image

        mask = buffers.hold("mask", binarize(gray, config.blur_kernel))
        self._save_debug("mask", mask)
        contours = buffers.hold("contours", extract_contours(mask))
        buffers.release("mask")
        del mask

        anchors = buffers.hold("anchors", detect_anchors(contours, config))
        buffers.release("contours")
        del contours

        corners = anchor_corners(anchors)
        buffers.release("anchors")
        del anchors
        logger.debug("Anchor corners (tl, tr, br, bl): %s", [(round(x, 1), round(y, 1)) for x, y in corners])
        validate_quadrilateral(corners, config.min_quad_area)
        transform = buffers.hold("transform", compute_transform(corners, config.page_size))

        rectified = buffers.hold("rectified", rectify_page(gray, transform, config.page_size))
        buffers.release("transform", "gray")
        del transform, gray
        self._save_debug("rectified", rectified)

        page_mask = buffers.hold("page_mask", binarize_page(rectified))
        self._save_debug("rectified_mask", page_mask)

        score = score_answer_grid(page_mask, num_questions, config)
        if self.debug_dir is not None:
            self._save_debug("annotated", visualize_grid(rectified, score, config.options))
        buffers.release("page_mask", "rectified")
        return score

    def _save_debug(self, name: str, image: np.ndarray) -> None:
        if self.debug_dir is None:
            return
        self.debug_dir.mkdir(parents=True, exist_ok=True)
        path = self.debug_dir / f"{name}.png"
        cv2.imwrite(str(path), image)
        logger.debug("Saved debug image: %s", path)


def process_payload(
    payload: ImagePayload,
    num_questions: Optional[int] = None,
    config: PipelineConfig = DEFAULT_CONFIG,
) -> Message:
    """One-shot helper returning the wire message for ``payload``."""

    return OMRPipeline(config).process(payload, num_questions).to_message()
