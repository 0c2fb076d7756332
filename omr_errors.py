"""Exceptions raised by the OMR pipeline and its worker."""

from __future__ import annotations


class OMRError(Exception):
    """Base class for pipeline failures that map to an ERROR result."""

    code = "omr_error"


class AnchorDetectionError(OMRError):
    """Fewer than four anchor squares survived filtering (retake the photo)."""

    code = "anchor_detection"

    def __init__(self, found: int, expected: int = 4):
        self.found = found
        self.expected = expected
        super().__init__(
            f"Anchor detection failed: expected {expected}, found {found}. "
            "Please retake the picture."
        )


class DegenerateAnchorsError(OMRError):
    """The anchor centers do not form a usable quadrilateral."""

    code = "degenerate_anchors"


class ImageDecodeError(OMRError):
    code = "decode"


class VisionUnavailableError(OMRError):
    """The vision library could not be loaded in the worker."""

    code = "vision_unavailable"


class ProcessingTimeoutError(OMRError):
    code = "timeout"


class WorkerBusyError(OMRError):
    """A request was submitted while another one is still in flight."""

    code = "busy"
