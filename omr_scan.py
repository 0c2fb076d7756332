#!/usr/bin/env python3
"""Grade photographed answer sheets from the command line.

Each image is rectified using its four corner anchors and the bubble grid is
read into a list of answers. Results can be saved as JSON, and intermediate
images can be written for debugging.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path
from typing import Dict, List, Optional

from omr_config import PROFILES, PipelineConfig, load_config
from omr_grid import answers_by_question
from omr_messages import is_success

logger = logging.getLogger(__name__)


def setup_logger(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Read marked answers from photographed OMR sheets")
    parser.add_argument("images", type=Path, nargs="+", help="Captured answer sheet image(s)")
    parser.add_argument(
        "--questions",
        type=int,
        default=None,
        help="Number of objective questions on the exam (rows of the answer grid)",
    )
    parser.add_argument(
        "--profile",
        choices=sorted(PROFILES),
        default=None,
        help="Named parameter set (default: 'default')",
    )
    parser.add_argument("--config", type=Path, default=None, help="JSON file with config overrides")
    parser.add_argument(
        "--fill-threshold",
        type=float,
        default=None,
        help="Fill ratio a cell must exceed to count as marked",
    )
    parser.add_argument(
        "--min-anchor-area",
        type=float,
        default=None,
        help="Minimum contour area (px^2) for an anchor square",
    )
    parser.add_argument(
        "--epsilon",
        type=float,
        default=None,
        help="Polygon approximation tolerance as a fraction of the contour perimeter",
    )
    parser.add_argument(
        "--worker",
        action="store_true",
        help="Process images in a background worker process",
    )
    parser.add_argument(
        "--timeout",
        type=float,
        default=120.0,
        help="Per-image timeout in seconds when using --worker",
    )
    parser.add_argument(
        "--output-json",
        type=Path,
        default=None,
        help="Optional path to save the extracted answers as JSON",
    )
    parser.add_argument(
        "--debug-dir",
        type=Path,
        default=None,
        help="Directory to store intermediate debug images",
    )
    parser.add_argument("--verbose", action="store_true", help="Enable debug logging")
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> PipelineConfig:
    config = load_config(args.config, args.profile)
    return config.replace(
        num_questions=args.questions,
        fill_threshold=args.fill_threshold,
        min_anchor_area=args.min_anchor_area,
        epsilon_ratio=args.epsilon,
    )


def scan_in_process(images: List[Path], config: PipelineConfig, debug_dir: Optional[Path]) -> Dict[str, Dict[str, object]]:
    from omr_pipeline import OMRPipeline

    results: Dict[str, Dict[str, object]] = {}
    for image_path in images:
        image_debug = debug_dir / image_path.stem if debug_dir else None
        pipeline = OMRPipeline(config, debug_dir=image_debug)
        try:
            payload = image_path.read_bytes()
        except OSError as exc:
            results[str(image_path)] = {"kind": "failure", "reason": str(exc), "code": "io"}
            continue
        results[str(image_path)] = pipeline.process(payload).to_dict()
    return results


def scan_with_worker(images: List[Path], config: PipelineConfig, timeout: float) -> Dict[str, Dict[str, object]]:
    from omr_worker import OMRWorker

    results: Dict[str, Dict[str, object]] = {}
    with OMRWorker(config, job_timeout=timeout) as worker:
        for image_path in images:
            try:
                payload = image_path.read_bytes()
            except OSError as exc:
                results[str(image_path)] = {"kind": "failure", "reason": str(exc), "code": "io"}
                continue
            message = worker.process(payload)
            if is_success(message):
                results[str(image_path)] = {"kind": "success", "answers": message["payload"]}
            else:
                results[str(image_path)] = {"kind": "failure", "reason": message["payload"]}
    return results


def print_summary(results: Dict[str, Dict[str, object]]) -> None:
    for image, result in results.items():
        print(f"Image: {image}")
        if result["kind"] != "success":
            print(f"  ERROR: {result['reason']}")
            continue
        answers = result["answers"]
        rows = answers_by_question(answers)
        marked = sum(1 for row in rows if row["marked"])
        print(f"  Questions: {len(rows)}, marked: {marked}")
        line = ", ".join(f"Q{row['question']:02d}={row['answer']}" for row in rows)
        print(f"  {line}")


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logger(args.verbose)

    try:
        config = build_config(args)
    except (OSError, ValueError) as exc:
        logger.error("Invalid configuration: %s", exc)
        return 2

    if args.worker:
        if args.debug_dir:
            logger.warning("--debug-dir is ignored with --worker")
        results = scan_with_worker(args.images, config, args.timeout)
    else:
        results = scan_in_process(args.images, config, args.debug_dir)

    print_summary(results)

    if args.output_json:
        args.output_json.parent.mkdir(parents=True, exist_ok=True)
        summary = {"parameters": config.to_dict(), "results": results}
        with args.output_json.open("w", encoding="utf-8") as f:
            json.dump(summary, f, indent=2)
        print(f"Results saved to {args.output_json}")

    return 0 if all(r["kind"] == "success" for r in results.values()) else 1


if __name__ == "__main__":
    sys.exit(main())
