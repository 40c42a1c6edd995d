"""Crop every photo in a directory to a standardized headshot.

Usage:
    python -m scripts.crop_headshots --input photos/ --output outputs/

Options not given on the command line fall back to HEADSHOT_* environment
variables (see settings.py), then to the built-in defaults. The exit code is
0 when no file failed, 1 when at least one did, 2 for configuration errors
and 130 when interrupted.
"""

from __future__ import annotations

import argparse
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

from domain.errors import ConfigurationError
from domain.models import FallbackPolicy, OutputFormat, ProcessStatus, ProgressEvent, ProgressKind
from services.batch_runner import BatchRunner
from services.face_detection import available_detectors, detector_factory
from services.image_transformer import register_heif_opener
from services.run_report import format_summary, load_failed_paths, write_report
from settings import load_settings, parse_aspect_ratio, parse_size
from storage.file_storage import HEIF_EXTENSIONS, IMAGE_EXTENSIONS, FileStorage, collect_image_files

logger = logging.getLogger("crop_headshots")

EXIT_CONFIG_ERROR = 2
EXIT_INTERRUPTED = 130


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Crop photos to standardized headshots around the main face.")
    parser.add_argument("-i", "--input", help="Input image file or directory.")
    parser.add_argument("-o", "--output", default="outputs", help="Output directory (default: outputs).")
    parser.add_argument("--aspect", default=None, help="Target aspect ratio, e.g. 1:1, 4:5 or 0.8.")
    parser.add_argument("--margin", type=float, default=None, help="Padding on each side, as a fraction of the face box.")
    parser.add_argument("--size", default=None, help="Output size WIDTHxHEIGHT, e.g. 512x512.")
    parser.add_argument("--min-confidence", type=float, default=None, help="Ignore faces scored below this.")
    parser.add_argument(
        "--fallback",
        choices=[p.value for p in FallbackPolicy],
        default=None,
        help="What to do when no face is found.",
    )
    parser.add_argument(
        "--format",
        dest="output_format",
        choices=[f.value for f in OutputFormat],
        default=None,
        help="Output format; 'source' keeps each input's format.",
    )
    parser.add_argument("--quality", type=int, default=None, help="JPEG/WebP quality (1-100).")
    parser.add_argument("--workers", type=int, default=None, help="Number of images processed in parallel.")
    parser.add_argument("--detector", choices=available_detectors(), default=None, help="Face detector backend.")
    parser.add_argument("--model-selection", type=int, choices=[0, 1], default=0, help="MediaPipe model: 0 short range, 1 full range.")
    parser.add_argument("--min-neighbors", type=int, default=8, help="Haar cascade minNeighbors.")
    parser.add_argument("--min-face-size", type=int, default=100, help="Haar cascade minimum face size in pixels.")
    parser.add_argument("--debug-overlays", action="store_true", help="Also write detection overlays to OUTPUT/_debug.")
    parser.add_argument("--report", default=None, help="Write a JSON run report to this path.")
    parser.add_argument("--retry-failed", default=None, metavar="REPORT", help="Only process files that failed in REPORT.")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging.")
    return parser


def _detector_options(name: str, args: argparse.Namespace, min_confidence: float) -> Dict[str, Any]:
    if name == "haar":
        return {
            "min_confidence": min_confidence,
            "min_neighbors": args.min_neighbors,
            "min_face_size": args.min_face_size,
        }
    if name == "mediapipe":
        return {"min_confidence": min_confidence, "model_selection": args.model_selection}
    return {"min_confidence": min_confidence}


class _ProgressLogger:
    """Logs one numbered line per finished file."""

    def __init__(self, total: int):
        self.total = total
        self.done = 0

    def __call__(self, event: ProgressEvent) -> None:
        if event.kind != ProgressKind.PROGRESS:
            return
        self.done += 1
        if event.status == ProcessStatus.SUCCEEDED:
            logger.info("[%d/%d] %s: %d face(s)", self.done, self.total, event.filename, event.face_count)
        else:
            logger.info("[%d/%d] %s: %s", self.done, self.total, event.filename, event.status.value)


def _collect_inputs(args: argparse.Namespace, heif_enabled: bool) -> List[Path]:
    if args.retry_failed:
        paths = load_failed_paths(args.retry_failed)
        missing = [p for p in paths if not p.is_file()]
        for p in missing:
            logger.warning("Skipping %s from report: file no longer exists", p)
        return [p for p in paths if p.is_file()]
    extensions = IMAGE_EXTENSIONS | HEIF_EXTENSIONS if heif_enabled else IMAGE_EXTENSIONS
    return collect_image_files(args.input, extensions)


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.input and not args.retry_failed:
        parser.error("--input is required unless --retry-failed is given")

    if not logger.handlers:
        logging.basicConfig(level=logging.DEBUG if args.verbose else logging.INFO, format="%(message)s")

    try:
        settings = load_settings()
        config = settings.crop_config(
            aspect_ratio=parse_aspect_ratio(args.aspect) if args.aspect else None,
            margin=args.margin,
            output_width=parse_size(args.size)[0] if args.size else None,
            output_height=parse_size(args.size)[1] if args.size else None,
            fallback=args.fallback,
            min_confidence=args.min_confidence,
            output_format=args.output_format,
            jpeg_quality=args.quality,
            workers=args.workers,
        )
        detector_name = args.detector or settings.DETECTOR
        factory = detector_factory(detector_name, **_detector_options(detector_name, args, config.min_confidence))
        storage = FileStorage(args.output)
        inputs = _collect_inputs(args, register_heif_opener())
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR
    except OSError as e:
        logger.error("Cannot use output directory %s: %s", args.output, e)
        return EXIT_CONFIG_ERROR

    if not inputs:
        logger.warning("No valid image files found.")
        return 0

    stale = storage.remove_stale_temp_files()
    if stale:
        logger.info("Removed %d temporary file(s) left by an earlier run", stale)

    logger.info(
        "[headshot] detector=%s aspect=%g margin=%g size=%dx%d fallback=%s format=%s workers=%d",
        detector_name,
        config.aspect_ratio,
        config.margin,
        config.output_width,
        config.output_height,
        config.fallback.value,
        config.output_format.value,
        config.workers,
    )
    runner = BatchRunner(
        config,
        factory,
        storage,
        progress_callback=_ProgressLogger(len(inputs)),
        debug_overlays=args.debug_overlays or settings.DEBUG_FACE_CROPS,
    )
    try:
        summary = runner.run(inputs)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        return EXIT_CONFIG_ERROR

    for line in format_summary(summary):
        logger.info(line)
    if args.report:
        write_report(summary, args.report, config)

    if summary.cancelled:
        return EXIT_INTERRUPTED
    return summary.exit_code


if __name__ == "__main__":
    raise SystemExit(main())
