"""
Core domain models for the headshot cropper.
These are framework-agnostic and can be used across all services.
"""
from dataclasses import dataclass, field
import math
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple

from domain.errors import ConfigurationError


# Integer sizes match an aspect ratio when the derived edge is the nearest
# whole pixel to the exact value.
ASPECT_TOLERANCE_PX = 0.5
_FLOAT_EPSILON = 1e-9

# Padding beyond this many face sizes per side always fills the whole image
MAX_MARGIN = 1000.0


def aspect_matches(width: int, height: int, aspect_ratio: float) -> bool:
    """Check whether an integer width/height pair has the given aspect (w/h)."""
    if width <= 0 or height <= 0 or aspect_ratio <= 0:
        return False
    if abs(width - aspect_ratio * height) <= ASPECT_TOLERANCE_PX + _FLOAT_EPSILON:
        return True
    return abs(height - width / aspect_ratio) <= ASPECT_TOLERANCE_PX + _FLOAT_EPSILON


class FallbackPolicy(str, Enum):
    """What to do when no face clears the confidence threshold."""
    CENTER_FULL_IMAGE = "center_full_image"
    SKIP = "skip"
    SKIP_ONLY = "skip_only"  # accepted alias of SKIP


class OutputFormat(str, Enum):
    """Encoded output format. SOURCE keeps the input file's own format."""
    JPEG = "jpeg"
    PNG = "png"
    WEBP = "webp"
    SOURCE = "source"


class ProcessStatus(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"


class FileState(str, Enum):
    """
    Lifecycle of a single input file in the batch runner.

    PENDING -> DETECTING -> PLANNING -> RENDERING -> SUCCEEDED
    Any non-terminal state may also end in SKIPPED or FAILED.
    """
    PENDING = "pending"
    DETECTING = "detecting"
    PLANNING = "planning"
    RENDERING = "rendering"
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (FileState.SUCCEEDED, FileState.SKIPPED, FileState.FAILED)


class SkipReason(str, Enum):
    NO_FACE = "no_face"
    IMAGE_TOO_SMALL = "image_too_small"
    DUPLICATE_OUTPUT = "duplicate_output"
    OUTPUT_IS_INPUT = "output_is_input"
    CANCELLED = "cancelled"


class ErrorKind(str, Enum):
    DECODE = "decode"
    DETECTION = "detection"
    PLANNING = "planning"
    ENCODE = "encode"
    INTERNAL = "internal"


@dataclass(frozen=True)
class FaceBox:
    """A detected face in source-image pixel coordinates."""
    x: float
    y: float
    width: float
    height: float
    confidence: float = 1.0

    def __post_init__(self) -> None:
        if self.width <= 0 or self.height <= 0:
            raise ValueError(f"FaceBox must have positive size, got {self.width}x{self.height}")
        if not 0.0 <= self.confidence <= 1.0:
            raise ValueError(f"FaceBox confidence must be in [0, 1], got {self.confidence}")

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def right(self) -> float:
        return self.x + self.width

    @property
    def bottom(self) -> float:
        return self.y + self.height

    @property
    def center(self) -> Tuple[float, float]:
        return (self.x + self.width / 2.0, self.y + self.height / 2.0)

    def to_dict(self) -> Dict[str, float]:
        return {
            "x": self.x,
            "y": self.y,
            "width": self.width,
            "height": self.height,
            "confidence": self.confidence,
        }


@dataclass(frozen=True)
class CropRect:
    """
    Final crop rectangle in source-image pixel coordinates.

    Produced only by the crop planner, which guarantees it lies inside the
    image and has the configured aspect ratio.
    """
    x: int
    y: int
    width: int
    height: int

    @property
    def right(self) -> int:
        return self.x + self.width

    @property
    def bottom(self) -> int:
        return self.y + self.height

    @property
    def box(self) -> Tuple[int, int, int, int]:
        """(left, upper, right, lower) as used by PIL."""
        return (self.x, self.y, self.right, self.bottom)

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height

    def to_dict(self) -> Dict[str, int]:
        return {"x": self.x, "y": self.y, "width": self.width, "height": self.height}


@dataclass(frozen=True)
class CropConfig:
    """
    Immutable settings for a run.

    Constructed once at startup; invalid values raise ConfigurationError so
    nothing is processed with a bad configuration.
    """
    aspect_ratio: float = 1.0
    margin: float = 1.1
    output_width: int = 512
    output_height: int = 512
    fallback: FallbackPolicy = FallbackPolicy.SKIP
    min_confidence: float = 0.5
    output_format: OutputFormat = OutputFormat.SOURCE
    jpeg_quality: int = 95
    workers: int = 1

    def __post_init__(self) -> None:
        # Accept plain strings for the enum fields (env / CLI values)
        try:
            object.__setattr__(self, "fallback", FallbackPolicy(self.fallback))
        except ValueError:
            choices = ", ".join(p.value for p in FallbackPolicy)
            raise ConfigurationError(f"Unknown fallback policy {self.fallback!r} (expected one of: {choices})")
        output_format = self.output_format
        if isinstance(output_format, str) and not isinstance(output_format, OutputFormat):
            output_format = output_format.lower()
        try:
            object.__setattr__(self, "output_format", OutputFormat(output_format))
        except ValueError:
            choices = ", ".join(f.value for f in OutputFormat)
            raise ConfigurationError(f"Unknown output format {self.output_format!r} (expected one of: {choices})")

        if isinstance(self.aspect_ratio, bool) or not isinstance(self.aspect_ratio, (int, float)):
            raise ConfigurationError(f"Aspect ratio must be a number, got {self.aspect_ratio!r}")
        if not math.isfinite(self.aspect_ratio) or self.aspect_ratio <= 0:
            raise ConfigurationError(f"Aspect ratio must be positive, got {self.aspect_ratio}")
        if not math.isfinite(self.margin) or not 0 <= self.margin <= MAX_MARGIN:
            raise ConfigurationError(f"Margin must be between 0 and {MAX_MARGIN:g}, got {self.margin}")
        if self.output_width <= 0 or self.output_height <= 0:
            raise ConfigurationError(
                f"Output size must be positive, got {self.output_width}x{self.output_height}"
            )
        if not aspect_matches(self.output_width, self.output_height, self.aspect_ratio):
            raise ConfigurationError(
                f"Output size {self.output_width}x{self.output_height} does not match "
                f"aspect ratio {self.aspect_ratio:g}"
            )
        if not math.isfinite(self.min_confidence) or not 0.0 <= self.min_confidence <= 1.0:
            raise ConfigurationError(f"Minimum confidence must be in [0, 1], got {self.min_confidence}")
        if not 1 <= self.jpeg_quality <= 100:
            raise ConfigurationError(f"JPEG quality must be in [1, 100], got {self.jpeg_quality}")
        if self.workers < 1:
            raise ConfigurationError(f"Workers must be at least 1, got {self.workers}")

    @property
    def output_size(self) -> Tuple[int, int]:
        return (self.output_width, self.output_height)

    @property
    def skips_without_face(self) -> bool:
        return self.fallback in (FallbackPolicy.SKIP, FallbackPolicy.SKIP_ONLY)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "aspect_ratio": self.aspect_ratio,
            "margin": self.margin,
            "output_width": self.output_width,
            "output_height": self.output_height,
            "fallback": self.fallback.value,
            "min_confidence": self.min_confidence,
            "output_format": self.output_format.value,
            "jpeg_quality": self.jpeg_quality,
            "workers": self.workers,
        }


@dataclass(frozen=True)
class ProcessResult:
    """
    Outcome for one input file.

    Exactly one of the three shapes is used:
    - succeeded: output_path, crop, face (None for a fallback crop), face_count
    - skipped: skip_reason
    - failed: error_kind, message
    """
    source_path: str
    status: ProcessStatus
    output_path: Optional[str] = None
    crop: Optional[CropRect] = None
    face: Optional[FaceBox] = None
    face_count: int = 0
    skip_reason: Optional[SkipReason] = None
    error_kind: Optional[ErrorKind] = None
    message: Optional[str] = None

    @classmethod
    def success(
        cls,
        source_path: str,
        output_path: str,
        crop: CropRect,
        face: Optional[FaceBox] = None,
        face_count: int = 0,
    ) -> "ProcessResult":
        return cls(
            source_path=source_path,
            status=ProcessStatus.SUCCEEDED,
            output_path=output_path,
            crop=crop,
            face=face,
            face_count=face_count,
        )

    @classmethod
    def skipped(cls, source_path: str, reason: SkipReason, face_count: int = 0) -> "ProcessResult":
        return cls(
            source_path=source_path,
            status=ProcessStatus.SKIPPED,
            skip_reason=reason,
            face_count=face_count,
        )

    @classmethod
    def failed(cls, source_path: str, kind: ErrorKind, message: str) -> "ProcessResult":
        return cls(
            source_path=source_path,
            status=ProcessStatus.FAILED,
            error_kind=kind,
            message=message,
        )

    @property
    def final_state(self) -> FileState:
        return FileState(self.status.value)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_path": self.source_path,
            "status": self.status.value,
            "output_path": self.output_path,
            "crop": self.crop.to_dict() if self.crop else None,
            "face": self.face.to_dict() if self.face else None,
            "face_count": self.face_count,
            "skip_reason": self.skip_reason.value if self.skip_reason else None,
            "error_kind": self.error_kind.value if self.error_kind else None,
            "message": self.message,
        }


@dataclass
class RunSummary:
    """Results of a batch run, in original input order."""
    results: List[ProcessResult] = field(default_factory=list)
    cancelled: bool = False

    def _count(self, status: ProcessStatus) -> int:
        return sum(1 for r in self.results if r.status == status)

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return self._count(ProcessStatus.SUCCEEDED)

    @property
    def skipped(self) -> int:
        return self._count(ProcessStatus.SKIPPED)

    @property
    def failed(self) -> int:
        return self._count(ProcessStatus.FAILED)

    @property
    def failures(self) -> List[ProcessResult]:
        return [r for r in self.results if r.status == ProcessStatus.FAILED]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed > 0 else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total": self.total,
            "succeeded": self.succeeded,
            "skipped": self.skipped,
            "failed": self.failed,
            "cancelled": self.cancelled,
            "results": [r.to_dict() for r in self.results],
        }


class ProgressKind(str, Enum):
    PROGRESS = "progress"
    ERROR = "error"
    COMPLETE = "complete"


@dataclass(frozen=True)
class ProgressEvent:
    """Message sent to an optional progress callback while a batch runs."""
    kind: ProgressKind
    filename: Optional[str] = None
    face_count: int = 0
    status: Optional[ProcessStatus] = None
    message: Optional[str] = None
