"""
Error types raised by the headshot pipeline.

Per-file errors (decode, detection, encode) are recorded by the batch runner
and never abort a run. ConfigurationError aborts before any file is touched,
and PlanningError means the crop planner broke one of its own guarantees.
"""
from pathlib import Path
from typing import Optional, Union


class HeadshotError(Exception):
    """Base class for all pipeline errors."""

    kind = "internal"

    def __init__(self, message: str, source_path: Optional[Union[str, Path]] = None):
        super().__init__(message)
        self.message = message
        self.source_path = str(source_path) if source_path is not None else None

    def __str__(self) -> str:
        if self.source_path:
            return f"{self.message} ({self.source_path})"
        return self.message


class DecodeError(HeadshotError):
    """Input file could not be read or decoded as an image."""

    kind = "decode"


class DetectionError(HeadshotError):
    """The face detector failed on an image."""

    kind = "detection"


class PlanningError(HeadshotError):
    """The crop planner produced (or was asked for) an invalid rectangle."""

    kind = "planning"


class EncodeError(HeadshotError):
    """Output could not be encoded or written."""

    kind = "encode"


class ConfigurationError(HeadshotError):
    """Invalid configuration; fatal at startup."""

    kind = "configuration"
