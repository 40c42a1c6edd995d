"""
Face detector adapters.

Every adapter exposes `detect(image) -> List[FaceBox]` with boxes in pixel
coordinates of the image it was given, clipped to the image and in no
particular order. Any failure inside the detection library is raised as
DetectionError so the batch runner can record it against the one file.

Adapters are registered by name. Detection libraries are not assumed to be
thread-safe; the batch runner builds one adapter per worker through
`detector_factory`.
"""
from __future__ import annotations

from functools import partial
from typing import Callable, Dict, List, Optional, Protocol
import importlib
import logging
import os

from PIL import Image

from domain.errors import ConfigurationError, DetectionError
from domain.models import FaceBox

logger = logging.getLogger(__name__)

DEFAULT_DETECTOR = "mediapipe"


class FaceDetector(Protocol):
    def detect(self, image: Image.Image) -> List[FaceBox]:
        ...


DetectorFactory = Callable[[], FaceDetector]

_detector_registry: Dict[str, type] = {}


def register_detector(name: str):
    """Decorator to register a detector adapter class under a name."""
    def decorator(cls: type) -> type:
        _detector_registry[name] = cls
        return cls
    return decorator


def available_detectors() -> List[str]:
    return sorted(_detector_registry)


def _clip_box(left: float, top: float, right: float, bottom: float, confidence: float,
              width: int, height: int) -> Optional[FaceBox]:
    left = max(0.0, min(float(width), left))
    right = max(0.0, min(float(width), right))
    top = max(0.0, min(float(height), top))
    bottom = max(0.0, min(float(height), bottom))
    if right - left <= 0 or bottom - top <= 0:
        return None
    confidence = max(0.0, min(1.0, float(confidence)))
    return FaceBox(x=left, y=top, width=right - left, height=bottom - top, confidence=confidence)


class _BaseDetector:
    # Import name of the library the adapter wraps
    requires: str = ""

    def close(self) -> None:
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


@register_detector("mediapipe")
class MediaPipeFaceDetector(_BaseDetector):
    """
    MediaPipe face detection.

    model_selection 0 is the short-range model (faces within ~2 m, suits
    portraits); 1 is the full-range model.
    """

    requires = "mediapipe"

    def __init__(self, min_confidence: float = 0.5, model_selection: int = 0):
        import mediapipe as mp

        self._detector = mp.solutions.face_detection.FaceDetection(
            model_selection=model_selection,
            min_detection_confidence=min_confidence,
        )

    def detect(self, image: Image.Image) -> List[FaceBox]:
        import numpy as np

        width, height = image.size
        try:
            arr = np.asarray(image.convert("RGB"))
            results = self._detector.process(arr)
        except Exception as e:
            raise DetectionError(f"mediapipe face detection failed: {e}") from e

        boxes: List[FaceBox] = []
        for det in results.detections or []:
            rbox = det.location_data.relative_bounding_box
            score = float(det.score[0]) if det.score else 0.0
            box = _clip_box(
                rbox.xmin * width,
                rbox.ymin * height,
                (rbox.xmin + rbox.width) * width,
                (rbox.ymin + rbox.height) * height,
                score,
                width,
                height,
            )
            if box is not None:
                boxes.append(box)
        return boxes

    def close(self) -> None:
        self._detector.close()


@register_detector("haar")
class HaarCascadeFaceDetector(_BaseDetector):
    """
    OpenCV Haar cascade (frontal face).

    Cascades give no score, so every detection has confidence 1.0.
    """

    requires = "cv2"

    CASCADE_FILE = "haarcascade_frontalface_default.xml"

    def __init__(
        self,
        min_confidence: float = 0.5,
        scale_factor: float = 1.4,
        min_neighbors: int = 8,
        min_face_size: int = 100,
        cascade_path: Optional[str] = None,
    ):
        import cv2

        self._cv2 = cv2
        path = cascade_path or os.path.join(cv2.data.haarcascades, self.CASCADE_FILE)
        self._cascade = cv2.CascadeClassifier(path)
        if self._cascade.empty():
            raise ConfigurationError(f"Failed to load cascade classifier from {path}")
        self.scale_factor = scale_factor
        self.min_neighbors = min_neighbors
        self.min_face_size = min_face_size

    def detect(self, image: Image.Image) -> List[FaceBox]:
        import numpy as np

        cv2 = self._cv2
        width, height = image.size
        try:
            gray = cv2.cvtColor(np.asarray(image.convert("RGB")), cv2.COLOR_RGB2GRAY)
            rects = self._cascade.detectMultiScale(
                gray,
                scaleFactor=self.scale_factor,
                minNeighbors=self.min_neighbors,
                minSize=(self.min_face_size, self.min_face_size),
            )
        except cv2.error as e:
            raise DetectionError(f"Haar cascade detection failed: {e}") from e

        boxes: List[FaceBox] = []
        for x, y, w, h in rects:
            box = _clip_box(x, y, x + w, y + h, 1.0, width, height)
            if box is not None:
                boxes.append(box)
        return boxes


def create_detector(name: str = DEFAULT_DETECTOR, **options) -> FaceDetector:
    """
    Build a detector adapter by registered name.

    Raises:
        ConfigurationError: If the name is unknown or its library is not installed
    """
    cls = _detector_registry.get(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown detector {name!r} (expected one of: {', '.join(available_detectors())})"
        )
    try:
        return cls(**options)
    except ImportError as e:
        raise ConfigurationError(f"Detector {name!r} needs the {cls.requires!r} package: {e}") from e


def detector_factory(name: str = DEFAULT_DETECTOR, **options) -> DetectorFactory:
    """
    Return a zero-argument callable that builds a fresh detector.

    The name and the wrapped library are checked now, so a bad choice fails
    at startup rather than on the first image.
    """
    cls = _detector_registry.get(name)
    if cls is None:
        raise ConfigurationError(
            f"Unknown detector {name!r} (expected one of: {', '.join(available_detectors())})"
        )
    if cls.requires:
        try:
            importlib.import_module(cls.requires)
        except ImportError as e:
            raise ConfigurationError(f"Detector {name!r} needs the {cls.requires!r} package: {e}") from e
    logger.debug("Using %s detector with options %s", name, options)
    return partial(create_detector, name, **options)
