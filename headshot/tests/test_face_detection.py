from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from PIL import Image

from domain.errors import ConfigurationError, DetectionError
from domain.models import FaceBox
from services import face_detection
from services.face_detection import (
    MediaPipeFaceDetector,
    _BaseDetector,
    _clip_box,
    available_detectors,
    create_detector,
    detector_factory,
)


def _mp_detection(xmin, ymin, width, height, score):
    box = SimpleNamespace(xmin=xmin, ymin=ymin, width=width, height=height)
    return SimpleNamespace(location_data=SimpleNamespace(relative_bounding_box=box), score=[score])


def _mediapipe_adapter(detections):
    # Skip __init__ so the test does not need the mediapipe model files
    adapter = object.__new__(MediaPipeFaceDetector)
    adapter._detector = MagicMock()
    adapter._detector.process.return_value = SimpleNamespace(detections=detections)
    return adapter


class TestRegistry:

    def test_builtin_detectors(self):
        assert available_detectors() == ["haar", "mediapipe"]

    def test_unknown_name(self):
        with pytest.raises(ConfigurationError):
            create_detector("yolo")
        with pytest.raises(ConfigurationError):
            detector_factory("yolo")

    def test_missing_library_fails_at_startup(self, monkeypatch):
        class NeedsMissing(_BaseDetector):
            requires = "headshot_no_such_module"

        monkeypatch.setitem(face_detection._detector_registry, "missing", NeedsMissing)
        with pytest.raises(ConfigurationError) as exc:
            detector_factory("missing")
        assert "headshot_no_such_module" in str(exc.value)

    def test_import_error_on_construction(self, monkeypatch):
        class Broken(_BaseDetector):
            requires = "json"

            def __init__(self, **options):
                raise ImportError("no model")

        monkeypatch.setitem(face_detection._detector_registry, "broken", Broken)
        with pytest.raises(ConfigurationError):
            create_detector("broken")

    def test_factory_builds_fresh_instances(self, monkeypatch):
        class Dummy(_BaseDetector):
            requires = "json"

            def __init__(self, min_confidence=0.5):
                self.min_confidence = min_confidence

            def detect(self, image):
                return []

        monkeypatch.setitem(face_detection._detector_registry, "dummy", Dummy)
        factory = detector_factory("dummy", min_confidence=0.7)
        first, second = factory(), factory()
        assert first is not second
        assert first.min_confidence == 0.7


class TestClipBox:

    def test_inside(self):
        box = _clip_box(10, 20, 50, 80, 0.8, 100, 100)
        assert box == FaceBox(x=10, y=20, width=40, height=60, confidence=0.8)

    def test_clipped_to_image(self):
        box = _clip_box(-10, -5, 30, 40, 0.8, 20, 20)
        assert (box.x, box.y, box.width, box.height) == (0, 0, 20, 20)

    def test_outside_is_dropped(self):
        assert _clip_box(120, 10, 150, 40, 0.9, 100, 100) is None

    def test_confidence_clamped(self):
        assert _clip_box(0, 0, 10, 10, 1.3, 100, 100).confidence == 1.0


class TestMediaPipeAdapter:

    def test_relative_boxes_to_pixels(self):
        adapter = _mediapipe_adapter([_mp_detection(0.25, 0.1, 0.5, 0.4, 0.93)])
        boxes = adapter.detect(Image.new("RGB", (400, 200)))
        assert len(boxes) == 1
        box = boxes[0]
        assert box.x == pytest.approx(100)
        assert box.y == pytest.approx(20)
        assert box.width == pytest.approx(200)
        assert box.height == pytest.approx(80)
        assert box.confidence == pytest.approx(0.93)

    def test_no_detections(self):
        adapter = _mediapipe_adapter(None)
        assert adapter.detect(Image.new("RGB", (64, 64))) == []

    def test_box_partly_outside_is_clipped(self):
        adapter = _mediapipe_adapter([_mp_detection(-0.1, 0.9, 0.3, 0.3, 0.6)])
        box = adapter.detect(Image.new("RGB", (100, 100)))[0]
        assert (box.x, box.y) == (0, pytest.approx(90))
        assert box.width == pytest.approx(20)
        assert box.height == pytest.approx(10)

    def test_library_failure_becomes_detection_error(self):
        adapter = _mediapipe_adapter([])
        adapter._detector.process.side_effect = RuntimeError("graph failed")
        with pytest.raises(DetectionError):
            adapter.detect(Image.new("RGB", (64, 64)))

    def test_close(self):
        adapter = _mediapipe_adapter([])
        with adapter:
            pass
        adapter._detector.close.assert_called_once()


def test_haar_detector_on_blank_image():
    pytest.importorskip("cv2")
    detector = create_detector("haar", min_face_size=30)
    assert detector.detect(Image.new("RGB", (320, 240), (128, 128, 128))) == []
