import sys
from pathlib import Path

import pytest
from PIL import Image, ImageDraw

# Ensure the application root is on sys.path for direct pytest runs
APP_ROOT = Path(__file__).resolve().parents[1]
if str(APP_ROOT) not in sys.path:
    sys.path.insert(0, str(APP_ROOT))

from domain.models import FaceBox  # noqa: E402


class FakeDetector:
    """
    Stand-in face detector.

    Returns `by_size[(w, h)]` for images of that size, else `boxes`.
    Raises `error` instead when one is given.
    """

    def __init__(self, boxes=None, by_size=None, error=None):
        self.boxes = list(boxes or [])
        self.by_size = dict(by_size or {})
        self.error = error
        self.calls = 0
        self.closed = False

    def detect(self, image):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.by_size.get(image.size, self.boxes))

    def close(self):
        self.closed = True


@pytest.fixture
def face_box():
    def _make(x, y, w, h, confidence=0.9):
        return FaceBox(x=x, y=y, width=w, height=h, confidence=confidence)
    return _make


@pytest.fixture
def write_image(tmp_path):
    """Write a small deterministic test photo and return its path."""
    def _write(name, size=(1000, 800), color=(200, 180, 160), fmt=None, directory=None):
        target_dir = Path(directory) if directory else tmp_path / "input"
        target_dir.mkdir(parents=True, exist_ok=True)
        path = target_dir / name
        img = Image.new("RGB", size, color)
        d = ImageDraw.Draw(img)
        w, h = size
        # simple face-like disc so crops are not uniform
        cx, cy = w // 2, h // 2
        r = max(1, min(w, h) // 5)
        d.ellipse((cx - r, cy - r, cx + r, cy + r), fill=(255, 224, 189), outline=(120, 80, 40))
        d.rectangle((0, 0, w // 4, h // 4), fill=(30, 60, 90))
        img.save(path, format=fmt)
        return path
    return _write


@pytest.fixture
def fake_detector():
    return FakeDetector
