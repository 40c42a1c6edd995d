"""
End-to-end tests for the crop_headshots script with a stand-in detector.

Run with: pytest tests/test_crop_headshots_cli.py -v
"""
import json

import pytest
from PIL import Image

from domain.errors import ConfigurationError
from domain.models import FaceBox
from scripts import crop_headshots
from settings import Settings

FACE = FaceBox(x=400, y=200, width=200, height=200, confidence=0.9)


@pytest.fixture(autouse=True)
def isolated_settings(monkeypatch):
    for name in ("HEADSHOT_ASPECT_RATIO", "HEADSHOT_OUTPUT_SIZE", "HEADSHOT_WORKERS", "HEADSHOT_FALLBACK",
                 "HEADSHOT_OUTPUT_FORMAT", "HEADSHOT_MARGIN", "HEADSHOT_DETECTOR", "DEBUG_FACE_CROPS"):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(crop_headshots, "load_settings", Settings)


@pytest.fixture
def use_detector(monkeypatch):
    """Swap the real detector backend for a given zero-argument factory."""
    seen = {}

    def _use(factory):
        def fake_detector_factory(name, **options):
            seen["name"] = name
            seen["options"] = options
            return factory
        monkeypatch.setattr(crop_headshots, "detector_factory", fake_detector_factory)
        return seen
    return _use


def _args(input_dir, output_dir, *extra):
    return ["--input", str(input_dir), "--output", str(output_dir), "--size", "128x128", "--margin", "0.2", *extra]


def test_crops_directory(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    write_image("b.png", fmt="PNG")
    seen = use_detector(lambda: fake_detector([FACE]))
    out = tmp_path / "out"

    assert crop_headshots.main(_args(tmp_path / "input", out)) == 0
    assert sorted(p.name for p in out.iterdir()) == ["a.jpg", "b.png"]
    with Image.open(out / "b.png") as img:
        assert img.size == (128, 128)
    assert seen["name"] == "mediapipe"
    assert seen["options"] == {"min_confidence": 0.5, "model_selection": 0}


def test_haar_options_are_passed(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    seen = use_detector(lambda: fake_detector([FACE]))
    argv = _args(tmp_path / "input", tmp_path / "out", "--detector", "haar", "--min-face-size", "60")
    assert crop_headshots.main(argv) == 0
    assert seen["options"] == {"min_confidence": 0.5, "min_neighbors": 8, "min_face_size": 60}


def test_failure_sets_exit_code_and_report(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    broken = tmp_path / "input" / "b.jpg"
    broken.write_bytes(b"definitely not a jpeg")
    use_detector(lambda: fake_detector([FACE]))
    report = tmp_path / "report.json"

    code = crop_headshots.main(_args(tmp_path / "input", tmp_path / "out", "--report", str(report)))
    assert code == 1
    data = json.loads(report.read_text())
    assert data["failed"] == 1
    assert data["results"][1]["source_path"] == str(broken)
    assert data["results"][1]["error_kind"] == "decode"


def test_retry_failed_only_reprocesses_failures(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    broken = tmp_path / "input" / "b.jpg"
    broken.write_bytes(b"definitely not a jpeg")
    calls = []

    def factory():
        detector = fake_detector([FACE])
        calls.append(detector)
        return detector

    use_detector(factory)
    first = tmp_path / "first.json"
    assert crop_headshots.main(_args(tmp_path / "input", tmp_path / "out", "--report", str(first))) == 1

    write_image("b.jpg", fmt="JPEG")
    second = tmp_path / "second.json"
    argv = ["--retry-failed", str(first), "--output", str(tmp_path / "out"), "--size", "128x128",
            "--report", str(second)]
    assert crop_headshots.main(argv) == 0
    data = json.loads(second.read_text())
    assert data["total"] == 1
    assert data["results"][0]["source_path"] == str(broken)
    assert data["results"][0]["status"] == "succeeded"


def test_no_face_is_not_an_error(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    use_detector(lambda: fake_detector([]))
    out = tmp_path / "out"
    assert crop_headshots.main(_args(tmp_path / "input", out)) == 0
    assert list(out.iterdir()) == []


def test_empty_directory(tmp_path, fake_detector, use_detector):
    (tmp_path / "input").mkdir()
    use_detector(lambda: fake_detector([FACE]))
    assert crop_headshots.main(_args(tmp_path / "input", tmp_path / "out")) == 0


def test_size_aspect_mismatch_is_config_error(write_image, tmp_path, fake_detector, use_detector):
    write_image("a.jpg", fmt="JPEG")
    use_detector(lambda: fake_detector([FACE]))
    argv = _args(tmp_path / "input", tmp_path / "out", "--aspect", "4:5")
    assert crop_headshots.main(argv) == 2


def test_unavailable_detector_is_config_error(write_image, tmp_path, monkeypatch):
    write_image("a.jpg", fmt="JPEG")

    def missing(name, **options):
        raise ConfigurationError("Detector 'mediapipe' needs the 'mediapipe' package")

    monkeypatch.setattr(crop_headshots, "detector_factory", missing)
    assert crop_headshots.main(_args(tmp_path / "input", tmp_path / "out")) == 2


def test_interrupt_exit_code(write_image, tmp_path, use_detector):
    write_image("a.jpg", fmt="JPEG")
    write_image("b.jpg", fmt="JPEG")

    class Interrupting:
        def detect(self, image):
            raise KeyboardInterrupt

    use_detector(Interrupting)
    assert crop_headshots.main(_args(tmp_path / "input", tmp_path / "out")) == 130


def test_input_is_required(tmp_path):
    with pytest.raises(SystemExit) as exc:
        crop_headshots.main(["--output", str(tmp_path)])
    assert exc.value.code == 2


def test_unknown_detector_rejected_by_parser(tmp_path):
    with pytest.raises(SystemExit):
        crop_headshots.main(["--input", str(tmp_path), "--detector", "yolo"])
