import io

import pytest
from PIL import Image

from domain.errors import DecodeError, EncodeError
from domain.models import CropRect, FaceBox, OutputFormat
from services.image_transformer import (
    decode_image,
    extension_for,
    render,
    render_debug_overlay,
    resolve_output_format,
)


class TestDecodeImage:

    def test_decodes_to_rgb(self, write_image):
        path = write_image("face.png", size=(320, 240), fmt="PNG")
        img = decode_image(path)
        assert img.mode == "RGB"
        assert img.size == (320, 240)

    def test_converts_grayscale(self, tmp_path):
        path = tmp_path / "gray.png"
        Image.new("L", (50, 40), 128).save(path)
        assert decode_image(path).mode == "RGB"

    def test_applies_exif_orientation(self, tmp_path):
        path = tmp_path / "rotated.jpg"
        img = Image.new("RGB", (300, 200), (10, 20, 30))
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 CW on display
        img.save(path, format="JPEG", exif=exif)
        assert decode_image(path).size == (200, 300)

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "broken.jpg"
        path.write_bytes(b"not really a jpeg")
        with pytest.raises(DecodeError) as exc:
            decode_image(path)
        assert exc.value.source_path == str(path)

    def test_truncated_file_raises(self, write_image):
        path = write_image("cut.jpg", size=(400, 400), fmt="JPEG")
        data = path.read_bytes()
        path.write_bytes(data[: len(data) // 3])
        with pytest.raises(DecodeError):
            decode_image(path)

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(DecodeError):
            decode_image(tmp_path / "nope.jpg")


class TestRender:

    def test_output_size_and_format(self, write_image):
        img = decode_image(write_image("a.png", size=(1000, 800), fmt="PNG"))
        encoded = render(img, CropRect(360, 160, 280, 280), (128, 128), OutputFormat.PNG)
        out = Image.open(io.BytesIO(encoded.data))
        assert out.format == "PNG"
        assert out.size == (128, 128)
        assert encoded.size == (128, 128)
        assert encoded.extension == ".png"

    def test_crop_contents(self):
        img = Image.new("RGB", (100, 100), (0, 0, 255))
        img.paste((255, 0, 0), (50, 50, 100, 100))
        encoded = render(img, CropRect(50, 50, 50, 50), (50, 50), OutputFormat.PNG)
        out = Image.open(io.BytesIO(encoded.data)).convert("RGB")
        assert out.getpixel((0, 0)) == (255, 0, 0)
        assert out.getpixel((49, 49)) == (255, 0, 0)

    def test_source_image_untouched(self, write_image):
        img = decode_image(write_image("a.png", size=(200, 200), fmt="PNG"))
        before = img.tobytes()
        render(img, CropRect(0, 0, 100, 100), (50, 50), OutputFormat.JPEG)
        assert img.size == (200, 200)
        assert img.tobytes() == before

    def test_encoding_is_byte_identical(self, write_image):
        img = decode_image(write_image("a.jpg", size=(640, 480), fmt="JPEG"))
        crop = CropRect(100, 50, 300, 300)
        for fmt in (OutputFormat.JPEG, OutputFormat.PNG, OutputFormat.WEBP):
            first = render(img, crop, (200, 200), fmt, quality=90)
            second = render(img, crop, (200, 200), fmt, quality=90)
            assert first.data == second.data

    def test_unresolved_source_format_raises(self, write_image):
        img = decode_image(write_image("a.png", size=(100, 100), fmt="PNG"))
        with pytest.raises(EncodeError):
            render(img, CropRect(0, 0, 100, 100), (10, 10), OutputFormat.SOURCE)


class TestFormats:

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("a.JPG", OutputFormat.JPEG),
            ("a.jpeg", OutputFormat.JPEG),
            ("a.png", OutputFormat.PNG),
            ("a.heic", OutputFormat.JPEG),
            ("a.unknown", OutputFormat.JPEG),
        ],
    )
    def test_source_resolves_from_suffix(self, name, expected):
        assert resolve_output_format(OutputFormat.SOURCE, name) == expected

    def test_explicit_format_wins(self):
        assert resolve_output_format(OutputFormat.WEBP, "a.png") == OutputFormat.WEBP

    def test_extensions(self):
        assert extension_for(OutputFormat.JPEG) == ".jpg"
        assert extension_for(OutputFormat.PNG) == ".png"
        with pytest.raises(EncodeError):
            extension_for(OutputFormat.SOURCE)


def test_debug_overlay_is_jpeg(write_image):
    img = decode_image(write_image("a.png", size=(300, 200), fmt="PNG"))
    face = FaceBox(x=100, y=50, width=80, height=80, confidence=0.9)
    data = render_debug_overlay(img, [face], face, CropRect(60, 10, 160, 160))
    out = Image.open(io.BytesIO(data))
    assert out.format == "JPEG"
    assert out.size == (300, 200)
