"""
Image decoding, cropping and encoding.

Decoded images are RGB with EXIF orientation applied, so face boxes and crop
rectangles always refer to the image as it is displayed. Rendering never
modifies the source image, and encoding uses fixed options so the same crop
of the same file always gives the same bytes.
"""
from __future__ import annotations

from dataclasses import dataclass
from io import BytesIO
from pathlib import Path
from typing import Optional, Sequence, Tuple, Union
import logging

from PIL import Image, ImageDraw, ImageOps, UnidentifiedImageError

from domain.errors import DecodeError, EncodeError
from domain.models import CropRect, FaceBox, OutputFormat

logger = logging.getLogger(__name__)

# Fixed for every render
RESAMPLE = Image.Resampling.BILINEAR

# Pillow format name and file extension per output format
_FORMATS = {
    OutputFormat.JPEG: ("JPEG", ".jpg"),
    OutputFormat.PNG: ("PNG", ".png"),
    OutputFormat.WEBP: ("WEBP", ".webp"),
}

_SOURCE_SUFFIX_FORMATS = {
    ".jpg": OutputFormat.JPEG,
    ".jpeg": OutputFormat.JPEG,
    ".png": OutputFormat.PNG,
    ".webp": OutputFormat.WEBP,
    # HEIC/HEIF inputs are written as JPEG
    ".heic": OutputFormat.JPEG,
    ".heif": OutputFormat.JPEG,
}

DEBUG_FACE_COLOR = (255, 165, 0)
DEBUG_CHOSEN_COLOR = (255, 0, 0)
DEBUG_CROP_COLOR = (0, 255, 0)


@dataclass(frozen=True)
class EncodedImage:
    data: bytes
    format: OutputFormat
    size: Tuple[int, int]

    @property
    def extension(self) -> str:
        return _FORMATS[self.format][1]


def register_heif_opener() -> bool:
    """
    Register HEIF/HEIC opener with Pillow if pillow-heif is available.

    Call this at startup to enable HEIC inputs.
    Safe to call multiple times or if pillow-heif is not installed.
    """
    try:
        from pillow_heif import register_heif_opener as _register
        _register()
        return True
    except ImportError:
        return False


def resolve_output_format(output_format: OutputFormat, source_path: Union[str, Path]) -> OutputFormat:
    """Map OutputFormat.SOURCE to the format of the input file."""
    if output_format != OutputFormat.SOURCE:
        return output_format
    suffix = Path(source_path).suffix.lower()
    return _SOURCE_SUFFIX_FORMATS.get(suffix, OutputFormat.JPEG)


def extension_for(output_format: OutputFormat) -> str:
    try:
        return _FORMATS[output_format][1]
    except KeyError:
        raise EncodeError(f"No file extension for output format {output_format!r}")


def decode_image(path: Union[str, Path]) -> Image.Image:
    """
    Open and fully decode an image file.

    Returns:
        RGB image with EXIF orientation applied

    Raises:
        DecodeError: If the file is missing, unreadable, truncated or not an image
    """
    try:
        with Image.open(path) as img:
            img.load()
            img = ImageOps.exif_transpose(img)
            rgb = img.convert("RGB")
    except (UnidentifiedImageError, Image.DecompressionBombError) as e:
        raise DecodeError(f"Not a decodable image: {e}", source_path=path) from e
    except (OSError, ValueError, SyntaxError) as e:
        raise DecodeError(f"Failed to read image: {e}", source_path=path) from e
    if rgb.width <= 0 or rgb.height <= 0:
        raise DecodeError(f"Image has no pixels ({rgb.width}x{rgb.height})", source_path=path)
    return rgb


def _encode(image: Image.Image, output_format: OutputFormat, quality: int) -> bytes:
    try:
        pil_format = _FORMATS[output_format][0]
    except KeyError:
        raise EncodeError(f"Unsupported output format {output_format!r}")

    options = {}
    if output_format == OutputFormat.JPEG:
        options = {"quality": quality, "optimize": False, "progressive": False, "subsampling": 0}
    elif output_format == OutputFormat.WEBP:
        options = {"quality": quality, "method": 4}
    elif output_format == OutputFormat.PNG:
        options = {"optimize": False, "compress_level": 6}

    buf = BytesIO()
    try:
        image.save(buf, format=pil_format, **options)
    except (OSError, KeyError, ValueError) as e:
        raise EncodeError(f"Failed to encode {pil_format}: {e}") from e
    return buf.getvalue()


def render(
    image: Image.Image,
    crop: CropRect,
    output_size: Tuple[int, int],
    output_format: OutputFormat,
    quality: int = 95,
) -> EncodedImage:
    """
    Cut the crop out of the image, resample it to output_size and encode it.

    Args:
        image: Decoded source image (left untouched)
        crop: Rectangle from the crop planner
        output_size: (width, height) in pixels
        output_format: Concrete output format (not SOURCE)
        quality: JPEG/WebP quality

    Raises:
        EncodeError: If the format is unsupported or encoding fails
    """
    if output_format == OutputFormat.SOURCE:
        raise EncodeError("Output format must be resolved before rendering")
    region = image.crop(crop.box)
    if region.size != tuple(output_size):
        region = region.resize(output_size, resample=RESAMPLE)
    data = _encode(region, output_format, quality)
    return EncodedImage(data=data, format=output_format, size=region.size)


def render_debug_overlay(
    image: Image.Image,
    faces: Sequence[FaceBox],
    chosen: Optional[FaceBox],
    crop: Optional[CropRect],
) -> bytes:
    """Draw detections, the chosen face and the crop on a copy of the image (JPEG bytes)."""
    draw_img = image.convert("RGB")
    d = ImageDraw.Draw(draw_img)
    width = max(2, min(draw_img.size) // 200)
    for f in faces:
        d.rectangle([f.x, f.y, f.right, f.bottom], outline=DEBUG_FACE_COLOR, width=width)
    if chosen is not None:
        d.rectangle([chosen.x, chosen.y, chosen.right, chosen.bottom], outline=DEBUG_CHOSEN_COLOR, width=width)
    if crop is not None:
        # PIL rectangles include the lower-right pixel
        d.rectangle([crop.x, crop.y, crop.right - 1, crop.bottom - 1], outline=DEBUG_CROP_COLOR, width=width + 1)
    return _encode(draw_img, OutputFormat.JPEG, 85)
