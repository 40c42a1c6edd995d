"""
Crop planner.

Turns the face boxes reported for an image into exactly one crop rectangle
(or a reasoned "no crop"). Everything here is a pure function of its inputs:
the same faces, image size and configuration always give the same CropRect,
which keeps re-runs byte-identical.

Algorithm:
- Drop faces below the confidence threshold.
- No faces left: apply the fallback policy (largest centered rectangle of the
  target aspect, or skip).
- Otherwise pick the largest face (ties: confidence, then top-left order).
- Pad the face by the margin on every side, then grow the short side until the
  rectangle has the target aspect.
- If that is larger than the image, scale it down uniformly until it fits.
- Snap to whole pixels (round half away from zero) and translate the
  rectangle into the image rather than cutting it at the edge.
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple
import logging
import math

from domain.errors import PlanningError
from domain.models import (
    CropConfig,
    CropRect,
    FaceBox,
    FallbackPolicy,
    SkipReason,
    aspect_matches,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CropDecision:
    """Planner output: a crop to render, or the reason there is none."""
    crop: Optional[CropRect]
    face: Optional[FaceBox] = None
    face_count: int = 0
    skip_reason: Optional[SkipReason] = None


def round_half_away_from_zero(value: float) -> int:
    return int(math.copysign(math.floor(abs(value) + 0.5), value))


def _selection_key(face: FaceBox) -> Tuple[float, float, float, float, float]:
    # min() over this key: largest area, then highest confidence, then top-left
    return (-face.area, -face.confidence, face.y, face.x, face.width)


def filter_confident(faces: Iterable[FaceBox], min_confidence: float) -> List[FaceBox]:
    return [f for f in faces if f.confidence >= min_confidence]


def select_primary_face(faces: Sequence[FaceBox], min_confidence: float) -> Tuple[Optional[FaceBox], int]:
    """
    Pick the face to frame.

    Returns (face, candidate_count) where candidate_count is the number of
    faces that cleared the threshold. face is None when none did.
    """
    candidates = filter_confident(faces, min_confidence)
    if not candidates:
        return None, 0
    return min(candidates, key=_selection_key), len(candidates)


def expand_face_box(face: FaceBox, margin: float, aspect_ratio: float) -> Tuple[float, float]:
    """Padded (width, height) around a face, widened or heightened to the target aspect."""
    width = face.width * (1.0 + 2.0 * margin)
    height = face.height * (1.0 + 2.0 * margin)
    if width / height < aspect_ratio:
        width = height * aspect_ratio
    else:
        height = width / aspect_ratio
    return width, height


def largest_centered_size(image_width: int, image_height: int, aspect_ratio: float) -> Tuple[float, float]:
    """Largest (width, height) of the target aspect that fits in the image."""
    if image_width / image_height >= aspect_ratio:
        return image_height * aspect_ratio, float(image_height)
    return float(image_width), image_width / aspect_ratio


def fit_to_image(width: float, height: float, image_width: int, image_height: int) -> Tuple[float, float]:
    """Uniformly shrink a rectangle (keeping its aspect) until it fits the image."""
    if width <= image_width and height <= image_height:
        return width, height
    scale = min(image_width / width, image_height / height)
    return width * scale, height * scale


def snap_size(
    width: float,
    height: float,
    image_width: int,
    image_height: int,
    aspect_ratio: float,
) -> Optional[Tuple[int, int]]:
    """
    Round a float size to whole pixels without breaking the aspect ratio.

    The larger side is rounded and clamped to the image; the other side is
    derived from it, so it is the nearest integer to the exact aspect. If the
    derived side spills past the image the larger side steps down a pixel.
    Returns None when no rectangle of at least 1x1 fits.
    """
    if aspect_ratio >= 1.0:
        # Smallest width whose derived height still rounds to a whole pixel
        min_primary = max(1, math.ceil(aspect_ratio / 2.0))
        primary = min(max(round_half_away_from_zero(width), min_primary), image_width)
        while primary >= 1:
            derived = round_half_away_from_zero(primary / aspect_ratio)
            if derived < 1:
                return None
            if derived <= image_height:
                return primary, derived
            primary -= 1
        return None

    min_primary = max(1, math.ceil(1.0 / (2.0 * aspect_ratio)))
    primary = min(max(round_half_away_from_zero(height), min_primary), image_height)
    while primary >= 1:
        derived = round_half_away_from_zero(primary * aspect_ratio)
        if derived < 1:
            return None
        if derived <= image_width:
            return derived, primary
        primary -= 1
    return None


def _place(center: float, size: int, limit: int) -> int:
    # Translate into bounds instead of truncating
    start = round_half_away_from_zero(center - size / 2.0)
    return min(max(start, 0), limit - size)


def validate_crop(crop: CropRect, image_width: int, image_height: int, aspect_ratio: float) -> None:
    """Raise PlanningError unless the crop lies in the image with the target aspect."""
    if crop.width <= 0 or crop.height <= 0:
        raise PlanningError(f"Crop has non-positive size: {crop}")
    if crop.x < 0 or crop.y < 0 or crop.right > image_width or crop.bottom > image_height:
        raise PlanningError(f"Crop {crop} is outside image {image_width}x{image_height}")
    if not aspect_matches(crop.width, crop.height, aspect_ratio):
        raise PlanningError(f"Crop {crop} does not match aspect ratio {aspect_ratio:g}")


def _build_crop(
    center: Tuple[float, float],
    size: Tuple[float, float],
    image_width: int,
    image_height: int,
    aspect_ratio: float,
) -> Optional[CropRect]:
    width, height = fit_to_image(size[0], size[1], image_width, image_height)
    snapped = snap_size(width, height, image_width, image_height, aspect_ratio)
    if snapped is None:
        return None
    crop_w, crop_h = snapped
    crop = CropRect(
        x=_place(center[0], crop_w, image_width),
        y=_place(center[1], crop_h, image_height),
        width=crop_w,
        height=crop_h,
    )
    validate_crop(crop, image_width, image_height, aspect_ratio)
    return crop


def center_full_image_crop(image_width: int, image_height: int, aspect_ratio: float) -> Optional[CropRect]:
    """Largest crop of the target aspect, centered in the image."""
    size = largest_centered_size(image_width, image_height, aspect_ratio)
    center = (image_width / 2.0, image_height / 2.0)
    return _build_crop(center, size, image_width, image_height, aspect_ratio)


def crop_around_face(
    face: FaceBox,
    image_width: int,
    image_height: int,
    margin: float,
    aspect_ratio: float,
) -> Optional[CropRect]:
    size = expand_face_box(face, margin, aspect_ratio)
    return _build_crop(face.center, size, image_width, image_height, aspect_ratio)


def plan_crop(
    faces: Sequence[FaceBox],
    image_width: int,
    image_height: int,
    config: CropConfig,
) -> CropDecision:
    """
    Decide the crop for one image.

    Args:
        faces: Face boxes reported by the detector, in any order
        image_width: Source image width in pixels
        image_height: Source image height in pixels
        config: Run configuration

    Returns:
        CropDecision with a crop, or with skip_reason set when the fallback
        policy skips or the image cannot hold any crop of the target aspect.

    Raises:
        PlanningError: If the image dimensions are not positive or a computed
            crop breaks the bounds/aspect guarantees.
    """
    if image_width <= 0 or image_height <= 0:
        raise PlanningError(f"Cannot plan a crop for a {image_width}x{image_height} image")

    face, face_count = select_primary_face(faces, config.min_confidence)

    if face is None:
        if config.fallback == FallbackPolicy.CENTER_FULL_IMAGE:
            crop = center_full_image_crop(image_width, image_height, config.aspect_ratio)
            if crop is None:
                return CropDecision(crop=None, skip_reason=SkipReason.IMAGE_TOO_SMALL)
            logger.debug("No face above %.2f; centered fallback crop %s", config.min_confidence, crop)
            return CropDecision(crop=crop)
        return CropDecision(crop=None, skip_reason=SkipReason.NO_FACE)

    crop = crop_around_face(face, image_width, image_height, config.margin, config.aspect_ratio)
    if crop is None:
        return CropDecision(crop=None, face=face, face_count=face_count, skip_reason=SkipReason.IMAGE_TOO_SMALL)
    logger.debug("Selected face %s of %d; crop %s", face, face_count, crop)
    return CropDecision(crop=crop, face=face, face_count=face_count)
