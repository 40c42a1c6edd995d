import os
from pathlib import Path
from typing import Tuple

from dotenv import load_dotenv

from domain.errors import ConfigurationError
from domain.models import CropConfig

# Basic settings helper to read environment configuration.
# Values may also come from headshot/.env (optional).

ENV_PATH = Path(__file__).resolve().parent / ".env"


def _as_bool(val: str | None, default: bool = False) -> bool:
    if val is None:
        return default
    return val.lower() in ("1", "true", "yes", "on")


def _as_float(name: str, val: str | None, default: float) -> float:
    if val is None or val == "":
        return default
    try:
        return float(val)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {val!r}")


def _as_int(name: str, val: str | None, default: int) -> int:
    if val is None or val == "":
        return default
    try:
        return int(val)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {val!r}")


def parse_aspect_ratio(value: str) -> float:
    """Parse "4:5", "4/5" or "0.8" into width / height."""
    text = str(value).strip()
    for sep in (":", "/"):
        if sep in text:
            left, _, right = text.partition(sep)
            try:
                w, h = float(left), float(right)
            except ValueError:
                raise ConfigurationError(f"Invalid aspect ratio {value!r}")
            if w <= 0 or h <= 0:
                raise ConfigurationError(f"Aspect ratio must be positive, got {value!r}")
            return w / h
    try:
        ratio = float(text)
    except ValueError:
        raise ConfigurationError(f"Invalid aspect ratio {value!r}")
    if ratio <= 0:
        raise ConfigurationError(f"Aspect ratio must be positive, got {value!r}")
    return ratio


def parse_size(value: str) -> Tuple[int, int]:
    """Parse "512x512" (or a single "512" for a square) into (width, height)."""
    text = str(value).strip().lower()
    parts = text.split("x") if "x" in text else [text, text]
    if len(parts) != 2:
        raise ConfigurationError(f"Invalid size {value!r} (expected WIDTHxHEIGHT)")
    try:
        width, height = int(parts[0]), int(parts[1])
    except ValueError:
        raise ConfigurationError(f"Invalid size {value!r} (expected WIDTHxHEIGHT)")
    if width <= 0 or height <= 0:
        raise ConfigurationError(f"Size must be positive, got {value!r}")
    return width, height


class Settings:
    def __init__(self) -> None:
        self.ASPECT_RATIO: float = parse_aspect_ratio(os.getenv("HEADSHOT_ASPECT_RATIO") or "1:1")
        self.MARGIN: float = _as_float("HEADSHOT_MARGIN", os.getenv("HEADSHOT_MARGIN"), 1.1)
        self.OUTPUT_SIZE: Tuple[int, int] = parse_size(os.getenv("HEADSHOT_OUTPUT_SIZE") or "512x512")
        self.MIN_CONFIDENCE: float = _as_float("HEADSHOT_MIN_CONFIDENCE", os.getenv("HEADSHOT_MIN_CONFIDENCE"), 0.5)
        self.FALLBACK: str = os.getenv("HEADSHOT_FALLBACK") or "skip"
        self.OUTPUT_FORMAT: str = os.getenv("HEADSHOT_OUTPUT_FORMAT") or "source"
        self.JPEG_QUALITY: int = _as_int("HEADSHOT_JPEG_QUALITY", os.getenv("HEADSHOT_JPEG_QUALITY"), 95)
        self.WORKERS: int = _as_int("HEADSHOT_WORKERS", os.getenv("HEADSHOT_WORKERS"), 1)
        self.DETECTOR: str = os.getenv("HEADSHOT_DETECTOR") or "mediapipe"
        self.DEBUG_FACE_CROPS: bool = _as_bool(os.getenv("DEBUG_FACE_CROPS"), False)

    def crop_config(self, **overrides) -> CropConfig:
        """Build a validated CropConfig; keyword overrides that are None are ignored."""
        values = {
            "aspect_ratio": self.ASPECT_RATIO,
            "margin": self.MARGIN,
            "output_width": self.OUTPUT_SIZE[0],
            "output_height": self.OUTPUT_SIZE[1],
            "fallback": self.FALLBACK,
            "min_confidence": self.MIN_CONFIDENCE,
            "output_format": self.OUTPUT_FORMAT,
            "jpeg_quality": self.JPEG_QUALITY,
            "workers": self.WORKERS,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return CropConfig(**values)


def load_settings(env_path: Path = ENV_PATH) -> Settings:
    """Load .env (if present) into the environment, then read settings."""
    load_dotenv(env_path)
    return Settings()
