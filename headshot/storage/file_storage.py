"""
File storage abstraction.

Enumerates input images and writes cropped outputs. Outputs are written to a
temporary file in the destination directory and renamed into place, so an
interrupted run never leaves a half-written image behind.
"""
import os
import tempfile
from pathlib import Path
from typing import Iterable, List, Union

from domain.errors import EncodeError

IMAGE_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png"})
HEIF_EXTENSIONS = frozenset({".heic", ".heif"})

_TEMP_PREFIX = ".headshot-"
_TEMP_SUFFIX = ".tmp"


def _current_umask() -> int:
    mask = os.umask(0)
    os.umask(mask)
    return mask


# Temp files are created 0600; finished outputs get the usual new-file mode
OUTPUT_FILE_MODE = 0o666 & ~_current_umask()


def is_valid_image(path: Path, extensions: Iterable[str] = IMAGE_EXTENSIONS) -> bool:
    """Regular file with a recognized image extension (case-insensitive)."""
    return path.is_file() and path.suffix.lower() in extensions


def collect_image_files(input_path: Union[str, Path], extensions: Iterable[str] = IMAGE_EXTENSIONS) -> List[Path]:
    """
    Collect candidate input images.

    Args:
        input_path: A single image file or a directory (not searched recursively)
        extensions: Accepted lowercase suffixes, including the dot

    Returns:
        Image paths sorted by name. Non-image files are left out, so a
        directory of only non-images gives an empty list.
    """
    input_path = Path(input_path)
    extensions = frozenset(extensions)
    if input_path.is_file():
        return [input_path] if is_valid_image(input_path, extensions) else []
    if input_path.is_dir():
        return sorted(
            (p for p in input_path.iterdir() if is_valid_image(p, extensions)),
            key=lambda p: p.name,
        )
    return []


class FileStorage:
    """
    Local output storage.

    Files are organized as:
    - {output_root}/{stem}{ext}  - Cropped headshots
    - {output_root}/_debug/{stem}.jpg  - Optional debug overlays
    """

    def __init__(self, output_root: Union[str, Path] = "outputs"):
        self.output_root = Path(output_root)
        self.output_root.mkdir(parents=True, exist_ok=True)

    def get_debug_dir(self) -> Path:
        """Get the debug overlay directory."""
        path = self.output_root / "_debug"
        path.mkdir(parents=True, exist_ok=True)
        return path

    def output_path_for(self, source_path: Union[str, Path], extension: str) -> Path:
        """Output path for an input: same base name, given extension."""
        return self.output_root / f"{Path(source_path).stem}{extension}"

    def debug_path_for(self, source_path: Union[str, Path]) -> Path:
        return self.get_debug_dir() / f"{Path(source_path).stem}.jpg"

    def write_atomic(self, path: Union[str, Path], data: bytes) -> Path:
        """
        Write bytes to path via a temporary file and rename.

        Returns:
            The final path

        Raises:
            EncodeError: If the directory is not writable or the write fails.
                No temporary file is left behind.
        """
        path = Path(path)
        tmp_name = None
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(
                dir=path.parent, prefix=_TEMP_PREFIX, suffix=_TEMP_SUFFIX, delete=False
            ) as f:
                tmp_name = f.name
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp_name, OUTPUT_FILE_MODE)
            os.replace(tmp_name, path)
        except BaseException as e:
            # Also covers KeyboardInterrupt mid-write
            if tmp_name is not None and os.path.exists(tmp_name):
                os.unlink(tmp_name)
            if isinstance(e, OSError):
                raise EncodeError(f"Failed to write output: {e}", source_path=path) from e
            raise
        return path

    def remove_stale_temp_files(self) -> int:
        """Delete temporary files left by a killed run. Returns the count removed."""
        removed = 0
        for p in self.output_root.glob(f"{_TEMP_PREFIX}*{_TEMP_SUFFIX}"):
            p.unlink()
            removed += 1
        return removed
