from __future__ import annotations

import errno
import os
import re
import shutil
from pathlib import Path
from typing import Callable

SUPPORTED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".pdf"}

_UNSAFE_FILENAME_CHARS = re.compile(r"[^a-zA-Z0-9._-]+")
_VERSION_SUFFIX = re.compile(r"^(?P<stem>.+)_(?P<n>\d+)$")
_MAX_UNIQUE_ATTEMPTS = 10_000


def ensure_directory(path: Path) -> None:
    path.mkdir(parents=True, exist_ok=True)


def sanitize_filename(name: str) -> str:
    base = Path(name).name
    cleaned = _UNSAFE_FILENAME_CHARS.sub("_", base).strip("_")
    return cleaned or "upload"


def is_supported_file(name: str) -> bool:
    return Path(name).suffix.lower() in SUPPORTED_EXTENSIONS


def strip_version_suffix(filename: str) -> str:
    """Map ``chart_2.jpg`` back to ``chart.jpg``."""
    path = Path(filename)
    match = _VERSION_SUFFIX.match(path.stem)
    if not match:
        return filename
    return f"{match.group('stem')}{path.suffix}"


def make_unique_filename(filename: str, is_taken: Callable[[str], bool]) -> str:
    if not is_taken(filename):
        return filename
    path = Path(filename)
    for index in range(1, _MAX_UNIQUE_ATTEMPTS + 1):
        candidate = f"{path.stem}_{index}{path.suffix}"
        if not is_taken(candidate):
            return candidate
    raise FileExistsError(f"Unable to find a free filename for {filename}")


def move_file(src: Path, dst: Path) -> None:
    ensure_directory(dst.parent)
    try:
        os.replace(src, dst)
    except OSError as exc:
        if exc.errno != errno.EXDEV:
            raise
        temp_path = dst.parent / f".{dst.name}.tmp"
        shutil.copy2(src, temp_path)
        os.replace(temp_path, dst)
        src.unlink(missing_ok=True)


def write_bytes_atomic(path: Path, data: bytes) -> None:
    ensure_directory(path.parent)
    temp_path = path.parent / f".{path.name}.tmp"
    temp_path.write_bytes(data)
    os.replace(temp_path, path)
