from __future__ import annotations

import base64
import mimetypes
import os
from typing import Iterable, List, Optional, Set

from ..domain.models import FileInput
from ..logging import get_logger

LOG = get_logger("files")

IMAGE_EXTENSIONS: Set[str] = {".jpg", ".jpeg", ".png", ".webp", ".gif", ".heic"}
TEXT_EXTENSIONS: Set[str] = {".csv", ".txt", ".tsv"}


def _normalize_extensions(exts: Iterable[str]) -> Set[str]:
    normalized: Set[str] = set()
    for value in exts:
        clean = (value or "").strip().lower()
        if not clean:
            continue
        if not clean.startswith("."):
            clean = "." + clean
        normalized.add(clean)
    return normalized


def _guess_image_mime(path: str) -> str:
    mime, _ = mimetypes.guess_type(path)
    if mime and mime.startswith("image/"):
        return mime
    ext = os.path.splitext(path)[1].lower()
    if ext in {".jpg", ".jpeg"}:
        return "image/jpeg"
    if ext == ".heic":
        return "image/heic"
    return "image/png"


def load_file_input(path: str) -> FileInput:
    """Read an image (as base64) or a CSV/text file into a FileInput.

    Raises ValueError for unsupported extensions and OSError when unreadable.
    """
    name = os.path.basename(path)
    ext = os.path.splitext(name)[1].lower()
    if ext in IMAGE_EXTENSIONS:
        with open(path, "rb") as f:
            data = f.read()
        return FileInput(
            name=name,
            kind="image",
            content=base64.b64encode(data).decode("ascii"),
            mime_type=_guess_image_mime(path),
        )
    if ext in TEXT_EXTENSIONS:
        with open(path, "r", encoding="utf-8-sig", errors="replace") as f:
            text = f.read()
        return FileInput(name=name, kind="csv", content=text, mime_type="text/csv")
    raise ValueError(f"Unsupported file type for {name}")


def list_input_paths(directory: str, *, exts: Optional[Iterable[str]] = None, recursive: bool = False) -> List[str]:
    """Return sorted absolute paths of supported files in directory."""
    allowed = _normalize_extensions(exts or (IMAGE_EXTENSIONS | TEXT_EXTENSIONS))
    if recursive:
        walker = os.walk(directory)
    else:
        try:
            entries = os.listdir(directory)
        except OSError as exc:
            LOG.error("Failed to list input directory %s: %s", directory, exc)
            return []
        walker = [(directory, [], entries)]

    matches: List[str] = []
    for root, _, filenames in walker:
        for name in filenames:
            full_path = os.path.join(root, name)
            if os.path.isfile(full_path) and os.path.splitext(name)[1].lower() in allowed:
                matches.append(os.path.abspath(full_path))
    matches.sort()
    return matches
