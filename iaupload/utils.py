"""Cross-cutting helpers: constants, page naming, JSON I/O."""

from __future__ import annotations

import json
import os
import re
from pathlib import Path
from typing import Any, Iterable

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

JOB_FILE_NAME = "job.json"
LOCK_FILE_NAME = "lock"
LOG_FILE_NAME = "log.txt"
METADATA_FILE_NAME = "metadata.json"
BUILD_DIR_NAME = "build"

RETENTION_DAYS = 7
STALE_AFTER_HOURS = 24
MAX_PAGE_DIMENSION = 1500
POLL_INTERVAL_S = 5.0
UPLOAD_CHUNK_SIZE = 90 * 1024 * 1024

UPLOAD_COMMENT = (
    "Imported from Internet Archive by "
    "the [[wikitech:Tool:IA Upload|IA Upload tool]] job queue"
)

PDF_FORMATS = ("Text PDF", "Additional Text PDF", "Image Container PDF")

_ITEM_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")
_DIGITS_RE = re.compile(r"(\d+)")
_TARGET_EXT_RE = re.compile(r"\.(pdf|djvu)$", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Identifiers and names
# ---------------------------------------------------------------------------


def is_safe_item_id(item_id: str) -> bool:
    """Archive identifiers double as directory names; reject anything path-like."""
    return bool(item_id) and item_id not in (".", "..") and bool(_ITEM_ID_RE.match(item_id))


def page_file_name(item_id: str, index: int, ext: str) -> str:
    """Deterministic intermediate name ``<itemId>_p<index>.<ext>``."""
    return f"{item_id}_p{index}.{ext}"


def page_sort_key(path: Path) -> tuple[Any, ...]:
    """Order page files by the numbers in their names rather than lexically.

    ``scan_2.jp2`` sorts before ``scan_10.jp2``.
    """
    parts = _DIGITS_RE.split(path.name)
    # The capture group puts digit runs at odd indices.
    return tuple(int(p) if i % 2 else p for i, p in enumerate(parts))


def sorted_pages(paths: Iterable[Path]) -> list[Path]:
    return sorted(paths, key=page_sort_key)


def strip_target_extension(name: str) -> str:
    """Trim whitespace and drop a trailing ``.pdf`` / ``.djvu``."""
    return _TARGET_EXT_RE.sub("", name.strip())


# ---------------------------------------------------------------------------
# Archive metadata
# ---------------------------------------------------------------------------


def select_source_file(metadata: dict[str, Any], file_type: str) -> str | None:
    """Pick the remote file path (``/name.ext``) to use for *file_type*."""
    files: dict[str, dict[str, Any]] = metadata.get("files") or {}
    if file_type == "pdf":
        largest_path = None
        largest_size = 0
        for file_path, info in files.items():
            size = int(info.get("size") or 0)
            if info.get("format") in PDF_FORMATS and size > largest_size:
                largest_path = file_path
                largest_size = size
        return largest_path
    if file_type == "djvu":
        for file_path, info in files.items():
            if info.get("format") == "DjVu":
                return file_path
        return None
    if file_type == "jp2":
        # A page-image archive is only usable with its OCR layer alongside.
        jp2 = [name for name in files if name.endswith("_jp2.zip")]
        xml = [name for name in files if name.endswith("_djvu.xml")]
        if jp2 and xml:
            return jp2[0]
    return None


# ---------------------------------------------------------------------------
# JSON I/O
# ---------------------------------------------------------------------------


def read_json(path: Path) -> Any:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


def write_json(path: Path, data: Any) -> Path:
    """Write *data* via a ``.part`` file so a crash never leaves a truncated file."""
    partial = path.with_name(path.name + ".part")
    with open(partial, "w", encoding="utf-8") as fh:
        json.dump(data, fh, indent=2, ensure_ascii=False, default=str)
    os.replace(partial, path)
    return path
