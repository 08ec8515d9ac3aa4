"""Read-only check that every catalog entry still has a usable thumbnail."""
from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Optional

from PIL import Image, UnidentifiedImageError

from catalog import store

from .logs import log

_PAGE = 500


def thumbnail_problem(thumb: Path) -> Optional[str]:
    """Return "missing", "empty" or "corrupt" for a bad thumbnail, None if fine."""
    try:
        size = thumb.stat().st_size
    except OSError:
        return "missing"
    if size == 0:
        return "empty"
    try:
        with Image.open(thumb) as img:
            img.verify()
    except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
        return "corrupt"
    return None


def check_thumbnails(limit: Optional[int] = None) -> Dict[str, Any]:
    checked = 0
    problems: List[Dict[str, Any]] = []
    offset = 0
    while True:
        page = store.list_entries(limit=_PAGE, offset=offset)
        if not page:
            break
        for entry in page:
            if limit is not None and checked >= limit:
                break
            checked += 1
            problem = thumbnail_problem(Path(entry.thumbnail_path))
            if problem:
                problems.append({"id": entry.id, "original_path": entry.original_path, "problem": problem})
        if limit is not None and checked >= limit:
            break
        offset += len(page)
    log("catalog", "integrity checked=%d problems=%d", checked, len(problems))
    return {"checked": checked, "ok": checked - len(problems), "problems": problems}


__all__ = ["check_thumbnails", "thumbnail_problem"]
