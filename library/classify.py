"""Map file names to media classes and detect RAW companions."""
from __future__ import annotations

import os
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Set, Union

STANDARD_IMAGE_EXTS = frozenset({".jpg", ".jpeg", ".png", ".tif", ".tiff"})

# Synology thumbnail/metadata folders and similar NAS droppings
_IGNORED_NAMES = frozenset({"@eaDir", "#recycle", "$RECYCLE.BIN"})


class MediaClass(str, Enum):
    IGNORE = "ignore"
    RAW = "raw"
    STANDARD_IMAGE = "standard_image"
    VIDEO = "video"
    UNSUPPORTED = "unsupported"


def is_hidden_name(name: str) -> bool:
    """Dot-files (including AppleDouble '._' resource forks) and NAS metadata dirs."""
    return name.startswith(".") or name in _IGNORED_NAMES


class Classifier:
    def __init__(self, image_extensions: Iterable[str], video_extensions: Iterable[str]) -> None:
        self.image_exts: Set[str] = {e.lower() for e in image_extensions}
        self.video_exts: Set[str] = {e.lower() for e in video_extensions}
        self.raw_exts: Set[str] = self.image_exts - STANDARD_IMAGE_EXTS

    def classify(self, path: Union[str, Path]) -> MediaClass:
        name = os.path.basename(str(path))
        if is_hidden_name(name):
            return MediaClass.IGNORE
        ext = os.path.splitext(name)[1].lower()
        if ext in self.image_exts:
            if ext in STANDARD_IMAGE_EXTS:
                return MediaClass.STANDARD_IMAGE
            return MediaClass.RAW
        if ext in self.video_exts:
            return MediaClass.VIDEO
        return MediaClass.UNSUPPORTED

    def has_raw_companion(self, path: Union[str, Path], siblings: Optional[Iterable[str]] = None) -> bool:
        """True when a RAW file with the same base name sits next to `path`.

        With `siblings` (the directory's file names) the match is a
        case-insensitive lookup; without it the filesystem is probed for the
        lower- and upper-case spelling of every RAW extension.
        """
        p = Path(path)
        stem = p.stem
        if siblings is not None:
            wanted = {(stem + ext).lower() for ext in self.raw_exts}
            return any(s.lower() in wanted for s in siblings if s != p.name)
        for ext in self.raw_exts:
            for variant in (ext, ext.upper()):
                if (p.parent / (stem + variant)).is_file():
                    return True
        return False


__all__ = ["MediaClass", "Classifier", "STANDARD_IMAGE_EXTS", "is_hidden_name"]
