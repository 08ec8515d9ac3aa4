"""Catalog queries.

Pure persistence: one row per original path. Nothing here decides what is
stale or what to derive; the sync engine owns that.
"""
from __future__ import annotations

import sqlite3
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from . import session

MEDIA_PHOTO = "photo"
MEDIA_VIDEO = "video"


@dataclass
class CatalogEntry:
    original_path: str
    thumbnail_path: str
    folder: str
    filename: str
    extension: str
    file_size: int
    mod_time_ns: int
    media_type: str = MEDIA_PHOTO
    # Derived attributes: 0 / "" means "not determined"
    width: int = 0
    height: int = 0
    duration: float = 0.0
    video_codec: str = ""
    audio_codec: str = ""
    framerate: float = 0.0
    id: Optional[int] = None
    created_at: Optional[str] = None

    @property
    def is_video(self) -> bool:
        return self.media_type == MEDIA_VIDEO

    def to_json(self) -> Dict[str, Any]:
        data = asdict(self)
        data["mod_time"] = _ns_to_iso(self.mod_time_ns)
        del data["mod_time_ns"]
        for key in ("width", "height", "duration", "video_codec", "audio_codec", "framerate"):
            if not data[key]:
                del data[key]
        return data


@dataclass
class Folder:
    path: str
    photo_count: int


@dataclass
class Stats:
    total_photos: int
    total_videos: int
    total_folders: int
    total_original_mb: int


def _ns_to_iso(ns: int) -> str:
    return datetime.fromtimestamp(ns / 1e9, tz=timezone.utc).isoformat()


_COLUMNS = (
    "id, original_path, thumbnail_path, folder, filename, extension, media_type, "
    "file_size, mod_time_ns, width, height, duration, video_codec, audio_codec, "
    "framerate, created_at"
)


def _row_to_entry(row: sqlite3.Row) -> CatalogEntry:
    return CatalogEntry(
        id=int(row["id"]),
        original_path=row["original_path"],
        thumbnail_path=row["thumbnail_path"],
        folder=row["folder"],
        filename=row["filename"],
        extension=row["extension"],
        media_type=row["media_type"],
        file_size=int(row["file_size"]),
        mod_time_ns=int(row["mod_time_ns"]),
        width=int(row["width"] or 0),
        height=int(row["height"] or 0),
        duration=float(row["duration"] or 0.0),
        video_codec=row["video_codec"] or "",
        audio_codec=row["audio_codec"] or "",
        framerate=float(row["framerate"] or 0.0),
        created_at=row["created_at"],
    )


def upsert_entry(entry: CatalogEntry) -> int:
    """Insert a new row or update the existing row for the same original path.

    created_at is only set on first insert. Returns the row id.
    """
    with session() as conn:
        conn.execute(
            """
            INSERT INTO photos (
                original_path, thumbnail_path, folder, filename, extension, media_type,
                file_size, mod_time_ns, width, height, duration, video_codec,
                audio_codec, framerate
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(original_path) DO UPDATE SET
                thumbnail_path = excluded.thumbnail_path,
                folder = excluded.folder,
                filename = excluded.filename,
                extension = excluded.extension,
                media_type = excluded.media_type,
                file_size = excluded.file_size,
                mod_time_ns = excluded.mod_time_ns,
                width = excluded.width,
                height = excluded.height,
                duration = excluded.duration,
                video_codec = excluded.video_codec,
                audio_codec = excluded.audio_codec,
                framerate = excluded.framerate
            """,
            (
                entry.original_path, entry.thumbnail_path, entry.folder, entry.filename,
                entry.extension, entry.media_type, int(entry.file_size), int(entry.mod_time_ns),
                int(entry.width), int(entry.height), float(entry.duration),
                entry.video_codec, entry.audio_codec, float(entry.framerate),
            ),
        )
        row = conn.execute(
            "SELECT id FROM photos WHERE original_path = ?", (entry.original_path,)
        ).fetchone()
    return int(row["id"])


def entry_exists(original_path: str, mod_time_ns: int) -> bool:
    """True when a row for this path was derived from this exact mtime."""
    with session(read_only=True) as conn:
        row = conn.execute(
            "SELECT 1 FROM photos WHERE original_path = ? AND mod_time_ns = ? LIMIT 1",
            (original_path, int(mod_time_ns)),
        ).fetchone()
    return row is not None


def get_by_id(entry_id: int) -> Optional[CatalogEntry]:
    with session(read_only=True) as conn:
        row = conn.execute(f"SELECT {_COLUMNS} FROM photos WHERE id = ?", (int(entry_id),)).fetchone()
    return _row_to_entry(row) if row else None


def get_by_path(original_path: str) -> Optional[CatalogEntry]:
    with session(read_only=True) as conn:
        row = conn.execute(
            f"SELECT {_COLUMNS} FROM photos WHERE original_path = ?", (original_path,)
        ).fetchone()
    return _row_to_entry(row) if row else None


def list_entries(
    folder: str = "",
    media_type: str = "",
    limit: int = 100,
    offset: int = 0,
) -> List[CatalogEntry]:
    """Newest first. A folder filter matches the folder and everything below it."""
    query = f"SELECT {_COLUMNS} FROM photos"
    conditions: List[str] = []
    args: List[Any] = []
    if folder:
        conditions.append("(folder = ? OR folder LIKE ? ESCAPE '\\')")
        escaped = folder.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        args.extend([folder, escaped + "/%"])
    if media_type:
        conditions.append("media_type = ?")
        args.append(media_type)
    if conditions:
        query += " WHERE " + " AND ".join(conditions)
    query += " ORDER BY mod_time_ns DESC, id DESC LIMIT ? OFFSET ?"
    args.extend([int(limit), int(offset)])
    with session(read_only=True) as conn:
        rows = conn.execute(query, args).fetchall()
    return [_row_to_entry(r) for r in rows]


def list_folders() -> List[Folder]:
    with session(read_only=True) as conn:
        rows = conn.execute(
            "SELECT folder, COUNT(*) AS photo_count FROM photos GROUP BY folder ORDER BY folder"
        ).fetchall()
    return [Folder(path=r["folder"], photo_count=int(r["photo_count"])) for r in rows]


def get_stats() -> Stats:
    with session(read_only=True) as conn:
        row = conn.execute(
            """
            SELECT
                COALESCE(SUM(CASE WHEN media_type = 'photo' THEN 1 ELSE 0 END), 0) AS photos,
                COALESCE(SUM(CASE WHEN media_type = 'video' THEN 1 ELSE 0 END), 0) AS videos,
                COUNT(DISTINCT folder) AS folders,
                COALESCE(SUM(file_size), 0) / 1048576 AS mb
            FROM photos
            """
        ).fetchone()
    return Stats(
        total_photos=int(row["photos"]),
        total_videos=int(row["videos"]),
        total_folders=int(row["folders"]),
        total_original_mb=int(row["mb"]),
    )


def all_original_paths() -> List[Tuple[str, str]]:
    """Every (original_path, thumbnail_path) pair, for orphan reconciliation."""
    with session(read_only=True) as conn:
        rows = conn.execute("SELECT original_path, thumbnail_path FROM photos").fetchall()
    return [(r["original_path"], r["thumbnail_path"]) for r in rows]


def delete_entry(original_path: str) -> bool:
    with session() as conn:
        cur = conn.execute("DELETE FROM photos WHERE original_path = ?", (original_path,))
        return cur.rowcount > 0


def thumbnail_in_use(thumbnail_path: str) -> bool:
    """True while some row still points at this thumbnail file."""
    with session(read_only=True) as conn:
        row = conn.execute(
            "SELECT 1 FROM photos WHERE thumbnail_path = ? LIMIT 1", (thumbnail_path,)
        ).fetchone()
    return row is not None


def thumbnail_taken(thumbnail_path: str, original_path: str) -> bool:
    """True when a different original already owns this thumbnail path."""
    with session(read_only=True) as conn:
        row = conn.execute(
            "SELECT 1 FROM photos WHERE thumbnail_path = ? AND original_path != ? LIMIT 1",
            (thumbnail_path, original_path),
        ).fetchone()
    return row is not None


def count_entries() -> int:
    with session(read_only=True) as conn:
        row = conn.execute("SELECT COUNT(*) AS n FROM photos").fetchone()
    return int(row["n"])


__all__ = [
    "MEDIA_PHOTO",
    "MEDIA_VIDEO",
    "CatalogEntry",
    "Folder",
    "Stats",
    "upsert_entry",
    "entry_exists",
    "get_by_id",
    "get_by_path",
    "list_entries",
    "list_folders",
    "get_stats",
    "all_original_paths",
    "delete_entry",
    "thumbnail_in_use",
    "thumbnail_taken",
    "count_entries",
]
