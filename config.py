"""Server configuration: JSON file with defaults, overlaid by environment."""
from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError, field_validator


class ConfigError(Exception):
    """Raised when the configuration file cannot be parsed or validated."""


def default_raw_extensions() -> List[str]:
    return [
        ".cr2", ".cr3", ".nef", ".nrw", ".arw", ".srf", ".sr2", ".orf", ".pef",
        ".raf", ".rw2", ".dng", ".raw", ".rwl", ".3fr", ".fff", ".iiq",
        ".jpg", ".jpeg", ".png", ".tif", ".tiff",
    ]


def default_video_extensions() -> List[str]:
    return [".mp4", ".mov", ".mkv", ".avi", ".webm", ".m4v", ".wmv", ".flv"]


def _normalize_exts(values: List[str]) -> List[str]:
    out: List[str] = []
    for part in values:
        s = str(part).strip().lower()
        if not s:
            continue
        if not s.startswith("."):
            s = "." + s
        if s not in out:
            out.append(s)
    return out


class Config(BaseModel):
    originals_path: Path = Path("/pool/photos/originals")
    thumbnails_path: Path = Path("/pool/thumbnails")
    database_path: Path = Path("/pool/thumbnails/glimpse.db")
    host: str = "0.0.0.0"
    port: int = Field(8080, gt=0, lt=65536)
    scan_interval_seconds: int = Field(3600, gt=0)
    thumbnail_size: int = Field(800, gt=0)
    thumbnail_quality: int = Field(85, ge=1, le=100)
    raw_extensions: List[str] = Field(default_factory=default_raw_extensions)
    video_extensions: List[str] = Field(default_factory=default_video_extensions)
    api_key: str = ""
    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    # Per external-tool invocation; 0 disables the limit.
    tool_timeout_seconds: int = Field(600, ge=0)
    # Checked between files; 0 disables the deadline.
    pass_deadline_seconds: int = Field(6 * 3600, ge=0)
    # Bounds both uvicorn's request drain and the scan thread join; 0 means no limit.
    shutdown_grace_seconds: int = Field(30, ge=0)
    dcraw_bin: str = "dcraw"
    convert_bin: str = "convert"
    identify_bin: str = "identify"
    ffmpeg_bin: str = "ffmpeg"
    ffprobe_bin: str = "ffprobe"

    @field_validator("raw_extensions", "video_extensions")
    @classmethod
    def _exts(cls, v: List[str]) -> List[str]:
        return _normalize_exts(v)

    @field_validator("originals_path", "thumbnails_path", "database_path")
    @classmethod
    def _expand(cls, v: Path) -> Path:
        return Path(v).expanduser()


# Environment variable -> config field
_ENV_OVERRIDES = {
    "ORIGINALS_PATH": "originals_path",
    "THUMBNAILS_PATH": "thumbnails_path",
    "DATABASE_PATH": "database_path",
    "API_KEY": "api_key",
    "HOST": "host",
    "PORT": "port",
    "SCAN_INTERVAL": "scan_interval_seconds",
    "TOOL_TIMEOUT": "tool_timeout_seconds",
}


# Fields where 0 is meaningful (it disables the limit) rather than "unset"
_ZERO_ALLOWED = frozenset({"tool_timeout_seconds", "pass_deadline_seconds", "shutdown_grace_seconds"})


def _drop_empty(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Zero values ("" / 0 / [] / null) mean "use the default", bar _ZERO_ALLOWED."""
    out: Dict[str, Any] = {}
    for k, v in raw.items():
        if v is None or v == "" or v == []:
            continue
        if v == 0 and not isinstance(v, bool) and k not in _ZERO_ALLOWED:
            continue
        out[k] = v
    return out


def load_config(path: Union[str, Path, None] = None, *, env: Optional[Dict[str, str]] = None) -> Config:
    """Load configuration from a JSON file.

    A missing file yields the defaults. Values that are empty or zero fall back
    to their defaults, except the timeouts where 0 means "no limit".
    Environment overrides are applied last.
    """
    raw: Dict[str, Any] = {}
    if path is not None:
        p = Path(path).expanduser()
        if p.exists():
            try:
                raw = json.loads(p.read_text(encoding="utf-8") or "{}")
            except (OSError, ValueError) as e:
                raise ConfigError(f"failed to read config {p}: {e}") from e
            if not isinstance(raw, dict):
                raise ConfigError(f"config {p} must contain a JSON object")
    # Accept the legacy key spelled in seconds for the scan interval
    if "scan_interval" in raw and "scan_interval_seconds" not in raw:
        raw["scan_interval_seconds"] = raw.pop("scan_interval")
    merged = _drop_empty(raw)
    environ = os.environ if env is None else env
    for name, field in _ENV_OVERRIDES.items():
        val = environ.get(name)
        if val is not None and str(val).strip() != "":
            merged[field] = val.strip()
    try:
        return Config(**merged)
    except ValidationError as e:
        raise ConfigError(str(e)) from e


def save_example(cfg: Config, path: Union[str, Path]) -> Path:
    """Write the configuration as indented JSON (handy as a starting template)."""
    out = Path(path).expanduser()
    out.parent.mkdir(parents=True, exist_ok=True)
    out.write_text(json.dumps(cfg.model_dump(mode="json"), indent=2) + "\n", encoding="utf-8")
    return out


__all__ = [
    "Config",
    "ConfigError",
    "default_raw_extensions",
    "default_video_extensions",
    "load_config",
    "save_example",
]
