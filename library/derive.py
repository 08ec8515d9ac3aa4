"""Thumbnail and metadata derivation through external tools.

Every conversion runs as its own process (dcraw, ImageMagick, ffmpeg/ffprobe)
so a crashing or hanging decoder cannot take the server down with it. Each
invocation is bounded by `Config.tool_timeout_seconds`.
"""
from __future__ import annotations

import json
import os
import re
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from config import Config

from .classify import MediaClass
from .logs import log, logger

THUMBNAIL_EXT = ".jpg"

_IMAGE_SIZE_RE = re.compile(r"(\d+)\s*x\s*(\d+)")


class DerivationError(Exception):
    """An external tool failed or produced no usable output."""


@dataclass
class Derived:
    thumbnail_path: Path
    width: int = 0
    height: int = 0
    duration: float = 0.0
    video_codec: str = ""
    audio_codec: str = ""
    framerate: float = 0.0


def _run(cmd: List[str], *, timeout: Optional[float] = None, binary: bool = False) -> subprocess.CompletedProcess:
    """Run one external tool to completion, capturing stdout/stderr.

    A missing executable or an expired timeout becomes DerivationError; a
    non-zero exit is returned to the caller, which decides what it means.
    """
    try:
        return subprocess.run(
            cmd,
            capture_output=True,
            text=not binary,
            timeout=timeout if timeout and timeout > 0 else None,
        )
    except subprocess.TimeoutExpired as te:
        raise DerivationError(f"{os.path.basename(cmd[0])} timed out after {timeout}s") from te
    except OSError as e:
        raise DerivationError(f"{cmd[0]}: {e}") from e


def _stderr_tail(proc: subprocess.CompletedProcess, limit: int = 400) -> str:
    err = proc.stderr or ""
    if isinstance(err, bytes):
        err = err.decode("utf-8", "replace")
    err = err.strip()
    return err[-limit:] if len(err) > limit else err


def _file_nonempty(p: Path) -> bool:
    try:
        return p.is_file() and p.stat().st_size > 0
    except OSError:
        return False


def _staging_path(out: Path) -> Path:
    # Same directory as the final thumbnail so os.replace stays atomic
    return out.with_name(f".{out.stem}.{os.getpid()}.partial{THUMBNAIL_EXT}")


def _discard(p: Path) -> None:
    try:
        os.remove(p)
    except FileNotFoundError:
        pass


def _sniff_suffix(data: bytes) -> str:
    """Pick a temp-file suffix that matches the decoded bytes."""
    if data[:2] == b"\xff\xd8":
        return ".jpg"
    if data[:4] in (b"II*\x00", b"MM\x00*"):
        return ".tif"
    if data[:2] in (b"P5", b"P6"):
        return ".ppm"
    return ".bin"


def parse_dcraw_size(report: str) -> Tuple[int, int]:
    """Extract (width, height) from the `Image size:` line of `dcraw -i -v`."""
    for line in report.splitlines():
        if line.startswith("Image size:"):
            m = _IMAGE_SIZE_RE.search(line[len("Image size:"):])
            if m:
                return int(m.group(1)), int(m.group(2))
            break
    return 0, 0


def parse_identify_size(out: str) -> Tuple[int, int]:
    parts = (out or "").split()
    if len(parts) < 2:
        raise DerivationError(f"unexpected identify output: {out!r}")
    try:
        return int(parts[0]), int(parts[1])
    except ValueError as e:
        raise DerivationError(f"unexpected identify output: {out!r}") from e


def parse_framerate(value: Optional[str]) -> float:
    """ffprobe rates come as fractions like '30000/1001'; '0/0' means unknown."""
    if not value:
        return 0.0
    try:
        if "/" in value:
            num, den = value.split("/", 1)
            d = float(den)
            return round(float(num) / d, 3) if d else 0.0
        return float(value)
    except ValueError:
        return 0.0


def parse_ffprobe(payload: dict) -> dict:
    """Summarize ffprobe JSON into duration/codecs/framerate/dimensions."""
    info = {"duration": 0.0, "video_codec": "", "audio_codec": "", "framerate": 0.0, "width": 0, "height": 0}
    fmt = payload.get("format") or {}
    try:
        info["duration"] = float(fmt.get("duration") or 0.0)
    except (TypeError, ValueError):
        info["duration"] = 0.0
    for st in payload.get("streams") or []:
        if not isinstance(st, dict):
            continue
        kind = (st.get("codec_type") or "").lower()
        if kind == "video" and not info["video_codec"]:
            info["video_codec"] = str(st.get("codec_name") or "")
            rate = parse_framerate(st.get("avg_frame_rate"))
            info["framerate"] = rate or parse_framerate(st.get("r_frame_rate"))
            try:
                info["width"] = int(st.get("width") or 0)
                info["height"] = int(st.get("height") or 0)
            except (TypeError, ValueError):
                pass
            if not info["duration"]:
                try:
                    info["duration"] = float(st.get("duration") or 0.0)
                except (TypeError, ValueError):
                    pass
        elif kind == "audio" and not info["audio_codec"]:
            info["audio_codec"] = str(st.get("codec_name") or "")
    return info


class Deriver:
    def __init__(self, config: Config) -> None:
        self.cfg = config
        self.originals_root = Path(config.originals_path).absolute()
        self.thumbnails_root = Path(config.thumbnails_path).absolute()

    @property
    def timeout(self) -> float:
        return float(self.cfg.tool_timeout_seconds)

    def thumbnail_path_for(
        self,
        source: Path,
        media_class: Optional[MediaClass] = None,
        keep_extension: bool = False,
    ) -> Path:
        """Mirror the source's relative location under the thumbnail root.

        Photos swap their extension for .jpg (IMG_1.CR2 -> IMG_1.jpg). Videos,
        and photos whose plain name is already taken by another original, keep
        their extension in the name (IMG_9.MOV -> IMG_9.mov.jpg) so a Live
        Photo pair never shares one thumbnail.
        """
        rel = Path(source).relative_to(self.originals_root)
        if keep_extension or media_class == MediaClass.VIDEO:
            return self.thumbnails_root / rel.parent / (rel.stem + rel.suffix.lower() + THUMBNAIL_EXT)
        return self.thumbnails_root / rel.with_suffix(THUMBNAIL_EXT)

    def derive(self, source: Path, media_class: MediaClass, out: Optional[Path] = None) -> Derived:
        source = Path(source)
        out = Path(out) if out is not None else self.thumbnail_path_for(source, media_class)
        out.parent.mkdir(parents=True, exist_ok=True)
        t0 = time.time()
        log("derive", "start path=%s class=%s", source, media_class.value)
        if media_class == MediaClass.RAW:
            result = self._derive_raw(source, out)
        elif media_class == MediaClass.STANDARD_IMAGE:
            result = self._derive_image(source, out)
        elif media_class == MediaClass.VIDEO:
            result = self._derive_video(source, out)
        else:
            raise DerivationError(f"cannot derive {media_class.value} file {source}")
        log(
            "derive",
            "end path=%s size=%dx%d elapsed=%.3fs",
            source, result.width, result.height, time.time() - t0,
        )
        return result

    # -- images ---------------------------------------------------------------

    def _resize(self, src: Path, out: Path) -> None:
        """Write the thumbnail to a staging file and move it over `out` only on success."""
        size = f"{self.cfg.thumbnail_size}x{self.cfg.thumbnail_size}>"
        staged = _staging_path(out)
        cmd = [
            self.cfg.convert_bin, f"{src}[0]",
            "-auto-orient",
            "-resize", size,
            "-quality", str(self.cfg.thumbnail_quality),
            str(staged),
        ]
        try:
            proc = _run(cmd, timeout=self.timeout)
            if proc.returncode != 0:
                raise DerivationError(f"convert failed ({proc.returncode}): {_stderr_tail(proc)}")
            if not _file_nonempty(staged):
                raise DerivationError(f"convert produced no output for {src}")
            os.replace(staged, out)
        finally:
            _discard(staged)

    def _identify(self, src: Path) -> Tuple[int, int]:
        proc = _run([self.cfg.identify_bin, "-format", "%w %h", f"{src}[0]"], timeout=self.timeout)
        if proc.returncode != 0:
            raise DerivationError(f"identify failed ({proc.returncode}): {_stderr_tail(proc)}")
        return parse_identify_size(proc.stdout)

    def _derive_image(self, source: Path, out: Path) -> Derived:
        self._resize(source, out)
        # Read back the thumbnail: -auto-orient may have swapped the axes
        width, height = self._identify(out)
        return Derived(thumbnail_path=out, width=width, height=height)

    def _extract_raw_preview(self, source: Path) -> bytes:
        # Embedded preview first (fast); half-size full decode as the fallback
        proc = _run([self.cfg.dcraw_bin, "-e", "-c", str(source)], timeout=self.timeout, binary=True)
        if proc.returncode == 0 and proc.stdout:
            return proc.stdout
        log("derive", "no embedded preview, decoding raw path=%s", source)
        proc = _run([self.cfg.dcraw_bin, "-c", "-w", "-h", str(source)], timeout=self.timeout, binary=True)
        if proc.returncode != 0:
            raise DerivationError(f"dcraw failed ({proc.returncode}): {_stderr_tail(proc)}")
        if not proc.stdout:
            raise DerivationError(f"dcraw produced no image data for {source}")
        return proc.stdout

    def _raw_dimensions(self, source: Path) -> Tuple[int, int]:
        try:
            proc = _run([self.cfg.dcraw_bin, "-i", "-v", str(source)], timeout=self.timeout)
        except DerivationError as e:
            logger.warning("raw metadata report failed for %s: %s", source, e)
            return 0, 0
        if proc.returncode != 0:
            return 0, 0
        return parse_dcraw_size(proc.stdout or "")

    def _derive_raw(self, source: Path, out: Path) -> Derived:
        data = self._extract_raw_preview(source)
        fd, tmp_name = tempfile.mkstemp(prefix="glimpse-", suffix=_sniff_suffix(data))
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            self._resize(Path(tmp_name), out)
        finally:
            try:
                os.remove(tmp_name)
            except FileNotFoundError:
                pass
        width, height = self._raw_dimensions(source)
        return Derived(thumbnail_path=out, width=width, height=height)

    # -- video ----------------------------------------------------------------

    def probe_video(self, source: Path) -> dict:
        """ffprobe summary; any failure yields the empty summary."""
        empty = parse_ffprobe({})
        cmd = [
            self.cfg.ffprobe_bin, "-v", "error",
            "-print_format", "json",
            "-show_format", "-show_streams",
            str(source),
        ]
        try:
            proc = _run(cmd, timeout=self.timeout)
        except DerivationError as e:
            logger.warning("ffprobe failed for %s: %s", source, e)
            return empty
        if proc.returncode != 0:
            log("derive", "ffprobe exit=%s path=%s", proc.returncode, source)
            return empty
        try:
            payload = json.loads(proc.stdout or "{}")
        except ValueError:
            return empty
        if not isinstance(payload, dict):
            return empty
        return parse_ffprobe(payload)

    def _video_quality(self) -> int:
        # JPEG-style 1..100 onto ffmpeg's mjpeg 2 (best) .. 31 (worst)
        q = int(self.cfg.thumbnail_quality)
        return max(2, min(31, round(2 + (100 - q) * 29 / 99)))

    def _grab_frame(self, source: Path, out: Path, at: float) -> subprocess.CompletedProcess:
        n = int(self.cfg.thumbnail_size)
        cmd = [
            self.cfg.ffmpeg_bin, "-y", "-v", "error",
            "-ss", f"{at:.3f}",
            "-i", str(source),
            "-frames:v", "1",
            "-vf", f"scale='min({n},iw)':'min({n},ih)':force_original_aspect_ratio=decrease",
            "-q:v", str(self._video_quality()),
            str(out),
        ]
        return _run(cmd, timeout=self.timeout)

    def _derive_video(self, source: Path, out: Path) -> Derived:
        info = self.probe_video(source)
        staged = _staging_path(out)
        try:
            proc = self._grab_frame(source, staged, 1.0)
            if proc.returncode != 0 or not _file_nonempty(staged):
                # Clips shorter than the seek point yield no frame
                _discard(staged)
                proc = self._grab_frame(source, staged, 0.0)
            if proc.returncode != 0:
                raise DerivationError(f"ffmpeg failed ({proc.returncode}): {_stderr_tail(proc)}")
            if not _file_nonempty(staged):
                raise DerivationError(f"ffmpeg produced no frame for {source}")
            os.replace(staged, out)
        finally:
            _discard(staged)
        return Derived(
            thumbnail_path=out,
            width=info["width"],
            height=info["height"],
            duration=info["duration"],
            video_codec=info["video_codec"],
            audio_codec=info["audio_codec"],
            framerate=info["framerate"],
        )


__all__ = [
    "THUMBNAIL_EXT",
    "DerivationError",
    "Derived",
    "Deriver",
    "parse_dcraw_size",
    "parse_identify_size",
    "parse_framerate",
    "parse_ffprobe",
]
