"""Library synchronization passes.

A pass reconciles orphans, walks the originals tree and derives a thumbnail
for every new or modified file. The (path, mtime) pair is the only staleness
signal; contents are never hashed.

Only one pass runs at a time. `SyncEngine.trigger()` never waits: when a pass
is already running it reports so and returns.
"""
from __future__ import annotations

import os
import stat
import threading
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from catalog import store
from config import Config

from .classify import Classifier, MediaClass, is_hidden_name
from .derive import Derived, Deriver
from .logs import log, logger


class SyncError(Exception):
    """A pass could not run at all (originals or thumbnail root unusable)."""


class ScanAlreadyRunning(Exception):
    """Raised by SyncEngine.run() when another pass holds the lock."""


class FileOutcome(str, Enum):
    DERIVED = "derived"
    UNCHANGED = "unchanged"
    SKIPPED = "skipped"
    SUPPRESSED = "suppressed"
    FAILED = "failed"


class DeriverLike(Protocol):
    def thumbnail_path_for(
        self, source: Path, media_class: Optional[MediaClass] = None, keep_extension: bool = False
    ) -> Path: ...

    def derive(self, source: Path, media_class: MediaClass, out: Optional[Path] = None) -> Derived: ...


@dataclass
class PassSummary:
    started_at: float = field(default_factory=time.time)
    finished_at: float = 0.0
    derived: int = 0
    unchanged: int = 0
    skipped: int = 0
    suppressed: int = 0
    failed: int = 0
    orphans_removed: int = 0
    cleanup_failures: int = 0
    deadline_exceeded: bool = False
    error: Optional[str] = None
    failures: List[str] = field(default_factory=list)

    # Keep the failure list bounded; counts stay exact
    MAX_FAILURES = 100

    def record(self, outcome: FileOutcome, path: Optional[str] = None) -> None:
        setattr(self, outcome.value, getattr(self, outcome.value) + 1)
        if outcome == FileOutcome.FAILED and path and len(self.failures) < self.MAX_FAILURES:
            self.failures.append(path)

    @property
    def elapsed(self) -> float:
        end = self.finished_at or time.time()
        return max(0.0, end - self.started_at)

    def to_json(self) -> Dict:
        data = asdict(self)
        data["elapsed"] = round(self.elapsed, 3)
        return data


def _is_regular(st: os.stat_result) -> bool:
    return stat.S_ISREG(st.st_mode)


def _folder_of(rel_dir: str) -> str:
    if rel_dir in ("", "."):
        return ""
    return rel_dir.replace(os.sep, "/")


class SyncEngine:
    def __init__(
        self,
        config: Config,
        classifier: Optional[Classifier] = None,
        deriver: Optional[DeriverLike] = None,
    ) -> None:
        self.cfg = config
        self.originals_root = Path(config.originals_path).absolute()
        self.thumbnails_root = Path(config.thumbnails_path).absolute()
        self.classifier = classifier or Classifier(config.raw_extensions, config.video_extensions)
        self.deriver = deriver or Deriver(config)
        self._lock = threading.Lock()
        self._last: Optional[PassSummary] = None
        self._thread: Optional[threading.Thread] = None

    # -- single flight ----------------------------------------------------------

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    @property
    def last_summary(self) -> Optional[PassSummary]:
        return self._last

    def run(self) -> PassSummary:
        """Run one pass on the calling thread.

        Raises ScanAlreadyRunning when a pass is active and SyncError when the
        pass cannot start.
        """
        if not self._lock.acquire(blocking=False):
            raise ScanAlreadyRunning("a synchronization pass is already running")
        try:
            return self._run_pass()
        finally:
            self._lock.release()

    def trigger(self) -> bool:
        """Start a pass on a background thread. False if one is already running."""
        if not self._lock.acquire(blocking=False):
            return False
        try:
            th = threading.Thread(target=self._run_and_release, name="sync-pass", daemon=True)
            self._thread = th
            th.start()
        except Exception:
            self._lock.release()
            raise
        return True

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Join the last triggered pass thread. True when it has finished."""
        th = self._thread
        if th is None:
            return True
        th.join(timeout)
        return not th.is_alive()

    def _run_and_release(self) -> None:
        try:
            self._run_pass()
        except SyncError as e:
            logger.error("sync pass failed: %s", e)
        except Exception:
            logger.exception("sync pass crashed")
        finally:
            self._lock.release()

    # -- the pass -----------------------------------------------------------------

    def _run_pass(self) -> PassSummary:
        summary = PassSummary()
        log("scan", "pass start originals=%s thumbnails=%s", self.originals_root, self.thumbnails_root)
        try:
            self._check_roots()
            self._reconcile_orphans(summary)
            self._walk(summary)
        except SyncError as e:
            summary.error = str(e)
            raise
        finally:
            summary.finished_at = time.time()
            self._last = summary
            log(
                "scan",
                "pass end derived=%d unchanged=%d skipped=%d suppressed=%d failed=%d "
                "orphans=%d deadline=%s error=%s elapsed=%.3fs",
                summary.derived, summary.unchanged, summary.skipped, summary.suppressed,
                summary.failed, summary.orphans_removed, int(summary.deadline_exceeded),
                summary.error or "none", summary.elapsed,
            )
        return summary

    def _check_roots(self) -> None:
        try:
            self.thumbnails_root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise SyncError(f"failed to create thumbnails directory {self.thumbnails_root}: {e}") from e
        try:
            with os.scandir(self.originals_root):
                pass
        except OSError as e:
            raise SyncError(f"originals directory {self.originals_root} is not accessible: {e}") from e

    def _remove_thumbnail(self, thumb: str) -> None:
        # Another row may still point at it
        if store.thumbnail_in_use(thumb):
            return
        try:
            os.remove(thumb)
        except OSError:
            pass

    def _reconcile_orphans(self, summary: PassSummary) -> None:
        try:
            pairs = store.all_original_paths()
        except Exception as e:
            logger.error("orphan cleanup skipped, cannot list catalog: %s", e)
            return
        for original, thumb in pairs:
            try:
                os.stat(original)
                continue
            except (FileNotFoundError, NotADirectoryError):
                pass
            except OSError as e:
                log("scan", "orphan check skipped path=%s err=%s", original, e)
                continue
            try:
                store.delete_entry(original)
            except Exception as e:
                summary.cleanup_failures += 1
                logger.warning("failed to remove catalog entry for %s: %s", original, e)
                continue
            summary.orphans_removed += 1
            self._remove_thumbnail(thumb)
        if summary.orphans_removed:
            log("scan", "cleanup removed %d orphaned entries", summary.orphans_removed)

    def _deadline(self) -> Optional[float]:
        secs = int(self.cfg.pass_deadline_seconds or 0)
        return time.monotonic() + secs if secs > 0 else None

    def _walk(self, summary: PassSummary) -> None:
        deadline = self._deadline()

        def _onerror(err: OSError) -> None:
            logger.warning("error accessing %s: %s", getattr(err, "filename", "?"), err)

        for dirpath, dirnames, filenames in os.walk(self.originals_root, topdown=True, onerror=_onerror):
            here = Path(dirpath)
            dirnames[:] = sorted(
                d for d in dirnames
                if not is_hidden_name(d) and (here / d) != self.thumbnails_root
            )
            rel_dir = os.path.relpath(dirpath, self.originals_root)
            folder = _folder_of(rel_dir)
            for name in sorted(filenames):
                if deadline is not None and time.monotonic() > deadline:
                    summary.deadline_exceeded = True
                    logger.warning(
                        "pass deadline of %ss exceeded, stopping walk at %s",
                        self.cfg.pass_deadline_seconds, here / name,
                    )
                    return
                path = here / name
                try:
                    outcome = self._process_file(path, folder, filenames)
                except Exception as e:
                    outcome = FileOutcome.FAILED
                    logger.warning("error processing %s: %s", path, e)
                summary.record(outcome, str(path))

    def _process_file(self, path: Path, folder: str, siblings: Iterable[str]) -> FileOutcome:
        media_class = self.classifier.classify(path)
        if media_class in (MediaClass.IGNORE, MediaClass.UNSUPPORTED):
            return FileOutcome.SKIPPED
        if media_class == MediaClass.STANDARD_IMAGE and self.classifier.has_raw_companion(path, siblings):
            self._drop_suppressed(path)
            return FileOutcome.SUPPRESSED
        st = os.stat(path)
        if not _is_regular(st):
            return FileOutcome.SKIPPED
        original = str(path)
        if store.entry_exists(original, st.st_mtime_ns):
            return FileOutcome.UNCHANGED
        log("scan", "processing %s", original)
        previous = store.get_by_path(original)
        out = self._thumbnail_for(path, media_class)
        derived = self.deriver.derive(path, media_class, out)
        store.upsert_entry(
            store.CatalogEntry(
                original_path=original,
                thumbnail_path=str(derived.thumbnail_path),
                folder=folder,
                filename=path.name,
                extension=path.suffix.lower(),
                media_type=store.MEDIA_VIDEO if media_class == MediaClass.VIDEO else store.MEDIA_PHOTO,
                file_size=int(st.st_size),
                mod_time_ns=int(st.st_mtime_ns),
                width=derived.width,
                height=derived.height,
                duration=derived.duration,
                video_codec=derived.video_codec,
                audio_codec=derived.audio_codec,
                framerate=derived.framerate,
            )
        )
        if previous is not None and previous.thumbnail_path != str(derived.thumbnail_path):
            self._remove_thumbnail(previous.thumbnail_path)
        return FileOutcome.DERIVED

    def _thumbnail_for(self, path: Path, media_class: MediaClass) -> Path:
        """Plain mirrored name unless another original already owns it."""
        out = self.deriver.thumbnail_path_for(path, media_class)
        if store.thumbnail_taken(str(out), str(path)):
            out = self.deriver.thumbnail_path_for(path, media_class, keep_extension=True)
        return out

    def _drop_suppressed(self, path: Path) -> None:
        """A JPEG catalogued before its RAW companion appeared loses its row."""
        existing = store.get_by_path(str(path))
        if existing is None:
            return
        store.delete_entry(existing.original_path)
        self._remove_thumbnail(existing.thumbnail_path)
        log("scan", "removed entry superseded by raw companion path=%s", path)


__all__ = [
    "SyncError",
    "ScanAlreadyRunning",
    "FileOutcome",
    "PassSummary",
    "SyncEngine",
]
