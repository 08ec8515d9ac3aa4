import os
import subprocess
import threading
from pathlib import Path
from typing import Iterable, List, Optional

from catalog import store
from library.derive import DerivationError, Derived, Deriver


class FakeDeriver:
    """Writes a placeholder thumbnail where the real deriver would."""

    def __init__(self, cfg, fail: Iterable[str] = (), gate: Optional[threading.Event] = None):
        self._paths = Deriver(cfg)
        self.fail = set(fail)
        self.gate = gate
        self.calls: List[str] = []

    def thumbnail_path_for(self, source, media_class=None, keep_extension=False):
        return self._paths.thumbnail_path_for(source, media_class, keep_extension)

    def derive(self, source, media_class, out=None):
        source = Path(source)
        self.calls.append(source.name)
        if self.gate is not None:
            self.gate.wait(5)
        if source.name in self.fail:
            raise DerivationError(f"cannot decode {source.name}")
        out = Path(out) if out is not None else self.thumbnail_path_for(source, media_class)
        out.parent.mkdir(parents=True, exist_ok=True)
        out.write_bytes(b"\xff\xd8thumb")
        return Derived(thumbnail_path=out, width=64, height=48)


def write_file(root: Path, rel: str, data: bytes = b"data") -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    return p


def bump_mtime(p: Path, seconds: int = 10) -> None:
    st = p.stat()
    ns = st.st_mtime_ns + seconds * 1_000_000_000
    os.utime(p, ns=(ns, ns))


def add_entry(original: Path, thumb: Path, *, folder: str = "", media_type: str = store.MEDIA_PHOTO,
              mod_time_ns: int = 1_700_000_000_000_000_000, **extra) -> int:
    return store.upsert_entry(store.CatalogEntry(
        original_path=str(original),
        thumbnail_path=str(thumb),
        folder=folder,
        filename=original.name,
        extension=original.suffix.lower(),
        media_type=media_type,
        file_size=original.stat().st_size if original.exists() else 0,
        mod_time_ns=mod_time_ns,
        **extra,
    ))


def completed(cmd, returncode: int = 0, stdout="", stderr=""):
    return subprocess.CompletedProcess(cmd, returncode, stdout, stderr)
