from __future__ import annotations
import os
import sys
import hmac
import shutil
import stat
import logging
from contextlib import asynccontextmanager
from importlib import metadata as _importlib_metadata
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, Optional, Tuple
from urllib.parse import quote

from fastapi import FastAPI, APIRouter, HTTPException, Query, Request
from fastapi.responses import FileResponse, JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response, StreamingResponse

import catalog
from catalog import store
from config import Config, load_config
from library.logs import log
from library.sync import SyncEngine, ScanAlreadyRunning
from tools.scan_worker import ScanWorker

# Global server state: config, engine and scheduler. Handlers read, lifespan writes.
STATE: Dict[str, Any] = {}
STATE["config_path"] = os.environ.get("GLIMPSE_CONFIG", "config.json")
STATE["config"] = load_config(STATE["config_path"])
STATE.setdefault("engine", None)
STATE.setdefault("worker", None)
STATE.setdefault("scan_worker_enabled", os.environ.get("SCAN_ON_START", "1").lower() not in ("0", "false", "no"))

CACHE_LONG = "public, max-age=86400"
CHUNK_SIZE = 1024 * 1024

VIDEO_CONTENT_TYPES = {
    ".mp4": "video/mp4",
    ".m4v": "video/mp4",
    ".mov": "video/quicktime",
    ".webm": "video/webm",
    ".mkv": "video/x-matroska",
    ".avi": "video/x-msvideo",
    ".wmv": "video/x-ms-wmv",
    ".flv": "video/x-flv",
}


def cfg() -> Config:
    return STATE["config"]


def engine() -> SyncEngine:
    eng = STATE.get("engine")
    if eng is None:
        eng = SyncEngine(cfg())
        STATE["engine"] = eng
    return eng


def _module_version(name: str) -> Optional[str]:
    try:
        return _importlib_metadata.version(name)
    except _importlib_metadata.PackageNotFoundError:
        return None


def tool_available(binary: str) -> bool:
    return bool(shutil.which(binary))


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data})


def _safe_int(x):
    try:
        return int(x)
    except (TypeError, ValueError):
        return None


# Lifespan: open the catalog, build the engine and start the periodic scanner
@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    c = cfg()
    catalog.initialize(c.database_path)
    eng = engine()
    if not c.api_key:
        logging.getLogger("glimpse").warning("[startup] no api_key configured; the API is open")
    log("scan", "startup originals=%s thumbnails=%s db=%s", c.originals_path, c.thumbnails_path, c.database_path)
    worker: Optional[ScanWorker] = None
    if STATE.get("scan_worker_enabled"):
        worker = ScanWorker(run_pass=eng.run, interval=c.scan_interval_seconds, on_busy=ScanAlreadyRunning)
        worker.start()
        STATE["worker"] = worker
    try:
        yield
    finally:
        if worker is not None:
            worker.stop(timeout=c.shutdown_grace_seconds or None)
            STATE["worker"] = None


app = FastAPI(title="Glimpse", version="1.0", lifespan=lifespan)
api = APIRouter(prefix="/api")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        return JSONResponse(exc.detail, status_code=exc.status_code, headers=getattr(exc, "headers", None))
    return JSONResponse({"status": "error", "message": str(exc.detail)}, status_code=exc.status_code)


@app.middleware("http")
async def api_key_middleware(request: Request, call_next):
    """Require X-API-Key on /api routes when an api_key is configured."""
    expected = cfg().api_key or ""
    if expected and request.url.path.startswith("/api") and request.method != "OPTIONS":
        provided = request.headers.get("x-api-key") or ""
        if not hmac.compare_digest(provided.encode("utf-8"), expected.encode("utf-8")):
            return api_error("unauthorized", status_code=401)
    return await call_next(request)


# Added after the key check so it wraps it: 401s and preflights still carry CORS headers
app.add_middleware(
    CORSMiddleware,
    allow_origins=list(cfg().cors_origins or ["*"]),
    allow_credentials=False,
    allow_methods=["GET", "POST", "OPTIONS"],
    allow_headers=["Content-Type", "X-API-Key"],
)


# -----------------------------
# Media delivery
# -----------------------------
class RangeNotSatisfiable(Exception):
    pass


def content_type_for(filename: str) -> str:
    return VIDEO_CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """Parse a single `bytes=` range into inclusive (start, end).

    Returns None when the header is absent, malformed or asks for several
    ranges (the caller then sends the whole file). Raises RangeNotSatisfiable
    when the range lies outside the file.
    """
    if not header:
        return None
    unit, _, ranges = header.partition("=")
    if unit.strip().lower() != "bytes" or not ranges.strip():
        return None
    if "," in ranges:
        return None
    start_s, sep, end_s = ranges.strip().partition("-")
    if not sep:
        return None
    start_s, end_s = start_s.strip(), end_s.strip()
    try:
        if start_s == "":
            # Suffix range: the last N bytes
            if end_s == "":
                return None
            n = int(end_s)
            if n <= 0 or size == 0:
                raise RangeNotSatisfiable()
            return max(0, size - n), size - 1
        start = int(start_s)
        end = int(end_s) if end_s else size - 1
    except ValueError:
        return None
    if start < 0:
        return None
    if start >= size:
        raise RangeNotSatisfiable()
    if end < start:
        return None
    return start, min(end, size - 1)


def _open_or_404(path: Path) -> Tuple[BinaryIO, int]:
    try:
        fh = open(path, "rb")
    except FileNotFoundError:
        raise_api_error("File not found", status_code=404)
    except IsADirectoryError:
        raise_api_error("File not found", status_code=404)
    except OSError as e:
        raise_api_error(f"File not readable: {e}", status_code=500)
    try:
        size = os.fstat(fh.fileno()).st_size
    except OSError as e:
        fh.close()
        raise_api_error(f"File not readable: {e}", status_code=500)
    return fh, size


def _file_chunks(fh: BinaryIO, start: int, end: int) -> Iterator[bytes]:
    try:
        fh.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = fh.read(min(CHUNK_SIZE, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data
    finally:
        fh.close()


def _attachment(filename: str) -> str:
    quoted = quote(filename)
    if quoted != filename:
        return f"attachment; filename*=utf-8''{quoted}"
    return f'attachment; filename="{filename}"'


def _serve_whole(path: Path, content_type: str, headers: Optional[Dict[str, str]] = None):
    p = Path(path)
    try:
        st = p.stat()
    except OSError:
        raise_api_error("File not found", status_code=404)
    if not stat.S_ISREG(st.st_mode):
        raise_api_error("File not found", status_code=404)
    log("delivery", "whole path=%s size=%d ct=%s", p, st.st_size, content_type)
    return FileResponse(
        str(p),
        media_type=content_type,
        headers={"Cache-Control": CACHE_LONG, **(headers or {})},
        stat_result=st,
    )


def _serve_range(request: Request, path: Path, filename: str, headers: Optional[Dict[str, str]] = None):
    fh, size = _open_or_404(Path(path))
    media_type = content_type_for(filename)
    base = {"Accept-Ranges": "bytes", "Cache-Control": CACHE_LONG, **(headers or {})}
    try:
        rng = parse_range(request.headers.get("range"), size)
    except RangeNotSatisfiable:
        fh.close()
        log("delivery", "range 416 path=%s range=%s size=%d", path, request.headers.get("range"), size)
        return Response(status_code=416, headers={**base, "Content-Range": f"bytes */{size}"})
    if rng is None:
        log("delivery", "range 200 path=%s size=%d ct=%s", path, size, media_type)
        return StreamingResponse(
            _file_chunks(fh, 0, size - 1),
            status_code=200,
            media_type=media_type,
            headers={**base, "Content-Length": str(size)},
        )
    start, end = rng
    log("delivery", "range 206 path=%s %d-%d/%d ct=%s", path, start, end, size, media_type)
    return StreamingResponse(
        _file_chunks(fh, start, end),
        status_code=206,
        media_type=media_type,
        headers={
            **base,
            "Content-Range": f"bytes {start}-{end}/{size}",
            "Content-Length": str(end - start + 1),
        },
    )


def _entry_or_404(photo_id: str) -> store.CatalogEntry:
    pid = _safe_int(photo_id)
    if pid is None:
        raise_api_error("Invalid ID", status_code=400)
    entry = store.get_by_id(pid)
    if entry is None:
        raise_api_error("Photo not found", status_code=404)
    return entry


# -----------------------------
# API
# -----------------------------
@api.get("/health")
def health():
    eng = STATE.get("engine")
    return api_success({"ok": True, "scan_running": bool(eng and eng.is_running)})


@api.get("/config")
def config_info():
    """Effective configuration (api_key redacted) plus external tool availability."""
    c = cfg()
    data = c.model_dump(mode="json")
    data["api_key"] = bool(c.api_key)
    return api_success({
        "config": data,
        "config_path": STATE.get("config_path"),
        "deps": {
            "dcraw": tool_available(c.dcraw_bin),
            "convert": tool_available(c.convert_bin),
            "identify": tool_available(c.identify_bin),
            "ffmpeg": tool_available(c.ffmpeg_bin),
            "ffprobe": tool_available(c.ffprobe_bin),
        },
        "versions": {
            "fastapi": _module_version("fastapi"),
            "pydantic": _module_version("pydantic"),
            "pillow": _module_version("Pillow"),
        },
        "version": app.version,
    })


@api.get("/photos")
def list_photos(
    folder: str = Query(default=""),
    media_type: str = Query(default=""),
    limit: Optional[str] = Query(default=None),
    offset: Optional[str] = Query(default=None),
):
    lim = _safe_int(limit) or 0
    if lim <= 0 or lim > 1000:
        lim = 100
    off = max(0, _safe_int(offset) or 0)
    entries = store.list_entries(folder=folder, media_type=media_type, limit=lim, offset=off)
    return api_success([e.to_json() for e in entries])


@api.get("/photos/{photo_id}")
def get_photo(photo_id: str):
    return api_success(_entry_or_404(photo_id).to_json())


@api.get("/photos/{photo_id}/thumbnail")
def get_thumbnail(photo_id: str):
    entry = _entry_or_404(photo_id)
    return _serve_whole(Path(entry.thumbnail_path), "image/jpeg")


@api.get("/photos/{photo_id}/original")
def get_original(photo_id: str, request: Request):
    entry = _entry_or_404(photo_id)
    disposition = {"Content-Disposition": _attachment(entry.filename)}
    if entry.is_video:
        return _serve_range(request, Path(entry.original_path), entry.filename, disposition)
    return _serve_whole(Path(entry.original_path), "application/octet-stream", disposition)


@api.get("/photos/{photo_id}/stream")
def stream_video(photo_id: str, request: Request):
    entry = _entry_or_404(photo_id)
    if not entry.is_video:
        raise_api_error("Not a video", status_code=400)
    return _serve_range(request, Path(entry.original_path), entry.filename)


@api.get("/folders")
def list_folders():
    return api_success([{"path": f.path, "photo_count": f.photo_count} for f in store.list_folders()])


@api.get("/stats")
def get_stats():
    s = store.get_stats()
    return api_success({
        "total_photos": s.total_photos,
        "total_videos": s.total_videos,
        "total_folders": s.total_folders,
        "total_original_mb": s.total_original_mb,
    })


@api.post("/scan")
def trigger_scan():
    if not engine().trigger():
        return api_error("Scan already running", status_code=409, data={"state": "already_running"})
    return api_success({"state": "started"}, message="Scan started", status_code=202)


@api.get("/scan")
def scan_status():
    eng = engine()
    last = eng.last_summary
    return api_success({"running": eng.is_running, "last": last.to_json() if last else None})


app.include_router(api)


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except ImportError:
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        sys.exit(1)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s %(message)s")
    c = cfg()
    uvicorn.run(
        app,
        host=c.host,
        port=int(c.port),
        timeout_graceful_shutdown=int(c.shutdown_grace_seconds) or None,
    )
