#!/usr/bin/env python3
"""
CLI to synchronize the catalog without running the server.

Runs one pass over the originals tree (orphan cleanup, then thumbnail
derivation for new or modified files) and prints the pass summary as JSON.

Usage:
    python tools/artifacts.py --config config.json
    python tools/artifacts.py --config config.json --check [--limit 1000]
    python tools/artifacts.py --write-example config.example.json

Notes:
- Environment overrides (ORIGINALS_PATH, THUMBNAILS_PATH, DATABASE_PATH, ...)
  apply exactly as they do for the server.
- Requires dcraw, ImageMagick and ffmpeg/ffprobe on PATH for full coverage;
  files whose tool is missing are counted as failed, the pass continues.
"""

from __future__ import annotations

import argparse
import json
import logging
import os
import sys
from pathlib import Path


def _ensure_project_root() -> None:
    """
    Put the project root on sys.path so `python tools/artifacts.py` can
    import the top-level modules regardless of the working directory.
    """
    root = str(Path(__file__).resolve().parents[1])
    if root not in sys.path:
        sys.path.insert(0, root)


_ensure_project_root()

import catalog  # noqa: E402
from config import ConfigError, load_config, save_example  # noqa: E402
from library.integrity import check_thumbnails  # noqa: E402
from library.sync import SyncEngine, SyncError  # noqa: E402


def main(argv: list[str]) -> int:
    ap = argparse.ArgumentParser(description="Synchronize the photo catalog without running the server")
    ap.add_argument("--config", default=os.environ.get("GLIMPSE_CONFIG", "config.json"), help="Path to the JSON config file")
    ap.add_argument("--check", action="store_true", help="Verify catalog thumbnails instead of running a pass")
    ap.add_argument("--limit", type=int, default=None, help="With --check: stop after this many entries")
    ap.add_argument("--write-example", metavar="PATH", default=None, help="Write a config file with the effective settings and exit")
    ap.add_argument("--verbose", action="store_true", help="Log per-file progress (sets LOG_ALL=1)")
    args = ap.parse_args(argv)

    if args.verbose:
        os.environ["LOG_ALL"] = "1"
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")

    try:
        cfg = load_config(args.config)
    except ConfigError as e:
        print(f"[cli] Invalid config: {e}", file=sys.stderr)
        return 2

    if args.write_example:
        out = save_example(cfg, args.write_example)
        print(f"[cli] Wrote {out}")
        return 0

    try:
        catalog.initialize(cfg.database_path)
    except Exception as e:
        print(f"[cli] Cannot open catalog {cfg.database_path}: {e}", file=sys.stderr)
        return 1

    if args.check:
        report = check_thumbnails(limit=args.limit)
        print(json.dumps(report, indent=2))
        return 0 if not report["problems"] else 1

    engine = SyncEngine(cfg)
    try:
        summary = engine.run()
    except SyncError as e:
        print(f"[cli] Pass failed: {e}", file=sys.stderr)
        last = engine.last_summary
        if last is not None:
            print(json.dumps(last.to_json(), indent=2))
        return 1
    print(json.dumps(summary.to_json(), indent=2))
    if summary.failed:
        print(f"[cli] Completed with {summary.failed} failed file(s)")
    else:
        print("[cli] Completed successfully")
    return 0


def _console_main() -> None:
    sys.exit(main(sys.argv[1:]))


if __name__ == "__main__":
    _console_main()
