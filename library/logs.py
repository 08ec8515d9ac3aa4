"""Category-gated application logging.

Categories are coarse grained and opt-in / opt-out:
  - LOG_ALL=0 disables all categories unless explicitly enabled.
  - LOG_ALL=1 (default) enables all unless explicitly disabled.
  - Per-category env vars override: LOG_SCAN, LOG_DERIVE, LOG_DELIVERY, LOG_CATALOG.
"""
from __future__ import annotations

import logging
import os

logger = logging.getLogger("glimpse")

_OFF = ("0", "false", "no")
_ON = ("1", "true", "yes")


def log_enabled(cat: str) -> bool:
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in _OFF
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in _ON
    return base_on


def log(cat: str, msg: str, *args) -> None:
    """Emit an INFO line for a category when that category is enabled."""
    if not log_enabled(cat):
        return
    logger.info("[%s] " + msg, cat, *args)


__all__ = ["logger", "log", "log_enabled"]
