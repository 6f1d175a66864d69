"""Utility helpers for reusable functionality."""

from .datetime import ensure_utc, ensure_utc_naive, now_utc_naive, utc_now
from .logging import configure_logging

__all__ = [
    "configure_logging",
    "ensure_utc",
    "ensure_utc_naive",
    "now_utc_naive",
    "utc_now",
]
