"""Shared helpers for timestamps and payload summaries."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any


def iso_timestamp() -> str:
    """Return an ISO-8601 timestamp string (UTC)."""
    return datetime.now(timezone.utc).isoformat()


def summarize(value: Any, limit: int = 200) -> str:
    """Return a bounded repr of a node output for events and logs."""
    text = repr(value)
    if len(text) > limit:
        return text[: limit - 3] + "..."
    return text
