"""Provide utility helpers for timestamps and ids."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _generate_id(prefix: str, length: int = 8) -> str:
    """Short human-friendly id: ``<prefix>-<hex>``."""
    return f"{prefix}-{uuid.uuid4().hex[:length]}"
