from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any

import yaml

from .errors import PersistenceError
from .utils import _now_iso


def _atomic_write_json(path: Path, data: dict[str, Any]) -> None:
    """Write *data* to *path* via temp-file-then-rename.

    Readers never observe a half-written document; on failure the previous
    file is left as it was and :class:`PersistenceError` is raised.
    """
    tmp_name: str | None = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            json.dump(data, handle, indent=2)
            handle.flush()
            os.fsync(handle.fileno())
        os.replace(tmp_name, path)
        tmp_name = None
    except (OSError, TypeError, ValueError) as exc:
        raise PersistenceError(f"Failed to write {path.name}: {exc}", path=path) from exc
    finally:
        if tmp_name is not None:
            Path(tmp_name).unlink(missing_ok=True)


def _load_json_document(path: Path) -> dict[str, Any] | None:
    """Load a JSON object from *path*, returning ``None`` if the file is missing."""
    if not path.exists():
        return None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            data = json.load(handle)
    except OSError as exc:
        raise PersistenceError(f"Failed to read {path.name}: {exc}", path=path) from exc
    except json.JSONDecodeError as exc:
        raise PersistenceError(f"{path.name}: JSONDecodeError: {exc}", path=path) from exc
    if not isinstance(data, dict):
        raise PersistenceError(f"{path.name}: expected object, got {type(data).__name__}", path=path)
    return data


def _load_data_with_error(
    path: Path,
    default: dict[str, Any],
) -> tuple[dict[str, Any], str | None]:
    """
    Load JSON/YAML and return (data, error_message).

    Parse/IO failures are reported instead of raised so callers can fall back
    to defaults without overwriting the broken file.
    """
    if not path.exists():
        return default, None
    try:
        with open(path, "r", encoding="utf-8") as handle:
            if path.suffix in {".yaml", ".yml"}:
                data = yaml.safe_load(handle)
            else:
                data = json.load(handle)
        if data is None:
            return default, None
        if not isinstance(data, dict):
            return default, f"{path.name}: expected object, got {type(data).__name__}"
        return data, None
    except OSError as exc:
        return default, f"{path.name}: {exc.__class__.__name__}: {exc}"
    except json.JSONDecodeError as exc:
        return default, f"{path.name}: JSONDecodeError: {exc}"
    except yaml.YAMLError as exc:
        return default, f"{path.name}: YAMLError: {exc}"


def _append_event(events_path: Path, event: dict[str, Any]) -> None:
    events_path.parent.mkdir(parents=True, exist_ok=True)
    payload = dict(event)
    payload.setdefault("ts", _now_iso())
    line = json.dumps(payload, default=str) + "\n"
    with open(events_path, "a", encoding="utf-8") as handle:
        handle.write(line)
        handle.flush()


def _read_events(events_path: Path, limit: int = 100) -> list[dict[str, Any]]:
    if limit < 1 or not events_path.exists():
        return []
    lines = events_path.read_text(encoding="utf-8").splitlines()
    events: list[dict[str, Any]] = []
    for line in lines[-limit:]:
        try:
            payload = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, dict):
            events.append(payload)
    return events
