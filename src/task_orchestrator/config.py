"""Load optional engine configuration from `.task_orchestrator/config.yaml`."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from loguru import logger

from .constants import (
    CONFIG_FILE,
    DEFAULT_EXPANSION_THRESHOLD,
    DEFAULT_GENERATION_TIMEOUT_SECONDS,
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_SUBTASK_COUNT,
    WORKFLOW_DEFINITIONS_DIR,
)
from .io_utils import _load_data_with_error


@dataclass(frozen=True)
class EngineConfig:
    """Resolved engine settings."""

    expansion_threshold: int = DEFAULT_EXPANSION_THRESHOLD
    default_subtasks: int = DEFAULT_SUBTASK_COUNT
    generation_timeout_seconds: float = DEFAULT_GENERATION_TIMEOUT_SECONDS
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    definitions_dir: str = WORKFLOW_DEFINITIONS_DIR
    autosave: bool = True


def _get_nested(config: dict[str, Any], *keys: str) -> Any:
    cur: Any = config
    for key in keys:
        if not isinstance(cur, dict):
            return None
        cur = cur.get(key)
    return cur


def _positive_int(raw: Any, default: int, name: str, *, upper: int | None = None) -> int:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, int) or raw < 1 or (upper is not None and raw > upper):
        logger.warning("Ignoring invalid config value {}={!r}; using {}", name, raw, default)
        return default
    return raw


def _positive_float(raw: Any, default: float, name: str) -> float:
    if raw is None:
        return default
    if isinstance(raw, bool) or not isinstance(raw, (int, float)) or raw <= 0:
        logger.warning("Ignoring invalid config value {}={!r}; using {}", name, raw, default)
        return default
    return float(raw)


def parse_engine_config(config: dict[str, Any]) -> EngineConfig:
    """Build an :class:`EngineConfig` from a raw mapping, defaulting bad values."""
    defaults = EngineConfig()
    autosave = _get_nested(config, "store", "autosave")
    definitions_dir = _get_nested(config, "workflows", "definitions_dir")
    return EngineConfig(
        expansion_threshold=_positive_int(
            _get_nested(config, "expansion", "threshold"),
            defaults.expansion_threshold,
            "expansion.threshold",
            upper=5,
        ),
        default_subtasks=_positive_int(
            _get_nested(config, "expansion", "default_subtasks"),
            defaults.default_subtasks,
            "expansion.default_subtasks",
        ),
        generation_timeout_seconds=_positive_float(
            _get_nested(config, "expansion", "generation_timeout_seconds"),
            defaults.generation_timeout_seconds,
            "expansion.generation_timeout_seconds",
        ),
        max_concurrency=_positive_int(
            _get_nested(config, "workflows", "max_concurrency"),
            defaults.max_concurrency,
            "workflows.max_concurrency",
        ),
        definitions_dir=definitions_dir if isinstance(definitions_dir, str) and definitions_dir else defaults.definitions_dir,
        autosave=autosave if isinstance(autosave, bool) else defaults.autosave,
    )


def load_engine_config(state_dir: Path) -> tuple[EngineConfig, str | None]:
    """Load the optional engine config file.

    Args:
        state_dir: The project's `.task_orchestrator/` directory.

    Returns:
        A tuple of `(config, error_message)`. If the file is missing, returns
        defaults and `None`; if it is malformed, returns defaults and the error.
    """
    path = state_dir / CONFIG_FILE
    data, err = _load_data_with_error(path, {})
    if err:
        logger.warning("Config file unreadable, using defaults: {}", err)
        return EngineConfig(), err
    return parse_engine_config(data), None
