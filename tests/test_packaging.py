"""Test packaging metadata and installation extras."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Any

PROJECT_ROOT = Path(__file__).resolve().parents[1]


def _load_pyproject() -> dict[str, Any]:
    raw = (PROJECT_ROOT / "pyproject.toml").read_text(encoding="utf-8")
    if sys.version_info >= (3, 11):
        import tomllib

        return tomllib.loads(raw)

    import tomli

    return tomli.loads(raw)


def _names(requirements: list[str]) -> set[str]:
    names = set()
    for item in requirements:
        head = str(item).split(";")[0].strip().lower()
        for sep in (">", "<", "=", "!", "~", "["):
            head = head.split(sep)[0]
        names.add(head.strip())
    return names


def test_pyproject_declares_test_extras() -> None:
    """Ensure `pyproject.toml` declares pytest under `[project.optional-dependencies].test`."""
    data = _load_pyproject()
    test_deps = data.get("project", {}).get("optional-dependencies", {}).get("test", [])
    assert "pytest" in _names(test_deps)


def test_runtime_dependencies_cover_imports() -> None:
    deps = _names(_load_pyproject()["project"]["dependencies"])
    assert {"loguru", "pyyaml", "pydantic", "filelock"} <= deps


def test_package_is_found_under_src() -> None:
    data = _load_pyproject()
    assert data["tool"]["setuptools"]["packages"]["find"]["where"] == ["src"]
    assert (PROJECT_ROOT / "src" / "task_orchestrator" / "__init__.py").is_file()
