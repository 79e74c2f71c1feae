"""Tests for version lookup and declared package metadata."""

from __future__ import annotations

import tomllib
from importlib.metadata import PackageNotFoundError
from pathlib import Path

from sophi_chat import version as version_module

PYPROJECT = Path(__file__).resolve().parents[1] / "pyproject.toml"


def test_version_from_installed_metadata(monkeypatch) -> None:
    monkeypatch.setattr(version_module, "version", lambda name: "1.2.3")
    assert version_module.get_version() == "1.2.3"


def test_version_without_installed_metadata(monkeypatch) -> None:
    def _missing(name: str) -> str:
        raise PackageNotFoundError(name)

    monkeypatch.setattr(version_module, "version", _missing)
    assert version_module.get_version() == "dev"


def test_declared_dependencies_use_published_extras() -> None:
    project = tomllib.loads(PYPROJECT.read_text())["project"]

    assert "python-socketio>=5.11" in project["dependencies"]
    assert not any("asyncio_client" in dep for dep in project["dependencies"])
    assert any(dep.startswith("aiohttp") for dep in project["dependencies"])


def test_design_notes_are_not_the_long_description() -> None:
    project = tomllib.loads(PYPROJECT.read_text())["project"]
    assert project.get("readme") != "DESIGN.md"
