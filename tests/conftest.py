"""
Pytest fixtures and configuration for workspace tests.
"""
import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from aiwg_workspace.registry import PluginRegistry


def plugin_data(plugin_id: str, plugin_type: str = "framework", version: str = "1.0.0", **extra) -> dict:
    """Build raw registry record data for tests."""
    data = {
        "id": plugin_id,
        "type": plugin_type,
        "name": plugin_id.replace("-", " ").title(),
        "version": version,
        "install-date": "2025-10-01T12:00:00Z",
        "repo-path": f"frameworks/{plugin_id}/repo/",
    }
    data.update(extra)
    return data


def scaffold_plugin(workspace: Path, plugin_id: str, plugin_type: str = "framework", version: str = "1.0.0") -> Path:
    """Create the on-disk layout and manifest for a plugin."""
    root = workspace / "frameworks" / plugin_id
    (root / "repo").mkdir(parents=True, exist_ok=True)
    if plugin_type == "framework":
        (root / "projects").mkdir(exist_ok=True)
    (root / "manifest.json").write_text(
        json.dumps({"id": plugin_id, "type": plugin_type, "version": version, "name": plugin_id})
    )
    return root


def write_files(root: Path, files: dict) -> None:
    for rel, content in files.items():
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(content)


def snapshot(root: Path) -> dict:
    """Map of relative path -> bytes for every file under root."""
    return {
        p.relative_to(root).as_posix(): p.read_bytes()
        for p in sorted(root.rglob("*"))
        if p.is_file()
    }


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / ".aiwg"
    root.mkdir()
    return root


@pytest.fixture
def registry(workspace: Path) -> PluginRegistry:
    return PluginRegistry(
        workspace,
        sleep=lambda _: None,
        clock=lambda: datetime(2025, 10, 19, 12, 0, 0, tzinfo=timezone.utc),
    )
