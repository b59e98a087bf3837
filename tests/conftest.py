"""
Pytest configuration and shared fixtures.
"""
import pytest
from pathlib import Path

from usbmirror.config import BackupConfig


def write_tree(root: Path, files: dict) -> Path:
    """Create files under root from a {relative path: text} mapping."""
    root.mkdir(parents=True, exist_ok=True)
    for rel_path, content in files.items():
        target = root / rel_path
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")
    return root


def list_tree(root: Path) -> dict:
    """Return {posix relative path: text} for every file under root."""
    return {
        path.relative_to(root).as_posix(): path.read_text(encoding="utf-8")
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


@pytest.fixture
def make_tree(tmp_path):
    def _make(name: str, files: dict) -> Path:
        return write_tree(tmp_path / name, files)
    return _make


@pytest.fixture
def tree_listing():
    return list_tree


@pytest.fixture
def make_config(tmp_path):
    """Build a BackupConfig rooted in the test's temp directory."""
    def _make(**overrides) -> BackupConfig:
        values = dict(
            source_root=tmp_path / "src",
            destination_root=tmp_path / "dest",
            target_volume_id="E",
            mount_root=tmp_path / "media",
            countdown_seconds=0,
            log_level="DEBUG",
        )
        values.update(overrides)
        return BackupConfig(**values)
    return _make
