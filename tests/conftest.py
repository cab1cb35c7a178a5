"""Shared fixtures: a populated source tree, a destination root and an engine factory."""

import os
from pathlib import Path

import pytest

from src.core.backup_engine import BackupEngine, BackupOptions


def _read_tree(root: Path) -> dict[str, bytes | None]:
    """Relative path -> file bytes (None for directories)."""
    contents: dict[str, bytes | None] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        base = Path(dirpath)
        for name in dirnames:
            contents[(base / name).relative_to(root).as_posix()] = None
        for name in filenames:
            path = base / name
            contents[path.relative_to(root).as_posix()] = path.read_bytes()
    return contents


@pytest.fixture
def read_tree():
    return _read_tree


@pytest.fixture
def source_tree(tmp_path):
    root = tmp_path / "source"
    (root / "docs" / "nested").mkdir(parents=True)
    (root / "empty").mkdir()
    (root / "a.txt").write_text("hello")
    (root / "docs" / "readme.md").write_text("# Readme\n" + "Lorem ipsum dolor sit amet.\n" * 200)
    (root / "docs" / "nested" / "notes.txt").write_text("nested notes\n")
    (root / "data.bin").write_bytes(os.urandom(40000))
    (root / "zero.dat").write_bytes(b"")
    return root


@pytest.fixture
def destination(tmp_path):
    return tmp_path / "backups"


@pytest.fixture
def engine(destination):
    return BackupEngine(destination)


@pytest.fixture
def options(source_tree):
    def factory(**overrides) -> BackupOptions:
        return BackupOptions(source_path=str(source_tree), **overrides)

    return factory
