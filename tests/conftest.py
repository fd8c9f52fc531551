"""
Shared fixtures for DriveSage tests.

Trees are built under pytest's tmp_path. Large files are sparse, so a
150 MB file costs nothing on disk.
"""

import os
from pathlib import Path

import pytest

from drive_sage.drive_analysis_engine import AppSettings

MB = 1024 * 1024


def write_file(path: Path, size: int = 0, mtime: float | None = None) -> Path:
    """Create ``path`` (and parents) holding ``size`` bytes."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        if size > 1024 * 1024:
            f.truncate(size)
        else:
            f.write(b"x" * size)
    if mtime is not None:
        os.utime(path, (mtime, mtime))
    return path


def snapshot_tree(root: Path) -> dict[str, bytes | None]:
    """Relative path -> file bytes (None for directories)."""
    snapshot: dict[str, bytes | None] = {}
    for dirpath, dirnames, filenames in os.walk(root):
        for d in dirnames:
            snapshot[os.path.relpath(os.path.join(dirpath, d), root)] = None
        for f in filenames:
            full = os.path.join(dirpath, f)
            snapshot[os.path.relpath(full, root)] = Path(full).read_bytes()
    return snapshot


@pytest.fixture
def settings():
    """Default settings; dry run on, symlinks not followed."""
    return AppSettings()


@pytest.fixture
def drive_tree(tmp_path):
    """
    drive/
      a.txt               10 B
      docs/
        b.pdf             20 B
        deep/
          c.txt            5 B
      media/              (empty)
    """
    root = tmp_path / "drive"
    write_file(root / "a.txt", 10)
    write_file(root / "docs" / "b.pdf", 20)
    write_file(root / "docs" / "deep" / "c.txt", 5)
    (root / "media").mkdir(parents=True)
    return root


@pytest.fixture
def messy_drive(tmp_path):
    """A folder with loose files of several types plus OS clutter."""
    root = tmp_path / "drive"
    inbox = root / "Inbox"
    write_file(inbox / "holiday.JPG", 3)
    write_file(inbox / "report.pdf", 4)
    write_file(inbox / "song.mp3", 5)
    write_file(inbox / "notes.md", 6)
    write_file(inbox / "README", 7)
    write_file(inbox / ".hidden.png", 8)
    write_file(inbox / ".DS_Store", 9)
    write_file(root / "top.png", 2)
    return root
