"""
File lifecycle for extracts: incoming -> processing -> archive | error.

A file is moved to processing/ before it is read, so a crash or a
cancellation leaves it there; such files are picked up first on the next run.
"""

from __future__ import annotations

import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import List

import structlog

logger = structlog.get_logger()

INCOMING = "incoming"
PROCESSING = "processing"
ARCHIVE = "archive"
ERROR = "error"

EXTRACT_SUFFIXES = (".csv", ".txt")


class FileIntake:
    """Directory layout under one base directory."""

    def __init__(self, base_dir: Path, suffixes=EXTRACT_SUFFIXES) -> None:
        self.base_dir = Path(base_dir)
        self.suffixes = tuple(s.lower() for s in suffixes)
        self.incoming = self.base_dir / INCOMING
        self.processing = self.base_dir / PROCESSING
        self.archive = self.base_dir / ARCHIVE
        self.error = self.base_dir / ERROR

    def ensure_layout(self) -> None:
        for folder in (self.incoming, self.processing, self.archive, self.error):
            folder.mkdir(parents=True, exist_ok=True)

    def _extracts_in(self, folder: Path) -> List[Path]:
        if not folder.is_dir():
            return []
        return sorted(
            p for p in folder.iterdir() if p.is_file() and p.suffix.lower() in self.suffixes
        )

    def pending(self) -> List[Path]:
        """Leftovers in processing/ first, then incoming/, each sorted by name."""
        leftovers = self._extracts_in(self.processing)
        if leftovers:
            logger.warning("Resuming files left in processing", phase="FileIntake",
                           files=[p.name for p in leftovers])
        return leftovers + self._extracts_in(self.incoming)

    def claim(self, path: Path) -> Path:
        """Move a file into processing/ (no-op when already there)."""
        path = Path(path)
        if path.parent.resolve() == self.processing.resolve():
            return path
        target = _move(path, self.processing / path.name)
        logger.info("File claimed", phase="FileIntake", file=path.name)
        return target

    def archive_file(self, path: Path) -> Path:
        target = _move(Path(path), _free_name(self.archive, Path(path).name))
        logger.info("File archived", phase="FileIntake", file=target.name)
        return target

    def reject_file(self, path: Path) -> Path:
        target = _move(Path(path), _free_name(self.error, Path(path).name))
        logger.warning("File moved to error", phase="FileIntake", file=target.name)
        return target


def _free_name(folder: Path, name: str) -> Path:
    """``folder/name``, or a timestamped variant when that name is taken."""
    folder.mkdir(parents=True, exist_ok=True)
    target = folder / name
    if not target.exists():
        return target
    stem, suffix = os.path.splitext(name)
    stamp = datetime.now().strftime("%Y%m%d_%H%M%S_%f")
    return folder / f"{stem}_{stamp}{suffix}"


def _move(src: Path, dst: Path) -> Path:
    dst.parent.mkdir(parents=True, exist_ok=True)
    try:
        os.replace(src, dst)
    except OSError:
        # cross-device move
        shutil.copy2(str(src), str(dst))
        os.remove(src)
    return dst
