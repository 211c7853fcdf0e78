"""Note discovery and reading for the index service."""

from __future__ import annotations

import asyncio
import logging
import os
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Protocol

from ..config import DEFAULT_EXCLUDE_DIRS

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class NoteStat:
    """Basic file metadata for a note."""

    size: int
    created_at: datetime
    modified_at: datetime


@dataclass(frozen=True)
class NoteContent:
    """Text of a note together with its stat data."""

    text: str
    stat: NoteStat


class NoteSource(Protocol):
    """Where the index service finds and reads notes."""

    root: Path

    async def discover(self) -> list[str]: ...

    async def read(self, path: str) -> NoteContent: ...

    async def stat(self, path: str) -> NoteStat: ...

    def resolve(self, relative: str) -> Path: ...


def is_markdown_file(path: str | Path) -> bool:
    return Path(path).suffix.lower() == ".md"


def _stat_to_note_stat(result: os.stat_result) -> NoteStat:
    return NoteStat(
        size=result.st_size,
        created_at=datetime.fromtimestamp(result.st_ctime, tz=UTC),
        modified_at=datetime.fromtimestamp(result.st_mtime, tz=UTC),
    )


class FileSystemNoteSource:
    """Markdown notes below a root directory on the local filesystem.

    Blocking filesystem calls run in a worker thread so the event loop
    stays free while files are read.
    """

    def __init__(self, root: Path, exclude_dirs: Iterable[str] = DEFAULT_EXCLUDE_DIRS) -> None:
        self.root = Path(root).expanduser().resolve()
        self._exclude_dirs = frozenset(exclude_dirs)

    def resolve(self, relative: str) -> Path:
        """Turn a path relative to the notes root into an absolute one."""
        path = Path(relative).expanduser()
        if not path.is_absolute():
            path = self.root / path
        return Path(os.path.normpath(path))

    def contains(self, path: str | Path) -> bool:
        """Whether path lies inside the notes root and outside excluded directories."""
        try:
            relative = Path(path).resolve().relative_to(self.root)
        except ValueError:
            return False
        return not any(self._is_excluded(part) for part in relative.parts[:-1])

    def _is_excluded(self, dir_name: str) -> bool:
        return dir_name in self._exclude_dirs or dir_name.startswith(".")

    def _walk(self) -> list[str]:
        found: list[str] = []
        if not self.root.is_dir():
            log.warning("Notes root does not exist: %s", self.root)
            return found

        for dirpath, dirnames, filenames in os.walk(self.root):
            dirnames[:] = sorted(d for d in dirnames if not self._is_excluded(d))
            for filename in sorted(filenames):
                if is_markdown_file(filename):
                    found.append(os.path.join(dirpath, filename))
        return found

    async def discover(self) -> list[str]:
        """Absolute paths of all markdown notes, in a stable order."""
        return await asyncio.to_thread(self._walk)

    async def stat(self, path: str) -> NoteStat:
        """Stat a note.

        Raises:
            OSError: If the file is missing or inaccessible.
        """
        result = await asyncio.to_thread(os.stat, path)
        return _stat_to_note_stat(result)

    async def read(self, path: str) -> NoteContent:
        """Read a note as UTF-8 text.

        Raises:
            OSError: If the file cannot be read.
            UnicodeDecodeError: If the file is not valid UTF-8.
        """

        def _read() -> NoteContent:
            file_path = Path(path)
            text = file_path.read_text(encoding="utf-8")
            return NoteContent(text=text, stat=_stat_to_note_stat(file_path.stat()))

        return await asyncio.to_thread(_read)
