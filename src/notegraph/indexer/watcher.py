"""File watcher forwarding note changes to the index service."""

from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Future
from pathlib import Path
from typing import TYPE_CHECKING

from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from .sources import is_markdown_file

if TYPE_CHECKING:
    from .service import LinkIndexService

logger = logging.getLogger(__name__)


class IndexEventHandler(FileSystemEventHandler):
    """Turn watchdog events into index updates and removals.

    watchdog calls handlers on its observer thread; every index operation
    is handed to the service's event loop. Debouncing happens in the
    service itself.
    """

    def __init__(self, service: LinkIndexService, loop: asyncio.AbstractEventLoop) -> None:
        super().__init__()
        self._service = service
        self._loop = loop

    def _is_note(self, path: str | bytes) -> bool:
        path = path.decode() if isinstance(path, bytes) else path
        contains = getattr(self._service.source, "contains", None)
        if contains is not None and not contains(path):
            return False
        return is_markdown_file(path)

    def _submit(self, coro) -> Future:
        return asyncio.run_coroutine_threadsafe(coro, self._loop)

    def _changed(self, path: str) -> None:
        try:
            content = Path(path).read_text(encoding="utf-8")
        except FileNotFoundError:
            self._removed(path)
            return
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Failed to read %s: %s", path, e)
            return
        self._submit(self._service.update_file(path, content))

    def _removed(self, path: str) -> None:
        self._submit(self._service.remove_file(path))

    def on_created(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_note(event.src_path):
            self._changed(str(event.src_path))

    def on_modified(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_note(event.src_path):
            self._changed(str(event.src_path))

    def on_deleted(self, event: FileSystemEvent) -> None:
        if not event.is_directory and self._is_note(event.src_path):
            self._removed(str(event.src_path))

    def on_moved(self, event: FileSystemEvent) -> None:
        """A rename removes the old path and indexes the new one."""
        if event.is_directory:
            return

        if self._is_note(event.src_path):
            self._removed(str(event.src_path))

        dest_path = getattr(event, "dest_path", None)
        if dest_path and self._is_note(dest_path):
            self._changed(str(dest_path))


class FileWatcher:
    """Watch the notes directory and keep the index service current."""

    def __init__(
        self,
        service: LinkIndexService,
        loop: asyncio.AbstractEventLoop | None = None,
    ) -> None:
        """Initialize the file watcher.

        Args:
            service: Index service to update on changes.
            loop: Loop the service runs on. Defaults to the running loop.
        """
        self._service = service
        self._loop = loop
        self._root = Path(service.source.root)
        self._observer: Observer | None = None
        self._running = False

    def start(self) -> None:
        """Start watching for file changes."""
        if self._running:
            return

        if not self._root.exists():
            logger.warning("Notes root does not exist: %s", self._root)
            return

        loop = self._loop or asyncio.get_running_loop()
        self._observer = Observer()
        self._observer.schedule(IndexEventHandler(self._service, loop), str(self._root), recursive=True)
        self._observer.start()
        self._running = True
        logger.info("Started watching: %s", self._root)

    def stop(self) -> None:
        """Stop watching for file changes."""
        if not self._running or self._observer is None:
            return

        self._observer.stop()
        self._observer.join(timeout=5.0)
        self._observer = None
        self._running = False
        logger.info("Stopped file watcher")

    @property
    def is_running(self) -> bool:
        return self._running

    def __enter__(self) -> FileWatcher:
        self.start()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.stop()
