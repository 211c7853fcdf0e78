"""Link index building, incremental updates and file watching."""

from .service import LinkIndexService, Subscription
from .sources import FileSystemNoteSource, NoteContent, NoteSource, NoteStat
from .watcher import FileWatcher

__all__ = [
    "LinkIndexService",
    "Subscription",
    "NoteSource",
    "FileSystemNoteSource",
    "NoteContent",
    "NoteStat",
    "FileWatcher",
]
