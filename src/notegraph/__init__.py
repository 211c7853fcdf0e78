"""notegraph: bidirectional link index for Markdown notes."""

__version__ = "0.3.0"

from .backlinks import BacklinksProvider
from .indexer import FileSystemNoteSource, LinkIndexService
from .resolver import LinkResolver
from .snapshot import IndexSnapshot

__all__ = [
    "__version__",
    "BacklinksProvider",
    "FileSystemNoteSource",
    "IndexSnapshot",
    "LinkIndexService",
    "LinkResolver",
]
