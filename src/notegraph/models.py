"""Pydantic models for the link index."""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

LinkFormat = Literal["wikilink", "markdown"]


class TextPosition(BaseModel):
    """A zero-based line/column position in a note."""

    model_config = ConfigDict(frozen=True)

    line: int
    column: int


class TextRange(BaseModel):
    """Span of a link in its source note."""

    model_config = ConfigDict(frozen=True)

    start: TextPosition
    end: TextPosition


class LinkInstance(BaseModel):
    """One reference occurring in a source note.

    Built fresh on every parse. Resolution produces a copy with
    target_file and target_exists filled in.
    """

    model_config = ConfigDict(frozen=True)

    title: str  # Target text as written
    source_file: str
    target_file: str | None = None  # Resolved path, None while unresolved
    range: TextRange
    format: LinkFormat
    target_exists: bool = False
    display_text: str = ""  # Differs from title for [[target|Display]]


class FileMetadata(BaseModel):
    """Descriptive data about a note file."""

    model_config = ConfigDict(frozen=True)

    title: str  # First H1, frontmatter title, or file stem
    size: int = 0
    created_at: datetime | None = None
    modified_at: datetime | None = None


class FileEntry(BaseModel):
    """Per-note record held by the index."""

    model_config = ConfigDict(frozen=True)

    path: str
    name: str  # File stem
    last_indexed: datetime
    content_hash: str
    outgoing_links: tuple[LinkInstance, ...] = ()  # Source order
    metadata: FileMetadata


class IndexMetadata(BaseModel):
    """Counters kept alongside the index maps."""

    model_config = ConfigDict(frozen=True)

    version: str
    last_build_time: datetime
    total_files: int = 0
    total_links: int = 0


class ParseOptions(BaseModel):
    """Which link syntaxes the parser extracts."""

    enable_wikilinks: bool = True
    enable_markdown_links: bool = True


class ParseResult(BaseModel):
    """Links, tags and non-fatal errors found in one note."""

    links: list[LinkInstance] = Field(default_factory=list)
    tags: list[str] = Field(default_factory=list)  # Lowercase, sorted, unique
    errors: list[str] = Field(default_factory=list)


class LinkResolution(BaseModel):
    """Outcome of resolving a single link."""

    link: LinkInstance
    target_file: str | None = None
    exists: bool = False
    candidates: list[FileEntry] = Field(default_factory=list)


class BrokenLink(BaseModel):
    """A link whose target does not resolve to an indexed note."""

    source: str
    target: str  # Resolved path if any, otherwise the title
    link: LinkInstance


class LinkValidationReport(BaseModel):
    """Valid/broken tally over every outgoing link in the index."""

    valid: int = 0
    broken: int = 0
    details: list[BrokenLink] = Field(default_factory=list)


class IndexStats(BaseModel):
    """Summary counters for the current index."""

    total_files: int
    total_links: int
    total_tags: int
    last_build_time_ms: float


class TagSummary(BaseModel):
    """A tag with the notes carrying it."""

    tag: str
    count: int
    files: list[str] = Field(default_factory=list)
