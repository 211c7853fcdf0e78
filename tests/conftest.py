"""Shared test fixtures for the notegraph test suite.

Design:
- notes_root: Isolated notes directory in a temp dir
- service: LinkIndexService over notes_root with a short debounce
- runner / cli_invoke: CliRunner pointed at notes_root
"""

import logging
from collections.abc import Generator
from datetime import UTC, datetime
from pathlib import Path

import pytest
from click.testing import CliRunner

from notegraph._logging import PACKAGE_LOGGER
from notegraph.cli import cli
from notegraph.indexer import FileSystemNoteSource, LinkIndexService
from notegraph.models import FileEntry, FileMetadata, LinkInstance, TextPosition, TextRange

# Short enough to keep tests fast, long enough for bursts to collapse
TEST_DEBOUNCE_SECONDS = 0.02


# ─────────────────────────────────────────────────────────────────────────────
# Markers
# ─────────────────────────────────────────────────────────────────────────────


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: marks tests as slow (deselect with '-m \"not slow\"')",
    )


# ─────────────────────────────────────────────────────────────────────────────
# Core Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture(autouse=True)
def reset_package_logger() -> Generator[None, None, None]:
    """Undo configure_logging() from CLI tests so handlers never outlive a runner."""
    logger = logging.getLogger(PACKAGE_LOGGER)
    handlers, level, propagate = list(logger.handlers), logger.level, logger.propagate
    yield
    logger.handlers[:] = handlers
    logger.setLevel(level)
    logger.propagate = propagate


@pytest.fixture
def notes_root(tmp_path: Path) -> Path:
    """Empty notes directory. Resolved so paths match index keys."""
    root = (tmp_path / "notes").resolve()
    root.mkdir()
    return root


@pytest.fixture
def source(notes_root: Path) -> FileSystemNoteSource:
    return FileSystemNoteSource(notes_root)


@pytest.fixture
def service(source: FileSystemNoteSource) -> Generator[LinkIndexService, None, None]:
    """Index service over notes_root; closed after the test."""
    svc = LinkIndexService(source, debounce_seconds=TEST_DEBOUNCE_SECONDS)
    yield svc
    svc.close()


@pytest.fixture
def language_notes(notes_root: Path) -> Path:
    """Three linked notes plus one with a broken link.

    Creates:
    - python.md -> rust.md, golang.md (tags: lang)
    - rust.md -> python.md (tags: lang, systems)
    - golang.md (no links)
    - haskell.md -> haskell-monads.md (missing)
    """
    create_note(notes_root, "python.md", "# Python\n\nSee [[rust]] and [Go](golang.md). #lang\n")
    create_note(notes_root, "rust.md", "# Rust\n\nBack to [[Python]]. #lang #systems\n")
    create_note(notes_root, "golang.md", "# Go\n\nNothing to see.\n")
    create_note(notes_root, "haskell.md", "# Haskell\n\nRead [[haskell-monads]] first.\n")
    return notes_root


@pytest.fixture
def runner() -> CliRunner:
    """CLI runner with isolated environment."""
    return CliRunner()


@pytest.fixture
def cli_invoke(runner: CliRunner, notes_root: Path):
    """Invoke the CLI against notes_root with logging quieted.

    Usage:
        def test_stats(cli_invoke):
            result = cli_invoke(["stats", "--json"])
            assert result.exit_code == 0
    """

    def _invoke(args: list[str], root: Path | None = None):
        return runner.invoke(
            cli,
            ["--quiet", "--root", str(root or notes_root), *args],
            env={"NOTEGRAPH_NOTES_ROOT": None, "NOTEGRAPH_LOG_LEVEL": "ERROR"},
        )

    return _invoke


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions (for test code, not fixtures)
# ─────────────────────────────────────────────────────────────────────────────


def create_note(root: Path, path: str, content: str) -> Path:
    """Write a note below root, creating parent directories.

    Usage in tests:
        from conftest import create_note
        note = create_note(notes_root, "ideas/graph.md", "See [[other]]")
    """
    note_path = root / path
    note_path.parent.mkdir(parents=True, exist_ok=True)
    note_path.write_text(content, encoding="utf-8")
    return note_path


def make_link(
    title: str,
    source_file: str = "/notes/source.md",
    target_file: str | None = None,
    link_format: str = "wikilink",
) -> LinkInstance:
    """Build a LinkInstance without parsing."""
    position = TextPosition(line=0, column=0)
    return LinkInstance(
        title=title,
        source_file=source_file,
        target_file=target_file,
        target_exists=target_file is not None,
        range=TextRange(start=position, end=position),
        format=link_format,
        display_text=title,
    )


def make_entry(path: str, links: tuple[LinkInstance, ...] = ()) -> FileEntry:
    """Build a FileEntry without reading a file."""
    name = Path(path).stem
    return FileEntry(
        path=path,
        name=name,
        last_indexed=datetime(2024, 1, 15, tzinfo=UTC),
        content_hash=f"hash-{name}",
        outgoing_links=links,
        metadata=FileMetadata(title=name),
    )
