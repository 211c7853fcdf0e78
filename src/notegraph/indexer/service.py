"""Incremental bidirectional link index.

LinkIndexService owns the index maps (files, backlinks, tags) and is the
only thing that mutates them. Three operations change the index:

- rebuild_index(): read every note and swap in a freshly built index
- update_file(): debounced re-index of a single note
- remove_file(): drop a note and everything that refers to it

After each of them, listeners registered with on_index_changed() receive
an immutable IndexSnapshot.
"""

from __future__ import annotations

import asyncio
import logging
import os
import time
from collections.abc import Callable, Iterable
from datetime import UTC, datetime
from pathlib import Path

from ..config import INDEX_VERSION, IndexSettings
from ..models import (
    FileEntry,
    FileMetadata,
    IndexMetadata,
    IndexStats,
    LinkInstance,
    ParseOptions,
    TagSummary,
)
from ..parser import extract_title, hash_content, parse_links
from ..resolver import LinkResolver, resolution_key
from ..snapshot import IndexSnapshot, check_invariants
from .sources import NoteSource, NoteStat

log = logging.getLogger(__name__)

IndexListener = Callable[[IndexSnapshot], None]


class Subscription:
    """Handle returned by on_index_changed(); dispose() stops notifications."""

    def __init__(self, listeners: list[IndexListener], listener: IndexListener) -> None:
        self._listeners = listeners
        self._listener = listener

    def dispose(self) -> None:
        if self._listener in self._listeners:
            self._listeners.remove(self._listener)


def _add_member(mapping: dict[str, set[str]], key: str, member: str) -> None:
    mapping.setdefault(key, set()).add(member)


def _discard_member(mapping: dict[str, set[str]], key: str, member: str) -> None:
    members = mapping.get(key)
    if members is None:
        return
    members.discard(member)
    if not members:
        del mapping[key]


def _is_exact_match(link: LinkInstance) -> bool:
    """Whether the link resolved to a file named exactly after its title."""
    if not link.target_file:
        return False
    return os.path.basename(link.target_file) == resolution_key(link.title).rsplit("/", 1)[-1]


class LinkIndexService:
    """Build and incrementally maintain the link index for a notes directory."""

    def __init__(
        self,
        source: NoteSource,
        settings: IndexSettings | None = None,
        *,
        debounce_seconds: float | None = None,
    ) -> None:
        """Initialize the service with an empty index.

        Args:
            source: Where notes are discovered and read.
            settings: Parsing and resolution settings; defaults if None.
            debounce_seconds: Override for settings.debounce_seconds.
        """
        self._source = source
        self._settings = settings or IndexSettings()
        self._debounce_seconds = (
            self._settings.debounce_seconds if debounce_seconds is None else debounce_seconds
        )
        self._parse_options = ParseOptions(
            enable_wikilinks=self._settings.enable_wikilinks,
            enable_markdown_links=self._settings.enable_markdown_links,
        )

        self._files: dict[str, FileEntry] = {}
        self._backlinks: dict[str, set[str]] = {}
        self._tags: dict[str, set[str]] = {}
        self._file_tags: dict[str, list[str]] = {}
        self._metadata = IndexMetadata(version=INDEX_VERSION, last_build_time=datetime.now(UTC))
        self._snapshot: IndexSnapshot | None = None

        self._resolver = self._make_resolver(self.get_index())
        self._building = False
        self._last_build_ms = 0.0
        self._pending: dict[str, asyncio.Task[None]] = {}
        # Updates and removals that fired during a rebuild; None marks a removal
        self._deferred: dict[str, str | None] = {}
        self._listeners: list[IndexListener] = []
        self._closed = False

    # ─────────────────────────────────────────────────────────────────────
    # Queries
    # ─────────────────────────────────────────────────────────────────────

    @property
    def source(self) -> NoteSource:
        return self._source

    @property
    def settings(self) -> IndexSettings:
        return self._settings

    @property
    def is_building(self) -> bool:
        return self._building

    @property
    def pending_updates(self) -> list[str]:
        """Paths with a debounced update waiting to fire."""
        return list(self._pending)

    def resolve_path(self, path: str | Path) -> str:
        """Index key for a path given absolute or relative to the notes root."""
        return str(self._source.resolve(str(path)))

    def get_index(self) -> IndexSnapshot:
        """Current index as an immutable snapshot."""
        if self._snapshot is None:
            self._snapshot = IndexSnapshot.capture(self._files, self._backlinks, self._tags, self._metadata)
        return self._snapshot

    def get_stats(self) -> IndexStats:
        return IndexStats(
            total_files=self._metadata.total_files,
            total_links=self._metadata.total_links,
            total_tags=len(self._tags),
            last_build_time_ms=self._last_build_ms,
        )

    def get_tags(self, min_count: int = 1) -> list[TagSummary]:
        """Tags used by at least min_count notes, most used first."""
        summaries = [
            TagSummary(tag=tag, count=len(paths), files=sorted(paths))
            for tag, paths in self._tags.items()
            if len(paths) >= min_count
        ]
        summaries.sort(key=lambda summary: (-summary.count, summary.tag))
        return summaries

    def check_invariants(self) -> list[str]:
        """Consistency violations of the live index; empty when sound."""
        return check_invariants(self._files, self._backlinks, self._tags, self._metadata)

    def on_index_changed(self, listener: IndexListener) -> Subscription:
        """Call listener with the new snapshot after every index change."""
        self._listeners.append(listener)
        return Subscription(self._listeners, listener)

    # ─────────────────────────────────────────────────────────────────────
    # Full rebuild
    # ─────────────────────────────────────────────────────────────────────

    async def rebuild_index(self, show_progress: bool = False) -> IndexSnapshot:
        """Rebuild the entire index from the note source.

        Unreadable notes are logged and skipped. A rebuild requested while
        another one is running is rejected and the current index returned.
        Updates and removals that fire while the rebuild runs are held back
        and applied, in order, on top of the new index.

        Args:
            show_progress: Log each indexed file at INFO level.

        Returns:
            The newly built index.
        """
        if self._building:
            log.warning("Index rebuild already in progress")
            return self.get_index()

        self._building = True
        started = time.perf_counter()

        try:
            try:
                paths = await self._source.discover()
            except OSError as e:
                log.error("Failed to discover notes under %s: %s", self._source.root, e)
                paths = []

            files: dict[str, FileEntry] = {}
            tags: dict[str, set[str]] = {}
            file_tags: dict[str, list[str]] = {}

            # First pass: parse every note, links stay unresolved
            for position, path in enumerate(paths, start=1):
                try:
                    note = await self._source.read(path)
                except (OSError, UnicodeDecodeError) as e:
                    log.warning("Failed to index %s: %s", path, e)
                    continue

                entry, entry_tags = self._build_entry(path, note.text, note.stat)
                files[path] = entry
                file_tags[path] = entry_tags
                for tag in entry_tags:
                    _add_member(tags, tag, path)

                if show_progress:
                    log.info("Indexed %d/%d: %s", position, len(paths), path)

            # Second pass: resolve against the complete new file set
            metadata = IndexMetadata(version=INDEX_VERSION, last_build_time=datetime.now(UTC))
            resolver = self._make_resolver(IndexSnapshot.capture(files, {}, {}, metadata))
            backlinks: dict[str, set[str]] = {}
            resolved_count = 0

            for path, entry in list(files.items()):
                resolved = self._resolve_entry(resolver, entry)
                files[path] = resolved
                for link in resolved.outgoing_links:
                    if link.target_file:
                        resolved_count += 1
                        _add_member(backlinks, link.target_file, path)

            total_links = sum(len(entry.outgoing_links) for entry in files.values())
            metadata = metadata.model_copy(
                update={"total_files": len(files), "total_links": total_links}
            )
            self._prune_missing(tags, files)

            self._files = files
            self._backlinks = backlinks
            self._tags = tags
            self._file_tags = {path: names for path, names in file_tags.items() if path in files}
            self._metadata = metadata
            self._resolver = resolver
            self._last_build_ms = (time.perf_counter() - started) * 1000

            self._changed()
            log.info(
                "Index rebuilt: %d files, %d links (%d resolved) in %.0fms",
                metadata.total_files,
                total_links,
                resolved_count,
                self._last_build_ms,
            )

            await self._replay_deferred()
            return self.get_index()
        finally:
            self._building = False

    async def _replay_deferred(self) -> None:
        while self._deferred:
            path = next(iter(self._deferred))
            content = self._deferred.pop(path)
            try:
                if content is None:
                    self._remove(path)
                else:
                    await self._apply_update(path, content)
            except Exception:
                log.exception("Failed to apply deferred change to %s", path)

    def _defer(self, path: str, content: str | None) -> None:
        # Re-inserting moves the path behind changes that fired before it
        self._deferred.pop(path, None)
        self._deferred[path] = content
        log.debug("Rebuild in progress, deferring change to %s", path)

    @staticmethod
    def _prune_missing(tags: dict[str, set[str]], files: dict[str, FileEntry]) -> None:
        """Drop tag members that are not in files, and tags left empty."""
        for tag in list(tags):
            kept = {path for path in tags[tag] if path in files}
            if kept:
                tags[tag] = kept
            else:
                del tags[tag]

    # ─────────────────────────────────────────────────────────────────────
    # Single-file update
    # ─────────────────────────────────────────────────────────────────────

    async def update_file(self, path: str, content: str) -> None:
        """Schedule a re-index of one note after the debounce delay.

        A newer call for the same path replaces a pending one, so a burst
        of edits is applied once, with the last content.
        """
        if self._closed:
            log.warning("Ignoring update for %s: index service is closed", path)
            return

        key = self.resolve_path(path)
        existing = self._pending.pop(key, None)
        if existing is not None:
            existing.cancel()

        self._pending[key] = asyncio.create_task(
            self._debounced_update(key, content),
            name=f"notegraph-update:{key}",
        )

    async def wait_pending(self) -> None:
        """Wait until every scheduled update has been applied."""
        while self._pending:
            await asyncio.gather(*list(self._pending.values()), return_exceptions=True)

    async def _debounced_update(self, path: str, content: str) -> None:
        await asyncio.sleep(self._debounce_seconds)
        if self._pending.get(path) is asyncio.current_task():
            del self._pending[path]

        if self._building:
            self._defer(path, content)
            return

        try:
            await self._apply_update(path, content)
        except Exception:
            log.exception("Failed to update %s", path)

    async def _apply_update(self, path: str, content: str) -> None:
        try:
            stat = await self._source.stat(path)
        except OSError:
            log.debug("%s was deleted before its update fired", path)
            self._remove(path)
            return

        old = self._files.get(path)
        content_hash = hash_content(content)
        if old is not None and old.content_hash == content_hash:
            log.debug("No changes in %s", path)
            return

        # No awaits below: the mutation completes before anything else runs
        entry, entry_tags = self._build_entry(path, content, stat, content_hash=content_hash)
        self._discard_contribution(path, old)

        is_new = old is None
        self._files[path] = entry
        if is_new:
            self._resolver.update_index(self._capture())

        entry = self._resolve_entry(self._resolver, entry)
        self._files[path] = entry
        for link in entry.outgoing_links:
            if link.target_file:
                _add_member(self._backlinks, link.target_file, path)
        self._file_tags[path] = entry_tags
        for tag in entry_tags:
            _add_member(self._tags, tag, path)

        old_count = len(old.outgoing_links) if old is not None else 0
        self._adjust_counts(
            files_delta=1 if is_new else 0,
            links_delta=len(entry.outgoing_links) - old_count,
        )

        if is_new:
            # Links elsewhere may have been waiting for this note, or settled
            # for a fuzzy match that this note now beats
            self._reresolve(
                (source for source in list(self._files) if source != path),
                lambda link: not _is_exact_match(link),
            )

        self._changed()
        log.debug("Updated %s (%d links)", path, len(entry.outgoing_links))

    # ─────────────────────────────────────────────────────────────────────
    # Removal
    # ─────────────────────────────────────────────────────────────────────

    async def remove_file(self, path: str) -> None:
        """Remove a note from the index. Unknown paths are ignored."""
        key = self.resolve_path(path)

        pending = self._pending.pop(key, None)
        if pending is not None:
            pending.cancel()

        if self._building:
            self._defer(key, None)
            return

        self._remove(key)

    def _remove(self, key: str) -> None:
        entry = self._files.pop(key, None)
        if entry is None:
            log.debug("Not indexed, nothing to remove: %s", key)
            return

        self._discard_contribution(key, entry)
        self._adjust_counts(files_delta=-1, links_delta=-len(entry.outgoing_links))

        # Notes that linked here must find another target or become broken
        linking_sources = self._backlinks.pop(key, set())
        self._resolver.update_index(self._capture())
        self._reresolve(linking_sources, lambda link: link.target_file == key)

        self._changed()
        log.debug("Removed %s", key)

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle
    # ─────────────────────────────────────────────────────────────────────

    def close(self) -> None:
        """Cancel pending updates and drop all listeners."""
        for task in self._pending.values():
            task.cancel()
        self._pending.clear()
        self._deferred.clear()
        self._listeners.clear()
        self._closed = True

    def __enter__(self) -> LinkIndexService:
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()

    # ─────────────────────────────────────────────────────────────────────
    # Internals
    # ─────────────────────────────────────────────────────────────────────

    def _make_resolver(self, snapshot: IndexSnapshot) -> LinkResolver:
        return LinkResolver(
            snapshot,
            fuzzy_threshold=self._settings.fuzzy_threshold,
            candidate_limit=self._settings.candidate_limit,
        )

    def _capture(self) -> IndexSnapshot:
        self._snapshot = None
        return self.get_index()

    def _changed(self) -> IndexSnapshot:
        """Publish the new index to the resolver and all listeners."""
        snapshot = self._capture()
        self._resolver.update_index(snapshot)
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception:
                log.exception("Index change listener failed")
        return snapshot

    def _build_entry(
        self,
        path: str,
        content: str,
        stat: NoteStat,
        *,
        content_hash: str | None = None,
    ) -> tuple[FileEntry, list[str]]:
        result = parse_links(content, path, self._parse_options)
        for error in result.errors:
            log.debug("%s: %s", path, error)

        name = Path(path).stem
        entry = FileEntry(
            path=path,
            name=name,
            last_indexed=datetime.now(UTC),
            content_hash=content_hash or hash_content(content),
            outgoing_links=tuple(result.links),
            metadata=FileMetadata(
                title=extract_title(name, content),
                size=stat.size,
                created_at=stat.created_at,
                modified_at=stat.modified_at,
            ),
        )
        return entry, result.tags

    @staticmethod
    def _resolve_entry(resolver: LinkResolver, entry: FileEntry) -> FileEntry:
        links = tuple(
            resolver.resolve_link(link, entry.path, include_candidates=False).link
            for link in entry.outgoing_links
        )
        return entry.model_copy(update={"outgoing_links": links})

    def _discard_contribution(self, path: str, entry: FileEntry | None) -> None:
        """Remove path as a link source and as a tag member."""
        if entry is not None:
            for link in entry.outgoing_links:
                if link.target_file:
                    _discard_member(self._backlinks, link.target_file, path)
        for tag in self._file_tags.pop(path, []):
            _discard_member(self._tags, tag, path)

    def _reresolve(self, sources: Iterable[str], should_resolve: Callable[[LinkInstance], bool]) -> None:
        """Resolve again the selected links of the given notes, moving their backlinks."""
        for source in sources:
            entry = self._files.get(source)
            if entry is None:
                continue

            links: list[LinkInstance] = []
            changed = False
            for link in entry.outgoing_links:
                if should_resolve(link):
                    link = self._resolver.resolve_link(link, source, include_candidates=False).link
                    changed = True
                links.append(link)

            if not changed:
                continue

            old_targets = {link.target_file for link in entry.outgoing_links if link.target_file}
            new_targets = {link.target_file for link in links if link.target_file}
            for target in old_targets - new_targets:
                _discard_member(self._backlinks, target, source)
            for target in new_targets - old_targets:
                _add_member(self._backlinks, target, source)
            self._files[source] = entry.model_copy(update={"outgoing_links": tuple(links)})

    def _adjust_counts(self, *, files_delta: int, links_delta: int) -> None:
        self._metadata = self._metadata.model_copy(
            update={
                "total_files": max(0, self._metadata.total_files + files_delta),
                "total_links": self._metadata.total_links + links_delta,
            }
        )
