"""Tests for LinkIndexService: full rebuilds, debounced updates and removals.

Every test that changes the index also checks the index invariants
(counters, backlinks as the inverse of resolved links, tag membership).
"""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from conftest import create_note
from notegraph.config import IndexSettings
from notegraph.indexer import FileSystemNoteSource, LinkIndexService
from notegraph.snapshot import IndexSnapshot


def key(root: Path, rel: str) -> str:
    return str(root / rel)


def record(service: LinkIndexService) -> list[IndexSnapshot]:
    """Collect every snapshot the service publishes."""
    events: list[IndexSnapshot] = []
    service.on_index_changed(events.append)
    return events


def backlinks_of(snapshot: IndexSnapshot, root: Path, rel: str) -> set[str]:
    return set(snapshot.backlinks.get(key(root, rel), frozenset()))


class GatedNoteSource(FileSystemNoteSource):
    """Filesystem source whose read of one note waits until the gate opens."""

    def __init__(self, root: Path, block_on: str) -> None:
        super().__init__(root)
        self.block_on = block_on
        self.reading = asyncio.Event()
        self.gate = asyncio.Event()

    async def read(self, path: str):
        if path.endswith(self.block_on):
            self.reading.set()
            await self.gate.wait()
        return await super().read(path)


# ─────────────────────────────────────────────────────────────────────────────
# Note Source
# ─────────────────────────────────────────────────────────────────────────────


class TestFileSystemNoteSource:
    @pytest.mark.asyncio
    async def test_discover_is_sorted_and_recursive(self, notes_root, source):
        create_note(notes_root, "b.md", "")
        create_note(notes_root, "a.md", "")
        create_note(notes_root, "sub/c.md", "")

        assert await source.discover() == [
            key(notes_root, "a.md"),
            key(notes_root, "b.md"),
            key(notes_root, "sub/c.md"),
        ]

    @pytest.mark.asyncio
    async def test_discover_skips_excluded_and_non_markdown(self, notes_root, source):
        create_note(notes_root, "keep.md", "")
        create_note(notes_root, "upper.MD", "")
        create_note(notes_root, "image.png", "")
        create_note(notes_root, "node_modules/pkg/readme.md", "")
        create_note(notes_root, ".git/notes.md", "")
        create_note(notes_root, ".obsidian/workspace.md", "")

        assert await source.discover() == [key(notes_root, "keep.md"), key(notes_root, "upper.MD")]

    @pytest.mark.asyncio
    async def test_custom_exclude_dirs(self, notes_root):
        create_note(notes_root, "keep.md", "")
        create_note(notes_root, "archive/old.md", "")
        source = FileSystemNoteSource(notes_root, exclude_dirs=["archive"])

        assert await source.discover() == [key(notes_root, "keep.md")]

    @pytest.mark.asyncio
    async def test_missing_root_discovers_nothing(self, tmp_path):
        source = FileSystemNoteSource(tmp_path / "does-not-exist")

        assert await source.discover() == []

    @pytest.mark.asyncio
    async def test_read_returns_text_and_stat(self, notes_root, source):
        path = create_note(notes_root, "note.md", "hello")

        note = await source.read(str(path))

        assert note.text == "hello"
        assert note.stat.size == 5

    @pytest.mark.asyncio
    async def test_stat_missing_file_raises(self, notes_root, source):
        with pytest.raises(OSError):
            await source.stat(key(notes_root, "missing.md"))

    def test_resolve_relative_and_absolute(self, notes_root, source):
        assert source.resolve("sub/../note.md") == notes_root / "note.md"
        assert source.resolve(str(notes_root / "note.md")) == notes_root / "note.md"

    def test_contains(self, notes_root, tmp_path, source):
        assert source.contains(notes_root / "sub" / "note.md")
        assert not source.contains(notes_root / ".git" / "note.md")
        assert not source.contains(tmp_path / "outside.md")


# ─────────────────────────────────────────────────────────────────────────────
# Full Rebuild
# ─────────────────────────────────────────────────────────────────────────────


class TestRebuild:
    @pytest.mark.asyncio
    async def test_empty_directory(self, service):
        snapshot = await service.rebuild_index()

        assert dict(snapshot.files) == {}
        assert snapshot.metadata.total_files == 0
        assert snapshot.metadata.total_links == 0

    @pytest.mark.asyncio
    async def test_indexes_files_links_and_tags(self, service, language_notes):
        root = language_notes

        snapshot = await service.rebuild_index()

        assert snapshot.metadata.total_files == 4
        assert snapshot.metadata.total_links == 4
        assert backlinks_of(snapshot, root, "rust.md") == {key(root, "python.md")}
        assert backlinks_of(snapshot, root, "golang.md") == {key(root, "python.md")}
        assert backlinks_of(snapshot, root, "python.md") == {key(root, "rust.md")}
        assert set(snapshot.tags["lang"]) == {key(root, "python.md"), key(root, "rust.md")}
        assert set(snapshot.tags["systems"]) == {key(root, "rust.md")}
        assert snapshot.check_invariants() == []

    @pytest.mark.asyncio
    async def test_entry_fields(self, service, language_notes):
        snapshot = await service.rebuild_index()

        entry = snapshot.files[key(language_notes, "python.md")]
        assert entry.name == "python"
        assert entry.metadata.title == "Python"
        assert entry.metadata.size > 0
        assert [link.target_file for link in entry.outgoing_links] == [
            key(language_notes, "rust.md"),
            key(language_notes, "golang.md"),
        ]
        assert all(link.target_exists for link in entry.outgoing_links)

    @pytest.mark.asyncio
    async def test_broken_link_has_no_backlink(self, service, language_notes):
        snapshot = await service.rebuild_index()

        link = snapshot.files[key(language_notes, "haskell.md")].outgoing_links[0]
        assert link.target_exists is False
        assert link.target_file is None
        assert all(key(language_notes, "haskell.md") not in sources for sources in snapshot.backlinks.values())

    @pytest.mark.asyncio
    async def test_links_resolve_regardless_of_file_order(self, service, notes_root):
        """Links to files discovered later in the walk still resolve."""
        create_note(notes_root, "aaa-first.md", "[[zzz-last]]")
        create_note(notes_root, "zzz-last.md", "[[aaa-first]]")

        snapshot = await service.rebuild_index()

        assert backlinks_of(snapshot, notes_root, "zzz-last.md") == {key(notes_root, "aaa-first.md")}
        assert backlinks_of(snapshot, notes_root, "aaa-first.md") == {key(notes_root, "zzz-last.md")}

    @pytest.mark.asyncio
    async def test_rebuild_is_idempotent(self, service, language_notes):
        first = await service.rebuild_index()
        second = await service.rebuild_index()

        assert first.files.keys() == second.files.keys()
        assert dict(first.backlinks) == dict(second.backlinks)
        assert dict(first.tags) == dict(second.tags)
        assert first.metadata.total_files == second.metadata.total_files
        assert first.metadata.total_links == second.metadata.total_links
        for path, entry in first.files.items():
            assert entry.outgoing_links == second.files[path].outgoing_links

    @pytest.mark.asyncio
    async def test_rebuild_drops_deleted_files(self, service, language_notes):
        await service.rebuild_index()
        (language_notes / "rust.md").unlink()

        snapshot = await service.rebuild_index()

        assert key(language_notes, "rust.md") not in snapshot.files
        assert "systems" not in snapshot.tags
        assert snapshot.check_invariants() == []

    @pytest.mark.asyncio
    async def test_unreadable_file_is_skipped(self, service, language_notes):
        (language_notes / "binary.md").write_bytes(b"\xff\xfe\x00\x81 not utf-8")

        snapshot = await service.rebuild_index()

        assert key(language_notes, "binary.md") not in snapshot.files
        assert snapshot.metadata.total_files == 4

    @pytest.mark.asyncio
    async def test_concurrent_rebuild_is_rejected(self, service, language_notes):
        events = record(service)

        first, second = await asyncio.gather(service.rebuild_index(), service.rebuild_index())

        assert first.metadata.total_files == 4
        assert second.metadata.total_files == 0
        assert len(events) == 1
        assert service.is_building is False

    @pytest.mark.asyncio
    async def test_settings_disable_markdown_links(self, notes_root, language_notes):
        settings = IndexSettings(enable_markdown_links=False)
        service = LinkIndexService(FileSystemNoteSource(notes_root), settings)

        snapshot = await service.rebuild_index()

        assert key(notes_root, "golang.md") not in snapshot.backlinks
        assert snapshot.metadata.total_links == 3

    @pytest.mark.asyncio
    async def test_edit_during_rebuild_is_applied_after(self, language_notes):
        root = language_notes
        # rust.md is read last, after python.md has been parsed
        source = GatedNoteSource(root, block_on="rust.md")
        service = LinkIndexService(source, debounce_seconds=0.01)
        rebuild = asyncio.create_task(service.rebuild_index())
        await source.reading.wait()

        create_note(root, "python.md", "# Python\n\nno links now\n")
        await service.update_file(key(root, "python.md"), "# Python\n\nno links now\n")
        await service.wait_pending()
        assert service.is_building

        source.gate.set()
        await rebuild

        snapshot = service.get_index()
        assert snapshot.files[key(root, "python.md")].outgoing_links == ()
        assert backlinks_of(snapshot, root, "rust.md") == set()
        assert backlinks_of(snapshot, root, "golang.md") == set()
        assert snapshot.metadata.total_links == 2
        assert service.is_building is False
        assert service.check_invariants() == []
        service.close()

    @pytest.mark.asyncio
    async def test_removal_during_rebuild_is_applied_after(self, language_notes):
        root = language_notes
        source = GatedNoteSource(root, block_on="rust.md")
        service = LinkIndexService(source, debounce_seconds=0.01)
        rebuild = asyncio.create_task(service.rebuild_index())
        await source.reading.wait()

        await service.remove_file(key(root, "golang.md"))
        source.gate.set()
        await rebuild

        snapshot = service.get_index()
        assert key(root, "golang.md") not in snapshot.files
        go_link = snapshot.files[key(root, "python.md")].outgoing_links[1]
        assert go_link.title == "golang.md"
        assert go_link.target_exists is False
        assert snapshot.metadata.total_files == 3
        assert service.check_invariants() == []
        service.close()


# ─────────────────────────────────────────────────────────────────────────────
# Single-File Updates
# ─────────────────────────────────────────────────────────────────────────────


class TestUpdateFile:
    @pytest.mark.asyncio
    async def test_changed_links_move_backlinks(self, service, language_notes):
        root = language_notes
        await service.rebuild_index()
        content = "# Python\n\nOnly [[golang]] now.\n"
        create_note(root, "python.md", content)

        await service.update_file(key(root, "python.md"), content)
        await service.wait_pending()

        snapshot = service.get_index()
        assert key(root, "rust.md") not in snapshot.backlinks
        assert backlinks_of(snapshot, root, "golang.md") == {key(root, "python.md")}
        assert "lang" not in {tag for tag, paths in snapshot.tags.items() if key(root, "python.md") in paths}
        assert snapshot.metadata.total_links == 3
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_relative_path_is_accepted(self, service, language_notes):
        await service.rebuild_index()
        content = "[[rust]] [[golang]] [[haskell]]"
        create_note(language_notes, "python.md", content)

        await service.update_file("python.md", content)
        await service.wait_pending()

        entry = service.get_index().files[key(language_notes, "python.md")]
        assert len(entry.outgoing_links) == 3
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_burst_of_edits_applies_once(self, service, language_notes):
        await service.rebuild_index()
        events = record(service)
        path = key(language_notes, "golang.md")

        for n in range(5):
            content = f"# Go\n\nEdit {n}: [[rust]]\n" if n < 4 else "# Go\n\nFinal: [[python]]\n"
            create_note(language_notes, "golang.md", content)
            await service.update_file(path, content)

        assert service.pending_updates == [path]
        await service.wait_pending()

        assert len(events) == 1
        links = service.get_index().files[path].outgoing_links
        assert [link.title for link in links] == ["python"]
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_unchanged_content_is_skipped(self, service, language_notes):
        await service.rebuild_index()
        events = record(service)
        path = language_notes / "rust.md"

        await service.update_file(str(path), path.read_text())
        await service.wait_pending()

        assert events == []

    @pytest.mark.asyncio
    async def test_new_file_fixes_broken_links(self, service, language_notes):
        root = language_notes
        await service.rebuild_index()
        content = "# Monads\n\nBack to [[haskell]]. #fp\n"
        create_note(root, "haskell-monads.md", content)

        await service.update_file(key(root, "haskell-monads.md"), content)
        await service.wait_pending()

        snapshot = service.get_index()
        link = snapshot.files[key(root, "haskell.md")].outgoing_links[0]
        assert link.target_exists is True
        assert link.target_file == key(root, "haskell-monads.md")
        assert backlinks_of(snapshot, root, "haskell-monads.md") == {key(root, "haskell.md")}
        assert backlinks_of(snapshot, root, "haskell.md") == {key(root, "haskell-monads.md")}
        assert snapshot.metadata.total_files == 5
        assert snapshot.metadata.total_links == 5
        assert set(snapshot.tags["fp"]) == {key(root, "haskell-monads.md")}
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_new_file_takes_over_fuzzy_match(self, service, notes_root):
        root = notes_root
        create_note(root, "grape.md", "")
        create_note(root, "orchard.md", "[[grap]]")
        await service.rebuild_index()
        link = service.get_index().files[key(root, "orchard.md")].outgoing_links[0]
        assert link.target_file == key(root, "grape.md")

        create_note(root, "grap.md", "")
        await service.update_file(key(root, "grap.md"), "")
        await service.wait_pending()

        snapshot = service.get_index()
        link = snapshot.files[key(root, "orchard.md")].outgoing_links[0]
        assert link.target_file == key(root, "grap.md")
        assert backlinks_of(snapshot, root, "grap.md") == {key(root, "orchard.md")}
        assert key(root, "grape.md") not in snapshot.backlinks
        assert service.check_invariants() == []

        rebuilt = await service.rebuild_index()
        assert rebuilt.files[key(root, "orchard.md")].outgoing_links[0].target_file == link.target_file

    @pytest.mark.asyncio
    async def test_file_deleted_before_update_fires(self, service, language_notes):
        root = language_notes
        await service.rebuild_index()
        path = root / "rust.md"

        await service.update_file(str(path), "# Rust\n\nChanged [[golang]]\n")
        path.unlink()
        await service.wait_pending()

        snapshot = service.get_index()
        assert str(path) not in snapshot.files
        assert backlinks_of(snapshot, root, "python.md") == set()
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_listener_errors_do_not_stop_others(self, service, language_notes):
        def broken_listener(snapshot):
            raise RuntimeError("listener failed")

        service.on_index_changed(broken_listener)
        events = record(service)

        await service.rebuild_index()

        assert len(events) == 1

    @pytest.mark.asyncio
    async def test_disposed_listener_is_not_called(self, service, language_notes):
        events: list[IndexSnapshot] = []
        subscription = service.on_index_changed(events.append)
        subscription.dispose()
        subscription.dispose()

        await service.rebuild_index()

        assert events == []

    @pytest.mark.asyncio
    async def test_close_cancels_pending_updates(self, service, language_notes):
        await service.rebuild_index()
        events = record(service)

        await service.update_file(key(language_notes, "golang.md"), "[[rust]]")
        service.close()
        await asyncio.sleep(0.05)

        assert service.pending_updates == []
        assert events == []

        await service.update_file(key(language_notes, "golang.md"), "[[rust]]")
        assert service.pending_updates == []


# ─────────────────────────────────────────────────────────────────────────────
# Removal
# ─────────────────────────────────────────────────────────────────────────────


class TestRemoveFile:
    @pytest.mark.asyncio
    async def test_remove_prunes_everything(self, service, language_notes):
        root = language_notes
        await service.rebuild_index()
        removed = key(root, "rust.md")

        await service.remove_file(removed)

        snapshot = service.get_index()
        assert removed not in snapshot.files
        assert removed not in snapshot.backlinks
        assert all(removed not in sources for sources in snapshot.backlinks.values())
        assert "systems" not in snapshot.tags
        assert all(removed not in paths for paths in snapshot.tags.values())
        assert snapshot.metadata.total_files == 3
        assert snapshot.metadata.total_links == 3
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_links_to_removed_file_become_broken(self, service, language_notes):
        await service.rebuild_index()

        await service.remove_file(key(language_notes, "rust.md"))

        links = service.get_index().files[key(language_notes, "python.md")].outgoing_links
        assert links[0].title == "rust"
        assert links[0].target_exists is False
        assert links[0].target_file is None

    @pytest.mark.asyncio
    async def test_remove_unknown_path_is_noop(self, service, language_notes):
        await service.rebuild_index()
        events = record(service)

        await service.remove_file(key(language_notes, "never-indexed.md"))

        assert events == []
        assert service.get_index().metadata.total_files == 4

    @pytest.mark.asyncio
    async def test_remove_cancels_pending_update(self, service, language_notes):
        await service.rebuild_index()
        path = key(language_notes, "golang.md")

        await service.update_file(path, "# Go\n\n[[rust]]\n")
        await service.remove_file(path)
        await service.wait_pending()
        await asyncio.sleep(0.05)

        assert path not in service.get_index().files
        assert service.pending_updates == []
        assert service.check_invariants() == []

    @pytest.mark.asyncio
    async def test_remove_then_recreate(self, service, language_notes):
        root = language_notes
        await service.rebuild_index()
        content = (root / "rust.md").read_text()

        await service.remove_file("rust.md")
        await service.update_file("rust.md", content)
        await service.wait_pending()

        snapshot = service.get_index()
        assert backlinks_of(snapshot, root, "rust.md") == {key(root, "python.md")}
        assert backlinks_of(snapshot, root, "python.md") == {key(root, "rust.md")}
        assert snapshot.metadata.total_files == 4
        assert service.check_invariants() == []


# ─────────────────────────────────────────────────────────────────────────────
# Queries
# ─────────────────────────────────────────────────────────────────────────────


class TestQueries:
    @pytest.mark.asyncio
    async def test_stats(self, service, language_notes):
        await service.rebuild_index()

        stats = service.get_stats()

        assert stats.total_files == 4
        assert stats.total_links == 4
        assert stats.total_tags == 2
        assert stats.last_build_time_ms >= 0

    @pytest.mark.asyncio
    async def test_tags_most_used_first(self, service, language_notes):
        await service.rebuild_index()

        tags = service.get_tags()

        assert [(summary.tag, summary.count) for summary in tags] == [("lang", 2), ("systems", 1)]
        assert service.get_tags(min_count=2)[0].files == sorted(
            [key(language_notes, "python.md"), key(language_notes, "rust.md")]
        )
        assert [summary.tag for summary in service.get_tags(min_count=2)] == ["lang"]

    @pytest.mark.asyncio
    async def test_snapshot_is_read_only(self, service, language_notes):
        snapshot = await service.rebuild_index()

        with pytest.raises(TypeError):
            snapshot.files["/elsewhere.md"] = snapshot.files[key(language_notes, "rust.md")]

    @pytest.mark.asyncio
    async def test_old_snapshot_is_unaffected_by_updates(self, service, language_notes):
        before = await service.rebuild_index()

        await service.remove_file(key(language_notes, "rust.md"))

        assert key(language_notes, "rust.md") in before.files
        assert before.metadata.total_files == 4

    def test_resolve_path(self, service, notes_root):
        assert service.resolve_path("sub/note.md") == key(notes_root, "sub/note.md")
        assert service.resolve_path(notes_root / "note.md") == key(notes_root, "note.md")
