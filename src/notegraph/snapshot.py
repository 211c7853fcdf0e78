"""Immutable view of the link index."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from types import MappingProxyType
from typing import Any

from .config import INDEX_VERSION
from .models import FileEntry, IndexMetadata


def _frozen_sets(source: Mapping[str, set[str] | frozenset[str]]) -> Mapping[str, frozenset[str]]:
    return MappingProxyType({key: frozenset(values) for key, values in source.items()})


@dataclass(frozen=True)
class IndexSnapshot:
    """Read-only index handed to resolvers, query providers and listeners.

    The mappings are proxies over private copies and the entries are
    frozen models, so holders cannot change the live index through a
    snapshot. Entries are shared with the live index rather than copied.
    """

    files: Mapping[str, FileEntry] = field(default_factory=lambda: MappingProxyType({}))
    backlinks: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))
    tags: Mapping[str, frozenset[str]] = field(default_factory=lambda: MappingProxyType({}))
    metadata: IndexMetadata = field(
        default_factory=lambda: IndexMetadata(version=INDEX_VERSION, last_build_time=datetime.now(UTC))
    )

    @classmethod
    def capture(
        cls,
        files: Mapping[str, FileEntry],
        backlinks: Mapping[str, set[str]],
        tags: Mapping[str, set[str]],
        metadata: IndexMetadata,
    ) -> IndexSnapshot:
        """Copy the given maps into a new snapshot."""
        return cls(
            files=MappingProxyType(dict(files)),
            backlinks=_frozen_sets(backlinks),
            tags=_frozen_sets(tags),
            metadata=metadata,
        )

    def check_invariants(self) -> list[str]:
        return check_invariants(self.files, self.backlinks, self.tags, self.metadata)

    def to_dict(self) -> dict[str, Any]:
        """JSON-serializable form of the index."""
        return {
            "files": {path: entry.model_dump(mode="json") for path, entry in self.files.items()},
            "backlinks": {target: sorted(sources) for target, sources in self.backlinks.items()},
            "tags": {tag: sorted(paths) for tag, paths in self.tags.items()},
            "metadata": self.metadata.model_dump(mode="json"),
        }


def check_invariants(
    files: Mapping[str, FileEntry],
    backlinks: Mapping[str, set[str] | frozenset[str]],
    tags: Mapping[str, set[str] | frozenset[str]],
    metadata: IndexMetadata,
) -> list[str]:
    """Describe every consistency violation in the given index maps.

    Returns:
        Violation messages; empty when the index is consistent.
    """
    problems: list[str] = []

    if len(files) != metadata.total_files:
        problems.append(f"total_files is {metadata.total_files} but {len(files)} files are indexed")

    link_count = sum(len(entry.outgoing_links) for entry in files.values())
    if link_count != metadata.total_links:
        problems.append(f"total_links is {metadata.total_links} but files hold {link_count} links")

    expected: dict[str, set[str]] = {}
    for entry in files.values():
        for link in entry.outgoing_links:
            if link.target_file:
                expected.setdefault(link.target_file, set()).add(entry.path)

    for target, sources in backlinks.items():
        if not sources:
            problems.append(f"empty backlink set for {target}")
        if target not in files:
            problems.append(f"backlinks kept for unindexed file {target}")
        for source in sources:
            if source not in files:
                problems.append(f"backlink source {source} is not indexed")
        if set(sources) != expected.get(target, set()):
            problems.append(f"backlinks for {target} do not match outgoing links")

    for target in expected.keys() - backlinks.keys():
        problems.append(f"missing backlinks for {target}")

    for tag, paths in tags.items():
        if not paths:
            problems.append(f"empty tag set for #{tag}")
        for path in paths:
            if path not in files:
                problems.append(f"tag #{tag} references unindexed file {path}")

    return problems
