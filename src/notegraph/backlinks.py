"""Backlink and graph queries over an index snapshot.

Graph traversals treat links as undirected: a link from A to B lets a
search step from A to B and from B to A.
"""

from __future__ import annotations

from collections import deque

from .models import BrokenLink, FileEntry, LinkInstance, LinkValidationReport
from .snapshot import IndexSnapshot


class BacklinksProvider:
    """Read-only link queries against an IndexSnapshot.

    Distances are memoized until update_index() is called.
    """

    def __init__(self, index: IndexSnapshot) -> None:
        self._index = index
        self._distance_cache: dict[tuple[str, str], int] = {}

    @property
    def index(self) -> IndexSnapshot:
        return self._index

    def update_index(self, index: IndexSnapshot) -> None:
        """Switch to a new snapshot and drop cached distances."""
        self._index = index
        self._distance_cache.clear()

    def get_backlinks_for(self, file_path: str) -> list[FileEntry]:
        """Notes that link to file_path."""
        if not file_path:
            return []
        sources = self._index.backlinks.get(file_path, frozenset())
        return [self._index.files[source] for source in sorted(sources) if source in self._index.files]

    def get_links_from(self, file_path: str) -> list[LinkInstance]:
        """Outgoing links of file_path, broken ones included."""
        entry = self._index.files.get(file_path) if file_path else None
        if entry is None:
            return []
        return list(entry.outgoing_links)

    def count_links_between(self, source: str, target: str) -> int:
        """Number of links in source that resolve to target."""
        return sum(1 for link in self.get_links_from(source) if link.target_file == target)

    def get_distance(self, from_file: str, to_file: str) -> int:
        """Shortest number of link hops between two notes.

        Returns:
            0 for the same note, -1 when either path is empty or not
            indexed, or when no path connects them.
        """
        if not from_file or not to_file:
            return -1
        if from_file == to_file:
            return 0

        cached = self._distance_cache.get((from_file, to_file))
        if cached is not None:
            return cached

        distance = -1
        if from_file in self._index.files and to_file in self._index.files:
            distance = self._search(from_file, to_file)

        self._distance_cache[(from_file, to_file)] = distance
        self._distance_cache[(to_file, from_file)] = distance
        return distance

    def _search(self, from_file: str, to_file: str) -> int:
        visited = {from_file}
        queue: deque[tuple[str, int]] = deque([(from_file, 0)])

        while queue:
            current, distance = queue.popleft()
            for neighbor in self._neighbors(current):
                if neighbor == to_file:
                    return distance + 1
                if neighbor not in visited:
                    visited.add(neighbor)
                    queue.append((neighbor, distance + 1))

        return -1

    def get_connected_graph(self, file_path: str, max_depth: int | None = None) -> dict[str, int]:
        """Notes reachable from file_path, mapped to their distance.

        Args:
            file_path: Start note (not included in the result).
            max_depth: Maximum number of hops; None means unlimited.

        Returns:
            Path -> distance, in breadth-first order.
        """
        if not file_path or (max_depth is not None and max_depth <= 0):
            return {}

        result: dict[str, int] = {}
        visited = {file_path}
        queue: deque[tuple[str, int]] = deque([(file_path, 0)])

        while queue:
            current, distance = queue.popleft()
            if max_depth is not None and distance >= max_depth:
                continue
            for neighbor in self._neighbors(current):
                if neighbor not in visited:
                    visited.add(neighbor)
                    result[neighbor] = distance + 1
                    queue.append((neighbor, distance + 1))

        return result

    def get_files_with_broken_links(self) -> list[FileEntry]:
        """Notes with at least one unresolved link."""
        return [
            entry
            for entry in self._index.files.values()
            if any(not link.target_exists for link in entry.outgoing_links)
        ]

    def get_orphans(self) -> list[FileEntry]:
        """Notes with no resolved outgoing links and no backlinks."""
        return [
            entry
            for path, entry in self._index.files.items()
            if path not in self._index.backlinks
            and not any(link.target_file for link in entry.outgoing_links)
        ]

    def validate_links(self) -> LinkValidationReport:
        """Count valid and broken links across the whole index."""
        report = LinkValidationReport()
        for entry in self._index.files.values():
            for link in entry.outgoing_links:
                if link.target_exists:
                    report.valid += 1
                else:
                    report.broken += 1
                    report.details.append(
                        BrokenLink(source=entry.path, target=link.target_file or link.title, link=link)
                    )
        return report

    def _neighbors(self, file_path: str) -> list[str]:
        """Targets of outgoing links followed by backlink sources, without repeats."""
        neighbors: dict[str, None] = {}

        entry = self._index.files.get(file_path)
        if entry is not None:
            for link in entry.outgoing_links:
                if link.target_file:
                    neighbors[link.target_file] = None

        for source in sorted(self._index.backlinks.get(file_path, frozenset())):
            neighbors[source] = None

        neighbors.pop(file_path, None)
        return list(neighbors)
