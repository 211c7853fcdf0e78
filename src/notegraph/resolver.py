"""Resolution of link titles to indexed note files.

Resolution tries, in order:
1. Exact file name match (case-sensitive)
2. Case-insensitive file name match
3. Fuzzy match by Levenshtein distance (handles typos)
4. Substring match

Links that still do not resolve get a ranked list of candidate files
scored independently of the tiers above.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Sequence
from urllib.parse import unquote

from .config import DEFAULT_CANDIDATE_LIMIT, FUZZY_MATCH_THRESHOLD
from .models import FileEntry, LinkInstance, LinkResolution
from .parser.links import normalize_link_target
from .snapshot import IndexSnapshot

log = logging.getLogger(__name__)

# Candidate scores, highest first
SCORE_EXACT = 1000
SCORE_EXACT_WITHOUT_EXT = 950
SCORE_PREFIX = 500
SCORE_PREFIX_WITHOUT_EXT = 450
SCORE_SUBSTRING = 300
SCORE_SUBSTRING_WITHOUT_EXT = 250
SCORE_FUZZY = 100
SCORE_FUZZY_WITHOUT_EXT = 90
SCORE_FUZZY_STEP = 20


def resolution_key(title: str) -> str:
    """Turn a link title into the file name key used for matching.

    Drops any ``#heading`` fragment and percent-encoding, then normalizes.
    Returns an empty string for titles with no file part.
    """
    file_part = unquote(title.split("#", 1)[0]).strip()
    if not file_part:
        return ""
    return normalize_link_target(file_part)


def levenshtein_distance(first: str, second: str) -> int:
    """Minimum number of single-character edits turning first into second."""
    if len(first) < len(second):
        first, second = second, first
    previous = list(range(len(second) + 1))
    for i, a in enumerate(first, start=1):
        current = [i]
        for j, b in enumerate(second, start=1):
            current.append(
                min(
                    previous[j - 1] + (a != b),  # substitution
                    previous[j] + 1,  # deletion
                    current[j - 1] + 1,  # insertion
                )
            )
        previous = current
    return previous[-1]


def _strip_md(name: str) -> str:
    return name[:-3] if name.endswith(".md") else name


def _file_name(path: str) -> str:
    return os.path.basename(path)


class LinkResolver:
    """Resolve link titles against the files of an index snapshot.

    Results are memoized per resolution key until update_index() is called.
    """

    def __init__(
        self,
        index: IndexSnapshot,
        *,
        fuzzy_threshold: int = FUZZY_MATCH_THRESHOLD,
        candidate_limit: int = DEFAULT_CANDIDATE_LIMIT,
    ) -> None:
        self._index = index
        self._fuzzy_threshold = fuzzy_threshold
        self._candidate_limit = candidate_limit
        self._match_cache: dict[tuple[str, str | None], FileEntry | None] = {}

    @property
    def index(self) -> IndexSnapshot:
        return self._index

    def resolve_link(
        self,
        link: LinkInstance,
        source_file: str,
        *,
        include_candidates: bool = True,
    ) -> LinkResolution:
        """Resolve a link to its target file.

        Args:
            link: The parsed link.
            source_file: Path of the note containing the link.
            include_candidates: Rank alternative files as well. Indexing
                passes False since it only needs the target.

        Returns:
            LinkResolution with the resolved link copy and candidates.
        """
        key = resolution_key(link.title)
        match: FileEntry | None = None

        if key:
            source_dir = os.path.dirname(source_file)
            # Path-style keys depend on where the linking note lives
            cache_key = (key, source_dir if "/" in key else None)
            if cache_key in self._match_cache:
                match = self._match_cache[cache_key]
            else:
                match = self.find_best_match(key, source_dir, list(self._index.files.values()))
                self._match_cache[cache_key] = match

        target_file = match.path if match is not None else None
        resolved = link.model_copy(update={"target_file": target_file, "target_exists": match is not None})
        candidates = (
            self.get_candidates(link.title, self._candidate_limit) if include_candidates else []
        )

        if match is None:
            log.debug("Unresolved link %r in %s", link.title, source_file)

        return LinkResolution(
            link=resolved,
            target_file=target_file,
            exists=match is not None,
            candidates=candidates,
        )

    def find_best_match(
        self,
        target: str,
        source_dir: str,
        files: Sequence[FileEntry],
    ) -> FileEntry | None:
        """Find the best matching file for a normalized link target.

        Args:
            target: Normalized target (e.g. "my-note.md").
            source_dir: Directory of the linking note, for path-style targets.
            files: Candidate files in index order.

        Returns:
            The first file matched by the highest-priority tier, or None.
        """
        if not files or not target:
            return None

        if "/" in target:
            match = self._match_path(target, source_dir, files)
            if match is not None:
                return match
            target = target.rsplit("/", 1)[-1]
            if not target:
                return None

        for file in files:
            if target == _file_name(file.path):
                return file

        lower_target = target.lower()
        for file in files:
            if lower_target == _file_name(file.path).lower():
                return file

        best_match: FileEntry | None = None
        best_distance = self._fuzzy_threshold
        target_without_ext = _strip_md(lower_target)

        for file in files:
            file_name = _file_name(file.path).lower()

            distance = levenshtein_distance(lower_target, file_name)
            if distance < best_distance:
                best_distance = distance
                best_match = file

            distance = levenshtein_distance(target_without_ext, _strip_md(file_name))
            if distance < best_distance:
                best_distance = distance
                best_match = file

        if best_match is not None:
            return best_match

        for file in files:
            if lower_target in _file_name(file.path).lower():
                return file

        return None

    def _match_path(self, target: str, source_dir: str, files: Sequence[FileEntry]) -> FileEntry | None:
        """Match a target containing directories, relative to the source note first."""
        relative = os.path.normpath(os.path.join(source_dir, target)).lower()
        for file in files:
            if os.path.normpath(file.path).lower() == relative:
                return file

        parts = [part for part in target.split("/") if part not in ("", ".", "..")]
        suffix = "/" + "/".join(parts)
        for file in files:
            if file.path.replace(os.sep, "/").lower().endswith(suffix):
                return file
        return None

    def get_candidates(self, link_target: str, limit: int = DEFAULT_CANDIDATE_LIMIT) -> list[FileEntry]:
        """Rank files that could be meant by a link title.

        Args:
            link_target: Link title as written.
            limit: Maximum number of candidates.

        Returns:
            Files with a positive score, best first.
        """
        key = resolution_key(link_target)
        if not key:
            return []

        target = key.rsplit("/", 1)[-1].lower()
        target_without_ext = _strip_md(target)

        scored: list[tuple[int, FileEntry]] = []
        for file in self._index.files.values():
            file_name = _file_name(file.path).lower()
            score = self._score_match(target, file_name, _strip_md(file_name), target_without_ext)
            if score > 0:
                scored.append((score, file))

        # sort is stable, so equal scores keep index order
        scored.sort(key=lambda item: item[0], reverse=True)
        return [file for _, file in scored[:limit]]

    def _score_match(
        self,
        target: str,
        file_name: str,
        file_without_ext: str,
        target_without_ext: str,
    ) -> int:
        if target == file_name:
            return SCORE_EXACT
        if target_without_ext == file_without_ext:
            return SCORE_EXACT_WITHOUT_EXT
        if file_name.startswith(target):
            return SCORE_PREFIX
        if file_without_ext.startswith(target_without_ext):
            return SCORE_PREFIX_WITHOUT_EXT
        if target in file_name:
            return SCORE_SUBSTRING
        if target_without_ext in file_without_ext:
            return SCORE_SUBSTRING_WITHOUT_EXT

        distance = levenshtein_distance(target, file_name)
        if distance <= self._fuzzy_threshold:
            return max(0, SCORE_FUZZY - distance * SCORE_FUZZY_STEP)

        distance = levenshtein_distance(target_without_ext, file_without_ext)
        if distance <= self._fuzzy_threshold:
            return max(0, SCORE_FUZZY_WITHOUT_EXT - distance * SCORE_FUZZY_STEP)

        return 0

    def is_linked(self, link_from: str, link_to: str) -> bool:
        """Whether link_from has a link resolved to link_to."""
        return self.get_link(link_from, link_to) is not None

    def get_link(self, link_from: str, link_to: str) -> LinkInstance | None:
        """First link in link_from resolved to link_to, if any."""
        entry = self._index.files.get(link_from)
        if entry is None:
            return None
        for link in entry.outgoing_links:
            if link.target_file == link_to:
                return link
        return None

    def update_index(self, index: IndexSnapshot) -> None:
        """Switch to a new snapshot and drop memoized matches."""
        self._index = index
        self._match_cache.clear()
