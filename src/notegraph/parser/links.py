"""Wikilink, Markdown link and tag extraction."""

from __future__ import annotations

import hashlib
import logging
import re

from ..models import LinkFormat, LinkInstance, ParseOptions, ParseResult, TextPosition, TextRange

log = logging.getLogger(__name__)

# [[target]] or [[target|Display]]. Empty targets are matched so they can be reported.
# Not recursive: in [[outer [[inner]]]] the leftmost match "[[outer [[inner]]" wins.
WIKILINK_PATTERN = re.compile(r"\[\[([^\]|]*)(?:\|([^\]]*))?\]\]")

# [text](target), excluding image embeds ![alt](src)
MARKDOWN_LINK_PATTERN = re.compile(r"(?<!!)\[([^\]]*)\]\(([^)]*)\)")

# #tag at start of content or after whitespace; word#tag does not count
TAG_PATTERN = re.compile(r"(?<!\S)#([A-Za-z0-9_-]+)")

EXTERNAL_TARGET_PATTERN = re.compile(r"^(?:https?://|mailto:)", re.IGNORECASE)

_SEPARATOR_RUN = re.compile(r"[\s_]+")
_TRAILING_HYPHENS = re.compile(r"-+$")


def parse_links(
    content: str,
    source_file: str,
    options: ParseOptions | None = None,
) -> ParseResult:
    """Extract links and tags from note content.

    Never raises: malformed links are reported in ``errors`` and the rest
    of the content is still parsed.

    Args:
        content: Raw markdown text.
        source_file: Path of the note the content belongs to.
        options: Which link syntaxes to extract (both by default).

    Returns:
        ParseResult with links in source order, sorted tags and errors.
    """
    options = options or ParseOptions()

    try:
        found: list[tuple[int, LinkInstance]] = []
        errors: list[str] = []

        if options.enable_wikilinks:
            for match in WIKILINK_PATTERN.finditer(content):
                target = match.group(1).strip()
                display = (match.group(2) or "").strip() or target
                if not target:
                    errors.append(f"Empty wikilink at position {match.start()}")
                found.append(
                    (match.start(), _make_link(content, match, source_file, target, display, "wikilink"))
                )

        if options.enable_markdown_links:
            for match in MARKDOWN_LINK_PATTERN.finditer(content):
                target = match.group(2).strip()
                if target.startswith("#") or EXTERNAL_TARGET_PATTERN.match(target):
                    continue
                display = match.group(1).strip() or target
                found.append(
                    (match.start(), _make_link(content, match, source_file, target, display, "markdown"))
                )

        found.sort(key=lambda item: item[0])
        return ParseResult(
            links=[link for _, link in found],
            tags=extract_tags(content),
            errors=errors,
        )
    except Exception as e:
        log.exception("Critical parsing error in %s", source_file)
        return ParseResult(errors=[f"Critical parsing error: {e}"])


def _make_link(
    content: str,
    match: re.Match[str],
    source_file: str,
    target: str,
    display: str,
    link_format: LinkFormat,
) -> LinkInstance:
    return LinkInstance(
        title=target,
        source_file=source_file,
        range=TextRange(
            start=position_from_offset(content, match.start()),
            end=position_from_offset(content, match.end()),
        ),
        format=link_format,
        display_text=display,
    )


def extract_tags(content: str) -> list[str]:
    """Return unique lowercase tags in lexicographic order."""
    return sorted({match.group(1).lower() for match in TAG_PATTERN.finditer(content)})


def normalize_link_target(link_text: str) -> str:
    """Normalize a link target to a note file name.

    Examples:
        "My Important Note" -> "my-important-note.md"
        "my_note"           -> "my-note.md"
        "note.md"           -> "note.md"
    """
    normalized = link_text.strip().lower()
    normalized = _SEPARATOR_RUN.sub("-", normalized)
    normalized = _TRAILING_HYPHENS.sub("", normalized)
    if not normalized.endswith(".md"):
        normalized = f"{normalized}.md"
    return normalized


def hash_content(content: str) -> str:
    """SHA-256 hex digest of the content, used to detect unchanged files."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def position_from_offset(content: str, offset: int) -> TextPosition:
    """Convert a character offset to a line/column position.

    Carriage returns take no column, so CRLF and LF content give the same
    positions. Offsets past the end clamp to the end of the content.
    """
    end = max(0, min(offset, len(content)))
    line = content.count("\n", 0, end)
    line_start = content.rfind("\n", 0, end) + 1
    column = (end - line_start) - content.count("\r", line_start, end)
    return TextPosition(line=line, column=column)
