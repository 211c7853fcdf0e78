"""Note title extraction with YAML frontmatter support."""

from __future__ import annotations

import logging
import re

import frontmatter

log = logging.getLogger(__name__)

H1_PATTERN = re.compile(r"^#[ \t]+(.+)$", re.MULTILINE)


def split_frontmatter(content: str) -> tuple[dict, str]:
    """Split content into (frontmatter metadata, body).

    Content without a valid frontmatter block is returned unchanged
    with empty metadata.
    """
    try:
        post = frontmatter.loads(content)
    except Exception as e:
        log.debug("Ignoring unparseable frontmatter: %s", e)
        return {}, content
    return dict(post.metadata), post.content


def extract_title(name: str, content: str) -> str:
    """Pick a display title for a note.

    Order: first H1 heading of the body, then the frontmatter ``title``,
    then the file stem.
    """
    metadata, body = split_frontmatter(content)

    match = H1_PATTERN.search(body)
    if match and match.group(1).strip():
        return match.group(1).strip()

    title = metadata.get("title")
    if isinstance(title, str) and title.strip():
        return title.strip()

    return name
