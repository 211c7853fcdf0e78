"""Link, tag and title parsing for markdown notes."""

from .links import (
    extract_tags,
    hash_content,
    normalize_link_target,
    parse_links,
    position_from_offset,
)
from .markdown import extract_title, split_frontmatter

__all__ = [
    "parse_links",
    "extract_tags",
    "normalize_link_target",
    "hash_content",
    "position_from_offset",
    "extract_title",
    "split_frontmatter",
]
