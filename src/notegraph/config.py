"""Configuration management for notegraph.

This module contains all configurable constants for the link index.
Magic numbers are documented here rather than scattered throughout the codebase.
"""

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid."""

    pass


# =============================================================================
# Discovery
# =============================================================================

# Per-project config file, looked up from the working directory upwards
CONFIG_FILENAME = ".notegraph.yaml"

# Maximum directory traversal depth when searching for the config file.
# Prevents endless walks on unusual filesystems; real projects nest 5-10 deep.
MAX_CONFIG_SEARCH_DEPTH = 10

# Directory names never descended into when discovering notes
DEFAULT_EXCLUDE_DIRS = ("node_modules", ".git")


# =============================================================================
# Indexing
# =============================================================================

# Index format version stored in IndexMetadata
INDEX_VERSION = "1.0"

# Quiet period before a single-file update is applied.
# Rapid edits to the same file within this window collapse into one update.
DEBOUNCE_SECONDS = 0.5


# =============================================================================
# Link Resolution
# =============================================================================

# Levenshtein distance below which a file name counts as a fuzzy match.
# 3 tolerates one or two typos in a short note name without matching
# unrelated names.
FUZZY_MATCH_THRESHOLD = 3

# Number of ranked candidates offered for an ambiguous or unresolved link
DEFAULT_CANDIDATE_LIMIT = 5


class IndexSettings(BaseModel):
    """Settings read from .notegraph.yaml, with defaults for every field."""

    notes_path: str = "."
    debounce_seconds: float = Field(default=DEBOUNCE_SECONDS, ge=0)
    fuzzy_threshold: int = Field(default=FUZZY_MATCH_THRESHOLD, ge=0)
    candidate_limit: int = Field(default=DEFAULT_CANDIDATE_LIMIT, ge=0)
    enable_wikilinks: bool = True
    enable_markdown_links: bool = True
    exclude_dirs: list[str] = Field(default_factory=lambda: list(DEFAULT_EXCLUDE_DIRS))


def _discover_config_file(start_dir: Path | None = None, max_depth: int = MAX_CONFIG_SEARCH_DEPTH) -> Path | None:
    """Walk up from start_dir looking for .notegraph.yaml.

    Args:
        start_dir: Directory to start from (defaults to cwd)
        max_depth: Maximum directories to traverse up

    Returns:
        Path of the config file if found, None otherwise.
    """
    current = Path(start_dir or os.getcwd()).resolve()

    for _ in range(max_depth):
        config_file = current / CONFIG_FILENAME
        if config_file.is_file():
            return config_file

        parent = current.parent
        if parent == current:  # Reached filesystem root
            break
        current = parent

    return None


def _read_settings(config_file: Path) -> IndexSettings:
    try:
        data = yaml.safe_load(config_file.read_text(encoding="utf-8")) or {}
    except (OSError, yaml.YAMLError) as e:
        raise ConfigurationError(f"Cannot read {config_file}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"{config_file} must contain a mapping")

    try:
        return IndexSettings.model_validate(data)
    except ValidationError as e:
        errors = []
        for error in e.errors():
            loc = ".".join(str(x) for x in error["loc"])
            errors.append(f"  - {loc}: {error['msg']}")
        raise ConfigurationError(f"Invalid settings in {config_file}:\n" + "\n".join(errors)) from e


def load_settings(start_dir: Path | None = None) -> IndexSettings:
    """Load settings from the nearest .notegraph.yaml, or defaults if none exists.

    Raises:
        ConfigurationError: If the file exists but cannot be read or validated.
    """
    config_file = _discover_config_file(start_dir)
    if config_file is None:
        return IndexSettings()
    return _read_settings(config_file)


def load_notes_config(start_dir: Path | None = None) -> tuple[Path, IndexSettings]:
    """Get the notes root directory and the settings that apply to it.

    Discovery order:
    1. NOTEGRAPH_NOTES_ROOT environment variable (explicit override);
       settings come from the nearest .notegraph.yaml above that root
    2. Walk up from cwd looking for .notegraph.yaml; notes_path is
       resolved relative to the directory holding it, and the settings
       are read from that same file
    3. Error with helpful message

    Raises:
        ConfigurationError: If no notes root can be found.
    """
    root = os.environ.get("NOTEGRAPH_NOTES_ROOT")
    if root:
        notes_root = Path(root).expanduser().resolve()
        return notes_root, load_settings(notes_root)

    config_file = _discover_config_file(start_dir)
    if config_file is not None:
        settings = _read_settings(config_file)
        notes_root = (config_file.parent / settings.notes_path).resolve()
        if notes_root.is_dir():
            return notes_root, settings
        raise ConfigurationError(f"notes_path in {config_file} is not a directory: {notes_root}")

    raise ConfigurationError(
        "No notes directory configured. Options:\n"
        "  1. Pass --root to point at a notes directory\n"
        f"  2. Create {CONFIG_FILENAME} with a notes_path entry\n"
        "  3. Set NOTEGRAPH_NOTES_ROOT to an existing directory"
    )


def get_notes_root(start_dir: Path | None = None) -> Path:
    """Get the notes root directory. See load_notes_config for the discovery order."""
    return load_notes_config(start_dir)[0]
