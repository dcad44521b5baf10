"""Configuration management for linkweave.

This module contains all configurable constants for the linker. Magic numbers
are documented here rather than scattered throughout the codebase.

Per-KB settings live under a ``linkweave:`` section of ``{root}/.kbconfig``:

    linkweave:
      similarity_threshold: 0.75
      min_ai_score: 6
      excluded_folders: [.obsidian, .trash, templates]
      llm:
        provider: anthropic
        model: claude-3.5-haiku
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import yaml

from .errors import ConfigurationError

log = logging.getLogger(__name__)


# =============================================================================
# Files and markers
# =============================================================================

CONFIG_FILENAME = ".kbconfig"
CONFIG_SECTION = "linkweave"

# Cache directory under the KB root; excluded from scans
CACHE_DIRNAME = ".linkweave"
CACHE_FILENAME = "cache.sqlite"

# Marks the start of the auto-managed link region in a document.
# Everything after it is owned by the link reconciler.
HASH_BOUNDARY = "<!-- HASH_BOUNDARY -->"

# Front-matter key holding the stable document identifier
NOTE_ID_KEY = "note_id"


# =============================================================================
# Scoring and freshness
# =============================================================================

# Scores younger than this are reused in smart mode
FRESHNESS_WINDOW_DAYS = 7

# Score assigned when the model omits a pair or returns garbage
NEUTRAL_AI_SCORE = 5.0

# AI scores are on a 0-10 scale
MAX_AI_SCORE = 10.0


# =============================================================================
# Remote calls
# =============================================================================

# Per-call timeouts in seconds
LLM_TIMEOUT_SECONDS = 300.0
EMBEDDING_TIMEOUT_SECONDS = 60.0

JINA_BASE_URL = "https://api.jina.ai/v1"
OPENROUTER_BASE_URL = "https://openrouter.ai/api/v1"

SCORING_TEMPERATURE = 0.3
TAGGING_TEMPERATURE = 0.5
SCORING_MAX_TOKENS = 2000
TAGGING_MAX_TOKENS = 1500


# =============================================================================
# Failure journal
# =============================================================================

# Resolved journal entries older than this are purged by cleanup
FAILURE_RETENTION_DAYS = 30


@dataclass
class LLMConfig:
    """LLM provider settings from the ``llm`` subsection."""

    provider: str | None = None
    """Explicit provider ('anthropic' or 'openrouter'); auto-detected when None."""

    model: str = "claude-3.5-haiku"
    """Model used for scoring and tagging (canonical or provider-specific)."""


@dataclass
class LinkerConfig:
    """Settings that control candidate selection, batching and linking."""

    similarity_threshold: float = 0.7
    """Minimum cosine similarity for a pair to become a candidate and a link."""

    min_ai_score: float = 7.0
    """Minimum LLM relevance score (0-10) for a link."""

    max_links_per_note: int = 7
    """Cap on auto-managed outbound links per document."""

    batch_size_scoring: int = 10
    """Pairs per scoring request."""

    batch_size_tagging: int = 5
    """Documents per tagging request."""

    batch_size_embedding: int = 16
    """Documents per embedding request."""

    jina_model_name: str = "jina-embeddings-v3"
    """Embedding model name."""

    jina_max_chars: int = 8000
    """Characters of each document sent for embedding."""

    llm_scoring_max_chars: int = 1000
    """Characters of each document body included in a scoring prompt."""

    llm_tagging_max_chars: int = 1500
    """Characters of each document body included in a tagging prompt."""

    min_tags: int = 3
    max_tags: int = 5

    excluded_folders: list[str] = field(default_factory=lambda: [".obsidian", ".trash"])
    """Folder prefixes (relative to root) that are never scanned."""

    excluded_patterns: list[str] = field(default_factory=lambda: ["*.excalidraw", "*.canvas"])
    """Glob patterns matched against file names and relative paths."""

    llm: LLMConfig = field(default_factory=LLMConfig)

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ConfigurationError: Naming the first invalid setting.
        """
        if not 0.0 <= self.similarity_threshold <= 1.0:
            raise ConfigurationError(
                f"similarity_threshold must be between 0 and 1, got {self.similarity_threshold}"
            )
        if not 0.0 <= self.min_ai_score <= MAX_AI_SCORE:
            raise ConfigurationError(f"min_ai_score must be between 0 and 10, got {self.min_ai_score}")
        for name in (
            "max_links_per_note",
            "batch_size_scoring",
            "batch_size_tagging",
            "batch_size_embedding",
            "jina_max_chars",
            "llm_scoring_max_chars",
            "llm_tagging_max_chars",
        ):
            value = getattr(self, name)
            if value < 1:
                raise ConfigurationError(f"{name} must be a positive integer, got {value}")
        if self.min_tags > self.max_tags:
            raise ConfigurationError(
                f"min_tags ({self.min_tags}) cannot exceed max_tags ({self.max_tags})"
            )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LinkerConfig:
        """Build a config from a parsed ``linkweave:`` section.

        Unknown keys are ignored with a warning. Comma-separated strings are
        accepted for the exclusion lists.
        """
        known = {f.name for f in fields(cls)}
        kwargs: dict[str, Any] = {}
        for key, value in data.items():
            if key not in known:
                log.warning("Ignoring unknown setting in %s: %s", CONFIG_FILENAME, key)
                continue
            if key == "llm":
                if not isinstance(value, dict):
                    raise ConfigurationError("llm must be a mapping with provider/model keys")
                kwargs["llm"] = LLMConfig(
                    provider=value.get("provider"),
                    model=value.get("model", LLMConfig.model),
                )
            elif key in ("excluded_folders", "excluded_patterns"):
                kwargs[key] = _as_list(value)
            else:
                kwargs[key] = value
        try:
            config = cls(**kwargs)
        except TypeError as e:
            raise ConfigurationError(f"Invalid {CONFIG_SECTION} settings: {e}") from e
        return config


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    return [str(v).strip() for v in value if str(v).strip()]


def _coerce(name: str, raw: str, kind: type) -> Any:
    try:
        return kind(raw)
    except ValueError as e:
        raise ConfigurationError(f"Environment override for {name} is not a valid {kind.__name__}: {raw!r}") from e


# Environment overrides: (variable, setting, type)
_ENV_OVERRIDES: tuple[tuple[str, str, type], ...] = (
    ("LINKWEAVE_SIMILARITY_THRESHOLD", "similarity_threshold", float),
    ("LINKWEAVE_MIN_AI_SCORE", "min_ai_score", float),
    ("LINKWEAVE_MAX_LINKS", "max_links_per_note", int),
)


def load_config(root: Path) -> LinkerConfig:
    """Load linker settings for a KB.

    Resolution order (later wins):
    1. Built-in defaults
    2. ``linkweave:`` section of ``{root}/.kbconfig``
    3. LINKWEAVE_* environment variables

    Args:
        root: KB root directory.

    Returns:
        Validated LinkerConfig.

    Raises:
        ConfigurationError: If the config file is malformed or a value is out of range.
    """
    config_path = root / CONFIG_FILENAME
    section: dict[str, Any] = {}
    if config_path.exists():
        try:
            data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Cannot parse {config_path}: {e}") from e
        if not isinstance(data, dict):
            raise ConfigurationError(f"{config_path} must contain a YAML mapping")
        section = data.get(CONFIG_SECTION) or {}
        if not isinstance(section, dict):
            raise ConfigurationError(f"'{CONFIG_SECTION}' in {config_path} must be a mapping")

    config = LinkerConfig.from_dict(section)

    for env_name, setting, kind in _ENV_OVERRIDES:
        raw = os.environ.get(env_name)
        if raw:
            setattr(config, setting, _coerce(env_name, raw, kind))

    model = os.environ.get("LINKWEAVE_LLM_MODEL")
    if model:
        config.llm.model = model

    config.validate()
    return config


def get_kb_root(explicit: str | Path | None = None) -> Path:
    """Resolve the KB root directory.

    Discovery order:
    1. Explicit argument
    2. LINKWEAVE_ROOT environment variable
    3. Walk up from cwd looking for .kbconfig

    Raises:
        ConfigurationError: If no KB can be found.
    """
    if explicit:
        return Path(explicit)

    root = os.environ.get("LINKWEAVE_ROOT")
    if root:
        return Path(root)

    current = Path.cwd()
    for candidate in (current, *current.parents):
        if (candidate / CONFIG_FILENAME).exists():
            return candidate

    raise ConfigurationError(
        "No knowledge base found. Options:\n"
        "  1. Pass --root /path/to/kb\n"
        "  2. Set LINKWEAVE_ROOT to an existing KB directory\n"
        f"  3. Run from a directory containing {CONFIG_FILENAME}"
    )


def get_cache_path(root: Path) -> Path:
    """Return the cache database path for a KB root."""
    return root / CACHE_DIRNAME / CACHE_FILENAME
