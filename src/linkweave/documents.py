"""Markdown document store for a KB directory.

Documents are ``.md`` files under the KB root. Each carries a stable
``note_id`` in its YAML front-matter and a ``<!-- HASH_BOUNDARY -->`` marker
separating user-authored content from the auto-managed link region.
"""

from __future__ import annotations

import fnmatch
import hashlib
import logging
import os
import uuid
from pathlib import Path

import frontmatter
import yaml

from .config import CACHE_DIRNAME, HASH_BOUNDARY, NOTE_ID_KEY

log = logging.getLogger(__name__)


class DocumentError(Exception):
    """Raised when a document cannot be read, parsed or written."""

    def __init__(self, path: str | Path, message: str) -> None:
        self.path = path
        self.message = message
        super().__init__(f"{path}: {message}")


def split_front_matter(text: str) -> tuple[str, str]:
    """Split text into (front-matter block including delimiters, body).

    Text without a front-matter block returns ("", text).
    """
    if not text.startswith("---"):
        return "", text
    lines = text.splitlines(keepends=True)
    if lines[0].strip() != "---":
        return "", text
    for i in range(1, len(lines)):
        if lines[i].strip() in ("---", "..."):
            return "".join(lines[: i + 1]), "".join(lines[i + 1 :])
    return "", text


def extract_hashable_body(text: str) -> str:
    """Body between the front-matter and the hash-boundary marker, stripped."""
    _, body = split_front_matter(text)
    marker = body.find(HASH_BOUNDARY)
    if marker != -1:
        body = body[:marker]
    return body.strip()


def content_hash(text: str) -> str:
    """SHA-256 hex digest of a document's hashable body."""
    return hashlib.sha256(extract_hashable_body(text).encode("utf-8")).hexdigest()


def has_hash_boundary(text: str) -> bool:
    return HASH_BOUNDARY in split_front_matter(text)[1]


def display_name(path: str) -> str:
    """Link name for a document path: its basename without ``.md``."""
    name = path.replace("\\", "/").rsplit("/", 1)[-1]
    return name[:-3] if name.endswith(".md") else name


class DocumentStore:
    """Reads and writes markdown documents under a KB root."""

    def __init__(
        self,
        root: Path,
        excluded_folders: list[str] | None = None,
        excluded_patterns: list[str] | None = None,
    ) -> None:
        self.root = root
        self._excluded_folders = [
            folder.strip().strip("/") for folder in (excluded_folders or []) if folder.strip().strip("/")
        ]
        self._excluded_patterns = [p.strip() for p in (excluded_patterns or []) if p.strip()]

    def _is_excluded(self, relative: str) -> bool:
        for folder in (*self._excluded_folders, CACHE_DIRNAME):
            if relative == folder or relative.startswith(folder + "/"):
                return True
        name = relative.rsplit("/", 1)[-1]
        return any(
            fnmatch.fnmatch(name, pattern) or fnmatch.fnmatch(relative, pattern)
            for pattern in self._excluded_patterns
        )

    def scan(self) -> list[str]:
        """List documents as root-relative posix paths, sorted."""
        paths = []
        for file_path in self.root.rglob("*.md"):
            if not file_path.is_file():
                continue
            relative = file_path.relative_to(self.root).as_posix()
            if self._is_excluded(relative):
                continue
            paths.append(relative)
        return sorted(paths)

    def exists(self, path: str) -> bool:
        return (self.root / path).is_file()

    def read(self, path: str) -> str:
        try:
            return (self.root / path).read_text(encoding="utf-8")
        except OSError as e:
            raise DocumentError(path, f"Cannot read: {e}") from e

    def write(self, path: str, text: str) -> None:
        """Replace a document's text atomically."""
        target = self.root / path
        tmp = target.with_name(f".{target.name}.tmp")
        try:
            tmp.write_text(text, encoding="utf-8")
            os.replace(tmp, target)
        except OSError as e:
            raise DocumentError(path, f"Cannot write: {e}") from e

    def modified_at(self, path: str) -> float:
        return (self.root / path).stat().st_mtime

    def _load(self, path: str) -> frontmatter.Post:
        try:
            return frontmatter.loads(self.read(path))
        except yaml.YAMLError as e:
            raise DocumentError(path, f"Invalid frontmatter: {e}") from e

    def _dump(self, path: str, post: frontmatter.Post) -> None:
        text = frontmatter.dumps(post, sort_keys=False, allow_unicode=True)
        if not text.endswith("\n"):
            text += "\n"
        self.write(path, text)

    def get_document_id(self, path: str) -> str | None:
        value = self._load(path).metadata.get(NOTE_ID_KEY)
        return str(value) if value else None

    def ensure_document_id(self, path: str) -> str:
        """Return the document's ``note_id``, assigning a uuid4 if missing."""
        post = self._load(path)
        existing = post.metadata.get(NOTE_ID_KEY)
        if existing:
            return str(existing)
        note_id = str(uuid.uuid4())
        post.metadata[NOTE_ID_KEY] = note_id
        self._dump(path, post)
        log.debug("Assigned note_id %s to %s", note_id, path)
        return note_id

    def assign_new_id(self, path: str) -> str:
        """Replace the document's ``note_id`` with a fresh uuid4 (duplicated files)."""
        post = self._load(path)
        note_id = str(uuid.uuid4())
        post.metadata[NOTE_ID_KEY] = note_id
        self._dump(path, post)
        return note_id

    def ensure_hash_boundary(self, path: str) -> bool:
        """Append the hash-boundary marker if absent.

        Returns:
            True if the document was modified.
        """
        text = self.read(path)
        if has_hash_boundary(text):
            return False
        separator = "\n" if text.endswith("\n") else "\n\n"
        self.write(path, f"{text}{separator}{HASH_BOUNDARY}\n")
        return True

    def title_for(self, path: str, text: str | None = None) -> str:
        """Front-matter title, falling back to the file name."""
        text = self.read(path) if text is None else text
        try:
            title = frontmatter.loads(text).metadata.get("title")
        except yaml.YAMLError:
            title = None
        return str(title) if title else display_name(path)

    def get_tags(self, path: str) -> list[str]:
        tags = self._load(path).metadata.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        return [str(t) for t in tags]

    def write_tags(self, path: str, tags: list[str]) -> list[str]:
        """Merge tags into the front-matter ``tags`` list.

        Existing tags keep their order; new ones are appended.

        Returns:
            The resulting tag list.
        """
        post = self._load(path)
        current = post.metadata.get("tags") or []
        if isinstance(current, str):
            current = [t.strip() for t in current.split(",") if t.strip()]
        merged = [str(t) for t in current]
        for tag in tags:
            if tag not in merged:
                merged.append(tag)
        post.metadata["tags"] = merged
        self._dump(path, post)
        return merged
