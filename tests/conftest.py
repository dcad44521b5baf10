"""Shared test fixtures for the linkweave test suite.

Design:
- tmp_kb: isolated KB directory with a .kbconfig
- store: in-memory CacheStore
- FakeGateway: deterministic RemoteModelGateway double (no network)
- runner: CliRunner for CLI tests
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import pytest
from click.testing import CliRunner

from linkweave.cache_store import CacheStore
from linkweave.config import LinkerConfig
from linkweave.errors import TransientError
from linkweave.models import DocumentRecord, NoteForTagging, PairForScoring, ScoreResult, TagResult


# ─────────────────────────────────────────────────────────────────────────────
# Fake gateway
# ─────────────────────────────────────────────────────────────────────────────


class FakeGateway:
    """RemoteModelGateway double.

    - embed: looks up the vector by the first line of each text (the title)
    - score: ``score_for(pair)`` or a flat default score
    - tag: fixed tags per note
    - ``fail_score_calls`` / ``fail_tag_calls``: 1-based call numbers that raise
    """

    model_name = "fake-model"

    def __init__(
        self,
        vectors: dict[str, list[float]] | None = None,
        default_score: float = 8.0,
        score_for=None,
        tags: list[str] | None = None,
        fail_score_calls: set[int] | None = None,
        fail_tag_calls: set[int] | None = None,
        fail_embed_calls: set[int] | None = None,
    ) -> None:
        self.vectors = vectors or {}
        self.default_score = default_score
        self.score_for = score_for
        self.tags = tags if tags is not None else ["alpha", "beta", "gamma"]
        self.fail_score_calls = fail_score_calls or set()
        self.fail_tag_calls = fail_tag_calls or set()
        self.fail_embed_calls = fail_embed_calls or set()
        self.embed_calls: list[list[str]] = []
        self.score_calls: list[list[PairForScoring]] = []
        self.tag_calls: list[list[NoteForTagging]] = []

    async def embed(self, texts: list[str], model: str | None = None) -> list[list[float]]:
        self.embed_calls.append(list(texts))
        if len(self.embed_calls) in self.fail_embed_calls:
            raise TransientError("Server error: 503", status=503)
        return [self.vectors.get(text.split("\n", 1)[0], [1.0, 0.0, 0.0]) for text in texts]

    async def score(self, pairs: list[PairForScoring], prompt: str | None = None) -> list[ScoreResult]:
        self.score_calls.append(list(pairs))
        if len(self.score_calls) in self.fail_score_calls:
            raise TransientError("Rate limit exceeded", status=429)
        return [
            ScoreResult(
                id_1=pair.id_1,
                id_2=pair.id_2,
                score=self.score_for(pair) if self.score_for else self.default_score,
                reasoning="fake",
            )
            for pair in pairs
        ]

    async def tag(self, notes, prompt=None, min_tags=None, max_tags=None) -> list[TagResult]:
        self.tag_calls.append(list(notes))
        if len(self.tag_calls) in self.fail_tag_calls:
            raise TransientError("Server error: 500", status=500)
        return [TagResult(id=note.id, tags=list(self.tags)) for note in notes]


# ─────────────────────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────────────────────


@pytest.fixture
def runner() -> CliRunner:
    return CliRunner()


@pytest.fixture
def config() -> LinkerConfig:
    return LinkerConfig()


@pytest.fixture
def store():
    cache = CacheStore(None)
    yield cache
    cache.close()


@pytest.fixture
def tmp_kb(tmp_path: Path, monkeypatch) -> Path:
    """Empty KB root with a minimal .kbconfig; LINKWEAVE_* env cleared."""
    for name in (
        "LINKWEAVE_ROOT",
        "LINKWEAVE_SIMILARITY_THRESHOLD",
        "LINKWEAVE_MIN_AI_SCORE",
        "LINKWEAVE_MAX_LINKS",
        "LINKWEAVE_LLM_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
    kb_root = tmp_path / "kb"
    kb_root.mkdir()
    (kb_root / ".kbconfig").write_text("linkweave: {}\n")
    return kb_root


# ─────────────────────────────────────────────────────────────────────────────
# Helper Functions (for test code, not fixtures)
# ─────────────────────────────────────────────────────────────────────────────


def create_note(
    kb_root: Path,
    path: str,
    title: str,
    content: str,
    note_id: str | None = None,
    boundary: bool = False,
) -> Path:
    """Write a markdown note with front-matter."""
    note_path = kb_root / path
    note_path.parent.mkdir(parents=True, exist_ok=True)
    id_line = f"note_id: {note_id}\n" if note_id else ""
    tail = "\n\n<!-- HASH_BOUNDARY -->\n" if boundary else "\n"
    note_path.write_text(f"---\ntitle: {title}\n{id_line}---\n\n{content}{tail}")
    return note_path


def make_record(document_id: str, path: str | None = None, content_hash: str = "h") -> DocumentRecord:
    now = datetime.now(tz=UTC)
    return DocumentRecord(
        id=document_id,
        path=path or f"{document_id}.md",
        content_hash=content_hash,
        created_at=now,
        modified_at=now,
        title=document_id.upper(),
    )
