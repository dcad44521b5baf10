"""Pydantic models for the linker."""

from __future__ import annotations

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, Field

OperationType = Literal["scoring", "tagging", "embedding"]


class DocumentRecord(BaseModel):
    """Cached metadata for one document."""

    id: str  # Stable note_id from front-matter
    path: str  # Path relative to the KB root (posix separators)
    content_hash: str  # SHA-256 of the hashable body
    created_at: datetime
    modified_at: datetime
    title: str = ""
    tags: list[str] = Field(default_factory=list)
    embedding_updated_at: datetime | None = None
    tags_generated_at: datetime | None = None  # Set only after tags were written to the file


class EmbeddingVector(BaseModel):
    """One embedding per document, replaced wholesale on recompute."""

    document_id: str
    vector: list[float]
    model_name: str
    created_at: datetime


class PairScore(BaseModel):
    """Similarity and LLM relevance for an unordered document pair.

    ``id_1`` is always the lexicographically smaller id. Use ``canonical`` to
    build one from ids in arbitrary order.
    """

    id_1: str
    id_2: str
    similarity_score: float  # Cosine similarity, 0-1
    ai_score: float  # LLM relevance, 0-10
    model: str = ""
    reasoning: str = ""
    last_scored: datetime

    @classmethod
    def canonical(cls, a: str, b: str, **kwargs) -> PairScore:
        id_1, id_2 = (a, b) if a < b else (b, a)
        return cls(id_1=id_1, id_2=id_2, **kwargs)

    def other(self, document_id: str) -> str:
        """Return the member of the pair that is not ``document_id``."""
        return self.id_2 if document_id == self.id_1 else self.id_1


class LinkLedgerEntry(BaseModel):
    """A link this engine previously inserted from source to target."""

    source_id: str
    target_id: str
    inserted_at: datetime


class BatchDescriptor(BaseModel):
    """Identifies the work covered by one batch."""

    batch_number: int  # 1-based ordinal within the run
    total_batches: int
    items: list[str] = Field(default_factory=list)  # Item keys: "a:b" pair keys or document ids
    display_items: list[str] = Field(default_factory=list)  # Document paths for operators


class ErrorDetail(BaseModel):
    """Serializable summary of the exception that failed a batch."""

    message: str
    type: str
    status: int | None = None
    category: str | None = None

    @classmethod
    def from_exception(cls, exc: BaseException) -> ErrorDetail:
        category = getattr(exc, "category", None)
        return cls(
            message=str(exc),
            type=type(exc).__name__,
            status=getattr(exc, "status", None),
            category=getattr(category, "value", category),
        )


class FailureRecord(BaseModel):
    """An unrecovered batch failure awaiting retry."""

    id: str
    timestamp: datetime
    operation_type: OperationType
    batch: BatchDescriptor
    error: ErrorDetail
    resolved: bool = False


# =============================================================================
# Gateway payloads
# =============================================================================


class PairForScoring(BaseModel):
    """One pair sent to the model for relevance scoring."""

    id_1: str
    id_2: str
    title_1: str
    title_2: str
    content_1: str
    content_2: str
    similarity_score: float


class ScoreResult(BaseModel):
    """Model verdict for one pair."""

    id_1: str
    id_2: str
    score: float  # 0-10
    reasoning: str = ""


class NoteForTagging(BaseModel):
    """One document sent to the model for tag suggestions."""

    id: str
    title: str
    content: str
    existing_tags: list[str] = Field(default_factory=list)


class TagResult(BaseModel):
    """Model tag suggestions for one document."""

    id: str
    tags: list[str] = Field(default_factory=list)
    reasoning: str = ""


# =============================================================================
# Results
# =============================================================================


class Candidate(BaseModel):
    """A pair whose similarity cleared the threshold."""

    id_1: str
    id_2: str
    similarity: float

    @property
    def key(self) -> str:
        return f"{self.id_1}:{self.id_2}"


class ReconcileResult(BaseModel):
    """Link edits applied to one document."""

    added: int = 0
    removed: int = 0


class BatchRunResult(BaseModel):
    """Outcome of one batched scoring, tagging or embedding pass."""

    processed: int = 0  # Items persisted
    skipped: int = 0  # Items skipped (fresh scores, content errors)
    failed_batches: int = 0
    item_ids: list[str] = Field(default_factory=list)  # Keys of persisted items


class CacheStats(BaseModel):
    """Aggregate cache counts."""

    total_documents: int = 0
    total_embeddings: int = 0
    total_scores: int = 0
    total_links: int = 0
    total_failures: int = 0
    unresolved_failures: int = 0


class RunSummary(BaseModel):
    """What a processing run did."""

    scanned: int = 0
    changed: int = 0
    embedded: int = 0
    scored_pairs: int = 0
    tagged: int = 0
    links_added: int = 0
    links_removed: int = 0
    failed_batches: int = 0
    unresolved_failures: int = 0


class HealthReport(BaseModel):
    """Consistency problems between the cache and the KB files."""

    orphaned_documents: list[str] = Field(default_factory=list)  # Cached paths whose file is gone
    missing_note_id: list[str] = Field(default_factory=list)
    missing_boundary: list[str] = Field(default_factory=list)
    unresolved_failures: int = 0

    @property
    def healthy(self) -> bool:
        return not (
            self.orphaned_documents
            or self.missing_note_id
            or self.missing_boundary
            or self.unresolved_failures
        )
