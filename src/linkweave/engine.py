"""Orchestration engine: candidate pairs, batched scoring and tagging.

A run moves through IDLE -> COMPUTE_CANDIDATES -> SCORE_BATCHES ->
(TAG_BATCHES) -> DONE, or CANCELLED when the cancellation token fires between
batches. Batches are processed strictly one after another:

- each successful batch is written to the cache and flushed before the next
  one starts, so a crash loses at most the batch in flight;
- a failing batch is journaled and the run moves on;
- a ConfigurationError aborts the run;
- journaled failures are merged into the next run's work set regardless of
  score freshness, and resolved once a batch covering them succeeds.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Callable, Iterable, Iterator, Sequence, TypeVar

import numpy as np

from .cache_store import CacheStore
from .config import FRESHNESS_WINDOW_DAYS, NEUTRAL_AI_SCORE, LinkerConfig
from .documents import DocumentError, DocumentStore, extract_hashable_body
from .errors import (
    ConfigurationError,
    ContentError,
    DimensionMismatchError,
    RunCancelledError,
    RunInProgressError,
    can_skip,
)
from .failure_journal import FailureJournal
from .gateway import MISSING_SCORE_REASON, RemoteModelGateway
from .models import (
    BatchDescriptor,
    BatchRunResult,
    Candidate,
    EmbeddingVector,
    NoteForTagging,
    OperationType,
    PairForScoring,
    PairScore,
    ScoreResult,
)
from .similarity import (
    canonical_pair_key,
    cosine_similarity,
    cross_similarities,
    pairwise_similarities,
    parse_pair_key,
)

log = logging.getLogger(__name__)

T = TypeVar("T")


class RunState(str, Enum):
    IDLE = "idle"
    COMPUTE_CANDIDATES = "compute_candidates"
    SCORE_BATCHES = "score_batches"
    TAG_BATCHES = "tag_batches"
    DONE = "done"
    CANCELLED = "cancelled"


class CancellationToken:
    """Cooperative cancellation flag, polled between batches."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise RunCancelledError()


class RunLock:
    """Guard allowing one active run per process."""

    def __init__(self) -> None:
        self._active = False

    @property
    def locked(self) -> bool:
        return self._active

    def acquire(self) -> None:
        if self._active:
            raise RunInProgressError()
        self._active = True

    def release(self) -> None:
        self._active = False

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *exc_info) -> None:
        self.release()


RUN_LOCK = RunLock()


# =============================================================================
# Candidates and batching
# =============================================================================


def _group_by_dimension(embeddings: dict[str, list[float]]) -> dict[int, list[str]]:
    """Sorted ids grouped by vector length; pairs across groups are never compared."""
    groups: dict[int, list[str]] = defaultdict(list)
    for document_id in sorted(embeddings):
        vector = embeddings[document_id]
        if len(vector) == 0:
            log.warning("Skipping %s: empty embedding", document_id)
            continue
        groups[len(vector)].append(document_id)
    if len(groups) > 1:
        log.warning(
            "Embeddings have mixed dimensions %s; pairs across dimensions are skipped",
            sorted(groups),
        )
    return groups


def generate_candidates_full(embeddings: dict[str, list[float]], threshold: float) -> list[Candidate]:
    """Every unordered pair of embedded documents with similarity >= threshold."""
    candidates = []
    for ids in _group_by_dimension(embeddings).values():
        if len(ids) < 2:
            continue
        matrix = pairwise_similarities([embeddings[document_id] for document_id in ids])
        rows, cols = np.nonzero(np.triu(matrix >= threshold, k=1))
        for i, j in zip(rows.tolist(), cols.tolist()):
            candidates.append(Candidate(id_1=ids[i], id_2=ids[j], similarity=float(matrix[i, j])))
    candidates.sort(key=lambda c: (c.id_1, c.id_2))
    return candidates


def generate_candidates_incremental(
    embeddings: dict[str, list[float]], changed_ids: Iterable[str], threshold: float
) -> list[Candidate]:
    """Pairs between each changed document and every other embedded document.

    Pairs of two changed documents appear once.
    """
    changed = sorted(set(changed_ids) & embeddings.keys())
    found: dict[tuple[str, str], Candidate] = {}
    for dimension, ids in _group_by_dimension(embeddings).items():
        sources = [document_id for document_id in changed if len(embeddings[document_id]) == dimension]
        if not sources:
            continue
        matrix = cross_similarities(
            [embeddings[document_id] for document_id in sources],
            [embeddings[document_id] for document_id in ids],
        )
        rows, cols = np.nonzero(matrix >= threshold)
        for i, j in zip(rows.tolist(), cols.tolist()):
            if sources[i] == ids[j]:
                continue
            key = canonical_pair_key(sources[i], ids[j])
            if key not in found:
                found[key] = Candidate(id_1=key[0], id_2=key[1], similarity=float(matrix[i, j]))
    return list(found.values())


def iter_batches(
    items: Sequence[T], size: int, token: CancellationToken | None = None
) -> Iterator[tuple[int, int, list[T]]]:
    """Yield (batch_number, total_batches, batch), checking for cancellation first.

    Raises:
        RunCancelledError: If the token is cancelled before a batch is handed out.
    """
    total = (len(items) + size - 1) // size
    for index in range(total):
        if token is not None:
            token.raise_if_cancelled()
        yield index + 1, total, list(items[index * size : (index + 1) * size])


@dataclass
class EngineResult:
    """What one orchestrated run produced."""

    scoring: BatchRunResult = field(default_factory=BatchRunResult)
    tagging: BatchRunResult = field(default_factory=BatchRunResult)
    states: list[RunState] = field(default_factory=list)
    """States visited, in order."""

    @property
    def failed_batches(self) -> int:
        return self.scoring.failed_batches + self.tagging.failed_batches


# =============================================================================
# Orchestrator
# =============================================================================


@dataclass
class _Note:
    path: str
    title: str
    body: str


class Orchestrator:
    """Drives batched remote calls and writes results through to the cache."""

    def __init__(
        self,
        store: CacheStore,
        gateway: RemoteModelGateway,
        journal: FailureJournal,
        config: LinkerConfig,
        documents: DocumentStore,
        token: CancellationToken | None = None,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._journal = journal
        self._config = config
        self._documents = documents
        self._token = token or CancellationToken()
        self._notes: dict[str, _Note] = {}
        self.state = RunState.IDLE
        self._states: list[RunState] = [RunState.IDLE]

    def _transition(self, state: RunState) -> None:
        log.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        self._states.append(state)

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _note(self, document_id: str) -> _Note:
        """Load title and hashable body for a cached document.

        Raises:
            ContentError: If the document is unknown or unreadable.
        """
        if document_id in self._notes:
            return self._notes[document_id]
        record = self._store.get_document(document_id)
        if record is None:
            raise ContentError(f"Document {document_id} is not in the cache", item_id=document_id)
        try:
            text = self._documents.read(record.path)
        except DocumentError as e:
            raise ContentError(str(e), item_id=document_id) from e
        note = _Note(
            path=record.path,
            title=self._documents.title_for(record.path, text),
            body=extract_hashable_body(text),
        )
        self._notes[document_id] = note
        return note

    def _label(self, item_key: str) -> str:
        """Human-readable label for a journal entry: paths, not ids."""

        def path_of(document_id: str) -> str:
            record = self._store.get_document(document_id)
            return record.path if record else document_id

        if ":" in item_key:
            id_1, id_2 = parse_pair_key(item_key)
            return f"{path_of(id_1)} <-> {path_of(id_2)}"
        return path_of(item_key)

    def _descriptor(self, batch_number: int, total: int, keys: list[str]) -> BatchDescriptor:
        return BatchDescriptor(
            batch_number=batch_number,
            total_batches=total,
            items=keys,
            display_items=[self._label(key) for key in keys],
        )

    def _record_batch_failure(
        self,
        operation: OperationType,
        descriptor: BatchDescriptor,
        error: Exception,
        result: BatchRunResult,
    ) -> None:
        result.failed_batches += 1
        self._journal.record_failure(operation, descriptor, error)
        self._store.flush()
        log.warning(
            "%s batch %d/%d failed: %s",
            operation.capitalize(),
            descriptor.batch_number,
            descriptor.total_batches,
            error,
        )

    def _commit_batch(self, operation: OperationType, keys: list[str]) -> None:
        self._journal.resolve_covered(operation, keys)
        self._store.flush()

    def _candidate_from_key(self, key: str) -> Candidate | None:
        id_1, id_2 = parse_pair_key(key)
        first = self._store.get_embedding(id_1)
        second = self._store.get_embedding(id_2)
        if first is None or second is None:
            log.debug("Cannot rebuild journaled pair %s: embedding missing", key)
            return None
        try:
            score = cosine_similarity(first.vector, second.vector)
        except DimensionMismatchError as e:
            log.warning("Skipping pair %s: %s", key, e)
            return None
        return Candidate(id_1=id_1, id_2=id_2, similarity=score)

    # -------------------------------------------------------------------------
    # Embedding
    # -------------------------------------------------------------------------

    async def embed_documents(self, document_ids: Iterable[str]) -> BatchRunResult:
        """Embed documents in batches, including journaled embedding failures."""
        result = BatchRunResult()
        work = list(
            dict.fromkeys([*sorted(set(document_ids)), *sorted(self._journal.get_failed_item_keys("embedding"))])
        )
        model = self._config.jina_model_name

        for batch_number, total, batch in iter_batches(work, self._config.batch_size_embedding, self._token):
            descriptor = self._descriptor(batch_number, total, batch)
            try:
                ids: list[str] = []
                texts: list[str] = []
                for document_id in batch:
                    try:
                        note = self._note(document_id)
                    except ContentError as e:
                        log.warning("Skipping embedding: %s", e)
                        result.skipped += 1
                        continue
                    if not note.body:
                        log.debug("Skipping empty document %s", note.path)
                        result.skipped += 1
                        continue
                    ids.append(document_id)
                    texts.append(f"{note.title}\n\n{note.body}")

                vectors = await self._gateway.embed(texts, model) if texts else []
                now = datetime.now(tz=UTC)
                for document_id, vector in zip(ids, vectors):
                    if self._store.get_embedding(document_id) is not None:
                        # Scores against the old vector are stale
                        self._store.delete_scores_for_document(document_id)
                    self._store.save_embedding(
                        EmbeddingVector(document_id=document_id, vector=vector, model_name=model, created_at=now)
                    )
                result.processed += len(ids)
                result.item_ids.extend(ids)
                self._commit_batch("embedding", batch)
            except (ConfigurationError, RunCancelledError):
                raise
            except Exception as e:
                self._record_batch_failure("embedding", descriptor, e, result)
        return result

    # -------------------------------------------------------------------------
    # Scoring
    # -------------------------------------------------------------------------

    def _select_for_scoring(self, candidates: list[Candidate], force: bool) -> tuple[list[Candidate], int]:
        retry_keys = self._journal.get_failed_item_keys("scoring")
        cutoff = datetime.now(tz=UTC) - timedelta(days=FRESHNESS_WINDOW_DAYS)
        work: dict[str, Candidate] = {}
        skipped = 0
        for candidate in candidates:
            if not force and candidate.key not in retry_keys:
                existing = self._store.get_score(candidate.id_1, candidate.id_2)
                if existing is not None and existing.last_scored > cutoff:
                    skipped += 1
                    continue
            work[candidate.key] = candidate

        for key in sorted(retry_keys - work.keys()):
            candidate = self._candidate_from_key(key)
            if candidate is not None:
                work[key] = candidate
        return list(work.values()), skipped

    def _build_pairs(self, batch: list[Candidate], result: BatchRunResult) -> list[PairForScoring]:
        limit = self._config.llm_scoring_max_chars
        pairs = []
        for candidate in batch:
            try:
                first = self._note(candidate.id_1)
                second = self._note(candidate.id_2)
            except ContentError as e:
                log.warning("Skipping pair %s: %s", candidate.key, e)
                result.skipped += 1
                continue
            pairs.append(
                PairForScoring(
                    id_1=candidate.id_1,
                    id_2=candidate.id_2,
                    title_1=first.title,
                    title_2=second.title,
                    content_1=first.body[:limit],
                    content_2=second.body[:limit],
                    similarity_score=candidate.similarity,
                )
            )
        return pairs

    def _merge_scores(self, pairs: list[PairForScoring], results: list[ScoreResult]) -> list[PairScore]:
        if len(results) != len(pairs):
            log.warning("Model returned %d scores for %d pairs; padding with neutral scores", len(results), len(pairs))
        by_key = {canonical_pair_key(r.id_1, r.id_2): r for r in results}
        now = datetime.now(tz=UTC)
        model = getattr(self._gateway, "model_name", "")
        scores = []
        for pair in pairs:
            found = by_key.get(canonical_pair_key(pair.id_1, pair.id_2))
            scores.append(
                PairScore.canonical(
                    pair.id_1,
                    pair.id_2,
                    similarity_score=pair.similarity_score,
                    ai_score=found.score if found else NEUTRAL_AI_SCORE,
                    model=model,
                    reasoning=found.reasoning if found else MISSING_SCORE_REASON,
                    last_scored=now,
                )
            )
        return scores

    async def score_candidates(self, candidates: list[Candidate], *, force: bool = False) -> BatchRunResult:
        """Score candidate pairs batch by batch, persisting each batch immediately.

        Args:
            candidates: Pairs from candidate generation.
            force: Re-score pairs even when a fresh score exists.

        Returns:
            Counts plus the keys of every pair that was scored.

        Raises:
            ConfigurationError: Aborts the run.
            RunCancelledError: Between batches, if cancelled.
        """
        work, skipped = self._select_for_scoring(candidates, force)
        result = BatchRunResult(skipped=skipped)
        if skipped:
            log.info("Skipping %d pair(s) with fresh scores", skipped)

        for batch_number, total, batch in iter_batches(work, self._config.batch_size_scoring, self._token):
            keys = [candidate.key for candidate in batch]
            descriptor = self._descriptor(batch_number, total, keys)
            log.info("Scoring batch %d/%d (%d pairs)", batch_number, total, len(batch))
            try:
                pairs = self._build_pairs(batch, result)
                results = await self._gateway.score(pairs) if pairs else []
                scores = self._merge_scores(pairs, results)
                self._store.save_scores(scores)
                result.processed += len(scores)
                result.item_ids.extend(f"{s.id_1}:{s.id_2}" for s in scores)
                self._commit_batch("scoring", keys)
            except (ConfigurationError, RunCancelledError):
                raise
            except Exception as e:
                if can_skip(e):
                    log.warning("Skipping scoring batch %d/%d: %s", batch_number, total, e)
                    result.skipped += len(batch)
                else:
                    self._record_batch_failure("scoring", descriptor, e, result)
        return result

    # -------------------------------------------------------------------------
    # Tagging
    # -------------------------------------------------------------------------

    async def tag_documents(
        self,
        document_ids: Iterable[str],
        *,
        write_tags: Callable[[str, list[str]], list[str] | None],
    ) -> BatchRunResult:
        """Generate tags batch by batch.

        Tags are staged in the cache, handed to ``write_tags`` for the source
        document, and only then is ``tags_generated_at`` committed. A
        ``write_tags`` that raises ContentError leaves the timestamp unset.
        The staged list keeps the document's existing tags.
        """
        result = BatchRunResult()
        work = list(
            dict.fromkeys([*sorted(set(document_ids)), *sorted(self._journal.get_failed_item_keys("tagging"))])
        )
        limit = self._config.llm_tagging_max_chars

        for batch_number, total, batch in iter_batches(work, self._config.batch_size_tagging, self._token):
            descriptor = self._descriptor(batch_number, total, batch)
            log.info("Tagging batch %d/%d (%d documents)", batch_number, total, len(batch))
            try:
                notes = []
                for document_id in batch:
                    try:
                        note = self._note(document_id)
                    except ContentError as e:
                        log.warning("Skipping tagging: %s", e)
                        result.skipped += 1
                        continue
                    record = self._store.get_document(document_id)
                    notes.append(
                        NoteForTagging(
                            id=document_id,
                            title=note.title,
                            content=note.body[:limit],
                            existing_tags=record.tags if record else [],
                        )
                    )

                results = (
                    await self._gateway.tag(notes, min_tags=self._config.min_tags, max_tags=self._config.max_tags)
                    if notes
                    else []
                )
                by_id = {r.id: r for r in results}
                for note in notes:
                    tag_result = by_id.get(note.id)
                    if tag_result is None or not tag_result.tags:
                        log.warning("No tags returned for %s", self._label(note.id))
                        result.skipped += 1
                        continue
                    merged = list(dict.fromkeys([*note.existing_tags, *tag_result.tags]))
                    self._store.stage_tags(note.id, merged)
                    try:
                        written = write_tags(note.id, tag_result.tags)
                    except ContentError as e:
                        log.warning("Tags not written for %s: %s", self._label(note.id), e)
                        result.skipped += 1
                        continue
                    if written is not None and list(written) != merged:
                        self._store.stage_tags(note.id, list(written))
                    self._store.mark_tags_generated(note.id)
                    result.processed += 1
                    result.item_ids.append(note.id)
                self._commit_batch("tagging", batch)
            except (ConfigurationError, RunCancelledError):
                raise
            except Exception as e:
                self._record_batch_failure("tagging", descriptor, e, result)
        return result

    # -------------------------------------------------------------------------
    # Run
    # -------------------------------------------------------------------------

    async def run(
        self,
        changed_ids: Iterable[str] | None = None,
        *,
        force: bool = False,
        tag_ids: Iterable[str] | None = None,
        write_tags: Callable[[str, list[str]], list[str] | None] | None = None,
    ) -> EngineResult:
        """Compute candidates, score them and optionally tag documents.

        Args:
            changed_ids: Documents that changed since the last run. None, or
                ``force``, selects full candidate generation.
            force: Full mode; freshness skipping is disabled.
            tag_ids: Documents to tag. Tagging is skipped when None.
            write_tags: Callback writing tags into a source document.

        Raises:
            ConfigurationError: Aborts the run.
            RunCancelledError: When cancelled; persisted batches are kept.
        """
        result = EngineResult(states=self._states)
        try:
            self._transition(RunState.COMPUTE_CANDIDATES)
            embeddings = self._store.get_all_embeddings()
            threshold = self._config.similarity_threshold
            if force or changed_ids is None:
                candidates = generate_candidates_full(embeddings, threshold)
            else:
                candidates = generate_candidates_incremental(embeddings, changed_ids, threshold)
            log.info("Found %d candidate pair(s) above %.2f", len(candidates), threshold)

            self._transition(RunState.SCORE_BATCHES)
            result.scoring = await self.score_candidates(candidates, force=force)

            if tag_ids is not None and write_tags is not None:
                self._transition(RunState.TAG_BATCHES)
                result.tagging = await self.tag_documents(tag_ids, write_tags=write_tags)

            self._transition(RunState.DONE)
        except RunCancelledError:
            self._transition(RunState.CANCELLED)
            self._store.flush()
            raise

        if result.failed_batches:
            log.warning("%d batches failed", result.failed_batches)
        return result
