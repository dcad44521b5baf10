"""Tests for candidate generation and the batch orchestrator."""

import math
from datetime import UTC, datetime, timedelta

import numpy as np
import pytest

from conftest import FakeGateway, create_note, make_record
from linkweave.config import NEUTRAL_AI_SCORE, LinkerConfig
from linkweave.documents import DocumentStore
from linkweave.engine import (
    CancellationToken,
    Orchestrator,
    RunLock,
    RunState,
    generate_candidates_full,
    generate_candidates_incremental,
    iter_batches,
)
from linkweave.errors import (
    ConfigurationError,
    ContentError,
    RunCancelledError,
    RunInProgressError,
    TransientError,
)
from linkweave.failure_journal import FailureJournal
from linkweave.gateway import MISSING_SCORE_REASON
from linkweave.models import BatchDescriptor, Candidate, EmbeddingVector, PairScore, ScoreResult
from linkweave.similarity import cosine_similarity

VECTORS = {
    "a": [1.0, 0.0, 0.0],
    "b": [0.8, 0.6, 0.0],
    "c": [0.3, 0.85, math.sqrt(1 - 0.09 - 0.7225)],
}


def _setup_kb(kb_root, store, vectors=VECTORS) -> DocumentStore:
    """Notes on disk plus cached records and embeddings for each id."""
    now = datetime.now(UTC)
    for doc_id, vector in vectors.items():
        create_note(kb_root, f"{doc_id}.md", f"Note {doc_id}", f"Body of note {doc_id}.", note_id=doc_id, boundary=True)
        store.upsert_document(make_record(doc_id, f"{doc_id}.md"))
        store.save_embedding(EmbeddingVector(document_id=doc_id, vector=vector, model_name="m", created_at=now))
    return DocumentStore(kb_root)


def _orchestrator(store, documents, gateway, config=None, token=None) -> Orchestrator:
    return Orchestrator(store, gateway, FailureJournal(store), config or LinkerConfig(), documents, token)


def _candidates(*keys: str) -> list[Candidate]:
    result = []
    for key in keys:
        id_1, id_2 = key.split(":")
        result.append(Candidate(id_1=id_1, id_2=id_2, similarity=0.8))
    return result


class TestCandidateGeneration:
    """Tests for full and incremental candidate generation."""

    def test_full_mode_applies_threshold(self):
        """Only pairs at or above the threshold are candidates."""
        candidates = generate_candidates_full(VECTORS, 0.7)
        assert [c.key for c in candidates] == ["a:b", "b:c"]
        assert candidates[0].similarity == pytest.approx(0.8)

    def test_full_mode_threshold_is_inclusive(self):
        candidates = generate_candidates_full({"x": [1.0, 0.0], "y": [1.0, 0.0]}, 1.0)
        assert [c.key for c in candidates] == ["x:y"]

    def test_incremental_pairs_changed_with_everything(self):
        """Each changed document is compared against all others."""
        candidates = generate_candidates_incremental(VECTORS, ["c"], 0.7)
        assert [c.key for c in candidates] == ["b:c"]

    def test_incremental_dedupes_pairs_of_changed_documents(self):
        """A pair of two changed documents appears once."""
        candidates = generate_candidates_incremental(VECTORS, ["b", "a"], 0.7)
        assert sorted(c.key for c in candidates) == ["a:b", "b:c"]

    def test_incremental_ignores_documents_without_embeddings(self):
        assert generate_candidates_incremental(VECTORS, ["missing"], 0.0) == []

    def test_dimension_mismatch_is_skipped(self):
        """A pair with mismatched vectors is dropped, not fatal."""
        vectors = {"a": [1.0, 0.0], "b": [1.0, 0.0, 0.0], "c": [1.0, 0.0]}
        assert [c.key for c in generate_candidates_full(vectors, 0.5)] == ["a:c"]

    def test_incremental_dimension_mismatch_is_skipped(self):
        vectors = {"a": [1.0, 0.0], "b": [1.0, 0.0, 0.0], "c": [1.0, 0.0]}
        assert [c.key for c in generate_candidates_incremental(vectors, ["b", "c"], 0.5)] == ["a:c"]

    def test_modes_agree_with_pairwise_cosine(self):
        """Both generators match a pair-by-pair cosine comparison."""
        rng = np.random.default_rng(3)
        vectors = {f"n{i:02d}": rng.normal(size=8).tolist() for i in range(30)}
        threshold = 0.3
        expected = {
            f"{a}:{b}": cosine_similarity(vectors[a], vectors[b])
            for a in sorted(vectors)
            for b in sorted(vectors)
            if a < b and cosine_similarity(vectors[a], vectors[b]) >= threshold
        }

        full = generate_candidates_full(vectors, threshold)
        incremental = generate_candidates_incremental(vectors, vectors.keys(), threshold)

        assert [c.key for c in full] == sorted(expected)
        assert sorted(c.key for c in incremental) == sorted(expected)
        for candidate in full:
            assert candidate.similarity == pytest.approx(expected[candidate.key])


class TestIterBatches:
    """Tests for batch slicing and cancellation checks."""

    def test_numbered_batches(self):
        batches = list(iter_batches(list("abcde"), 2))
        assert batches == [(1, 3, ["a", "b"]), (2, 3, ["c", "d"]), (3, 3, ["e"])]

    def test_empty_input(self):
        assert list(iter_batches([], 3)) == []

    def test_cancelled_before_first_batch(self):
        token = CancellationToken()
        token.cancel()
        with pytest.raises(RunCancelledError):
            list(iter_batches([1, 2], 1, token))

    def test_cancelled_between_batches(self):
        """Cancellation takes effect before the next batch is handed out."""
        token = CancellationToken()
        seen = []
        with pytest.raises(RunCancelledError):
            for number, _, batch in iter_batches([1, 2, 3], 1, token):
                seen.append(batch)
                token.cancel()
        assert seen == [[1]]


class TestRunLock:
    """Tests for the single-run guard."""

    def test_second_acquire_is_rejected(self):
        lock = RunLock()
        lock.acquire()
        with pytest.raises(RunInProgressError, match="Another task is already running"):
            lock.acquire()
        lock.release()
        assert not lock.locked

    def test_context_manager_releases_on_error(self):
        lock = RunLock()
        with pytest.raises(RuntimeError):
            with lock:
                assert lock.locked
                raise RuntimeError("boom")
        assert not lock.locked


class TestScoring:
    """Tests for batched scoring."""

    @pytest.mark.asyncio
    async def test_scores_are_written_per_batch(self, tmp_kb, store):
        """Every candidate gets a canonical score with the model name."""
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway(default_score=9.0)
        orchestrator = _orchestrator(store, documents, gateway, LinkerConfig(batch_size_scoring=1))

        result = await orchestrator.score_candidates(_candidates("a:b", "b:c"))

        assert result.processed == 2
        assert len(gateway.score_calls) == 2
        score = store.get_score("b", "a")
        assert score.ai_score == 9.0
        assert score.model == "fake-model"
        assert score.similarity_score == 0.8

    @pytest.mark.asyncio
    async def test_pair_content_comes_from_notes(self, tmp_kb, store):
        """Titles come from front-matter and bodies are truncated."""
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway()
        orchestrator = _orchestrator(store, documents, gateway, LinkerConfig(llm_scoring_max_chars=7))

        await orchestrator.score_candidates(_candidates("a:b"))

        pair = gateway.score_calls[0][0]
        assert pair.title_1 == "Note a"
        assert pair.content_1 == "Body of"

    @pytest.mark.asyncio
    async def test_failed_batch_does_not_stop_later_batches(self, tmp_kb, store):
        """A failing batch is journaled and the next batch still runs."""
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway(fail_score_calls={1})
        orchestrator = _orchestrator(store, documents, gateway, LinkerConfig(batch_size_scoring=1))

        result = await orchestrator.score_candidates(_candidates("a:b", "b:c"))

        assert result.failed_batches == 1
        assert result.processed == 1
        assert store.get_score("a", "b") is None
        assert store.get_score("b", "c") is not None

        failures = FailureJournal(store).get_unresolved_failures("scoring")
        assert len(failures) == 1
        assert failures[0].batch.items == ["a:b"]
        assert failures[0].batch.display_items == ["a.md <-> b.md"]
        assert failures[0].batch.batch_number == 1
        assert failures[0].batch.total_batches == 2

    @pytest.mark.asyncio
    async def test_fresh_scores_are_skipped(self, tmp_kb, store):
        """Smart mode reuses scores younger than the freshness window."""
        documents = _setup_kb(tmp_kb, store)
        store.save_score(
            PairScore.canonical("a", "b", similarity_score=0.8, ai_score=6.0, last_scored=datetime.now(UTC))
        )
        gateway = FakeGateway()
        result = await _orchestrator(store, documents, gateway).score_candidates(_candidates("a:b"))

        assert result.skipped == 1
        assert gateway.score_calls == []
        assert store.get_score("a", "b").ai_score == 6.0

    @pytest.mark.asyncio
    async def test_stale_scores_are_rescored(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        stale = datetime.now(UTC) - timedelta(days=8)
        store.save_score(PairScore.canonical("a", "b", similarity_score=0.8, ai_score=6.0, last_scored=stale))
        gateway = FakeGateway(default_score=9.0)

        await _orchestrator(store, documents, gateway).score_candidates(_candidates("a:b"))

        assert store.get_score("a", "b").ai_score == 9.0

    @pytest.mark.asyncio
    async def test_force_rescores_fresh_pairs(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        store.save_score(
            PairScore.canonical("a", "b", similarity_score=0.8, ai_score=6.0, last_scored=datetime.now(UTC))
        )
        gateway = FakeGateway(default_score=9.0)

        await _orchestrator(store, documents, gateway).score_candidates(_candidates("a:b"), force=True)

        assert len(gateway.score_calls) == 1

    @pytest.mark.asyncio
    async def test_journaled_pair_bypasses_freshness_and_resolves(self, tmp_kb, store):
        """A journaled pair is rescored even with a fresh score, then cleared."""
        documents = _setup_kb(tmp_kb, store)
        store.save_score(
            PairScore.canonical("a", "b", similarity_score=0.8, ai_score=6.0, last_scored=datetime.now(UTC))
        )
        journal = FailureJournal(store)
        journal.record_failure(
            "scoring",
            BatchDescriptor(batch_number=1, total_batches=1, items=["a:b"]),
            TransientError("Rate limit exceeded", status=429),
        )
        gateway = FakeGateway(default_score=9.0)

        result = await _orchestrator(store, documents, gateway).score_candidates(_candidates("a:b"))

        assert result.processed == 1
        assert store.get_score("a", "b").ai_score == 9.0
        assert journal.get_unresolved_count() == 0

    @pytest.mark.asyncio
    async def test_journaled_pair_without_candidate_is_rebuilt(self, tmp_kb, store):
        """Journaled pairs are retried even when not among the new candidates."""
        documents = _setup_kb(tmp_kb, store)
        FailureJournal(store).record_failure(
            "scoring",
            BatchDescriptor(batch_number=1, total_batches=1, items=["a:b"]),
            TransientError("Server error: 503", status=503),
        )
        gateway = FakeGateway()

        result = await _orchestrator(store, documents, gateway).score_candidates([])

        assert result.item_ids == ["a:b"]
        assert store.get_score("a", "b").similarity_score == pytest.approx(0.8)

    @pytest.mark.asyncio
    async def test_configuration_error_aborts(self, tmp_kb, store):
        """A ConfigurationError stops the run and is not journaled."""

        class RejectingGateway(FakeGateway):
            async def score(self, pairs, prompt=None):
                raise ConfigurationError("Invalid API key", status=401)

        documents = _setup_kb(tmp_kb, store)
        orchestrator = _orchestrator(store, documents, RejectingGateway(), LinkerConfig(batch_size_scoring=1))

        with pytest.raises(ConfigurationError):
            await orchestrator.score_candidates(_candidates("a:b", "b:c"))
        assert FailureJournal(store).get_unresolved_count() == 0

    @pytest.mark.asyncio
    async def test_missing_results_get_neutral_score(self, tmp_kb, store):
        """Pairs the model did not answer are saved with a neutral score."""

        class ShortGateway(FakeGateway):
            async def score(self, pairs, prompt=None):
                first = pairs[0]
                return [ScoreResult(id_1=first.id_1, id_2=first.id_2, score=9.0)]

        documents = _setup_kb(tmp_kb, store)
        await _orchestrator(store, documents, ShortGateway()).score_candidates(_candidates("a:b", "b:c"))

        assert store.get_score("a", "b").ai_score == 9.0
        padded = store.get_score("b", "c")
        assert padded.ai_score == NEUTRAL_AI_SCORE
        assert padded.reasoning == MISSING_SCORE_REASON

    @pytest.mark.asyncio
    async def test_unknown_document_is_skipped(self, tmp_kb, store):
        """A pair whose document cannot be loaded is skipped, not failed."""
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway()

        result = await _orchestrator(store, documents, gateway).score_candidates(_candidates("a:zz", "a:b"))

        assert result.skipped == 1
        assert result.failed_batches == 0
        assert result.processed == 1


class TestEmbedding:
    """Tests for batched embedding."""

    @pytest.mark.asyncio
    async def test_embeds_title_and_body(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway(vectors={"Note a": [0.0, 1.0]})

        result = await _orchestrator(store, documents, gateway).embed_documents(["a"])

        assert result.processed == 1
        assert gateway.embed_calls == [["Note a\n\nBody of note a."]]
        assert store.get_embedding("a").vector == [0.0, 1.0]

    @pytest.mark.asyncio
    async def test_empty_body_is_skipped(self, tmp_kb, store):
        create_note(tmp_kb, "empty.md", "Empty", "", note_id="e", boundary=True)
        store.upsert_document(make_record("e", "empty.md"))
        gateway = FakeGateway()

        result = await _orchestrator(store, DocumentStore(tmp_kb), gateway).embed_documents(["e"])

        assert result.skipped == 1
        assert gateway.embed_calls == []

    @pytest.mark.asyncio
    async def test_failed_embedding_is_retried_next_time(self, tmp_kb, store):
        """Journaled embedding failures join the next embedding pass."""
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway(fail_embed_calls={1})
        config = LinkerConfig(batch_size_embedding=1)

        first = await _orchestrator(store, documents, gateway, config).embed_documents(["a", "b"])
        assert first.failed_batches == 1
        assert FailureJournal(store).get_failed_item_keys("embedding") == {"a"}

        second = await _orchestrator(store, documents, gateway, config).embed_documents([])
        assert second.item_ids == ["a"]
        assert FailureJournal(store).get_unresolved_count() == 0

    @pytest.mark.asyncio
    async def test_new_vector_drops_old_scores(self, tmp_kb, store):
        """Scores computed against a replaced vector are removed."""
        documents = _setup_kb(tmp_kb, store)
        now = datetime.now(UTC)
        store.save_score(PairScore.canonical("a", "b", similarity_score=0.8, ai_score=9.0, last_scored=now))
        store.save_score(PairScore.canonical("b", "c", similarity_score=0.75, ai_score=9.0, last_scored=now))

        await _orchestrator(store, documents, FakeGateway(vectors={"Note a": [0.0, 1.0, 0.0]})).embed_documents(["a"])

        assert store.get_score("a", "b") is None
        assert store.get_score("b", "c") is not None
        assert store.get_unscored_document_ids() == {"a"}


class TestTagging:
    """Tests for batched tagging and commit ordering."""

    @pytest.mark.asyncio
    async def test_timestamp_only_after_write(self, tmp_kb, store):
        """A document whose tags could not be written keeps no timestamp."""
        documents = _setup_kb(tmp_kb, store)
        written = {}

        def write_tags(document_id, tags):
            if document_id == "b":
                raise ContentError("read-only", item_id="b")
            written[document_id] = tags

        result = await _orchestrator(store, documents, FakeGateway()).tag_documents(
            ["a", "b"], write_tags=write_tags
        )

        assert written == {"a": ["alpha", "beta", "gamma"]}
        assert result.processed == 1
        assert result.skipped == 1
        assert store.get_document("a").tags_generated_at is not None
        b = store.get_document("b")
        assert b.tags_generated_at is None
        assert b.tags == ["alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_staged_tags_keep_existing_ones(self, tmp_kb, store):
        """The cache holds the merged list, which later prompts see as existing tags."""
        documents = _setup_kb(tmp_kb, store)
        store.stage_tags("a", ["mine", "beta"])
        gateway = FakeGateway()

        await _orchestrator(store, documents, gateway).tag_documents(["a"], write_tags=lambda *_: None)

        assert gateway.tag_calls[0][0].existing_tags == ["mine", "beta"]
        assert store.get_document("a").tags == ["mine", "beta", "alpha", "gamma"]

    @pytest.mark.asyncio
    async def test_written_tags_are_staged(self, tmp_kb, store):
        """The list the document ended up with wins over the cached guess."""
        documents = _setup_kb(tmp_kb, store)

        await _orchestrator(store, documents, FakeGateway()).tag_documents(
            ["a"], write_tags=lambda document_id, tags: ["from-file", *tags]
        )

        assert store.get_document("a").tags == ["from-file", "alpha", "beta", "gamma"]

    @pytest.mark.asyncio
    async def test_failed_tag_batch_is_journaled(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway(fail_tag_calls={1})
        config = LinkerConfig(batch_size_tagging=2)

        result = await _orchestrator(store, documents, gateway, config).tag_documents(
            ["a", "b", "c"], write_tags=lambda *_: None
        )

        assert result.failed_batches == 1
        assert result.item_ids == ["c"]
        assert FailureJournal(store).get_failed_item_keys("tagging") == {"a", "b"}
        assert store.get_document("a").tags_generated_at is None


class TestRun:
    """Tests for the state machine."""

    @pytest.mark.asyncio
    async def test_states_in_order(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        orchestrator = _orchestrator(store, documents, FakeGateway())

        result = await orchestrator.run(["a"], tag_ids=["a"], write_tags=lambda *_: None)

        assert result.states == [
            RunState.IDLE,
            RunState.COMPUTE_CANDIDATES,
            RunState.SCORE_BATCHES,
            RunState.TAG_BATCHES,
            RunState.DONE,
        ]
        assert result.scoring.item_ids == ["a:b"]
        assert result.tagging.processed == 1

    @pytest.mark.asyncio
    async def test_no_tagging_without_tag_ids(self, tmp_kb, store):
        documents = _setup_kb(tmp_kb, store)
        gateway = FakeGateway()

        result = await _orchestrator(store, documents, gateway).run()

        assert RunState.TAG_BATCHES not in result.states
        assert gateway.tag_calls == []
        assert result.scoring.processed == 2

    @pytest.mark.asyncio
    async def test_cancellation_keeps_completed_batches(self, tmp_kb, store):
        """Cancelling after the first batch keeps its scores and stops the run."""
        documents = _setup_kb(tmp_kb, store)
        token = CancellationToken()

        def score_then_cancel(pair):
            token.cancel()
            return 9.0

        gateway = FakeGateway(score_for=score_then_cancel)
        orchestrator = _orchestrator(store, documents, gateway, LinkerConfig(batch_size_scoring=1), token)

        with pytest.raises(RunCancelledError, match="Task cancelled by user"):
            await orchestrator.run()

        assert orchestrator.state is RunState.CANCELLED
        assert len(gateway.score_calls) == 1
        assert store.get_score("a", "b").ai_score == 9.0
        assert store.get_score("b", "c") is None
