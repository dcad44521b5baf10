"""End-to-end workflows over one KB.

Workflow ties the document store, cache, gateway, orchestrator and link
reconciler together. Every entry point that mutates the cache holds the
process-wide run lock and flushes the cache on the way out.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Iterable

from .cache_store import CacheStore
from .config import LinkerConfig, get_cache_path, load_config
from .documents import DocumentError, DocumentStore, content_hash, has_hash_boundary
from .engine import RUN_LOCK, CancellationToken, Orchestrator, RunLock, generate_candidates_incremental
from .errors import ContentError
from .failure_journal import FailureJournal
from .gateway import LLMGateway, RemoteModelGateway
from .linking import LinkReconciler
from .models import CacheStats, DocumentRecord, HealthReport, RunSummary
from .similarity import parse_pair_key

log = logging.getLogger(__name__)


class Workflow:
    """Processing, retry and maintenance operations for a KB."""

    def __init__(
        self,
        root: Path,
        config: LinkerConfig | None = None,
        gateway: RemoteModelGateway | None = None,
        store: CacheStore | None = None,
        lock: RunLock = RUN_LOCK,
    ) -> None:
        self.root = root
        self.config = config or load_config(root)
        self.documents = DocumentStore(root, self.config.excluded_folders, self.config.excluded_patterns)
        self.store = store or CacheStore(get_cache_path(root))
        self.journal = FailureJournal(self.store)
        self.gateway = gateway or LLMGateway(self.config)
        self.reconciler = LinkReconciler(self.store, self.documents, self.config)
        self._lock = lock

    def close(self) -> None:
        self.store.close()

    def __enter__(self) -> Workflow:
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    def _orchestrator(self, token: CancellationToken | None) -> Orchestrator:
        return Orchestrator(self.store, self.gateway, self.journal, self.config, self.documents, token)

    # -------------------------------------------------------------------------
    # Document sync
    # -------------------------------------------------------------------------

    def sync_documents(self) -> tuple[list[str], set[str], set[str]]:
        """Scan the KB and bring document records up to date.

        Assigns missing ``note_id``s, appends missing hash-boundary markers,
        and drops the embedding and scores of documents whose hashable body
        changed.

        Returns:
            (ids of all live documents, ids of new or changed documents,
            ids of documents that only moved to a new path)
        """
        live: list[str] = []
        changed: set[str] = set()
        renamed: set[str] = set()
        seen: set[str] = set()

        for path in self.documents.scan():
            try:
                document_id = self.documents.ensure_document_id(path)
                if document_id in seen:
                    document_id = self.documents.assign_new_id(path)
                    log.warning("Duplicate note_id in %s; assigned %s", path, document_id)
                self.documents.ensure_hash_boundary(path)
                text = self.documents.read(path)
            except DocumentError as e:
                log.warning("Skipping document: %s", e)
                continue
            seen.add(document_id)
            live.append(document_id)

            digest = content_hash(text)
            existing = self.store.get_document(document_id)
            now = datetime.now(tz=UTC)
            content_changed = existing is None or existing.content_hash != digest
            if content_changed:
                changed.add(document_id)
                if existing is not None:
                    # A stored hash never outlives its embedding
                    self.store.delete_embedding(document_id)
                    self.store.delete_scores_for_document(document_id)
            elif existing.path == path:
                continue
            else:
                renamed.add(document_id)

            self.store.upsert_document(
                DocumentRecord(
                    id=document_id,
                    path=path,
                    content_hash=digest,
                    created_at=existing.created_at if existing else now,
                    modified_at=datetime.fromtimestamp(self.documents.modified_at(path), tz=UTC),
                    title=self.documents.title_for(path, text),
                    tags=self.documents.get_tags(path),
                    embedding_updated_at=None if content_changed else existing.embedding_updated_at,
                    tags_generated_at=None if content_changed else existing.tags_generated_at,
                )
            )

        log.info("Scanned %d document(s), %d new or changed", len(live), len(changed))
        return live, changed, renamed

    def _write_tags(self, document_id: str, tags: list[str]) -> list[str]:
        record = self.store.get_document(document_id)
        if record is None:
            raise ContentError(f"Document {document_id} is not in the cache", item_id=document_id)
        try:
            return self.documents.write_tags(record.path, tags)
        except DocumentError as e:
            raise ContentError(str(e), item_id=document_id) from e

    def _tag_targets(self, live: list[str], changed: set[str], force: bool) -> list[str]:
        if force:
            return list(live)
        targets = []
        for document_id in live:
            record = self.store.get_document(document_id)
            if document_id in changed:
                targets.append(document_id)
            elif record is not None and record.tags_generated_at is None and record.embedding_updated_at:
                targets.append(document_id)
        return targets

    def _affected_by(self, changed: set[str], scored_keys: Iterable[str]) -> set[str]:
        """Documents whose link sets may differ after ``changed`` were rescored."""
        affected = set(changed)
        for key in scored_keys:
            affected.update(parse_pair_key(key))
        affected.update(self.store.get_ledger_sources_targeting(changed))
        return affected

    # -------------------------------------------------------------------------
    # Entry points
    # -------------------------------------------------------------------------

    async def process(
        self,
        *,
        force: bool = False,
        tag: bool = True,
        token: CancellationToken | None = None,
    ) -> RunSummary:
        """Embed, score, link and tag.

        Smart mode (default) only embeds new or changed documents, compares
        them against everything else, and reuses fresh scores. Force mode
        recomputes everything.

        Raises:
            ConfigurationError: On settings problems (run aborted).
            RunCancelledError: If ``token`` is cancelled between batches.
            RunInProgressError: If another run is active.
        """
        with self._lock:
            try:
                live, changed, renamed = self.sync_documents()
                summary = RunSummary(scanned=len(live), changed=len(changed))

                orchestrator = self._orchestrator(token)
                to_embed = [
                    document_id
                    for document_id in live
                    if force or document_id in changed or self.store.get_embedding(document_id) is None
                ]
                embedded = await orchestrator.embed_documents(to_embed)
                summary.embedded = embedded.processed

                # Only fresh vectors are compared; unscored documents catch up
                # after an interrupted run
                to_score = set(embedded.item_ids) | self.store.get_unscored_document_ids()
                result = await orchestrator.run(
                    None if force else to_score,
                    force=force,
                    tag_ids=self._tag_targets(live, changed, force) if tag else None,
                    write_tags=self._write_tags,
                )
                summary.scored_pairs = result.scoring.processed
                summary.tagged = result.tagging.processed
                summary.failed_batches = embedded.failed_batches + result.failed_batches

                if force:
                    affected = set(live)
                else:
                    affected = self._affected_by(changed | set(embedded.item_ids), result.scoring.item_ids)
                    affected.update(self.store.get_ledger_sources_targeting(renamed))
                links = self.reconciler.reconcile_documents(affected)
                summary.links_added = links.added
                summary.links_removed = links.removed
                summary.unresolved_failures = self.journal.get_unresolved_count()
            finally:
                self.store.flush()

        if summary.failed_batches:
            log.warning("%d batches failed; run 'lw retry' to retry them", summary.failed_batches)
        return summary

    async def retry_failures(self, token: CancellationToken | None = None) -> RunSummary:
        """Re-run only the journaled failures, then update affected links."""
        with self._lock:
            try:
                summary = RunSummary()
                orchestrator = self._orchestrator(token)

                embedded = await orchestrator.embed_documents([])
                summary.embedded = embedded.processed
                candidates = generate_candidates_incremental(
                    self.store.get_all_embeddings(),
                    embedded.item_ids,
                    self.config.similarity_threshold,
                )
                scoring = await orchestrator.score_candidates(candidates)
                summary.scored_pairs = scoring.processed
                tagging = await orchestrator.tag_documents([], write_tags=self._write_tags)
                summary.tagged = tagging.processed
                summary.failed_batches = (
                    embedded.failed_batches + scoring.failed_batches + tagging.failed_batches
                )

                affected = self._affected_by(set(embedded.item_ids), scoring.item_ids)
                links = self.reconciler.reconcile_documents(affected)
                summary.links_added = links.added
                summary.links_removed = links.removed
                summary.unresolved_failures = self.journal.get_unresolved_count()
            finally:
                self.store.flush()
        return summary

    def recalibrate_links(self) -> RunSummary:
        """Rebuild every document's links from cached scores (no remote calls)."""
        with self._lock:
            try:
                links = self.reconciler.recalibrate_all()
            finally:
                self.store.flush()
        return RunSummary(links_added=links.added, links_removed=links.removed)

    def clean_orphans(self) -> int:
        """Forget documents whose files are gone, with their embeddings, scores and links.

        Returns:
            Number of documents removed from the cache.
        """
        with self._lock:
            try:
                orphans = [
                    record for record in self.store.list_documents() if not self.documents.exists(record.path)
                ]
                removed_ids = {record.id for record in orphans}
                linking_in = self.store.get_ledger_sources_targeting(removed_ids) - removed_ids
                for record in orphans:
                    self.store.delete_document(record.id)
                    log.info("Removed orphaned document %s", record.path)
                removed = len(orphans)
                if linking_in:
                    self.reconciler.reconcile_documents(linking_in)
                self.store.cleanup_orphans()
                self.journal.cleanup_old()
            finally:
                self.store.flush()
        return removed

    def health_check(self) -> HealthReport:
        """Report inconsistencies without changing anything."""
        report = HealthReport(unresolved_failures=self.journal.get_unresolved_count())
        report.orphaned_documents = [
            record.path for record in self.store.list_documents() if not self.documents.exists(record.path)
        ]
        for path in self.documents.scan():
            try:
                if not self.documents.get_document_id(path):
                    report.missing_note_id.append(path)
                if not has_hash_boundary(self.documents.read(path)):
                    report.missing_boundary.append(path)
            except DocumentError as e:
                log.warning("Cannot check %s", e)
        return report

    def stats(self) -> CacheStats:
        return self.store.stats()
