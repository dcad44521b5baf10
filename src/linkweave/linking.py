"""Link selection and ledger-based reconciliation.

The ledger records which links this engine inserted into each document. On
every reconcile the desired target set (from scores and thresholds) is diffed
against the ledger, the link region after the hash-boundary marker is
rewritten, and the ledger is replaced with the desired set. Running twice with
the same desired set is a no-op.
"""

from __future__ import annotations

import logging
from typing import Iterable

from .cache_store import CacheStore
from .config import HASH_BOUNDARY, LinkerConfig
from .documents import DocumentError, DocumentStore, display_name, split_front_matter
from .models import PairScore, ReconcileResult

log = logging.getLogger(__name__)


def directed_pairs(scores: Iterable[PairScore]) -> list[PairScore]:
    """Expand canonical scores so each appears once per direction.

    In the result ``id_1`` is the source document and ``id_2`` the target.
    """
    expanded: list[PairScore] = []
    for score in scores:
        expanded.append(score)
        expanded.append(score.model_copy(update={"id_1": score.id_2, "id_2": score.id_1}))
    return expanded


def find_best_links(document_id: str, scored_pairs: list[PairScore], max_links: int) -> list[str]:
    """Targets for a document, best AI score first, capped at ``max_links``.

    Only pairs whose first member is ``document_id`` are considered. Ties keep
    their input order.
    """
    own = [pair for pair in scored_pairs if pair.id_1 == document_id]
    own.sort(key=lambda pair: pair.ai_score, reverse=True)
    return [pair.id_2 for pair in own[:max_links]]


def get_desired_targets_for(
    document_id: str, scored_pairs: list[PairScore], config: LinkerConfig
) -> list[str]:
    """Targets passing both thresholds, in best-first order.

    A pair qualifies when ``similarity_score >= similarity_threshold`` and
    ``ai_score >= min_ai_score``.
    """
    qualifying = [
        pair
        for pair in scored_pairs
        if pair.similarity_score >= config.similarity_threshold and pair.ai_score >= config.min_ai_score
    ]
    return find_best_links(document_id, qualifying, config.max_links_per_note)


def render_link_region(names: list[str]) -> str:
    return "".join(f"- [[{name}]]\n" for name in names)


class LinkReconciler:
    """Applies desired link sets to documents and keeps the ledger in step."""

    def __init__(self, store: CacheStore, documents: DocumentStore, config: LinkerConfig) -> None:
        self._store = store
        self._documents = documents
        self._config = config

    def link_name(self, target_id: str) -> str:
        record = self._store.get_document(target_id)
        if record is None:
            log.warning("Link target %s is not in the cache; using its id as the name", target_id)
            return target_id
        return display_name(record.path)

    def reconcile_using_ledger(self, path: str, document_id: str, desired: list[str]) -> ReconcileResult:
        """Make the document's link region and ledger match ``desired``.

        Documents without the hash-boundary marker are left untouched and
        report zero edits.

        Args:
            path: Document path relative to the KB root.
            document_id: The document's note_id.
            desired: Target ids in the order they should be listed.

        Returns:
            Number of links added and removed relative to the ledger.
        """
        text = self._documents.read(path)
        front, body = split_front_matter(text)
        marker = body.find(HASH_BOUNDARY)
        if marker == -1:
            log.debug("No hash boundary in %s; skipping link reconciliation", path)
            return ReconcileResult()

        desired = list(dict.fromkeys(t for t in desired if t != document_id))
        current = self._store.get_ledger_targets(document_id)
        to_add = set(desired) - current
        to_remove = current - set(desired)

        head = body[: marker + len(HASH_BOUNDARY)]
        new_text = f"{front}{head}\n{render_link_region([self.link_name(t) for t in desired])}"
        if new_text != text:
            self._documents.write(path, new_text)

        self._store.set_ledger_targets(document_id, desired)
        if to_add or to_remove:
            log.info("Links for %s: +%d -%d", path, len(to_add), len(to_remove))
        return ReconcileResult(added=len(to_add), removed=len(to_remove))

    def reconcile_documents(self, document_ids: Iterable[str]) -> ReconcileResult:
        """Reconcile several documents from cached scores.

        Documents missing from the cache or from disk are skipped; an
        unreadable document is logged and skipped.
        """
        total = ReconcileResult()
        for document_id in sorted(set(document_ids)):
            record = self._store.get_document(document_id)
            if record is None or not self._documents.exists(record.path):
                continue
            scores = directed_pairs(self._store.get_scores_for_document(document_id))
            desired = get_desired_targets_for(document_id, scores, self._config)
            try:
                result = self.reconcile_using_ledger(record.path, document_id, desired)
            except DocumentError as e:
                log.warning("Skipping link update: %s", e)
                continue
            total.added += result.added
            total.removed += result.removed
        return total

    def recalibrate_all(self) -> ReconcileResult:
        """Reconcile every cached document, e.g. after a threshold change."""
        return self.reconcile_documents(record.id for record in self._store.list_documents())
