"""Journal of batch failures awaiting retry.

The journal is the only record of what must be retried. The orchestrator
unions journaled item keys into the next run's work set, and deletes a record
as soon as a successful batch covers any of its items.
"""

from __future__ import annotations

import logging
import secrets
from collections import Counter
from datetime import UTC, datetime, timedelta

from .cache_store import CacheStore
from .config import FAILURE_RETENTION_DAYS
from .models import BatchDescriptor, ErrorDetail, FailureRecord, OperationType

log = logging.getLogger(__name__)


def _new_failure_id(now: datetime) -> str:
    return f"{int(now.timestamp() * 1000)}-{secrets.token_hex(3)}"


class FailureJournal:
    """Records, lists and resolves failed batches in the cache store."""

    def __init__(self, store: CacheStore) -> None:
        self._store = store

    def record_failure(
        self,
        operation_type: OperationType,
        batch: BatchDescriptor,
        error: BaseException | ErrorDetail,
    ) -> FailureRecord:
        """Journal an unrecovered batch failure.

        Re-recording the same set of items for the same operation overwrites
        the existing unresolved record instead of adding a duplicate.

        Args:
            operation_type: 'scoring', 'tagging' or 'embedding'.
            batch: Descriptor with the item keys and display labels.
            error: The exception (or an already-built ErrorDetail).

        Returns:
            The stored record.
        """
        detail = error if isinstance(error, ErrorDetail) else ErrorDetail.from_exception(error)
        now = datetime.now(tz=UTC)

        existing = self._find_identical(operation_type, batch.items)
        record = FailureRecord(
            id=existing.id if existing else _new_failure_id(now),
            timestamp=now,
            operation_type=operation_type,
            batch=batch,
            error=detail,
        )
        self._store.append_failure(record)
        log.warning(
            "Recorded %s failure for batch %d/%d (%d items): %s",
            operation_type,
            batch.batch_number,
            batch.total_batches,
            len(batch.items),
            detail.message,
        )
        return record

    def _find_identical(self, operation_type: str, items: list[str]) -> FailureRecord | None:
        wanted = set(items)
        for record in self._store.list_failures(operation_type):
            if set(record.batch.items) == wanted:
                return record
        return None

    def get_unresolved_failures(self, operation_type: OperationType | None = None) -> list[FailureRecord]:
        return self._store.list_failures(operation_type)

    def get_failed_item_keys(self, operation_type: OperationType) -> set[str]:
        """Union of item keys across unresolved records of one type."""
        keys: set[str] = set()
        for record in self._store.list_failures(operation_type):
            keys.update(record.batch.items)
        return keys

    def delete_failure(self, failure_id: str) -> bool:
        return self._store.delete_failure(failure_id)

    def mark_resolved(self, failure_id: str) -> None:
        self._store.mark_failure_resolved(failure_id)

    def resolve_covered(self, operation_type: OperationType, item_keys: set[str] | list[str]) -> int:
        """Delete every unresolved record sharing any item with a successful batch.

        Returns:
            Number of records deleted.
        """
        covered = set(item_keys)
        if not covered:
            return 0
        deleted = 0
        for record in self._store.list_failures(operation_type):
            if covered.intersection(record.batch.items):
                self._store.delete_failure(record.id)
                deleted += 1
        if deleted:
            log.info("Resolved %d %s failure record(s)", deleted, operation_type)
        return deleted

    def get_unresolved_count(self) -> int:
        return len(self._store.list_failures())

    def get_failures_by_type(self) -> dict[str, int]:
        """Count unresolved records per operation type."""
        return dict(Counter(record.operation_type for record in self._store.list_failures()))

    def cleanup_old(self, days: int = FAILURE_RETENTION_DAYS) -> int:
        """Purge resolved records older than ``days``."""
        cutoff = datetime.now(tz=UTC) - timedelta(days=days)
        return self._store.delete_resolved_failures_before(cutoff)

    def clear(self) -> int:
        return self._store.delete_all_failures()
