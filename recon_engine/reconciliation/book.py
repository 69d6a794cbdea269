"""
ReconciliationBook - the set of accepted (transaction, entry) pairings.

Holds the exclusivity invariant: a transaction and an entry each appear in
at most one active record. Released records stay in the book for audit.
"""

from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional

import structlog

from ..exceptions import InvalidInput
from ..models import ReconciliationRecord

logger = structlog.get_logger()


class ReconciliationBook:
    """Accepted reconciliation records, indexed by transaction and by entry."""

    def __init__(self, records: Iterable[ReconciliationRecord] = ()):
        self._records: Dict[str, ReconciliationRecord] = {}
        self._by_transaction: Dict[str, str] = {}
        self._by_entry: Dict[str, str] = {}
        for record in records:
            self.add(record)

    def __len__(self) -> int:
        return len(self._by_transaction)

    def __contains__(self, record_id: str) -> bool:
        record = self._records.get(record_id)
        return record is not None and record.is_active

    def add(self, record: ReconciliationRecord) -> ReconciliationRecord:
        """
        Add an active record.

        Adding the same active pair again returns the existing record.

        Raises:
            InvalidInput: if the transaction or the entry is already paired elsewhere
        """
        existing = self._records.get(record.id)
        if existing is not None and existing.is_active:
            return existing

        self._check_free(record, self._by_transaction, self._by_entry)
        return self._insert(record)

    def add_all(self, records: Iterable[ReconciliationRecord]) -> List[ReconciliationRecord]:
        """
        Add several records, all or none.

        Every record is checked against the book and against the others
        before the first one is written.

        Raises:
            InvalidInput: if any transaction or entry is already paired
        """
        records = list(records)
        by_transaction = dict(self._by_transaction)
        by_entry = dict(self._by_entry)
        pending = []
        for record in records:
            existing = self._records.get(record.id)
            if existing is not None and existing.is_active:
                continue
            self._check_free(record, by_transaction, by_entry)
            by_transaction[record.transaction_id] = record.id
            by_entry[record.entry_id] = record.id
            pending.append(record)

        for record in pending:
            self._insert(record)
        return [self._records[r.id] for r in records]

    @staticmethod
    def _check_free(
        record: ReconciliationRecord,
        by_transaction: Dict[str, str],
        by_entry: Dict[str, str],
    ) -> None:
        taken_by = by_transaction.get(record.transaction_id)
        if taken_by is not None:
            raise InvalidInput(
                f"Transaction {record.transaction_id} is already reconciled",
                details={"record_id": taken_by},
            )
        taken_by = by_entry.get(record.entry_id)
        if taken_by is not None:
            raise InvalidInput(
                f"Entry {record.entry_id} is already reconciled",
                details={"record_id": taken_by},
            )

    def _insert(self, record: ReconciliationRecord) -> ReconciliationRecord:
        record.released_at = None
        self._records[record.id] = record
        self._by_transaction[record.transaction_id] = record.id
        self._by_entry[record.entry_id] = record.id
        return record

    def release(self, record_id: str) -> ReconciliationRecord:
        """Deactivate a record, freeing both sides. Unknown ids raise KeyError."""
        record = self._records[record_id]
        if record.is_active:
            record.released_at = datetime.now(timezone.utc)
            self._by_transaction.pop(record.transaction_id, None)
            self._by_entry.pop(record.entry_id, None)
            logger.debug("Reconciliation record released", record_id=record_id)
        return record

    def get(self, record_id: str) -> Optional[ReconciliationRecord]:
        return self._records.get(record_id)

    def active_for_transaction(self, transaction_id: str) -> Optional[ReconciliationRecord]:
        record_id = self._by_transaction.get(transaction_id)
        return self._records[record_id] if record_id else None

    def active_for_entry(self, entry_id: str) -> Optional[ReconciliationRecord]:
        record_id = self._by_entry.get(entry_id)
        return self._records[record_id] if record_id else None

    def active_records(self) -> List[ReconciliationRecord]:
        """Active records in a stable order (transaction id, entry id)."""
        active = [self._records[rid] for rid in self._by_transaction.values()]
        return sorted(active, key=lambda r: (r.transaction_id, r.entry_id))

    def all_records(self) -> List[ReconciliationRecord]:
        return list(self._records.values())
