"""
External collaborator interfaces and in-memory implementations.

The engine only talks to banking, ledger storage, ingestion sources and
the review queue through these async interfaces.
"""

from abc import ABC, abstractmethod
from datetime import date
from typing import Dict, Iterable, List, Optional, Tuple

import structlog

from .models import (
    BankTransaction,
    LedgerEntry,
    ReconciliationRecord,
    ReviewItem,
    SourceRecord,
    SourceType,
)

logger = structlog.get_logger()


def _in_period(value: date, start: date, end: date) -> bool:
    return start <= value <= end


class BankingGateway(ABC):
    """Banking collaborator: source of imported bank transactions."""

    @abstractmethod
    async def fetch_transactions(
        self,
        account: str,
        period_start: date,
        period_end: date,
    ) -> List[BankTransaction]:
        ...


class LedgerRepository(ABC):
    """Storage collaborator for ledger entries and reconciliation records."""

    @abstractmethod
    async def fetch_ledger_entries(
        self,
        client: str,
        period_start: date,
        period_end: date,
    ) -> List[LedgerEntry]:
        ...

    @abstractmethod
    async def persist_ledger_entry(self, entry: LedgerEntry) -> None:
        ...

    @abstractmethod
    async def persist_reconciliation_record(self, record: ReconciliationRecord) -> None:
        ...


class SourceRecordProvider(ABC):
    """Ingestion collaborators (OCR, ERP, open banking, fiscal API)."""

    @abstractmethod
    async def fetch_source_records(
        self,
        source_type: SourceType,
        client: str,
        period: Tuple[date, date],
    ) -> List[SourceRecord]:
        ...


class ReviewQueue(ABC):
    """Human review queue. Fire and forget: notify() never raises on delivery failure."""

    @abstractmethod
    async def notify(self, item: ReviewItem) -> bool:
        ...


class InMemoryBankingGateway(BankingGateway):
    def __init__(self, transactions: Iterable[BankTransaction] = ()):
        self.transactions: List[BankTransaction] = list(transactions)

    async def fetch_transactions(self, account, period_start, period_end):
        return [
            t for t in self.transactions
            if (not account or not t.source_account or t.source_account == account)
            and _in_period(t.date, period_start, period_end)
        ]


class InMemoryLedgerRepository(LedgerRepository):
    """Ledger kept in dicts. Entries are stored by reference."""

    def __init__(self, entries: Iterable[LedgerEntry] = ()):
        self.entries: Dict[str, LedgerEntry] = {e.id: e for e in entries}
        self.records: Dict[str, ReconciliationRecord] = {}

    async def fetch_ledger_entries(self, client, period_start, period_end):
        return [
            e for e in self.entries.values()
            if (not client or not e.client or e.client == client)
            and _in_period(e.date, period_start, period_end)
        ]

    async def persist_ledger_entry(self, entry: LedgerEntry) -> None:
        self.entries[entry.id] = entry

    async def persist_reconciliation_record(self, record: ReconciliationRecord) -> None:
        self.records[record.id] = record


class InMemorySourceRecordProvider(SourceRecordProvider):
    def __init__(self, records: Optional[Dict[SourceType, Iterable[SourceRecord]]] = None):
        self.records: Dict[SourceType, List[SourceRecord]] = {
            SourceType(k): list(v) for k, v in (records or {}).items()
        }

    async def fetch_source_records(self, source_type, client, period):
        start, end = period
        return [
            r for r in self.records.get(SourceType(source_type), [])
            if _in_period(r.date, start, end)
        ]
