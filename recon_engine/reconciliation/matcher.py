"""
Matcher - pairs bank transactions with ledger entries.

1. Score every (transaction, entry) pair inside the lookback window whose
   direction and kind are compatible.
2. Sort by score desc, then date delta asc, then transaction id, then entry id.
3. Greedily accept the best pair whose two sides are both still free.
4. automatic when score >= auto_match_threshold, assisted when
   score >= assisted_threshold, otherwise both sides stay unmatched.

The total order in step 2 makes the output reproducible for fixed inputs.
"""

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Set

import structlog

from ..exceptions import InvalidInput
from ..models import (
    AuditAction,
    AuditEntry,
    BankTransaction,
    Direction,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    MatchCandidate,
    MatcherConfig,
    MatchResult,
    ReconciliationRecord,
    ResolvedBy,
    StageName,
)
from ..scoring import match_score
from .book import ReconciliationBook

logger = structlog.get_logger()

_COMPATIBLE_KINDS = {
    Direction.CREDIT: {EntryKind.REVENUE, EntryKind.TRANSFER},
    Direction.DEBIT: {EntryKind.EXPENSE, EntryKind.TRANSFER},
}

_NOT_CANDIDATES = {EntryStatus.RECONCILED, EntryStatus.IGNORED}


def kind_compatible(transaction: BankTransaction, entry: LedgerEntry) -> bool:
    return entry.kind in _COMPATIBLE_KINDS[transaction.direction]


def kind_for_direction(direction: Direction) -> EntryKind:
    return EntryKind.REVENUE if direction == Direction.CREDIT else EntryKind.EXPENSE


@dataclass
class AppliedMatches:
    """Records written to the book by apply()."""
    records: List[ReconciliationRecord]
    audit_entries: List[AuditEntry]


class Matcher:
    """Greedy, deterministic transaction/entry matcher."""

    def __init__(self, config: Optional[MatcherConfig] = None):
        self.config = config or MatcherConfig()

    def score_pair(
        self,
        transaction: BankTransaction,
        entry: LedgerEntry,
    ) -> Optional[MatchCandidate]:
        """Candidate for one pair, or None when the pair is not eligible."""
        if not kind_compatible(transaction, entry):
            return None

        delta = abs((transaction.date - entry.date).days)
        if delta > self.config.max_lookback_days:
            return None

        score = match_score(
            transaction.date,
            entry.date,
            transaction.magnitude,
            entry.magnitude,
            transaction.description,
            entry.description,
            tolerance_fraction=self.config.tolerance_fraction,
            max_lookback_days=self.config.max_lookback_days,
            weights=self.config.weights,
        )
        return MatchCandidate(
            transaction_id=transaction.id,
            entry_id=entry.id,
            score=score,
            automatic=score >= self.config.auto_match_threshold,
            date_delta=delta,
        )

    def candidates(
        self,
        transactions: Iterable[BankTransaction],
        entries: Iterable[LedgerEntry],
    ) -> List[MatchCandidate]:
        """All eligible pairs in acceptance order."""
        entries = list(entries)
        scored = []
        for transaction in transactions:
            for entry in entries:
                candidate = self.score_pair(transaction, entry)
                if candidate is not None:
                    scored.append(candidate)
        scored.sort(key=lambda c: c.sort_key)
        return scored

    def match(
        self,
        transactions: Iterable[BankTransaction],
        entries: Iterable[LedgerEntry],
        book: Optional[ReconciliationBook] = None,
    ) -> MatchResult:
        """
        Match unreconciled transactions against unreconciled entries.

        Args:
            transactions: Bank transactions
            entries: Ledger entries; reconciled and ignored ones are skipped
            book: Existing pairings; sides already in an active record are skipped

        Returns:
            MatchResult with the accepted records in acceptance order
        """
        transactions = sorted(transactions, key=lambda t: t.id)
        entries = sorted(entries, key=lambda e: e.id)

        open_transactions = [
            t for t in transactions
            if book is None or book.active_for_transaction(t.id) is None
        ]
        open_entries = [
            e for e in entries
            if e.status not in _NOT_CANDIDATES
            and (book is None or book.active_for_entry(e.id) is None)
        ]

        logger.info(
            "Starting matching",
            transactions=len(open_transactions),
            entries=len(open_entries),
        )

        candidates = self.candidates(open_transactions, open_entries)

        matched: List[ReconciliationRecord] = []
        used_transactions: Set[str] = set()
        used_entries: Set[str] = set()

        for candidate in candidates:
            if candidate.score < self.config.assisted_threshold:
                break
            if candidate.transaction_id in used_transactions or candidate.entry_id in used_entries:
                continue

            matched.append(ReconciliationRecord(
                transaction_id=candidate.transaction_id,
                entry_id=candidate.entry_id,
                score=candidate.score,
                automatic=candidate.automatic,
                resolved_by=ResolvedBy.AUTOMATIC if candidate.automatic else ResolvedBy.ASSISTED,
            ))
            used_transactions.add(candidate.transaction_id)
            used_entries.add(candidate.entry_id)

        result = MatchResult(
            matched=matched,
            unmatched_transactions=[t for t in open_transactions if t.id not in used_transactions],
            unmatched_entries=[e for e in open_entries if e.id not in used_entries],
            candidates_evaluated=len(candidates),
        )

        logger.info("Matching complete", **result.summary())
        return result

    def apply(
        self,
        result: MatchResult,
        entries: Iterable[LedgerEntry],
        book: ReconciliationBook,
    ) -> AppliedMatches:
        """
        Write accepted records to the book and mark their entries reconciled.

        Nothing is written when any record conflicts with the book.

        Raises:
            InvalidInput: if a transaction or entry is already paired
        """
        by_id: Dict[str, LedgerEntry] = {e.id: e for e in entries}
        applied = book.add_all(result.matched)
        audit_entries = []

        for record in applied:
            entry = by_id.get(record.entry_id)
            if entry is not None:
                entry.status = EntryStatus.RECONCILED
                entry.touch()

            audit_entries.append(AuditEntry(
                action=AuditAction.MATCH_ACCEPTED,
                stage=StageName.MATCH,
                transaction_ids=[record.transaction_id],
                entry_ids=[record.entry_id],
                message=(
                    f"{'Automatic' if record.automatic else 'Assisted'} match "
                    f"{record.transaction_id} <-> {record.entry_id}"
                ),
                details={"score": round(record.score, 4), "record_id": record.id},
            ))

        return AppliedMatches(records=applied, audit_entries=audit_entries)

    def reconcile_manually(
        self,
        transaction: BankTransaction,
        entry: LedgerEntry,
        book: ReconciliationBook,
    ) -> ReconciliationRecord:
        """
        Pair a transaction and an entry chosen by a human.

        The score is computed for reference only; the record is always assisted.

        Raises:
            InvalidInput: if the entry is ignored or either side is already paired
        """
        if entry.status == EntryStatus.IGNORED:
            raise InvalidInput(f"Entry {entry.id} is ignored and cannot be reconciled")

        candidate = self.score_pair(transaction, entry)
        score = candidate.score if candidate is not None else match_score(
            transaction.date,
            entry.date,
            transaction.magnitude,
            entry.magnitude,
            transaction.description,
            entry.description,
            tolerance_fraction=self.config.tolerance_fraction,
            max_lookback_days=self.config.max_lookback_days,
            weights=self.config.weights,
        )

        record = book.add(ReconciliationRecord(
            transaction_id=transaction.id,
            entry_id=entry.id,
            score=score,
            automatic=False,
            resolved_by=ResolvedBy.ASSISTED,
        ))
        entry.status = EntryStatus.RECONCILED
        entry.touch()

        logger.info(
            "Manual reconciliation",
            transaction_id=transaction.id,
            entry_id=entry.id,
            score=round(score, 4),
        )
        return record

    def unreconcile(
        self,
        record_id: str,
        book: ReconciliationBook,
        entry: Optional[LedgerEntry] = None,
    ) -> ReconciliationRecord:
        """Undo a pairing. The entry returns to classified, or unclassified without a category."""
        record = book.release(record_id)
        if entry is not None and entry.status == EntryStatus.RECONCILED:
            entry.status = EntryStatus.CLASSIFIED if entry.category else EntryStatus.UNCLASSIFIED
            entry.touch()
        logger.info("Reconciliation undone", record_id=record_id)
        return record
