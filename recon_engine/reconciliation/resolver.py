"""
Autonomous Resolver - resolves a bounded subset of discrepancies.

Rules are evaluated in a fixed priority order:
1. Duplicate ledger entries (same date, amount and kind, near-identical text)
2. Value divergence on an already matched pair
3. Unmatched transaction (internal transfer check, then fabrication)
4. Everything else is left pending for human review

Every mutation is a ResolutionAction in the journal. Items already ignored,
corrected or reconciled are skipped before any rule runs, so a second pass
over a resolved set changes nothing. Items whose autonomous action was
reverted by a human are left pending.
"""

from dataclasses import dataclass, field
from datetime import date, timedelta
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union
from uuid import uuid4

import structlog

from ..classification import Classifier, ClassifierModel
from ..exceptions import ConfigurationConflict
from ..models import (
    ActionKind,
    AuditAction,
    AuditEntry,
    BankTransaction,
    EntryStatus,
    LedgerEntry,
    ReconciliationRecord,
    ResolutionAction,
    ResolutionConfig,
    ResolutionOutcome,
    ResolvedBy,
    ReviewItem,
    ReviewReason,
    Severity,
    StageName,
    ValidationResult,
)
from ..models.reconciliation import review_id_for
from ..scoring import normalize_text, relative_difference, text_score
from .book import ReconciliationBook
from .journal import ResolutionJournal
from .matcher import kind_for_direction

logger = structlog.get_logger()

FABRICATED_ID_PREFIX = "auto-"

ACTION_AUDIT = {
    ActionKind.SUPPRESS_DUPLICATE: AuditAction.DUPLICATE_SUPPRESSED,
    ActionKind.CORRECT_DIVERGENCE: AuditAction.DIVERGENCE_CORRECTED,
    ActionKind.CREATE_ENTRY: AuditAction.ENTRY_CREATED,
    ActionKind.IGNORE_TRANSACTION: AuditAction.TRANSACTION_IGNORED,
}


@dataclass
class _Run:
    """Accumulator for one resolve() call."""
    run_id: str
    actions: List[ResolutionAction] = field(default_factory=list)
    pending: Dict[str, ReviewItem] = field(default_factory=dict)
    created_entries: List[LedgerEntry] = field(default_factory=list)
    counts: Dict[ActionKind, int] = field(default_factory=lambda: {k: 0 for k in ActionKind})

    def act(self, journal: ResolutionJournal, action: ResolutionAction) -> None:
        action.run_id = self.run_id
        journal.record(action)
        self.actions.append(action)
        self.counts[action.kind] += 1

    def defer(self, item: ReviewItem) -> None:
        self.pending.setdefault(item.id, item)


def fabricated_entry_id(transaction_id: str) -> str:
    return f"{FABRICATED_ID_PREFIX}{transaction_id}"


class AutonomousResolver:
    """
    Deterministic resolver over matcher and cross-validator output.

    Only the classifier model is shared state; it is read, never trained, here.
    """

    def __init__(self, classifier: Classifier, model: ClassifierModel):
        self.classifier = classifier
        self.model = model

    def resolve(
        self,
        transactions: Iterable[BankTransaction],
        entries: Iterable[LedgerEntry],
        book: ReconciliationBook,
        config: Union[ResolutionConfig, Mapping, None],
        journal: ResolutionJournal,
        validation_results: Sequence[ValidationResult] = (),
        as_of: Optional[date] = None,
        run_id: Optional[str] = None,
    ) -> ResolutionOutcome:
        """
        Resolve what the configuration allows and report the rest as pending.

        Args:
            transactions: Bank transactions of the scope (never mutated)
            entries: Ledger entries of the scope (mutated in place)
            book: Active pairings; updated when pairings move or are created
            config: ResolutionConfig, or a mapping of its fields
            journal: Receives every action applied
            validation_results: Cross-validation output of the same run
            as_of: When given, only items dated within max_lookback_days before it are considered
            run_id: Label for the actions of this run

        Raises:
            ConfigurationConflict: if the configuration is invalid
        """
        config = self._validated(config)
        run = _Run(run_id=run_id or str(uuid4()))

        transactions = sorted(transactions, key=lambda t: t.id)
        entries = sorted(entries, key=lambda e: e.id)
        if as_of is not None:
            window_start = as_of - timedelta(days=config.max_lookback_days)
            transactions = [t for t in transactions if window_start <= t.date <= as_of]
            entries = [e for e in entries if window_start <= e.date <= as_of]

        logger.info(
            "Starting autonomous resolution",
            run_id=run.run_id,
            transactions=len(transactions),
            entries=len(entries),
            create_missing_entries=config.create_missing_entries,
        )

        self._resolve_duplicates(entries, book, config, journal, run)
        self._correct_divergences(transactions, entries, book, config, journal, run)
        self._surface_source_discrepancies(validation_results, run)
        self._resolve_unmatched_transactions(transactions, entries, book, config, journal, run)
        self._surface_unmatched_entries(entries, book, run)

        outcome = ResolutionOutcome(
            duplicates_resolved=run.counts[ActionKind.SUPPRESS_DUPLICATE],
            divergences_corrected=run.counts[ActionKind.CORRECT_DIVERGENCE],
            entries_created=run.counts[ActionKind.CREATE_ENTRY],
            transactions_ignored=run.counts[ActionKind.IGNORE_TRANSACTION],
            records=tuple(book.active_records()),
            created_entries=tuple(run.created_entries),
            actions=tuple(run.actions),
            pending=tuple(run.pending.values()),
            run_id=run.run_id,
        )

        logger.info(
            "Autonomous resolution complete",
            run_id=run.run_id,
            pending=len(outcome.pending),
            **outcome.counts,
        )
        return outcome

    # Priority 1

    def _resolve_duplicates(
        self,
        entries: List[LedgerEntry],
        book: ReconciliationBook,
        config: ResolutionConfig,
        journal: ResolutionJournal,
        run: _Run,
    ) -> None:
        for group in self.duplicate_groups(entries, config.duplicate_text_threshold):
            paired = [e for e in group if book.active_for_entry(e.id) is not None]
            if len(paired) > 1:
                self._defer_duplicates(group, run, "Entries are reconciled to different transactions")
                continue

            if not config.resolve_duplicates:
                self._defer_duplicates(group, run, "Duplicate resolution is disabled")
                continue

            ranked = sorted(group, key=lambda e: (-e.confidence, e.id))
            keep, removed = ranked[0], ranked[1:]

            for entry in removed:
                if journal.was_reverted(ActionKind.SUPPRESS_DUPLICATE, None, entry.id):
                    run.defer(ReviewItem(
                        reason=ReviewReason.REVERTED_BY_HUMAN,
                        entry_id=entry.id,
                        message=f"Duplicate suppression of {entry.id} was reverted by a user",
                        details={"kept_entry_id": keep.id},
                    ))
                    continue
                self._suppress(entry, keep, book, journal, run)

    def _suppress(
        self,
        entry: LedgerEntry,
        keep: LedgerEntry,
        book: ReconciliationBook,
        journal: ResolutionJournal,
        run: _Run,
    ) -> None:
        before = {"status": entry.status.value}
        released, created = [], []

        record = book.active_for_entry(entry.id)
        if record is not None and book.active_for_entry(keep.id) is None:
            before["kept_entry_status"] = keep.status.value
            book.release(record.id)
            released.append(record.id)
            moved = book.add(ReconciliationRecord(
                transaction_id=record.transaction_id,
                entry_id=keep.id,
                score=record.score,
                automatic=True,
                resolved_by=ResolvedBy.AUTONOMOUS,
            ))
            created.append(moved.id)
            keep.status = EntryStatus.RECONCILED
            keep.touch()

        entry.status = EntryStatus.IGNORED
        entry.touch()

        run.act(journal, ResolutionAction(
            kind=ActionKind.SUPPRESS_DUPLICATE,
            transaction_id=None,
            entry_id=entry.id,
            reason=f"Duplicate of {keep.id}",
            before=before,
            after={"status": EntryStatus.IGNORED.value, "kept_entry_id": keep.id},
            released_record_ids=released,
            created_record_ids=created,
        ))

    def _defer_duplicates(self, group: List[LedgerEntry], run: _Run, message: str) -> None:
        ids = [e.id for e in group]
        for entry in group[1:]:
            run.defer(ReviewItem(
                reason=ReviewReason.POSSIBLE_DUPLICATE,
                entry_id=entry.id,
                message=f"{message}: {', '.join(ids)}",
                details={"group": ids},
            ))

    @staticmethod
    def duplicate_groups(
        entries: Iterable[LedgerEntry],
        text_threshold: float,
    ) -> List[List[LedgerEntry]]:
        """
        Groups of two or more active entries sharing date, magnitude and kind
        whose descriptions are near-identical, joined transitively.
        """
        buckets: Dict[Tuple, List[LedgerEntry]] = {}
        for entry in entries:
            if entry.status == EntryStatus.IGNORED:
                continue
            buckets.setdefault((entry.date, entry.magnitude, entry.kind), []).append(entry)

        groups = []
        for bucket in buckets.values():
            if len(bucket) < 2:
                continue
            bucket = sorted(bucket, key=lambda e: e.id)
            parent = list(range(len(bucket)))

            def find(i: int) -> int:
                while parent[i] != i:
                    parent[i] = parent[parent[i]]
                    i = parent[i]
                return i

            for i in range(len(bucket)):
                for j in range(i + 1, len(bucket)):
                    if text_score(bucket[i].description, bucket[j].description) >= text_threshold:
                        parent[find(j)] = find(i)

            components: Dict[int, List[LedgerEntry]] = {}
            for i, entry in enumerate(bucket):
                components.setdefault(find(i), []).append(entry)
            groups.extend(c for c in components.values() if len(c) > 1)

        return sorted(groups, key=lambda g: g[0].id)

    # Priority 2

    def _correct_divergences(
        self,
        transactions: List[BankTransaction],
        entries: List[LedgerEntry],
        book: ReconciliationBook,
        config: ResolutionConfig,
        journal: ResolutionJournal,
        run: _Run,
    ) -> None:
        by_entry = {e.id: e for e in entries}
        for transaction in transactions:
            record = book.active_for_transaction(transaction.id)
            if record is None:
                continue
            entry = by_entry.get(record.entry_id)
            if entry is None or entry.status == EntryStatus.IGNORED:
                continue

            divergence = relative_difference(transaction.magnitude, entry.magnitude)
            if divergence == 0.0:
                continue

            details = {
                "transaction_amount": transaction.magnitude,
                "entry_amount": entry.amount,
                "divergence": round(divergence, 6),
                "match_score": round(record.score, 4),
            }

            if journal.was_reverted(ActionKind.CORRECT_DIVERGENCE, transaction.id, entry.id):
                run.defer(ReviewItem(
                    reason=ReviewReason.REVERTED_BY_HUMAN,
                    transaction_id=transaction.id,
                    entry_id=entry.id,
                    score=record.score,
                    message="Divergence correction was reverted by a user",
                    details=details,
                ))
                continue

            if (
                config.correct_divergences
                and divergence <= config.tolerance_fraction
                and record.score >= config.min_confidence_to_resolve
            ):
                before_amount = entry.amount
                entry.amount = transaction.magnitude
                entry.touch()
                run.act(journal, ResolutionAction(
                    kind=ActionKind.CORRECT_DIVERGENCE,
                    transaction_id=transaction.id,
                    entry_id=entry.id,
                    reason=f"Divergence {divergence:.2%} within tolerance",
                    before={"amount": str(before_amount)},
                    after={"amount": str(entry.amount)},
                ))
            else:
                run.defer(ReviewItem(
                    reason=ReviewReason.DIVERGENCE_OUT_OF_TOLERANCE,
                    transaction_id=transaction.id,
                    entry_id=entry.id,
                    score=record.score,
                    message=f"Amount divergence {divergence:.2%} needs review",
                    details=details,
                ))

    def _surface_source_discrepancies(
        self,
        validation_results: Sequence[ValidationResult],
        run: _Run,
    ) -> None:
        for result in validation_results:
            for discrepancy in result.discrepancies:
                if discrepancy.severity != Severity.HIGH:
                    continue
                run.defer(ReviewItem(
                    id=review_id_for(
                        ReviewReason.SOURCE_DISCREPANCY,
                        discrepancy.source_record_id,
                        discrepancy.target_record_id,
                        discrepancy.field,
                    ),
                    reason=ReviewReason.SOURCE_DISCREPANCY,
                    message=(
                        f"{result.source.value}/{result.target_source.value}: "
                        f"{discrepancy.description}"
                    ),
                    details=discrepancy.to_dict(),
                ))

    # Priority 3

    def _resolve_unmatched_transactions(
        self,
        transactions: List[BankTransaction],
        entries: List[LedgerEntry],
        book: ReconciliationBook,
        config: ResolutionConfig,
        journal: ResolutionJournal,
        run: _Run,
    ) -> None:
        existing_ids = {e.id for e in entries}
        ignored = journal.ignored_transaction_ids()

        for transaction in transactions:
            if transaction.id in ignored or book.active_for_transaction(transaction.id) is not None:
                continue

            if (
                journal.was_reverted(ActionKind.IGNORE_TRANSACTION, transaction.id, None)
                or journal.was_reverted(
                    ActionKind.CREATE_ENTRY, transaction.id, fabricated_entry_id(transaction.id)
                )
            ):
                run.defer(ReviewItem(
                    reason=ReviewReason.REVERTED_BY_HUMAN,
                    transaction_id=transaction.id,
                    message=f"Autonomous action on {transaction.id} was reverted by a user",
                ))
                continue

            if self.is_internal_transfer(transaction, transactions, config):
                if config.ignore_internal_transfers:
                    run.act(journal, ResolutionAction(
                        kind=ActionKind.IGNORE_TRANSACTION,
                        transaction_id=transaction.id,
                        reason="Internal transfer",
                        after={"ignored": True},
                    ))
                else:
                    run.defer(ReviewItem(
                        reason=ReviewReason.INTERNAL_TRANSFER,
                        transaction_id=transaction.id,
                        message=f"Possible internal transfer: {transaction.description}",
                    ))
                continue

            entry_id = fabricated_entry_id(transaction.id)
            if config.create_missing_entries and entry_id not in existing_ids:
                entry = self._fabricate(transaction, book, config, journal, run)
                existing_ids.add(entry.id)
                continue

            run.defer(ReviewItem(
                reason=ReviewReason.UNMATCHED_TRANSACTION,
                transaction_id=transaction.id,
                message=f"No ledger entry for transaction {transaction.id}",
                details={"amount": transaction.amount, "date": transaction.date},
            ))

    def _fabricate(
        self,
        transaction: BankTransaction,
        book: ReconciliationBook,
        config: ResolutionConfig,
        journal: ResolutionJournal,
        run: _Run,
    ) -> LedgerEntry:
        kind = kind_for_direction(transaction.direction)
        guess = self.classifier.best_guess(transaction.description, self.model, kind)

        entry = LedgerEntry(
            id=fabricated_entry_id(transaction.id),
            date=transaction.date,
            amount=transaction.magnitude,
            description=transaction.description,
            kind=kind,
            category=guess.category,
            confidence=guess.confidence,
            status=EntryStatus.RECONCILED,
            suggested_category=guess.category,
        )
        record = book.add(ReconciliationRecord(
            transaction_id=transaction.id,
            entry_id=entry.id,
            score=1.0,
            automatic=True,
            resolved_by=ResolvedBy.AUTONOMOUS,
        ))
        run.created_entries.append(entry)

        run.act(journal, ResolutionAction(
            kind=ActionKind.CREATE_ENTRY,
            transaction_id=transaction.id,
            entry_id=entry.id,
            reason="Missing ledger entry created from bank transaction",
            after=entry.to_dict(),
            created_record_ids=[record.id],
        ))

        if guess.confidence < config.min_confidence_to_resolve:
            run.defer(ReviewItem(
                reason=ReviewReason.LOW_CONFIDENCE_FABRICATION,
                transaction_id=transaction.id,
                entry_id=entry.id,
                score=guess.confidence,
                message=f"Created entry {entry.id} with low-confidence category",
                details={"category": guess.category},
            ))
        return entry

    @staticmethod
    def is_internal_transfer(
        transaction: BankTransaction,
        transactions: Sequence[BankTransaction],
        config: ResolutionConfig,
    ) -> bool:
        """
        Description matches a configured pattern, or (when internal transfers
        are ignored) an opposite transaction of equal magnitude on the same
        account sits within the lookback window.
        """
        description = normalize_text(transaction.description)
        raw = (transaction.description or "").lower()
        for pattern in config.internal_transfer_patterns:
            if pattern in raw or normalize_text(pattern) in description:
                return True

        if not config.ignore_internal_transfers:
            return False

        for other in transactions:
            if (
                other.id != transaction.id
                and other.source_account == transaction.source_account
                and other.direction != transaction.direction
                and other.magnitude == transaction.magnitude
                and abs((other.date - transaction.date).days) <= config.max_lookback_days
            ):
                return True
        return False

    # Priority 4

    def _surface_unmatched_entries(
        self,
        entries: List[LedgerEntry],
        book: ReconciliationBook,
        run: _Run,
    ) -> None:
        for entry in entries:
            if entry.status in (EntryStatus.IGNORED, EntryStatus.RECONCILED):
                continue
            if book.active_for_entry(entry.id) is not None:
                continue
            run.defer(ReviewItem(
                reason=ReviewReason.UNMATCHED_ENTRY,
                entry_id=entry.id,
                message=f"No bank transaction for entry {entry.id}",
                details={"amount": entry.amount, "date": entry.date},
            ))

    @staticmethod
    def _validated(config: Union[ResolutionConfig, Mapping, None]) -> ResolutionConfig:
        if config is None:
            return ResolutionConfig()
        if isinstance(config, ResolutionConfig):
            return config
        if isinstance(config, Mapping):
            return ResolutionConfig.from_mapping(config)
        raise ConfigurationConflict(f"Unsupported resolution config: {type(config).__name__}")


def audit_entries_for(outcome: ResolutionOutcome) -> List[AuditEntry]:
    """Audit trail of the actions and pending items of one outcome."""
    audit_entries = [
        AuditEntry(
            action=ACTION_AUDIT[action.kind],
            stage=StageName.RESOLVE,
            transaction_ids=[action.transaction_id] if action.transaction_id else [],
            entry_ids=[action.entry_id] if action.entry_id else [],
            message=action.reason,
            details={"action_id": action.id},
        )
        for action in outcome.actions
    ]
    audit_entries.extend(
        AuditEntry(
            action=AuditAction.MANUAL_REVIEW_REQUIRED,
            stage=StageName.RESOLVE,
            transaction_ids=[item.transaction_id] if item.transaction_id else [],
            entry_ids=[item.entry_id] if item.entry_id else [],
            message=item.message,
            details={"reason": item.reason.value, "review_id": item.id},
        )
        for item in outcome.pending
    )
    return audit_entries
