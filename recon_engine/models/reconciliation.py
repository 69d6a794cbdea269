"""Reconciliation, validation and resolution result models."""

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Optional, List, Dict, Any, Tuple
from uuid import NAMESPACE_URL, uuid4, uuid5

from ..scoring import severity_rank_for_distance
from .enums import (
    ActionKind,
    AuditAction,
    PipelineStatus,
    ResolvedBy,
    ReviewReason,
    Severity,
    SourceType,
    StageName,
    StageStatus,
    ValidationStatus,
)
from .records import BankTransaction, LedgerEntry, SourceRecord, to_date

_SEVERITY_BY_RANK = (Severity.LOW, Severity.MEDIUM, Severity.HIGH)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def record_id_for(transaction_id: str, entry_id: str) -> str:
    """Deterministic reconciliation record id for a (transaction, entry) pair."""
    return str(uuid5(NAMESPACE_URL, f"recon:{transaction_id}:{entry_id}"))


def review_id_for(reason: "ReviewReason", *subject_ids: Optional[str]) -> str:
    key = ":".join(s or "" for s in subject_ids)
    return str(uuid5(NAMESPACE_URL, f"review:{reason.value}:{key}"))


@dataclass(frozen=True)
class MatchCandidate:
    """A scored (transaction, entry) pair. Transient, produced per matching run."""
    transaction_id: str
    entry_id: str
    score: float
    automatic: bool
    date_delta: int = 0

    @property
    def sort_key(self) -> Tuple[float, int, str, str]:
        return (-self.score, self.date_delta, self.transaction_id, self.entry_id)


@dataclass
class ReconciliationRecord:
    """Accepted pairing between one bank transaction and one ledger entry."""
    transaction_id: str
    entry_id: str
    score: float
    automatic: bool
    resolved_by: ResolvedBy = ResolvedBy.AUTOMATIC
    id: str = ""

    # Audit
    created_at: datetime = field(default_factory=_utcnow, compare=False)
    released_at: Optional[datetime] = field(default=None, compare=False)

    def __post_init__(self):
        if not self.id:
            self.id = record_id_for(self.transaction_id, self.entry_id)
        self.resolved_by = ResolvedBy(self.resolved_by)

    @property
    def is_active(self) -> bool:
        return self.released_at is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_id": self.transaction_id,
            "entry_id": self.entry_id,
            "score": round(self.score, 6),
            "automatic": self.automatic,
            "resolved_by": self.resolved_by.value,
            "created_at": self.created_at.isoformat(),
            "released_at": self.released_at.isoformat() if self.released_at else None,
        }


@dataclass
class MatchResult:
    """Output of one Matcher run."""
    matched: List[ReconciliationRecord] = field(default_factory=list)
    unmatched_transactions: List[BankTransaction] = field(default_factory=list)
    unmatched_entries: List[LedgerEntry] = field(default_factory=list)
    candidates_evaluated: int = 0

    @property
    def automatic(self) -> List[ReconciliationRecord]:
        return [r for r in self.matched if r.automatic]

    @property
    def assisted(self) -> List[ReconciliationRecord]:
        return [r for r in self.matched if not r.automatic]

    def summary(self) -> Dict[str, int]:
        return {
            "matched": len(self.matched),
            "automatic": len(self.automatic),
            "assisted": len(self.assisted),
            "unmatched_transactions": len(self.unmatched_transactions),
            "unmatched_entries": len(self.unmatched_entries),
            "candidates_evaluated": self.candidates_evaluated,
        }


@dataclass(frozen=True)
class Discrepancy:
    """
    A differing field between two joined source records.
    Severity is derived from the normalized distance and cannot be passed in.
    """
    field: str
    source_value: Any
    target_value: Any
    distance: float
    description: str = ""
    source_record_id: str = ""
    target_record_id: str = ""
    severity: Severity = field(init=False)

    def __post_init__(self):
        object.__setattr__(
            self, "severity", _SEVERITY_BY_RANK[severity_rank_for_distance(self.distance)]
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "source_value": _plain(self.source_value),
            "target_value": _plain(self.target_value),
            "distance": round(self.distance, 6),
            "severity": self.severity.value,
            "description": self.description,
            "source_record_id": self.source_record_id,
            "target_record_id": self.target_record_id,
        }


def _plain(value: Any) -> Any:
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    return str(value)


@dataclass
class ValidationResult:
    """Outcome of cross-validating one pair of sources."""
    source: SourceType
    target_source: SourceType
    match_rate: float = 0.0
    status: ValidationStatus = ValidationStatus.SUCCESS
    discrepancies: List[Discrepancy] = field(default_factory=list)
    joined_pairs: List[Tuple[str, str]] = field(default_factory=list)
    unmatched_source_ids: List[str] = field(default_factory=list)
    unmatched_target_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=_utcnow, compare=False)

    @property
    def pair(self) -> Tuple[SourceType, SourceType]:
        return (self.source, self.target_source)

    @property
    def high_severity(self) -> List[Discrepancy]:
        return [d for d in self.discrepancies if d.severity == Severity.HIGH]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": self.source.value,
            "target_source": self.target_source.value,
            "match_rate": round(self.match_rate, 6),
            "status": self.status.value,
            "discrepancies": [d.to_dict() for d in self.discrepancies],
            "unmatched_source_ids": list(self.unmatched_source_ids),
            "unmatched_target_ids": list(self.unmatched_target_ids),
            "error": self.error,
        }


@dataclass
class ReviewItem:
    """An item surfaced to the human review queue."""
    reason: ReviewReason
    message: str = ""
    transaction_id: Optional[str] = None
    entry_id: Optional[str] = None
    score: Optional[float] = None
    details: Dict[str, Any] = field(default_factory=dict)
    id: str = ""
    created_at: datetime = field(default_factory=_utcnow, compare=False)

    def __post_init__(self):
        self.reason = ReviewReason(self.reason)
        if not self.id:
            self.id = review_id_for(self.reason, self.transaction_id, self.entry_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "reason": self.reason.value,
            "message": self.message,
            "transaction_id": self.transaction_id,
            "entry_id": self.entry_id,
            "score": self.score,
            "details": {k: _plain(v) for k, v in self.details.items()},
            "created_at": self.created_at.isoformat(),
        }


@dataclass
class ResolutionAction:
    """
    One autonomous mutation, kept in the resolution journal so a human can
    revert it individually.

    before/after hold the entry fields the action changed.
    released_record_ids / created_record_ids hold the book changes.
    """
    kind: ActionKind
    transaction_id: Optional[str] = None
    entry_id: Optional[str] = None
    run_id: str = ""
    reason: str = ""
    before: Dict[str, Any] = field(default_factory=dict)
    after: Dict[str, Any] = field(default_factory=dict)
    released_record_ids: List[str] = field(default_factory=list)
    created_record_ids: List[str] = field(default_factory=list)
    id: str = field(default_factory=lambda: str(uuid4()))
    created_at: datetime = field(default_factory=_utcnow)
    reverted_at: Optional[datetime] = None

    @property
    def is_reverted(self) -> bool:
        return self.reverted_at is not None

    @property
    def subject(self) -> Tuple[ActionKind, Optional[str], Optional[str]]:
        """Identity of the item acted upon, stable across runs."""
        return (self.kind, self.transaction_id, self.entry_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "run_id": self.run_id,
            "transaction_id": self.transaction_id,
            "entry_id": self.entry_id,
            "reason": self.reason,
            "before": {k: _plain(v) for k, v in self.before.items()},
            "after": {k: _plain(v) for k, v in self.after.items()},
            "released_record_ids": list(self.released_record_ids),
            "created_record_ids": list(self.created_record_ids),
            "created_at": self.created_at.isoformat(),
            "reverted_at": self.reverted_at.isoformat() if self.reverted_at else None,
        }


@dataclass(frozen=True)
class ResolutionOutcome:
    """Produced once per resolver invocation. Never mutated afterwards."""
    duplicates_resolved: int = 0
    divergences_corrected: int = 0
    entries_created: int = 0
    transactions_ignored: int = 0
    records: Tuple[ReconciliationRecord, ...] = ()
    created_entries: Tuple[LedgerEntry, ...] = ()
    actions: Tuple[ResolutionAction, ...] = ()
    pending: Tuple[ReviewItem, ...] = ()
    run_id: str = ""

    @property
    def counts(self) -> Dict[str, int]:
        return {
            "duplicates_resolved": self.duplicates_resolved,
            "divergences_corrected": self.divergences_corrected,
            "entries_created": self.entries_created,
            "transactions_ignored": self.transactions_ignored,
        }

    @property
    def total_resolved(self) -> int:
        return sum(self.counts.values())


@dataclass
class AuditEntry:
    """An entry in the audit log."""
    id: str = field(default_factory=lambda: str(uuid4()))
    timestamp: datetime = field(default_factory=_utcnow)

    # Action
    action: AuditAction = AuditAction.BATCH_RECEIVED
    stage: Optional[StageName] = None

    # Context
    transaction_ids: List[str] = field(default_factory=list)
    entry_ids: List[str] = field(default_factory=list)

    # Details
    message: str = ""
    details: Dict[str, Any] = field(default_factory=dict)

    # Outcome
    success: bool = True
    error_message: Optional[str] = None


@dataclass(frozen=True)
class PipelineScope:
    """
    Client/account/period a pipeline run operates on. Two scopes overlap
    when they share a client and their periods intersect, whatever the
    account: ledger entries are fetched per client.
    """
    client: str
    account: str
    period_start: date
    period_end: date
    sources: Tuple[SourceType, ...] = (SourceType.ERP, SourceType.OCR)

    def __post_init__(self):
        object.__setattr__(self, "period_start", to_date(self.period_start))
        object.__setattr__(self, "period_end", to_date(self.period_end))
        object.__setattr__(self, "sources", tuple(SourceType(s) for s in self.sources))

    def overlaps(self, other: "PipelineScope") -> bool:
        return (
            self.client == other.client
            and self.period_start <= other.period_end
            and other.period_start <= self.period_end
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "client": self.client,
            "account": self.account,
            "period_start": self.period_start.isoformat(),
            "period_end": self.period_end.isoformat(),
            "sources": [s.value for s in self.sources],
        }


@dataclass
class PipelineBatch:
    """
    Input of one pipeline run. source_records, when given, replaces fetching
    for the listed sources; missing sources are fetched from the provider.
    """
    scope: PipelineScope
    transactions: List[BankTransaction] = field(default_factory=list)
    entries: List[LedgerEntry] = field(default_factory=list)
    source_records: Dict[SourceType, List[SourceRecord]] = field(default_factory=dict)


@dataclass
class StageReport:
    """Status of one pipeline stage."""
    stage: StageName
    status: StageStatus = StageStatus.COMPLETED
    message: str = ""
    error: Optional[str] = None
    duration_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "stage": self.stage.value,
            "status": self.status.value,
            "message": self.message,
            "error": self.error,
            "duration_ms": round(self.duration_ms, 3),
        }


@dataclass
class PipelineResult:
    """Aggregated result of a pipeline run, including partial results."""
    scope: PipelineScope
    run_id: str = field(default_factory=lambda: str(uuid4()))
    status: PipelineStatus = PipelineStatus.PENDING

    stages: List[StageReport] = field(default_factory=list)

    # Stage outputs
    classified_count: int = 0
    match_result: Optional[MatchResult] = None
    validation_results: List[ValidationResult] = field(default_factory=list)
    outcome: Optional[ResolutionOutcome] = None
    review_items: List[ReviewItem] = field(default_factory=list)
    persisted_entries: int = 0
    persisted_records: int = 0
    notified_items: int = 0

    audit_log: List[AuditEntry] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    started_at: datetime = field(default_factory=_utcnow)
    completed_at: Optional[datetime] = None

    def stage(self, name: StageName) -> Optional[StageReport]:
        for report in self.stages:
            if report.stage == name:
                return report
        return None

    @property
    def processing_time_seconds(self) -> float:
        if self.completed_at is None:
            return 0.0
        return (self.completed_at - self.started_at).total_seconds()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "run_id": self.run_id,
            "scope": self.scope.to_dict(),
            "status": self.status.value,
            "stages": [s.to_dict() for s in self.stages],
            "classified_count": self.classified_count,
            "match": self.match_result.summary() if self.match_result else None,
            "records": [r.to_dict() for r in self.match_result.matched] if self.match_result else [],
            "validation": [v.to_dict() for v in self.validation_results],
            "resolution": self.outcome.counts if self.outcome else None,
            "actions": [a.to_dict() for a in self.outcome.actions] if self.outcome else [],
            "review_items": [i.to_dict() for i in self.review_items],
            "persisted_entries": self.persisted_entries,
            "persisted_records": self.persisted_records,
            "notified_items": self.notified_items,
            "errors": list(self.errors),
            "warnings": list(self.warnings),
            "processing_time_seconds": self.processing_time_seconds,
        }
