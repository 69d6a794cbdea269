"""Data models for the reconciliation engine."""

from .enums import (
    ActionKind,
    AuditAction,
    Direction,
    EntryKind,
    EntryStatus,
    PatternKind,
    PipelineStatus,
    ResolvedBy,
    ReviewReason,
    Severity,
    SourceType,
    StageName,
    StageStatus,
    ValidationStatus,
)
from .records import (
    BankTransaction,
    LedgerEntry,
    SourceRecord,
    ensure_valid,
    to_date,
    to_decimal,
)
from .engine_config import (
    DEFAULT_INTERNAL_TRANSFER_PATTERNS,
    ClassifierConfig,
    CrossValidationConfig,
    MatcherConfig,
    PatternConfig,
    ResolutionConfig,
)
from .reconciliation import (
    AuditEntry,
    Discrepancy,
    MatchCandidate,
    MatchResult,
    PipelineBatch,
    PipelineResult,
    PipelineScope,
    ReconciliationRecord,
    ResolutionAction,
    ResolutionOutcome,
    ReviewItem,
    StageReport,
    ValidationResult,
    record_id_for,
)

__all__ = [
    # Enums
    "ActionKind",
    "AuditAction",
    "Direction",
    "EntryKind",
    "EntryStatus",
    "PatternKind",
    "PipelineStatus",
    "ResolvedBy",
    "ReviewReason",
    "Severity",
    "SourceType",
    "StageName",
    "StageStatus",
    "ValidationStatus",
    # Records
    "BankTransaction",
    "LedgerEntry",
    "SourceRecord",
    "ensure_valid",
    "to_date",
    "to_decimal",
    # Config
    "DEFAULT_INTERNAL_TRANSFER_PATTERNS",
    "ClassifierConfig",
    "CrossValidationConfig",
    "MatcherConfig",
    "PatternConfig",
    "ResolutionConfig",
    # Results
    "AuditEntry",
    "Discrepancy",
    "MatchCandidate",
    "MatchResult",
    "PipelineBatch",
    "PipelineResult",
    "PipelineScope",
    "ReconciliationRecord",
    "ResolutionAction",
    "ResolutionOutcome",
    "ReviewItem",
    "StageReport",
    "ValidationResult",
    "record_id_for",
]
