"""Enumerations for the reconciliation engine."""

from enum import Enum


class Direction(str, Enum):
    """Direction of a bank transaction."""
    CREDIT = "credit"      # Money in
    DEBIT = "debit"        # Money out


class EntryKind(str, Enum):
    """Kind of a ledger entry."""
    REVENUE = "revenue"
    EXPENSE = "expense"
    TRANSFER = "transfer"


class EntryStatus(str, Enum):
    """
    Lifecycle of a ledger entry.

    UNCLASSIFIED: No category yet
    PENDING_REVIEW: Category suggested below the display threshold
    CLASSIFIED: Category accepted (automatic or manual)
    RECONCILED: Paired with a bank transaction
    IGNORED: Suppressed by the resolver (duplicate or voided), never deleted
    """
    UNCLASSIFIED = "unclassified"
    PENDING_REVIEW = "pending_review"
    CLASSIFIED = "classified"
    RECONCILED = "reconciled"
    IGNORED = "ignored"


class ResolvedBy(str, Enum):
    """Who accepted a reconciliation record."""
    AUTOMATIC = "automatic"    # Matcher, score above auto threshold
    ASSISTED = "assisted"      # Matcher suggestion or manual pairing
    AUTONOMOUS = "autonomous"  # Resolver


class Severity(str, Enum):
    """Severity of a cross-validation discrepancy."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"

    @property
    def rank(self) -> int:
        return _SEVERITY_RANK[self]


_SEVERITY_RANK = {Severity.LOW: 0, Severity.MEDIUM: 1, Severity.HIGH: 2}


class SourceType(str, Enum):
    """Ingestion source of cross-validated records."""
    OCR = "ocr"
    ERP = "erp"
    OPENBANKING = "openbanking"
    API_FISCAL = "api_fiscal"


class ValidationStatus(str, Enum):
    """Outcome of validating one source pair."""
    SUCCESS = "success"
    WARNING = "warning"
    ERROR = "error"
    UNAVAILABLE = "unavailable"


class ActionKind(str, Enum):
    """Autonomous mutation recorded in the resolution journal."""
    SUPPRESS_DUPLICATE = "suppress_duplicate"
    CORRECT_DIVERGENCE = "correct_divergence"
    CREATE_ENTRY = "create_entry"
    IGNORE_TRANSACTION = "ignore_transaction"


class ReviewReason(str, Enum):
    """Why an item was surfaced to the human review queue."""
    LOW_CONFIDENCE_CLASSIFICATION = "low_confidence_classification"
    POSSIBLE_DUPLICATE = "possible_duplicate"
    ASSISTED_MATCH = "assisted_match"
    DIVERGENCE_OUT_OF_TOLERANCE = "divergence_out_of_tolerance"
    UNMATCHED_TRANSACTION = "unmatched_transaction"
    UNMATCHED_ENTRY = "unmatched_entry"
    INTERNAL_TRANSFER = "internal_transfer"
    LOW_CONFIDENCE_FABRICATION = "low_confidence_fabrication"
    REVERTED_BY_HUMAN = "reverted_by_human"
    SOURCE_DISCREPANCY = "source_discrepancy"


class PatternKind(str, Enum):
    """Cadence of a recurring transaction pattern."""
    RECURRING = "recurring"    # Monthly or quarterly
    SEASONAL = "seasonal"      # Yearly
    PERIODIC = "periodic"      # Regular, other interval
    SINGULAR = "singular"


class StageName(str, Enum):
    """Stages of the processing pipeline, in execution order."""
    CLASSIFY = "classify"
    MATCH = "match"
    CROSS_VALIDATE = "cross_validate"
    RESOLVE = "resolve"
    PERSIST = "persist"
    NOTIFY = "notify"


class StageStatus(str, Enum):
    """Status of a single pipeline stage."""
    COMPLETED = "completed"
    PARTIAL = "partial"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class PipelineStatus(str, Enum):
    """Status of a pipeline run."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTIAL = "partial"
    CANCELLED = "cancelled"
    FAILED = "failed"


class AuditAction(str, Enum):
    """Type of audit action."""
    BATCH_RECEIVED = "batch_received"
    ENTRY_CLASSIFIED = "entry_classified"
    MATCH_ACCEPTED = "match_accepted"
    PATTERN_SUGGESTED = "pattern_suggested"
    MAPPING_LEARNED = "mapping_learned"
    DISCREPANCY_FOUND = "discrepancy_found"
    SOURCE_UNAVAILABLE = "source_unavailable"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    DIVERGENCE_CORRECTED = "divergence_corrected"
    ENTRY_CREATED = "entry_created"
    TRANSACTION_IGNORED = "transaction_ignored"
    MANUAL_REVIEW_REQUIRED = "manual_review_required"
    STAGE_FAILED = "stage_failed"
