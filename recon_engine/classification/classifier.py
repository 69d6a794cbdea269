"""
Classifier - assigns a category and a confidence to ledger entries.

State machine per entry:
    unclassified -> classified       (confidence >= display threshold)
    unclassified -> pending_review   (confidence below the threshold)
    pending_review -> classified     (manual reclassification, confidence 1.0)

Scoring: every description token votes for the categories it has been
seen with, in proportion to its counts. The winner is the category with the
highest total. Confidence is the margin over the runner-up relative to the
winner, scaled by the share of tokens that voted at all. A tie or an empty
vote leaves the entry unclassified.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Iterable, Any

import structlog

from ..exceptions import InvalidInput
from ..models import (
    AuditAction,
    AuditEntry,
    ClassifierConfig,
    EntryKind,
    EntryStatus,
    LedgerEntry,
    StageName,
)
from ..scoring import tokenize
from .model import ClassifierModel, ModelSnapshot

logger = structlog.get_logger()


@dataclass(frozen=True)
class Prediction:
    """Best category for a description, or no guess."""
    category: Optional[str]
    confidence: float
    votes: Dict[str, float] = field(default_factory=dict, compare=False)

    @property
    def has_guess(self) -> bool:
        return self.category is not None


NO_GUESS = Prediction(category=None, confidence=0.0)


@dataclass
class ClassificationResult:
    """Result of classifying a batch of entries."""
    classified: List[str]
    pending_review: List[str]
    unclassified: List[str]
    audit_entries: List[AuditEntry]
    stats: Dict[str, int]


@dataclass
class ClassifierStatistics:
    """Snapshot statistics of a ClassifierModel."""
    trained_example_count: int
    per_category_counts: Dict[str, int]
    estimated_precision: Optional[float]
    reviewed_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trained_example_count": self.trained_example_count,
            "per_category_counts": dict(self.per_category_counts),
            "estimated_precision": self.estimated_precision,
            "reviewed_count": self.reviewed_count,
        }


class Classifier:
    """
    Frequency/keyword classifier over an explicit ClassifierModel.

    The classifier holds no model state of its own; callers pass the model.
    """

    def __init__(self, config: Optional[ClassifierConfig] = None):
        self.config = config or ClassifierConfig()

    def tokens(self, description: str) -> List[str]:
        """Distinct description tokens, in first-seen order."""
        return list(dict.fromkeys(tokenize(description, self.config.min_token_length)))

    def predict(
        self,
        description: str,
        model: ClassifierModel,
        kind: Optional[EntryKind] = None,
    ) -> Prediction:
        """Score a description against the model's last committed snapshot."""
        snapshot = model.snapshot
        tokens = self.tokens(description)
        if not tokens:
            return NO_GUESS

        votes: Dict[str, float] = {}
        voting_tokens = 0

        for token in tokens:
            counts = snapshot.token_counts.get(token)
            if not counts:
                continue
            eligible = {
                category: count
                for category, count in counts.items()
                if self._kind_compatible(snapshot, category, kind)
            }
            total = sum(eligible.values())
            if total <= 0:
                continue
            voting_tokens += 1
            for category, count in eligible.items():
                votes[category] = votes.get(category, 0.0) + count / total

        if not votes:
            return NO_GUESS

        ranked = sorted(votes.items(), key=lambda kv: (-kv[1], kv[0]))
        best_category, best = ranked[0]
        runner_up = ranked[1][1] if len(ranked) > 1 else 0.0

        if math.isclose(best, runner_up, rel_tol=1e-9, abs_tol=1e-12):
            return Prediction(category=None, confidence=0.0, votes=votes)

        coverage = voting_tokens / len(tokens)
        confidence = ((best - runner_up) / best) * coverage
        return Prediction(
            category=best_category,
            confidence=max(0.0, min(1.0, confidence)),
            votes=votes,
        )

    def best_guess(
        self,
        description: str,
        model: ClassifierModel,
        kind: Optional[EntryKind] = None,
    ) -> Prediction:
        """Best category for a description with no entry attached (fabricated entries)."""
        return self.predict(description, model, kind)

    def classify(self, entry: LedgerEntry, model: ClassifierModel) -> EntryStatus:
        """
        Classify one unclassified entry in place.

        Entries in any other status are left untouched.
        """
        if entry.status != EntryStatus.UNCLASSIFIED:
            return entry.status

        prediction = self.predict(entry.description, model, entry.kind)
        if not prediction.has_guess:
            entry.confidence = 0.0
            return entry.status

        entry.suggested_category = prediction.category
        entry.confidence = prediction.confidence
        if prediction.confidence >= self.config.display_threshold:
            entry.category = prediction.category
            entry.status = EntryStatus.CLASSIFIED
        else:
            entry.status = EntryStatus.PENDING_REVIEW
        entry.touch()
        return entry.status

    def classify_batch(
        self,
        entries: Iterable[LedgerEntry],
        model: ClassifierModel,
    ) -> ClassificationResult:
        """Classify every unclassified entry of a batch."""
        entries = list(entries)
        classified, pending, unclassified = [], [], []
        audit_entries = []

        for entry in entries:
            if entry.status != EntryStatus.UNCLASSIFIED:
                continue
            status = self.classify(entry, model)

            if status == EntryStatus.CLASSIFIED:
                classified.append(entry.id)
            elif status == EntryStatus.PENDING_REVIEW:
                pending.append(entry.id)
            else:
                unclassified.append(entry.id)
                continue

            audit_entries.append(AuditEntry(
                action=AuditAction.ENTRY_CLASSIFIED,
                stage=StageName.CLASSIFY,
                entry_ids=[entry.id],
                message=f"Entry {entry.id} suggested as {entry.suggested_category}",
                details={
                    "category": entry.suggested_category,
                    "confidence": round(entry.confidence, 4),
                    "status": status.value,
                },
            ))

        stats = {
            "total_entries": len(entries),
            "classified": len(classified),
            "pending_review": len(pending),
            "unclassified": len(unclassified),
        }
        logger.info("Classification complete", **stats)

        return ClassificationResult(
            classified=classified,
            pending_review=pending,
            unclassified=unclassified,
            audit_entries=audit_entries,
            stats=stats,
        )

    def reclassify(self, entry: LedgerEntry, category: str, model: ClassifierModel) -> bool:
        """
        Manual reclassification: the maximum-confidence training signal.

        Returns True when the model counts changed. Repeating the same
        (entry, category) is a no-op for the model.
        """
        category = (category or "").strip()
        if not category:
            raise InvalidInput(f"Empty category for entry {entry.id}")

        trained = model.train(
            entry.id,
            self.tokens(entry.description),
            category,
            kind=entry.kind,
            suggested_category=entry.suggested_category,
        )

        entry.category = category
        entry.confidence = 1.0
        if entry.status in (
            EntryStatus.UNCLASSIFIED,
            EntryStatus.PENDING_REVIEW,
            EntryStatus.CLASSIFIED,
        ):
            entry.status = EntryStatus.CLASSIFIED
        entry.touch()

        logger.info(
            "Entry reclassified",
            entry_id=entry.id,
            category=category,
            trained=trained,
        )
        return trained

    def statistics(self, model: ClassifierModel) -> ClassifierStatistics:
        snapshot = model.snapshot
        precision = None
        if snapshot.reviewed_count:
            precision = snapshot.agreed_count / snapshot.reviewed_count
        return ClassifierStatistics(
            trained_example_count=snapshot.trained_example_count,
            per_category_counts=dict(snapshot.category_counts),
            estimated_precision=precision,
            reviewed_count=snapshot.reviewed_count,
        )

    @staticmethod
    def _kind_compatible(
        snapshot: ModelSnapshot,
        category: str,
        kind: Optional[EntryKind],
    ) -> bool:
        if kind is None or kind == EntryKind.TRANSFER:
            return True
        category_kind = snapshot.category_kinds.get(category)
        return category_kind is None or category_kind == kind
