"""
Review feedback - learns a resolution threshold from human decisions.

Every accepted or rejected review item is recorded with its score. Once
enough decisions exist, recommend_config() proposes the lowest score that
humans accepted above everything they rejected.
"""

import threading
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import List, Optional

import structlog

from ..exceptions import InvalidInput
from ..models import ResolutionConfig, ReviewItem, ReviewReason

logger = structlog.get_logger()

MIN_DECISIONS = 10
MIN_RECOMMENDED_CONFIDENCE = 0.5
MAX_RECOMMENDED_CONFIDENCE = 0.99


@dataclass(frozen=True)
class ReviewDecision:
    """A human verdict on a review item."""
    item_id: str
    reason: ReviewReason
    score: float
    accepted: bool
    decided_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ReviewFeedback:
    """Thread-safe log of review decisions."""

    def __init__(self, min_decisions: int = MIN_DECISIONS):
        self.min_decisions = min_decisions
        self._decisions: List[ReviewDecision] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._decisions)

    @property
    def decisions(self) -> List[ReviewDecision]:
        return list(self._decisions)

    def record(self, item: ReviewItem, accepted: bool, score: Optional[float] = None) -> ReviewDecision:
        """
        Record a decision on a review item.

        Raises:
            InvalidInput: if neither the item nor the caller provides a score in [0, 1]
        """
        score = item.score if score is None else score
        if score is None or not 0.0 <= score <= 1.0:
            raise InvalidInput(f"Review item {item.id} has no usable score: {score!r}")

        decision = ReviewDecision(
            item_id=item.id,
            reason=item.reason,
            score=float(score),
            accepted=accepted,
        )
        with self._lock:
            self._decisions.append(decision)
        return decision

    def recommend_config(self, current: ResolutionConfig) -> ResolutionConfig:
        """
        Suggest min_confidence_to_resolve from recorded decisions.

        Returns the current config unchanged when there are fewer than
        min_decisions, or no accepted score lies above every rejected one.
        """
        decisions = self.decisions
        if len(decisions) < self.min_decisions:
            return current

        rejected = [d.score for d in decisions if not d.accepted]
        ceiling = max(rejected) if rejected else None
        accepted = sorted(
            d.score for d in decisions
            if d.accepted and (ceiling is None or d.score > ceiling)
        )
        if not accepted:
            logger.info(
                "No threshold separates accepted from rejected decisions",
                decisions=len(decisions),
            )
            return current

        threshold = min(MAX_RECOMMENDED_CONFIDENCE, max(MIN_RECOMMENDED_CONFIDENCE, accepted[0]))
        logger.info(
            "Recommended resolution threshold",
            decisions=len(decisions),
            current=current.min_confidence_to_resolve,
            recommended=threshold,
        )
        return replace(current, min_confidence_to_resolve=threshold)
