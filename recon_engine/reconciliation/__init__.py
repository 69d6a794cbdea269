"""Reconciliation engine components."""

from .book import ReconciliationBook
from .matcher import Matcher
from .cross_validation import CrossValidator
from .journal import ResolutionJournal
from .resolver import AutonomousResolver
from .feedback import ReviewFeedback
from .patterns import PatternLearner, RecurringPattern, TransactionMapping
from .pipeline import ProcessingPipeline, ScopeGuard

__all__ = [
    "ReconciliationBook",
    "Matcher",
    "CrossValidator",
    "ResolutionJournal",
    "AutonomousResolver",
    "ReviewFeedback",
    "PatternLearner",
    "RecurringPattern",
    "TransactionMapping",
    "ProcessingPipeline",
    "ScopeGuard",
]
