"""
Pattern Learner - recurring descriptions and learned pairing mappings.

Accepted pairings whose bank descriptions share the same key terms are
pooled. Once a pool reaches min_occurrences, a mapping from those terms to
the terms common to the paired ledger entries is learned. Later accepted
pairings that fit a mapping count as successes, undone ones as failures.

Mappings whose confidence reaches min_confidence suggest assisted pairings
for transactions and entries the matcher left unmatched. Suggestions are
never automatic: a human confirms them through the review queue.
"""

import threading
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import structlog

from ..models import (
    AuditAction,
    AuditEntry,
    BankTransaction,
    EntryStatus,
    LedgerEntry,
    PatternConfig,
    PatternKind,
    ReconciliationRecord,
    ResolvedBy,
    StageName,
)
from ..scoring import relative_difference, tokenize
from .matcher import kind_compatible

logger = structlog.get_logger()

Pair = Tuple[BankTransaction, LedgerEntry]

_NOT_CANDIDATES = {EntryStatus.RECONCILED, EntryStatus.IGNORED}


def key_terms(description: str, min_length: int) -> FrozenSet[str]:
    """Distinct normalized words of at least min_length characters, numbers excluded."""
    return frozenset(t for t in tokenize(description, min_length) if not t.isdigit())


def common_terms(descriptions: Sequence[str], min_length: int) -> FrozenSet[str]:
    """Key terms shared by every description. Empty for fewer than two."""
    if len(descriptions) < 2:
        return frozenset()
    terms = [key_terms(d, min_length) for d in descriptions]
    return frozenset.intersection(*terms)


def pattern_kind(dates: Sequence[date]) -> PatternKind:
    """Cadence from the mean and spread of the gaps between sorted dates."""
    ordered = sorted(dates)
    if len(ordered) < 2:
        return PatternKind.SINGULAR

    gaps = np.diff([d.toordinal() for d in ordered])
    mean, spread = float(np.mean(gaps)), float(np.std(gaps))

    if 25 <= mean <= 35 and spread < 5:
        return PatternKind.RECURRING
    if 85 <= mean <= 95 and spread < 10:
        return PatternKind.RECURRING
    if 350 <= mean <= 380:
        return PatternKind.SEASONAL
    if spread < mean * 0.3:
        return PatternKind.PERIODIC
    return PatternKind.SINGULAR


def _terms_label(terms: FrozenSet[str]) -> str:
    return "+".join(sorted(terms))


@dataclass
class TransactionMapping:
    """
    Learned link between bank description terms and ledger entry terms.

    Confidence is the smoothed success rate (successes + 1) / (total + 2),
    so it rises with every success and falls with every failure.
    """
    transaction_terms: FrozenSet[str]
    entry_terms: FrozenSet[str]
    successes: int = 0
    failures: int = 0
    id: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_used: Optional[datetime] = None

    def __post_init__(self):
        if not self.id:
            self.id = f"{_terms_label(self.transaction_terms)}->{_terms_label(self.entry_terms)}"

    @property
    def confidence(self) -> float:
        return (self.successes + 1) / (self.successes + self.failures + 2)

    def fits(self, transaction_terms: FrozenSet[str], entry_terms: FrozenSet[str]) -> bool:
        return self.transaction_terms <= transaction_terms and self.entry_terms <= entry_terms

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "transaction_terms": sorted(self.transaction_terms),
            "entry_terms": sorted(self.entry_terms),
            "confidence": round(self.confidence, 4),
            "successes": self.successes,
            "failures": self.failures,
            "created_at": self.created_at.isoformat(),
            "last_used": self.last_used.isoformat() if self.last_used else None,
        }


@dataclass(frozen=True)
class RecurringPattern:
    """Bank transactions sharing key terms, with their cadence."""
    terms: FrozenSet[str]
    kind: PatternKind
    occurrences: int
    confidence: float
    first_seen: date
    last_seen: date
    transaction_ids: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "terms": sorted(self.terms),
            "kind": self.kind.value,
            "occurrences": self.occurrences,
            "confidence": round(self.confidence, 4),
            "first_seen": self.first_seen.isoformat(),
            "last_seen": self.last_seen.isoformat(),
            "transaction_ids": list(self.transaction_ids),
        }


@dataclass
class LearningOutcome:
    """Result of one learn() call."""
    learned: List[TransactionMapping] = field(default_factory=list)
    successes: int = 0
    failures: int = 0
    audit_entries: List[AuditEntry] = field(default_factory=list)


class PatternLearner:
    """Thread-safe store of learned mappings, shared across pipeline runs."""

    def __init__(self, config: Optional[PatternConfig] = None):
        self.config = config or PatternConfig()
        self._lock = threading.Lock()
        self._mappings: Dict[str, TransactionMapping] = {}
        # Accepted pairs no mapping covers yet, keyed by (transaction id, entry id)
        self._pool: Dict[Tuple[str, str], Pair] = {}

    @property
    def mappings(self) -> List[TransactionMapping]:
        with self._lock:
            return sorted(self._mappings.values(), key=lambda m: m.id)

    def active_mappings(self) -> List[TransactionMapping]:
        """Mappings allowed to suggest, most confident first."""
        active = [m for m in self.mappings if m.confidence >= self.config.min_confidence]
        return sorted(active, key=lambda m: (-m.confidence, m.id))

    def learn(self, accepted: Iterable[Pair] = (), undone: Iterable[Pair] = ()) -> LearningOutcome:
        """
        Update mappings from accepted and undone pairings.

        Accepted pairs fitting a mapping count as its successes, undone pairs
        as its failures. Accepted pairs no mapping fits are pooled until
        min_occurrences of them share the same transaction key terms.
        """
        min_length = self.config.min_term_length
        now = datetime.now(timezone.utc)
        outcome = LearningOutcome()

        with self._lock:
            for transaction, entry in sorted(accepted, key=lambda p: (p[0].id, p[1].id)):
                fitting = self._fitting(transaction, entry)
                for mapping in fitting:
                    mapping.successes += 1
                    mapping.last_used = now
                    outcome.successes += 1
                if not fitting:
                    self._pool[(transaction.id, entry.id)] = (transaction, entry)

            for transaction, entry in sorted(undone, key=lambda p: (p[0].id, p[1].id)):
                self._pool.pop((transaction.id, entry.id), None)
                for mapping in self._fitting(transaction, entry):
                    mapping.failures += 1
                    mapping.last_used = now
                    outcome.failures += 1

            groups: Dict[FrozenSet[str], List[Tuple[Tuple[str, str], Pair]]] = {}
            for pair_id, pair in sorted(self._pool.items()):
                terms = key_terms(pair[0].description, min_length)
                if terms:
                    groups.setdefault(terms, []).append((pair_id, pair))

            for transaction_terms, group in groups.items():
                if len(group) < self.config.min_occurrences:
                    continue
                entry_terms = common_terms([p[1].description for _, p in group], min_length)
                if not entry_terms:
                    continue

                mapping = TransactionMapping(
                    transaction_terms=transaction_terms,
                    entry_terms=entry_terms,
                    successes=len(group),
                    last_used=now,
                )
                existing = self._mappings.get(mapping.id)
                if existing is not None:
                    existing.successes += len(group)
                    existing.last_used = now
                    mapping = existing
                else:
                    self._mappings[mapping.id] = mapping
                    outcome.learned.append(mapping)
                for pair_id, _ in group:
                    del self._pool[pair_id]

        for mapping in outcome.learned:
            logger.info(
                "Mapping learned",
                mapping_id=mapping.id,
                successes=mapping.successes,
                confidence=round(mapping.confidence, 4),
            )
            outcome.audit_entries.append(AuditEntry(
                action=AuditAction.MAPPING_LEARNED,
                stage=StageName.MATCH,
                message=f"Learned mapping {mapping.id}",
                details=mapping.to_dict(),
            ))
        return outcome

    def suggest(
        self,
        transactions: Iterable[BankTransaction],
        entries: Iterable[LedgerEntry],
    ) -> List[ReconciliationRecord]:
        """
        Assisted pairings proposed by active mappings.

        Each transaction takes the first active mapping that yields an entry;
        each entry is proposed at most once. The record score is the mapping
        confidence.
        """
        active = self.active_mappings()
        if not active:
            return []

        min_length = self.config.min_term_length
        candidates = [
            (entry, key_terms(entry.description, min_length))
            for entry in sorted(entries, key=lambda e: e.id)
            if entry.status not in _NOT_CANDIDATES
        ]
        used: set = set()
        suggestions = []

        for transaction in sorted(transactions, key=lambda t: t.id):
            transaction_terms = key_terms(transaction.description, min_length)
            for mapping in active:
                fitting = [
                    entry for entry, terms in candidates
                    if entry.id not in used
                    and kind_compatible(transaction, entry)
                    and mapping.fits(transaction_terms, terms)
                ]
                best = self._best_entry(transaction, fitting)
                if best is None:
                    continue
                used.add(best.id)
                suggestions.append(ReconciliationRecord(
                    transaction_id=transaction.id,
                    entry_id=best.id,
                    score=mapping.confidence,
                    automatic=False,
                    resolved_by=ResolvedBy.ASSISTED,
                ))
                logger.debug(
                    "Pairing suggested by mapping",
                    mapping_id=mapping.id,
                    transaction_id=transaction.id,
                    entry_id=best.id,
                )
                break

        return suggestions

    def pair_score(self, transaction: BankTransaction, entry: LedgerEntry) -> float:
        """Half on amount within amount_tolerance, half on date within max_day_difference."""
        score = 0.0
        difference = relative_difference(transaction.magnitude, entry.magnitude)
        if difference <= self.config.amount_tolerance:
            score += 0.5 if difference == 0.0 else 0.5 * (1 - difference / self.config.amount_tolerance)

        days = abs((transaction.date - entry.date).days)
        if days <= self.config.max_day_difference:
            score += 0.5 * (1 - days / self.config.max_day_difference)
        return score

    def _best_entry(
        self,
        transaction: BankTransaction,
        entries: Sequence[LedgerEntry],
    ) -> Optional[LedgerEntry]:
        best, best_score = None, -1.0
        for entry in entries:
            score = self.pair_score(transaction, entry)
            if score > best_score:
                best, best_score = entry, score
        return best if best_score >= self.config.min_pair_score else None

    def _fitting(self, transaction: BankTransaction, entry: LedgerEntry) -> List[TransactionMapping]:
        min_length = self.config.min_term_length
        transaction_terms = key_terms(transaction.description, min_length)
        entry_terms = key_terms(entry.description, min_length)
        return [m for m in self._mappings.values() if m.fits(transaction_terms, entry_terms)]

    def detect(self, transactions: Iterable[BankTransaction]) -> List[RecurringPattern]:
        """Recurring bank descriptions seen at least min_occurrences times."""
        groups: Dict[FrozenSet[str], List[BankTransaction]] = {}
        for transaction in transactions:
            terms = key_terms(transaction.description, self.config.min_term_length)
            if terms:
                groups.setdefault(terms, []).append(transaction)

        patterns = []
        for terms, group in groups.items():
            if len(group) < self.config.min_occurrences:
                continue
            dates = [t.date for t in group]
            patterns.append(RecurringPattern(
                terms=terms,
                kind=pattern_kind(dates),
                occurrences=len(group),
                confidence=0.6 + min(0.3, len(group) / 20),
                first_seen=min(dates),
                last_seen=max(dates),
                transaction_ids=tuple(sorted(t.id for t in group)),
            ))

        return sorted(patterns, key=lambda p: (-p.occurrences, _terms_label(p.terms)))

    def statistics(self) -> Dict[str, Any]:
        mappings = self.mappings
        with self._lock:
            pooled = len(self._pool)
        return {
            "total_mappings": len(mappings),
            "active_mappings": sum(1 for m in mappings if m.confidence >= self.config.min_confidence),
            "pooled_pairs": pooled,
            "min_confidence": self.config.min_confidence,
            "mappings": [m.to_dict() for m in mappings],
        }
