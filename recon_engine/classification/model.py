"""
ClassifierModel: the token -> category frequency table.

The only shared mutable state of the engine. Writers are serialized by a
lock and publish a new immutable snapshot; readers take the last committed
snapshot without locking.
"""

import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, Iterable, Mapping, Optional

import structlog

from ..models import EntryKind
from .keywords import SEED_RULES, SEED_WEIGHT

logger = structlog.get_logger()


@dataclass(frozen=True)
class ModelSnapshot:
    """Committed state of a ClassifierModel. Never mutated once published."""
    token_counts: Mapping[str, Mapping[str, int]] = field(default_factory=dict)
    category_counts: Mapping[str, int] = field(default_factory=dict)
    category_kinds: Mapping[str, EntryKind] = field(default_factory=dict)
    applied: Mapping[str, str] = field(default_factory=dict)
    trained_example_count: int = 0
    reviewed_count: int = 0
    agreed_count: int = 0
    version: int = 0


def _freeze(token_counts: Dict[str, Dict[str, int]]) -> Mapping[str, Mapping[str, int]]:
    return MappingProxyType({t: MappingProxyType(dict(c)) for t, c in token_counts.items()})


class ClassifierModel:
    """
    Frequency model owned by the caller and passed explicitly to the Classifier.

    Training is monotonic: counts only grow. Training the same entry to the
    same category twice changes nothing the second time.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = ModelSnapshot()

    @classmethod
    def seeded(cls, rules: Optional[Mapping[EntryKind, Mapping[str, Iterable[str]]]] = None) -> "ClassifierModel":
        """Model pre-loaded with keyword rules. Seeds are not trained examples."""
        model = cls()
        rules = SEED_RULES if rules is None else rules
        token_counts: Dict[str, Dict[str, int]] = {}
        category_kinds: Dict[str, EntryKind] = {}

        for kind, categories in rules.items():
            for category, keywords in categories.items():
                category_kinds[category] = EntryKind(kind)
                for keyword in keywords:
                    counts = token_counts.setdefault(keyword.lower(), {})
                    counts[category] = counts.get(category, 0) + SEED_WEIGHT

        model._snapshot = ModelSnapshot(
            token_counts=_freeze(token_counts),
            category_kinds=MappingProxyType(category_kinds),
            version=1,
        )
        logger.debug("Classifier model seeded", categories=len(category_kinds), tokens=len(token_counts))
        return model

    @property
    def snapshot(self) -> ModelSnapshot:
        """Last committed state. Lock-free."""
        return self._snapshot

    def applied_category(self, entry_id: str) -> Optional[str]:
        return self._snapshot.applied.get(entry_id)

    def train(
        self,
        entry_id: str,
        tokens: Iterable[str],
        category: str,
        kind: Optional[EntryKind] = None,
        suggested_category: Optional[str] = None,
    ) -> bool:
        """
        Apply one manual classification as a training example.

        Returns False when (entry_id, category) was already the last applied
        pair, in which case no count changes.
        """
        tokens = sorted(set(tokens))
        with self._lock:
            current = self._snapshot
            previous = current.applied.get(entry_id)
            if previous == category:
                return False

            token_counts = {t: dict(c) for t, c in current.token_counts.items()}
            for token in tokens:
                counts = token_counts.setdefault(token, {})
                counts[category] = counts.get(category, 0) + 1

            category_counts = dict(current.category_counts)
            category_counts[category] = category_counts.get(category, 0) + 1

            category_kinds = dict(current.category_kinds)
            if kind is not None and kind != EntryKind.TRANSFER:
                category_kinds.setdefault(category, EntryKind(kind))

            applied = dict(current.applied)
            applied[entry_id] = category

            reviewed, agreed = current.reviewed_count, current.agreed_count
            if previous is None and suggested_category is not None:
                reviewed += 1
                if suggested_category == category:
                    agreed += 1

            self._snapshot = ModelSnapshot(
                token_counts=_freeze(token_counts),
                category_counts=MappingProxyType(category_counts),
                category_kinds=MappingProxyType(category_kinds),
                applied=MappingProxyType(applied),
                trained_example_count=current.trained_example_count + 1,
                reviewed_count=reviewed,
                agreed_count=agreed,
                version=current.version + 1,
            )

        logger.debug(
            "Classifier model trained",
            entry_id=entry_id,
            category=category,
            previous_category=previous,
            tokens=len(tokens),
        )
        return True
