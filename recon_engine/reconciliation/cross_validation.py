"""
Cross-validator for records pulled from different ingestion sources.

Records of two sources are joined (exact key first, then a fuzzy
date x value join) and every joined pair is diffed field by field. Each
differing field yields a Discrepancy whose severity follows from its
normalized distance. Records without a counterpart are reported apart:
absence is not divergence.
"""

from itertools import combinations
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from ..models import (
    CrossValidationConfig,
    Discrepancy,
    Severity,
    SourceRecord,
    SourceType,
    ValidationResult,
    ValidationStatus,
)
from ..scoring import (
    date_score,
    normalize_text,
    relative_difference,
    text_score,
    value_score,
)

logger = structlog.get_logger()

# Distance of a categorical mismatch
CATEGORICAL_DISTANCE = 1.0

_SOURCE_ORDER = {source: i for i, source in enumerate(SourceType)}


def _normalize_key(key: Optional[str]) -> Optional[str]:
    if key is None:
        return None
    key = key.strip().lower()
    return key or None


class CrossValidator:
    """Pairwise field-level diffing between two record sets."""

    def __init__(self, config: Optional[CrossValidationConfig] = None):
        self.config = config or CrossValidationConfig()

    def validate(
        self,
        source_a: SourceType,
        records_a: Iterable[SourceRecord],
        source_b: SourceType,
        records_b: Iterable[SourceRecord],
    ) -> ValidationResult:
        """
        Validate two labeled record collections against each other.

        Args:
            source_a: Label of the first collection
            records_a: Records of the first source
            source_b: Label of the second collection
            records_b: Records of the second source

        Returns:
            ValidationResult with match rate, discrepancies and unmatched ids
        """
        records_a = sorted(records_a, key=lambda r: r.id)
        records_b = sorted(records_b, key=lambda r: r.id)

        pairs, unmatched_a, unmatched_b = self.join(records_a, records_b)

        discrepancies: List[Discrepancy] = []
        for a, b in pairs:
            discrepancies.extend(self.compare(a, b))

        smaller = min(len(records_a), len(records_b))
        match_rate = len(pairs) / smaller if smaller else 0.0

        result = ValidationResult(
            source=SourceType(source_a),
            target_source=SourceType(source_b),
            match_rate=match_rate,
            discrepancies=discrepancies,
            joined_pairs=[(a.id, b.id) for a, b in pairs],
            unmatched_source_ids=[r.id for r in unmatched_a],
            unmatched_target_ids=[r.id for r in unmatched_b],
        )
        result.status = self._status(result, len(records_a), len(records_b))

        logger.info(
            "Cross-validation complete",
            source=result.source.value,
            target=result.target_source.value,
            joined=len(pairs),
            match_rate=round(match_rate, 4),
            discrepancies=len(discrepancies),
            high_severity=len(result.high_severity),
            status=result.status.value,
        )
        return result

    def validate_all(
        self,
        batches: Mapping[SourceType, Sequence[SourceRecord]],
        unavailable: Optional[Mapping[SourceType, str]] = None,
    ) -> List[ValidationResult]:
        """
        Validate every pair of sources.

        Pairs involving a source listed in `unavailable` get an UNAVAILABLE
        result carrying the reason; the other pairs are validated normally.
        """
        unavailable = dict(unavailable or {})
        sources = sorted(set(batches) | set(unavailable), key=lambda s: _SOURCE_ORDER[s])

        results = []
        for source_a, source_b in combinations(sources, 2):
            missing = [s for s in (source_a, source_b) if s in unavailable]
            if missing:
                reason = "; ".join(f"{s.value}: {unavailable[s]}" for s in missing)
                results.append(self.unavailable(source_a, source_b, reason))
                continue
            results.append(self.validate(
                source_a, batches[source_a], source_b, batches[source_b]
            ))
        return results

    @staticmethod
    def unavailable(source_a: SourceType, source_b: SourceType, reason: str) -> ValidationResult:
        """Result for a pair that could not be validated because a source failed."""
        logger.warning(
            "Cross-validation skipped",
            source=SourceType(source_a).value,
            target=SourceType(source_b).value,
            reason=reason,
        )
        return ValidationResult(
            source=SourceType(source_a),
            target_source=SourceType(source_b),
            status=ValidationStatus.UNAVAILABLE,
            error=f"cross-validation skipped: source unavailable ({reason})",
        )

    def join(
        self,
        records_a: Sequence[SourceRecord],
        records_b: Sequence[SourceRecord],
    ) -> Tuple[List[Tuple[SourceRecord, SourceRecord]], List[SourceRecord], List[SourceRecord]]:
        """Exact key join, then fuzzy date x value join on what is left."""
        pairs: List[Tuple[SourceRecord, SourceRecord]] = []
        used_a, used_b = set(), set()

        by_key: Dict[str, List[SourceRecord]] = {}
        for record in records_b:
            key = _normalize_key(record.key)
            if key is not None:
                by_key.setdefault(key, []).append(record)

        for record in records_a:
            key = _normalize_key(record.key)
            if key is None:
                continue
            for other in by_key.get(key, []):
                if other.id not in used_b:
                    pairs.append((record, other))
                    used_a.add(record.id)
                    used_b.add(other.id)
                    break

        fuzzy = []
        for a in records_a:
            if a.id in used_a:
                continue
            for b in records_b:
                if b.id in used_b:
                    continue
                similarity = self.join_score(a, b)
                if similarity > self.config.fuzzy_join_threshold:
                    fuzzy.append((-similarity, a.id, b.id, a, b))
        fuzzy.sort(key=lambda item: item[:3])

        for _, a_id, b_id, a, b in fuzzy:
            if a_id in used_a or b_id in used_b:
                continue
            pairs.append((a, b))
            used_a.add(a_id)
            used_b.add(b_id)

        unmatched_a = [r for r in records_a if r.id not in used_a]
        unmatched_b = [r for r in records_b if r.id not in used_b]
        return pairs, unmatched_a, unmatched_b

    def join_score(self, a: SourceRecord, b: SourceRecord) -> float:
        return (
            date_score(a.date, b.date, self.config.max_lookback_days)
            * value_score(a.amount, b.amount, self.config.tolerance_fraction)
        )

    def compare(self, a: SourceRecord, b: SourceRecord) -> List[Discrepancy]:
        """Diff the fixed field set of a joined pair."""
        found: List[Discrepancy] = []

        def add(field_name: str, source_value, target_value, distance: float, description: str):
            found.append(Discrepancy(
                field=field_name,
                source_value=source_value,
                target_value=target_value,
                distance=distance,
                description=description,
                source_record_id=a.id,
                target_record_id=b.id,
            ))

        rel = relative_difference(a.amount, b.amount)
        if rel > 0:
            add("amount", a.amount, b.amount, rel, f"Amounts differ by {rel:.2%}")

        days = abs((a.date - b.date).days)
        if days:
            add(
                "date", a.date, b.date,
                days / self.config.max_lookback_days,
                f"Dates differ by {days} day(s)",
            )

        if a.description != b.description:
            if normalize_text(a.description) == normalize_text(b.description):
                add("description", a.description, b.description, 0.0, "Cosmetic description difference")
            else:
                distance = 1.0 - text_score(a.description, b.description)
                add("description", a.description, b.description, distance, "Descriptions differ")

        if (a.currency or "").strip().upper() != (b.currency or "").strip().upper():
            add("currency", a.currency, b.currency, CATEGORICAL_DISTANCE, "Different currency")

        for field_name in ("counterparty", "category"):
            value_a, value_b = getattr(a, field_name), getattr(b, field_name)
            if value_a is None or value_b is None:
                continue
            if normalize_text(value_a) != normalize_text(value_b):
                add(field_name, value_a, value_b, CATEGORICAL_DISTANCE, f"Different {field_name}")

        return found

    def _status(self, result: ValidationResult, size_a: int, size_b: int) -> ValidationStatus:
        if size_a == 0 and size_b == 0:
            return ValidationStatus.SUCCESS
        if any(d.severity == Severity.HIGH for d in result.discrepancies):
            return ValidationStatus.ERROR
        if result.match_rate < self.config.match_threshold * self.config.warning_ratio:
            return ValidationStatus.ERROR
        if result.match_rate < self.config.match_threshold or result.discrepancies:
            return ValidationStatus.WARNING
        return ValidationStatus.SUCCESS
