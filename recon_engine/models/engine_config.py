"""
Explicit, validated configuration values for the engine components.

Every threshold is a named field; out-of-range values are rejected at
construction with ConfigurationConflict instead of being clamped.
"""

import math
from dataclasses import dataclass, field, fields, replace
from typing import Any, Dict, Mapping, Tuple

from ..exceptions import ConfigurationConflict
from ..scoring import DEFAULT_WEIGHTS, ScoringWeights

# Bank descriptions of transfers between accounts of the same client
DEFAULT_INTERNAL_TRANSFER_PATTERNS: Tuple[str, ...] = (
    "transferência entre contas",
    "transferência entre conta",
    "transf. entre contas",
    "transf entre",
    "transferência própria",
    "ted própria",
    "doc próprio",
    "saldo anterior",
    "saldo inicial",
)


def _require_fraction(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or math.isnan(value) or not 0.0 <= value <= 1.0:
        raise ConfigurationConflict(f"{name} must be within [0, 1], got {value!r}")


def _require_non_negative(name: str, value: float) -> None:
    if not isinstance(value, (int, float)) or math.isnan(value) or value < 0:
        raise ConfigurationConflict(f"{name} must be non-negative, got {value!r}")


def _require_positive_days(name: str, value: int) -> None:
    if not isinstance(value, int) or isinstance(value, bool) or value <= 0:
        raise ConfigurationConflict(f"{name} must be a positive number of days, got {value!r}")


class _FromMapping:
    """Build a config from a loose mapping, rejecting unknown keys."""

    @classmethod
    def from_mapping(cls, values: Mapping[str, Any] = None):
        values = dict(values or {})
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(values) - known)
        if unknown:
            raise ConfigurationConflict(
                f"Unknown {cls.__name__} option(s): {', '.join(unknown)}",
                details=unknown,
            )
        if "weights" in values and isinstance(values["weights"], Mapping):
            values["weights"] = ScoringWeights(**values["weights"])
        if "internal_transfer_patterns" in values:
            values["internal_transfer_patterns"] = tuple(values["internal_transfer_patterns"])
        return cls(**values)

    def with_overrides(self, **overrides):
        return replace(self, **overrides)

    def to_dict(self) -> Dict[str, Any]:
        data = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, ScoringWeights):
                value = {"date": value.date, "value": value.value, "text": value.text}
            elif isinstance(value, tuple):
                value = list(value)
            data[f.name] = value
        return data


@dataclass(frozen=True)
class ClassifierConfig(_FromMapping):
    """Classifier thresholds."""
    display_threshold: float = 0.75
    min_token_length: int = 3

    def __post_init__(self):
        _require_fraction("display_threshold", self.display_threshold)
        if not isinstance(self.min_token_length, int) or self.min_token_length < 1:
            raise ConfigurationConflict(
                f"min_token_length must be at least 1, got {self.min_token_length!r}"
            )


@dataclass(frozen=True)
class MatcherConfig(_FromMapping):
    """Matcher thresholds. auto_match_threshold must not sit below assisted_threshold."""
    auto_match_threshold: float = 0.85
    assisted_threshold: float = 0.55
    tolerance_fraction: float = 0.02
    max_lookback_days: int = 90
    weights: ScoringWeights = DEFAULT_WEIGHTS

    def __post_init__(self):
        _require_fraction("auto_match_threshold", self.auto_match_threshold)
        _require_fraction("assisted_threshold", self.assisted_threshold)
        _require_non_negative("tolerance_fraction", self.tolerance_fraction)
        _require_positive_days("max_lookback_days", self.max_lookback_days)
        if self.assisted_threshold > self.auto_match_threshold:
            raise ConfigurationConflict(
                "assisted_threshold cannot exceed auto_match_threshold",
                details={
                    "assisted_threshold": self.assisted_threshold,
                    "auto_match_threshold": self.auto_match_threshold,
                },
            )
        if not isinstance(self.weights, ScoringWeights):
            raise ConfigurationConflict(f"weights must be ScoringWeights, got {self.weights!r}")


@dataclass(frozen=True)
class CrossValidationConfig(_FromMapping):
    """Cross-validation join and status thresholds."""
    fuzzy_join_threshold: float = 0.8
    tolerance_fraction: float = 0.02
    max_lookback_days: int = 90
    match_threshold: float = 0.9
    # Warning band starts at this fraction of match_threshold
    warning_ratio: float = 0.7

    def __post_init__(self):
        _require_fraction("fuzzy_join_threshold", self.fuzzy_join_threshold)
        _require_non_negative("tolerance_fraction", self.tolerance_fraction)
        _require_positive_days("max_lookback_days", self.max_lookback_days)
        _require_fraction("match_threshold", self.match_threshold)
        _require_fraction("warning_ratio", self.warning_ratio)


@dataclass(frozen=True)
class ResolutionConfig(_FromMapping):
    """
    Risk thresholds and switches of the autonomous resolver.

    tolerance_fraction: largest relative value divergence corrected automatically
    min_confidence_to_resolve: minimum pairing score required before mutating
    max_lookback_days: window for mirror-transfer detection and the as-of filter
    """
    tolerance_fraction: float = 0.02
    min_confidence_to_resolve: float = 0.8
    max_lookback_days: int = 90
    resolve_duplicates: bool = True
    correct_divergences: bool = True
    create_missing_entries: bool = False
    ignore_internal_transfers: bool = True
    internal_transfer_patterns: Tuple[str, ...] = field(
        default=DEFAULT_INTERNAL_TRANSFER_PATTERNS
    )
    duplicate_text_threshold: float = 0.9

    def __post_init__(self):
        _require_non_negative("tolerance_fraction", self.tolerance_fraction)
        if self.tolerance_fraction > 1.0:
            raise ConfigurationConflict(
                f"tolerance_fraction must not exceed 1, got {self.tolerance_fraction!r}"
            )
        _require_fraction("min_confidence_to_resolve", self.min_confidence_to_resolve)
        _require_positive_days("max_lookback_days", self.max_lookback_days)
        _require_fraction("duplicate_text_threshold", self.duplicate_text_threshold)
        if isinstance(self.internal_transfer_patterns, str):
            raise ConfigurationConflict("internal_transfer_patterns must be a sequence of strings")
        object.__setattr__(
            self,
            "internal_transfer_patterns",
            tuple(p.lower() for p in self.internal_transfer_patterns if p and p.strip()),
        )


@dataclass(frozen=True)
class PatternConfig(_FromMapping):
    """
    Thresholds of the pattern learner.

    min_occurrences: accepted pairs sharing key terms before a mapping is learned
    min_confidence: mapping confidence required before it suggests pairings
    min_term_length: shortest description word kept as a key term
    amount_tolerance: relative amount difference still scoring on value
    max_day_difference: date distance still scoring on date
    min_pair_score: value/date score an entry needs to be suggested
    """
    min_occurrences: int = 3
    min_confidence: float = 0.8
    min_term_length: int = 4
    amount_tolerance: float = 0.01
    max_day_difference: int = 5
    min_pair_score: float = 0.6

    def __post_init__(self):
        for name in ("min_occurrences", "min_term_length"):
            value = getattr(self, name)
            if not isinstance(value, int) or isinstance(value, bool) or value < 1:
                raise ConfigurationConflict(f"{name} must be at least 1, got {value!r}")
        _require_fraction("min_confidence", self.min_confidence)
        _require_fraction("amount_tolerance", self.amount_tolerance)
        _require_positive_days("max_day_difference", self.max_day_difference)
        _require_fraction("min_pair_score", self.min_pair_score)
