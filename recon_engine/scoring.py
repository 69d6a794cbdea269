"""
Similarity & scoring kernel.

Pure functions returning normalized [0, 1] similarities for dates, monetary
values and free-text descriptions. Shared by the classifier, the matcher,
the cross-validator and the resolver.
"""

import math
import re
import unicodedata
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import List, Set, Union

from rapidfuzz.distance import Levenshtein

from .exceptions import ConfigurationConflict

Number = Union[int, float, Decimal]

# Relative differences below this are treated as equal amounts
EPSILON = 1e-9

# valueScore reaches 0 at tolerance_fraction * VALUE_DECAY_MULTIPLIER
VALUE_DECAY_MULTIPLIER = 4

# Severity bands on normalized distance
LOW_SEVERITY_LIMIT = 0.05
MEDIUM_SEVERITY_LIMIT = 0.20

_PUNCTUATION = re.compile(r"[^\w\s]", re.UNICODE)
_WHITESPACE = re.compile(r"\s+")


@dataclass(frozen=True)
class ScoringWeights:
    """Weights of the composite match score. Value dominates: it is the least ambiguous signal."""
    date: float = 0.25
    value: float = 0.45
    text: float = 0.30

    def __post_init__(self):
        weights = (self.date, self.value, self.text)
        if any(w < 0 or not math.isfinite(w) for w in weights):
            raise ConfigurationConflict(f"Scoring weights must be non-negative: {weights}")
        if not math.isclose(sum(weights), 1.0, abs_tol=1e-6):
            raise ConfigurationConflict(f"Scoring weights must sum to 1, got {sum(weights):.6f}")


DEFAULT_WEIGHTS = ScoringWeights()


def _clamp(value: float) -> float:
    return max(0.0, min(1.0, value))


def normalize_text(text: str) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not text:
        return ""
    text = unicodedata.normalize("NFC", text).lower()
    text = _PUNCTUATION.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def tokenize(text: str, min_length: int = 1) -> List[str]:
    """Split normalized text into tokens, dropping tokens shorter than min_length."""
    return [t for t in normalize_text(text).split(" ") if len(t) >= min_length]


def token_set(text: str) -> Set[str]:
    return set(tokenize(text))


def relative_difference(a: Number, b: Number) -> float:
    """|a - b| / max(|a|, |b|, eps), on magnitudes as given."""
    a, b = float(a), float(b)
    diff = abs(a - b)
    if diff <= EPSILON:
        return 0.0
    return diff / max(abs(a), abs(b), EPSILON)


def date_score(a: date, b: date, max_lookback_days: int) -> float:
    """
    1.0 at zero day-delta, decaying linearly to 0 at max_lookback_days.

    The delta is absolute; anything at or beyond the lookback scores 0.
    """
    delta = abs((a - b).days)
    if delta == 0:
        return 1.0
    if max_lookback_days <= 0 or delta >= max_lookback_days:
        return 0.0
    return _clamp(1.0 - delta / max_lookback_days)


def value_score(
    a: Number,
    b: Number,
    tolerance_fraction: float,
    multiplier: int = VALUE_DECAY_MULTIPLIER,
) -> float:
    """
    1.0 for equal amounts, decaying linearly to 0 when the relative
    difference reaches tolerance_fraction * multiplier.
    """
    rel = relative_difference(a, b)
    if rel == 0.0:
        return 1.0
    limit = tolerance_fraction * multiplier
    if limit <= 0:
        return 0.0
    return _clamp(1.0 - rel / limit)


def text_score(a: str, b: str) -> float:
    """
    Mean of token-set overlap (Jaccard) and normalized Levenshtein similarity.

    Symmetric and reflexive. Two empty descriptions are identical; one empty
    description shares nothing with a non-empty one.
    """
    norm_a, norm_b = normalize_text(a), normalize_text(b)
    if norm_a == norm_b:
        return 1.0
    if not norm_a or not norm_b:
        return 0.0

    tokens_a, tokens_b = set(norm_a.split(" ")), set(norm_b.split(" "))
    overlap = len(tokens_a & tokens_b) / len(tokens_a | tokens_b)
    edit = Levenshtein.normalized_similarity(norm_a, norm_b)
    return _clamp((overlap + edit) / 2.0)


def match_score(
    date_a: date,
    date_b: date,
    amount_a: Number,
    amount_b: Number,
    text_a: str,
    text_b: str,
    tolerance_fraction: float,
    max_lookback_days: int,
    weights: ScoringWeights = DEFAULT_WEIGHTS,
) -> float:
    """Weighted composite of date, value and text scores."""
    score = (
        weights.date * date_score(date_a, date_b, max_lookback_days)
        + weights.value * value_score(amount_a, amount_b, tolerance_fraction)
        + weights.text * text_score(text_a, text_b)
    )
    return _clamp(score)


def severity_rank_for_distance(distance: float) -> int:
    """0 (low), 1 (medium) or 2 (high). Monotonic non-decreasing in distance."""
    if math.isnan(distance):
        return 2
    if distance < LOW_SEVERITY_LIMIT:
        return 0
    if distance <= MEDIUM_SEVERITY_LIMIT:
        return 1
    return 2
