"""Score distribution types and pure helpers.

A score distribution is the ranked ``list[ClassificationResult]`` produced by a
model handle. Producers emit it sorted by score, descending; nothing in this
module re-sorts it.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import TYPE_CHECKING, Literal

if TYPE_CHECKING:
    from collections.abc import Sequence

HIGH_CONFIDENCE_PERCENT = 80
MEDIUM_CONFIDENCE_PERCENT = 50


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    score: float


ScoreDistribution = list[ClassificationResult]


def to_percent(value: float) -> int:
    """Convert a 0-1 value to a whole percentage, rounding halves up."""
    return math.floor(value * 100 + 0.5)


def top_n(distribution: Sequence[ClassificationResult], n: int = 5) -> ScoreDistribution:
    """Return the first ``n`` entries of an already-ranked distribution."""
    return list(distribution[: max(n, 0)])


def confidence_level(score: float) -> Literal["high", "medium", "low"]:
    """Bucket a score into the confidence bands used for result display."""
    percent = to_percent(score)
    if percent >= HIGH_CONFIDENCE_PERCENT:
        return "high"
    if percent >= MEDIUM_CONFIDENCE_PERCENT:
        return "medium"
    return "low"


def entropy(distribution: Sequence[ClassificationResult]) -> float:
    """Shannon entropy in bits over the entries present.

    Entries with a score of zero (or below) contribute nothing. When the
    distribution is a truncated top-N view this only approximates the model's
    full-vocabulary uncertainty.
    """
    return -sum(r.score * math.log2(r.score) for r in distribution if r.score > 0)


def max_entropy(distribution: Sequence[ClassificationResult]) -> float:
    """Entropy of a uniform distribution with the same number of entries."""
    if not distribution:
        return 0.0
    return math.log2(len(distribution))
