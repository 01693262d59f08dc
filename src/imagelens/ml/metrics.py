"""Evaluation metrics derived from a ranked score distribution.

All "accuracy" figures here are confidence-based. No ground-truth label is
available, so top-k values measure the best score inside the first k entries,
which for a descending distribution is always the top-1 confidence.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from imagelens.errors import EmptyDistributionError
from imagelens.ml.distribution import entropy, max_entropy, to_percent

if TYPE_CHECKING:
    from collections.abc import Sequence

    from imagelens.ml.distribution import ClassificationResult

TOP_K_VALUES: tuple[int, ...] = (1, 3, 5)


@dataclass(frozen=True)
class MetricsSummary:
    """Fixed-shape summary of one classification result."""

    top_k: dict[int, int] = field(hash=False)
    confidence_margin: int
    certainty: int
    average_confidence: int
    latency_ms: int | None = None

    def top_k_confidence(self, k: int) -> int:
        """Return the top-k confidence percentage for one of ``TOP_K_VALUES``."""
        try:
            return self.top_k[k]
        except KeyError:
            raise KeyError(f"Unsupported k: {k}") from None


def _top_k(distribution: Sequence[ClassificationResult], k: int) -> int:
    head = distribution[: min(k, len(distribution))]
    return to_percent(max(r.score for r in head))


def _confidence_margin(distribution: Sequence[ClassificationResult]) -> int:
    if len(distribution) < 2:
        return 100
    return to_percent(distribution[0].score - distribution[1].score)


def _certainty(distribution: Sequence[ClassificationResult]) -> int:
    h_max = max_entropy(distribution)
    if h_max <= 0:
        return 100
    # A truncated view whose scores do not sum to 1 can exceed log2(n).
    return min(100, max(0, to_percent(1 - entropy(distribution) / h_max)))


def summarize(
    distribution: Sequence[ClassificationResult],
    latency_ms: int | None = None,
) -> MetricsSummary:
    """Derive the evaluation summary for a non-empty ranked distribution.

    Args:
        distribution: Results sorted by score, descending.
        latency_ms: Inference latency, passed through unchanged.

    Raises:
        EmptyDistributionError: If ``distribution`` has no entries.
    """
    if not distribution:
        raise EmptyDistributionError("Cannot summarize an empty distribution")

    mean_score = sum(r.score for r in distribution) / len(distribution)
    return MetricsSummary(
        top_k={k: _top_k(distribution, k) for k in TOP_K_VALUES},
        confidence_margin=_confidence_margin(distribution),
        certainty=_certainty(distribution),
        average_confidence=to_percent(mean_score),
        latency_ms=latency_ms,
    )
