"""Pydantic request/response schemas for the ImageLens API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Literal

from pydantic import BaseModel, Field

from imagelens.ml.distribution import confidence_level, to_percent

if TYPE_CHECKING:
    from imagelens.ml.metrics import MetricsSummary
    from imagelens.orchestrator import ClassificationOutcome


class ImageTag(BaseModel):
    """A single classification tag with confidence score."""

    label: str
    score: float = Field(ge=0.0, le=1.0)
    percent: int = Field(description="Score as a whole percentage")
    level: Literal["high", "medium", "low"] = Field(description="Confidence band: >=80, >=50, or below")


class EvaluationMetrics(BaseModel):
    """Confidence-based statistics derived from the ranked tags."""

    top_k: dict[int, int] = Field(description="Top-k confidence percentage for k in 1, 3, 5")
    confidence_margin: int = Field(description="Gap between #1 and #2, in percent")
    certainty: int = Field(ge=0, le=100, description="Inverse normalized entropy, in percent")
    average_confidence: int = Field(ge=0, le=100, description="Mean score across returned classes")
    latency_ms: int | None = None

    @classmethod
    def from_summary(cls, summary: MetricsSummary) -> EvaluationMetrics:
        return cls(
            top_k=dict(summary.top_k),
            confidence_margin=summary.confidence_margin,
            certainty=summary.certainty,
            average_confidence=summary.average_confidence,
            latency_ms=summary.latency_ms,
        )


class ClassifyImageResponse(BaseModel):
    """Response for image classification endpoint."""

    tags: list[ImageTag]
    latency_ms: int = Field(ge=0)
    device: str | None = Field(description="Device mode that produced the model: 'accelerated' or 'fallback'")
    metrics: EvaluationMetrics | None = Field(description="Absent when the model returned no tags")

    @classmethod
    def from_outcome(cls, outcome: ClassificationOutcome) -> ClassifyImageResponse:
        return cls(
            tags=[
                ImageTag(
                    label=r.label,
                    score=r.score,
                    percent=to_percent(r.score),
                    level=confidence_level(r.score),
                )
                for r in outcome.distribution
            ],
            latency_ms=outcome.latency_ms,
            device=outcome.device.value if outcome.device is not None else None,
            metrics=EvaluationMetrics.from_summary(outcome.summary) if outcome.summary is not None else None,
        )


class ModelStatus(BaseModel):
    """Lifecycle status of the classification model."""

    name: str
    state: Literal["unloaded", "loading", "ready", "failed"]
    device: str | None = None
    reason: str | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    model: ModelStatus
    concurrent_requests: int
    queue_depth: int


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
    kind: str | None = None
