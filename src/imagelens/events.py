"""Structured notices emitted for the UI collaborator.

The core never formats user-facing text; it emits a ``Notice`` with enough
data (device mode, latency, error kind) for a listener to render one.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from enum import StrEnum

logger = logging.getLogger(__name__)


class NoticeKind(StrEnum):
    MODEL_LOADING = "model_loading"
    MODEL_LOADED = "model_loaded"
    MODEL_FALLBACK = "model_fallback"
    MODEL_UNAVAILABLE = "model_unavailable"
    CLASSIFICATION_COMPLETE = "classification_complete"
    CLASSIFICATION_FAILED = "classification_failed"


_FAILURE_KINDS = frozenset({NoticeKind.MODEL_UNAVAILABLE, NoticeKind.CLASSIFICATION_FAILED})


@dataclass(frozen=True)
class Notice:
    """A single lifecycle or classification notice."""

    kind: NoticeKind
    device: str | None = None
    latency_ms: int | None = None
    error_kind: str | None = None
    message: str | None = None

    @property
    def is_failure(self) -> bool:
        return self.kind in _FAILURE_KINDS


NoticeListener = Callable[[Notice], None]


def log_notice(notice: Notice) -> None:
    """Default listener: write the notice to the application log."""
    level = logging.WARNING if notice.is_failure else logging.INFO
    logger.log(
        level,
        "Notice %s (device=%s, latency_ms=%s, error_kind=%s): %s",
        notice.kind,
        notice.device,
        notice.latency_ms,
        notice.error_kind,
        notice.message or "",
    )
