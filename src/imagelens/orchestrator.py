"""Upload-to-result orchestration.

Coordinates one cycle: ensure the model is ready, classify the image, and
summarize the distribution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from imagelens.errors import ClassificationFailedError, InvalidInputError
from imagelens.events import Notice, NoticeKind
from imagelens.ml.metrics import summarize

if TYPE_CHECKING:
    from imagelens.events import NoticeListener
    from imagelens.ml.distribution import ClassificationResult
    from imagelens.ml.executor import ClassificationExecutor
    from imagelens.ml.metrics import MetricsSummary
    from imagelens.ml.model_manager import DeviceMode, ModelLifecycleManager

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationOutcome:
    """Everything the UI needs to render one classification."""

    distribution: list[ClassificationResult]
    latency_ms: int
    summary: MetricsSummary | None
    device: DeviceMode | None


class Orchestrator:
    """Runs ensure_ready -> classify -> summarize for a single upload."""

    def __init__(
        self,
        manager: ModelLifecycleManager,
        executor: ClassificationExecutor,
        notify: NoticeListener | None = None,
    ) -> None:
        self._manager = manager
        self._executor = executor
        self._notify = notify

    async def upload_image(self, image: bytes) -> ClassificationOutcome:
        """Classify one uploaded image.

        Raises:
            ModelUnavailableError: If the model cannot be acquired.
            InvalidInputError: If the bytes are not a decodable image.
            ClassificationFailedError: If the inference call fails.
        """
        if not self._manager.is_ready:
            self._emit(Notice(kind=NoticeKind.MODEL_LOADING))

        handle = await self._manager.ensure_ready()
        device = self._manager.device_mode

        try:
            distribution, latency_ms = await self._executor.classify(handle, image)
        except (InvalidInputError, ClassificationFailedError) as exc:
            self._emit(
                Notice(
                    kind=NoticeKind.CLASSIFICATION_FAILED,
                    device=device,
                    error_kind=exc.kind,
                    message=str(exc),
                )
            )
            raise

        summary = summarize(distribution, latency_ms) if distribution else None
        if summary is None:
            logger.warning("Model %s returned an empty distribution", handle.model_name)

        self._emit(Notice(kind=NoticeKind.CLASSIFICATION_COMPLETE, device=device, latency_ms=latency_ms))
        return ClassificationOutcome(
            distribution=distribution,
            latency_ms=latency_ms,
            summary=summary,
            device=device,
        )

    def _emit(self, notice: Notice) -> None:
        if self._notify is not None:
            self._notify(notice)
