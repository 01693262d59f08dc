"""Classification executor: run one request against a ready model handle."""

from __future__ import annotations

import logging
import time
from typing import TYPE_CHECKING

from imagelens.errors import ClassificationFailedError
from imagelens.ml.preprocessing import decode_image

if TYPE_CHECKING:
    from imagelens.ml.distribution import ClassificationResult
    from imagelens.ml.image_classifier import ModelHandle
    from imagelens.ml.inference import InferencePool

logger = logging.getLogger(__name__)


class ClassificationExecutor:
    """Decodes an upload, invokes the model once and measures the latency.

    The executor only reads the handle. It never retries and never touches
    the lifecycle state, so one bad request leaves the model usable.
    """

    def __init__(self, pool: InferencePool, max_image_pixels: int) -> None:
        self._pool = pool
        self._max_image_pixels = max_image_pixels

    async def classify(self, handle: ModelHandle, image: bytes) -> tuple[list[ClassificationResult], int]:
        """Classify raw image bytes.

        Returns:
            The handle's ranked results, unchanged, and the inference latency
            in whole milliseconds.

        Raises:
            InvalidInputError: If the bytes cannot be decoded as an image.
            ClassificationFailedError: If the model call raises.
        """
        return await self._pool.run(self._run, handle, image)

    def _run(self, handle: ModelHandle, image_bytes: bytes) -> tuple[list[ClassificationResult], int]:
        # Runs in a pool thread so the decoded image is released here even if
        # the awaiting request is abandoned.
        image = decode_image(image_bytes, max_pixels=self._max_image_pixels)
        try:
            start = time.perf_counter()
            try:
                results = handle.invoke(image)
            except Exception as exc:
                logger.warning("Inference failed on %s: %s", handle.model_name, exc)
                raise ClassificationFailedError(f"Inference failed: {exc}") from exc
            elapsed = time.perf_counter() - start
        finally:
            image.close()

        latency_ms = max(0, round(elapsed * 1000))
        logger.debug("Classified image in %sms (%d results)", latency_ms, len(results))
        return results, latency_ms
