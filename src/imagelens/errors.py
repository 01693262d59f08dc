"""Error taxonomy for ImageLens.

Every error carries a short ``kind`` string so the HTTP layer and notice
listeners can render it without inspecting the exception type.
"""

from __future__ import annotations


class ImageLensError(Exception):
    """Base class for all ImageLens errors."""

    kind: str = "error"


class ModelUnavailableError(ImageLensError):
    """Both the accelerated and the fallback model acquisition failed.

    Fatal for the current request only; a later ``ensure_ready()`` retries.
    """

    kind = "model_unavailable"


class ClassificationFailedError(ImageLensError):
    """An inference call failed after the model was acquired.

    The model handle stays valid and is reused by the next request.
    """

    kind = "classification_failed"


class InvalidInputError(ImageLensError, ValueError):
    """Malformed or non-image bytes, rejected before the model is invoked."""

    kind = "invalid_input"


class EmptyDistributionError(ImageLensError, ValueError):
    """``summarize()`` was called with an empty distribution."""

    kind = "empty_distribution"
