"""Image classification model handles.

A model handle is anything with ``invoke(image) -> list[ClassificationResult]``.
The lifecycle manager only ever sees this protocol, so a local ONNX session, a
remote service or a test double are interchangeable.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np

from imagelens.ml.distribution import ClassificationResult
from imagelens.ml.preprocessing import to_model_input

if TYPE_CHECKING:
    from numpy.typing import NDArray
    from onnxruntime import InferenceSession
    from PIL import Image

    from imagelens.config import Settings


class ModelHandle(Protocol):
    """Protocol for a loaded image classification model."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def invoke(self, image: Image.Image) -> list[ClassificationResult]:
        """Classify an image and return ranked results.

        Args:
            image: Decoded RGB image.

        Returns:
            Classification results sorted by score (descending).
        """
        ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    """Numerically stable softmax over the last axis."""
    shifted = np.exp(logits - np.max(logits, axis=-1, keepdims=True))
    return shifted / np.sum(shifted, axis=-1, keepdims=True)


class OnnxImageClassifier:
    """Runs an ONNX image classification graph and ranks the top-k labels."""

    def __init__(
        self,
        session: InferenceSession,
        labels: dict[int, str],
        settings: Settings,
    ) -> None:
        self._session = session
        self._labels = labels
        self._settings = settings
        self._input_name = session.get_inputs()[0].name

    @property
    def model_name(self) -> str:
        return self._settings.model_repo

    @property
    def providers(self) -> list[str]:
        return list(self._session.get_providers())

    def invoke(self, image: Image.Image) -> list[ClassificationResult]:
        tensor = to_model_input(
            image,
            size=self._settings.image_size,
            crop_pct=self._settings.crop_pct,
            mean=self._settings.mean,
            std=self._settings.std,
        )
        logits = self._session.run(None, {self._input_name: tensor})[0]
        scores = softmax(np.asarray(logits, dtype=np.float32).reshape(-1))

        k = min(self._settings.top_k, scores.shape[0])
        ranked = np.argsort(scores)[::-1][:k]
        return [
            ClassificationResult(
                label=self._labels.get(int(idx), f"LABEL_{int(idx)}"),
                score=float(scores[idx]),
            )
            for idx in ranked
        ]
