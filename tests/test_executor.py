"""Tests for preprocessing, the ONNX classifier handle and the classification executor."""

from __future__ import annotations

import asyncio
import time
from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
import pytest
from PIL import Image

from imagelens.errors import ClassificationFailedError, InvalidInputError
from imagelens.ml.distribution import ClassificationResult
from imagelens.ml.executor import ClassificationExecutor
from imagelens.ml.image_classifier import OnnxImageClassifier, softmax
from imagelens.ml.inference import InferencePool
from imagelens.ml.preprocessing import decode_image, to_model_input
from tests.fakes import FakeHandle, make_image_bytes, make_settings

if TYPE_CHECKING:
    from collections.abc import Iterator

# ---------------------------------------------------------------------------
# Preprocessing
# ---------------------------------------------------------------------------


class TestDecodeImage:
    def test_decodes_png_to_rgb(self, image_bytes: bytes) -> None:
        image = decode_image(image_bytes, max_pixels=10_000)
        try:
            assert image.mode == "RGB"
            assert image.size == (32, 24)
        finally:
            image.close()

    def test_decodes_jpeg(self) -> None:
        image = decode_image(make_image_bytes(fmt="JPEG"), max_pixels=10_000)
        assert image.size == (32, 24)
        image.close()

    def test_empty_bytes_rejected(self) -> None:
        with pytest.raises(InvalidInputError, match="Empty"):
            decode_image(b"", max_pixels=10_000)

    def test_non_image_bytes_rejected(self) -> None:
        with pytest.raises(InvalidInputError, match="Could not decode"):
            decode_image(b"definitely not an image", max_pixels=10_000)

    def test_oversized_image_rejected(self, image_bytes: bytes) -> None:
        with pytest.raises(InvalidInputError, match="too large"):
            decode_image(image_bytes, max_pixels=100)


class TestToModelInput:
    def test_shape_and_dtype(self) -> None:
        image = Image.new("RGB", (320, 200), (128, 128, 128))
        tensor = to_model_input(
            image, size=224, crop_pct=0.875, mean=(0.485, 0.456, 0.406), std=(0.229, 0.224, 0.225)
        )
        assert tensor.shape == (1, 3, 224, 224)
        assert tensor.dtype == np.float32

    def test_normalization(self) -> None:
        image = Image.new("RGB", (16, 16), (255, 0, 255))
        tensor = to_model_input(image, size=8, crop_pct=1.0, mean=(0.5, 0.5, 0.5), std=(0.5, 0.5, 0.5))
        assert tensor[0, 0].mean() == pytest.approx(1.0)
        assert tensor[0, 1].mean() == pytest.approx(-1.0)


# ---------------------------------------------------------------------------
# OnnxImageClassifier
# ---------------------------------------------------------------------------


class TestOnnxImageClassifier:
    def test_softmax_sums_to_one(self) -> None:
        probs = softmax(np.array([2.0, 1.0, 0.1], dtype=np.float32))
        assert float(probs.sum()) == pytest.approx(1.0, abs=1e-6)
        assert probs[0] > probs[1] > probs[2]

    def test_invoke_returns_ranked_top_k(self) -> None:
        model_input = MagicMock()
        model_input.name = "pixel_values"
        session = MagicMock()
        session.get_inputs.return_value = [model_input]
        session.run.return_value = [np.array([[0.5, 3.0, -1.0, 2.0]], dtype=np.float32)]
        labels = {0: "tench", 1: "goldfish", 2: "great white shark", 3: "tiger shark"}
        classifier = OnnxImageClassifier(session, labels, make_settings(top_k=3, image_size=8))

        results = classifier.invoke(Image.new("RGB", (10, 10)))

        assert [r.label for r in results] == ["goldfish", "tiger shark", "tench"]
        assert results[0].score > results[1].score > results[2].score
        feed = session.run.call_args.args[1]
        assert feed["pixel_values"].shape == (1, 3, 8, 8)

    def test_unknown_index_gets_placeholder_label(self) -> None:
        model_input = MagicMock()
        model_input.name = "x"
        session = MagicMock()
        session.get_inputs.return_value = [model_input]
        session.run.return_value = [np.array([[0.0, 4.0]], dtype=np.float32)]
        classifier = OnnxImageClassifier(session, {0: "tench"}, make_settings(top_k=1, image_size=8))

        results = classifier.invoke(Image.new("RGB", (10, 10)))

        assert results == [ClassificationResult(label="LABEL_1", score=pytest.approx(0.982, abs=1e-3))]


# ---------------------------------------------------------------------------
# ClassificationExecutor
# ---------------------------------------------------------------------------


class SlowHandle(FakeHandle):
    def invoke(self, image: Image.Image) -> list[ClassificationResult]:
        time.sleep(0.05)
        return super().invoke(image)


@pytest.fixture()
def pool() -> Iterator[InferencePool]:
    inference_pool = InferencePool(make_settings())
    yield inference_pool
    inference_pool.shutdown()


class TestClassificationExecutor:
    async def test_returns_distribution_unchanged(self, pool: InferencePool, image_bytes: bytes) -> None:
        # Deliberately not sorted: the executor must trust producer ordering.
        results = [
            ClassificationResult(label="b", score=0.2),
            ClassificationResult(label="a", score=0.7),
        ]
        handle = FakeHandle(results=results)
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        distribution, latency_ms = await executor.classify(handle, image_bytes)

        assert distribution == results
        assert isinstance(latency_ms, int)
        assert latency_ms >= 0
        assert handle.calls == 1

    async def test_latency_measures_invocation(self, pool: InferencePool, image_bytes: bytes) -> None:
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)
        _, latency_ms = await executor.classify(SlowHandle(), image_bytes)
        assert latency_ms >= 45

    async def test_invalid_input_never_invokes_model(self, pool: InferencePool) -> None:
        handle = FakeHandle()
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        with pytest.raises(InvalidInputError):
            await executor.classify(handle, b"not an image")

        assert handle.calls == 0

    async def test_inference_error_becomes_classification_failed(
        self, pool: InferencePool, image_bytes: bytes
    ) -> None:
        handle = FakeHandle(error=RuntimeError("bad tensor"))
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        with pytest.raises(ClassificationFailedError, match="bad tensor") as excinfo:
            await executor.classify(handle, image_bytes)

        assert isinstance(excinfo.value.__cause__, RuntimeError)
        assert handle.calls == 1

    async def test_decoded_image_released_on_success(self, pool: InferencePool, image_bytes: bytes) -> None:
        handle = FakeHandle()
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        await executor.classify(handle, image_bytes)

        with pytest.raises(ValueError, match="closed"):
            handle.images[0].load()

    async def test_decoded_image_released_on_failure(self, pool: InferencePool, image_bytes: bytes) -> None:
        handle = FakeHandle(error=RuntimeError("boom"))
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        with pytest.raises(ClassificationFailedError):
            await executor.classify(handle, image_bytes)

        with pytest.raises(ValueError, match="closed"):
            handle.images[0].load()

    async def test_abandoned_request_leaves_handle_usable(self, pool: InferencePool, image_bytes: bytes) -> None:
        handle = SlowHandle()
        executor = ClassificationExecutor(pool, max_image_pixels=10_000)

        request = asyncio.ensure_future(executor.classify(handle, image_bytes))
        await asyncio.sleep(0.01)
        request.cancel()
        with pytest.raises(asyncio.CancelledError):
            await request

        distribution, _ = await executor.classify(handle, image_bytes)
        assert distribution == handle.results
        assert handle.calls == 2


class TestInferencePool:
    async def test_tracks_counts(self) -> None:
        pool = InferencePool(make_settings(max_concurrent=1))
        try:
            assert pool.active_count == 0
            assert pool.queue_depth == 0
            assert await pool.run(sum, [1, 2, 3]) == 6
            assert pool.active_count == 0
        finally:
            pool.shutdown()

    async def test_queue_timeout(self) -> None:
        pool = InferencePool(make_settings(max_concurrent=1, queue_timeout=0.01))
        try:
            blocker = asyncio.ensure_future(pool.run(time.sleep, 0.1))
            await asyncio.sleep(0.01)
            with pytest.raises(TimeoutError):
                await pool.run(sum, [1])
            await blocker
        finally:
            pool.shutdown()
