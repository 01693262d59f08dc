"""Model manager: download, load and cache the classification model.

``ModelLifecycleManager`` owns the single cached model handle and drives an
explicit state machine::

    Unloaded/Failed --ensure_ready()--> Loading(ACCELERATED)
    Loading(ACCELERATED) --ok--> Ready(ACCELERATED)
    Loading(ACCELERATED) --error--> Loading(FALLBACK)
    Loading(FALLBACK) --ok--> Ready(FALLBACK)
    Loading(FALLBACK) --error--> Failed
    Ready --reset()--> Unloaded

``OnnxModelLoader`` is the concrete loader: it downloads the model from
HuggingFace and builds an ONNX Runtime session for the requested device mode.
"""

from __future__ import annotations

import asyncio
import json
import logging
import threading
from dataclasses import dataclass
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import onnxruntime
from huggingface_hub import hf_hub_download
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from imagelens.errors import ModelUnavailableError
from imagelens.events import Notice, NoticeKind
from imagelens.ml.image_classifier import OnnxImageClassifier

if TYPE_CHECKING:
    from imagelens.config import Settings
    from imagelens.events import NoticeListener
    from imagelens.ml.image_classifier import ModelHandle

logger = logging.getLogger(__name__)


class DeviceMode(StrEnum):
    ACCELERATED = "accelerated"
    FALLBACK = "fallback"


# ---------------------------------------------------------------------------
# Lifecycle states
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Unloaded:
    name = "unloaded"


@dataclass(frozen=True)
class Loading:
    mode: DeviceMode
    name = "loading"


@dataclass(frozen=True)
class Ready:
    mode: DeviceMode
    handle: ModelHandle
    name = "ready"


@dataclass(frozen=True)
class Failed:
    reason: str
    name = "failed"


LifecycleState = Unloaded | Loading | Ready | Failed


# ---------------------------------------------------------------------------
# Loader protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class ModelLoader(Protocol):
    """Protocol for building a model handle on a given device."""

    def load(self, mode: DeviceMode) -> ModelHandle:
        """Build a model handle, raising on any failure.

        Called from a worker thread; may block on network and compute.
        """
        ...


# ---------------------------------------------------------------------------
# Lifecycle manager
# ---------------------------------------------------------------------------


class ModelLifecycleManager:
    """Lazily acquires the model once and serves the cached handle afterwards.

    State is only mutated on the event loop thread. At most one acquisition
    is in flight at a time; concurrent callers share its outcome.
    """

    def __init__(self, loader: ModelLoader, notify: NoticeListener | None = None) -> None:
        self._loader = loader
        self._notify = notify
        self._state: LifecycleState = Unloaded()
        self._inflight: asyncio.Task[ModelHandle] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def is_ready(self) -> bool:
        return isinstance(self._state, Ready)

    @property
    def device_mode(self) -> DeviceMode | None:
        """Device mode of the cached handle, or None when not ready."""
        if isinstance(self._state, Ready):
            return self._state.mode
        return None

    async def ensure_ready(self) -> ModelHandle:
        """Return the cached handle, acquiring it first if needed.

        Raises:
            ModelUnavailableError: If both the accelerated and the fallback
                acquisition fail.
        """
        state = self._state
        if isinstance(state, Ready):
            return state.handle

        if self._inflight is None:
            self._inflight = asyncio.get_running_loop().create_task(self._acquire())
        else:
            logger.debug("Joining in-flight model acquisition")

        # A cancelled waiter must not cancel the shared acquisition.
        return await asyncio.shield(self._inflight)

    def reset(self) -> None:
        """Drop the cached handle and return to the unloaded state."""
        if self._inflight is not None:
            raise RuntimeError("Cannot reset while a model acquisition is in flight")
        self._state = Unloaded()
        logger.info("Model lifecycle reset")

    # -- Internal -----------------------------------------------------------

    async def _acquire(self) -> ModelHandle:
        try:
            try:
                handle = await self._load(DeviceMode.ACCELERATED)
            except Exception as accel_exc:  # noqa: BLE001
                logger.warning("Accelerated model load failed, falling back: %s", accel_exc)
            else:
                self._emit(Notice(kind=NoticeKind.MODEL_LOADED, device=DeviceMode.ACCELERATED))
                return handle

            try:
                handle = await self._load(DeviceMode.FALLBACK)
            except Exception as fallback_exc:
                reason = f"{type(fallback_exc).__name__}: {fallback_exc}"
                self._state = Failed(reason=reason)
                logger.error("Fallback model load failed: %s", reason)
                self._emit(
                    Notice(
                        kind=NoticeKind.MODEL_UNAVAILABLE,
                        error_kind=ModelUnavailableError.kind,
                        message=reason,
                    )
                )
                raise ModelUnavailableError(f"Model could not be loaded: {reason}") from fallback_exc

            self._emit(Notice(kind=NoticeKind.MODEL_FALLBACK, device=DeviceMode.FALLBACK))
            return handle
        finally:
            self._inflight = None

    async def _load(self, mode: DeviceMode) -> ModelHandle:
        self._state = Loading(mode=mode)
        logger.info("Loading model (%s)", mode)
        loop = asyncio.get_running_loop()
        handle = await loop.run_in_executor(None, self._loader.load, mode)
        self._state = Ready(mode=mode, handle=handle)
        logger.info("Model ready (%s)", mode)
        return handle

    def _emit(self, notice: Notice) -> None:
        if self._notify is not None:
            self._notify(notice)


# ---------------------------------------------------------------------------
# Concrete ONNX loader
# ---------------------------------------------------------------------------

_ACCELERATED_PROVIDERS: dict[str, str] = {
    "cuda": "CUDAExecutionProvider",
    "openvino": "OpenVINOExecutionProvider",
}

CPU_PROVIDER = "CPUExecutionProvider"


class OnnxModelLoader:
    """Downloads the model from HuggingFace and builds ONNX Runtime sessions."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._paths: dict[str, Path] = {}

    # -- Public API ---------------------------------------------------------

    def load(self, mode: DeviceMode) -> OnnxImageClassifier:
        """Build a classifier for ``mode``, raising if the device is unusable."""
        providers = self._build_providers(mode)
        model_path = self.ensure_downloaded(self._settings.model_filename)
        labels = self._load_labels(self.ensure_downloaded(self._settings.model_config_filename))

        session = InferenceSession(
            str(model_path),
            sess_options=self._build_session_options(mode),
            providers=providers,
        )
        if mode is DeviceMode.ACCELERATED:
            wanted = self.accelerated_provider
            active = session.get_providers()
            if not active or active[0] != wanted:
                raise RuntimeError(f"Session resolved to {active} instead of {wanted}")

        logger.info("Loaded session for %s (providers=%s)", self._settings.model_repo, session.get_providers())
        return OnnxImageClassifier(session=session, labels=labels, settings=self._settings)

    def ensure_downloaded(self, filename: str) -> Path:
        """Download a model file from HuggingFace if not already present locally."""
        with self._lock:
            cached = self._paths.get(filename)
            if cached is not None and cached.exists():
                return cached

        downloaded = Path(
            hf_hub_download(
                repo_id=self._settings.model_repo,
                filename=filename,
                local_dir=str(self._models_dir),
            )
        )
        with self._lock:
            self._paths[filename] = downloaded
        logger.info("Downloaded %s to %s", filename, downloaded)
        return downloaded

    @property
    def accelerated_provider(self) -> str:
        return _ACCELERATED_PROVIDERS[self._settings.accelerated_device]

    # -- Internal -----------------------------------------------------------

    @staticmethod
    def _load_labels(config_path: Path) -> dict[int, str]:
        config = json.loads(config_path.read_text(encoding="utf-8"))
        id2label = config.get("id2label")
        if not id2label:
            raise RuntimeError(f"No id2label mapping in {config_path.name}")
        return {int(idx): str(label) for idx, label in id2label.items()}

    def _build_providers(self, mode: DeviceMode) -> list[str | tuple[str, dict[str, object]]]:
        if mode is DeviceMode.FALLBACK:
            return [CPU_PROVIDER]

        provider = self.accelerated_provider
        if provider not in onnxruntime.get_available_providers():
            raise RuntimeError(f"{provider} is not available in this onnxruntime build")

        if provider == "CUDAExecutionProvider":
            return [
                (
                    provider,
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
            ]
        return [(provider, {"device_type": "CPU"})]

    def _build_session_options(self, mode: DeviceMode) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if mode is DeviceMode.ACCELERATED and self._settings.accelerated_device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
