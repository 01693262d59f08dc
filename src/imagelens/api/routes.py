"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from imagelens.api.middleware import verify_api_key
from imagelens.api.schemas import (
    ClassifyImageResponse,
    ErrorResponse,
    HealthResponse,
    ModelStatus,
)
from imagelens.errors import (
    ClassificationFailedError,
    ImageLensError,
    InvalidInputError,
    ModelUnavailableError,
)
from imagelens.ml.model_manager import DeviceMode, Failed

if TYPE_CHECKING:
    from imagelens.config import Settings
    from imagelens.ml.inference import InferencePool
    from imagelens.ml.model_manager import ModelLifecycleManager
    from imagelens.orchestrator import Orchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1")

_protected = [Depends(verify_api_key)]


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelLifecycleManager:
    manager: ModelLifecycleManager = request.app.state.model_manager
    return manager


def _get_orchestrator(request: Request) -> Orchestrator:
    orchestrator: Orchestrator = request.app.state.orchestrator
    return orchestrator


def _error(status_code: int, detail: str, kind: str | None = None) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content=ErrorResponse(detail=detail, kind=kind).model_dump(),
    )


def _model_status(manager: ModelLifecycleManager, settings: Settings) -> ModelStatus:
    state = manager.state
    mode = manager.device_mode
    return ModelStatus(
        name=settings.model_repo,
        state=state.name,
        device=mode.value if mode is not None else None,
        reason=state.reason if isinstance(state, Failed) else None,
    )


@router.post(
    "/classify-image",
    response_model=ClassifyImageResponse,
    dependencies=_protected,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_415_UNSUPPORTED_MEDIA_TYPE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_500_INTERNAL_SERVER_ERROR: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Classify an image with ranked tags and evaluation metrics",
)
async def classify_image(request: Request, file: UploadFile) -> ClassifyImageResponse | JSONResponse:
    """Classify an uploaded image and return ranked tags plus derived metrics."""
    settings = _get_settings(request)

    if not file.content_type or not file.content_type.startswith("image/"):
        return _error(
            status.HTTP_415_UNSUPPORTED_MEDIA_TYPE,
            "Please upload an image file",
            InvalidInputError.kind,
        )

    image_bytes = await file.read(settings.max_file_size + 1)
    if len(image_bytes) > settings.max_file_size:
        return _error(
            status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            f"File exceeds {settings.max_file_size} bytes",
            InvalidInputError.kind,
        )

    orchestrator = _get_orchestrator(request)
    try:
        outcome = await orchestrator.upload_image(image_bytes)
    except InvalidInputError as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc), exc.kind)
    except ModelUnavailableError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc), exc.kind)
    except ClassificationFailedError as exc:
        return _error(status.HTTP_500_INTERNAL_SERVER_ERROR, str(exc), exc.kind)
    except TimeoutError:
        logger.warning("Inference queue timeout for %s", file.filename)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, try again later")

    return ClassifyImageResponse.from_outcome(outcome)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    manager = _get_model_manager(request)
    return HealthResponse(
        status="ok",
        gpu=manager.device_mode is DeviceMode.ACCELERATED and settings.accelerated_device == "cuda",
        model=_model_status(manager, settings),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/model",
    response_model=ModelStatus,
    dependencies=_protected,
    summary="Model lifecycle status",
)
async def model_status(request: Request) -> ModelStatus:
    """Return the lifecycle state and device mode of the classification model."""
    return _model_status(_get_model_manager(request), _get_settings(request))


@router.post(
    "/model/load",
    response_model=ModelStatus,
    dependencies=_protected,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Load the model ahead of the first upload",
)
async def load_model(request: Request) -> ModelStatus | JSONResponse:
    """Acquire the model now instead of on the first classification."""
    manager = _get_model_manager(request)
    try:
        await manager.ensure_ready()
    except ImageLensError as exc:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, str(exc), exc.kind)
    return _model_status(manager, _get_settings(request))


@router.post(
    "/model/reset",
    response_model=ModelStatus,
    dependencies=_protected,
    responses={status.HTTP_409_CONFLICT: {"model": ErrorResponse}},
    summary="Drop the cached model",
)
async def reset_model(request: Request) -> ModelStatus | JSONResponse:
    """Unload the cached model; the next upload acquires it again."""
    manager = _get_model_manager(request)
    try:
        manager.reset()
    except RuntimeError as exc:
        return _error(status.HTTP_409_CONFLICT, str(exc))
    return _model_status(manager, _get_settings(request))
