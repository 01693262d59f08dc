"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from imagelens.config import Settings
    from imagelens.ml.model_manager import ModelLoader

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagelens.api.routes import router
from imagelens.config import get_settings
from imagelens.events import log_notice
from imagelens.ml.executor import ClassificationExecutor
from imagelens.ml.inference import InferencePool
from imagelens.ml.model_manager import ModelLifecycleManager, OnnxModelLoader
from imagelens.orchestrator import Orchestrator

logger = logging.getLogger(__name__)


def init_app_state(app: FastAPI, settings: Settings, loader: ModelLoader | None = None) -> None:
    """Wire settings, pool, model manager and orchestrator onto ``app.state``.

    ``loader`` defaults to an ``OnnxModelLoader``.
    """
    if loader is None:
        loader = OnnxModelLoader(settings)

    inference_pool = InferencePool(settings)
    manager = ModelLifecycleManager(loader, notify=log_notice)
    executor = ClassificationExecutor(inference_pool, max_image_pixels=settings.max_image_pixels)

    app.state.settings = settings
    app.state.inference_pool = inference_pool
    app.state.model_manager = manager
    app.state.orchestrator = Orchestrator(manager, executor, notify=log_notice)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImageLens (model=%s, accelerated_device=%s, max_concurrent=%s)",
        settings.model_repo,
        settings.accelerated_device,
        settings.max_concurrent,
    )

    init_app_state(app, settings)

    logger.info("ImageLens ready (model loads on first upload)")
    yield

    logger.info("Shutting down ImageLens")
    app.state.inference_pool.shutdown()
    logger.info("ImageLens shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImageLens",
        description="Image classification with confidence-based evaluation metrics",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using IMAGELENS_HOST / IMAGELENS_PORT."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
