"""Environment-based configuration for ImageLens."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from IMAGELENS_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGELENS_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082
    log_level: str = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # Model source
    model_repo: str = "onnx-community/mobilenetv4_conv_small.e2400_r224_in1k"
    model_filename: str = "onnx/model.onnx"
    model_config_filename: str = "config.json"
    models_dir: str = "/tmp/imagelens_models"  # noqa: S108

    # Accelerated device tried before the CPU fallback
    accelerated_device: Literal["cuda", "openvino"] = "cuda"
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency (1 = one inference at a time on the shared handle)
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Classification output and preprocessing
    top_k: int = Field(default=5, ge=1)
    image_size: int = Field(default=224, ge=1)
    crop_pct: float = Field(default=0.875, gt=0, le=1)
    mean: tuple[float, float, float] = (0.485, 0.456, 0.406)
    std: tuple[float, float, float] = (0.229, 0.224, 0.225)


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
