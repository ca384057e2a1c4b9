"""Environment-based configuration for LeafDx."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LEAFDX_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEAFDX_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Model artifact (a local path wins over the hub)
    model_path: str | None = None
    model_repo_id: str = "leafdx/plant-disease-mobilenet"
    model_filename: str = "plant_disease.onnx"
    model_revision: str | None = None
    models_dir: str = "models"

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Worker pool
    max_workers: int = Field(default=2, ge=1)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)

    # Postprocessing
    normalize_scores: bool = False

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
