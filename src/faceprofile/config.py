"""Environment-based configuration for FaceProfile."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from faceprofile.ml.model_manager import MODEL_REGISTRY


class Settings(BaseSettings):
    """Application settings loaded from FACEPROFILE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEPROFILE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 4000
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection (empty string disables an optional stage)
    face_detection_model: str = "scrfd_10g_kps"
    face_recognition_model: str = "auraface_v1"
    face_landmark_model: str = "landmark_3d_68"
    face_attribute_model: str = "genderage"
    face_expression_model: str = "emotion_ferplus"
    accept_insightface_license: bool = False

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float = Field(default=5.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)
    url_fetch_timeout: float = Field(default=10.0, gt=0)

    # Model management
    models_dir: str = "./models"
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Detection
    min_confidence: float = Field(default=0.15, ge=0.0, le=1.0)
    max_results: int = Field(default=5, ge=1)
    detection_size: int = Field(default=640, ge=32)

    # Enrollment and matching
    dataset_dir: str = "./dataset"
    match_threshold: float = Field(default=1.1, gt=0.0)

    # Uploads are kept on disk only when a directory is configured
    uploads_dir: str | None = None

    @field_validator("face_detection_model", "face_recognition_model")
    @classmethod
    def _require_known_model(cls, name: str) -> str:
        if name not in MODEL_REGISTRY:
            raise ValueError(f"unknown model {name!r}, expected one of {sorted(MODEL_REGISTRY)}")
        return name

    @field_validator("face_landmark_model", "face_attribute_model", "face_expression_model")
    @classmethod
    def _known_model_or_disabled(cls, name: str) -> str:
        if name and name not in MODEL_REGISTRY:
            raise ValueError(f"unknown model {name!r}, expected one of {sorted(MODEL_REGISTRY)} or empty")
        return name

    @property
    def optional_models(self) -> list[str]:
        """Names of the enabled optional models (landmarks, attributes, expression)."""
        names = [self.face_landmark_model, self.face_attribute_model, self.face_expression_model]
        return [name for name in names if name]

    @property
    def active_models(self) -> list[str]:
        """Names of every model the analyzer will run."""
        return [self.face_detection_model, self.face_recognition_model, *self.optional_models]


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
