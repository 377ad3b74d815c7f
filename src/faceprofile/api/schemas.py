"""Pydantic request/response schemas for the FaceProfile API."""

from __future__ import annotations

from pydantic import BaseModel, Field, HttpUrl


class FaceAngle(BaseModel):
    """Head pose angles for a detected face, in degrees."""

    roll: float
    yaw: float
    pitch: float


class MatchResult(BaseModel):
    """Closest enrolled identity."""

    label: str = Field(description="Enrolled label, or 'unknown' when no label is close enough")
    distance: float | None = Field(description="Mean Euclidean distance to the label's descriptors")


class DetectedFace(BaseModel):
    """A single analysed face."""

    x: float = Field(description="Relative bounding box x position (0.0-1.0)")
    y: float = Field(description="Relative bounding box y position (0.0-1.0)")
    width: float = Field(description="Relative bounding box width (0.0-1.0)")
    height: float = Field(description="Relative bounding box height (0.0-1.0)")
    score: float = Field(description="Detection confidence (0.0-1.0)")
    vector: list[float] = Field(description="L2-normalized face descriptor")
    angle: FaceAngle | None = None
    age: float | None = None
    gender: str | None = None
    gender_probability: float | None = None
    expressions: dict[str, float] = Field(default_factory=dict)
    match: MatchResult
    description: str


class ImageUrlRequest(BaseModel):
    """Analyse an image fetched from a URL."""

    url: HttpUrl


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    enrolled_labels: int
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: str = Field(
        description=(
            "Model task: 'face_detection', 'face_recognition', 'face_landmarks', "
            "'face_attributes', or 'face_expression'"
        )
    )
    status: str = Field(description="Model status: 'active', 'available', or 'requires_license'")
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class EnrolledLabel(BaseModel):
    label: str
    samples: int


class LabelsResponse(BaseModel):
    """Identities the matcher was built from."""

    labels: list[EnrolledLabel]
    distance_threshold: float


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
