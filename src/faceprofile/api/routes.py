"""API route definitions."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

from fastapi import APIRouter, Depends, File, HTTPException, Request, UploadFile, status
from fastapi.responses import JSONResponse

from faceprofile.api.middleware import verify_api_key
from faceprofile.api.schemas import (
    DetectedFace,
    EnrolledLabel,
    ErrorResponse,
    FaceAngle,
    HealthResponse,
    ImageUrlRequest,
    LabelsResponse,
    MatchResult,
    ModelInfo,
    ModelsResponse,
)
from faceprofile.describe import describe_face
from faceprofile.ml.model_manager import MODEL_REGISTRY
from faceprofile.ml.preprocessing import decode_image, fetch_image_bytes

if TYPE_CHECKING:
    from faceprofile.config import Settings
    from faceprofile.ml.face_matcher import FaceMatch, FaceMatcher
    from faceprofile.ml.inference import InferencePool
    from faceprofile.ml.model_manager import ModelManager
    from faceprofile.ml.pipeline import AnalyzedFace, FaceAnalyzer

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])
legacy_router = APIRouter(dependencies=[Depends(verify_api_key)])

_ERROR_RESPONSES: dict[int | str, dict[str, object]] = {
    status.HTTP_400_BAD_REQUEST: {"model": ErrorResponse},
    status.HTTP_413_CONTENT_TOO_LARGE: {"model": ErrorResponse},
    status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
}


@dataclass
class _ImageResult:
    width: int
    height: int
    faces: list[tuple[AnalyzedFace, FaceMatch]] = field(default_factory=list)


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_matcher(request: Request) -> FaceMatcher | None:
    return getattr(request.app.state, "face_matcher", None)


def _get_ready_pipeline(request: Request) -> tuple[FaceAnalyzer, FaceMatcher]:
    analyzer: FaceAnalyzer | None = getattr(request.app.state, "analyzer", None)
    matcher = _get_matcher(request)
    if analyzer is None or matcher is None:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Face models are still loading",
        )
    return analyzer, matcher


async def _read_upload(file: UploadFile, settings: Settings) -> bytes:
    data = await file.read()
    if len(data) > settings.max_file_size:
        raise HTTPException(
            status_code=status.HTTP_413_CONTENT_TOO_LARGE,
            detail=f"File exceeds {settings.max_file_size} bytes",
        )
    if settings.uploads_dir:
        _store_upload(Path(settings.uploads_dir), file.filename, data)
    return data


def _store_upload(uploads_dir: Path, filename: str | None, data: bytes) -> None:
    """Keep a copy of an upload; failures are logged and never fail the request."""
    name = Path(filename or "").name
    if name in ("", ".", ".."):
        logger.warning("Not storing upload with unusable filename %r", filename)
        return
    target = uploads_dir / name
    try:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
    except OSError as exc:
        logger.warning("Could not store upload at %s: %s", target, exc)
        return
    logger.debug("Stored upload at %s", target)


def _decode_and_analyze(
    analyzer: FaceAnalyzer, data: bytes, max_image_pixels: int
) -> tuple[int, int, list[AnalyzedFace]]:
    image = decode_image(data, max_image_pixels)
    height, width = image.shape[:2]
    return width, height, analyzer.analyze(image)


async def _process_image(request: Request, data: bytes) -> _ImageResult:
    """Decode and analyse one image inside the inference pool, then match each face."""
    settings = _get_settings(request)
    analyzer, matcher = _get_ready_pipeline(request)
    pool = _get_inference_pool(request)

    try:
        width, height, faces = await pool.run(_decode_and_analyze, analyzer, data, settings.max_image_pixels)
    except TimeoutError:
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Inference queue is full, try again later",
        ) from None
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc

    result = _ImageResult(width=width, height=height)
    for face in faces:
        match = matcher.find_best_match(face.descriptor)
        logger.info("%s Match: %s", describe_face(face), match)
        result.faces.append((face, match))
    return result


def _to_detected_face(face: AnalyzedFace, match: FaceMatch, width: int, height: int) -> DetectedFace:
    x, y, w, h = face.box
    pose = face.pose
    return DetectedFace(
        x=x / width,
        y=y / height,
        width=w / width,
        height=h / height,
        score=face.score,
        vector=[float(v) for v in face.descriptor],
        angle=FaceAngle(pitch=pose[0], yaw=pose[1], roll=pose[2]) if pose is not None else None,
        age=face.age,
        gender=face.gender,
        gender_probability=face.gender_probability,
        expressions=face.expressions,
        match=MatchResult(label=match.label, distance=None if math.isinf(match.distance) else match.distance),
        description=describe_face(face),
    )


@legacy_router.post(
    "/profile",
    response_model=list[str],
    responses=_ERROR_RESPONSES,
    summary="Describe and identify the faces in an uploaded image",
)
async def profile(request: Request, avatar: Annotated[UploadFile | None, File()] = None) -> JSONResponse:
    """Return, for each face, its description followed by its best match.

    Errors come back as a one-element array holding the message.
    """
    if avatar is None:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=["No image uploaded in field 'avatar'"])
    try:
        data = await _read_upload(avatar, _get_settings(request))
        result = await _process_image(request, data)
    except HTTPException as exc:
        return JSONResponse(status_code=exc.status_code, content=[exc.detail])

    lines: list[str] = []
    for face, match in result.faces:
        lines.extend([describe_face(face), str(match)])
    return JSONResponse(content=lines)


@router.post(
    "/detect-faces",
    response_model=list[DetectedFace],
    responses=_ERROR_RESPONSES,
    summary="Detect, describe and identify faces in an uploaded image",
)
async def detect_faces(request: Request, file: UploadFile) -> list[DetectedFace]:
    """Analyse every face in an uploaded image."""
    data = await _read_upload(file, _get_settings(request))
    result = await _process_image(request, data)
    return [_to_detected_face(face, match, result.width, result.height) for face, match in result.faces]


@router.post(
    "/detect-faces/url",
    response_model=list[DetectedFace],
    responses=_ERROR_RESPONSES,
    summary="Detect, describe and identify faces in an image fetched from a URL",
)
async def detect_faces_from_url(request: Request, body: ImageUrlRequest) -> list[DetectedFace]:
    """Download an image and analyse every face in it."""
    settings = _get_settings(request)
    try:
        data = await fetch_image_bytes(
            str(body.url),
            max_file_size=settings.max_file_size,
            timeout=settings.url_fetch_timeout,
        )
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc)) from exc
    result = await _process_image(request, data)
    return [_to_detected_face(face, match, result.width, result.height) for face, match in result.faces]


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    matcher = _get_matcher(request)
    return HealthResponse(
        status="ok" if matcher is not None else "loading",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).get_loaded_models(),
        enrolled_labels=len(matcher.labels) if matcher is not None else 0,
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    active_models = set(settings.active_models)

    models: list[ModelInfo] = []
    for spec in MODEL_REGISTRY.values():
        if spec.name in active_models:
            model_status = "active"
        elif spec.insightface and not settings.accept_insightface_license:
            model_status = "requires_license"
        else:
            model_status = "available"

        models.append(
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status=model_status,
                license=spec.license,
            )
        )

    return ModelsResponse(models=models)


@router.get(
    "/labels",
    response_model=LabelsResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="List enrolled identities",
)
async def list_labels(request: Request) -> LabelsResponse:
    """Return the labels the matcher knows and how many samples each was built from."""
    _, matcher = _get_ready_pipeline(request)
    return LabelsResponse(
        labels=[
            EnrolledLabel(label=entry.label, samples=len(entry.descriptors)) for entry in matcher.labeled_descriptors
        ],
        distance_threshold=matcher.distance_threshold,
    )
