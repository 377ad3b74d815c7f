"""Shared test doubles: in-memory images and fake face models."""

from __future__ import annotations

import io
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from faceprofile.ml.face_attributes import AgeGender, LandmarkResult
from faceprofile.ml.face_detector import RawDetection
from faceprofile.ml.face_matcher import FaceMatcher, LabeledDescriptors
from faceprofile.ml.pipeline import FaceAnalyzer

if TYPE_CHECKING:
    from numpy.typing import NDArray


def make_image_bytes(
    size: tuple[int, int] = (64, 48),
    color: tuple[int, ...] = (200, 120, 40),
    mode: str = "RGB",
    fmt: str = "PNG",
) -> bytes:
    buffer = io.BytesIO()
    Image.new(mode, size, color).save(buffer, format=fmt)
    return buffer.getvalue()


class FakeDetector:
    """Returns a fixed list of detections; nothing for an all-black image."""

    model_name = "fake_detector"

    def __init__(self, detections: list[RawDetection]) -> None:
        self.detections = detections
        self.calls = 0

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        self.calls += 1
        if not image.any():
            return []
        return list(self.detections)


class FakeRecognizer:
    """Descriptor = mean colour of the image scaled to [0, 1], offset by the face's first keypoint."""

    model_name = "fake_recognizer"

    def get_embedding(self, image: NDArray[np.uint8], keypoints: NDArray[np.float32]) -> NDArray[np.float32]:
        colour = image.reshape(-1, 3).mean(axis=0) / 255.0
        return (colour + keypoints[0, 0] / 1000.0).astype(np.float32)


class FakeLandmarks:
    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> LandmarkResult:
        return LandmarkResult(points=np.zeros((68, 2), dtype=np.float32), pose=(1.0, 2.0, 3.0))


class FakeAgeGender:
    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> AgeGender:
        return AgeGender(age=31.42, gender="male", gender_probability=0.954)


class FakeExpression:
    def classify(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> dict[str, float]:
        return {"neutral": 0.15, "happy": 0.8, "sad": 0.05}


def make_detection(x1: float, y1: float, x2: float, y2: float, score: float = 0.874) -> RawDetection:
    keypoints = np.tile(np.array([[x1, y1]], dtype=np.float32), (5, 1))
    return RawDetection(bbox=np.array([x1, y1, x2, y2], dtype=np.float32), score=score, keypoints=keypoints)


@pytest.fixture()
def fake_analyzer() -> FaceAnalyzer:
    """Analyzer reporting one face with every attribute filled in."""
    return FaceAnalyzer(
        FakeDetector([make_detection(12.0, 40.0, 108.0, 150.0)]),
        FakeRecognizer(),
        landmarks=FakeLandmarks(),
        age_gender=FakeAgeGender(),
        expression=FakeExpression(),
    )


@pytest.fixture()
def matcher() -> FaceMatcher:
    """Matcher that knows the colour of ``make_image_bytes()``'s default image."""
    orange = np.array([200, 120, 40], dtype=np.float32) / 255.0 + 0.012
    blue = np.array([10, 20, 230], dtype=np.float32) / 255.0
    return FaceMatcher(
        [
            LabeledDescriptors("alice", [orange]),
            LabeledDescriptors("bob", [blue]),
        ],
        distance_threshold=0.6,
    )
