"""Face analysis pipeline: detection followed by per-face model invocations."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from faceprofile.ml.face_attributes import AgeGenderEstimator, ExpressionClassifier, LandmarkEstimator
from faceprofile.ml.face_detector import ScrfdFaceDetector
from faceprofile.ml.face_recognizer import ArcFaceRecognizer

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from faceprofile.config import Settings
    from faceprofile.ml.face_attributes import AgeGenderModel, ExpressionModel, LandmarkModel
    from faceprofile.ml.face_detector import FaceDetector, RawDetection
    from faceprofile.ml.face_recognizer import FaceRecognizer
    from faceprofile.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)


@dataclass
class AnalyzedFace:
    """Everything the models report for one face. Pixel coordinates."""

    bbox: NDArray[np.float32]  # x1, y1, x2, y2
    score: float
    keypoints: NDArray[np.float32]
    descriptor: NDArray[np.float32]
    landmarks: NDArray[np.float32] | None = None
    pose: tuple[float, float, float] | None = None  # pitch, yaw, roll
    age: float | None = None
    gender: str | None = None
    gender_probability: float | None = None
    expressions: dict[str, float] = field(default_factory=dict)

    @property
    def box(self) -> tuple[float, float, float, float]:
        """Bounding box as (x, y, width, height)."""
        x1, y1, x2, y2 = (float(v) for v in self.bbox[:4])
        return x1, y1, x2 - x1, y2 - y1

    @property
    def dominant_expression(self) -> tuple[str, float] | None:
        if not self.expressions:
            return None
        return max(self.expressions.items(), key=lambda item: item[1])


class FaceAnalyzer:
    """Runs detection, then landmarks, expression, descriptor and age/gender for each face.

    Landmark, age/gender and expression stages are optional; a missing stage
    leaves the matching ``AnalyzedFace`` fields empty.
    """

    def __init__(
        self,
        detector: FaceDetector,
        recognizer: FaceRecognizer,
        *,
        landmarks: LandmarkModel | None = None,
        age_gender: AgeGenderModel | None = None,
        expression: ExpressionModel | None = None,
    ) -> None:
        self.detector = detector
        self.recognizer = recognizer
        self.landmarks = landmarks
        self.age_gender = age_gender
        self.expression = expression

    @classmethod
    def from_settings(cls, settings: Settings, manager: ModelManager) -> FaceAnalyzer:
        """Build an analyzer backed by the configured models."""
        return cls(
            ScrfdFaceDetector(manager, settings),
            ArcFaceRecognizer(manager, settings.face_recognition_model),
            landmarks=(
                LandmarkEstimator(manager, settings.face_landmark_model) if settings.face_landmark_model else None
            ),
            age_gender=(
                AgeGenderEstimator(manager, settings.face_attribute_model) if settings.face_attribute_model else None
            ),
            expression=(
                ExpressionClassifier(manager, settings.face_expression_model)
                if settings.face_expression_model
                else None
            ),
        )

    def analyze(self, image: NDArray[np.uint8]) -> list[AnalyzedFace]:
        """Analyze every face in an RGB image.

        A model failure is logged and reported as no faces, matching what a
        caller would see for an image without any.
        """
        try:
            return [self._analyze_face(image, detection) for detection in self.detector.detect(image)]
        except Exception as exc:  # noqa: BLE001
            logger.error("Caught error %s", exc)
            return []

    def _analyze_face(self, image: NDArray[np.uint8], detection: RawDetection) -> AnalyzedFace:
        landmarks = self.landmarks.estimate(image, detection.bbox) if self.landmarks is not None else None
        expressions = self.expression.classify(image, detection.bbox) if self.expression is not None else {}
        face = AnalyzedFace(
            bbox=detection.bbox,
            score=detection.score,
            keypoints=detection.keypoints,
            descriptor=self.recognizer.get_embedding(image, detection.keypoints),
            expressions=expressions,
        )
        if landmarks is not None:
            face.landmarks = landmarks.points
            face.pose = landmarks.pose
        if self.age_gender is not None:
            attrs = self.age_gender.estimate(image, detection.bbox)
            face.age = attrs.age
            face.gender = attrs.gender
            face.gender_probability = attrs.gender_probability
        return face
