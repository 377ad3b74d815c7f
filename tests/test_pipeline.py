"""Tests for the face analysis pipeline."""

from __future__ import annotations

from typing import TYPE_CHECKING
from unittest.mock import MagicMock

import numpy as np
from conftest import (
    FakeAgeGender,
    FakeDetector,
    FakeExpression,
    FakeLandmarks,
    FakeRecognizer,
    make_detection,
)

from faceprofile.config import Settings
from faceprofile.ml.face_attributes import AgeGenderEstimator, ExpressionClassifier, LandmarkEstimator
from faceprofile.ml.pipeline import AnalyzedFace, FaceAnalyzer

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from faceprofile.ml.face_attributes import AgeGender, LandmarkResult


def _image(color: tuple[int, int, int] = (200, 120, 40)) -> NDArray[np.uint8]:
    return np.full((160, 120, 3), color, dtype=np.uint8)


class TestAnalyzedFace:
    def test_box_is_xywh(self) -> None:
        face = AnalyzedFace(
            bbox=np.array([12.0, 40.0, 108.0, 150.0], dtype=np.float32),
            score=0.9,
            keypoints=np.zeros((5, 2), dtype=np.float32),
            descriptor=np.zeros(3, dtype=np.float32),
        )
        assert face.box == (12.0, 40.0, 96.0, 110.0)

    def test_dominant_expression(self) -> None:
        face = AnalyzedFace(
            bbox=np.zeros(4, dtype=np.float32),
            score=0.9,
            keypoints=np.zeros((5, 2), dtype=np.float32),
            descriptor=np.zeros(3, dtype=np.float32),
            expressions={"neutral": 0.3, "sad": 0.6, "happy": 0.1},
        )
        assert face.dominant_expression == ("sad", 0.6)

    def test_no_expressions(self) -> None:
        face = AnalyzedFace(
            bbox=np.zeros(4, dtype=np.float32),
            score=0.9,
            keypoints=np.zeros((5, 2), dtype=np.float32),
            descriptor=np.zeros(3, dtype=np.float32),
        )
        assert face.dominant_expression is None


class TestFaceAnalyzer:
    def test_full_analysis(self, fake_analyzer: FaceAnalyzer) -> None:
        (face,) = fake_analyzer.analyze(_image())

        assert face.score == 0.874
        assert face.pose == (1.0, 2.0, 3.0)
        assert face.landmarks is not None and face.landmarks.shape == (68, 2)
        assert face.age == 31.42
        assert face.gender == "male"
        assert face.gender_probability == 0.954
        assert face.dominant_expression == ("happy", 0.8)
        np.testing.assert_allclose(face.descriptor, np.array([200, 120, 40]) / 255.0 + 0.012, atol=1e-5)

    def test_one_result_per_detection(self) -> None:
        analyzer = FaceAnalyzer(
            FakeDetector([make_detection(0, 0, 50, 50, 0.9), make_detection(60, 60, 110, 110, 0.7)]),
            FakeRecognizer(),
        )

        faces = analyzer.analyze(_image())

        assert [face.score for face in faces] == [0.9, 0.7]
        assert not np.allclose(faces[0].descriptor, faces[1].descriptor)

    def test_optional_stages_left_empty(self) -> None:
        analyzer = FaceAnalyzer(FakeDetector([make_detection(0, 0, 50, 50)]), FakeRecognizer())

        (face,) = analyzer.analyze(_image())

        assert face.landmarks is None
        assert face.pose is None
        assert face.age is None
        assert face.gender is None
        assert face.expressions == {}

    def test_no_faces(self, fake_analyzer: FaceAnalyzer) -> None:
        assert fake_analyzer.analyze(_image((0, 0, 0))) == []

    def test_stage_order(self) -> None:
        calls: list[str] = []

        class Landmarks(FakeLandmarks):
            def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> LandmarkResult:
                calls.append("landmarks")
                return super().estimate(image, bbox)

        class Expression(FakeExpression):
            def classify(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> dict[str, float]:
                calls.append("expression")
                return super().classify(image, bbox)

        class Recognizer(FakeRecognizer):
            def get_embedding(self, image: NDArray[np.uint8], keypoints: NDArray[np.float32]) -> NDArray[np.float32]:
                calls.append("descriptor")
                return super().get_embedding(image, keypoints)

        class AgeGenderStage(FakeAgeGender):
            def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> AgeGender:
                calls.append("age_gender")
                return super().estimate(image, bbox)

        analyzer = FaceAnalyzer(
            FakeDetector([make_detection(0, 0, 50, 50)]),
            Recognizer(),
            landmarks=Landmarks(),
            age_gender=AgeGenderStage(),
            expression=Expression(),
        )

        analyzer.analyze(_image())

        assert calls == ["landmarks", "expression", "descriptor", "age_gender"]

    def test_model_failure_reports_no_faces(self) -> None:
        recognizer = MagicMock()
        recognizer.get_embedding.side_effect = RuntimeError("onnx exploded")
        analyzer = FaceAnalyzer(FakeDetector([make_detection(0, 0, 50, 50)]), recognizer)

        assert analyzer.analyze(_image()) == []

    def test_detector_failure_reports_no_faces(self) -> None:
        detector = MagicMock()
        detector.detect.side_effect = RuntimeError("bad input")
        analyzer = FaceAnalyzer(detector, FakeRecognizer())

        assert analyzer.analyze(_image()) == []


class TestFromSettings:
    def test_all_stages_enabled_by_default(self) -> None:
        analyzer = FaceAnalyzer.from_settings(Settings(), MagicMock())

        assert analyzer.detector.model_name == "scrfd_10g_kps"
        assert analyzer.recognizer.model_name == "auraface_v1"
        assert isinstance(analyzer.landmarks, LandmarkEstimator)
        assert isinstance(analyzer.age_gender, AgeGenderEstimator)
        assert isinstance(analyzer.expression, ExpressionClassifier)

    def test_empty_model_name_disables_stage(self) -> None:
        settings = Settings(face_landmark_model="", face_attribute_model="", face_expression_model="")

        analyzer = FaceAnalyzer.from_settings(settings, MagicMock())

        assert analyzer.landmarks is None
        assert analyzer.age_gender is None
        assert analyzer.expression is None

    def test_models_load_lazily(self) -> None:
        manager = MagicMock()
        FaceAnalyzer.from_settings(Settings(), manager)
        manager.get_session.assert_not_called()
