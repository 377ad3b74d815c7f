"""Per-face attribute models: 68-point landmarks with head pose, age/gender, expression.

Each estimator works on the whole RGB image plus the detector bbox of one
face and crops what its network needs. Landmarks and age/gender use the
insightface buffalo_l models through insightface's wrappers; expression uses
the FER+ network directly.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import cv2
import numpy as np
from insightface.app.common import Face
from insightface.model_zoo.attribute import Attribute
from insightface.model_zoo.landmark import Landmark
from insightface.utils import face_align

from faceprofile.ml.model_manager import SessionBinding
from faceprofile.ml.preprocessing import to_bgr

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from faceprofile.ml.model_manager import ModelManager

# FER+ output order, renamed to the adjectives used in descriptions
EXPRESSION_LABELS: tuple[str, ...] = (
    "neutral",
    "happy",
    "surprised",
    "sad",
    "angry",
    "disgusted",
    "fearful",
    "contempt",
)

FER_INPUT_SIZE: int = 64
ATTRIBUTE_CROP_MARGIN: float = 1.5


@dataclass(frozen=True)
class LandmarkResult:
    points: NDArray[np.float32]  # 68x2, pixel space
    pose: tuple[float, float, float] | None  # pitch, yaw, roll in degrees


@dataclass(frozen=True)
class AgeGender:
    age: float
    gender: str
    gender_probability: float


class LandmarkModel(Protocol):
    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> LandmarkResult: ...


class AgeGenderModel(Protocol):
    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> AgeGender: ...


class ExpressionModel(Protocol):
    def classify(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> dict[str, float]: ...


def softmax(logits: NDArray[np.float32]) -> NDArray[np.float32]:
    shifted = np.exp(logits - np.max(logits))
    return (shifted / shifted.sum()).astype(np.float32)


def crop_face(
    image_bgr: NDArray[np.uint8], bbox: NDArray[np.float32], output_size: int, margin: float
) -> NDArray[np.uint8]:
    """Square crop centred on the bbox, scaled to ``output_size`` with ``margin`` around the face."""
    x1, y1, x2, y2 = (float(v) for v in bbox[:4])
    width, height = x2 - x1, y2 - y1
    center = ((x1 + x2) / 2, (y1 + y2) / 2)
    scale = output_size / (max(width, height, 1.0) * margin)
    cropped, _ = face_align.transform(image_bgr, center, output_size, scale, 0)
    return cropped


class LandmarkEstimator:
    """68-point 3D landmark model; the pose comes from insightface's mean-shape fit."""

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._binding = SessionBinding(manager, model_name, self._build)

    @property
    def model_name(self) -> str:
        return self._binding.model_name

    @staticmethod
    def _build(path: Path, session: InferenceSession) -> Landmark:
        return Landmark(model_file=str(path), session=session)

    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> LandmarkResult:
        landmark = self._binding.get()
        face = Face(bbox=np.asarray(bbox, dtype=np.float32))
        pred = landmark.get(to_bgr(image), face)
        pose = face.get("pose")
        return LandmarkResult(
            points=np.asarray(pred, dtype=np.float32)[:, :2],
            pose=tuple(float(v) for v in pose) if pose is not None else None,  # type: ignore[arg-type]
        )


class AgeGenderEstimator:
    """insightface genderage network.

    The wrapper only reports the argmax, so the forward pass is run here to
    keep the probability of the winning gender.
    """

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._binding = SessionBinding(manager, model_name, self._build)

    @property
    def model_name(self) -> str:
        return self._binding.model_name

    @staticmethod
    def _build(path: Path, session: InferenceSession) -> Attribute:
        return Attribute(model_file=str(path), session=session)

    def estimate(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> AgeGender:
        attr = self._binding.get()
        size = attr.input_size[0]
        aimg = crop_face(to_bgr(image), bbox, size, ATTRIBUTE_CROP_MARGIN)
        blob = cv2.dnn.blobFromImage(
            aimg,
            1.0 / attr.input_std,
            attr.input_size,
            (attr.input_mean, attr.input_mean, attr.input_mean),
            swapRB=True,
        )
        pred = attr.session.run(attr.output_names, {attr.input_name: blob})[0][0]
        gender_probs = softmax(np.asarray(pred[:2], dtype=np.float32))
        is_male = int(np.argmax(gender_probs)) == 1
        return AgeGender(
            age=float(pred[2]) * 100.0,
            gender="male" if is_male else "female",
            gender_probability=float(gender_probs[1] if is_male else gender_probs[0]),
        )


class ExpressionClassifier:
    """FER+ emotion network: 64x64 greyscale crop in, eight logits out."""

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._manager = manager
        self._model_name = model_name

    @property
    def model_name(self) -> str:
        return self._model_name

    def classify(self, image: NDArray[np.uint8], bbox: NDArray[np.float32]) -> dict[str, float]:
        session = self._manager.get_session(self._model_name)
        crop = crop_face(to_bgr(image), bbox, FER_INPUT_SIZE, 1.0)
        grey = cv2.cvtColor(crop, cv2.COLOR_BGR2GRAY).astype(np.float32)
        blob = grey[np.newaxis, np.newaxis, :, :]
        input_name = session.get_inputs()[0].name
        logits = np.asarray(session.run(None, {input_name: blob})[0], dtype=np.float32).ravel()
        probs = softmax(logits[: len(EXPRESSION_LABELS)])
        return {label: float(p) for label, p in zip(EXPRESSION_LABELS, probs, strict=True)}
