"""Face recognition (descriptor) model.

Implementations: AuraFace v1 (default), ArcFace w600k_r50 (opt-in). Both are
ArcFace-style networks driven by insightface's ``ArcFaceONNX`` wrapper, which
aligns the face to a 112x112 crop from the five detector keypoints.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

import numpy as np
from insightface.app.common import Face
from insightface.model_zoo.arcface_onnx import ArcFaceONNX

from faceprofile.ml.model_manager import SessionBinding
from faceprofile.ml.preprocessing import to_bgr

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from faceprofile.ml.model_manager import ModelManager


class FaceRecognizer(Protocol):
    """Protocol for face recognition (descriptor) models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def get_embedding(self, image: NDArray[np.uint8], keypoints: NDArray[np.float32]) -> NDArray[np.float32]:
        """Compute the descriptor of one face.

        Args:
            image: HxWx3 RGB uint8 array (whole image).
            keypoints: 5x2 detector keypoints of the face.

        Returns:
            L2-normalized descriptor vector.
        """
        ...


def l2_normalize(vector: NDArray[np.float32]) -> NDArray[np.float32]:
    norm = float(np.linalg.norm(vector))
    if norm == 0.0:
        return vector.astype(np.float32)
    return (vector / norm).astype(np.float32)


class ArcFaceRecognizer:
    """Descriptor extraction through insightface's ArcFace wrapper."""

    def __init__(self, manager: ModelManager, model_name: str) -> None:
        self._binding = SessionBinding(manager, model_name, self._build)

    @property
    def model_name(self) -> str:
        return self._binding.model_name

    @staticmethod
    def _build(path: Path, session: InferenceSession) -> ArcFaceONNX:
        return ArcFaceONNX(model_file=str(path), session=session)

    def get_embedding(self, image: NDArray[np.uint8], keypoints: NDArray[np.float32]) -> NDArray[np.float32]:
        arcface = self._binding.get()
        face = Face(kps=keypoints)
        embedding = arcface.get(to_bgr(image), face)
        return l2_normalize(np.asarray(embedding, dtype=np.float32).ravel())
