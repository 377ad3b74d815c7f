"""Face detection.

The detector is SCRFD, run through insightface's ``SCRFD`` wrapper (anchor
decoding and NMS live there) on top of a session owned by the model manager.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from insightface.model_zoo.scrfd import SCRFD

from faceprofile.ml.model_manager import SessionBinding
from faceprofile.ml.preprocessing import to_bgr

if TYPE_CHECKING:
    from pathlib import Path

    from numpy.typing import NDArray
    from onnxruntime import InferenceSession

    from faceprofile.config import Settings
    from faceprofile.ml.model_manager import ModelManager

NMS_THRESHOLD: float = 0.4


@dataclass(frozen=True)
class RawDetection:
    """Raw face detection result.

    Coordinates are in pixel space of the decoded input image.
    """

    bbox: NDArray[np.float32]  # x1, y1, x2, y2
    score: float
    keypoints: NDArray[np.float32]  # 5x2: eyes, nose, mouth corners


class FaceDetector(Protocol):
    """Protocol for face detection models."""

    @property
    def model_name(self) -> str:
        """Return the model identifier string."""
        ...

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        """Detect faces in an image.

        Args:
            image: HxWx3 RGB uint8 array.

        Returns:
            Detections sorted by descending score.
        """
        ...


class ScrfdFaceDetector:
    """SCRFD detector with a minimum score and a cap on the number of faces."""

    def __init__(self, manager: ModelManager, settings: Settings) -> None:
        self._min_confidence = settings.min_confidence
        self._max_results = settings.max_results
        self._input_size = (settings.detection_size, settings.detection_size)
        self._binding = SessionBinding(manager, settings.face_detection_model, self._build)

    @property
    def model_name(self) -> str:
        return self._binding.model_name

    def _build(self, path: Path, session: InferenceSession) -> SCRFD:
        scrfd = SCRFD(model_file=str(path), session=session)
        # ctx_id >= 0 keeps the providers the manager configured
        scrfd.prepare(0, det_thresh=self._min_confidence, nms_thresh=NMS_THRESHOLD)
        return scrfd

    def detect(self, image: NDArray[np.uint8]) -> list[RawDetection]:
        scrfd = self._binding.get()
        boxes, kpss = scrfd.detect(to_bgr(image), input_size=self._input_size)
        if boxes is None or len(boxes) == 0:
            return []

        order = np.argsort(-boxes[:, 4])[: self._max_results]
        detections: list[RawDetection] = []
        for idx in order:
            score = float(boxes[idx, 4])
            if score < self._min_confidence:
                continue
            keypoints = kpss[idx] if kpss is not None else np.zeros((5, 2), dtype=np.float32)
            detections.append(
                RawDetection(
                    bbox=boxes[idx, :4].astype(np.float32),
                    score=score,
                    keypoints=np.asarray(keypoints, dtype=np.float32),
                )
            )
        return detections
