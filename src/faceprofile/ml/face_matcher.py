"""Best-match lookup of a face descriptor against enrolled identities."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

UNKNOWN_LABEL = "unknown"
DEFAULT_DISTANCE_THRESHOLD: float = 0.6


@dataclass(frozen=True)
class FaceMatch:
    label: str
    distance: float

    def __str__(self) -> str:
        if math.isinf(self.distance):
            return self.label
        return f"{self.label} ({math.floor(self.distance * 100) / 100:g})"


@dataclass
class LabeledDescriptors:
    """All enrolled descriptors of one identity."""

    label: str
    descriptors: list[NDArray[np.float32]] = field(default_factory=list)

    def __post_init__(self) -> None:
        if not isinstance(self.label, str) or not self.label:
            raise ValueError("LabeledDescriptors - label must be a non-empty string")
        if not self.descriptors:
            raise ValueError(f"LabeledDescriptors - no descriptors for label {self.label!r}")
        sizes = {np.asarray(d).size for d in self.descriptors}
        if len(sizes) != 1:
            raise ValueError(f"LabeledDescriptors - descriptors of {self.label!r} differ in length")


class FaceMatcher:
    """Nearest label by mean Euclidean distance.

    A label's distance to a query is the mean of the query's distances to each
    of that label's descriptors. The closest label wins unless its distance
    reaches ``distance_threshold``, in which case the match is ``unknown``.
    """

    def __init__(
        self,
        labeled_descriptors: Sequence[LabeledDescriptors],
        distance_threshold: float = DEFAULT_DISTANCE_THRESHOLD,
    ) -> None:
        self.distance_threshold = distance_threshold
        self.labeled_descriptors = list(labeled_descriptors)
        self._matrices = [
            np.stack([np.asarray(d, dtype=np.float32).ravel() for d in entry.descriptors])
            for entry in self.labeled_descriptors
        ]
        dims = {matrix.shape[1] for matrix in self._matrices}
        if len(dims) > 1:
            raise ValueError(f"Enrolled descriptors have mixed lengths: {sorted(dims)}")
        self._dim = dims.pop() if dims else None

    @property
    def labels(self) -> list[str]:
        return [entry.label for entry in self.labeled_descriptors]

    def compute_mean_distance(self, query: NDArray[np.float32], label_index: int) -> float:
        distances = np.linalg.norm(self._matrices[label_index] - query, axis=1)
        return float(distances.mean())

    def match_descriptor(self, descriptor: NDArray[np.float32]) -> FaceMatch:
        """Closest label regardless of the threshold."""
        query = np.asarray(descriptor, dtype=np.float32).ravel()
        if self._dim is None:
            return FaceMatch(UNKNOWN_LABEL, math.inf)
        if query.size != self._dim:
            raise ValueError(f"Descriptor length {query.size} does not match enrolled length {self._dim}")

        best = FaceMatch(UNKNOWN_LABEL, math.inf)
        for index, entry in enumerate(self.labeled_descriptors):
            distance = self.compute_mean_distance(query, index)
            if distance < best.distance:
                best = FaceMatch(entry.label, distance)
        return best

    def find_best_match(self, descriptor: NDArray[np.float32]) -> FaceMatch:
        best = self.match_descriptor(descriptor)
        if best.distance < self.distance_threshold:
            return best
        return FaceMatch(UNKNOWN_LABEL, best.distance)
