"""Enrollment of labeled sample images.

The dataset directory holds one sub-directory per person; the sub-directory
name is the label and every image inside is a sample of that person::

    dataset/
        alice/
            1.jpg
            2.png
        bob/
            portrait.jpg
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from faceprofile.ml.face_matcher import FaceMatcher, LabeledDescriptors
from faceprofile.ml.preprocessing import load_image

if TYPE_CHECKING:
    from pathlib import Path

    import numpy as np
    from numpy.typing import NDArray

    from faceprofile.ml.pipeline import FaceAnalyzer

logger = logging.getLogger(__name__)


def _visible_entries(directory: Path) -> list[Path]:
    return sorted(entry for entry in directory.iterdir() if not entry.name.startswith("."))


def _sample_descriptor(path: Path, analyzer: FaceAnalyzer, max_image_pixels: int) -> NDArray[np.float32] | None:
    try:
        image = load_image(path, max_image_pixels)
    except (OSError, ValueError) as exc:
        logger.warning("Skipping %s: %s", path, exc)
        return None

    faces = analyzer.analyze(image)
    if not faces:
        logger.warning("Skipping %s: no face detected", path)
        return None
    return faces[0].descriptor


def enroll_dataset(dataset_dir: Path, analyzer: FaceAnalyzer, max_image_pixels: int) -> list[LabeledDescriptors]:
    """Collect one descriptor per sample image, grouped by label directory.

    Labels whose samples all fail are left out.
    """
    if not dataset_dir.is_dir():
        logger.warning("Dataset directory %s not found, no faces enrolled", dataset_dir)
        return []

    enrolled: list[LabeledDescriptors] = []
    for label_dir in _visible_entries(dataset_dir):
        if not label_dir.is_dir():
            continue

        descriptors = []
        for sample in _visible_entries(label_dir):
            if not sample.is_file():
                continue
            descriptor = _sample_descriptor(sample, analyzer, max_image_pixels)
            if descriptor is not None:
                descriptors.append(descriptor)

        if not descriptors:
            logger.warning("Label %r has no usable samples, skipped", label_dir.name)
            continue
        enrolled.append(LabeledDescriptors(label_dir.name, descriptors))
        logger.info("Enrolled %r with %d samples", label_dir.name, len(descriptors))

    return enrolled


def build_matcher(
    dataset_dir: Path,
    analyzer: FaceAnalyzer,
    *,
    max_image_pixels: int,
    distance_threshold: float,
) -> FaceMatcher:
    """Enroll the dataset and wrap it in a matcher."""
    labeled = enroll_dataset(dataset_dir, analyzer, max_image_pixels)
    return FaceMatcher(labeled, distance_threshold)
