"""Tests for descriptor matching against enrolled labels."""

from __future__ import annotations

import math

import numpy as np
import pytest

from faceprofile.ml.face_matcher import UNKNOWN_LABEL, FaceMatch, FaceMatcher, LabeledDescriptors


def _vec(*values: float) -> np.ndarray:
    return np.array(values, dtype=np.float32)


@pytest.fixture()
def two_people() -> FaceMatcher:
    return FaceMatcher(
        [
            LabeledDescriptors("alice", [_vec(0.0, 0.0), _vec(2.0, 0.0)]),
            LabeledDescriptors("bob", [_vec(10.0, 10.0)]),
        ],
        distance_threshold=1.5,
    )


class TestFaceMatch:
    def test_str_truncates_to_two_decimals(self) -> None:
        assert str(FaceMatch("alice", 0.4299)) == "alice (0.42)"

    def test_str_drops_trailing_zeros(self) -> None:
        assert str(FaceMatch("x", 0.5)) == "x (0.5)"
        assert str(FaceMatch("x", 0.0)) == "x (0)"

    def test_str_without_distance(self) -> None:
        assert str(FaceMatch(UNKNOWN_LABEL, math.inf)) == "unknown"


class TestLabeledDescriptors:
    def test_empty_label_rejected(self) -> None:
        with pytest.raises(ValueError, match="label"):
            LabeledDescriptors("", [_vec(1.0)])

    def test_no_descriptors_rejected(self) -> None:
        with pytest.raises(ValueError, match="no descriptors"):
            LabeledDescriptors("alice", [])

    def test_mixed_lengths_rejected(self) -> None:
        with pytest.raises(ValueError, match="differ in length"):
            LabeledDescriptors("alice", [_vec(1.0, 2.0), _vec(1.0)])


class TestFaceMatcher:
    def test_labels(self, two_people: FaceMatcher) -> None:
        assert two_people.labels == ["alice", "bob"]

    def test_distance_is_mean_over_samples(self, two_people: FaceMatcher) -> None:
        # 1.0 from each of alice's two samples
        assert two_people.compute_mean_distance(_vec(1.0, 0.0), 0) == pytest.approx(1.0)

    def test_best_match(self, two_people: FaceMatcher) -> None:
        match = two_people.find_best_match(_vec(1.0, 0.0))
        assert match.label == "alice"
        assert match.distance == pytest.approx(1.0)

    def test_picks_closest_label(self, two_people: FaceMatcher) -> None:
        assert two_people.find_best_match(_vec(9.5, 10.0)).label == "bob"

    def test_threshold_gives_unknown_with_distance(self, two_people: FaceMatcher) -> None:
        match = two_people.find_best_match(_vec(5.0, 5.0))
        assert match.label == UNKNOWN_LABEL
        assert not math.isinf(match.distance)

    def test_distance_equal_to_threshold_is_unknown(self) -> None:
        matcher = FaceMatcher([LabeledDescriptors("alice", [_vec(0.0, 0.0)])], distance_threshold=1.0)
        assert matcher.find_best_match(_vec(1.0, 0.0)).label == UNKNOWN_LABEL

    def test_match_descriptor_ignores_threshold(self, two_people: FaceMatcher) -> None:
        assert two_people.match_descriptor(_vec(5.0, 5.0)).label == "alice"

    def test_empty_matcher_reports_unknown(self) -> None:
        match = FaceMatcher([]).find_best_match(_vec(1.0, 2.0))
        assert match == FaceMatch(UNKNOWN_LABEL, math.inf)
        assert str(match) == "unknown"

    def test_query_length_mismatch(self, two_people: FaceMatcher) -> None:
        with pytest.raises(ValueError, match="does not match enrolled length"):
            two_people.find_best_match(_vec(1.0, 2.0, 3.0))

    def test_mixed_label_dimensions_rejected(self) -> None:
        with pytest.raises(ValueError, match="mixed lengths"):
            FaceMatcher(
                [
                    LabeledDescriptors("alice", [_vec(0.0, 0.0)]),
                    LabeledDescriptors("bob", [_vec(0.0, 0.0, 0.0)]),
                ]
            )
