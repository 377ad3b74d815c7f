"""Human-readable one-line summaries of analysed faces."""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from faceprofile.ml.pipeline import AnalyzedFace


def round_half_up(value: float) -> int:
    return math.floor(value + 0.5)


def format_age(age: float) -> str:
    """One decimal, without a trailing ``.0``."""
    rounded = round_half_up(age * 10) / 10
    return f"{rounded:g}"


def describe_face(face: AnalyzedFace) -> str:
    """Summarise a face, e.g.

    ``Detection confidence: 87% Gender: 95% male Age: 31.4 Expression: 80% happy Box: 12,40,96,110``

    Segments for attributes that were not estimated are left out.
    """
    parts = [f"Detection confidence: {round_half_up(100 * face.score)}%"]
    if face.gender is not None and face.gender_probability is not None:
        parts.append(f"Gender: {round_half_up(100 * face.gender_probability)}% {face.gender}")
    if face.age is not None:
        parts.append(f"Age: {format_age(face.age)}")
    expression = face.dominant_expression
    if expression is not None:
        name, probability = expression
        parts.append(f"Expression: {round_half_up(100 * probability)}% {name}")
    parts.append("Box: " + ",".join(str(round_half_up(v)) for v in face.box))
    return " ".join(parts)
