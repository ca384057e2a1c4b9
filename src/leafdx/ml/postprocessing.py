"""Turn raw model scores into labelled predictions."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np

from leafdx.ml.labels import UNKNOWN_LABEL

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction.

    ``confidence_percent`` is the winning raw score scaled by 100. It is only
    a true probability when the model's scores already sum to 1.
    """

    label: str
    confidence_percent: float
    class_index: int | None = None

    @classmethod
    def unknown(cls) -> ClassificationResult:
        return cls(label=UNKNOWN_LABEL, confidence_percent=0.0, class_index=None)

    @property
    def is_unknown(self) -> bool:
        return self.class_index is None

    def format(self) -> str:
        """Render the result the way the result screen displays it."""
        return f"Prediction Result: {self.label}\nConfidence: {self.confidence_percent:.2f}"

    def as_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "confidence_percent": self.confidence_percent,
            "class_index": self.class_index,
        }


def softmax(scores: NDArray[np.float32]) -> NDArray[np.float32]:
    """Numerically stable softmax over the finite entries of a 1-D score vector.

    Non-finite entries stay NaN so ranking skips them.
    """
    values = np.asarray(scores, dtype=np.float32)
    finite = np.isfinite(values)
    if not finite.any():
        return np.full(values.shape, np.nan, dtype=np.float32)

    exp = np.exp(np.where(finite, values - np.max(values[finite]), -np.inf))
    probs = exp / np.sum(exp)
    return np.where(finite, probs, np.nan).astype(np.float32)


def top_prediction(scores: NDArray[np.float32], class_names: Sequence[str]) -> ClassificationResult:
    """Pick the highest-scoring class.

    Ties go to the lowest index. Index 0 is an ordinary class.

    Raises:
        ValueError: If the score vector and catalog lengths differ.
    """
    ranked = rank_predictions(scores, class_names, top_k=1)
    return ranked[0]


def rank_predictions(
    scores: NDArray[np.float32],
    class_names: Sequence[str],
    top_k: int | None = None,
) -> list[ClassificationResult]:
    """Return predictions sorted by descending score, ties by ascending index.

    An empty or entirely non-finite score vector yields a single unknown
    result.
    """
    values = np.asarray(scores, dtype=np.float32).reshape(-1)
    if values.size != len(class_names):
        raise ValueError(f"Got {values.size} scores for {len(class_names)} class names")

    finite = np.isfinite(values)
    if not finite.any():
        logger.warning("Model produced no finite scores; reporting unknown class")
        return [ClassificationResult.unknown()]
    if not finite.all():
        logger.warning("Ignoring %d non-finite scores", int((~finite).sum()))
        values = np.where(finite, values, -np.inf)

    # Stable sort on the negated scores keeps lower indices first on ties.
    order = np.argsort(-values, kind="stable")
    if top_k is not None:
        order = order[: max(top_k, 1)]

    return [
        ClassificationResult(
            label=class_names[int(index)],
            confidence_percent=float(values[index]) * 100.0,
            class_index=int(index),
        )
        for index in order
        if np.isfinite(values[index])
    ]
