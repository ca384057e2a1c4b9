"""Disease categories, index-aligned with the model's output scores."""

from __future__ import annotations

from typing import Final

CLASS_NAMES: Final[tuple[str, ...]] = (
    "Pepper bell - Bacterial spot",
    "Pepper bell - healthy",
    "Potato - Early blight",
    "Potato - Late blight",
    "Potato - healthy",
    "Tomato - Bacterial spot",
    "Tomato - Early blight",
    "Tomato - Late blight",
    "Tomato - Leaf Mold",
    "Tomato - Septoria leaf spot",
    "Tomato - Spider mites - Two spotted spider mite",
    "Tomato - Target Spot",
    "Tomato - Tomato Yellow Leaf - Curl Virus",
    "Tomato - Tomato mosaic virus",
    "Tomato - healthy",
)

UNKNOWN_LABEL: Final[str] = "Unknown Class"
