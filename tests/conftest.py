"""Shared test doubles for the classifier pipeline."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import numpy as np
import pytest

from leafdx.config import Settings
from leafdx.exceptions import NotInitializedError
from leafdx.ml.classifier import ClassifierService
from leafdx.ml.engine import ModelInfo
from leafdx.ml.labels import CLASS_NAMES

if TYPE_CHECKING:
    from collections.abc import Callable, Iterator, Sequence

    from numpy.typing import NDArray


class StubHandle:
    """In-memory model handle returning fixed scores."""

    def __init__(
        self,
        scores: Sequence[float],
        width: int = 4,
        height: int = 4,
        delay: float = 0.0,
    ) -> None:
        self._scores = np.asarray(scores, dtype=np.float32)
        self._info = ModelInfo(
            input_name="input",
            input_width=width,
            input_height=height,
            channels=3,
            num_classes=len(scores),
        )
        self._delay = delay
        self._lock = threading.Lock()
        self.inputs: list[NDArray[np.float32]] = []
        self.events: list[str] = []
        self.release_count = 0
        self.released = False

    @property
    def info(self) -> ModelInfo:
        return self._info

    @property
    def input_width(self) -> int:
        return self._info.input_width

    @property
    def input_height(self) -> int:
        return self._info.input_height

    @property
    def num_classes(self) -> int:
        return self._info.num_classes

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        if self.released:
            raise NotInitializedError("Model handle has been released")
        if self._delay:
            time.sleep(self._delay)
        with self._lock:
            self.inputs.append(tensor)
            self.events.append("infer")
        return self._scores.copy()

    def release(self) -> None:
        with self._lock:
            self.release_count += 1
            self.released = True
            self.events.append("release")


@pytest.fixture()
def make_service() -> Iterator[Callable[..., tuple[ClassifierService, StubHandle]]]:
    """Factory for classifier services backed by a StubHandle."""
    services: list[ClassifierService] = []

    def _make(
        scores: Sequence[float] | None = None,
        class_names: Sequence[str] = CLASS_NAMES,
        model_loader: Callable[[], bytes] | None = None,
        width: int = 4,
        height: int = 4,
        delay: float = 0.0,
        **settings_overrides: object,
    ) -> tuple[ClassifierService, StubHandle]:
        if scores is None:
            scores = [1.0 / len(class_names)] * len(class_names)
        stub = StubHandle(scores, width=width, height=height, delay=delay)
        settings = Settings(**settings_overrides)  # type: ignore[arg-type]
        service = ClassifierService(
            settings,
            model_loader=model_loader or (lambda: b"stub-model"),
            load_model=lambda _data, _settings: stub,
            class_names=class_names,
        )
        services.append(service)
        return service, stub

    yield _make

    for service in services:
        service.shutdown()
