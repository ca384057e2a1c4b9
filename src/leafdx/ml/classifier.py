"""Plant disease classifier service.

Owns the loaded model and the worker pool. Every public operation returns a
future; failures (``LoadError``, ``NotInitializedError``, bad input) arrive
through the future instead of being raised at the call site.

Lifecycle::

    UNINITIALIZED --initialize()--> INITIALIZING --load ok--> READY
          ^                              |
          +--------- load failed --------+
    any state --shutdown()--> SHUT_DOWN (terminal)

``initialize()`` while INITIALIZING returns the in-flight future and while
READY returns an already-completed future; a second load never happens.

Inference calls on the shared model handle are serialized by the handle's
own lock. ``shutdown()`` waits for accepted tasks to finish before the
handle is released.
"""

from __future__ import annotations

import logging
import threading
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from leafdx.config import get_settings
from leafdx.exceptions import LoadError, NotInitializedError
from leafdx.ml import engine
from leafdx.ml.bridge import TaskBridge
from leafdx.ml.labels import CLASS_NAMES
from leafdx.ml.model_source import ModelSource
from leafdx.ml.postprocessing import ClassificationResult, rank_predictions, softmax, top_prediction
from leafdx.ml.preprocessing import encode

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence
    from concurrent.futures import Future
    from types import TracebackType

    import numpy as np
    from numpy.typing import NDArray

    from leafdx.config import Settings
    from leafdx.ml.engine import EngineHandle, ModelInfo

logger = logging.getLogger(__name__)


class ServiceState(StrEnum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    READY = "ready"
    SHUT_DOWN = "shut_down"


class ClassifierService:
    """Classifies RGB leaf images into disease categories off the caller's thread."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        model_loader: Callable[[], bytes] | None = None,
        load_model: Callable[[bytes, Settings], EngineHandle] = engine.load,
        class_names: Sequence[str] = CLASS_NAMES,
    ) -> None:
        self._settings = settings or get_settings()
        self._model_loader = model_loader or ModelSource(self._settings).read_bytes
        self._load_model = load_model
        self._class_names = tuple(class_names)

        self._bridge = TaskBridge(self._settings.max_workers)
        self._state_lock = threading.Lock()
        self._state = ServiceState.UNINITIALIZED
        self._handle: EngineHandle | None = None
        self._init_future: Future[None] | None = None

    # -- Public API ---------------------------------------------------------

    @property
    def state(self) -> ServiceState:
        with self._state_lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is ServiceState.READY

    @property
    def class_names(self) -> tuple[str, ...]:
        return self._class_names

    @property
    def model_info(self) -> ModelInfo | None:
        """Declared shapes of the loaded model, or None when not ready."""
        with self._state_lock:
            return self._handle.info if self._handle is not None else None

    def initialize(self) -> Future[None]:
        """Load the model on a worker thread."""
        with self._state_lock:
            if self._state is ServiceState.SHUT_DOWN:
                return TaskBridge.failed(NotInitializedError("Classifier has been shut down"))
            if self._state is ServiceState.READY:
                return TaskBridge.completed(None)
            if self._state is ServiceState.INITIALIZING and self._init_future is not None:
                return self._init_future

            self._state = ServiceState.INITIALIZING
            self._init_future = self._bridge.submit(self._initialize)
            return self._init_future

    def classify(self, image: NDArray[np.uint8]) -> Future[ClassificationResult]:
        """Classify an HxWx3 RGB uint8 image.

        The future fails with ``NotInitializedError`` unless the service is
        READY.
        """
        return self._submit(self._classify, image)

    def classify_ranked(self, image: NDArray[np.uint8], top_k: int = 3) -> Future[list[ClassificationResult]]:
        """Classify an image and return the ``top_k`` best classes, best first."""
        return self._submit(self._classify_ranked, image, top_k)

    def shutdown(self) -> None:
        """Stop accepting work, drain accepted tasks, and release the model.

        Safe to call more than once. Must not be called from a future's done
        callback, since those run on a worker thread that shutdown waits for.
        """
        with self._state_lock:
            if self._state is ServiceState.SHUT_DOWN:
                return
            previous = self._state
            self._state = ServiceState.SHUT_DOWN

        logger.info("Shutting down classifier (state was %s)", previous)
        self._bridge.shutdown(wait=True)

        with self._state_lock:
            handle, self._handle = self._handle, None
        if handle is not None:
            handle.release()
        logger.info("Classifier shutdown complete")

    def __enter__(self) -> ClassifierService:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.shutdown()

    # -- Worker tasks -------------------------------------------------------

    def _initialize(self) -> None:
        try:
            handle = self._open_handle()
        except Exception:
            with self._state_lock:
                if self._state is ServiceState.INITIALIZING:
                    self._state = ServiceState.UNINITIALIZED
            logger.exception("Classifier initialization failed")
            raise

        with self._state_lock:
            cancelled = self._state is ServiceState.SHUT_DOWN
            if not cancelled:
                self._handle = handle
                self._state = ServiceState.READY

        if cancelled:
            handle.release()
            raise NotInitializedError("Classifier was shut down during initialization")
        logger.info("Classifier ready (%d classes)", len(self._class_names))

    def _open_handle(self) -> EngineHandle:
        model_bytes = self._model_loader()
        handle = self._load_model(model_bytes, self._settings)
        if handle.num_classes != len(self._class_names):
            handle.release()
            raise LoadError(f"Model has {handle.num_classes} outputs but {len(self._class_names)} class names")
        return handle

    def _classify(self, handle: EngineHandle, image: NDArray[np.uint8]) -> ClassificationResult:
        result = top_prediction(self._scores(handle, image), self._class_names)
        logger.debug("Classified image as %r (%.2f%%)", result.label, result.confidence_percent)
        return result

    def _classify_ranked(
        self, handle: EngineHandle, image: NDArray[np.uint8], top_k: int
    ) -> list[ClassificationResult]:
        return rank_predictions(self._scores(handle, image), self._class_names, top_k=top_k)

    def _scores(self, handle: EngineHandle, image: NDArray[np.uint8]) -> NDArray[np.float32]:
        tensor = encode(image, handle.input_width, handle.input_height)
        scores = handle.infer(tensor)
        if self._settings.normalize_scores:
            scores = softmax(scores)
        return scores

    # -- Internal -----------------------------------------------------------

    def _submit(self, func: Callable[..., Any], *args: object) -> Future[Any]:
        with self._state_lock:
            if self._state is not ServiceState.READY or self._handle is None:
                return TaskBridge.failed(NotInitializedError(f"Classifier is not ready (state: {self._state})"))
            # Accepting under the state lock means shutdown drains this task
            # before the handle is released.
            return self._bridge.submit(func, self._handle, *args)
