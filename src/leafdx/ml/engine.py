"""Inference engine handle: load, run, and release an ONNX classification model.

A ``ModelHandle`` exclusively owns one ONNX Runtime ``InferenceSession``.
Inference calls and release share a lock, so calls on one handle run one at
a time and a release never tears down a session in the middle of a call.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from leafdx.exceptions import LoadError, NotInitializedError
from leafdx.ml.preprocessing import PIXEL_SIZE

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from leafdx.config import Settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelInfo:
    """Shape metadata declared by a loaded model."""

    input_name: str
    input_width: int
    input_height: int
    channels: int
    num_classes: int

    @property
    def input_size(self) -> int:
        """Length of the flat input buffer the model expects."""
        return self.input_width * self.input_height * self.channels


# ---------------------------------------------------------------------------
# Protocol (kept for test mocking)
# ---------------------------------------------------------------------------


class EngineHandle(Protocol):
    """Protocol for a loaded model as seen by the classifier service."""

    @property
    def info(self) -> ModelInfo:
        """Return the model's declared shapes."""
        ...

    @property
    def input_width(self) -> int: ...

    @property
    def input_height(self) -> int: ...

    @property
    def num_classes(self) -> int: ...

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one inference call and return one score per class."""
        ...

    def release(self) -> None:
        """Free the underlying session; idempotent."""
        ...


# ---------------------------------------------------------------------------
# ONNX Runtime implementation
# ---------------------------------------------------------------------------


class ModelHandle:
    """A loaded model ready for single-image inference."""

    def __init__(self, session: InferenceSession, info: ModelInfo) -> None:
        self._session: InferenceSession | None = session
        self._info = info
        self._lock = threading.Lock()

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
    def channels(self) -> int:
        return self._info.channels

    @property
    def num_classes(self) -> int:
        return self._info.num_classes

    @property
    def released(self) -> bool:
        with self._lock:
            return self._session is None

    def infer(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run one inference call.

        Args:
            tensor: Flat float32 buffer of length ``info.input_size``.

        Returns:
            One score per class, shape (num_classes,).

        Raises:
            NotInitializedError: If the handle has been released.
            ValueError: If the buffer length does not match the model input.
        """
        if tensor.size != self._info.input_size:
            raise ValueError(f"Input buffer has {tensor.size} values, model expects {self._info.input_size}")

        batch = tensor.astype(np.float32, copy=False).reshape(
            1, self._info.input_height, self._info.input_width, self._info.channels
        )
        with self._lock:
            if self._session is None:
                raise NotInitializedError("Model handle has been released")
            outputs = self._session.run(None, {self._info.input_name: batch})

        scores = np.array(outputs[0], dtype=np.float32).reshape(-1)
        if scores.size != self._info.num_classes:
            raise ValueError(f"Model produced {scores.size} scores, expected {self._info.num_classes}")
        return scores

    def release(self) -> None:
        """Drop the session. Safe to call more than once."""
        with self._lock:
            if self._session is None:
                return
            self._session = None
        logger.info("Released model session")


def load(model_bytes: bytes, settings: Settings) -> ModelHandle:
    """Create an inference session from serialized model bytes.

    Raises:
        LoadError: If the bytes cannot be loaded or the model's declared
            shapes are not a single-image NHWC RGB classifier.
    """
    if not model_bytes:
        raise LoadError("Model data is empty")

    try:
        session = InferenceSession(
            model_bytes,
            sess_options=build_session_options(settings),
            providers=build_providers(settings),
        )
    except Exception as exc:
        raise LoadError(f"Cannot create inference session: {exc}") from exc

    info = _read_model_info(session)
    logger.info(
        "Loaded model (input=%dx%dx%d, classes=%d, providers=%s)",
        info.input_width,
        info.input_height,
        info.channels,
        info.num_classes,
        session.get_providers(),
    )
    return ModelHandle(session, info)


def _read_model_info(session: InferenceSession) -> ModelInfo:
    inputs = session.get_inputs()
    outputs = session.get_outputs()
    if not inputs or not outputs:
        raise LoadError("Model must declare at least one input and one output")

    input_meta = inputs[0]
    shape = list(input_meta.shape)
    if len(shape) != 4:  # noqa: PLR2004
        raise LoadError(f"Expected an NHWC input of rank 4, got shape {shape}")

    batch, height, width, channels = shape
    if _is_static(batch) and batch != 1:
        raise LoadError(f"Expected a batch dimension of 1 or dynamic, got shape {shape}")
    if not all(_is_static(dim) for dim in (height, width, channels)):
        raise LoadError(f"Input spatial dimensions must be static, got shape {shape}")
    if channels != PIXEL_SIZE:
        raise LoadError(f"Expected {PIXEL_SIZE} input channels, got {channels}")

    output_shape = list(outputs[0].shape)
    num_classes = output_shape[-1] if output_shape else None
    if not _is_static(num_classes):
        raise LoadError(f"Output class count must be static, got shape {output_shape}")

    return ModelInfo(
        input_name=input_meta.name,
        input_width=width,
        input_height=height,
        channels=channels,
        num_classes=num_classes,
    )


def _is_static(dim: object) -> bool:
    return isinstance(dim, int) and dim > 0


def build_providers(settings: Settings) -> list[str | tuple[str, dict[str, object]]]:
    """Return the ONNX Runtime execution providers for the configured device."""
    device = settings.device
    if device == "cuda":
        return [
            (
                "CUDAExecutionProvider",
                {
                    "device_id": 0,
                    "gpu_mem_limit": settings.gpu_mem_limit,
                    "arena_extend_strategy": "kSameAsRequested",
                },
            ),
            "CPUExecutionProvider",
        ]
    if device == "openvino":
        return [
            ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
            "CPUExecutionProvider",
        ]
    return ["CPUExecutionProvider"]


def build_session_options(settings: Settings) -> SessionOptions:
    """Return session options tuned to the configured threading and device."""
    opts = SessionOptions()
    opts.intra_op_num_threads = settings.intra_op_threads
    opts.inter_op_num_threads = settings.inter_op_threads
    opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
    opts.enable_mem_pattern = True
    opts.enable_mem_reuse = True

    if settings.device == "openvino":
        # OpenVINO does its own graph optimization
        opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
    return opts
