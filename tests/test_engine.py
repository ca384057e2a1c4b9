"""Tests for the ONNX model handle."""

from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from leafdx.config import Settings
from leafdx.exceptions import LoadError, NotInitializedError
from leafdx.ml.engine import ModelHandle, ModelInfo, build_providers, build_session_options, load

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "device": "cpu",
        "intra_op_threads": 0,
        "inter_op_threads": 1,
        "gpu_mem_limit": 2_147_483_648,
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


def _make_session(
    input_shape: list[object] | None = None,
    output_shape: list[object] | None = None,
    scores: list[float] | None = None,
) -> MagicMock:
    session = MagicMock()
    input_meta = MagicMock()
    input_meta.name = "input_1"
    input_meta.shape = input_shape if input_shape is not None else ["batch", 4, 6, 3]
    output_meta = MagicMock()
    output_meta.shape = output_shape if output_shape is not None else ["batch", 3]
    session.get_inputs.return_value = [input_meta]
    session.get_outputs.return_value = [output_meta]
    session.get_providers.return_value = ["CPUExecutionProvider"]
    result = np.array([scores if scores is not None else [0.2, 0.5, 0.3]], dtype=np.float32)
    session.run.return_value = [result]
    return session


def _info(width: int = 2, height: int = 2, num_classes: int = 3) -> ModelInfo:
    return ModelInfo(input_name="input_1", input_width=width, input_height=height, channels=3, num_classes=num_classes)


# ---------------------------------------------------------------------------
# load()
# ---------------------------------------------------------------------------


class TestLoad:
    @patch("leafdx.ml.engine.InferenceSession")
    def test_reads_declared_shapes(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _make_session(input_shape=[1, 4, 6, 3], output_shape=[1, 15])

        handle = load(b"model-bytes", _make_settings())

        assert handle.input_height == 4
        assert handle.input_width == 6
        assert handle.channels == 3
        assert handle.num_classes == 15
        assert handle.info.input_size == 4 * 6 * 3

    @patch("leafdx.ml.engine.InferenceSession")
    def test_passes_bytes_and_providers(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _make_session()

        load(b"model-bytes", _make_settings())

        args, kwargs = mock_session_cls.call_args
        assert args[0] == b"model-bytes"
        assert kwargs["providers"] == ["CPUExecutionProvider"]

    def test_empty_bytes_raise_load_error(self) -> None:
        with pytest.raises(LoadError, match="empty"):
            load(b"", _make_settings())

    @patch("leafdx.ml.engine.InferenceSession")
    def test_runtime_failure_wrapped_in_load_error(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.side_effect = RuntimeError("INVALID_PROTOBUF")

        with pytest.raises(LoadError, match="INVALID_PROTOBUF") as exc_info:
            load(b"garbage", _make_settings())

        assert isinstance(exc_info.value.__cause__, RuntimeError)

    @pytest.mark.parametrize(
        "input_shape",
        [
            [1, 3, 224, 224],  # NCHW
            [1, "height", "width", 3],
            [224, 224, 3],
            [8, 4, 6, 3],  # fixed batch other than 1
        ],
    )
    @patch("leafdx.ml.engine.InferenceSession")
    def test_unusable_input_shape_rejected(self, mock_session_cls: MagicMock, input_shape: list[object]) -> None:
        mock_session_cls.return_value = _make_session(input_shape=input_shape)

        with pytest.raises(LoadError):
            load(b"model-bytes", _make_settings())

    @patch("leafdx.ml.engine.InferenceSession")
    def test_dynamic_class_count_rejected(self, mock_session_cls: MagicMock) -> None:
        mock_session_cls.return_value = _make_session(output_shape=["batch", "classes"])

        with pytest.raises(LoadError, match="class count"):
            load(b"model-bytes", _make_settings())


# ---------------------------------------------------------------------------
# ModelHandle
# ---------------------------------------------------------------------------


class TestModelHandle:
    def test_infer_reshapes_to_nhwc_batch(self) -> None:
        session = _make_session()
        handle = ModelHandle(session, _info(width=3, height=2))

        scores = handle.infer(np.zeros(3 * 2 * 3, dtype=np.float32))

        feed = session.run.call_args.args[1]
        assert feed["input_1"].shape == (1, 2, 3, 3)
        np.testing.assert_allclose(scores, [0.2, 0.5, 0.3])

    def test_infer_rejects_wrong_length(self) -> None:
        handle = ModelHandle(_make_session(), _info())
        with pytest.raises(ValueError, match="expects 12"):
            handle.infer(np.zeros(5, dtype=np.float32))

    def test_infer_rejects_wrong_score_count(self) -> None:
        handle = ModelHandle(_make_session(scores=[0.5, 0.5]), _info(num_classes=3))
        with pytest.raises(ValueError, match="expected 3"):
            handle.infer(np.zeros(12, dtype=np.float32))

    def test_calls_are_independent(self) -> None:
        session = _make_session()
        handle = ModelHandle(session, _info())
        first = handle.infer(np.zeros(12, dtype=np.float32))
        first[:] = 0.0
        second = handle.infer(np.ones(12, dtype=np.float32))
        np.testing.assert_allclose(second, [0.2, 0.5, 0.3])

    def test_release_is_idempotent(self) -> None:
        handle = ModelHandle(_make_session(), _info())
        handle.release()
        handle.release()
        assert handle.released is True

    def test_infer_after_release_raises(self) -> None:
        handle = ModelHandle(_make_session(), _info())
        handle.release()
        with pytest.raises(NotInitializedError):
            handle.infer(np.zeros(12, dtype=np.float32))

    def test_concurrent_infer_calls_are_serialized(self) -> None:
        session = _make_session()
        active = 0
        peak = 0
        counter_lock = threading.Lock()

        def slow_run(*_args: object) -> list[np.ndarray]:
            nonlocal active, peak
            with counter_lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.02)
            with counter_lock:
                active -= 1
            return [np.array([[0.2, 0.5, 0.3]], dtype=np.float32)]

        session.run.side_effect = slow_run
        handle = ModelHandle(session, _info())

        with ThreadPoolExecutor(max_workers=4) as pool:
            futures = [pool.submit(handle.infer, np.zeros(12, dtype=np.float32)) for _ in range(8)]
            for future in futures:
                future.result()

        assert peak == 1
        assert session.run.call_count == 8

    def test_release_waits_for_in_flight_infer(self) -> None:
        session = _make_session()
        started = threading.Event()
        order: list[str] = []

        def slow_run(*_args: object) -> list[np.ndarray]:
            started.set()
            time.sleep(0.05)
            order.append("run")
            return [np.array([[0.2, 0.5, 0.3]], dtype=np.float32)]

        session.run.side_effect = slow_run
        handle = ModelHandle(session, _info())

        with ThreadPoolExecutor(max_workers=1) as pool:
            future = pool.submit(handle.infer, np.zeros(12, dtype=np.float32))
            started.wait(timeout=1.0)
            handle.release()
            order.append("release")
            future.result()

        assert order == ["run", "release"]


# ---------------------------------------------------------------------------
# Providers and session options
# ---------------------------------------------------------------------------


class TestProviders:
    def test_provider_building_cpu(self) -> None:
        assert build_providers(_make_settings(device="cpu")) == ["CPUExecutionProvider"]

    def test_provider_building_cuda(self) -> None:
        providers = build_providers(_make_settings(device="cuda"))
        assert len(providers) == 2
        provider_name, provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "CUDAExecutionProvider"
        assert provider_opts["device_id"] == 0
        assert providers[1] == "CPUExecutionProvider"

    def test_provider_building_openvino(self) -> None:
        providers = build_providers(_make_settings(device="openvino"))
        provider_name, _provider_opts = providers[0]  # type: ignore[misc]
        assert provider_name == "OpenVINOExecutionProvider"
        assert providers[1] == "CPUExecutionProvider"

    def test_session_options_threads(self) -> None:
        opts = build_session_options(_make_settings(intra_op_threads=2, inter_op_threads=3))
        assert opts.intra_op_num_threads == 2
        assert opts.inter_op_num_threads == 3
