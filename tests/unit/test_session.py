import io
import zipfile

import pytest

from src.core.exceptions import ModelLoadFailedError
from src.engines.upscaler import session as session_module
from src.engines.upscaler.session import BACKENDS, create_session, is_torchscript, select_backends


@pytest.fixture
def no_accelerators(monkeypatch):
    monkeypatch.setattr(BACKENDS["cuda"], "probe", lambda: False)
    monkeypatch.setattr(BACKENDS["coreml"], "probe", lambda: False)


def test_cpu_is_always_selected(no_accelerators):
    backends = select_backends(["cuda", "coreml"])

    assert [b.name for b in backends] == ["cpu"]


def test_priority_order_is_kept(monkeypatch):
    monkeypatch.setattr(BACKENDS["cuda"], "probe", lambda: True)
    monkeypatch.setattr(BACKENDS["coreml"], "probe", lambda: True)

    backends = select_backends(["coreml", "cuda", "cpu"])

    assert [b.name for b in backends] == ["coreml", "cuda", "cpu"]


def test_failing_probe_counts_as_unavailable(monkeypatch):
    def exploding_probe():
        raise RuntimeError("driver mismatch")

    monkeypatch.setattr(BACKENDS["cuda"], "probe", exploding_probe)

    assert [b.name for b in select_backends(["cuda", "cpu"])] == ["cpu"]


def test_unknown_backend_ignored(no_accelerators):
    assert [b.name for b in select_backends(["tpu", "CPU"])] == ["cpu"]


def test_torchscript_detected_by_zip_header():
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w") as archive:
        archive.writestr("model/data.pkl", b"weights")

    assert is_torchscript(buffer.getvalue())
    assert not is_torchscript(b"\x08\x07\x12\x04onnx")


def test_empty_weights_rejected():
    with pytest.raises(ModelLoadFailedError):
        create_session(b"", ["cpu"])


def test_runtime_rejection_becomes_model_load_failed(monkeypatch, no_accelerators):
    class RejectingSession:
        def __init__(self, weights, backends):
            raise ValueError("protobuf parsing failed")

    monkeypatch.setattr(session_module, "OnnxSession", RejectingSession)

    with pytest.raises(ModelLoadFailedError) as exc_info:
        create_session(b"not-a-model", ["cpu"])

    assert "protobuf parsing failed" in exc_info.value.message
    assert exc_info.value.details["backends"] == ["cpu"]
