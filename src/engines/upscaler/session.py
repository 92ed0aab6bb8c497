"""
Inference Sessions - one loaded model, one tile forward pass at a time.

Backend selection is a prioritized list of capability probes evaluated once
when the session is created; the result is kept for the session's lifetime.

Model formats:
- ONNX (onnxruntime), providers picked from the selected backends
- TorchScript (torch.jit), device picked from the selected backends

Heavy runtimes are imported lazily so the rest of the engine can be used
and tested without them.
"""

import io
import time
import zipfile
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

import numpy as np

from src.core.exceptions import InferenceFailedError, ModelLoadFailedError
from src.core.logging import get_logger
from src.core.metrics import record_model_load_time

logger = get_logger(__name__)


# =============================================================================
# Execution backends
# =============================================================================

def _onnx_providers() -> List[str]:
    try:
        import onnxruntime as ort
    except ImportError:
        return []
    return list(ort.get_available_providers())


def _probe_cuda() -> bool:
    if "CUDAExecutionProvider" in _onnx_providers():
        return True
    try:
        import torch
    except ImportError:
        return False
    return torch.cuda.is_available()


def _probe_coreml() -> bool:
    return "CoreMLExecutionProvider" in _onnx_providers()


class ExecutionBackend:
    """A named numeric backend plus the check that tells whether it is usable."""

    def __init__(self, name: str, onnx_provider: str, torch_device: Optional[str], probe: Callable[[], bool]):
        self.name = name
        self.onnx_provider = onnx_provider
        self.torch_device = torch_device
        self.probe = probe

    def is_available(self) -> bool:
        try:
            return bool(self.probe())
        except Exception as e:
            logger.warning("backend_probe_failed", backend=self.name, error=str(e))
            return False

    def __repr__(self) -> str:
        return f"ExecutionBackend({self.name!r})"


BACKENDS = {
    "cuda": ExecutionBackend("cuda", "CUDAExecutionProvider", "cuda", _probe_cuda),
    "coreml": ExecutionBackend("coreml", "CoreMLExecutionProvider", None, _probe_coreml),
    "cpu": ExecutionBackend("cpu", "CPUExecutionProvider", "cpu", lambda: True),
}


def select_backends(priority: Sequence[str]) -> List[ExecutionBackend]:
    """
    Probe backends in priority order and return the available ones.

    CPU is always appended as the last resort.
    """
    selected = []
    for name in priority:
        backend = BACKENDS.get(name.strip().lower())
        if backend is None:
            logger.warning("unknown_backend_ignored", backend=name)
            continue
        if backend not in selected and backend.is_available():
            selected.append(backend)

    if BACKENDS["cpu"] not in selected:
        selected.append(BACKENDS["cpu"])

    logger.info("backends_selected", backends=[b.name for b in selected])
    return selected


# =============================================================================
# Sessions
# =============================================================================

class InferenceSession(ABC):
    """Wraps one loaded model."""

    backends: List[ExecutionBackend]

    @property
    def backend_names(self) -> List[str]:
        return [b.name for b in self.backends]

    @abstractmethod
    def run(self, tile: np.ndarray) -> np.ndarray:
        """Forward one (1, 3, H, W) float32 tile; returns (1, 3, H', W') or (3, H', W')."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Release the native session and its buffers."""
        pass


class OnnxSession(InferenceSession):
    """onnxruntime-backed session."""

    def __init__(self, weights: bytes, backends: List[ExecutionBackend]):
        import onnxruntime as ort

        self.backends = backends
        providers = [b.onnx_provider for b in backends if b.onnx_provider]
        self._session = ort.InferenceSession(weights, providers=providers)
        self._input_name = self._session.get_inputs()[0].name
        self._output_name = self._session.get_outputs()[0].name

    def run(self, tile: np.ndarray) -> np.ndarray:
        if self._session is None:
            raise InferenceFailedError("Session has been closed")
        try:
            outputs = self._session.run([self._output_name], {self._input_name: tile})
        except Exception as e:
            raise InferenceFailedError(f"ONNX inference failed: {e}") from e
        return np.asarray(outputs[0], dtype=np.float32)

    def close(self) -> None:
        self._session = None


class TorchScriptSession(InferenceSession):
    """torch.jit-backed session."""

    def __init__(self, weights: bytes, backends: List[ExecutionBackend]):
        import torch

        self.backends = backends
        device = next((b.torch_device for b in backends if b.torch_device), "cpu")
        self._device = torch.device(device)
        self._model = torch.jit.load(io.BytesIO(weights), map_location=self._device)
        self._model.eval()

    def run(self, tile: np.ndarray) -> np.ndarray:
        import torch

        if self._model is None:
            raise InferenceFailedError("Session has been closed")
        try:
            with torch.no_grad():
                x = torch.from_numpy(tile).to(self._device)
                y = self._model(x)
                return y.float().cpu().numpy()
        except Exception as e:
            raise InferenceFailedError(f"TorchScript inference failed: {e}") from e

    def close(self) -> None:
        import torch

        self._model = None
        if self._device.type == "cuda":
            torch.cuda.empty_cache()


def is_torchscript(weights: bytes) -> bool:
    """TorchScript archives are zip files; ONNX is a protobuf."""
    return zipfile.is_zipfile(io.BytesIO(weights))


def create_session(weights: bytes, backend_priority: Sequence[str]) -> InferenceSession:
    """
    Build a session for the given model bytes.

    Raises:
        ModelLoadFailedError: empty payload or the runtime rejects the model
    """
    if not weights:
        raise ModelLoadFailedError("Model payload is empty")

    backends = select_backends(backend_priority)
    session_cls = TorchScriptSession if is_torchscript(weights) else OnnxSession

    start = time.time()
    try:
        session = session_cls(weights, backends)
    except ModelLoadFailedError:
        raise
    except Exception as e:
        raise ModelLoadFailedError(
            f"Failed to create {session_cls.__name__}: {e}",
            details={"backends": [b.name for b in backends]}
        ) from e

    elapsed = time.time() - start
    record_model_load_time(backends[0].name, elapsed)
    logger.info(
        "session_created",
        session=session_cls.__name__,
        backends=session.backend_names,
        load_time_s=round(elapsed, 3)
    )
    return session


SessionFactory = Callable[[bytes], InferenceSession]
