"""Registry of the face models and the store that opens their ONNX sessions.

Model files come from the HuggingFace hub. InsightFace-licensed files are
only fetched once the operator accepts the non-commercial license.
``SessionBinding`` keeps a library wrapper (SCRFD, ArcFace, ...) in sync with
the session the manager currently holds for a model.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path
from typing import TYPE_CHECKING, Any, Generic, Protocol, TypeVar, cast

from huggingface_hub import hf_hub_download
from onnxruntime import GraphOptimizationLevel, InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

if TYPE_CHECKING:
    from collections.abc import Callable

    from faceprofile.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class ModelManager(Protocol):
    """What the face models and the app lifespan need from a model store."""

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, fetching it first if needed."""
        ...

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the open session for a model."""
        ...

    def get_wrapper(self, model_name: str, owner: object, factory: Callable[[Path, InferenceSession], T]) -> T:
        """Return ``owner``'s wrapper around the open session, building it on first use."""
        ...

    def get_loaded_models(self) -> list[str]:
        """Names of models with an open session."""
        ...

    def unload_idle_models(self) -> list[str]:
        """Close sessions past their TTL and return their names."""
        ...

    def shutdown(self) -> None:
        """Close every session."""
        ...


# ---------------------------------------------------------------------------
# Model registry
# ---------------------------------------------------------------------------


class ModelTask(StrEnum):
    FACE_DETECTION = "face_detection"
    FACE_RECOGNITION = "face_recognition"
    FACE_LANDMARKS = "face_landmarks"
    FACE_ATTRIBUTES = "face_attributes"
    FACE_EXPRESSION = "face_expression"


@dataclass(frozen=True)
class ModelSpec:
    """Static metadata for a single ONNX model."""

    name: str
    repo_id: str
    filename: str
    subfolder: str | None
    task: ModelTask
    license: str
    insightface: bool


_INSIGHTFACE_LICENSE = "Non-commercial (InsightFace)"


def _buffalo_l(name: str, filename: str, task: ModelTask) -> ModelSpec:
    """An entry from insightface's buffalo_l pack, mirrored on the HuggingFace hub."""
    return ModelSpec(
        name=name,
        repo_id="public-data/insightface",
        filename=filename,
        subfolder="models/buffalo_l",
        task=task,
        license=_INSIGHTFACE_LICENSE,
        insightface=True,
    )


MODEL_REGISTRY: dict[str, ModelSpec] = {
    # AuraFace ships the SCRFD detector next to its own recognition model
    "scrfd_10g_kps": ModelSpec(
        name="scrfd_10g_kps",
        repo_id="fal/AuraFace-v1",
        filename="scrfd_10g_bnkps.onnx",
        subfolder=None,
        task=ModelTask.FACE_DETECTION,
        license=_INSIGHTFACE_LICENSE,
        insightface=True,
    ),
    "det_10g": _buffalo_l("det_10g", "det_10g.onnx", ModelTask.FACE_DETECTION),
    "auraface_v1": ModelSpec(
        name="auraface_v1",
        repo_id="fal/AuraFace-v1",
        filename="glintr100.onnx",
        subfolder=None,
        task=ModelTask.FACE_RECOGNITION,
        license="Apache-2.0",
        insightface=False,
    ),
    "w600k_r50": _buffalo_l("w600k_r50", "w600k_r50.onnx", ModelTask.FACE_RECOGNITION),
    "landmark_3d_68": _buffalo_l("landmark_3d_68", "1k3d68.onnx", ModelTask.FACE_LANDMARKS),
    "genderage": _buffalo_l("genderage", "genderage.onnx", ModelTask.FACE_ATTRIBUTES),
    "emotion_ferplus": ModelSpec(
        name="emotion_ferplus",
        repo_id="onnxmodelzoo/emotion-ferplus-8",
        filename="emotion-ferplus-8.onnx",
        subfolder=None,
        task=ModelTask.FACE_EXPRESSION,
        license="MIT",
        insightface=False,
    ),
}


def get_model_spec(model_name: str) -> ModelSpec:
    """Look up a registry entry, raising ``KeyError`` for unknown names."""
    try:
        return MODEL_REGISTRY[model_name]
    except KeyError:
        raise KeyError(f"Unknown model: {model_name}") from None


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


@dataclass
class _OpenSession:
    session: InferenceSession
    last_used: float = field(default_factory=time.monotonic)
    # library wrappers built on this session, keyed by the binding that owns them
    wrappers: dict[object, Any] = field(default_factory=dict)

    def touch(self) -> InferenceSession:
        self.last_used = time.monotonic()
        return self.session


class OnnxModelManager:
    """Keeps one ONNX session per face model, fetched from the HuggingFace hub on first use.

    Model files live under ``models_dir`` with the same layout as on the hub, so
    a directory populated ahead of time lets the service start offline.
    Sessions idle for longer than ``model_ttl`` seconds are dropped by
    ``unload_idle_models`` and reopened on the next request.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._models_dir = Path(settings.models_dir)
        self._models_dir.mkdir(parents=True, exist_ok=True)

        self._lock = threading.Lock()
        self._sessions: dict[str, _OpenSession] = {}

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    def local_path(self, model_name: str) -> Path:
        """Where the model file lives once downloaded."""
        spec = get_model_spec(model_name)
        folder = self._models_dir / spec.subfolder if spec.subfolder else self._models_dir
        return folder / spec.filename

    def ensure_downloaded(self, model_name: str) -> Path:
        """Return the local model file, downloading it from HuggingFace when missing."""
        spec = get_model_spec(model_name)
        self._check_license(spec)

        path = self.local_path(model_name)
        if path.is_file():
            return path

        logger.info("Downloading %s from %s", model_name, spec.repo_id)
        downloaded = hf_hub_download(
            repo_id=spec.repo_id,
            filename=spec.filename,
            subfolder=spec.subfolder,
            local_dir=str(self._models_dir),
        )
        logger.info("Downloaded %s to %s", model_name, downloaded)
        return Path(downloaded)

    def get_session(self, model_name: str) -> InferenceSession:
        """Return the open session for a model, opening it if needed."""
        with self._lock:
            opened = self._sessions.get(model_name)
            if opened is not None:
                return opened.touch()

        session = self._open(model_name)

        with self._lock:
            # A concurrent request may have opened it first; keep that one.
            opened = self._sessions.setdefault(model_name, _OpenSession(session))
            return opened.touch()

    def get_wrapper(self, model_name: str, owner: object, factory: Callable[[Path, InferenceSession], T]) -> T:
        """Return ``owner``'s wrapper around the model's open session.

        Wrappers live next to their session, so closing an idle session also
        drops every wrapper holding it.
        """
        session = self.get_session(model_name)
        with self._lock:
            opened = self._sessions.get(model_name)
            if opened is not None and opened.session is session and owner in opened.wrappers:
                return cast("T", opened.wrappers[owner])

        wrapper = factory(self.ensure_downloaded(model_name), session)
        logger.debug("Built %s wrapper", model_name)

        with self._lock:
            opened = self._sessions.get(model_name)
            if opened is None or opened.session is not session:
                # closed while building; the caller still gets a working wrapper
                return wrapper
            return cast("T", opened.wrappers.setdefault(owner, wrapper))

    def get_loaded_models(self) -> list[str]:
        """Return names of models with open sessions, in the order they were opened."""
        with self._lock:
            return list(self._sessions)

    def unload_idle_models(self) -> list[str]:
        """Close sessions unused for longer than ``model_ttl``; returns their names."""
        ttl = self._settings.model_ttl
        if ttl == 0:
            return []

        cutoff = time.monotonic() - ttl
        with self._lock:
            idle = [name for name, opened in self._sessions.items() if opened.last_used < cutoff]
            for name in idle:
                del self._sessions[name]
        for name in idle:
            logger.info("Closed %s after %ss idle", name, ttl)
        return idle

    def shutdown(self) -> None:
        """Close every session."""
        with self._lock:
            self._sessions.clear()
        logger.info("All model sessions closed")

    # -- Internal -----------------------------------------------------------

    def _open(self, model_name: str) -> InferenceSession:
        model_path = self.ensure_downloaded(model_name)
        session = InferenceSession(
            str(model_path),
            sess_options=self._session_options,
            providers=self._providers,
        )
        logger.info("Opened %s (providers: %s)", model_name, ", ".join(session.get_providers()))
        return session

    def _check_license(self, spec: ModelSpec) -> None:
        if spec.insightface and not self._settings.accept_insightface_license:
            raise RuntimeError(
                f"Model '{spec.name}' is licensed for non-commercial use only; "
                "set FACEPROFILE_ACCEPT_INSIGHTFACE_LICENSE=true to use it"
            )

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        providers: list[str | tuple[str, dict[str, object]]] = []
        if self._settings.device == "cuda":
            providers.append(
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                )
            )
        elif self._settings.device == "openvino":
            providers.append(("OpenVINOExecutionProvider", {"device_type": "CPU"}))
        # CPU is always the fallback provider
        providers.append("CPUExecutionProvider")
        return providers

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True
        if self._settings.device == "openvino":
            # OpenVINO runs its own graph optimizations
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


# ---------------------------------------------------------------------------
# Wrapper binding
# ---------------------------------------------------------------------------


class SessionBinding(Generic[T]):
    """A model wrapper built on top of a managed session.

    ``factory`` receives the local model path and the session; insightface's
    wrappers need both (they read the graph to work out input normalisation).
    The manager keeps the wrapper alongside the session, so a wrapper never
    outlives an evicted session and is rebuilt on the next ``get``.
    """

    def __init__(
        self,
        manager: ModelManager,
        model_name: str,
        factory: Callable[[Path, InferenceSession], T],
    ) -> None:
        self.model_name = model_name
        self._manager = manager
        self._factory = factory

    def get(self) -> T:
        """Return the wrapper for the session currently held by the manager."""
        return self._manager.get_wrapper(self.model_name, self, self._factory)
