"""Model lifecycle: the single loaded model and its decoding context.

At most one model/context pair is live per manager. `load`, `unload` and
generation all run under the manager's lock, so they never interleave.
"""

from __future__ import annotations

import logging
import os
import threading
from typing import Any

from .adapters.base import BaseAdapter
from .config import EngineConfig
from .errors import ContextCreateFailedError, ModelLoadFailedError, PathUnreadableError
from .types import ModelInfo

logger = logging.getLogger(__name__)


class ModelManager:
    """Owns the loaded model handle and decoding context.

    Thread-safety:
        All entry points take a re-entrant lock. `GenerationEngine` holds the
        same lock for the duration of a generation call.
    """

    def __init__(self, adapter: BaseAdapter, *, config: EngineConfig | None = None) -> None:
        self._adapter = adapter
        self._config = config or EngineConfig()
        self._config.validate()
        self._lock = threading.RLock()

        self._model: Any | None = None
        self._context: Any | None = None
        self._model_path: str | None = None
        self._ready = False

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def adapter(self) -> BaseAdapter:
        return self._adapter

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def lock(self) -> threading.RLock:
        return self._lock

    @property
    def model(self) -> Any | None:
        return self._model

    @property
    def context(self) -> Any | None:
        return self._context

    @property
    def model_path(self) -> str | None:
        return self._model_path

    @property
    def model_info(self) -> ModelInfo:
        with self._lock:
            extra: dict[str, Any] = {}
            if self._ready:
                extra = self._adapter.describe(self._model)
            return ModelInfo(
                model_path=self._model_path,
                backend=self._adapter.name,
                n_ctx=self._config.n_ctx,
                n_threads=self._config.resolved_threads,
                gpu_layers=self._config.gpu_layers,
                loaded=self._ready,
                extra=extra,
            )

    def is_ready(self) -> bool:
        return self._ready

    # -------------------------------------------------------------------------
    # Loading / Unloading
    # -------------------------------------------------------------------------

    def load(self, path: str | os.PathLike[str]) -> None:
        """Load a model and create its decoding context.

        Any previously loaded pair is released first (context, then model).

        Raises:
            PathUnreadableError: `path` does not exist or cannot be read.
            ModelLoadFailedError: the engine rejected the model.
            ContextCreateFailedError: the context could not be created; the
                just-loaded model has been released.
        """
        path = os.fspath(path)
        cfg = self._config

        with self._lock:
            self._teardown()

            if not os.path.exists(path) or not os.access(path, os.R_OK):
                raise PathUnreadableError(f"Model path is not readable: {path}", path=path)

            logger.info("Loading model: %s (backend=%s)", path, self._adapter.name)
            try:
                model = self._adapter.load_model(path, gpu_layers=cfg.gpu_layers)
            except Exception as exc:
                raise ModelLoadFailedError(f"Failed to load model: {exc}", path=path) from exc
            if model is None:
                raise ModelLoadFailedError(f"Failed to load model: {path}", path=path)

            try:
                context = self._adapter.create_context(
                    model,
                    capacity=cfg.n_ctx,
                    n_threads=cfg.resolved_threads,
                )
            except Exception as exc:
                self._release_model(model)
                raise ContextCreateFailedError(
                    f"Failed to create context: {exc}", path=path
                ) from exc
            if context is None:
                self._release_model(model)
                raise ContextCreateFailedError(
                    f"Failed to create context (n_ctx={cfg.n_ctx})", path=path
                )

            self._model = model
            self._context = context
            self._model_path = path
            self._ready = True
            logger.info(
                "Model ready: n_ctx=%d n_threads=%d gpu_layers=%d",
                cfg.n_ctx,
                cfg.resolved_threads,
                cfg.gpu_layers,
            )

    def unload(self) -> None:
        """Release the context and model if present. Safe to call repeatedly."""
        with self._lock:
            if self._model is None and self._context is None:
                return
            self._teardown()
            logger.info("Model unloaded")

    def __enter__(self) -> "ModelManager":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.unload()

    # -------------------------------------------------------------------------
    # Internal
    # -------------------------------------------------------------------------

    def _teardown(self) -> None:
        self._ready = False
        context, self._context = self._context, None
        model, self._model = self._model, None
        self._model_path = None

        if context is not None:
            try:
                self._adapter.release_context(context)
            except Exception:
                logger.warning("Failed to release decoding context", exc_info=True)
        if model is not None:
            self._release_model(model)

    def _release_model(self, model: Any) -> None:
        try:
            self._adapter.release_model(model)
        except Exception:
            logger.warning("Failed to release model", exc_info=True)
