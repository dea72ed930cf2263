"""Adapter for llama.cpp (GGUF models) via the llama-cpp-python bindings.

Only the low-level ctypes API is used so the controller, not the bindings'
high-level `Llama` class, owns tokenization, sampling and stop detection.
"""

from __future__ import annotations

import codecs
import ctypes
import logging
import threading
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from .base import BaseAdapter

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

# Bounded output buffer for a single token piece. A piece that does not fit is
# a soft failure (the fragment is skipped), never a fatal one.
PIECE_BUFFER_SIZE = 256

_backend_lock = threading.Lock()
_backend_ready = False


def _llama():
    """Import llama_cpp and initialize the backend once per process."""
    global _backend_ready
    import llama_cpp

    with _backend_lock:
        if not _backend_ready:
            llama_cpp.llama_backend_init()
            _backend_ready = True
    return llama_cpp


# =============================================================================
# Handles
# =============================================================================


@dataclass
class _LlamaModel:
    model: Any
    vocab: Any
    path: str
    n_vocab: int
    # Token pieces may split a multi-byte UTF-8 sequence.
    utf8: Any = field(default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace"))


@dataclass
class _LlamaContext:
    ctx: Any
    model: _LlamaModel
    capacity: int
    n_threads: int


# =============================================================================
# Adapter
# =============================================================================


class LlamaCppAdapter(BaseAdapter):
    """
    llama.cpp engine facade.

    Example:
        >>> adapter = LlamaCppAdapter()
        >>> model = adapter.load_model("models/qwen2.5-0.5b-instruct-q4_k_m.gguf")
        >>> ctx = adapter.create_context(model, capacity=2048, n_threads=4)
        >>> tokens = adapter.tokenize(model, "Hello")
        >>> adapter.decode(ctx, tokens)
        0
    """

    name = "llama_cpp"

    # -------------------------------------------------------------------------
    # Loading / Releasing
    # -------------------------------------------------------------------------

    def load_model(self, path: str, *, gpu_layers: int = 0) -> _LlamaModel | None:
        llama_cpp = _llama()

        params = llama_cpp.llama_model_default_params()
        params.n_gpu_layers = int(gpu_layers)

        model = llama_cpp.llama_model_load_from_file(path.encode("utf-8"), params)
        if model is None:
            logger.error("llama.cpp failed to load model: %s", path)
            return None

        vocab = llama_cpp.llama_model_get_vocab(model)
        if vocab is None:
            logger.error("llama.cpp model has no vocabulary: %s", path)
            llama_cpp.llama_model_free(model)
            return None

        return _LlamaModel(
            model=model,
            vocab=vocab,
            path=path,
            n_vocab=int(llama_cpp.llama_n_vocab(vocab)),
        )

    def create_context(
        self, model: _LlamaModel, *, capacity: int, n_threads: int
    ) -> _LlamaContext | None:
        llama_cpp = _llama()

        params = llama_cpp.llama_context_default_params()
        params.n_ctx = int(capacity)
        # The whole prompt is submitted as one batch.
        params.n_batch = int(capacity)
        params.n_threads = int(n_threads)
        params.n_threads_batch = int(n_threads)

        ctx = llama_cpp.llama_init_from_model(model.model, params)
        if ctx is None:
            logger.error("llama.cpp failed to create context (n_ctx=%d)", capacity)
            return None
        return _LlamaContext(ctx=ctx, model=model, capacity=int(capacity), n_threads=int(n_threads))

    def release_context(self, context: _LlamaContext) -> None:
        if context.ctx is not None:
            _llama().llama_free(context.ctx)
            context.ctx = None

    def release_model(self, model: _LlamaModel) -> None:
        if model.model is not None:
            _llama().llama_model_free(model.model)
            model.model = None
            model.vocab = None

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, model: _LlamaModel, text: str, *, add_special: bool = True) -> list[int]:
        llama_cpp = _llama()

        data = text.encode("utf-8")
        n_max = len(data) + 2
        buf = (llama_cpp.llama_token * n_max)()
        n = llama_cpp.llama_tokenize(model.vocab, data, len(data), buf, n_max, add_special, False)
        if n < 0:
            # Buffer too small: -n is the required size.
            n_max = -n
            buf = (llama_cpp.llama_token * n_max)()
            n = llama_cpp.llama_tokenize(model.vocab, data, len(data), buf, n_max, add_special, False)
        if n <= 0:
            return []
        return [int(t) for t in buf[:n]]

    def token_to_text(self, model: _LlamaModel, token: int) -> str | None:
        llama_cpp = _llama()

        buf = (ctypes.c_char * PIECE_BUFFER_SIZE)()
        n = llama_cpp.llama_token_to_piece(model.vocab, int(token), buf, PIECE_BUFFER_SIZE, 0, False)
        if n < 0:
            logger.warning("Token %d piece does not fit in %d bytes; skipped", token, PIECE_BUFFER_SIZE)
            return None
        return model.utf8.decode(bytes(buf[:n]))

    def is_end_of_generation(self, model: _LlamaModel, token: int) -> bool:
        return bool(_llama().llama_vocab_is_eog(model.vocab, int(token)))

    def n_vocab(self, model: _LlamaModel) -> int:
        return model.n_vocab

    # -------------------------------------------------------------------------
    # Decoding
    # -------------------------------------------------------------------------

    def decode(self, context: _LlamaContext, tokens: Sequence[int]) -> int:
        llama_cpp = _llama()

        arr = (llama_cpp.llama_token * len(tokens))(*tokens)
        batch = llama_cpp.llama_batch_get_one(arr, len(tokens))
        return int(llama_cpp.llama_decode(context.ctx, batch))

    def get_logits(self, context: _LlamaContext) -> torch.Tensor:
        import numpy as np
        import torch

        ptr = _llama().llama_get_logits_ith(context.ctx, -1)
        view = np.ctypeslib.as_array(ptr, shape=(context.model.n_vocab,))
        # Copy: the engine reuses the logits buffer on the next decode.
        return torch.from_numpy(np.array(view, dtype=np.float32, copy=True))

    def clear_cache(self, context: _LlamaContext) -> None:
        llama_cpp = _llama()
        llama_cpp.llama_memory_clear(llama_cpp.llama_get_memory(context.ctx), True)
        context.model.utf8.reset()

    def describe(self, model: _LlamaModel) -> dict[str, Any]:
        llama_cpp = _llama()
        return {
            "n_vocab": model.n_vocab,
            "n_ctx_train": int(llama_cpp.llama_model_n_ctx_train(model.model)),
        }
