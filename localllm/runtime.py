"""Runtime environment checks for localllm backends."""

from __future__ import annotations

import functools
import os

import torch

# Inference on phones and small boards stalls when every core is busy.
MAX_DEFAULT_THREADS = 4


@functools.lru_cache(maxsize=1)
def is_llama_cpp_available() -> bool:
    """Check if the llama-cpp-python bindings can be imported."""
    try:
        import llama_cpp  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_transformers_available() -> bool:
    """Check if Hugging Face Transformers can be imported."""
    try:
        import transformers  # noqa: F401
        return True
    except ImportError:
        return False


@functools.lru_cache(maxsize=1)
def is_cuda_available() -> bool:
    """Check if CUDA is available."""
    return torch.cuda.is_available()


@functools.lru_cache(maxsize=1)
def default_thread_count() -> int:
    """Thread count for a single decode step: min(cpu_count, 4), at least 1."""
    cpus = os.cpu_count() or 1
    return max(1, min(cpus, MAX_DEFAULT_THREADS))


def check_backend_available(backend: str) -> None:
    """Raise ImportError if the bindings for `backend` are not installed."""
    if backend == "llama_cpp" and not is_llama_cpp_available():
        raise ImportError(
            "The llama_cpp backend requires llama-cpp-python. "
            "Install it with: pip install 'localllm[llama-cpp]'"
        )
    if backend == "transformers" and not is_transformers_available():
        raise ImportError(
            "The transformers backend requires Transformers. "
            "Install it with: pip install 'localllm[transformers]'"
        )
