"""
localllm - On-device text generation with context-window and repetition guards.

Drives a local inference engine (llama.cpp or Transformers) token by token
through a fixed-size context window, and stops early when the model falls into
a repetition loop.

Quick Start:
    from localllm import create_engine

    engine = create_engine("models/qwen2.5-0.5b-instruct-q4_k_m.gguf")
    response = engine.generate("Hello")
    print(response.text, response.stop_reason)
    engine.shutdown()

Submodules:
    - localllm.engine: Controller, lifecycle, sampler chain, repetition guard
    - localllm.engine.adapters: Engine adapters
    - localllm.runtime: Backend availability checks
"""

from localllm._version import __version__

from localllm.engine import (
    CHAT_RESPONSE_LENGTH,
    CODE_RESPONSE_LENGTH,
    EngineConfig,
    GenerateRequest,
    GenerateResponse,
    GenerationEngine,
    GenerationState,
    LoadError,
    ModelManager,
    RepetitionGuardConfig,
    SamplerConfig,
    SessionError,
    StopReason,
    create_engine,
)

# Runtime utilities
from localllm.runtime import (
    is_llama_cpp_available,
    is_transformers_available,
)

__all__ = [
    # Version
    "__version__",
    # Engine
    "create_engine",
    "GenerationEngine",
    "ModelManager",
    "EngineConfig",
    "SamplerConfig",
    "RepetitionGuardConfig",
    "GenerateRequest",
    "GenerateResponse",
    "GenerationState",
    "StopReason",
    "SessionError",
    "LoadError",
    "CHAT_RESPONSE_LENGTH",
    "CODE_RESPONSE_LENGTH",
    # Runtime
    "is_llama_cpp_available",
    "is_transformers_available",
]
