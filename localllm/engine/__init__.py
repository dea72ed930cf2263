# On-device generation engine
#
# This package drives an inference engine token by token through a bounded
# context window, stopping early on degenerate repetition.
#
# Key components:
#   - adapters/          Engine-specific primitives (llama.cpp, Transformers)
#   - registry.py        Maps backend names to adapters
#   - lifecycle.py       Single model/context owner (load / unload)
#   - context_window.py  Token-slot admission and bookkeeping
#   - sampling.py        top-k -> top-p -> temperature -> pick
#   - repetition.py      Character-window repetition guard
#   - generation.py      The generation state machine
#   - types.py           Request/response types and stop reasons

from .config import CHAT_RESPONSE_LENGTH, CODE_RESPONSE_LENGTH, EngineConfig
from .context_window import Admission, ContextWindow, RejectReason
from .errors import (
    ContextCreateFailedError,
    ContextOverflowError,
    LoadError,
    LocalLLMError,
    ModelLoadFailedError,
    PathUnreadableError,
    UnknownBackendError,
)
from .generation import GenerationEngine, GenerationSession, create_engine
from .lifecycle import ModelManager
from .registry import get_adapter, list_backends, register_adapter
from .repetition import RepeatHit, RepetitionGuard, RepetitionGuardConfig
from .sampling import SamplerChain, SamplerConfig
from .types import (
    GenerateRequest,
    GenerateResponse,
    GenerationState,
    ModelInfo,
    SessionError,
    StopReason,
    Timing,
)
