"""Engine request and response types.

These types are used internally by the engine and adapters.
They are independent of any CLI or host-application layer.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Any

NO_RESPONSE_TEXT = "No response generated"


class StopReason(str, enum.Enum):
    """Why a generation session ended."""

    END_OF_SEQUENCE = "end_of_sequence"
    PRIMING_CONTEXT_FULL = "priming_context_full"
    CONTEXT_FULL = "context_full"
    ABORTED = "aborted"
    DECODE_FAILED = "decode_failed"
    REPETITION = "repetition"
    LENGTH_LIMIT = "length_limit"
    TOKEN_BUDGET = "token_budget"


class SessionError(str, enum.Enum):
    """Session-level failure classification."""

    MODEL_NOT_LOADED = "model_not_loaded"
    TOKENIZE_FAILED = "tokenize_failed"
    PROMPT_TOO_LONG = "prompt_too_long"
    CONTEXT_FULL = "context_full"
    DECODE_FAILED = "decode_failed"
    ABORTED = "aborted"
    INTERNAL = "internal"


class GenerationState(str, enum.Enum):
    IDLE = "idle"
    TOKENIZING = "tokenizing"
    PRIMING = "priming"
    GENERATING = "generating"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class GenerateRequest:
    """Request for text generation.

    `sampler` and `repetition` are optional per-request overrides, either a
    config instance or a dict of fields (see `SamplerConfig.merged`).
    """

    prompt: str
    max_response_length: int | None = None
    max_new_tokens: int | None = None
    sampler: Any | None = None
    repetition: Any | None = None


@dataclass(frozen=True)
class Timing:
    prefill_s: float | None = None
    decode_s: float | None = None
    total_s: float | None = None
    tok_per_s: float | None = None


@dataclass
class GenerateResponse:
    """Response from text generation."""

    text: str
    stop_reason: StopReason | None = None
    error: SessionError | None = None
    message: str | None = None
    state: GenerationState = GenerationState.COMPLETED
    prompt_tokens: int = 0
    completion_tokens: int = 0
    timing: Timing = field(default_factory=Timing)

    @property
    def ok(self) -> bool:
        return self.state == GenerationState.COMPLETED

    @property
    def display_text(self) -> str:
        """Text for simple callers: the response, or an embedded error marker."""
        if self.ok or self.text:
            return self.text
        return f"Error: {self.message or self.error}"


@dataclass
class ModelInfo:
    """Information about a loaded model."""

    model_path: str | None
    backend: str
    n_ctx: int
    n_threads: int
    gpu_layers: int = 0
    loaded: bool = False
    extra: dict[str, Any] = field(default_factory=dict)
