"""Engine-wide configuration."""

from __future__ import annotations

from dataclasses import dataclass, field

from ..runtime import default_thread_count
from .repetition import RepetitionGuardConfig
from .sampling import SamplerConfig

# Response length presets (characters).
CHAT_RESPONSE_LENGTH = 800
CODE_RESPONSE_LENGTH = 8000


@dataclass(frozen=True)
class EngineConfig:
    """Engine-wide defaults and limits.

    Notes:
    - `n_threads=None` resolves to `runtime.default_thread_count()`.
    - `safety_margin` tokens are kept free at the end of the window; engines
      misbehave when decoding into the very last slots.
    """

    backend: str = "llama_cpp"
    n_ctx: int = 2048
    n_threads: int | None = None
    gpu_layers: int = 0
    safety_margin: int = 10
    max_new_tokens: int = 512
    max_response_length: int = CHAT_RESPONSE_LENGTH
    sampler: SamplerConfig = field(default_factory=SamplerConfig)
    repetition: RepetitionGuardConfig = field(default_factory=RepetitionGuardConfig)

    @property
    def resolved_threads(self) -> int:
        return self.n_threads if self.n_threads is not None else default_thread_count()

    def validate(self) -> None:
        if self.n_ctx <= 0:
            raise ValueError("'n_ctx' must be > 0.")
        if self.n_threads is not None and self.n_threads <= 0:
            raise ValueError("'n_threads' must be > 0.")
        if self.gpu_layers < 0:
            raise ValueError("'gpu_layers' must be >= 0.")
        if self.safety_margin < 0:
            raise ValueError("'safety_margin' must be >= 0.")
        if self.safety_margin >= self.n_ctx:
            raise ValueError("'safety_margin' must be < 'n_ctx'.")
        if self.max_new_tokens <= 0:
            raise ValueError("'max_new_tokens' must be > 0.")
        if self.max_response_length <= 0:
            raise ValueError("'max_response_length' must be > 0.")
        self.sampler.validate()
        self.repetition.validate()
