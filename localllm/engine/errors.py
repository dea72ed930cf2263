"""Exception types raised by the engine.

Load-time failures are exceptions. Generation-time failures are not: they are
reported as states on `GenerateResponse` (see `types.SessionError`).
"""

from __future__ import annotations


class LocalLLMError(RuntimeError):
    """Base class for all localllm errors."""


class LoadError(LocalLLMError):
    """Model could not be brought to the ready state.

    After any LoadError the model manager is left unloaded.
    """

    def __init__(self, message: str, *, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


class PathUnreadableError(LoadError):
    pass


class ModelLoadFailedError(LoadError):
    pass


class ContextCreateFailedError(LoadError):
    pass


class ContextOverflowError(LocalLLMError):
    def __init__(self, *, committed: int, requested: int, capacity: int) -> None:
        super().__init__(
            f"Cannot commit {requested} tokens: {committed} already committed "
            f"(capacity={capacity})."
        )
        self.committed = committed
        self.requested = requested
        self.capacity = capacity


class UnknownBackendError(ValueError):
    def __init__(self, backend: str, available: list[str]) -> None:
        super().__init__(
            f"Unknown backend: {backend!r}. Available: {', '.join(available)}"
        )
        self.backend = backend
        self.available = available
