"""Base adapter interface for inference engines."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Sequence

if TYPE_CHECKING:
    import torch

DECODE_OK = 0
DECODE_CONTEXT_FULL = 1
DECODE_ABORTED = 2


class BaseAdapter(ABC):
    """
    Abstract base class for inference-engine adapters.

    An adapter is a stateless facade over engine primitives. Model and context
    handles are opaque to everything above this layer and are owned by
    `ModelManager`; adapters never keep them alive on their own.

    Failure conventions:
        - `load_model` / `create_context` return None on failure.
        - `tokenize` returns an empty list on failure.
        - `decode` returns a status code instead of raising:
          0 = success, 1 = context window exhausted, 2 = aborted,
          anything else = engine-internal failure.
        - `token_to_text` returns None when a piece cannot be converted.
    """

    name = "base"

    @abstractmethod
    def load_model(self, path: str, *, gpu_layers: int = 0) -> Any | None:
        """
        Load model weights and vocabulary.

        Args:
            path: Local model file or directory.
            gpu_layers: Layers to offload to an accelerator (0 = CPU only).
        """

    @abstractmethod
    def create_context(self, model: Any, *, capacity: int, n_threads: int) -> Any | None:
        """
        Create a decoding context bound to `model`.

        Args:
            model: Handle returned by `load_model`.
            capacity: Fixed token capacity of the context window.
            n_threads: Worker threads used by the engine for one decode step.
        """

    @abstractmethod
    def tokenize(self, model: Any, text: str, *, add_special: bool = True) -> list[int]:
        pass

    @abstractmethod
    def decode(self, context: Any, tokens: Sequence[int]) -> int:
        """
        Run one forward pass over `tokens`, appended after the tokens already
        in the context. Logits for the last token become available via
        `get_logits`.
        """

    @abstractmethod
    def get_logits(self, context: Any) -> torch.Tensor:
        """Return 1-D logits over the vocabulary at the last decoded position."""

    @abstractmethod
    def token_to_text(self, model: Any, token: int) -> str | None:
        pass

    @abstractmethod
    def is_end_of_generation(self, model: Any, token: int) -> bool:
        pass

    @abstractmethod
    def n_vocab(self, model: Any) -> int:
        pass

    @abstractmethod
    def clear_cache(self, context: Any) -> None:
        """Drop every cached position so the next decode starts at position 0."""

    @abstractmethod
    def release_context(self, context: Any) -> None:
        pass

    @abstractmethod
    def release_model(self, model: Any) -> None:
        pass

    def describe(self, model: Any) -> dict[str, Any]:
        """
        Return engine-specific metadata about a loaded model.

        Default implementation reports the vocabulary size only.
        """
        return {"n_vocab": self.n_vocab(model)}
