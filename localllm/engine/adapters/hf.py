"""Adapter for Hugging Face Transformers causal LMs running on CPU."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Sequence

from ...runtime import is_cuda_available
from .base import DECODE_CONTEXT_FULL, DECODE_OK, BaseAdapter

if TYPE_CHECKING:
    import torch

logger = logging.getLogger(__name__)

DECODE_ENGINE_FAILURE = -3


# =============================================================================
# Handles
# =============================================================================


@dataclass
class _HFModel:
    model: Any
    tokenizer: Any
    path: str
    eos_token_ids: set[int]
    # Incremental detokenization state: single-token decode drops leading
    # spaces and splits multi-byte characters for most tokenizers.
    generated: list[int] = field(default_factory=list)
    emitted: str = ""

    def reset_detokenizer(self) -> None:
        self.generated = []
        self.emitted = ""


@dataclass
class _HFContext:
    model: _HFModel
    capacity: int
    n_threads: int
    past_key_values: Any = None
    n_past: int = 0
    last_logits: torch.Tensor | None = None


# =============================================================================
# Adapter
# =============================================================================


class TransformersAdapter(BaseAdapter):
    """
    Transformers engine facade.

    The KV cache lives on the context handle; capacity is enforced here
    because Transformers models do not reject over-long inputs themselves.

    Example:
        >>> adapter = TransformersAdapter()
        >>> model = adapter.load_model("Qwen/Qwen2.5-0.5B-Instruct")
        >>> ctx = adapter.create_context(model, capacity=2048, n_threads=4)
        >>> adapter.decode(ctx, adapter.tokenize(model, "Hello"))
        0
    """

    name = "transformers"

    def __init__(self, *, dtype: Any = None, trust_remote_code: bool = False) -> None:
        self._dtype = dtype
        self._trust_remote_code = trust_remote_code

    # -------------------------------------------------------------------------
    # Loading / Releasing
    # -------------------------------------------------------------------------

    def load_model(self, path: str, *, gpu_layers: int = 0) -> _HFModel | None:
        import torch
        from transformers import AutoModelForCausalLM, AutoTokenizer

        device = "cuda" if gpu_layers > 0 and is_cuda_available() else "cpu"
        try:
            tokenizer = AutoTokenizer.from_pretrained(path, trust_remote_code=self._trust_remote_code)
            model = AutoModelForCausalLM.from_pretrained(
                path,
                torch_dtype=self._dtype or torch.float32,
                trust_remote_code=self._trust_remote_code,
            )
        except (OSError, ValueError) as exc:
            logger.error("Transformers failed to load model %s: %s", path, exc)
            return None

        model.to(device)
        model.eval()

        eos_ids: set[int] = set()
        if tokenizer.eos_token_id is not None:
            eos_ids.add(int(tokenizer.eos_token_id))
        gen_eos = getattr(getattr(model, "generation_config", None), "eos_token_id", None)
        if isinstance(gen_eos, int):
            eos_ids.add(gen_eos)
        elif isinstance(gen_eos, (list, tuple)):
            eos_ids.update(int(t) for t in gen_eos)

        return _HFModel(model=model, tokenizer=tokenizer, path=path, eos_token_ids=eos_ids)

    def create_context(self, model: _HFModel, *, capacity: int, n_threads: int) -> _HFContext | None:
        import torch

        max_positions = getattr(model.model.config, "max_position_embeddings", None)
        if max_positions is not None and capacity > int(max_positions):
            logger.error(
                "Requested context capacity %d exceeds model max_position_embeddings=%d",
                capacity,
                max_positions,
            )
            return None

        torch.set_num_threads(int(n_threads))
        return _HFContext(model=model, capacity=int(capacity), n_threads=int(n_threads))

    def release_context(self, context: _HFContext) -> None:
        context.past_key_values = None
        context.last_logits = None
        context.n_past = 0

    def release_model(self, model: _HFModel) -> None:
        import gc
        import torch

        model.model = None
        model.tokenizer = None
        model.reset_detokenizer()

        gc.collect()
        if is_cuda_available():
            torch.cuda.empty_cache()

    # -------------------------------------------------------------------------
    # Tokens
    # -------------------------------------------------------------------------

    def tokenize(self, model: _HFModel, text: str, *, add_special: bool = True) -> list[int]:
        try:
            ids = model.tokenizer.encode(text, add_special_tokens=add_special)
        except (TypeError, ValueError) as exc:
            logger.warning("Tokenization failed: %s", exc)
            return []
        return [int(t) for t in ids]

    def token_to_text(self, model: _HFModel, token: int) -> str | None:
        model.generated.append(int(token))
        text = model.tokenizer.decode(model.generated, skip_special_tokens=False)
        if text.endswith("\ufffd"):
            # Incomplete multi-byte sequence; wait for the next token.
            return ""
        if not text.startswith(model.emitted):
            # The tokenizer re-normalized earlier text; restart from this token.
            model.generated = [int(token)]
            text = model.tokenizer.decode(model.generated, skip_special_tokens=False)
            model.emitted = text
            return text
        fragment = text[len(model.emitted) :]
        model.emitted = text
        return fragment

    def is_end_of_generation(self, model: _HFModel, token: int) -> bool:
        return int(token) in model.eos_token_ids

    def n_vocab(self, model: _HFModel) -> int:
        return int(model.model.config.vocab_size)

    # -------------------------------------------------------------------------
    # Decoding
    # -------------------------------------------------------------------------

    def decode(self, context: _HFContext, tokens: Sequence[int]) -> int:
        import torch

        if context.n_past + len(tokens) > context.capacity:
            return DECODE_CONTEXT_FULL

        hf_model = context.model.model
        input_ids = torch.tensor([list(tokens)], dtype=torch.long, device=hf_model.device)
        try:
            with torch.no_grad():
                outputs = hf_model(
                    input_ids,
                    past_key_values=context.past_key_values,
                    use_cache=True,
                )
        except RuntimeError as exc:
            logger.warning("Forward pass failed at n_past=%d: %s", context.n_past, exc)
            return DECODE_ENGINE_FAILURE

        context.past_key_values = outputs.past_key_values
        context.last_logits = outputs.logits[0, -1, :].detach().float().cpu()
        context.n_past += len(tokens)
        return DECODE_OK

    def get_logits(self, context: _HFContext) -> torch.Tensor:
        if context.last_logits is None:
            raise RuntimeError("No logits available: decode() has not run on this context.")
        return context.last_logits

    def clear_cache(self, context: _HFContext) -> None:
        context.past_key_values = None
        context.last_logits = None
        context.n_past = 0
        context.model.reset_detokenizer()

    def describe(self, model: _HFModel) -> dict[str, Any]:
        return {
            "n_vocab": self.n_vocab(model),
            "model_type": getattr(model.model.config, "model_type", None),
            "dtype": str(getattr(model.model, "dtype", None)),
        }
