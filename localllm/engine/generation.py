"""Token-by-token generation over a bounded context (single-device, single-flight).

This module provides the core controller:
- prompt tokenization and context admission
- priming the decoding context with the prompt in one batch
- the sample -> detokenize -> guard -> decode loop
- classification of every way a session can end

Engine faults never propagate out of `GenerationEngine.generate`: they become
a FAILED response that keeps whatever text was already produced.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field

from .adapters.base import DECODE_ABORTED, DECODE_CONTEXT_FULL, DECODE_OK
from .config import CHAT_RESPONSE_LENGTH, EngineConfig
from .context_window import ContextWindow
from .lifecycle import ModelManager
from .registry import get_adapter
from .repetition import RepetitionGuard
from .sampling import SamplerChain
from .types import (
    NO_RESPONSE_TEXT,
    GenerateRequest,
    GenerateResponse,
    GenerationState,
    SessionError,
    StopReason,
    Timing,
)

logger = logging.getLogger(__name__)

MODEL_NOT_LOADED_MESSAGE = "Model not loaded. Please load a model first."


@dataclass
class GenerationSession:
    """State of one request -> response execution. Never shared."""

    request: GenerateRequest
    window: ContextWindow
    max_response_length: int
    max_new_tokens: int
    state: GenerationState = GenerationState.IDLE
    prompt_tokens: list[int] = field(default_factory=list)
    budget: int = 0
    response: str = ""
    completion_tokens: int = 0
    started: float = field(default_factory=time.monotonic)
    primed_at: float | None = None

    @property
    def budget_remaining(self) -> int:
        return len(self.prompt_tokens) + self.budget - self.window.committed


class GenerationEngine:
    """Core generation controller.

    Thread-safety:
        The model/context pair is a shared resource. Every `generate` call
        holds the `ModelManager` lock for its whole duration, so concurrent
        calls (and concurrent load/unload) are serialized.
    """

    def __init__(self, manager: ModelManager, *, config: EngineConfig | None = None) -> None:
        self._manager = manager
        self._config = config or manager.config
        self._config.validate()
        if self._config.n_ctx != manager.config.n_ctx:
            logger.warning(
                "Ignoring n_ctx=%d: the decoding context is created with n_ctx=%d",
                self._config.n_ctx,
                manager.config.n_ctx,
            )
        self._cancel = threading.Event()
        self._state = GenerationState.IDLE

    @property
    def manager(self) -> ModelManager:
        return self._manager

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def state(self) -> GenerationState:
        return self._state

    def cancel(self) -> None:
        """Ask the running (or next queued) generation to stop at its next decode boundary."""
        self._cancel.set()

    def shutdown(self) -> None:
        self._manager.unload()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    def generate(self, request: GenerateRequest | str) -> GenerateResponse:
        """Run one generation session to completion.

        Raises:
            ValueError: invalid request-level overrides. Nothing else escapes;
                failures are reported on the returned response.
        """
        if isinstance(request, str):
            request = GenerateRequest(prompt=request)

        cfg = self._config
        sampler_cfg = cfg.sampler.merged(request.sampler)
        repetition_cfg = cfg.repetition.merged(request.repetition)
        max_response_length = (
            cfg.max_response_length
            if request.max_response_length is None
            else int(request.max_response_length)
        )
        max_new_tokens = cfg.max_new_tokens if request.max_new_tokens is None else int(request.max_new_tokens)
        if max_response_length <= 0:
            raise ValueError("'max_response_length' must be > 0.")
        if max_new_tokens <= 0:
            raise ValueError("'max_new_tokens' must be > 0.")

        with self._manager.lock:
            # The window must match the context the manager actually created.
            window_cfg = self._manager.config
            session = GenerationSession(
                request=request,
                window=ContextWindow(window_cfg.n_ctx, safety_margin=window_cfg.safety_margin),
                max_response_length=max_response_length,
                max_new_tokens=max_new_tokens,
            )
            try:
                return self._run(
                    session,
                    chain=SamplerChain.from_config(sampler_cfg),
                    guard=RepetitionGuard(repetition_cfg),
                )
            except Exception as exc:
                logger.exception("Generation failed in state %s", session.state.value)
                return self._internal_failure(session, exc)
            finally:
                self._cancel.clear()
                self._state = GenerationState.IDLE

    def generate_text(self, prompt: str, max_response_length: int = CHAT_RESPONSE_LENGTH) -> str:
        """Simple string-in/string-out call; errors come back as "Error: ..." text."""
        response = self.generate(GenerateRequest(prompt=prompt, max_response_length=max_response_length))
        return response.display_text

    # -------------------------------------------------------------------------
    # Internal: state machine
    # -------------------------------------------------------------------------

    def _enter(self, session: GenerationSession, state: GenerationState) -> None:
        session.state = state
        self._state = state

    def _run(
        self,
        session: GenerationSession,
        *,
        chain: SamplerChain,
        guard: RepetitionGuard,
    ) -> GenerateResponse:
        manager = self._manager
        adapter = manager.adapter

        # Idle -> Tokenizing
        self._enter(session, GenerationState.TOKENIZING)
        if not manager.is_ready():
            return self._fail(session, SessionError.MODEL_NOT_LOADED, MODEL_NOT_LOADED_MESSAGE)

        model = manager.model
        context = manager.context

        tokens = adapter.tokenize(model, session.request.prompt, add_special=True)
        if not tokens:
            return self._fail(session, SessionError.TOKENIZE_FAILED, "Failed to tokenize prompt.")
        session.prompt_tokens = list(tokens)
        n_prompt = len(tokens)

        # Tokenizing -> Priming
        self._enter(session, GenerationState.PRIMING)
        window = session.window
        admission = window.admit(n_prompt, session.max_new_tokens)
        if not admission.admitted:
            return self._fail(
                session,
                SessionError.PROMPT_TOO_LONG,
                admission.describe(prompt_tokens=n_prompt, capacity=window.capacity),
            )
        session.budget = admission.budget

        # Fresh session: nothing from a previous call stays in the cache.
        adapter.clear_cache(context)
        code = adapter.decode(context, tokens)
        if code == DECODE_CONTEXT_FULL:
            return self._fail(
                session,
                SessionError.CONTEXT_FULL,
                f"Context window exhausted while processing the prompt ({n_prompt} tokens).",
                stop_reason=StopReason.PRIMING_CONTEXT_FULL,
            )
        if code != DECODE_OK:
            return self._fail(
                session,
                SessionError.DECODE_FAILED,
                f"Failed to process prompt (decode returned {code}).",
                stop_reason=StopReason.DECODE_FAILED,
            )
        window.commit(n_prompt)
        session.primed_at = time.monotonic()
        logger.debug("Primed %d prompt tokens; budget=%d", n_prompt, session.budget)

        # Priming -> Generating
        self._enter(session, GenerationState.GENERATING)
        stop_reason = StopReason.TOKEN_BUDGET
        limit = n_prompt + session.budget

        while window.committed < limit:
            if self._cancel.is_set():
                stop_reason = StopReason.ABORTED
                break

            token = chain.sample(adapter.get_logits(context))
            if adapter.is_end_of_generation(model, token):
                stop_reason = StopReason.END_OF_SEQUENCE
                break

            fragment = adapter.token_to_text(model, token)
            if fragment is None:
                logger.debug("Skipping token %d: no text fragment", token)
            else:
                session.response += fragment
            session.completion_tokens += 1

            hit = guard.check(session.response)
            if hit is not None:
                logger.debug(
                    "Repetition early-stop: kind=%s window=%d count=%d completion_tokens=%d",
                    hit.kind,
                    hit.window,
                    hit.count,
                    session.completion_tokens,
                )
                stop_reason = StopReason.REPETITION
                break

            if len(session.response) > session.max_response_length:
                stop_reason = StopReason.LENGTH_LIMIT
                break

            if not window.fits(1):
                stop_reason = StopReason.CONTEXT_FULL
                break

            code = adapter.decode(context, [token])
            if code != DECODE_OK:
                if code == DECODE_CONTEXT_FULL:
                    stop_reason = StopReason.CONTEXT_FULL
                elif code == DECODE_ABORTED:
                    stop_reason = StopReason.ABORTED
                else:
                    stop_reason = StopReason.DECODE_FAILED
                logger.warning(
                    "Decode returned %d after %d tokens; stopping with %s",
                    code,
                    session.completion_tokens,
                    stop_reason.value,
                )
                break

            window.commit(1)
            chain.accept(token)

        return self._complete(session, stop_reason)

    # -------------------------------------------------------------------------
    # Internal: terminal states
    # -------------------------------------------------------------------------

    def _timing(self, session: GenerationSession) -> Timing:
        ended = time.monotonic()
        prefill_s = None
        decode_s = None
        tok_per_s = None
        if session.primed_at is not None:
            prefill_s = max(session.primed_at - session.started, 0.0)
            decode_s = max(ended - session.primed_at, 0.0)
            if decode_s > 0 and session.completion_tokens > 0:
                tok_per_s = session.completion_tokens / decode_s
        return Timing(
            prefill_s=prefill_s,
            decode_s=decode_s,
            total_s=max(ended - session.started, 0.0),
            tok_per_s=tok_per_s,
        )

    def _complete(self, session: GenerationSession, stop_reason: StopReason) -> GenerateResponse:
        self._enter(session, GenerationState.COMPLETED)
        text = session.response if session.response else NO_RESPONSE_TEXT
        logger.debug(
            "Generation completed: stop_reason=%s completion_tokens=%d chars=%d budget_left=%d",
            stop_reason.value,
            session.completion_tokens,
            len(session.response),
            session.budget_remaining,
        )
        return GenerateResponse(
            text=text,
            stop_reason=stop_reason,
            state=GenerationState.COMPLETED,
            prompt_tokens=len(session.prompt_tokens),
            completion_tokens=session.completion_tokens,
            timing=self._timing(session),
        )

    def _fail(
        self,
        session: GenerationSession,
        error: SessionError,
        message: str,
        *,
        stop_reason: StopReason | None = None,
    ) -> GenerateResponse:
        failed_in = session.state
        self._enter(session, GenerationState.FAILED)
        logger.warning("Generation failed in %s: %s", failed_in.value, message)
        return GenerateResponse(
            text="",
            stop_reason=stop_reason,
            error=error,
            message=message,
            state=GenerationState.FAILED,
            prompt_tokens=len(session.prompt_tokens),
            timing=self._timing(session),
        )

    def _internal_failure(self, session: GenerationSession, exc: Exception) -> GenerateResponse:
        self._enter(session, GenerationState.FAILED)
        message = f"Error during generation: {exc}"
        text = f"{message}\n{session.response}" if session.response else message
        return GenerateResponse(
            text=text,
            error=SessionError.INTERNAL,
            message=message,
            state=GenerationState.FAILED,
            prompt_tokens=len(session.prompt_tokens),
            completion_tokens=session.completion_tokens,
            timing=self._timing(session),
        )


def create_engine(
    model_path: str | None = None,
    *,
    backend: str | None = None,
    config: EngineConfig | None = None,
) -> GenerationEngine:
    """Build a manager + engine for `backend`, loading `model_path` if given.

    Raises:
        UnknownBackendError: `backend` is not registered.
        LoadError: the model could not be loaded.
    """
    cfg = config or EngineConfig()
    adapter = get_adapter(backend or cfg.backend)
    manager = ModelManager(adapter, config=cfg)
    if model_path is not None:
        manager.load(model_path)
    return GenerationEngine(manager, config=cfg)
