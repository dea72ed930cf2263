import string
import threading
import time

import pytest


torch = pytest.importorskip("torch", reason="torch not installed")


from localllm.engine import (
    EngineConfig,
    GenerateRequest,
    GenerationEngine,
    GenerationState,
    ModelManager,
    SessionError,
    StopReason,
)
from localllm.engine.generation import MODEL_NOT_LOADED_MESSAGE
from localllm.engine.types import NO_RESPONSE_TEXT


VARIED = string.ascii_letters + string.digits


def test_generate_runs_script_to_end_of_sequence(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("Hi there."))
    resp = engine.generate("Hello")

    assert resp.ok
    assert resp.state == GenerationState.COMPLETED
    assert resp.text == "Hi there."
    assert resp.stop_reason == StopReason.END_OF_SEQUENCE
    assert resp.prompt_tokens == 6  # BOS + "Hello"
    assert resp.completion_tokens == len("Hi there.")
    # Prompt primed in one batch, then one decode per committed token.
    assert adapter.decode_calls[0] == adapter.tokenizer.encode("Hello")
    assert all(len(call) == 1 for call in adapter.decode_calls[1:])
    assert engine.state == GenerationState.IDLE


def test_immediate_end_of_sequence_yields_placeholder_text(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls(""))
    resp = engine.generate("Hello")

    assert resp.ok
    assert resp.text == NO_RESPONSE_TEXT
    assert resp.stop_reason == StopReason.END_OF_SEQUENCE
    assert resp.completion_tokens == 0


def test_prompt_too_long_fails_without_decoding(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("x"), n_ctx=16)
    resp = engine.generate("a" * 20)

    assert not resp.ok
    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.PROMPT_TOO_LONG
    assert "Prompt too long" in resp.message
    assert adapter.decode_calls == []


def test_prompt_that_leaves_no_room_for_response_is_rejected(make_engine, fake_adapter_cls):
    # 11 tokens + 10 margin > 16 capacity.
    adapter, engine = make_engine(fake_adapter_cls("x"), n_ctx=16)
    resp = engine.generate("a" * 10)

    assert resp.error == SessionError.PROMPT_TOO_LONG
    assert adapter.decode_calls == []


def test_tokenize_failure(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("x", empty_tokenize=True))
    resp = engine.generate("Hello")

    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.TOKENIZE_FAILED
    assert adapter.decode_calls == []


def test_model_not_loaded_after_unload(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("x"))
    engine.shutdown()
    resp = engine.generate("Hello")

    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.MODEL_NOT_LOADED
    assert resp.message == MODEL_NOT_LOADED_MESSAGE
    assert adapter.decode_calls == []
    assert engine.generate_text("Hello") == f"Error: {MODEL_NOT_LOADED_MESSAGE}"


def test_priming_context_full_fails_without_generating(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("abc", decode_codes={0: 1}))
    resp = engine.generate("Hello")

    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.CONTEXT_FULL
    assert resp.stop_reason == StopReason.PRIMING_CONTEXT_FULL
    assert resp.text == ""
    assert len(adapter.decode_calls) == 1
    assert engine.manager.context.steps == 0


def test_priming_decode_failure(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("abc", decode_codes={0: -1}))
    resp = engine.generate("Hello")

    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.DECODE_FAILED
    assert engine.manager.context.steps == 0


def test_context_full_mid_generation_keeps_partial_text(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("Hello world", decode_codes={3: 1}))
    resp = engine.generate("Hi")

    assert resp.ok
    assert resp.stop_reason == StopReason.CONTEXT_FULL
    assert resp.text == "Hel"


def test_decode_abort_mid_generation(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("Hello world", decode_codes={2: 2}))
    resp = engine.generate("Hi")

    assert resp.ok
    assert resp.stop_reason == StopReason.ABORTED
    assert resp.text == "He"


def test_decode_failure_mid_generation(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("Hello world", decode_codes={4: -1}))
    resp = engine.generate("Hi")

    assert resp.ok
    assert resp.stop_reason == StopReason.DECODE_FAILED
    assert resp.text == "Hell"


def test_response_length_limit(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls(VARIED * 2))
    resp = engine.generate(GenerateRequest(prompt="Hi", max_response_length=50))

    assert resp.ok
    assert resp.stop_reason == StopReason.LENGTH_LIMIT
    assert len(resp.text) == 51
    assert resp.text == (VARIED * 2)[:51]


def test_token_budget_from_max_new_tokens(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls(VARIED), n_ctx=64)
    resp = engine.generate(GenerateRequest(prompt="Hi", max_new_tokens=5))

    assert resp.ok
    assert resp.stop_reason == StopReason.TOKEN_BUDGET
    assert resp.text == VARIED[:5]
    assert resp.completion_tokens == 5
    # Prompt decode plus one decode per sampled token.
    assert len(adapter.decode_calls) == 6


def test_token_budget_bounded_by_context_capacity(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls(VARIED), n_ctx=32, safety_margin=10)
    resp = engine.generate("Hi")

    # 32 capacity - 3 prompt tokens - 10 margin.
    assert resp.stop_reason == StopReason.TOKEN_BUDGET
    assert resp.completion_tokens == 19
    assert resp.prompt_tokens + resp.completion_tokens <= 32 - 10


def test_repetition_stops_generation(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("A" * 200))
    resp = engine.generate("Hi")

    assert resp.ok
    assert resp.stop_reason == StopReason.REPETITION
    assert resp.text == "A" * 23


def test_repetition_guard_can_be_disabled_per_request(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("A" * 40))
    resp = engine.generate(GenerateRequest(prompt="Hi", repetition={"enabled": False}))

    assert resp.stop_reason == StopReason.END_OF_SEQUENCE
    assert resp.text == "A" * 40


def test_tokens_without_text_are_skipped(make_engine, fake_adapter_cls):
    cls = fake_adapter_cls
    tokens = [cls.SILENT_ID, cls.CHAR_OFFSET + ord("o"), cls.SILENT_ID, cls.CHAR_OFFSET + ord("k")]
    _, engine = make_engine(cls(tokens=tokens))
    resp = engine.generate("Hi")

    assert resp.text == "ok"
    assert resp.completion_tokens == 4


def test_engine_fault_becomes_failed_response_with_partial_text(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("Hello world", raise_at_step=3))
    resp = engine.generate("Hi")

    assert resp.state == GenerationState.FAILED
    assert resp.error == SessionError.INTERNAL
    assert resp.text.startswith("Error during generation: fake engine fault")
    assert resp.text.endswith("Hel")
    assert engine.state == GenerationState.IDLE


def test_cancel_stops_at_next_step(make_engine, fake_adapter_cls):
    holder = {}

    def _hook(step):
        if step == 2 and not holder.get("fired"):
            holder["fired"] = True
            holder["engine"].cancel()

    _, engine = make_engine(fake_adapter_cls("abcdef", step_hook=_hook))
    holder["engine"] = engine
    resp = engine.generate("Hi")

    assert resp.ok
    assert resp.stop_reason == StopReason.ABORTED
    assert resp.text == "abc"

    # Cancellation does not leak into the next call.
    again = engine.generate("Hi")
    assert again.stop_reason == StopReason.END_OF_SEQUENCE
    assert again.text == "abcdef"


def test_sessions_are_independent(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("same answer"))
    first = engine.generate("Hi")
    second = engine.generate("Hi")

    assert first.text == second.text == "same answer"
    assert adapter.cache_clears == 2


def test_invalid_request_overrides_raise(make_engine, fake_adapter_cls):
    adapter, engine = make_engine(fake_adapter_cls("x"))

    with pytest.raises(ValueError):
        engine.generate(GenerateRequest(prompt="Hi", sampler={"top_k": -1}))
    with pytest.raises(ValueError):
        engine.generate(GenerateRequest(prompt="Hi", sampler={"bogus": 1}))
    with pytest.raises(ValueError):
        engine.generate(GenerateRequest(prompt="Hi", max_response_length=0))
    assert adapter.decode_calls == []


def test_generate_text_returns_plain_text(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("Sure."))
    assert engine.generate_text("Hi") == "Sure."


def test_timing_is_reported(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("abc"))
    resp = engine.generate("Hi")

    assert resp.timing.total_s is not None and resp.timing.total_s >= 0
    assert resp.timing.prefill_s is not None
    assert resp.timing.decode_s is not None


def test_concurrent_generate_waits_for_lock(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("abc"))
    results = []

    with engine.manager.lock:
        worker = threading.Thread(target=lambda: results.append(engine.generate("Hi")))
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        assert results == []

    worker.join(timeout=5)
    assert not worker.is_alive()
    assert results[0].text == "abc"


def test_concurrent_generate_calls_are_serialized(make_engine, fake_adapter_cls):
    active = {"now": 0, "max": 0}
    guard = threading.Lock()

    def _hook(step):
        with guard:
            active["now"] += 1
            active["max"] = max(active["max"], active["now"])
        time.sleep(0.001)
        with guard:
            active["now"] -= 1

    _, engine = make_engine(fake_adapter_cls("abcdefgh", step_hook=_hook))
    results = []
    threads = [threading.Thread(target=lambda: results.append(engine.generate("Hi"))) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert len(results) == 4
    assert all(r.text == "abcdefgh" for r in results)
    assert active["max"] == 1


def test_window_follows_the_loaded_context_capacity(model_file, fake_adapter_cls):
    adapter = fake_adapter_cls(VARIED * 3)
    manager = ModelManager(adapter, config=EngineConfig(backend="fake", n_ctx=32, n_threads=2))
    manager.load(model_file)
    engine = GenerationEngine(manager, config=EngineConfig(backend="fake", n_ctx=4096, n_threads=2))

    resp = engine.generate("Hi")

    assert resp.stop_reason == StopReason.TOKEN_BUDGET
    assert resp.completion_tokens == 32 - 3 - 10
    assert sum(len(call) for call in adapter.decode_calls) <= 32 - 10


def test_cancel_while_waiting_for_lock_aborts_that_call(make_engine, fake_adapter_cls):
    _, engine = make_engine(fake_adapter_cls("abcdef"))
    results = []

    with engine.manager.lock:
        worker = threading.Thread(target=lambda: results.append(engine.generate("Hi")))
        worker.start()
        worker.join(timeout=0.2)
        assert worker.is_alive()
        engine.cancel()

    worker.join(timeout=5)
    assert not worker.is_alive()
    assert results[0].ok
    assert results[0].stop_reason == StopReason.ABORTED
    assert results[0].completion_tokens == 0

    # The flag is consumed by the aborted session.
    again = engine.generate("Hi")
    assert again.stop_reason == StopReason.END_OF_SEQUENCE
    assert again.text == "abcdef"
