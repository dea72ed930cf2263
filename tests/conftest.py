import os
import sys

import pytest


# Ensure the repository root is on sys.path so tests can import local entrypoints
# like apps.cli.main without requiring an editable install.
_REPO_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if _REPO_ROOT not in sys.path:
    sys.path.insert(0, _REPO_ROOT)


import torch  # noqa: E402

from localllm.engine.adapters.base import DECODE_OK, BaseAdapter  # noqa: E402


CHAR_OFFSET = 1000
BOS_ID = 1
EOS_ID = 2
SILENT_ID = 3  # a token with no text fragment
VOCAB_SIZE = CHAR_OFFSET + 128


class FakeTokenizer:
    def encode(self, text: str, *, add_special_tokens: bool = True) -> list[int]:
        ids = [BOS_ID] if add_special_tokens else []
        ids.extend(CHAR_OFFSET + ord(ch) for ch in text)
        return ids

    def decode(self, ids) -> str:
        return "".join(chr(int(t) - CHAR_OFFSET) for t in ids if int(t) >= CHAR_OFFSET)


class FakeModel:
    def __init__(self, path: str) -> None:
        self.path = path


class FakeContext:
    def __init__(self, capacity: int, n_threads: int) -> None:
        self.capacity = capacity
        self.n_threads = n_threads
        self.steps = 0
        self.decodes = 0


class FakeAdapter(BaseAdapter):
    """Scripted engine: the i-th `get_logits` call after a cache clear peaks at
    the i-th scripted token, then at EOS once the script runs out.

    `decode_codes` maps a decode-call index within the session (0 is the
    prompt) to the status code returned for that call.
    """

    name = "fake"

    CHAR_OFFSET = CHAR_OFFSET
    BOS_ID = BOS_ID
    EOS_ID = EOS_ID
    SILENT_ID = SILENT_ID
    VOCAB_SIZE = VOCAB_SIZE

    def __init__(
        self,
        script: str = "",
        *,
        tokens=None,
        decode_codes=None,
        fail_load: bool = False,
        raise_on_load: bool = False,
        fail_context: bool = False,
        raise_at_step=None,
        empty_tokenize: bool = False,
        step_hook=None,
    ) -> None:
        self.tokenizer = FakeTokenizer()
        self.script = list(tokens) if tokens is not None else self.tokenizer.encode(script, add_special_tokens=False)
        self.decode_codes = dict(decode_codes or {})
        self.fail_load = fail_load
        self.raise_on_load = raise_on_load
        self.fail_context = fail_context
        self.raise_at_step = raise_at_step
        self.empty_tokenize = empty_tokenize
        self.step_hook = step_hook

        self.events: list[str] = []
        self.decode_calls: list[list[int]] = []
        self.loads = 0
        self.cache_clears = 0
        self.models_released = 0
        self.contexts_released = 0

    def load_model(self, path, *, gpu_layers=0):
        self.loads += 1
        self.events.append(f"load_model:{os.path.basename(path)}")
        if self.raise_on_load:
            raise RuntimeError("unsupported model format")
        if self.fail_load:
            return None
        return FakeModel(path)

    def create_context(self, model, *, capacity, n_threads):
        self.events.append("create_context")
        if self.fail_context:
            return None
        return FakeContext(capacity, n_threads)

    def tokenize(self, model, text, *, add_special=True):
        if self.empty_tokenize:
            return []
        return self.tokenizer.encode(text, add_special_tokens=add_special)

    def decode(self, context, tokens):
        index = context.decodes
        context.decodes += 1
        self.decode_calls.append(list(tokens))
        return self.decode_codes.get(index, DECODE_OK)

    def get_logits(self, context):
        step = context.steps
        context.steps += 1
        if self.step_hook is not None:
            self.step_hook(step)
        if self.raise_at_step is not None and step == self.raise_at_step:
            raise RuntimeError("fake engine fault")
        token = self.script[step] if step < len(self.script) else EOS_ID
        logits = torch.full((VOCAB_SIZE,), -10.0)
        logits[token] = 10.0
        return logits

    def token_to_text(self, model, token):
        if token == SILENT_ID:
            return None
        return self.tokenizer.decode([token])

    def is_end_of_generation(self, model, token):
        return token == EOS_ID

    def n_vocab(self, model):
        return VOCAB_SIZE

    def clear_cache(self, context):
        self.cache_clears += 1
        context.steps = 0
        context.decodes = 0

    def release_context(self, context):
        self.contexts_released += 1
        self.events.append("release_context")

    def release_model(self, model):
        self.models_released += 1
        self.events.append("release_model")


@pytest.fixture
def model_file(tmp_path):
    path = tmp_path / "model.gguf"
    path.write_bytes(b"GGUF")
    return path


@pytest.fixture
def fake_adapter_cls():
    return FakeAdapter


@pytest.fixture
def make_engine(model_file):
    """Factory: (adapter, engine) with the model already loaded."""
    from localllm.engine import EngineConfig, GenerationEngine, ModelManager

    def _make(adapter=None, **config_kwargs):
        adapter = adapter if adapter is not None else FakeAdapter()
        config = EngineConfig(backend=adapter.name, n_threads=2, **config_kwargs)
        manager = ModelManager(adapter, config=config)
        manager.load(model_file)
        return adapter, GenerationEngine(manager)

    return _make
