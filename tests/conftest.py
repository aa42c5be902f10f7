"""
Shared fixtures: an in-memory Engine so session and completion logic can be
tested without a GGUF model.

FakeEngine uses a byte-level vocabulary: token id = byte value + 2, with
0 = BOS and 1 = EOS. Generation replays a scripted text, then emits EOS.
"""

import threading
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

import pytest

from pocket_llama.backends import Engine
from pocket_llama.errors import EngineError

BOS = 0
EOS = 1
OFFSET = 2


def encode(text: str) -> List[int]:
    return [b + OFFSET for b in text.encode("utf-8")]


class FakeEngine(Engine):
    """Scripted engine with hooks for concurrency and failure tests."""

    def __init__(
        self,
        script: str = "Hello world",
        n_ctx: int = 512,
        chat_template: Optional[str] = None,
        infinite: bool = False,
        fail_after: Optional[int] = None,
    ):
        self.script = script
        self._n_ctx = n_ctx
        self._chat_template = chat_template
        self.infinite = infinite
        self.fail_after = fail_after

        self.gate: Optional[threading.Event] = None
        self.started = threading.Event()
        self.state: Dict[str, Any] = {"tokens": []}
        self.closed = False
        self.fail_restore = False
        self.last_prompt: Optional[str] = None
        self.last_config: Any = None
        self.generators_closed = 0

    def n_ctx(self) -> int:
        return self._n_ctx

    def n_vocab(self) -> int:
        return 256 + OFFSET

    def n_embd(self) -> int:
        return 2

    def eos_token(self) -> int:
        return EOS

    def tokenize(self, text: str, add_special: bool = False, parse_special: bool = False) -> List[int]:
        self.last_prompt = text
        return ([BOS] if add_special else []) + encode(text)

    def token_to_bytes(self, token: int) -> bytes:
        if token < OFFSET:
            return b""
        return bytes([token - OFFSET])

    def detokenize(self, tokens: Sequence[int]) -> str:
        return b"".join(self.token_to_bytes(t) for t in tokens).decode("utf-8", errors="replace")

    def generate(self, prompt_tokens: Sequence[int], config: Any) -> Iterator[int]:
        self.last_config = config
        self.state = {"tokens": list(prompt_tokens)}
        try:
            count = 0
            while True:
                tokens = encode(self.script)
                for token in tokens:
                    if self.gate is not None:
                        self.started.set()
                        self.gate.wait(timeout=5)
                    if self.fail_after is not None and count >= self.fail_after:
                        raise RuntimeError("decode failed")
                    self.started.set()
                    self.state["tokens"].append(token)
                    count += 1
                    yield token
                if not self.infinite:
                    break
            yield EOS
        finally:
            self.generators_closed += 1

    def embed(self, text: str) -> List[float]:
        return [3.0, 4.0]

    def chat_template(self) -> Optional[str]:
        return self._chat_template

    def format_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        template: Optional[str] = None,
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        tool_choice: Any = None,
    ) -> Dict[str, Any]:
        if template and "broken" in template:
            raise EngineError("Chat template failed to render: broken")
        prompt = "".join(f"<{m['role']}>{m['content']}<end>" for m in messages)
        return {"prompt": prompt + "<assistant>", "stop": ["<end>"]}

    def snapshot(self) -> Any:
        return {"tokens": list(self.state["tokens"])}

    def restore(self, state: Any) -> None:
        if self.fail_restore:
            self.fail_restore = False
            self.state = {"tokens": ["garbage"]}
            raise EngineError("restore rejected")
        self.state = {"tokens": list(state["tokens"])}

    def token_count(self) -> int:
        return len(self.state["tokens"])

    def fingerprint(self) -> Dict[str, Any]:
        return {"model": "fake.gguf", "n_vocab": self.n_vocab(), "n_ctx": self._n_ctx, "n_embd": 2}

    def describe(self) -> Dict[str, Any]:
        return {
            "n_params": 494_000_000,
            "n_vocab": self.n_vocab(),
            "n_ctx_train": 32768,
            "n_embd": 896,
            "n_layer": 24,
            "description": "qwen2 1B Q4_K - Medium",
            "size": 397_000_000,
            "metadata": {"general.file_type": "15", "general.architecture": "qwen2"},
        }

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def make_session():
    """Build a ModelSession around a given FakeEngine."""
    from pocket_llama.session import ModelSession

    def factory(engine: FakeEngine, **params: Any) -> ModelSession:
        return ModelSession.create({"model": "fake.gguf", **params}, engine_factory=lambda p: engine)

    return factory


@pytest.fixture
def person_schema():
    return {
        "type": "object",
        "properties": {"name": {"type": "string"}, "age": {"type": "number"}},
        "required": ["name"],
    }


@pytest.fixture
def weather_tool():
    return {
        "type": "function",
        "function": {
            "name": "get_weather",
            "description": "Current weather for a city",
            "parameters": {
                "type": "object",
                "properties": {"city": {"type": "string"}, "days": {"type": "integer", "minimum": 1}},
                "required": ["city"],
            },
        },
    }
