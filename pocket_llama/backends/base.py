"""
Engine abstraction: the native operations a ModelSession needs.

A ModelSession never talks to llama.cpp directly. It goes through an Engine,
which exposes tokenization, token-by-token generation, embeddings, chat
template rendering and state snapshots. This keeps the session logic (locks,
stop strings, tool calls, error taxonomy) testable with an in-memory engine.

Engine Protocol:
    - n_ctx() / n_vocab() / n_embd() / eos_token(): model dimensions
    - tokenize() / detokenize() / token_to_bytes(): vocabulary access
    - generate(): iterator of sampled token ids, grammar-constrained
    - embed(): pooled embedding for one text
    - chat_template() / format_chat(): prompt rendering
    - snapshot() / restore() / fingerprint(): session state
    - describe(): model metadata for load_llama_model_info
    - close(): free native resources

Usage:
    ```python
    from pocket_llama.backends import EngineFactory
    from pocket_llama.config import LlamaModelParams

    params = LlamaModelParams.from_params({"model": "models/qwen2.5-0.5b.gguf"})
    engine = EngineFactory.create(params)
    tokens = engine.tokenize("Hello")
    ```
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from pocket_llama.errors import ValidationError


class Engine(ABC):
    """
    Abstract base class for model engines.

    Every method may raise; ModelSession wraps non-library exceptions in
    EngineError. Engines are not thread-safe; the session serialises access.
    """

    @abstractmethod
    def n_ctx(self) -> int:
        """Context window of the loaded session."""

    @abstractmethod
    def n_vocab(self) -> int:
        """Vocabulary size."""

    @abstractmethod
    def n_embd(self) -> int:
        """Embedding dimension."""

    @abstractmethod
    def eos_token(self) -> int:
        """End-of-sequence token id."""

    @abstractmethod
    def tokenize(self, text: str, add_special: bool = False, parse_special: bool = False) -> List[int]:
        """
        Convert text to token ids.

        Args:
            text: Text to tokenize
            add_special: Prepend the BOS token if the model uses one
            parse_special: Treat special-token markup in text as special tokens
        """

    @abstractmethod
    def token_to_bytes(self, token: int) -> bytes:
        """Raw bytes of one token; may be a partial UTF-8 sequence."""

    @abstractmethod
    def detokenize(self, tokens: Sequence[int]) -> str:
        """Convert token ids back to text."""

    @abstractmethod
    def generate(self, prompt_tokens: Sequence[int], config: Any) -> Iterator[int]:
        """
        Evaluate the prompt and yield sampled token ids, one per decode step.

        The iterator is unbounded; the caller decides when to stop and must
        close() it so the next call starts from a clean state.

        Args:
            prompt_tokens: Tokenized prompt
            config: SamplingConfig (grammar, penalties, seed, logit bias)
        """

    @abstractmethod
    def embed(self, text: str) -> List[float]:
        """Pooled, unnormalised embedding of text."""

    @abstractmethod
    def chat_template(self) -> Optional[str]:
        """Chat template shipped with the model, if any."""

    @abstractmethod
    def format_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        template: Optional[str] = None,
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        tool_choice: Any = None,
    ) -> Dict[str, Any]:
        """
        Render messages with a Jinja chat template.

        Returns:
            Dict with "prompt" (str) and "stop" (list of template stop strings)
        """

    @abstractmethod
    def snapshot(self) -> Any:
        """Picklable copy of the evaluation state (KV cache, tokens)."""

    @abstractmethod
    def restore(self, state: Any) -> None:
        """Restore a snapshot taken from an engine with the same fingerprint."""

    @abstractmethod
    def token_count(self) -> int:
        """Tokens currently held in the evaluation state."""

    @abstractmethod
    def fingerprint(self) -> Dict[str, Any]:
        """Values that must match for a snapshot to be restorable."""

    @abstractmethod
    def describe(self) -> Dict[str, Any]:
        """Model metadata: n_params, n_layer, n_ctx_train, description, size, metadata."""

    def close(self) -> None:
        """Free native resources. Safe to call more than once."""

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(n_ctx={self.n_ctx()}, n_vocab={self.n_vocab()})"


class EngineFactory:
    """
    Factory for creating engine instances.

    Usage:
        ```python
        engine = EngineFactory.create(params)  # llama.cpp engine
        ```
    """

    @staticmethod
    def create(params: Any, engine_type: str = "llamacpp") -> Engine:
        """
        Create and load an engine.

        Args:
            params: LlamaModelParams
            engine_type: Engine implementation name

        Raises:
            ValidationError: If the engine type is unknown
            EngineError: If the model cannot be loaded
        """
        if engine_type == "llamacpp":
            from pocket_llama.backends.llamacpp_engine import LlamaCppEngine
            return LlamaCppEngine(params)

        raise ValidationError(f"Unsupported engine type: {engine_type}")

    @staticmethod
    def list_available_engines() -> List[str]:
        """List engines whose runtime library is importable."""
        available = []

        try:
            import llama_cpp  # noqa: F401
            available.append("llamacpp")
        except ImportError:
            pass

        return available
