"""
llama.cpp engine built on llama-cpp-python.

Wraps one llama_cpp.Llama instance and exposes the Engine protocol:
token-level generation with GBNF grammars and logit bias, tokenization,
embeddings, Jinja chat templates from GGUF metadata and picklable state
snapshots.

Features:
    - GGUF models, CPU or GPU offload (Metal, CUDA, Vulkan builds)
    - Grammar-constrained sampling via LlamaGrammar
    - Logit bias through a LogitsProcessorList
    - Model chat templates rendered with Jinja2ChatFormatter

Usage:
    ```python
    from pocket_llama.backends.llamacpp_engine import LlamaCppEngine
    from pocket_llama.config import LlamaModelParams

    engine = LlamaCppEngine(LlamaModelParams(model="models/qwen2.5-0.5b.gguf", n_gpu_layers=99))
    for token in engine.generate(engine.tokenize("Hello", add_special=True), config):
        ...
    ```
"""

import logging
import math
import os
import random
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence

from pocket_llama.backends.base import Engine
from pocket_llama.errors import EngineError, ParseError

logger = logging.getLogger(__name__)


class LlamaCppEngine(Engine):
    """
    Engine for llama.cpp (GGUF) models.

    Attributes:
        params: LlamaModelParams used to load the model
        llm: llama_cpp.Llama instance, None after close()
    """

    def __init__(self, params: Any):
        """
        Load a model.

        Args:
            params: LlamaModelParams

        Raises:
            EngineError: If llama.cpp cannot load the file
        """
        self.params = params
        self.llm = None

        logger.info(
            f"Initializing LlamaCppEngine: model={params.model}, "
            f"n_ctx={params.n_ctx}, n_gpu_layers={params.n_gpu_layers}"
        )
        self._load_model()

    def _load_model(self) -> None:
        try:
            from llama_cpp import Llama
        except ImportError:
            raise ImportError(
                "llama-cpp-python is required. "
                "Install with: pip install llama-cpp-python"
            )

        load_kwargs = {
            "model_path": self.params.model,
            "n_gpu_layers": self.params.n_gpu_layers,
            "n_ctx": self.params.n_ctx,
            "n_batch": self.params.n_batch,
            "n_threads": self.params.n_threads,
            "use_mlock": self.params.use_mlock,
            "use_mmap": self.params.use_mmap,
            "vocab_only": self.params.vocab_only,
            "embedding": self.params.embedding,
            "verbose": False,
        }

        try:
            self.llm = Llama(**load_kwargs)
        except Exception as e:
            logger.error(f"Failed to load model: {e}")
            raise EngineError(
                f"Failed to load model: {e}", {"model": self.params.model}
            ) from e

        logger.info(f"Model loaded: {os.path.basename(self.params.model)}")

    def _require(self) -> Any:
        if self.llm is None:
            raise EngineError("Model not loaded")
        return self.llm

    def n_ctx(self) -> int:
        return self._require().n_ctx()

    def n_vocab(self) -> int:
        return self._require().n_vocab()

    def n_embd(self) -> int:
        return self._require().n_embd()

    def eos_token(self) -> int:
        return self._require().token_eos()

    def tokenize(self, text: str, add_special: bool = False, parse_special: bool = False) -> List[int]:
        return self._require().tokenize(text.encode("utf-8"), add_bos=add_special, special=parse_special)

    def token_to_bytes(self, token: int) -> bytes:
        return self._require().detokenize([token])

    def detokenize(self, tokens: Sequence[int]) -> str:
        return self._require().detokenize(list(tokens)).decode("utf-8", errors="replace")

    def _token_text(self, token: int) -> str:
        if token < 0:
            return ""
        return self._require().detokenize([token], special=True).decode("utf-8", errors="ignore")

    def generate(self, prompt_tokens: Sequence[int], config: Any) -> Iterator[int]:
        """
        Yield sampled tokens for a prompt.

        The grammar is parsed here so a bad grammar fails before any
        evaluation. repeat_last_n of -1 covers the whole context.

        Raises:
            ParseError: If config.grammar is not valid GBNF
        """
        llm = self._require()

        from llama_cpp import LlamaGrammar, LogitsProcessorList

        grammar = None
        if config.grammar:
            try:
                grammar = LlamaGrammar.from_string(config.grammar, verbose=False)
            except ValueError as e:
                raise ParseError(f"Invalid GBNF grammar: {e}") from e

        logits_processor = None
        if config.logit_bias:
            logits_processor = LogitsProcessorList([_logit_bias_processor(config.logit_bias)])

        seed = config.seed if config.seed >= 0 else random.randrange(2**31)
        llm.set_seed(seed)
        llm.last_n_tokens_size = llm.n_ctx() if config.repeat_last_n < 0 else config.repeat_last_n

        return llm.generate(
            list(prompt_tokens),
            top_k=config.top_k,
            top_p=config.top_p,
            min_p=config.min_p,
            typical_p=config.typical_p,
            temp=config.temperature,
            repeat_penalty=config.repeat_penalty,
            reset=True,
            frequency_penalty=config.frequency_penalty,
            presence_penalty=config.presence_penalty,
            mirostat_mode=config.mirostat.mode,
            mirostat_tau=config.mirostat.tau,
            mirostat_eta=config.mirostat.eta,
            logits_processor=logits_processor,
            grammar=grammar,
        )

    def embed(self, text: str) -> List[float]:
        """
        Pooled embedding of text.

        Models without a pooling layer return one vector per token; those
        are mean-pooled here.
        """
        vectors = self._require().embed(text, normalize=False)
        if vectors and isinstance(vectors[0], list):
            width = len(vectors[0])
            return [sum(v[i] for v in vectors) / len(vectors) for i in range(width)]
        return list(vectors)

    def chat_template(self) -> Optional[str]:
        return self._require().metadata.get("tokenizer.chat_template")

    def format_chat(
        self,
        messages: Sequence[Mapping[str, Any]],
        template: Optional[str] = None,
        tools: Optional[Sequence[Mapping[str, Any]]] = None,
        tool_choice: Any = None,
    ) -> Dict[str, Any]:
        """
        Render messages with a Jinja template (the model's own by default).

        Raises:
            EngineError: If no Jinja template is available or rendering fails
        """
        from llama_cpp.llama_chat_format import Jinja2ChatFormatter

        template = template or self.chat_template()
        if not template or ("{%" not in template and "{{" not in template):
            raise EngineError("No Jinja chat template available")

        llm = self._require()
        formatter = Jinja2ChatFormatter(
            template=template,
            eos_token=self._token_text(llm.token_eos()),
            bos_token=self._token_text(llm.token_bos()),
            add_generation_prompt=True,
        )
        try:
            rendered = formatter(
                messages=[dict(m) for m in messages],
                tools=list(tools) if tools else None,
                tool_choice=tool_choice if tools else None,
            )
        except Exception as e:
            raise EngineError(f"Chat template failed to render: {e}") from e

        stop = rendered.stop
        if isinstance(stop, str):
            stop = [stop]
        return {"prompt": rendered.prompt, "stop": [s for s in (stop or []) if s]}

    def snapshot(self) -> Any:
        return self._require().save_state()

    def restore(self, state: Any) -> None:
        try:
            self._require().load_state(state)
        except Exception as e:
            raise EngineError(f"Failed to restore session state: {e}") from e

    def token_count(self) -> int:
        return self._require().n_tokens

    def fingerprint(self) -> Dict[str, Any]:
        return {
            "model": os.path.basename(self.params.model),
            "n_vocab": self.n_vocab(),
            "n_ctx": self.n_ctx(),
            "n_embd": self.n_embd(),
        }

    def describe(self) -> Dict[str, Any]:
        """
        Model metadata read from the loaded GGUF.

        Returns:
            Dict with n_params, n_vocab, n_ctx_train, n_embd, n_layer,
            description, size and the raw metadata key/value pairs
        """
        llm = self._require()
        model = llm._model
        metadata = dict(llm.metadata)
        arch = metadata.get("general.architecture", "")
        return {
            "n_params": model.n_params(),
            "n_vocab": llm.n_vocab(),
            "n_ctx_train": model.n_ctx_train(),
            "n_embd": model.n_embd(),
            "n_layer": int(metadata.get(f"{arch}.block_count", 0)),
            "description": model.desc(),
            "size": model.size(),
            "metadata": metadata,
        }

    def close(self) -> None:
        if self.llm is not None:
            self.llm.close()
            self.llm = None
            logger.info(f"Model released: {os.path.basename(self.params.model)}")

    def __repr__(self) -> str:
        return (
            f"LlamaCppEngine(model={os.path.basename(self.params.model)}, "
            f"n_gpu_layers={self.params.n_gpu_layers})"
        )


def _logit_bias_processor(bias: Mapping[int, float]):
    """Logits processor adding a fixed bias per token; -inf bans the token."""
    items = list(bias.items())

    def process(input_ids, scores):
        for token, value in items:
            if 0 <= token < len(scores):
                scores[token] = -math.inf if value == -math.inf else scores[token] + value
        return scores

    return process
