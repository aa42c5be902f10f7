"""
ModelSession: one loaded model and every operation on it.

A ModelSession owns an Engine and serialises access to it. At most one
completion runs per session; a second completion() while one is active fails
immediately with ConcurrencyError instead of queueing behind it.

Locking:
    - handle lock: held for every engine operation, so operations on one
      session never overlap
    - state lock: guards the active-completion slot and the released flag;
      never held while the engine works, so stop_completion() and the
      concurrency check never block

Usage:
    ```python
    from pocket_llama import init_llama

    with init_llama({"model": "models/qwen2.5-0.5b-instruct-q4_k_m.gguf"}) as llama:
        result = llama.completion(
            {"messages": [{"role": "user", "content": "Hi!"}], "max_tokens": 32},
            on_token=lambda chunk: print(chunk.text, end=""),
        )
        print(result.finish_reason)
    ```
"""

import asyncio
import base64
import dataclasses
import logging
import math
import os
import struct
import threading
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from pocket_llama.backends import EngineFactory, supports_gpu_offload
from pocket_llama.chat import (
    CHATML_STOP,
    detect_template_family,
    format_chatml,
    inject_tools_prompt,
    is_jinja_template,
    normalize_messages,
    supports_native_tools,
)
from pocket_llama.completion import CompletionChunk, CompletionSession, LlamaCompletionResult
from pocket_llama.config import LlamaModelParams
from pocket_llama.errors import (
    COMPLETION_IN_PROGRESS,
    SESSION_RELEASED,
    CapabilityError,
    ConcurrencyError,
    EngineError,
    LlamaError,
    StateError,
    ValidationError,
)
from pocket_llama.sampling import CompletionRequest, check_message
from pocket_llama.state import load_session_file, save_session_file
from pocket_llama.tools import ToolCallExtractor

logger = logging.getLogger(__name__)

NO_GPU_REQUESTED = "n_gpu_layers is 0"
NO_GPU_SUPPORT = "llama.cpp build has no GPU offload support"


class ModelSession:
    """
    A loaded model.

    Attributes:
        engine: Engine serving this session
        params: LlamaModelParams the model was loaded with (after GPU fallback)
        gpu: Whether layers are offloaded to a GPU
        reason_no_gpu: Why gpu is False, None when it is True
    """

    def __init__(
        self,
        engine: Any,
        params: LlamaModelParams,
        gpu: bool = False,
        reason_no_gpu: Optional[str] = None,
    ):
        self.engine = engine
        self.params = params
        self.gpu = gpu
        self.reason_no_gpu = reason_no_gpu

        self._handle_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._active: Optional[threading.Event] = None
        self._owner: Optional[int] = None
        self._released = False
        self._close_pending = False

    @classmethod
    def create(
        cls,
        params: Union[Mapping[str, Any], LlamaModelParams],
        engine_factory: Optional[Callable[[LlamaModelParams], Any]] = None,
    ) -> "ModelSession":
        """
        Validate params and load a model.

        Requesting GPU layers on a build without GPU offload is not an error:
        the model is loaded on the CPU and gpu/reason_no_gpu say so.

        Args:
            params: Model params dict or LlamaModelParams
            engine_factory: Callable building an Engine from LlamaModelParams;
                defaults to the llama.cpp engine

        Raises:
            ValidationError: Missing model path or invalid values
            EngineError: If the model cannot be loaded
        """
        if not isinstance(params, LlamaModelParams):
            params = LlamaModelParams.from_params(params)

        gpu, reason = True, None
        if params.n_gpu_layers == 0:
            gpu, reason = False, NO_GPU_REQUESTED
        elif not supports_gpu_offload():
            logger.warning(
                f"{params.n_gpu_layers} GPU layers requested but {NO_GPU_SUPPORT}; using the CPU"
            )
            params = dataclasses.replace(params, n_gpu_layers=0)
            gpu, reason = False, NO_GPU_SUPPORT
        logger.info(f"GPU offload: {'enabled' if gpu else 'disabled'} ({params.n_gpu_layers} layers)")

        factory = engine_factory or EngineFactory.create
        try:
            engine = factory(params)
        except LlamaError:
            raise
        except Exception as e:
            logger.error(f"Failed to load model {params.model}: {e}")
            raise EngineError(f"Failed to load model: {e}", {"model": params.model}) from e

        return cls(engine, params, gpu=gpu, reason_no_gpu=reason)

    # -- lifecycle ---------------------------------------------------------

    def _check_open(self) -> None:
        with self._state_lock:
            if self._released:
                raise StateError(SESSION_RELEASED)

    def _check_not_in_completion(self) -> None:
        """Reject calls made on the thread that is running the active completion."""
        with self._state_lock:
            if self._active is not None and self._owner == threading.get_ident():
                raise ConcurrencyError(COMPLETION_IN_PROGRESS)

    def _engine_call(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        """Run an engine operation under the handle lock, wrapping native failures."""
        self._check_not_in_completion()
        with self._handle_lock:
            self._check_open()
            try:
                return fn(*args, **kwargs)
            except LlamaError:
                raise
            except Exception as e:
                raise EngineError(f"{getattr(fn, '__name__', 'engine call')} failed: {e}") from e

    @property
    def is_released(self) -> bool:
        with self._state_lock:
            return self._released

    def release(self) -> None:
        """
        Free the model.

        An active completion is cancelled and the model is freed when it
        returns, so release() does not block on it. This covers calls from
        that completion's own on_token callback and streams paused between
        chunks. New operations are rejected immediately either way.

        Raises:
            StateError: If the session was already released
        """
        with self._state_lock:
            if self._released:
                raise StateError(SESSION_RELEASED)
            self._released = True
            active = self._active
            self._close_pending = active is not None

        if active is not None:
            active.set()
            logger.info("Release requested; the model is freed when the active completion ends")
            return
        self._close_engine()

    def _close_engine(self) -> None:
        with self._handle_lock:
            self.engine.close()
        logger.info(f"Released model {os.path.basename(self.params.model)}")

    def __enter__(self) -> "ModelSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if not self.is_released:
            self.release()

    # -- completion --------------------------------------------------------

    def _reserve(self) -> threading.Event:
        with self._state_lock:
            if self._released:
                raise StateError(SESSION_RELEASED)
            if self._active is not None:
                raise ConcurrencyError(COMPLETION_IN_PROGRESS)
            self._active = threading.Event()
            self._owner = threading.get_ident()
            return self._active

    def _finish(self, reservation: threading.Event) -> None:
        """Free the completion slot, closing the engine if a release is pending."""
        with self._state_lock:
            if self._active is not reservation:
                return
            self._active = None
            self._owner = None
            close, self._close_pending = self._close_pending, False
        if close:
            self._close_engine()

    def completion(
        self,
        params: Mapping[str, Any],
        on_token: Optional[Callable[[CompletionChunk], Any]] = None,
    ) -> LlamaCompletionResult:
        """
        Run a completion to its end.

        Args:
            params: Completion params (prompt or messages, sampling keys,
                grammar / response_format, tools, tool_choice, stop, ...)
            on_token: Called with each CompletionChunk, in order, on this thread

        Returns:
            LlamaCompletionResult

        Raises:
            ConcurrencyError: If a completion is already running on this session
            ValidationError: For invalid params
            ParseError: If a grammar or schema cannot be compiled
            ToolCallError: If tool-call output is missing or invalid
            EngineError: If decoding fails
            StateError: If the session was released

        Example:
            ```python
            result = llama.completion({
                "prompt": "List three fruits as JSON:",
                "response_format": {"type": "json_schema", "json_schema": {"schema": schema}},
            })
            data = json.loads(result.text)
            ```
        """
        reservation = self._reserve()
        try:
            request = CompletionRequest.from_params(params)
            with self._handle_lock:
                self._check_open()
                session = self._prepare(request, reservation)
                return session.run(on_token)
        finally:
            self._finish(reservation)

    def stream(self, params: Mapping[str, Any]) -> "CompletionStream":
        """
        Lazily run a completion, yielding chunks as they are generated.

        Nothing happens until iteration starts; the session slot is held
        until the stream is exhausted or closed.

        Example:
            ```python
            stream = llama.stream({"prompt": "Once upon a time", "max_tokens": 64})
            for chunk in stream:
                print(chunk.text, end="", flush=True)
            print(stream.result.tokens_predicted)
            ```
        """
        return CompletionStream(self, params)

    def stop_completion(self) -> None:
        """Cancel the active completion, if any; it ends within one decode step."""
        with self._state_lock:
            if self._released:
                raise StateError(SESSION_RELEASED)
            if self._active is not None:
                self._active.set()
                logger.debug("Completion stop requested")

    def _prepare(self, request: CompletionRequest, cancel_event: threading.Event) -> CompletionSession:
        """Render and tokenize the prompt; caller holds the handle lock."""
        prompt, template_stops, family, native_tools, add_special = self._render_prompt(request)

        diagnostics = {
            "message_count": len(request.messages) if request.messages else 0,
            "roles": [m.get("role") for m in request.messages] if request.messages else [],
            "sampling": request.sampling.describe(),
            "template": family,
        }

        extractor = None
        if request.tools:
            extractor = ToolCallExtractor(
                request.tools, request.tool_choice, native=native_tools, diagnostics=diagnostics
            )

        config = request.sampling
        if template_stops:
            stops = tuple(dict.fromkeys(config.stop + tuple(template_stops)))
            config = dataclasses.replace(config, stop=stops)

        try:
            prompt_tokens = self.engine.tokenize(prompt, add_special=add_special, parse_special=True)
        except LlamaError:
            raise
        except Exception as e:
            raise EngineError(f"Failed to tokenize prompt: {e}", diagnostics) from e

        if config.grammar:
            logger.debug(f"Completion constrained by a {len(config.grammar)}-char grammar")

        return CompletionSession(
            self.engine,
            prompt_tokens,
            config,
            extractor=extractor,
            diagnostics=diagnostics,
            cancel_event=cancel_event,
        )

    def _render_prompt(self, request: CompletionRequest) -> Tuple[str, List[str], Optional[str], bool, bool]:
        """
        Returns:
            (prompt, template stop strings, template family, native tool calls, add BOS)
        """
        if not request.is_chat:
            return request.prompt, [], None, False, True

        template = request.chat_template or self.params.chat_template or self.engine.chat_template()
        family = detect_template_family(template)
        messages = normalize_messages(request.messages)

        use_tools = bool(request.tools) and request.tool_choice != "none"
        native = use_tools and supports_native_tools(template)
        if use_tools and not native:
            messages = inject_tools_prompt(messages, request.tools)

        if is_jinja_template(template):
            try:
                rendered = self.engine.format_chat(
                    messages,
                    template,
                    tools=request.tools if native else None,
                    tool_choice=request.tool_choice if native else None,
                )
                return rendered["prompt"], list(rendered.get("stop", [])), family, native, False
            except EngineError as e:
                logger.warning(f"Chat template failed ({e.message}); falling back to chatml")
        elif family != "chatml":
            logger.warning(f"No renderer for template family '{family}'; falling back to chatml")

        return format_chatml(messages), list(CHATML_STOP), "chatml", False, True

    # -- tokens ------------------------------------------------------------

    def tokenize(
        self, content: str, add_special: bool = False, with_pieces: bool = False
    ) -> Union[List[int], List[Dict[str, Any]]]:
        """
        Convert text to token ids.

        Args:
            content: Text to tokenize
            add_special: Prepend the BOS token
            with_pieces: Return [{"id": int, "piece": str}] instead of ids

        Raises:
            ValidationError: If content is not a string
        """
        if not isinstance(content, str):
            raise ValidationError("content must be a string")

        tokens = self._engine_call(self.engine.tokenize, content, add_special=add_special)
        if not with_pieces:
            return list(tokens)
        return [
            {"id": token, "piece": piece.decode("utf-8", errors="replace")}
            for token, piece in zip(tokens, self._engine_call(self._pieces, tokens))
        ]

    def _pieces(self, tokens: Sequence[int]) -> List[bytes]:
        return [self.engine.token_to_bytes(token) for token in tokens]

    def detokenize(self, tokens: Sequence[int]) -> str:
        """
        Convert token ids back to text.

        Raises:
            ValidationError: If an id is not an integer inside the vocabulary
        """
        if not isinstance(tokens, (list, tuple)):
            raise ValidationError("tokens must be a list of integers")

        n_vocab = self._engine_call(self.engine.n_vocab)
        for token in tokens:
            if isinstance(token, bool) or not isinstance(token, int) or not 0 <= token < n_vocab:
                raise ValidationError(f"Invalid token id {token!r} (vocabulary size {n_vocab})")
        return self._engine_call(self.engine.detokenize, list(tokens))

    # -- embeddings --------------------------------------------------------

    def embedding(self, options: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Compute embeddings.

        Two request shapes are accepted:
            - "text" or {"content": "text", "normalize": True}
              → {"embedding": [...]}
            - {"input": "text" | ["a", "b"], "encoding_format": "float" | "base64"}
              → OpenAI-style {"object": "list", "data": [...], "usage": {...}}

        Vectors are L2-normalised unless normalize is False. The base64
        encoding is little-endian float32.

        Raises:
            CapabilityError: If the model was not loaded with embedding=True
            ValidationError: For a malformed request
        """
        self._check_open()
        if not self.params.embedding:
            raise CapabilityError("Embeddings are disabled; load the model with embedding=True")

        if isinstance(options, str):
            options = {"content": options}
        if not isinstance(options, Mapping):
            raise ValidationError("embedding options must be a string or an object")

        normalize = options.get("normalize", True)
        if "input" in options:
            return self._openai_embedding(options, normalize)

        content = options.get("content")
        if not isinstance(content, str):
            raise ValidationError("Missing required parameter: content")
        return {"embedding": self._embed(content, normalize)}

    def _embed(self, text: str, normalize: bool) -> List[float]:
        vector = [float(x) for x in self._engine_call(self.engine.embed, text)]
        return l2_normalize(vector) if normalize else vector

    def _openai_embedding(self, options: Mapping[str, Any], normalize: bool) -> Dict[str, Any]:
        inputs = options["input"]
        if isinstance(inputs, str):
            inputs = [inputs]
        if not isinstance(inputs, list) or not all(isinstance(i, str) for i in inputs):
            raise ValidationError("input must be a string or a list of strings")

        encoding = options.get("encoding_format", "float")
        if encoding not in ("float", "base64"):
            raise ValidationError(f"encoding_format must be 'float' or 'base64', got {encoding!r}")

        data = []
        prompt_tokens = 0
        for index, text in enumerate(inputs):
            vector = self._embed(text, normalize)
            prompt_tokens += len(self._engine_call(self.engine.tokenize, text, add_special=True))
            data.append({
                "object": "embedding",
                "index": index,
                "embedding": encode_base64_floats(vector) if encoding == "base64" else vector,
            })

        return {
            "object": "list",
            "data": data,
            "model": os.path.basename(self.params.model),
            "usage": {"prompt_tokens": prompt_tokens, "total_tokens": prompt_tokens},
        }

    # -- templates and state -----------------------------------------------

    def detect_template(self, messages: Sequence[Mapping[str, Any]]) -> str:
        """
        Identify the chat template family that would render messages.

        Returns:
            str: "chatml", "llama3", "mistral", ... or "jinja" for a custom template

        Raises:
            ValidationError: If messages is empty or malformed
        """
        if not isinstance(messages, (list, tuple)) or not messages:
            raise ValidationError("messages must be a non-empty list")
        for index, message in enumerate(messages):
            check_message(message, index)

        template = self.params.chat_template or self._engine_call(self.engine.chat_template)
        return detect_template_family(template)

    def save_session(self, path: str) -> bool:
        """Write the evaluation state to a session file."""
        self._engine_call(save_session_file, path, self.engine)
        return True

    def load_session(self, path: str) -> bool:
        """
        Restore evaluation state from a session file.

        Raises:
            ValidationError: Missing file or a file from another model/context size
            ParseError: Corrupt file; the current state is unchanged
        """
        self._engine_call(load_session_file, path, self.engine)
        return True

    def info(self) -> Dict[str, Any]:
        """Summary of the loaded session."""
        return {
            "model": self.params.model,
            "n_ctx": self._engine_call(self.engine.n_ctx),
            "n_vocab": self._engine_call(self.engine.n_vocab),
            "gpu": self.gpu,
            "reason_no_gpu": self.reason_no_gpu,
            "n_gpu_layers": self.params.n_gpu_layers,
            "embedding": self.params.embedding,
        }

    # -- async -------------------------------------------------------------

    async def completion_async(
        self,
        params: Mapping[str, Any],
        on_token: Optional[Callable[[CompletionChunk], Any]] = None,
    ) -> LlamaCompletionResult:
        """Async version of completion(). on_token runs on the worker thread."""
        return await asyncio.to_thread(self.completion, params, on_token)

    async def tokenize_async(self, content: str, add_special: bool = False, with_pieces: bool = False):
        return await asyncio.to_thread(self.tokenize, content, add_special, with_pieces)

    async def detokenize_async(self, tokens: Sequence[int]) -> str:
        return await asyncio.to_thread(self.detokenize, tokens)

    async def embedding_async(self, options: Union[str, Mapping[str, Any]]) -> Dict[str, Any]:
        return await asyncio.to_thread(self.embedding, options)

    async def save_session_async(self, path: str) -> bool:
        return await asyncio.to_thread(self.save_session, path)

    async def load_session_async(self, path: str) -> bool:
        return await asyncio.to_thread(self.load_session, path)

    async def release_async(self) -> None:
        await asyncio.to_thread(self.release)

    def __repr__(self) -> str:
        state = "released" if self.is_released else "open"
        return f"ModelSession(model={os.path.basename(self.params.model)}, gpu={self.gpu}, {state})"


class CompletionStream:
    """
    Iterable over the chunks of one completion.

    Attributes:
        result: LlamaCompletionResult, set once iteration has finished
    """

    def __init__(self, owner: ModelSession, params: Mapping[str, Any]):
        self._owner = owner
        self._params = params
        self._started = False
        self._session: Optional[CompletionSession] = None
        self.result: Optional[LlamaCompletionResult] = None

    def __iter__(self) -> Iterator[CompletionChunk]:
        if self._started:
            raise StateError("completion stream can only be consumed once")
        self._started = True
        return self._run()

    def _run(self) -> Iterator[CompletionChunk]:
        owner = self._owner
        reservation = owner._reserve()
        try:
            request = CompletionRequest.from_params(self._params)
            with owner._handle_lock:
                owner._check_open()
                self._session = owner._prepare(request, reservation)
                yield from self._session.tokens()
                self.result = self._session.result
        finally:
            owner._finish(reservation)

    def cancel(self) -> None:
        if self._session is not None:
            self._session.cancel()


def l2_normalize(vector: List[float]) -> List[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return vector
    return [x / norm for x in vector]


def encode_base64_floats(vector: Sequence[float]) -> str:
    """Encode a vector as base64 of little-endian float32 values."""
    return base64.b64encode(struct.pack(f"<{len(vector)}f", *vector)).decode("ascii")
