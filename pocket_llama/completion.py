"""
One completion run: the decode loop, stop handling and the result record.

A CompletionSession drives an engine's token iterator and turns it into text
chunks. It owns everything that happens between "prompt tokenized" and
"result ready":

    1. Cancellation, max_tokens and context-window limits
    2. Incremental UTF-8 decoding of token bytes
    3. Stop strings, with partial matches held back so no chunk ever
       contains text that is later stripped
    4. Tool-call detection through a ToolCallExtractor
    5. Timings and the final LlamaCompletionResult

State machine:
    CREATED → RUNNING → COMPLETED | STOPPED | FAILED

Usage:
    ```python
    session = CompletionSession(engine, prompt_tokens, config)
    for chunk in session.tokens():
        print(chunk.text, end="", flush=True)
    print(session.result.finish_reason)
    ```
"""

import codecs
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence

from pocket_llama.errors import EngineError, LlamaError, StateError
from pocket_llama.sampling import SamplingConfig
from pocket_llama.tools import ToolCall, ToolCallExtractor

logger = logging.getLogger(__name__)


class CompletionState(Enum):
    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    STOPPED = "stopped"
    FAILED = "failed"


TERMINAL_STATES = (CompletionState.COMPLETED, CompletionState.STOPPED, CompletionState.FAILED)


@dataclass(frozen=True)
class CompletionChunk:
    """A piece of generated text, in generation order."""
    text: str
    index: int


@dataclass
class CompletionTimings:
    """
    Timing information for one completion.

    Attributes:
        prompt_n: Prompt tokens evaluated
        prompt_ms: Time until the first generated token (prompt evaluation)
        predicted_n: Tokens generated
        predicted_ms: Time spent generating after the first token
        total_ms: Wall time of the whole run
        predicted_per_second: Generation throughput
    """
    prompt_n: int = 0
    prompt_ms: float = 0.0
    predicted_n: int = 0
    predicted_ms: float = 0.0
    total_ms: float = 0.0
    predicted_per_second: float = 0.0


@dataclass
class LlamaCompletionResult:
    """
    Outcome of a completion.

    Attributes:
        text: Full generated text, stop string excluded
        content: Text with tool-call markup removed
        tokens_predicted: Number of generated tokens
        tokens_evaluated: Number of prompt tokens
        truncated: Generation hit the context window
        stopped_eos: Model emitted end-of-sequence
        stopped_word: A stop string matched
        stopped_limit: max_tokens was reached
        stopping_word: The stop string that matched, "" otherwise
        finish_reason: "stop", "length", "context_length_exceeded",
            "tool_calls" or "cancelled"
        timings: Timing information
        tool_calls: Extracted tool calls
        state: Terminal state of the run
    """
    text: str
    content: str
    tokens_predicted: int
    tokens_evaluated: int
    truncated: bool
    stopped_eos: bool
    stopped_word: bool
    stopped_limit: bool
    stopping_word: str
    finish_reason: str
    timings: CompletionTimings
    tool_calls: List[ToolCall] = field(default_factory=list)
    state: CompletionState = CompletionState.COMPLETED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "content": self.content,
            "tokens_predicted": self.tokens_predicted,
            "tokens_evaluated": self.tokens_evaluated,
            "truncated": self.truncated,
            "stopped_eos": self.stopped_eos,
            "stopped_word": self.stopped_word,
            "stopped_limit": self.stopped_limit,
            "stopping_word": self.stopping_word,
            "finish_reason": self.finish_reason,
            "timings": vars(self.timings).copy(),
            "tool_calls": [call.to_dict() for call in self.tool_calls],
            "state": self.state.value,
        }


def held_back_length(tail: str, stops: Sequence[str]) -> int:
    """
    Length of the longest suffix of tail that is a proper prefix of a stop string.

    Example:
        ```python
        held_back_length("hello</", ["</s>"])  # 2
        held_back_length("hello", ["</s>"])    # 0
        ```
    """
    longest = 0
    for stop in stops:
        for size in range(min(len(stop) - 1, len(tail)), longest, -1):
            if tail.endswith(stop[:size]):
                longest = size
                break
    return longest


class CompletionSession:
    """
    Runs one completion over an engine.

    Attributes:
        engine: Engine providing generate(), token_to_bytes() and eos_token()
        prompt_tokens: Tokenized prompt
        config: Sampling configuration
        extractor: Tool-call extractor, None when no tools are declared
        diagnostics: Context attached to errors raised by this run
        cancel_event: Event shared with the owner so it can stop the run
        state: Current CompletionState
        result: Final result, set once a terminal state is reached
    """

    def __init__(
        self,
        engine: Any,
        prompt_tokens: Sequence[int],
        config: SamplingConfig,
        extractor: Optional[ToolCallExtractor] = None,
        diagnostics: Optional[Dict[str, Any]] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        self.engine = engine
        self.prompt_tokens = list(prompt_tokens)
        self.config = config
        self.extractor = extractor if extractor is not None and extractor.enabled else None
        self.diagnostics = dict(diagnostics or {})
        self.n_ctx = engine.n_ctx()

        self.state = CompletionState.CREATED
        self.result: Optional[LlamaCompletionResult] = None

        self._cancel = cancel_event if cancel_event is not None else threading.Event()
        self._started = False
        self._text = ""
        self._emitted = 0
        self._chunks = 0
        self._predicted = 0
        self._finish_reason: Optional[str] = None
        self._flags = {"truncated": False, "stopped_eos": False, "stopped_word": False, "stopped_limit": False}
        self._stopping_word = ""
        self._start_time = 0.0
        self._first_token_time: Optional[float] = None

    @property
    def is_finished(self) -> bool:
        return self.state in TERMINAL_STATES

    def cancel(self) -> None:
        """Request a stop; takes effect before the next decode step. Idempotent."""
        self._cancel.set()

    def tokens(self) -> Iterator[CompletionChunk]:
        """
        Generated text chunks, in order. Can be iterated only once.

        Raises:
            StateError: If called a second time
            EngineError: If the prompt does not fit or decoding fails
        """
        if self._started:
            raise StateError("completion stream can only be consumed once")
        self._started = True
        return self._generate()

    def run(self, on_token: Optional[Callable[[CompletionChunk], Any]] = None) -> LlamaCompletionResult:
        """
        Drive the completion to its end, notifying on_token for every chunk.

        Exceptions raised by the callback are logged and do not stop generation.
        """
        for chunk in self.tokens():
            if on_token is None:
                continue
            try:
                on_token(chunk)
            except Exception as e:
                logger.warning(f"Token callback raised {type(e).__name__}: {e}")
        return self.result

    def _generate(self) -> Iterator[CompletionChunk]:
        self.state = CompletionState.RUNNING
        self._start_time = time.perf_counter()

        if len(self.prompt_tokens) >= self.n_ctx:
            self.state = CompletionState.FAILED
            raise EngineError(
                f"Prompt is {len(self.prompt_tokens)} tokens, context window is {self.n_ctx}",
                self.diagnostics,
            )

        stops = self.config.stop
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        eos = self.engine.eos_token()
        stream = None

        try:
            stream = iter(self.engine.generate(self.prompt_tokens, self.config))
            while True:
                if self._cancel.is_set():
                    self._finish_reason = "cancelled"
                    break
                if self.config.max_tokens is not None and self._predicted >= self.config.max_tokens:
                    self._flags["stopped_limit"] = True
                    self._finish_reason = "length"
                    break
                if len(self.prompt_tokens) + self._predicted >= self.n_ctx:
                    self._flags["truncated"] = True
                    self._finish_reason = "context_length_exceeded"
                    break

                token = next(stream, None)
                if self._first_token_time is None:
                    self._first_token_time = time.perf_counter()
                if token is None or token == eos:
                    self._flags["stopped_eos"] = token is not None
                    self._finish_reason = "stop"
                    break

                self._predicted += 1
                piece = decoder.decode(self.engine.token_to_bytes(token))
                if not piece:
                    continue

                self._text += piece
                if stops and self._match_stop(stops):
                    break
                if self.extractor is not None and self.extractor.feed(piece):
                    self._finish_reason = "tool_calls"
                    break

                chunk = self._take(held_back_length(self._text[self._emitted:], stops))
                if chunk is not None:
                    yield chunk

            if not self._flags["stopped_word"]:
                self._text += decoder.decode(b"", final=True)
            chunk = self._take(0)
            if chunk is not None:
                yield chunk
        except GeneratorExit:
            self._finish_reason = self._finish_reason or "cancelled"
            self.state = CompletionState.STOPPED
            raise
        except LlamaError:
            self.state = CompletionState.FAILED
            raise
        except Exception as e:
            self.state = CompletionState.FAILED
            logger.error(f"Decoding failed after {self._predicted} tokens: {e}")
            raise EngineError(f"Decoding failed: {e}", self.diagnostics) from e
        finally:
            close = getattr(stream, "close", None)
            if close is not None:
                close()

        self._complete()

    def _match_stop(self, stops: Sequence[str]) -> bool:
        """Truncate the text at the earliest complete stop string, if any."""
        earliest = None
        for stop in stops:
            index = self._text.find(stop, self._emitted)
            if index >= 0 and (earliest is None or index < earliest[0]):
                earliest = (index, stop)
        if earliest is None:
            return False

        self._text = self._text[:earliest[0]]
        self._flags["stopped_word"] = True
        self._stopping_word = earliest[1]
        self._finish_reason = "stop"
        return True

    def _take(self, hold: int) -> Optional[CompletionChunk]:
        end = len(self._text) - hold
        if end <= self._emitted:
            return None
        chunk = CompletionChunk(self._text[self._emitted:end], self._chunks)
        self._emitted = end
        self._chunks += 1
        return chunk

    def _complete(self) -> None:
        content, calls = self._text, []
        if self.extractor is not None:
            try:
                content, calls = self.extractor.finalize(self._text)
            except LlamaError:
                self.state = CompletionState.FAILED
                raise
        if calls:
            self._finish_reason = "tool_calls"

        cancelled = self._finish_reason == "cancelled"
        self.state = CompletionState.STOPPED if cancelled else CompletionState.COMPLETED
        self.result = LlamaCompletionResult(
            text=self._text,
            content=content,
            tokens_predicted=self._predicted,
            tokens_evaluated=len(self.prompt_tokens),
            stopping_word=self._stopping_word,
            finish_reason=self._finish_reason or "stop",
            timings=self._timings(),
            tool_calls=calls,
            state=self.state,
            **self._flags,
        )
        logger.debug(
            f"Completion finished: reason={self.result.finish_reason}, "
            f"tokens={self._predicted}, state={self.state.value}"
        )

    def _timings(self) -> CompletionTimings:
        end = time.perf_counter()
        first = self._first_token_time or end
        prompt_ms = (first - self._start_time) * 1000
        predicted_ms = (end - first) * 1000
        return CompletionTimings(
            prompt_n=len(self.prompt_tokens),
            prompt_ms=prompt_ms,
            predicted_n=self._predicted,
            predicted_ms=predicted_ms,
            total_ms=(end - self._start_time) * 1000,
            predicted_per_second=self._predicted / (predicted_ms / 1000) if predicted_ms > 0 else 0.0,
        )
