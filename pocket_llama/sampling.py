"""
Sampling configuration and completion request parsing.

A completion request arrives as a free-form params dict. This module turns it
into two explicit structures:

    - CompletionRequest: what to complete (prompt or messages, tools,
      tool_choice, chat template) plus the resolved SamplingConfig
    - SamplingConfig: immutable, validated decoding parameters

Unknown keys are ignored and logged at DEBUG. Out-of-range values raise
ValidationError instead of being clamped. The only normalisations are:
max_tokens / n_predict that are None or negative become None (unbounded),
and a seed of None becomes -1 (random).

Usage:
    ```python
    from pocket_llama.sampling import CompletionRequest

    request = CompletionRequest.from_params({
        "prompt": "Name three colors:",
        "temperature": 0.2,
        "stop": ["\\n\\n"],
        "n_predict": 64,
    })
    request.sampling.max_tokens  # 64
    ```
"""

import json
import logging
import math
from dataclasses import asdict, dataclass, field, fields
from types import MappingProxyType
from typing import Any, Dict, Mapping, Optional, Tuple

from pocket_llama.errors import ValidationError
from pocket_llama.grammar import compile_schema, json_object_grammar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Mirostat:
    """
    Mirostat sampling settings.

    Attributes:
        mode: 0 disables mirostat, 1 and 2 select the algorithm version
        tau: Target entropy
        eta: Learning rate
    """
    mode: int = 0
    tau: float = 5.0
    eta: float = 0.1

    def __post_init__(self):
        if self.mode not in (0, 1, 2):
            raise ValidationError(f"mirostat must be 0, 1 or 2, got {self.mode}")
        _check_range("mirostat_tau", self.tau)
        _check_range("mirostat_eta", self.eta)
        if self.tau <= 0:
            raise ValidationError(f"mirostat_tau must be positive, got {self.tau}")
        if self.eta <= 0:
            raise ValidationError(f"mirostat_eta must be positive, got {self.eta}")


def _check_range(name: str, value: Any, low: Optional[float] = None, high: Optional[float] = None) -> None:
    if isinstance(value, bool) or not isinstance(value, (int, float)) or math.isnan(value):
        raise ValidationError(f"{name} must be a number, got {value!r}")
    if low is not None and value < low:
        raise ValidationError(f"{name} must be >= {low}, got {value}")
    if high is not None and value > high:
        raise ValidationError(f"{name} must be <= {high}, got {value}")


def _check_int(name: str, value: Any, low: Optional[int] = None) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{name} must be an integer, got {value!r}")
    if low is not None and value < low:
        raise ValidationError(f"{name} must be >= {low}, got {value}")


@dataclass(frozen=True)
class SamplingConfig:
    """
    Validated, immutable decoding parameters.

    Attributes:
        temperature: Sampling temperature, 0 for greedy (>= 0)
        top_p: Nucleus sampling threshold [0, 1]
        top_k: Keep only the k most likely tokens, 0 disables (>= 0)
        min_p: Minimum probability relative to the top token [0, 1]
        typical_p: Locally typical sampling, 1.0 disables (0, 1]
        repeat_penalty: Penalty for repeated tokens, 1.0 disables (>= 0)
        repeat_last_n: Window for repeat penalties, -1 for the whole context
        frequency_penalty: [-2, 2]
        presence_penalty: [-2, 2]
        mirostat: Mirostat settings
        seed: RNG seed, -1 for random
        stop: Stop strings, matched against the generated text
        max_tokens: Generation limit, None for unbounded
        grammar: GBNF grammar text constraining the output
        logit_bias: Read-only token id → bias mapping (-inf bans a token)
    """

    temperature: float = 0.8
    top_p: float = 0.95
    top_k: int = 40
    min_p: float = 0.05
    typical_p: float = 1.0
    repeat_penalty: float = 1.1
    repeat_last_n: int = 64
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    mirostat: Mirostat = field(default_factory=Mirostat)
    seed: int = -1
    stop: Tuple[str, ...] = ()
    max_tokens: Optional[int] = None
    grammar: Optional[str] = None
    logit_bias: Mapping[int, float] = field(default_factory=lambda: MappingProxyType({}))

    def __post_init__(self):
        _check_range("temperature", self.temperature, low=0)
        _check_range("top_p", self.top_p, 0, 1)
        _check_int("top_k", self.top_k, low=0)
        _check_range("min_p", self.min_p, 0, 1)
        _check_range("typical_p", self.typical_p, 0, 1)
        if self.typical_p == 0:
            raise ValidationError("typical_p must be > 0, got 0")
        _check_range("repeat_penalty", self.repeat_penalty, low=0)
        _check_int("repeat_last_n", self.repeat_last_n, low=-1)
        _check_range("frequency_penalty", self.frequency_penalty, -2, 2)
        _check_range("presence_penalty", self.presence_penalty, -2, 2)
        _check_int("seed", self.seed, low=-1)

        if isinstance(self.stop, str) or not all(isinstance(s, str) and s for s in self.stop):
            raise ValidationError("stop must be a list of non-empty strings")
        object.__setattr__(self, "stop", tuple(self.stop))

        if self.max_tokens is not None:
            _check_int("max_tokens", self.max_tokens, low=0)
        if self.grammar is not None and not isinstance(self.grammar, str):
            raise ValidationError("grammar must be GBNF text")

        object.__setattr__(self, "logit_bias", MappingProxyType(dict(self.logit_bias)))

    @classmethod
    def from_params(cls, params: Mapping[str, Any], grammar: Optional[str] = None) -> "SamplingConfig":
        """
        Build a config from a params dict, using defaults for missing keys.

        Args:
            params: Request parameters (unknown keys are ignored)
            grammar: Already-resolved grammar text

        Raises:
            ValidationError: If a value is out of range
        """
        values: Dict[str, Any] = {}
        for name in _SCALAR_FIELDS:
            if params.get(name) is not None:
                values[name] = params[name]

        if params.get("seed") is None:
            values["seed"] = -1

        mirostat = Mirostat()
        values["mirostat"] = Mirostat(
            mode=params.get("mirostat") or 0,
            tau=_or_default(params.get("mirostat_tau"), mirostat.tau),
            eta=_or_default(params.get("mirostat_eta"), mirostat.eta),
        )

        stop = params.get("stop")
        if stop is not None:
            values["stop"] = (stop,) if isinstance(stop, str) else tuple(stop)

        values["max_tokens"] = _resolve_max_tokens(params)
        values["grammar"] = grammar
        values["logit_bias"] = _parse_logit_bias(params.get("logit_bias"))
        return cls(**values)

    def describe(self) -> Dict[str, Any]:
        """Parameters as a plain dict for diagnostics, grammar summarised."""
        data = {f.name: getattr(self, f.name) for f in fields(self)}
        data["mirostat"] = asdict(self.mirostat)
        data["logit_bias"] = dict(self.logit_bias)
        data["stop"] = list(self.stop)
        if self.grammar is not None:
            data["grammar"] = f"<{len(self.grammar)} chars>"
        return data


_SCALAR_FIELDS = (
    "temperature",
    "top_p",
    "top_k",
    "min_p",
    "typical_p",
    "repeat_penalty",
    "repeat_last_n",
    "frequency_penalty",
    "presence_penalty",
    "seed",
)


def _or_default(value: Any, default: Any) -> Any:
    return default if value is None else value


def _resolve_max_tokens(params: Mapping[str, Any]) -> Optional[int]:
    value = params.get("max_tokens")
    if value is None:
        value = params.get("n_predict")
    if value is None:
        return None
    _check_int("max_tokens", value)
    return value if value >= 0 else None


def _parse_logit_bias(raw: Any) -> Dict[int, float]:
    """
    Accept {token_id: bias} or [[token_id, bias], ...]; a bias of False bans the token.
    """
    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        pairs = list(raw.items())
    elif isinstance(raw, list):
        pairs = []
        for item in raw:
            if not isinstance(item, (list, tuple)) or len(item) != 2:
                raise ValidationError("logit_bias entries must be [token_id, bias] pairs")
            pairs.append((item[0], item[1]))
    else:
        raise ValidationError("logit_bias must be an object or a list of pairs")

    bias: Dict[int, float] = {}
    for token, value in pairs:
        try:
            token_id = int(token)
        except (TypeError, ValueError) as e:
            raise ValidationError(f"logit_bias token id must be an integer, got {token!r}") from e
        if value is False:
            bias[token_id] = -math.inf
        else:
            _check_range(f"logit_bias[{token_id}]", value)
            bias[token_id] = float(value)
    return bias


TOOL_CHOICES = ("none", "auto", "required")

RECOGNIZED_KEYS = frozenset(
    _SCALAR_FIELDS
    + (
        "prompt",
        "system_prompt",
        "messages",
        "chat_template",
        "tools",
        "tool_choice",
        "response_format",
        "grammar",
        "n_predict",
        "max_tokens",
        "stop",
        "mirostat",
        "mirostat_tau",
        "mirostat_eta",
        "logit_bias",
        "emit_partial_completion",
    )
)


@dataclass(frozen=True)
class CompletionRequest:
    """
    A parsed completion request.

    Exactly one of ``prompt`` and ``messages`` is set. When the caller passes
    both, messages win.

    Attributes:
        prompt: Raw prompt text
        messages: Chat messages (role/content dicts) to render with a template
        chat_template: Template override (family name or Jinja text)
        tools: Declared tools in OpenAI function format
        tool_choice: "none", "auto", "required" or a function name selector
        sampling: Validated sampling parameters, grammar included
    """

    prompt: Optional[str] = None
    messages: Optional[Tuple[Dict[str, Any], ...]] = None
    chat_template: Optional[str] = None
    tools: Tuple[Dict[str, Any], ...] = ()
    tool_choice: Any = "auto"
    sampling: SamplingConfig = field(default_factory=SamplingConfig)

    @property
    def is_chat(self) -> bool:
        return self.messages is not None

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "CompletionRequest":
        """
        Parse a free-form params dict.

        Raises:
            ValidationError: Missing prompt/messages, bad values, or a schema
                and a literal grammar supplied together
            ParseError: If a supplied schema cannot be compiled
        """
        if not isinstance(params, Mapping):
            raise ValidationError("completion params must be an object")

        for key in params:
            if key not in RECOGNIZED_KEYS:
                logger.debug(f"Ignoring unknown completion parameter '{key}'")

        prompt, messages = _resolve_prompt(params)
        tools = params.get("tools") or ()
        if not isinstance(tools, (list, tuple)):
            raise ValidationError("tools must be a list")

        tool_choice = params.get("tool_choice") or "auto"
        if isinstance(tool_choice, str) and tool_choice not in TOOL_CHOICES:
            raise ValidationError(f"tool_choice must be one of {', '.join(TOOL_CHOICES)}")

        chat_template = params.get("chat_template")
        if chat_template is not None and not isinstance(chat_template, str):
            raise ValidationError("chat_template must be a string")

        sampling = SamplingConfig.from_params(params, grammar=resolve_grammar(params))
        return cls(
            prompt=prompt,
            messages=messages,
            chat_template=chat_template,
            tools=tuple(tools),
            tool_choice=tool_choice,
            sampling=sampling,
        )


def _resolve_prompt(params: Mapping[str, Any]):
    messages = params.get("messages")
    prompt = params.get("prompt")
    system_prompt = params.get("system_prompt")

    if system_prompt is not None and not isinstance(system_prompt, str):
        raise ValidationError("system_prompt must be a string")

    if messages:
        if not isinstance(messages, (list, tuple)):
            raise ValidationError("messages must be a list")
        rendered = [check_message(m, i) for i, m in enumerate(messages)]
        if system_prompt and not any(m["role"] == "system" for m in rendered):
            rendered.insert(0, {"role": "system", "content": system_prompt})
        return None, tuple(rendered)

    if isinstance(prompt, str) and prompt:
        if system_prompt:
            return None, (
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": prompt},
            )
        return prompt, None

    raise ValidationError("prompt or messages required")


def check_message(message: Any, index: int) -> Dict[str, Any]:
    if not isinstance(message, Mapping) or not isinstance(message.get("role"), str):
        raise ValidationError(f"messages[{index}] must be an object with a 'role'")
    content = message.get("content")
    if content is not None and not isinstance(content, (str, list)):
        raise ValidationError(f"messages[{index}].content must be a string or a list of parts")
    return dict(message)


# response_format json_object with no schema
ANY_JSON_OBJECT: Dict[str, Any] = {"type": "object"}


def _schema_from_response_format(response_format: Any) -> Optional[Any]:
    if response_format is None:
        return None
    if not isinstance(response_format, Mapping):
        raise ValidationError("response_format must be an object")

    kind = response_format.get("type", "json_schema")
    if kind == "text":
        return None
    if kind == "json_object":
        return response_format.get("schema") or ANY_JSON_OBJECT
    if kind == "json_schema":
        wrapper = response_format.get("json_schema")
        if wrapper is None:
            raise ValidationError("response_format.json_schema is required")
        if isinstance(wrapper, Mapping) and "schema" in wrapper:
            return wrapper["schema"]
        return wrapper
    raise ValidationError(f"Unknown response_format type {kind!r}")


def is_literal_grammar(grammar: Any) -> bool:
    return isinstance(grammar, str) and "::=" in grammar


def resolve_grammar(params: Mapping[str, Any]) -> Optional[str]:
    """
    Decide the grammar text for a request.

    A grammar containing "::=" is literal GBNF and is used as is. A grammar
    given as a dict or JSON text, and any response_format schema, are
    compiled. A json_object response_format without a schema accepts any
    JSON object. Supplying more than one of these is a conflict.

    Raises:
        ValidationError: On conflicting grammar sources
        ParseError: If a schema cannot be compiled
    """
    grammar = params.get("grammar")
    if isinstance(grammar, str) and not grammar.strip():
        grammar = None
    schema = _schema_from_response_format(params.get("response_format"))

    if grammar is not None and schema is not None:
        raise ValidationError("grammar and response_format json_schema are mutually exclusive")

    if grammar is None and schema is None:
        return None

    if is_literal_grammar(grammar):
        return grammar

    if schema is ANY_JSON_OBJECT:
        return json_object_grammar()

    source = grammar if grammar is not None else schema
    if isinstance(source, str):
        try:
            source = json.loads(source)
        except json.JSONDecodeError as e:
            raise ValidationError(
                "grammar must be GBNF text (containing '::=') or a JSON schema"
            ) from e
    return compile_schema(source)
