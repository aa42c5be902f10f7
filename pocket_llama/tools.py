"""
Tool-call extraction from model output.

When a completion declares ``tools``, the model may answer with plain text or
with one or more function calls. ToolCallExtractor decides which, in one of
two modes:

    - Native: the chat template renders tools itself and the model answers
      with ``<tool_call>{"name": ..., "arguments": ...}</tool_call>`` blocks.
      Blocks are parsed incrementally as tokens arrive.
    - Envelope: tools were described in an injected system prompt and the
      model answers with JSON, either bare, in a fenced ```json block or
      wrapped as {"tool_calls": [...]}. The final text is parsed once.

Every call must name a declared tool. Its arguments are validated against the
tool's ``parameters`` schema with jsonschema. Invalid arguments raise
ToolCallError carrying the request diagnostics and the violations; they are
never coerced.

Usage:
    ```python
    extractor = ToolCallExtractor(tools, tool_choice="auto")
    for piece in pieces:
        extractor.feed(piece)
    content, calls = extractor.finalize(text)
    ```
"""

import json
import logging
import re
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from pocket_llama.errors import ToolCallError, ValidationError
from pocket_llama.validation import format_violations, summarize_violations, validate_instance

logger = logging.getLogger(__name__)

NATIVE_OPEN = "<tool_call>"
NATIVE_CLOSE = "</tool_call>"

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?(.*?)```", re.DOTALL)
_NATIVE_BLOCK = re.compile(re.escape(NATIVE_OPEN) + r"(.*?)" + re.escape(NATIVE_CLOSE), re.DOTALL)


@dataclass(frozen=True)
class Tool:
    """A declared function tool."""
    name: str
    description: str
    parameters: Dict[str, Any]


@dataclass(frozen=True)
class ToolCall:
    """
    One extracted function call.

    Attributes:
        id: Unique call id ("call_" + 24 hex digits)
        name: Name of the declared tool
        arguments: Arguments encoded as a JSON string
    """
    id: str
    name: str
    arguments: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }


def parse_tools(tools: Sequence[Any]) -> Dict[str, Tool]:
    """
    Validate tool declarations in OpenAI function format.

    Raises:
        ValidationError: For malformed or duplicate declarations
    """
    declared: Dict[str, Tool] = {}
    for index, tool in enumerate(tools):
        if not isinstance(tool, Mapping) or tool.get("type", "function") != "function":
            raise ValidationError(f"tools[{index}] must be a function tool")
        function = tool.get("function")
        if not isinstance(function, Mapping) or not isinstance(function.get("name"), str):
            raise ValidationError(f"tools[{index}].function.name is required")

        name = function["name"]
        if name in declared:
            raise ValidationError(f"Duplicate tool name: {name}")
        parameters = function.get("parameters") or {"type": "object", "properties": {}}
        if not isinstance(parameters, Mapping):
            raise ValidationError(f"tools[{index}].function.parameters must be an object")

        declared[name] = Tool(name, function.get("description", ""), dict(parameters))
    return declared


def _new_call_id() -> str:
    return "call_" + uuid.uuid4().hex[:24]


def _find_balanced_object(text: str, start: int) -> Optional[int]:
    """Return the index just past the JSON object starting at start, if closed."""
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
        elif char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index + 1
    return None


class ToolCallExtractor:
    """
    Turns model output into tool calls for one completion.

    Attributes:
        tools: Declared tools by name
        tool_choice: "none", "auto", "required" or a function selector
        native: Parse <tool_call> blocks incrementally instead of an envelope
        diagnostics: Context attached to every ToolCallError
    """

    def __init__(
        self,
        tools: Sequence[Any],
        tool_choice: Any = "auto",
        native: bool = False,
        diagnostics: Optional[Dict[str, Any]] = None,
    ):
        self.tools = parse_tools(tools)
        self.native = native
        self.diagnostics = dict(diagnostics or {})
        self.required = False
        self.tool_choice = tool_choice

        if isinstance(tool_choice, Mapping):
            forced = (tool_choice.get("function") or {}).get("name")
            if forced not in self.tools:
                raise ValidationError(f"tool_choice names an undeclared tool: {forced!r}")
            self.tools = {forced: self.tools[forced]}
            self.required = True
        elif tool_choice == "required":
            self.required = True

        self._buffer = ""
        self._scanned = 0
        self._calls: List[ToolCall] = []

    @property
    def enabled(self) -> bool:
        return bool(self.tools) and self.tool_choice != "none"

    @property
    def calls(self) -> List[ToolCall]:
        """Native calls parsed so far by feed()."""
        return list(self._calls)

    def feed(self, piece: str) -> bool:
        """
        Consume one decoded piece of output.

        Returns:
            bool: True when a complete {"tool_calls": [...]} envelope has
                been received and generation can stop

        Raises:
            ToolCallError: If a completed native block is invalid
        """
        if not self.enabled:
            return False

        self._buffer += piece
        if self.native:
            self._scan_native()
            return False

        stripped = self._buffer.lstrip()
        if not stripped.startswith("{") or '"tool_calls"' not in stripped:
            return False
        end = _find_balanced_object(stripped, 0)
        if end is None:
            return False
        try:
            payload = json.loads(stripped[:end])
        except json.JSONDecodeError:
            return False
        return isinstance(payload, dict) and "tool_calls" in payload

    def _scan_native(self) -> None:
        while True:
            start = self._buffer.find(NATIVE_OPEN, self._scanned)
            if start < 0:
                return
            end = self._buffer.find(NATIVE_CLOSE, start)
            if end < 0:
                return
            body = self._buffer[start + len(NATIVE_OPEN):end]
            self._scanned = end + len(NATIVE_CLOSE)
            self._calls.extend(self._calls_from_payload(self._decode(body.strip())))

    def finalize(self, text: str) -> Tuple[str, List[ToolCall]]:
        """
        Extract the calls from the complete output.

        In native mode the calls feed() already built are kept and only
        the text after the last parsed block is scanned.

        Args:
            text: Final generated text (stop strings already removed)

        Returns:
            (content, calls): text with tool-call markup removed, and the calls

        Raises:
            ToolCallError: On invalid arguments, or when a call was required
                and none was found
        """
        if not self.enabled:
            return text, []

        if self.native:
            if not text.startswith(self._buffer[:self._scanned]):
                # a stop string cut the text inside an already parsed block
                self._scanned = 0
                self._calls = []
            self._buffer = text
            self._scan_native()
            calls = list(self._calls)
            content = _NATIVE_BLOCK.sub("", text).strip() if calls else text
        else:
            calls, content = self._extract_envelope(text)

        if self.required and not calls:
            raise self._error("Model produced no tool call but one was required")

        for call in calls:
            logger.debug(f"Extracted tool call {call.id}: {call.name}")
        return content, calls

    def _extract_envelope(self, text: str) -> Tuple[List[ToolCall], str]:
        candidates: List[Tuple[str, str]] = []

        for match in _FENCED_JSON.finditer(text):
            candidates.append((match.group(1).strip(), match.group(0)))

        stripped = text.strip()
        if stripped.startswith(("{", "[")):
            candidates.append((stripped, stripped))

        start = text.find('{"tool_calls"')
        if start >= 0:
            end = _find_balanced_object(text, start)
            if end is not None:
                candidates.append((text[start:end], text[start:end]))

        for payload_text, span in candidates:
            try:
                payload = json.loads(payload_text)
            except json.JSONDecodeError:
                continue
            calls = self._calls_from_payload(payload)
            if calls:
                return calls, text.replace(span, "").strip()

        return [], text

    def _decode(self, body: str) -> Any:
        try:
            return json.loads(body)
        except json.JSONDecodeError as e:
            raise self._error(f"Tool call is not valid JSON: {e.msg}") from e

    def _calls_from_payload(self, payload: Any) -> List[ToolCall]:
        """Build calls from any accepted payload shape, skipping unknown tool names."""
        if isinstance(payload, Mapping) and isinstance(payload.get("tool_calls"), list):
            items = payload["tool_calls"]
        elif isinstance(payload, list):
            items = payload
        else:
            items = [payload]

        calls = []
        for item in items:
            if not isinstance(item, Mapping):
                continue
            if isinstance(item.get("function"), Mapping):
                item = item["function"]
            name = item.get("name")
            if name not in self.tools:
                logger.debug(f"Ignoring call to undeclared tool {name!r}")
                continue
            arguments = item.get("arguments", item.get("parameters", {}))
            calls.append(self._build_call(self.tools[name], arguments))
        return calls

    def _build_call(self, tool: Tool, arguments: Any) -> ToolCall:
        if isinstance(arguments, str):
            arguments = self._decode(arguments) if arguments.strip() else {}

        report = validate_instance(arguments, tool.parameters)
        if not report.is_valid:
            raise self._error(
                f"Arguments for tool '{tool.name}' do not match its parameters\n"
                + format_violations(report.violations),
                violations=summarize_violations(report.violations),
            )

        return ToolCall(id=_new_call_id(), name=tool.name, arguments=json.dumps(arguments))

    def _error(self, message: str, **extra: Any) -> ToolCallError:
        diagnostics = dict(self.diagnostics)
        diagnostics.update(extra)
        return ToolCallError(message, diagnostics)
