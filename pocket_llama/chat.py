"""
Chat message helpers: content flattening, template detection, fallback
rendering and the tool-description prompt.

Rendering a message list with the model's own Jinja template is the engine's
job (see backends). When a model ships no template, or its template fails to
render, messages fall back to ChatML, the format most instruction-tuned GGUF
models understand.
"""

import json
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence


FALLBACK_TEMPLATE = "chatml"

# (family, markers that must all appear in the template text), checked in order
_TEMPLATE_MARKERS = (
    ("chatml", ("<|im_start|>",)),
    ("llama3", ("<|start_header_id|>",)),
    ("gemma", ("<start_of_turn>",)),
    ("command-r", ("<|START_OF_TURN_TOKEN|>",)),
    ("deepseek", ("<｜Assistant｜>",)),
    ("phi3", ("<|assistant|>", "<|end|>")),
    ("zephyr", ("<|assistant|>",)),
    ("mistral", ("[INST]", "[/INST]", "[AVAILABLE_TOOLS]")),
    ("llama2", ("[INST]",)),
)


def message_text(content: Any) -> str:
    """Flatten message content (a string or a list of text parts) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return "".join(
        part.get("text", "") if isinstance(part, Mapping) else str(part)
        for part in content
    )


def normalize_messages(messages: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
    """Copy messages with their content flattened to plain text."""
    normalized = []
    for message in messages:
        item = dict(message)
        item["content"] = message_text(message.get("content"))
        normalized.append(item)
    return normalized


def detect_template_family(template: Optional[str]) -> str:
    """
    Identify the chat format family of a template.

    Args:
        template: Jinja template text, a family name, or None

    Returns:
        str: A family id such as "chatml" or "llama3", "jinja" for an
            unrecognised custom template, or the fallback when None

    Example:
        ```python
        detect_template_family("{% for m in messages %}<|im_start|>...")  # "chatml"
        detect_template_family(None)  # "chatml"
        ```
    """
    if not template:
        return FALLBACK_TEMPLATE

    known = {family for family, _ in _TEMPLATE_MARKERS}
    if template in known:
        return template

    for family, markers in _TEMPLATE_MARKERS:
        if all(marker in template for marker in markers):
            return family
    return "jinja"


def is_jinja_template(template: Optional[str]) -> bool:
    return bool(template) and ("{%" in template or "{{" in template)


def supports_native_tools(template: Optional[str]) -> bool:
    """Whether a template renders tools itself and expects <tool_call> markup back."""
    return is_jinja_template(template) and "tools" in template and "<tool_call>" in template


def format_chatml(messages: Sequence[Mapping[str, Any]], add_generation_prompt: bool = True) -> str:
    """
    Render messages in ChatML.

    Example:
        ```python
        format_chatml([{"role": "user", "content": "Hi"}])
        # '<|im_start|>user\\nHi<|im_end|>\\n<|im_start|>assistant\\n'
        ```
    """
    parts = [
        f"<|im_start|>{message['role']}\n{message_text(message.get('content'))}<|im_end|>\n"
        for message in messages
    ]
    if add_generation_prompt:
        parts.append("<|im_start|>assistant\n")
    return "".join(parts)


CHATML_STOP = ("<|im_end|>",)


def format_tools_prompt(tools: Sequence[Mapping[str, Any]]) -> str:
    """Describe tools for models whose template has no native tool support."""
    descriptions = []
    for tool in tools:
        function = tool.get("function", {})
        descriptions.append(
            {
                "name": function.get("name"),
                "description": function.get("description", ""),
                "parameters": function.get("parameters", {}),
            }
        )
    return (
        "You have access to the following functions. To call functions, respond "
        'with only a JSON object of the form {"tool_calls": [{"name": <function name>, '
        '"arguments": <arguments object>}]}.\n\n'
        f"Functions: {json.dumps(descriptions, indent=2)}"
    )


def inject_tools_prompt(
    messages: Sequence[Mapping[str, Any]], tools: Sequence[Mapping[str, Any]]
) -> List[Dict[str, Any]]:
    """Add the tool description to the system message, creating one if needed."""
    prompt = format_tools_prompt(tools)
    injected = [dict(m) for m in messages]
    if injected and injected[0].get("role") == "system":
        existing = message_text(injected[0].get("content"))
        injected[0]["content"] = f"{existing}\n\n{prompt}" if existing else prompt
    else:
        injected.insert(0, {"role": "system", "content": prompt})
    return injected
