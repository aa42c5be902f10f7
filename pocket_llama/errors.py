"""
Exception hierarchy for pocket-llama.

Every failure raised by the library derives from LlamaError and carries a
human-readable message plus an optional ``diagnostics`` dict with structured
context (message counts, roles, sampling parameters, template name, ...).

Hierarchy:
    LlamaError
    ├── ValidationError: bad or missing parameters, never partially applied
    ├── ParseError: malformed schema, grammar, JSON or session file
    ├── CapabilityError: operation unsupported by the session configuration
    ├── ConcurrencyError: overlapping completion on one handle
    ├── EngineError: native load/decode/render failure
    │   └── ToolCallError: tool-call output that is missing or invalid
    └── StateError: operation on a released handle

Usage:
    ```python
    from pocket_llama.errors import LlamaError, ValidationError

    try:
        session.completion({"temperature": 0.7})
    except ValidationError as e:
        print(e.message)  # "prompt or messages required"
    except LlamaError as e:
        print(e.diagnostics)
    ```
"""

from typing import Any, Dict, Optional


class LlamaError(Exception):
    """
    Base exception for pocket-llama errors.

    Attributes:
        message: Human-readable description
        diagnostics: Structured context, empty when none is available
    """

    def __init__(self, message: str, diagnostics: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.diagnostics: Dict[str, Any] = dict(diagnostics or {})

    def __str__(self) -> str:
        if not self.diagnostics:
            return self.message
        details = ", ".join(f"{key}={value!r}" for key, value in self.diagnostics.items())
        return f"{self.message} ({details})"


class ValidationError(LlamaError):
    """Invalid or missing input parameters."""


class ParseError(LlamaError):
    """Malformed JSON schema, grammar, JSON payload or session file."""


class CapabilityError(LlamaError):
    """Operation not supported by the current session configuration."""


class ConcurrencyError(LlamaError):
    """A completion is already running on this handle."""


class EngineError(LlamaError):
    """Native model or decode failure."""


class ToolCallError(EngineError):
    """Model output did not contain a valid call for the declared tools."""


class StateError(LlamaError):
    """Operation on a released or otherwise unusable handle."""


SESSION_RELEASED = "session released"
COMPLETION_IN_PROGRESS = "completion already in progress"
