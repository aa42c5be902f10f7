"""
pocket-llama: GGUF model sessions with grammar-constrained JSON output

pocket-llama wraps llama.cpp (through llama-cpp-python) in a small session
API and compiles JSON Schemas into GBNF grammars, so a model can only emit
JSON of the requested shape.

Key Features:
    - JSON Schema / pydantic → GBNF compiler with $ref, anyOf and enums
    - Streaming completions with stop strings, cancellation and timings
    - OpenAI-style tool calls validated against their parameter schemas
    - Tokenize, detokenize, embeddings and session-state files
    - One completion per session at a time, enforced without blocking

Quick Start:
    ```python
    from pocket_llama import init_llama, compile_schema
    from pydantic import BaseModel

    class User(BaseModel):
        name: str
        age: int

    with init_llama({"model": "models/qwen2.5-0.5b-instruct-q4_k_m.gguf"}) as llama:
        result = llama.completion({
            "prompt": "Generate a user profile for John Doe:",
            "grammar": compile_schema(User),
            "max_tokens": 128,
        })
        print(result.text)
    ```

Architecture:
    1. Schema Parser: JSON Schema / pydantic → schema nodes
    2. Grammar Compiler: schema nodes → GBNF rule set
    3. Sampling: params dict → validated SamplingConfig and CompletionRequest
    4. Completion: decode loop, stop strings, tool-call extraction
    5. Session: locking, prompt rendering, embeddings, state files
"""

__version__ = "0.1.0"

from pocket_llama.api import (  # noqa: F401
    compile_schema,
    init_llama,
    init_llama_async,
    json_schema_to_gbnf,
    json_schema_to_gbnf_async,
    load_llama_model_info,
    load_llama_model_info_async,
)
from pocket_llama.completion import CompletionChunk, LlamaCompletionResult  # noqa: F401
from pocket_llama.errors import (  # noqa: F401
    CapabilityError,
    ConcurrencyError,
    EngineError,
    LlamaError,
    ParseError,
    StateError,
    ToolCallError,
    ValidationError,
)
from pocket_llama.session import ModelSession  # noqa: F401

__all__ = [
    "CapabilityError",
    "CompletionChunk",
    "ConcurrencyError",
    "EngineError",
    "LlamaCompletionResult",
    "LlamaError",
    "ModelSession",
    "ParseError",
    "StateError",
    "ToolCallError",
    "ValidationError",
    "compile_schema",
    "init_llama",
    "init_llama_async",
    "json_schema_to_gbnf",
    "json_schema_to_gbnf_async",
    "load_llama_model_info",
    "load_llama_model_info_async",
]
