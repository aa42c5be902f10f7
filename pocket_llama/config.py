"""
Model loading configuration and GGUF file checks.

LlamaModelParams is the validated form of the params dict passed to
init_llama(). Like SamplingConfig, it picks the keys it knows, ignores the
rest and rejects out-of-range values instead of clamping them.

Usage:
    ```python
    from pocket_llama.config import LlamaModelParams

    params = LlamaModelParams.from_params({
        "model": "file:///models/qwen2.5-0.5b-instruct-q4_k_m.gguf",
        "n_ctx": 4096,
        "n_gpu_layers": 99,
    })
    params.model  # "/models/qwen2.5-0.5b-instruct-q4_k_m.gguf"
    ```
"""

import logging
import os
from dataclasses import dataclass, fields
from typing import Any, Dict, Mapping, Optional

from pocket_llama.backends.device_utils import default_thread_count
from pocket_llama.errors import ParseError, ValidationError

logger = logging.getLogger(__name__)

GGUF_MAGIC = b"GGUF"
MIN_GGUF_SIZE = 64

# general.file_type → quantization name
QUANT_TYPES: Dict[int, str] = {
    0: "F32",
    1: "F16",
    2: "Q4_0",
    3: "Q4_1",
    7: "Q8_0",
    8: "Q5_0",
    9: "Q5_1",
    10: "Q2_K",
    11: "Q3_K_S",
    12: "Q3_K_M",
    13: "Q3_K_L",
    14: "Q4_K_S",
    15: "Q4_K_M",
    16: "Q5_K_S",
    17: "Q5_K_M",
    18: "Q6_K",
    19: "IQ2_XXS",
    20: "IQ2_XS",
    21: "Q2_K_S",
    22: "IQ3_XS",
    23: "IQ3_XXS",
    24: "IQ1_S",
    25: "IQ4_NL",
    26: "IQ3_S",
    27: "IQ3_M",
    28: "IQ2_S",
    29: "IQ2_M",
    30: "IQ4_XS",
    31: "IQ1_M",
    32: "BF16",
}


def strip_file_uri(path: str) -> str:
    return path[len("file://"):] if path.startswith("file://") else path


def check_gguf_file(path: str) -> int:
    """
    Check that path is a readable GGUF file.

    Returns:
        int: File size in bytes

    Raises:
        ValidationError: If the file does not exist
        ParseError: If the file is too small or lacks the GGUF magic
    """
    if not os.path.isfile(path):
        raise ValidationError(f"Model file not found: {path}")

    size = os.path.getsize(path)
    if size < MIN_GGUF_SIZE:
        raise ParseError(f"File too small to be a GGUF model ({size} bytes): {path}")

    with open(path, "rb") as f:
        magic = f.read(len(GGUF_MAGIC))
    if magic != GGUF_MAGIC:
        raise ParseError(f"Not a GGUF file (bad magic {magic!r}): {path}")
    return size


def quant_type_name(file_type: Any) -> str:
    """Decode a general.file_type metadata value, "unknown" when absent."""
    try:
        return QUANT_TYPES.get(int(file_type), f"unknown ({file_type})")
    except (TypeError, ValueError):
        return "unknown"


@dataclass
class LlamaModelParams:
    """
    Parameters for loading a model.

    Attributes:
        model: Path to the GGUF file ("file://" prefix accepted)
        n_ctx: Context window in tokens
        n_batch: Prompt evaluation batch size
        n_threads: CPU threads; defaults from the core count
        n_gpu_layers: Layers to offload; 0 keeps everything on the CPU
        use_mlock: Lock model memory to prevent swapping
        use_mmap: Memory-map the model file
        embedding: Enable the embedding() operation
        vocab_only: Load only the vocabulary and metadata
        chat_template: Template override (family name or Jinja text)
    """

    model: str
    n_ctx: int = 2048
    n_batch: int = 512
    n_threads: Optional[int] = None
    n_gpu_layers: int = 0
    use_mlock: bool = False
    use_mmap: bool = True
    embedding: bool = False
    vocab_only: bool = False
    chat_template: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.model, str) or not self.model:
            raise ValidationError("Missing required parameter: model")
        self.model = strip_file_uri(self.model)

        if self.n_threads is None:
            self.n_threads = default_thread_count()

        for name in ("n_ctx", "n_batch", "n_threads", "n_gpu_layers"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value < 0:
                raise ValidationError(f"{name} must be a non-negative integer, got {value!r}")

        for name in ("use_mlock", "use_mmap", "embedding", "vocab_only"):
            if not isinstance(getattr(self, name), bool):
                raise ValidationError(f"{name} must be a boolean")

        if self.chat_template is not None and not isinstance(self.chat_template, str):
            raise ValidationError("chat_template must be a string")

    @classmethod
    def from_params(cls, params: Mapping[str, Any]) -> "LlamaModelParams":
        """
        Build params from a dict, ignoring unknown keys and None values.

        Raises:
            ValidationError: If model is missing or a value is invalid
        """
        if not isinstance(params, Mapping):
            raise ValidationError("params must be an object")

        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in params.items() if key in known and value is not None}
        for key in params:
            if key not in known:
                logger.debug(f"Ignoring unknown model parameter '{key}'")

        if "model" not in values:
            raise ValidationError("Missing required parameter: model")
        return cls(**values)
