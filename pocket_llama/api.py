"""
High-level Python API for pocket-llama.

Entry points:
    - init_llama(): load a model and return a ModelSession
    - load_llama_model_info(): read model metadata without a full load
    - json_schema_to_gbnf(): compile a JSON schema string to a GBNF grammar
    - compile_schema(): same, for a schema dict or pydantic model

Every entry point has an ``*_async`` twin running in a worker thread.

Usage:
    ```python
    from pocket_llama.api import load_llama_model_info, json_schema_to_gbnf

    info = load_llama_model_info("models/qwen2.5-0.5b-instruct-q4_k_m.gguf")
    print(info["quant_type"], info["n_layer"])

    grammar = json_schema_to_gbnf({"schema": '{"type": "object", "properties": {}}'})
    ```
"""

import asyncio
import logging
import os
import threading
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from pocket_llama.backends import EngineFactory, supports_gpu_offload
from pocket_llama.config import LlamaModelParams, check_gguf_file, quant_type_name, strip_file_uri
from pocket_llama.errors import EngineError, LlamaError, ValidationError
from pocket_llama.grammar import compile_schema, json_schema_to_gbnf
from pocket_llama.session import ModelSession

logger = logging.getLogger(__name__)

# context size for the CPU load behind load_llama_model_info
INFO_N_CTX = 256

_info_cache: Dict[Tuple[str, int, float], Dict[str, Any]] = {}
_info_cache_lock = threading.Lock()


def init_llama(
    params: Mapping[str, Any],
    engine_factory: Optional[Callable[[LlamaModelParams], Any]] = None,
) -> ModelSession:
    """
    Load a model.

    Args:
        params: Model params; "model" (GGUF path) is required
        engine_factory: Optional engine builder, see ModelSession.create

    Returns:
        ModelSession: The loaded session

    Example:
        ```python
        llama = init_llama({"model": "file:///models/phi-3-mini.gguf", "n_gpu_layers": 99})
        print(llama.gpu, llama.reason_no_gpu)
        ```
    """
    return ModelSession.create(params, engine_factory=engine_factory)


async def init_llama_async(
    params: Mapping[str, Any],
    engine_factory: Optional[Callable[[LlamaModelParams], Any]] = None,
) -> ModelSession:
    return await asyncio.to_thread(init_llama, params, engine_factory)


def load_llama_model_info(
    path: Optional[str],
    options: Optional[Mapping[str, Any]] = None,
    engine_factory: Optional[Callable[[LlamaModelParams], Any]] = None,
) -> Dict[str, Any]:
    """
    Read metadata from a GGUF model.

    The file is checked for the GGUF magic, then loaded on the CPU with a small
    context. Results are cached per (resolved path, size, mtime).

    Args:
        path: Path to the GGUF file ("file://" prefix accepted)
        options: {"use_cache": False} bypasses the cache
        engine_factory: Optional engine builder

    Returns:
        Dict with n_params, n_vocab, n_context, n_embd, n_layer, description,
        size, gpuSupported, optimalGpuLayers, quant_type and architecture

    Raises:
        ValidationError: Missing path or nonexistent file
        ParseError: File is not GGUF
        EngineError: llama.cpp could not read the model
    """
    if not path or not isinstance(path, str):
        raise ValidationError("Missing required parameter: path")
    options = options or {}

    path = strip_file_uri(path)
    size = check_gguf_file(path)
    key = (os.path.realpath(path), size, os.path.getmtime(path))

    use_cache = options.get("use_cache", True)
    if use_cache:
        with _info_cache_lock:
            if key in _info_cache:
                logger.debug(f"Model info cache hit: {path}")
                return dict(_info_cache[key])

    info = _read_model_info(path, engine_factory or EngineFactory.create)

    if use_cache:
        with _info_cache_lock:
            _info_cache[key] = dict(info)
    return info


def _read_model_info(path: str, factory: Callable[[LlamaModelParams], Any]) -> Dict[str, Any]:
    # vocab-only loads skip hparams and tensors, leaving sizes and counts at 0
    params = LlamaModelParams(model=path, n_gpu_layers=0, n_ctx=INFO_N_CTX)
    try:
        engine = factory(params)
    except LlamaError:
        raise
    except Exception as e:
        logger.error(f"Failed to read model info from {path}: {e}")
        raise EngineError(f"Failed to read model: {e}", {"model": path}) from e

    try:
        described = engine.describe()
    finally:
        engine.close()

    metadata = described.get("metadata", {})
    gpu = supports_gpu_offload()
    n_layer = described["n_layer"]
    return {
        "n_params": described["n_params"],
        "n_vocab": described["n_vocab"],
        "n_context": described["n_ctx_train"],
        "n_embd": described["n_embd"],
        "n_layer": n_layer,
        "description": described["description"],
        "size": described["size"],
        "gpuSupported": gpu,
        "optimalGpuLayers": n_layer + 1 if gpu else 0,
        "quant_type": quant_type_name(metadata.get("general.file_type")),
        "architecture": metadata.get("general.architecture", "unknown"),
    }


async def load_llama_model_info_async(
    path: Optional[str],
    options: Optional[Mapping[str, Any]] = None,
    engine_factory: Optional[Callable[[LlamaModelParams], Any]] = None,
) -> Dict[str, Any]:
    return await asyncio.to_thread(load_llama_model_info, path, options, engine_factory)


async def json_schema_to_gbnf_async(params: Mapping[str, Any]) -> str:
    return await asyncio.to_thread(json_schema_to_gbnf, params)


def clear_model_info_cache() -> None:
    with _info_cache_lock:
        _info_cache.clear()


__all__ = [
    "clear_model_info_cache",
    "compile_schema",
    "init_llama",
    "init_llama_async",
    "json_schema_to_gbnf",
    "json_schema_to_gbnf_async",
    "load_llama_model_info",
    "load_llama_model_info_async",
]
