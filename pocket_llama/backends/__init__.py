"""
Model engine abstraction module.

ModelSession drives models through the Engine protocol, so the session logic
works the same over llama.cpp and over the in-memory engine used in tests.

Components:
    - base: Abstract Engine protocol and EngineFactory
    - llamacpp_engine: llama-cpp-python implementation (imported on demand)
    - device_utils: GPU offload detection and CPU thread defaults

Example:
    ```python
    from pocket_llama.backends import EngineFactory, supports_gpu_offload

    engine = EngineFactory.create(params)
    print(engine.n_ctx(), supports_gpu_offload())
    ```
"""

from pocket_llama.backends.base import Engine, EngineFactory
from pocket_llama.backends.device_utils import (
    default_thread_count,
    get_device_info,
    supports_gpu_offload,
)

__all__ = [
    "Engine",
    "EngineFactory",
    "default_thread_count",
    "get_device_info",
    "supports_gpu_offload",
]
