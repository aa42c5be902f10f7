"""
Host capability detection: GPU offload support and CPU thread defaults.

llama.cpp decides at build time whether layers can be offloaded (Metal,
CUDA, Vulkan, ...). Asking for GPU layers on a CPU-only build is not an
error; the session degrades to the CPU and reports why.

Usage:
    ```python
    from pocket_llama.backends import supports_gpu_offload, default_thread_count

    n_gpu_layers = 99 if supports_gpu_offload() else 0
    n_threads = default_thread_count()
    ```
"""

import logging
import os
import platform
from typing import Any, Dict

logger = logging.getLogger(__name__)


def supports_gpu_offload() -> bool:
    """
    Check whether the installed llama.cpp build can offload layers to a GPU.

    Returns:
        bool: False when llama-cpp-python is missing or CPU-only
    """
    try:
        import llama_cpp
    except ImportError:
        logger.debug("llama-cpp-python not installed, GPU offload unavailable")
        return False

    return bool(llama_cpp.llama_supports_gpu_offload())


def default_thread_count() -> int:
    """
    Default CPU thread count for decoding.

    Leaves two cores free on machines with more than four, one otherwise,
    and never returns less than 1.

    Example:
        ```python
        # 8 cores → 6, 4 cores → 3, 1 core → 1
        n_threads = default_thread_count()
        ```
    """
    cores = os.cpu_count() or 1
    threads = cores - 2 if cores > 4 else cores - 1
    return max(1, threads)


def get_device_info() -> Dict[str, Any]:
    """Host summary for the CLI info command."""
    return {
        "platform": platform.system(),
        "machine": platform.machine(),
        "cpu_count": os.cpu_count() or 1,
        "default_threads": default_thread_count(),
        "gpu_offload": supports_gpu_offload(),
    }
