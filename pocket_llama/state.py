"""
Session-state files: save and restore an engine's evaluation state.

File layout:
    b"PLSS"                     magic
    uint32 LE                   format version
    uint32 LE                   header length
    JSON header                 {"fingerprint": {...}, "n_tokens": int}
    pickle                      engine snapshot (LlamaState for llama.cpp)

The fingerprint (model file name, n_vocab, n_ctx, n_embd) must match the
loading engine. Loading validates the whole file before touching the engine
and rolls back if the engine rejects the snapshot, so a failed load leaves the
session exactly as it was.

Session files contain pickles: only load files you wrote yourself.

Usage:
    ```python
    from pocket_llama.state import save_session_file, load_session_file

    save_session_file("chat.session", engine)
    load_session_file("chat.session", engine)
    ```
"""

import json
import logging
import pickle
import struct
from pathlib import Path
from typing import Any, Dict, Tuple, Union

from pocket_llama.errors import EngineError, ParseError, ValidationError

logger = logging.getLogger(__name__)

MAGIC = b"PLSS"
VERSION = 1
_UINT32 = struct.Struct("<I")


def save_session_file(path: Union[str, Path], engine: Any) -> Dict[str, Any]:
    """
    Write the engine state to path.

    Returns:
        Dict: The header that was written

    Raises:
        ValidationError: If path is empty
        EngineError: If the file cannot be written
    """
    if not path:
        raise ValidationError("Missing required parameter: path")

    header = {"fingerprint": engine.fingerprint(), "n_tokens": engine.token_count()}
    header_bytes = json.dumps(header, sort_keys=True).encode("utf-8")
    payload = pickle.dumps(engine.snapshot(), protocol=pickle.HIGHEST_PROTOCOL)

    try:
        with open(path, "wb") as f:
            f.write(MAGIC)
            f.write(_UINT32.pack(VERSION))
            f.write(_UINT32.pack(len(header_bytes)))
            f.write(header_bytes)
            f.write(payload)
    except OSError as e:
        raise EngineError(f"Failed to write session file {path}: {e}") from e

    logger.info(f"Saved session ({header['n_tokens']} tokens) to {path}")
    return header


def read_session_file(path: Union[str, Path]) -> Tuple[Dict[str, Any], Any]:
    """
    Read and decode a session file without applying it.

    Returns:
        (header, snapshot)

    Raises:
        ValidationError: If the file is missing or has an unsupported version
        ParseError: If the file is truncated or corrupt
    """
    if not path:
        raise ValidationError("Missing required parameter: path")

    try:
        data = Path(path).read_bytes()
    except FileNotFoundError as e:
        raise ValidationError(f"Session file not found: {path}") from e
    except OSError as e:
        raise ParseError(f"Cannot read session file {path}: {e}") from e

    prefix = len(MAGIC) + 2 * _UINT32.size
    if len(data) < prefix or not data.startswith(MAGIC):
        raise ParseError(f"Not a session file: {path}")

    (version,) = _UINT32.unpack_from(data, len(MAGIC))
    if version != VERSION:
        raise ValidationError(f"Unsupported session file version {version} (expected {VERSION})")

    (header_len,) = _UINT32.unpack_from(data, len(MAGIC) + _UINT32.size)
    header_end = prefix + header_len
    if header_end > len(data):
        raise ParseError(f"Session file is truncated: {path}")

    try:
        header = json.loads(data[prefix:header_end].decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise ParseError(f"Session file header is corrupt: {e}") from e
    if not isinstance(header, dict) or not isinstance(header.get("fingerprint"), dict):
        raise ParseError("Session file header is missing the model fingerprint")

    try:
        snapshot = pickle.loads(data[header_end:])
    except Exception as e:
        raise ParseError(f"Session state is corrupt: {e}") from e

    return header, snapshot


def load_session_file(path: Union[str, Path], engine: Any) -> Dict[str, Any]:
    """
    Restore engine state from path.

    Returns:
        Dict: The file header

    Raises:
        ValidationError: If the file belongs to a different model or context size
        ParseError: If the file is corrupt
        EngineError: If the engine rejects the snapshot (state is rolled back)
    """
    header, snapshot = read_session_file(path)

    expected = engine.fingerprint()
    found = header["fingerprint"]
    mismatched = sorted(key for key in expected if found.get(key) != expected[key])
    if mismatched:
        details = ", ".join(f"{key}: {found.get(key)!r} != {expected[key]!r}" for key in mismatched)
        raise ValidationError(f"Session file does not match the loaded model ({details})")

    previous = engine.snapshot()
    try:
        engine.restore(snapshot)
    except Exception as e:
        engine.restore(previous)
        if isinstance(e, EngineError):
            raise
        raise EngineError(f"Failed to restore session: {e}") from e

    logger.info(f"Loaded session ({header.get('n_tokens', 0)} tokens) from {path}")
    return header
