"""Content digests used for cache keys."""

from __future__ import annotations

import hashlib
import json
from pathlib import Path
from typing import Any

DEFAULT_ALGO = "blake2s"
CHUNK_SIZE = 1 << 16


def _new_hasher(algo: str):
    return hashlib.blake2s() if algo == DEFAULT_ALGO else hashlib.new(algo)


def hash_file(path: str | Path, *, algo: str = DEFAULT_ALGO, chunk_size: int = CHUNK_SIZE) -> str:
    """Hex digest of the bytes at ``path``.

    Only content is hashed, never the name or location, so two copies of the
    same recording share a digest.  Raises :class:`OSError` when unreadable.
    """

    hasher = _new_hasher(algo.lower())
    with Path(path).open("rb") as stream:
        while block := stream.read(chunk_size):
            hasher.update(block)
    return hasher.hexdigest()


def hash_payload(payload: Any, *, algo: str = DEFAULT_ALGO) -> str:
    """Digest of a JSON-serialisable value with stable key ordering."""

    encoded = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    hasher = _new_hasher(algo.lower())
    hasher.update(encoded.encode("utf-8"))
    return hasher.hexdigest()


__all__ = ["hash_file", "hash_payload"]
