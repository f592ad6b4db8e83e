"""Utility helpers."""

from .hash import hash_file, hash_payload

__all__ = ["hash_file", "hash_payload"]
