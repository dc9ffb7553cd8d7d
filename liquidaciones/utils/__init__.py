"""Utility modules."""

from .hashing import sha256_bytes, sha256_text

__all__ = ["sha256_bytes", "sha256_text"]
