from __future__ import annotations

import hashlib

def hash_bytes(data: bytes) -> str:
    h = hashlib.blake2b(digest_size=32)
    h.update(data)
    return h.hexdigest()

def seed_from_text(text: str) -> int:
    """64-bit integer seed derived from a string, stable across processes."""
    h = hashlib.blake2b(text.encode("utf-8"), digest_size=8)
    return int.from_bytes(h.digest(), "little")
