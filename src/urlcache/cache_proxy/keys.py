"""Storage key derivation for cached URLs."""

from __future__ import annotations

import hashlib


def derive_key(url: str) -> str:
    """Map a URL to a sharded object key.

    The key is the lowercase SHA-256 hex digest of the URL split as
    ``ab/cd/<rest>`` so objects spread over 65,536 two-level prefixes.
    """
    digest = hashlib.sha256(url.encode("utf-8", "surrogatepass")).hexdigest()
    return f"{digest[0:2]}/{digest[2:4]}/{digest[4:]}"
