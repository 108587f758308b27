"""Token hashing utilities for toolgate authentication."""

import hashlib
import secrets

# 16 bytes of entropy, hex encoded
_MIN_TOKEN_HEX_LEN = 32


def hash_token(raw_token: str) -> str:
    """SHA-256 hash a raw token for storage/lookup."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def generate_token() -> tuple[str, str]:
    """New bearer token and the digest to put in the credentials table."""
    raw = "tg_" + secrets.token_hex(24)
    return raw, hash_token(raw)
