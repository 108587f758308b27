"""toolgate authentication package: hashing and middleware.

Re-exports public API so consumers can use:
    from .auth import hash_token, get_identity_from_token
"""

from .hashing import generate_token, hash_token
from .middleware import get_identity_from_token, identity_for_token

__all__ = [
    "hash_token",
    "generate_token",
    "get_identity_from_token",
    "identity_for_token",
]
