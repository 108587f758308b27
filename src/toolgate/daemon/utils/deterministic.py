"""Stable encodings for session payloads and log-safe identifiers."""

import hashlib
import json
from typing import Any

_FINGERPRINT_LEN = 12


def canonical_json(value: Any) -> str:
    """Sorted-key, compact JSON; the same payload always yields the same bytes."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), ensure_ascii=True, default=str)


def normalize(value: Any) -> Any:
    """Plain JSON types as they will come back out of the session store."""
    return json.loads(canonical_json(value))


def namespaced_digest(namespace: str, value: str) -> str:
    """SHA-256 hex of ``value`` under ``namespace`` so equal values in different roles never collide."""
    return hashlib.sha256(f"{namespace}\x00{value}".encode("utf-8")).hexdigest()


def payload_digest(payload: Any) -> str:
    return namespaced_digest("action.payload", canonical_json(payload))


def fingerprint(namespace: str, secret: str) -> str:
    """Short non-reversible id for a secret, for logs and audit listings."""
    return namespaced_digest(namespace, secret)[:_FINGERPRINT_LEN]
