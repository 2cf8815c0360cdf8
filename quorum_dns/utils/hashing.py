"""
Hashing helpers for Quorum-DNS.

Short stable identifiers are derived from SHA-224 digests rendered in base36.
"""

import hashlib
import json
from typing import Any

_BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36_hash(value: str) -> str:
    """
    Hash a string to a lowercase base36 SHA-224 digest.

    Args:
        value: String to hash

    Returns:
        str: Base36 digest
    """
    number = int.from_bytes(hashlib.sha224(value.encode()).digest(), "big")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(_BASE36_ALPHABET[rem])
    return "".join(reversed(digits))


def to_base36_hash_len(value: str, length: int) -> str:
    return to_base36_hash(value)[:length]


def canonical_hash(value: Any) -> str:
    """
    Stable hex digest of a JSON-serializable value.

    Args:
        value: Value to hash

    Returns:
        str: SHA-256 hex digest of the sorted JSON representation
    """
    payload = json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode()).hexdigest()


def hash_root_host(root_host: str) -> str:
    """Deterministic key for a root host, used to name authoritative records."""
    return to_base36_hash(root_host)
