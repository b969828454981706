"""
Utility functions for phiguard.

Provides canonical JSON serialization, hashing, encoding, and time utilities.
"""

import base64
import binascii
import hashlib
import hmac
import json
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Optional, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 hash and return as bytes."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Strict base64 decode; raises ValueError on characters outside the alphabet."""
    try:
        return base64.b64decode(s.encode('ascii'), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise ValueError(f"invalid base64: {e}") from e


def try_b64_text(s: str) -> Optional[str]:
    """
    Decode a base64 string to UTF-8 text.

    Returns None for non-string input, input that is not strict base64, or
    bytes that are not UTF-8.
    """
    if not isinstance(s, str) or not s:
        return None
    try:
        return b64d(s).decode('utf-8')
    except (ValueError, UnicodeDecodeError):
        return None


def utc_iso_millis(ts_epoch: Optional[float] = None) -> str:
    """Format a Unix timestamp as ISO-8601 UTC with millisecond precision."""
    if ts_epoch is None:
        ts_epoch = time.time()
    dt = datetime.fromtimestamp(ts_epoch, tz=timezone.utc)
    return dt.isoformat(timespec='milliseconds').replace('+00:00', 'Z')


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """
    Compare two strings/bytes in constant time to prevent timing attacks.
    """
    if isinstance(a, str):
        a = a.encode('utf-8')
    if isinstance(b, str):
        b = b.encode('utf-8')
    return hmac.compare_digest(a, b)


def random_bytes(length: int) -> bytes:
    """Cryptographically secure random bytes."""
    return secrets.token_bytes(length)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def mask_identity(identity: str) -> str:
    """Mask an e-mail style identity for logs: ``j***@example.com``."""
    local, sep, domain = identity.partition('@')
    if not sep:
        return mask_sensitive(identity)
    head = local[:1]
    return f"{head}***@{domain}"
