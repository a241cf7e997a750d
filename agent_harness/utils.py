"""Shared utilities used across the test harness."""

import hashlib
import re
import time


def normalize_whitespace(value: str) -> str:
    """Collapse runs of whitespace to a single space and trim the ends.

    Examples:
        >>> normalize_whitespace("  What's   your\\nname? ")
        "What's your name?"
    """
    return re.sub(r"\s+", " ", value).strip()


def content_hash(content: str) -> str:
    """Return the SHA-256 hex digest of a piece of text content."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def to_base36(value: int) -> str:
    """Encode a non-negative integer in base 36 (lower-case)."""
    if value < 0:
        raise ValueError(f"to_base36 expects a non-negative integer, got {value}")
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


def now_ms() -> int:
    """Current wall-clock time in epoch milliseconds."""
    return int(time.time() * 1000)
