"""
Error Fingerprint Utility
=========================
Collapses errors that differ only in superficial detail to one fingerprint.

Normalisation (message and each of the first 3 stack lines):
    - lowercase
    - every digit run       → "N"
    - every quoted literal  → "S"
    - whitespace collapsed to a single space

The normalised "<type>-<message>-<stack>" string is hashed with a 32-bit
rolling hash (h = h * 31 + c, wrapped to signed 32 bits), made positive and
rendered in base 36. Two errors that only differ in a line number or a
literal value therefore share a fingerprint.

Content checksum:
    ``content_checksum`` uses the same rolling hash over file contents, so
    DiffEngine can tag a patch with the post-image it expects.
"""
import hashlib
import re
from typing import Optional

_DIGITS = re.compile(r"\d+")
_QUOTED = re.compile(r"[\"'][^\"']*[\"']")
_WHITESPACE = re.compile(r"\s+")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def normalize_error_text(text: str) -> str:
    """Lowercase, mask digits and quoted literals, collapse whitespace."""
    normalized = text.lower()
    normalized = _DIGITS.sub("N", normalized)
    normalized = _QUOTED.sub("S", normalized)
    return _WHITESPACE.sub(" ", normalized).strip()


def rolling_hash(text: str) -> int:
    """32-bit signed rolling hash: h = (h << 5) - h + ord(c)."""
    h = 0
    for ch in text:
        h = ((h << 5) - h) + ord(ch)
        h = ((h + 0x80000000) & 0xFFFFFFFF) - 0x80000000
    return h


def to_base36(value: int) -> str:
    value = abs(value)
    if value == 0:
        return "0"
    digits = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def error_fingerprint(message: str, stack: Optional[str] = None, error_type: Optional[str] = None) -> str:
    """
    Generate the fingerprint used for duplicate / crash-loop detection.

    Parameters
    ----------
    message : str
        Raw error message.
    stack : str, optional
        Stack trace; only the first 3 lines contribute.
    error_type : str, optional
        Error category, "unknown" when missing.

    Returns
    -------
    str
        Base-36 fingerprint.
    """
    normalized_message = normalize_error_text(message or "unknown error")
    normalized_stack = ""
    if stack:
        first_lines = "\n".join(stack.split("\n")[:3])
        normalized_stack = normalize_error_text(first_lines)

    combined = f"{error_type or 'unknown'}-{normalized_message}-{normalized_stack}"
    return to_base36(rolling_hash(combined))


def content_checksum(content: str) -> str:
    """Rolling-hash checksum of file content (base 36)."""
    return to_base36(rolling_hash(content))


def short_id(value: str, length: int = 8) -> str:
    """
    Stable short identifier for branch names.

    Takes the first ``length`` characters of the rolling-hash fingerprint
    of ``value``; a sha256 digest is appended when the base-36 rendering
    is shorter than requested.
    """
    fp = content_checksum(value)
    if len(fp) >= length:
        return fp[:length]
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return (fp + digest)[:length]
