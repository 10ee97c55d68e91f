"""Parameter codec - percent-encodes query and form parameters.

Encoding follows curl_easy_escape: only ALPHA, DIGIT and "-._~" pass
through, every other byte of the UTF-8 encoding becomes %XX. A space is
always "%20", never "+", so the same encoder serves both query strings and
application/x-www-form-urlencoded bodies.
"""

from __future__ import annotations

import logging
from urllib.parse import quote

logger = logging.getLogger(__name__)

# quote() always keeps ALPHA / DIGIT / "_.-~"; nothing else may pass through.
_SAFE = ""


def escape(text: str | bytes) -> str | None:
    """Percent-encode a single name or value.

    Returns:
        The encoded string, or None if the input cannot be encoded (wrong
        type, or a str that has no UTF-8 representation).
    """
    if isinstance(text, bytes):
        return quote(text, safe=_SAFE)
    if not isinstance(text, str):
        return None
    try:
        return quote(text, safe=_SAFE, encoding="utf-8", errors="strict")
    except UnicodeEncodeError:
        return None


def encode_param(name: str | bytes, value: str | bytes) -> tuple[str, str] | None:
    """Encode a name/value pair for a query string or form body.

    Both halves must encode, otherwise the pair is rejected as a whole so a
    caller never appends a partial parameter.

    Args:
        name: Parameter name.
        value: Parameter value.

    Returns:
        (encoded_name, encoded_value), or None on encoding failure.
    """
    encoded_name = escape(name)
    encoded_value = escape(value)

    if encoded_name is None or encoded_value is None:
        logger.debug("Skipping parameter that cannot be percent-encoded: %r=%r", name, value)
        return None

    return encoded_name, encoded_value
