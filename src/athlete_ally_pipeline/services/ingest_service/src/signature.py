"""HMAC-SHA256 webhook signature checks."""

import hashlib
import hmac
import logging
import re
from typing import Optional, Sequence, Union

logger = logging.getLogger(__name__)

_HEX_DIGEST = re.compile(r'^[0-9a-f]{64}$')

Body = Union[bytes, str]
HeaderValue = Union[str, Sequence[str], None]


def _to_bytes(value: Body) -> bytes:
    return value.encode('utf-8') if isinstance(value, str) else bytes(value)


def compute_signature(secret: Body, raw_body: Body) -> str:
    """Lowercase hex HMAC-SHA256 of the raw request body."""
    return hmac.new(_to_bytes(secret), _to_bytes(raw_body), hashlib.sha256).hexdigest()


def _normalize_header(header_signature: HeaderValue) -> Optional[str]:
    if header_signature is None:
        return None
    if not isinstance(header_signature, str):
        header_signature = next(iter(header_signature), None)
        if not isinstance(header_signature, str):
            return None

    value = header_signature.strip().lower()
    if value.startswith('sha256='):
        value = value[len('sha256='):].strip()

    if not _HEX_DIGEST.match(value):
        return None
    return value


def verify_signature(secret: Body, raw_body: Body, header_signature: HeaderValue) -> bool:
    """
    Check a vendor signature header against the raw body.

    Accepts an optional ``sha256=`` prefix, any hex case and surrounding
    whitespace. When several header values are given the first one is used.
    Never raises; malformed input is simply not a match.
    """
    provided = _normalize_header(header_signature)
    if provided is None:
        logger.debug("Signature header missing or malformed")
        return False

    expected = compute_signature(secret, raw_body)
    return hmac.compare_digest(expected, provided)
