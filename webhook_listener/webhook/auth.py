"""Webhook signature verification (GitHub ``X-Hub-Signature-256``)."""

from __future__ import annotations

import hashlib
import hmac
import logging
import re
from collections.abc import Mapping

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Hub-Signature-256"
SIGNATURE_PREFIX = "sha256="

_HEX_RE = re.compile(r"(?:[0-9a-fA-F]{2})*")


def decode_signature(header_value: str | None) -> bytes | None:
    """Extract the raw digest from ``sha256=<hex>``; None if absent or malformed."""
    if not header_value or not header_value.startswith(SIGNATURE_PREFIX):
        return None
    hex_part = header_value[len(SIGNATURE_PREFIX) :]
    if not _HEX_RE.fullmatch(hex_part):
        return None
    return bytes.fromhex(hex_part)


def verify_signature(secret: bytes, headers: Mapping[str, str], body: bytes) -> bool:
    """Check the HMAC-SHA256 signature of *body* against the signature header.

    A missing or malformed header is rejected before any digest is computed.
    The digest comparison is constant-time.
    """
    signature = decode_signature(headers.get(SIGNATURE_HEADER))
    if signature is None:
        logger.warning("Signature rejected: missing or malformed %s header", SIGNATURE_HEADER)
        return False

    expected = hmac.new(secret, body, hashlib.sha256).digest()
    valid = hmac.compare_digest(expected, signature)
    if not valid:
        logger.warning("Signature rejected: mismatch (body=%d bytes)", len(body))
    return valid
