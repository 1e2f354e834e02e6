from __future__ import annotations

import logging
from typing import Mapping, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PublicKey

SIGNATURE_HEADER = "X-Signature-Ed25519"
TIMESTAMP_HEADER = "X-Signature-Timestamp"

logger = logging.getLogger(__name__)


def _header(headers: Mapping[str, str], name: str) -> str:
    value = headers.get(name)
    if value is None:
        value = headers.get(name.lower())
    return value or ""


class SignatureVerifier:
    """Checks Discord's Ed25519 request signatures.

    The signed message is the UTF-8 timestamp header followed directly by the
    raw request body. Without a public key every request is rejected unless
    ``allow_unsigned`` is set, which is meant for local development only.
    """

    def __init__(self, public_key_hex: Optional[str], allow_unsigned: bool = False) -> None:
        self._allow_unsigned = allow_unsigned
        self._public_key: Optional[Ed25519PublicKey] = None
        if public_key_hex:
            try:
                key_bytes = bytes.fromhex(public_key_hex.strip())
                self._public_key = Ed25519PublicKey.from_public_bytes(key_bytes)
            except ValueError:
                logger.error("Configured Discord public key is not a 32-byte hex string")
        if self._public_key is None and allow_unsigned:
            logger.warning("No Discord public key configured: accepting UNSIGNED requests")

    @property
    def configured(self) -> bool:
        return self._public_key is not None

    def verify(self, headers: Mapping[str, str], raw_body: bytes) -> bool:
        if self._public_key is None:
            if self._allow_unsigned:
                logger.warning("Signature check skipped (ALLOW_UNSIGNED_REQUESTS is set)")
                return True
            return False

        signature_hex = _header(headers, SIGNATURE_HEADER)
        timestamp = _header(headers, TIMESTAMP_HEADER)
        if not signature_hex or not timestamp:
            return False

        try:
            signature = bytes.fromhex(signature_hex)
        except ValueError:
            return False
        if len(signature) != 64:
            return False

        try:
            self._public_key.verify(signature, timestamp.encode("utf-8") + raw_body)
        except InvalidSignature:
            return False
        return True
