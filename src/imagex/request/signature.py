"""Request signature verification."""

from __future__ import annotations

import hashlib
import hmac
import secrets
from typing import Protocol


class SignatureVerifier(Protocol):
    """Protocol for verifying signed request paths."""

    def verify(self, path: str, signature: str) -> bool:
        """Return True when the signature matches the path."""
        ...


class HmacSignatureVerifier:
    """Hex HMAC-SHA256 of the request path, keyed with a shared secret."""

    def __init__(self, secret: str) -> None:
        self._secret = secret.encode()

    def sign(self, path: str) -> str:
        return hmac.new(self._secret, path.encode(), hashlib.sha256).hexdigest()

    def verify(self, path: str, signature: str) -> bool:
        return secrets.compare_digest(self.sign(path).encode(), signature.encode())
