"""
Token Codec - mint and verify the value carried in the scannable code.

Wire format: "{token_id}.{signature}"
- token_id: 16 random bytes, URL-safe base64 without padding (22 chars)
- signature: HMAC-SHA256(token_id) under the signing secret, truncated to
  16 bytes, URL-safe base64 without padding

Nothing else is embedded. Merchant and offer context is resolved server-side
from the token id, so a forged or mistyped code is rejected before it costs
a database lookup.
"""

import base64
import hashlib
import hmac
import secrets

from app.config import settings

TOKEN_ID_BYTES = 16
SIGNATURE_BYTES = 16
SEPARATOR = "."


def _b64(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


class TokenCodec:
    """Encode token ids into signed wire values and back."""

    def __init__(self, secret: str | None = None) -> None:
        self._key = (secret if secret is not None else settings.token_signing_secret).encode()

    def mint(self) -> tuple[str, str]:
        """
        Generate a new token.

        Returns:
            tuple: (token_id, wire_value)
        """
        token_id = _b64(secrets.token_bytes(TOKEN_ID_BYTES))
        return token_id, self.encode(token_id)

    def encode(self, token_id: str) -> str:
        """Attach the signature to a token id."""
        return f"{token_id}{SEPARATOR}{self.sign(token_id)}"

    def sign(self, token_id: str) -> str:
        """Truncated HMAC-SHA256 of the token id."""
        digest = hmac.new(self._key, token_id.encode(), hashlib.sha256).digest()
        return _b64(digest[:SIGNATURE_BYTES])

    def decode(self, value: str) -> str | None:
        """
        Verify a scanned value and return its token id.

        Returns None for anything malformed or wrongly signed.
        """
        token_id, sep, signature = value.strip().partition(SEPARATOR)
        if not sep or not token_id or not signature:
            return None
        if SEPARATOR in signature or not signature.isascii() or len(token_id) > 64:
            return None
        if not hmac.compare_digest(signature, self.sign(token_id)):
            return None
        return token_id
