from __future__ import annotations

import base64
import logging

import jwt
from cryptography.fernet import Fernet, InvalidToken

from lnvoucher.core.config import settings

logger = logging.getLogger(__name__)


class TokenError(Exception):
    pass


class CredentialError(Exception):
    pass


# -------------------------
# JWT tokens (admin surface)
# -------------------------
def decode_token(token: str) -> dict:
    try:
        return jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except jwt.ExpiredSignatureError as e:
        raise TokenError("Token expired") from e
    except jwt.InvalidTokenError as e:
        raise TokenError("Invalid token") from e


# -------------------------
# Issuer credential encryption
# -------------------------
class CredentialCipher:
    """Encrypts issuer API keys at rest. The store never decides when to decrypt."""

    def __init__(self, key_hex: str | None = None):
        key_hex = settings.ENCRYPTION_KEY if key_hex is None else key_hex
        if key_hex:
            # Fernet wants 32 raw bytes, url-safe base64 encoded
            key_bytes = bytes.fromhex(key_hex)[:32]
            if len(key_bytes) < 32:
                raise CredentialError("ENCRYPTION_KEY must be at least 32 bytes of hex")
            self._fernet = Fernet(base64.urlsafe_b64encode(key_bytes))
        else:
            logger.warning("ENCRYPTION_KEY not set, using an ephemeral key; stored credentials won't survive restart")
            self._fernet = Fernet(Fernet.generate_key())

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode("utf-8")).decode("ascii")

    def decrypt(self, opaque: str) -> str:
        try:
            return self._fernet.decrypt(opaque.encode("ascii")).decode("utf-8")
        except InvalidToken as e:
            raise CredentialError("Stored credential cannot be decrypted") from e
