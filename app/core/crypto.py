"""Vreamio – Token encryption at rest.

AES-256-GCM for TorBox API tokens. The key is derived once with PBKDF2 from the
configured secret and a fixed application salt; every token shares that key.

Stored layout (base64): nonce (12) || tag (16) || ciphertext.
"""

import base64
import binascii
import os

import structlog
from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

logger = structlog.get_logger()

# Not secret. The configured secret is.
KDF_SALT = b"vreamio-torbox-token-encryption"
KDF_ITERATIONS = 100_000
KEY_LENGTH = 32
NONCE_LENGTH = 12
TAG_LENGTH = 16


class DecryptionFailure(Exception):
    """Stored token is truncated, corrupted or was tampered with."""


class TokenCipher:
    """Authenticated symmetric encryption for vendor credentials."""

    def __init__(self, secret: str, *, salt: bytes = KDF_SALT, iterations: int = KDF_ITERATIONS) -> None:
        if not secret:
            raise ValueError("encryption secret must not be empty")
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=salt,
            iterations=iterations,
        )
        self._aead = AESGCM(kdf.derive(secret.encode("utf-8")))

    def encrypt(self, plaintext: bytes | str) -> str:
        data = plaintext.encode("utf-8") if isinstance(plaintext, str) else plaintext
        nonce = os.urandom(NONCE_LENGTH)
        sealed = self._aead.encrypt(nonce, data, None)
        # AESGCM appends the tag; move it in front of the ciphertext
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return base64.b64encode(nonce + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> bytes:
        try:
            packed = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise DecryptionFailure("Invalid encrypted data: not base64") from exc
        if base64.b64encode(packed).decode("ascii") != blob:
            # Only the canonical encoding of the stored bytes is accepted
            raise DecryptionFailure("Invalid encrypted data: not canonical base64")

        if len(packed) < NONCE_LENGTH + TAG_LENGTH:
            raise DecryptionFailure("Invalid encrypted data: too short")

        nonce = packed[:NONCE_LENGTH]
        tag = packed[NONCE_LENGTH:NONCE_LENGTH + TAG_LENGTH]
        ciphertext = packed[NONCE_LENGTH + TAG_LENGTH:]
        try:
            return self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as exc:
            logger.error("crypto.decryption_failed", reason="auth_tag_mismatch")
            raise DecryptionFailure("Invalid encrypted data: authentication failed") from exc

    def decrypt_text(self, blob: str) -> str:
        return self.decrypt(blob).decode("utf-8")
