# encryption.py — Encryption-at-rest boundary (AES-256-GCM)
import base64
import json
import logging
import os
from typing import Optional, Tuple

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from errors import CoreError, ErrorKind

logger = logging.getLogger("aerelion.encryption")

NONCE_BYTES = 12


class CredentialCipher:
    """Encrypts JSON payloads for storage.

    Stored form is ``(ciphertext_b64, nonce_b64)``; the GCM tag is appended to
    the ciphertext by AESGCM. The key is a base64-encoded 32-byte value.
    """

    def __init__(self, key_b64: Optional[str]):
        self._aead = None
        if key_b64:
            try:
                key = base64.b64decode(key_b64)
            except (ValueError, TypeError):
                key = b""
            if len(key) == 32:
                self._aead = AESGCM(key)
            else:
                logger.error("CREDENTIAL_ENCRYPTION_KEY must decode to 32 bytes")

    @property
    def configured(self) -> bool:
        return self._aead is not None

    def _require(self) -> AESGCM:
        if self._aead is None:
            raise CoreError(ErrorKind.ENCRYPTION_FAILURE, "Credential encryption is not configured")
        return self._aead

    def encrypt(self, payload: dict) -> Tuple[str, str]:
        aead = self._require()
        nonce = os.urandom(NONCE_BYTES)
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        ciphertext = aead.encrypt(nonce, plaintext, None)
        return base64.b64encode(ciphertext).decode("ascii"), base64.b64encode(nonce).decode("ascii")

    def decrypt(self, ciphertext_b64: str, nonce_b64: str) -> dict:
        aead = self._require()
        try:
            plaintext = aead.decrypt(base64.b64decode(nonce_b64), base64.b64decode(ciphertext_b64), None)
            return json.loads(plaintext.decode("utf-8"))
        except (InvalidTag, ValueError) as e:
            logger.error(f"Credential decryption failed: {type(e).__name__}")
            raise CoreError(ErrorKind.ENCRYPTION_FAILURE, "Stored credential could not be decrypted") from e


_cipher: Optional[CredentialCipher] = None


def get_cipher() -> CredentialCipher:
    """Dependency returning the process-wide cipher (FastAPI Depends)"""
    global _cipher
    if _cipher is None:
        _cipher = CredentialCipher(os.getenv("CREDENTIAL_ENCRYPTION_KEY"))
    return _cipher


def generate_key() -> str:
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")
