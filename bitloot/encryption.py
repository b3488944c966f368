"""
AES-256-GCM encryption for delivered and stocked keys.

A 12-byte random nonce is generated per encryption; GCM authenticates the
ciphertext so tampering is detected on decrypt. Ciphertext and nonce are
stored base64 encoded.
"""
import base64
import logging
import os
from typing import NamedTuple, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from . import config
from .exceptions import DecryptionError

logger = logging.getLogger(__name__)

ALGORITHM = "aes-256-gcm"
NONCE_LENGTH = 12
KEY_LENGTH_BYTES = 32


class EncryptedSecret(NamedTuple):
    ciphertext: str
    nonce: str
    algorithm: str = ALGORITHM


def generate_key() -> bytes:
    """Random 32-byte key for AES-256."""
    return AESGCM.generate_key(bit_length=256)


def load_master_key(encoded: Optional[str] = None) -> bytes:
    """Decode the base64 master key and check its length."""
    raw = base64.b64decode(encoded or config.KEY_ENCRYPTION_KEY)
    if len(raw) != KEY_LENGTH_BYTES:
        raise ValueError(f"Key must be {KEY_LENGTH_BYTES} bytes, got {len(raw)}")
    return raw


class KeyCipher:
    """Encrypts and decrypts secrets with a single master key."""

    def __init__(self, key: Optional[bytes] = None):
        key = key or load_master_key()
        if len(key) != KEY_LENGTH_BYTES:
            raise ValueError(f"Key must be {KEY_LENGTH_BYTES} bytes, got {len(key)}")
        self._aead = AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedSecret:
        if not isinstance(plaintext, str) or plaintext == "":
            raise ValueError("Plaintext must be a non-empty string")

        nonce = os.urandom(NONCE_LENGTH)
        ciphertext = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        return EncryptedSecret(
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
        )

    def decrypt(self, ciphertext: str, nonce: str) -> str:
        """
        Raises:
            DecryptionError: if the data is malformed or fails authentication
        """
        try:
            raw_nonce = base64.b64decode(nonce)
            if len(raw_nonce) != NONCE_LENGTH:
                raise DecryptionError(f"Invalid nonce length: expected {NONCE_LENGTH} bytes, got {len(raw_nonce)}")
            plaintext = self._aead.decrypt(raw_nonce, base64.b64decode(ciphertext), None)
            return plaintext.decode("utf-8")
        except InvalidTag:
            logger.error("Key decryption failed: authentication tag mismatch")
            raise DecryptionError("Authentication tag mismatch")
        except (ValueError, UnicodeDecodeError) as e:
            logger.error(f"Key decryption failed: {e}")
            raise DecryptionError(str(e))
