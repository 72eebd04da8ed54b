"""
Encryption at Rest for Enrollment References

Envelope encryption with AES-256-GCM:

1. Every record gets a fresh random 256-bit data key.
2. The reference is sealed with the data key.
3. The data key is sealed with the master (key-encryption) key.

Both seals use the record's identity (user id and backend kind) as
associated data, so a blob copied onto another user's row fails to open.

Blob layout (bytes):
    version(1) | key_nonce(12) | wrapped_key(48) | nonce(12) | ciphertext+tag
"""

import base64
import binascii
import logging
import os
from typing import Any, Dict, Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from faceauth.config import read_secret
from faceauth.errors import PersistenceError

logger = logging.getLogger(__name__)

BLOB_VERSION = 1
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16
_WRAPPED_KEY_BYTES = KEY_BYTES + TAG_BYTES
_HEADER_BYTES = 1 + NONCE_BYTES + _WRAPPED_KEY_BYTES + NONCE_BYTES


def generate_master_key() -> str:
    """Return a new base64-encoded master key, for provisioning."""
    return base64.b64encode(AESGCM.generate_key(bit_length=256)).decode("ascii")


def parse_master_key(encoded: str) -> bytes:
    """
    Decode a base64 master key.

    Raises:
        ValueError: If the value is not base64 or not 32 bytes long.
    """
    try:
        key = base64.b64decode(encoded, validate=True)
    except binascii.Error as e:
        raise ValueError("Master key is not valid base64") from e
    if len(key) != KEY_BYTES:
        raise ValueError(f"Master key must be {KEY_BYTES} bytes, got {len(key)}")
    return key


class EnvelopeCipher:
    """
    Seal and open enrollment references.

    Args:
        master_key: 32-byte key-encryption key.
    """

    def __init__(self, master_key: bytes):
        if len(master_key) != KEY_BYTES:
            raise ValueError(f"Master key must be {KEY_BYTES} bytes, got {len(master_key)}")
        self._master = AESGCM(master_key)

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "EnvelopeCipher":
        """Build from the "encryption" config section; the key comes from the environment."""
        env_var = config.get("master_key_env", "FACEAUTH_MASTER_KEY")
        return cls(parse_master_key(read_secret(env_var)))

    @staticmethod
    def _aad(context: Optional[str]) -> Optional[bytes]:
        return context.encode("utf-8") if context else None

    def encrypt(self, plaintext: bytes, context: Optional[str] = None) -> bytes:
        """Seal plaintext under a fresh data key. context is bound as associated data."""
        aad = self._aad(context)

        data_key = AESGCM.generate_key(bit_length=256)
        key_nonce = os.urandom(NONCE_BYTES)
        wrapped_key = self._master.encrypt(key_nonce, data_key, aad)

        nonce = os.urandom(NONCE_BYTES)
        ciphertext = AESGCM(data_key).encrypt(nonce, plaintext, aad)

        return bytes([BLOB_VERSION]) + key_nonce + wrapped_key + nonce + ciphertext

    def decrypt(self, blob: bytes, context: Optional[str] = None) -> bytes:
        """
        Open a sealed blob.

        Raises:
            PersistenceError: If the blob is malformed, tampered with, sealed
                              under another key, or bound to another context.
        """
        if len(blob) < _HEADER_BYTES + TAG_BYTES or blob[0] != BLOB_VERSION:
            raise PersistenceError(detail="sealed reference has an unknown format")

        aad = self._aad(context)
        offset = 1
        key_nonce = blob[offset:offset + NONCE_BYTES]
        offset += NONCE_BYTES
        wrapped_key = blob[offset:offset + _WRAPPED_KEY_BYTES]
        offset += _WRAPPED_KEY_BYTES
        nonce = blob[offset:offset + NONCE_BYTES]
        offset += NONCE_BYTES
        ciphertext = blob[offset:]

        try:
            data_key = self._master.decrypt(key_nonce, wrapped_key, aad)
            return AESGCM(data_key).decrypt(nonce, ciphertext, aad)
        except InvalidTag as e:
            logger.error("Sealed reference failed authentication")
            raise PersistenceError(detail="sealed reference failed authentication") from e
