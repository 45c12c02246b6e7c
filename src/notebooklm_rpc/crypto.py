"""AES-256-GCM encryption for the cookie file.

The on-disk blob keeps nonce, auth tag and ciphertext as separate base64
fields under a format version, so the layout can migrate later.
"""

import base64
import binascii
import secrets
from dataclasses import dataclass
from typing import Any

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .errors import SecurityError

BLOB_VERSION = 1
KEY_LENGTH = 32
NONCE_LENGTH = 12
AUTH_TAG_LENGTH = 16


@dataclass
class EncryptedBlob:
    """Serialized form of one encryption result."""

    nonce: str
    auth_tag: str
    ciphertext: str
    version: int = BLOB_VERSION

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "nonce": self.nonce,
            "authTag": self.auth_tag,
            "ciphertext": self.ciphertext,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "EncryptedBlob":
        try:
            return cls(
                version=data["version"],
                nonce=data["nonce"],
                auth_tag=data["authTag"],
                ciphertext=data["ciphertext"],
            )
        except (KeyError, TypeError) as e:
            raise SecurityError("Encrypted cookie data is malformed", e)


def generate_key() -> str:
    """Return a new random key, hex-encoded."""
    return secrets.token_bytes(KEY_LENGTH).hex()


def _key_bytes(hex_key: str) -> bytes:
    try:
        key = bytes.fromhex(hex_key)
    except (ValueError, TypeError) as e:
        raise SecurityError("Invalid encryption key encoding", e)
    if len(key) != KEY_LENGTH:
        raise SecurityError("Invalid encryption key length")
    return key


def encrypt(plaintext: str, hex_key: str) -> EncryptedBlob:
    """Encrypt text with a fresh random nonce."""
    aesgcm = AESGCM(_key_bytes(hex_key))
    nonce = secrets.token_bytes(NONCE_LENGTH)
    # AESGCM appends the tag to the ciphertext
    sealed = aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
    ciphertext, auth_tag = sealed[:-AUTH_TAG_LENGTH], sealed[-AUTH_TAG_LENGTH:]
    return EncryptedBlob(
        nonce=base64.b64encode(nonce).decode("ascii"),
        auth_tag=base64.b64encode(auth_tag).decode("ascii"),
        ciphertext=base64.b64encode(ciphertext).decode("ascii"),
    )


def decrypt(blob: EncryptedBlob, hex_key: str) -> str:
    """Decrypt a blob. Any failure raises SecurityError, never partial text."""
    aesgcm = AESGCM(_key_bytes(hex_key))
    if blob.version != BLOB_VERSION:
        raise SecurityError(f"Unsupported encrypted data version: {blob.version}")

    try:
        nonce = base64.b64decode(blob.nonce, validate=True)
        auth_tag = base64.b64decode(blob.auth_tag, validate=True)
        ciphertext = base64.b64decode(blob.ciphertext, validate=True)
    except (binascii.Error, ValueError, TypeError) as e:
        raise SecurityError("Encrypted cookie data is malformed", e)

    if len(auth_tag) != AUTH_TAG_LENGTH or not nonce:
        raise SecurityError("Encrypted cookie data is malformed")

    try:
        plaintext = aesgcm.decrypt(nonce, ciphertext + auth_tag, None)
        return plaintext.decode("utf-8")
    except (InvalidTag, UnicodeDecodeError) as e:
        raise SecurityError("Decryption failed: data may be corrupted or the key may be wrong", e)
