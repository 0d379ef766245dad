"""Conversation key derivation and message content encryption.

Implements XSalsa20-Poly1305 authenticated encryption for message content
using PyNaCl (libsodium bindings).

Key model:
- The key of a conversation is SHA-256 over the sorted participant IDs joined
  with "-" plus the application-wide CONVERSATION_KEY_SALT, hex encoded
- Both participants derive the same key independently; there is no key exchange
- A stored key that differs from the derived key is corrupt and gets replaced

Security invariants:
- Never log plaintext, ciphertext or keys
- Each encryption uses a fresh random 24-byte nonce
- Decryption failures never raise; they yield ENCRYPTED_PLACEHOLDER so callers
  can retry with a regenerated key
"""

import base64
import hashlib
from collections.abc import Iterable

from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.secret import SecretBox
from nacl.utils import random as random_bytes

from rendezvous.logging import get_logger

logger = get_logger(__name__)

# Shown in place of content that could not be decrypted
ENCRYPTED_PLACEHOLDER = "[Encrypted Message]"

# SecretBox key size (32 bytes) and nonce size (24 bytes)
KEY_SIZE = SecretBox.KEY_SIZE
NONCE_SIZE = SecretBox.NONCE_SIZE


class CryptoError(Exception):
    """Raised when encryption cannot be performed."""

    pass


def derive_conversation_key(participant_ids: Iterable[str], salt: str) -> str:
    """Derive the shared key for a set of participants.

    Args:
        participant_ids: The participant user IDs, in any order.
        salt: Application-wide salt (CONVERSATION_KEY_SALT).

    Returns:
        64-character hex digest (256 bits).
    """
    material = "-".join(sorted(participant_ids)) + salt
    return hashlib.sha256(material.encode("utf-8")).hexdigest()


def is_valid_conversation_key(key: str | None, participant_ids: Iterable[str], salt: str) -> bool:
    """True if key is exactly the key derived for participant_ids.

    Covers missing, truncated and otherwise corrupt keys.
    """
    if not key or len(key) != KEY_SIZE * 2:
        return False
    return key == derive_conversation_key(participant_ids, salt)


def _key_bytes(key: str) -> bytes:
    try:
        raw = bytes.fromhex(key)
    except (TypeError, ValueError) as e:
        raise CryptoError("Conversation key is not valid hex") from e
    if len(raw) != KEY_SIZE:
        raise CryptoError(f"Conversation key must be {KEY_SIZE} bytes, got {len(raw)} bytes")
    return raw


def encrypt_content(plaintext: str, key: str) -> str:
    """Encrypt message content for storage.

    Args:
        plaintext: The message text.
        key: Hex conversation key from derive_conversation_key.

    Returns:
        Base64 of nonce followed by ciphertext and auth tag.

    Raises:
        CryptoError: If the key is malformed or encryption fails.
    """
    box = SecretBox(_key_bytes(key))
    try:
        encrypted = box.encrypt(plaintext.encode("utf-8"), random_bytes(NONCE_SIZE))
    except Exception as e:
        logger.error("encryption_failed", error=str(e))
        raise CryptoError(f"Encryption failed: {e}") from e
    return base64.b64encode(bytes(encrypted)).decode("ascii")


def decrypt_content(ciphertext: str, key: str) -> str:
    """Decrypt stored message content.

    Returns ENCRYPTED_PLACEHOLDER when the key is wrong, the payload was
    tampered with, or the result is empty or whitespace.
    """
    try:
        box = SecretBox(_key_bytes(key))
        plaintext = box.decrypt(base64.b64decode(ciphertext, validate=True)).decode("utf-8")
    except (CryptoError, NaclCryptoError, ValueError, TypeError) as e:
        logger.warning("decryption_failed", error_type=type(e).__name__)
        return ENCRYPTED_PLACEHOLDER

    if not plaintext.strip():
        logger.warning("decryption_empty_result")
        return ENCRYPTED_PLACEHOLDER
    return plaintext


def is_placeholder(content: str | None) -> bool:
    return content == ENCRYPTED_PLACEHOLDER
