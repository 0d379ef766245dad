"""Encrypted local cache of conversations and confirmed messages.

The blob is a SecretBox ciphertext of a JSON snapshot, keyed from
LOCAL_CACHE_SECRET and the user ID so one user's cache never opens for
another. Temp and failed messages are never cached. Any decode failure
yields None and the session refetches from the server.
"""

import base64
import hashlib
import json
from dataclasses import dataclass, field
from pathlib import Path

from nacl.exceptions import CryptoError as NaclCryptoError
from nacl.secret import SecretBox
from nacl.utils import random as random_bytes
from pydantic import ValidationError

from rendezvous.config import Settings
from rendezvous.logging import get_logger
from rendezvous.schemas.conversation import Conversation
from rendezvous.schemas.message import Message
from rendezvous.services.codec import message_from_document
from rendezvous.services.reactions import encode_reactions

logger = get_logger(__name__)

CACHE_VERSION = 1


@dataclass
class CacheSnapshot:
    conversations: list[Conversation] = field(default_factory=list)
    messages: dict[str, list[Message]] = field(default_factory=dict)


def _message_entry(message: Message) -> dict:
    data = message.model_dump(by_alias=True, mode="json")
    encoded = encode_reactions(message.reactions_raw)
    if encoded is not None:
        data["reactions"] = encoded
    return data


class ConversationCache:
    def __init__(self, settings: Settings, path: Path | None = None):
        self._secret = settings.effective_cache_secret
        self._path = path

    def _box(self, user_id: str) -> SecretBox:
        key = hashlib.sha256(f"{self._secret}:{user_id}".encode("utf-8")).digest()
        return SecretBox(key)

    def encode(
        self,
        user_id: str,
        conversations: list[Conversation],
        messages: dict[str, list[Message]],
    ) -> str:
        payload = {
            "version": CACHE_VERSION,
            "userId": user_id,
            "conversations": [c.model_dump(by_alias=True, mode="json") for c in conversations],
            "messages": {
                conversation_id: [_message_entry(m) for m in msgs if m.id and not m.is_temp]
                for conversation_id, msgs in messages.items()
            },
        }
        plaintext = json.dumps(payload, separators=(",", ":")).encode("utf-8")
        encrypted = self._box(user_id).encrypt(plaintext, random_bytes(SecretBox.NONCE_SIZE))
        return base64.b64encode(bytes(encrypted)).decode("ascii")

    def decode(self, user_id: str, blob: str) -> CacheSnapshot | None:
        """Open a cache blob for user_id; None if it is unreadable or foreign."""
        try:
            plaintext = self._box(user_id).decrypt(base64.b64decode(blob, validate=True))
            payload = json.loads(plaintext)
        except (NaclCryptoError, ValueError, TypeError) as e:
            logger.warning("cache_decode_failed", error_type=type(e).__name__)
            return None
        if payload.get("version") != CACHE_VERSION or payload.get("userId") != user_id:
            logger.info("cache_discarded", reason="version_or_user_mismatch")
            return None

        try:
            messages = {
                conversation_id: [message_from_document(entry) for entry in entries]
                for conversation_id, entries in payload.get("messages", {}).items()
            }
            conversations = [
                Conversation.model_validate(entry) for entry in payload.get("conversations", [])
            ]
        except ValidationError as e:
            logger.warning("cache_decode_failed", error_type=type(e).__name__)
            return None

        for conversation in conversations:
            for message in messages.get(conversation.id, []):
                if message.id == conversation.last_message_id:
                    conversation.last_message = message
        return CacheSnapshot(conversations=conversations, messages=messages)

    # File persistence ----------------------------------------------------------

    def save(
        self,
        user_id: str,
        conversations: list[Conversation],
        messages: dict[str, list[Message]],
    ) -> bool:
        if self._path is None:
            return False
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            self._path.write_text(self.encode(user_id, conversations, messages), encoding="utf-8")
        except OSError as e:
            logger.warning("cache_save_failed", error=str(e))
            return False
        return True

    def load(self, user_id: str) -> CacheSnapshot | None:
        if self._path is None or not self._path.exists():
            return None
        try:
            blob = self._path.read_text(encoding="utf-8")
        except OSError as e:
            logger.warning("cache_load_failed", error=str(e))
            return None
        return self.decode(user_id, blob)

    def clear(self) -> None:
        if self._path is not None:
            self._path.unlink(missing_ok=True)
