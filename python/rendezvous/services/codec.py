"""Conversions between stored documents and in-memory models.

Message content is encrypted on the way out and decrypted on the way in.
The stored `reactions` attribute is an encoded string; in memory it is
split into `reactions_raw` and the display `reactions` counts.
"""

from collections.abc import Callable
from typing import Any

from pydantic import ValidationError

from rendezvous.backend.base import Document
from rendezvous.logging import get_logger
from rendezvous.schemas.call import CallSession
from rendezvous.schemas.conversation import Conversation
from rendezvous.schemas.message import Message, SendingState
from rendezvous.services.crypto import encrypt_content
from rendezvous.services.reactions import decode_reactions, encode_reactions, reaction_counts

logger = get_logger(__name__)

Decryptor = Callable[[str], str]

_MESSAGE_WRITE_EXCLUDE = {"id", "created_at", "updated_at"}


def message_from_document(document: Document, decrypt: Decryptor | None = None) -> Message:
    """Build a confirmed Message from a stored document.

    Args:
        document: The stored message document.
        decrypt: Turns ciphertext into plaintext; applied when the document
            is encrypted and has content.

    Raises:
        ValidationError: If the document is not a valid message.
    """
    data = dict(document)
    raw = decode_reactions(data.pop("reactions", None))
    message = Message.model_validate(data)
    message.reactions_raw = raw
    message.reactions = reaction_counts(raw)
    if message.is_encrypted and message.content and decrypt is not None:
        message.content = decrypt(message.content)
    message.sending_state = SendingState.SENT
    return message


def message_to_document(message: Message, key: str) -> Document:
    """Serialize a message for creation, encrypting non-empty content.

    Attachment-only messages are stored unencrypted so they never decrypt to
    the placeholder.
    """
    data = message.model_dump(
        by_alias=True, mode="json", exclude=_MESSAGE_WRITE_EXCLUDE, exclude_none=True
    )
    if message.content:
        data["content"] = encrypt_content(message.content, key)
        data["isEncrypted"] = True
    else:
        data["content"] = ""
        data["isEncrypted"] = False
    encoded = encode_reactions(message.reactions_raw)
    if encoded is not None:
        data["reactions"] = encoded
    return data


def reactions_patch(raw: dict[str, list[str]]) -> Document:
    return {"reactions": encode_reactions(raw)}


def conversation_from_document(document: Document) -> Conversation:
    return Conversation.model_validate(document)


def try_conversation(document: Document) -> Conversation | None:
    """Parse a conversation, logging and skipping invalid documents."""
    try:
        return conversation_from_document(document)
    except (ValidationError, ValueError) as e:
        logger.warning(
            "conversation_document_invalid", document_id=document.get("$id"), error=str(e)
        )
        return None


def call_from_document(document: Document) -> CallSession:
    return CallSession.model_validate(document)


def call_to_document(call: CallSession) -> dict[str, Any]:
    return call.model_dump(
        by_alias=True, mode="json", exclude={"id", "created_at"}, exclude_none=True
    )
