"""Support welcome conversation for new accounts."""

import json

from pydantic import ValidationError

from rendezvous.auth.permissions import conversation_type_for
from rendezvous.backend.base import DocumentStoreError, Filter
from rendezvous.context import SessionContext
from rendezvous.logging import get_logger
from rendezvous.schemas.conversation import Conversation, Role
from rendezvous.schemas.message import AutoDeletePeriod, Message, MessageType
from rendezvous.services.codec import message_to_document, try_conversation
from rendezvous.services.crypto import CryptoError

logger = get_logger(__name__)

CLIENT_WELCOME = """Welcome to Rendezvous!

We're thrilled to have you join our community. Here's what you can do:

- Browse verified escorts and their services
- Book appointments securely through the platform
- Message escorts directly
- Reach support at any time with questions or concerns

Your privacy and safety come first. Conversations are encrypted and your
information is kept strictly confidential.

Best regards,
The Rendezvous Support Team"""

ESCORT_WELCOME = """Welcome to Rendezvous!

Congratulations on joining our network. Here's how to get started:

- Complete your profile to attract more clients
- Upload high-quality photos (you can blur them for privacy)
- Set your services, rates, and availability
- Respond promptly to client inquiries

Keep your profile updated, be clear about your boundaries, and use the
secure messaging system for all communications.

Best regards,
The Rendezvous Support Team"""


def welcome_text(user_type: Role) -> str:
    return ESCORT_WELCOME if user_type == Role.ESCORT else CLIENT_WELCOME


async def find_welcome_conversation(ctx: SessionContext, user_id: str) -> Conversation | None:
    support_id = ctx.settings.support_user_id
    result = await ctx.documents.list(
        ctx.settings.conversations_collection_id,
        filters=[Filter.search("participants", user_id)],
        limit=ctx.settings.conversation_page_size,
    )
    for document in result.documents:
        conversation = try_conversation(document)
        if conversation is not None and set(conversation.participants) == {user_id, support_id}:
            return conversation
    return None


async def ensure_welcome_conversation(
    ctx: SessionContext, user_id: str, user_type: Role
) -> Conversation | None:
    """Create the support conversation and welcome message once per user.

    Returns the existing conversation if there is one. Failures are logged
    and yield None; signup must not fail because of the welcome message.
    """
    support_id = ctx.settings.support_user_id
    try:
        existing = await find_welcome_conversation(ctx, user_id)
        if existing is not None:
            return existing

        participants = sorted([user_id, support_id])
        now = ctx.now()
        conversation = Conversation(
            participants=participants,
            participant_roles={user_id: user_type, support_id: Role.SUPPORT},
            initiated_by=support_id,
            conversation_type=conversation_type_for(Role.SUPPORT, user_type),
            last_activity=now,
            encryption_key=ctx.conversation_key(participants),
            auto_delete_period=AutoDeletePeriod.NEVER,
        )
        stored = await ctx.documents.create(
            ctx.settings.conversations_collection_id, None, conversation.to_document()
        )
        created = try_conversation(stored)
        if created is None:
            return None

        welcome = Message(
            conversation_id=created.id,
            sender_id=support_id,
            receiver_id=user_id,
            content=welcome_text(user_type),
            type=MessageType.TEXT,
            auto_delete_period=AutoDeletePeriod.NEVER,
        )
        document = message_to_document(welcome, created.encryption_key)
        document["isRead"] = False
        document["deliveredAt"] = now.isoformat()
        message = await ctx.documents.create(ctx.settings.messages_collection_id, None, document)

        created.last_message_id = message["$id"]
        created.unread_count = {user_id: 1}
        await ctx.documents.update(
            ctx.settings.conversations_collection_id,
            created.id,
            {"lastMessageId": created.last_message_id, "unreadCount": json.dumps(created.unread_count)},
        )
    except (DocumentStoreError, CryptoError, ValidationError) as e:
        logger.error("welcome_conversation_failed", error=str(e))
        return None

    logger.info("welcome_conversation_created", conversation_id=created.id, user_type=user_type.value)
    return created
