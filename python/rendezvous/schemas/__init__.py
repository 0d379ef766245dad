"""Pydantic schemas for messaging documents."""

from rendezvous.schemas.call import CallSession, CallStatus, CallType
from rendezvous.schemas.conversation import Conversation, ConversationType, Role
from rendezvous.schemas.message import (
    Attachment,
    AutoDeletePeriod,
    Message,
    MessageType,
    SendingState,
    compute_auto_delete_at,
)
from rendezvous.schemas.presence import PresenceStatus, UserPresence
from rendezvous.schemas.user import User

__all__ = [
    "Attachment",
    "AutoDeletePeriod",
    "CallSession",
    "CallStatus",
    "CallType",
    "Conversation",
    "ConversationType",
    "Message",
    "MessageType",
    "PresenceStatus",
    "Role",
    "SendingState",
    "User",
    "UserPresence",
    "compute_auto_delete_at",
]
