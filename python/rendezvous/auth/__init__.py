"""Access control for conversations.

This module provides:
- Initiation and reply predicates for the client/escort/support role model
- Role resolution from the authenticated user
"""

from rendezvous.auth.permissions import (
    can_initiate_conversation,
    can_reply_to_conversation,
    resolve_user_role,
)

__all__ = [
    "can_initiate_conversation",
    "can_reply_to_conversation",
    "resolve_user_role",
]
