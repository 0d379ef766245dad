"""Conversation access-control predicates.

These predicates are the single source of truth for who may message whom.
They are used by the conversation and message stores before any write.

Initiation rules (initiator -> target):
- client -> escort: allowed
- escort -> client: denied (escorts only reply to clients)
- anyone -> support, support -> anyone: allowed
- client -> client, escort -> escort: denied

Reply rule:
- Any existing participant may reply, whatever their role. The conversation
  exists, so the initiation rule already held when it was created.

Predicates return booleans only; the require_* helpers raise the
role-specific permission errors.
"""

from dataclasses import dataclass

from rendezvous.config import Settings
from rendezvous.errors import CannotInitiateError, CannotReplyError
from rendezvous.schemas.conversation import Conversation, ConversationType, Role
from rendezvous.schemas.user import User

ESCORT_INITIATION_DENIED = (
    "Escorts can only reply to messages from clients, not initiate conversations"
)


def can_initiate_conversation(initiator_role: Role, target_role: Role) -> bool:
    """Check whether initiator_role may open a new conversation with target_role."""
    if initiator_role == Role.SUPPORT or target_role == Role.SUPPORT:
        return True
    return initiator_role == Role.CLIENT and target_role == Role.ESCORT


def can_reply_to_conversation(conversation: Conversation, user_id: str) -> bool:
    """Check whether user_id may post into an existing conversation."""
    return conversation.has_participant(user_id)


def initiation_denied_message(initiator_role: Role, target_role: Role) -> str:
    if initiator_role == Role.ESCORT and target_role == Role.CLIENT:
        return ESCORT_INITIATION_DENIED
    return f"You do not have permission to start a conversation with a {target_role.value}"


def require_can_initiate(initiator_role: Role, target_role: Role) -> None:
    """Raise CannotInitiateError if the initiation rule is violated."""
    if not can_initiate_conversation(initiator_role, target_role):
        raise CannotInitiateError(initiation_denied_message(initiator_role, target_role))


def require_can_reply(conversation: Conversation, user_id: str) -> None:
    """Raise CannotReplyError if user_id is not a participant."""
    if not can_reply_to_conversation(conversation, user_id):
        raise CannotReplyError()


def conversation_type_for(initiator_role: Role, target_role: Role) -> ConversationType:
    """Derive the conversation type tag from the two participant roles.

    Two support identities talking are tagged client_support.
    """
    roles = {initiator_role, target_role}
    if roles == {Role.CLIENT, Role.ESCORT}:
        return ConversationType.CLIENT_ESCORT
    if Role.ESCORT in roles:
        return ConversationType.ESCORT_SUPPORT
    return ConversationType.CLIENT_SUPPORT


def is_support_identity(user: User, settings: Settings) -> bool:
    """Whether user is the designated support account.

    Matches the support user ID, a `support` label, the display name
    "Support", or an email address mentioning support.
    """
    if user.id == settings.support_user_id:
        return True
    if "support" in user.labels:
        return True
    if user.name == "Support":
        return True
    return "support" in user.email.lower()


def resolve_user_role(user: User, settings: Settings) -> Role:
    """Resolve a user's marketplace role.

    Order: explicit `userType` preference, then `hasEscortProfile`, then the
    support email domain or support user ID; everyone else is a client.
    """
    user_type = user.prefs.get("userType")
    if user_type:
        try:
            return Role(user_type)
        except ValueError:
            pass
    if user.prefs.get("hasEscortProfile"):
        return Role.ESCORT
    if user.email.lower().endswith(f"@{settings.support_email_domain}"):
        return Role.SUPPORT
    if user.id == settings.support_user_id:
        return Role.SUPPORT
    return Role.CLIENT


@dataclass(frozen=True)
class ConversationRestrictions:
    """Who a role may contact, for display in the UI."""

    can_initiate: tuple[Role, ...]
    can_reply_to: tuple[Role, ...]
    description: str


_RESTRICTIONS: dict[Role, ConversationRestrictions] = {
    Role.CLIENT: ConversationRestrictions(
        can_initiate=(Role.ESCORT, Role.SUPPORT),
        can_reply_to=(Role.ESCORT, Role.SUPPORT),
        description="Clients can message escorts and support",
    ),
    Role.ESCORT: ConversationRestrictions(
        can_initiate=(Role.SUPPORT,),
        can_reply_to=(Role.CLIENT, Role.SUPPORT),
        description="Escorts can only reply to client messages, but can initiate contact with support",
    ),
    Role.SUPPORT: ConversationRestrictions(
        can_initiate=(Role.CLIENT, Role.ESCORT),
        can_reply_to=(Role.CLIENT, Role.ESCORT),
        description="Support can message anyone",
    ),
}


def conversation_restrictions(role: Role) -> ConversationRestrictions:
    return _RESTRICTIONS[role]
