"""Conversation store.

Holds the signed-in user's conversations, resolves or creates the two-party
conversation for a send, keeps last-message and unread bookkeeping, and
heals corrupt conversation keys.

Key healing runs on every load and on every remote update: a stored key
that differs from the derived key is replaced locally and the correction is
persisted. Decryption that yields the placeholder is retried once with the
derived key.
"""

import json
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from rendezvous.auth.permissions import (
    can_initiate_conversation,
    conversation_type_for,
    require_can_initiate,
    require_can_reply,
)
from rendezvous.backend.base import (
    Document,
    DocumentNotFoundError,
    DocumentStoreError,
    Filter,
    OrderBy,
)
from rendezvous.context import SessionContext
from rendezvous.errors import MessagingError, UnauthenticatedError
from rendezvous.logging import get_logger
from rendezvous.schemas.conversation import Conversation, Role
from rendezvous.schemas.message import AutoDeletePeriod, Message
from rendezvous.services.codec import message_from_document, try_conversation
from rendezvous.services.crypto import decrypt_content, is_placeholder, is_valid_conversation_key
from rendezvous.services.observable import Observable

logger = get_logger(__name__)

SUPPORT_DISPLAY_NAME = "Support Team"


@dataclass(frozen=True)
class Participant:
    """Display descriptor for the other side of a conversation."""

    id: str
    name: str
    role: Role


class ConversationStore(Observable):
    """The signed-in user's conversation list."""

    def __init__(self, ctx: SessionContext):
        super().__init__()
        self._ctx = ctx
        self.conversations: list[Conversation] = []
        self.error: str | None = None
        self.is_loading = False

    @property
    def _collection(self) -> str:
        return self._ctx.settings.conversations_collection_id

    # Lookups -----------------------------------------------------------------

    def get(self, conversation_id: str | None) -> Conversation | None:
        if not conversation_id:
            return None
        for conversation in self.conversations:
            if conversation.id == conversation_id:
                return conversation
        return None

    def find_local(self, user_a: str, user_b: str) -> Conversation | None:
        """Find the cached conversation for an unordered participant pair."""
        pair = {user_a, user_b}
        for conversation in self.conversations:
            if set(conversation.participants) == pair:
                return conversation
        return None

    @property
    def sorted_conversations(self) -> list[Conversation]:
        """Conversations, most recent activity first."""
        return sorted(self.conversations, key=lambda c: c.last_activity, reverse=True)

    def unread_for(self, conversation: Conversation, user_id: str) -> int:
        return conversation.unread_count.get(user_id, 0)

    # Loading -----------------------------------------------------------------

    async def load_conversations(self) -> list[Conversation]:
        """Load the user's conversations with their last messages.

        Storage errors are logged and leave the current list unchanged.
        """
        user = await self._ctx.current_user()
        self.is_loading = True
        self.error = None
        try:
            result = await self._ctx.documents.list(
                self._collection,
                filters=[Filter.search("participants", user.id)],
                order=[OrderBy.desc("lastActivity")],
                limit=self._ctx.settings.conversation_page_size,
            )
        except DocumentStoreError as e:
            logger.error("conversations_load_failed", error=str(e))
            self.error = e.message or "Failed to load conversations"
            return []
        finally:
            self.is_loading = False

        loaded: list[Conversation] = []
        for document in result.documents:
            conversation = try_conversation(document)
            if conversation is None:
                continue
            await self.ensure_valid_key(conversation)
            loaded.append(conversation)

        for conversation in loaded:
            conversation.last_message = await self._load_last_message(conversation)

        self.conversations = loaded
        logger.info("conversations_loaded", count=len(loaded))
        self._notify()
        return loaded

    async def _load_last_message(self, conversation: Conversation) -> Message | None:
        documents = self._ctx.documents
        collection = self._ctx.settings.messages_collection_id
        try:
            if conversation.last_message_id:
                document = await documents.get(collection, conversation.last_message_id)
            else:
                result = await documents.list(
                    collection,
                    filters=[Filter.equal("conversationId", conversation.id)],
                    order=[OrderBy.desc("$createdAt")],
                    limit=1,
                )
                if not result.documents:
                    return None
                document = result.documents[0]
            return message_from_document(
                document, lambda content: self.decrypt_for(conversation, content)
            )
        except (DocumentStoreError, ValidationError) as e:
            logger.warning(
                "last_message_load_failed", conversation_id=conversation.id, error=str(e)
            )
            return None

    async def find_by_participants(self, participant_ids: list[str]) -> Conversation | None:
        """Look up the stored conversation for a participant pair."""
        if len(participant_ids) != 2:
            return None
        try:
            result = await self._ctx.documents.list(
                self._collection,
                filters=[Filter.search("participants", participant_ids[0])],
                limit=self._ctx.settings.conversation_page_size,
            )
        except DocumentStoreError as e:
            logger.error("conversation_lookup_failed", error=str(e))
            return None
        pair = set(participant_ids)
        for document in result.documents:
            conversation = try_conversation(document)
            if conversation is not None and set(conversation.participants) == pair:
                return conversation
        return None

    # Get or create -----------------------------------------------------------

    async def get_or_create_conversation(
        self, participant_id: str, target_role: Role | None = None
    ) -> Conversation:
        """Resolve the conversation with participant_id, creating it if allowed.

        Args:
            participant_id: The other participant.
            target_role: Role of the other participant for a new
                conversation; defaults to client.

        Returns:
            The existing or newly created conversation.

        Raises:
            UnauthenticatedError: If nobody is signed in.
            CannotReplyError: If the user is not a participant of the match.
            CannotInitiateError: If the role rules forbid a new conversation.
            DocumentStoreError: If the create fails.
        """
        user = await self._ctx.current_user()
        self.error = None

        existing = self.find_local(user.id, participant_id)
        if existing is not None:
            try:
                require_can_reply(existing, user.id)
            except MessagingError as e:
                self.error = e.message
                raise
            return existing

        initiator_role = self._ctx.role
        resolved_target = target_role or Role.CLIENT
        try:
            require_can_initiate(initiator_role, resolved_target)
        except MessagingError as e:
            self.error = e.message
            logger.info(
                "conversation_initiation_denied",
                initiator_role=initiator_role.value,
                target_role=resolved_target.value,
            )
            raise

        participants = sorted([user.id, participant_id])
        conversation = Conversation(
            participants=participants,
            participant_roles={user.id: initiator_role, participant_id: resolved_target},
            initiated_by=user.id,
            conversation_type=conversation_type_for(initiator_role, resolved_target),
            last_activity=self._ctx.now(),
            encryption_key=self._ctx.conversation_key(participants),
            auto_delete_period=AutoDeletePeriod.NEVER,
        )
        try:
            document = await self._ctx.documents.create(
                self._collection, None, conversation.to_document()
            )
        except DocumentStoreError as e:
            logger.error("conversation_create_failed", error=str(e))
            self.error = e.message or "Failed to create conversation"
            raise

        created = try_conversation(document) or conversation
        # The realtime echo may already have cached it
        cached = self.get(created.id)
        if cached is not None:
            return cached
        self.conversations.append(created)
        logger.info(
            "conversation_created",
            conversation_id=created.id,
            conversation_type=created.conversation_type.value,
        )
        self._notify()
        return created

    async def can_message_user(self, target_role: Role) -> bool:
        """Whether the signed-in user may open a conversation with target_role."""
        try:
            await self._ctx.current_user()
        except UnauthenticatedError:
            return False
        return can_initiate_conversation(self._ctx.role, target_role)

    def other_participant(self, conversation: Conversation) -> Participant:
        """Describe the participant who is not the signed-in user."""
        support_id = self._ctx.settings.support_user_id
        other_id = conversation.other_participant_id(self._ctx.user_id or "") or ""
        if other_id == support_id or conversation.role_of(other_id) == Role.SUPPORT:
            return Participant(id=other_id, name=SUPPORT_DISPLAY_NAME, role=Role.SUPPORT)
        role = conversation.role_of(other_id) or Role.CLIENT
        suffix = other_id[-4:] if other_id else "Unknown"
        return Participant(id=other_id, name=f"{role.value.capitalize()} {suffix}", role=role)

    # Keys ----------------------------------------------------------------------

    def _heal_locally(self, conversation: Conversation) -> bool:
        salt = self._ctx.settings.conversation_key_salt
        if is_valid_conversation_key(conversation.encryption_key, conversation.participants, salt):
            return False
        conversation.encryption_key = self._ctx.conversation_key(conversation.participants)
        logger.warning("conversation_key_regenerated", conversation_id=conversation.id)
        return True

    async def _persist_key(self, conversation: Conversation) -> None:
        if not conversation.id:
            return
        try:
            await self._ctx.documents.update(
                self._collection, conversation.id, {"encryptionKey": conversation.encryption_key}
            )
        except DocumentStoreError as e:
            logger.error("conversation_key_persist_failed", conversation_id=conversation.id, error=str(e))

    async def ensure_valid_key(self, conversation: Conversation) -> bool:
        """Replace and persist an invalid stored key. Returns True if healed."""
        if not self._heal_locally(conversation):
            return False
        await self._persist_key(conversation)
        return True

    async def heal_keys(self) -> int:
        """Run key healing over every cached conversation."""
        healed = 0
        for conversation in list(self.conversations):
            if await self.ensure_valid_key(conversation):
                healed += 1
        return healed

    def decrypt_for(self, conversation: Conversation, ciphertext: str) -> str:
        """Decrypt content, retrying once with the derived key.

        When the retry succeeds the conversation's key is healed and the
        correction is persisted in the background.
        """
        plaintext = decrypt_content(ciphertext, conversation.encryption_key)
        if not is_placeholder(plaintext):
            return plaintext
        if not self._heal_locally(conversation):
            return plaintext
        self._ctx.tasks.spawn(self._persist_key(conversation), name="persist_conversation_key")
        return decrypt_content(ciphertext, conversation.encryption_key)

    # Bookkeeping ---------------------------------------------------------------

    async def _patch(self, conversation: Conversation, patch: Document) -> bool:
        if not conversation.id:
            return False
        try:
            await self._ctx.documents.update(self._collection, conversation.id, patch)
        except DocumentStoreError as e:
            logger.error("conversation_update_failed", conversation_id=conversation.id, error=str(e))
            return False
        return True

    def set_last_message(self, conversation: Conversation, message: Message | None) -> None:
        """Update the cached last message and activity time (local only)."""
        conversation.last_message = message
        conversation.last_message_id = message.id if message else None
        if message is not None:
            conversation.last_activity = message.created_at or self._ctx.now()
        self._notify()

    async def record_delivery(
        self, conversation: Conversation, message: Message, *, unread_for: str | None = None
    ) -> bool:
        """Persist the last message pointer and, optionally, one more unread.

        Written as a single update so the counterpart sees one change event.
        """
        self.set_last_message(conversation, message)
        patch: Document = {
            "lastMessageId": message.id,
            "lastActivity": conversation.last_activity.isoformat(),
        }
        if unread_for is not None:
            conversation.unread_count[unread_for] = conversation.unread_count.get(unread_for, 0) + 1
            patch["unreadCount"] = json.dumps(conversation.unread_count)
        return await self._patch(conversation, patch)

    async def replace_last_message(
        self, conversation: Conversation, message: Message | None
    ) -> bool:
        """Point the conversation at message (or nothing) after a delete."""
        self.set_last_message(conversation, message)
        return await self._patch(conversation, {"lastMessageId": message.id if message else None})

    async def decrement_unread(self, conversation: Conversation, user_id: str) -> bool:
        current = conversation.unread_count.get(user_id, 0)
        if current <= 0:
            return False
        conversation.unread_count[user_id] = current - 1
        self._notify()
        return await self._patch(conversation, {"unreadCount": json.dumps(conversation.unread_count)})

    # Remote changes --------------------------------------------------------------

    def apply_remote(self, document: Document) -> tuple[Conversation | None, bool]:
        """Insert or replace a conversation from a change event.

        Returns:
            (conversation, created) where created is True for a new entry.
        """
        conversation = try_conversation(document)
        if conversation is None or not conversation.id:
            return None, False
        if self._ctx.user_id and not conversation.has_participant(self._ctx.user_id):
            return None, False
        if self._heal_locally(conversation):
            self._ctx.tasks.spawn(self._persist_key(conversation), name="persist_conversation_key")

        existing = self.get(conversation.id)
        if existing is not None:
            # Update in place so references held across awaits stay current
            cached_last = existing.last_message
            for name in Conversation.model_fields:
                if name != "last_message":
                    setattr(existing, name, getattr(conversation, name))
            if cached_last is not None and cached_last.id != existing.last_message_id:
                existing.last_message = None
            self._notify()
            return existing, False

        self.conversations.append(conversation)
        self._notify()
        return conversation, True

    def remove(self, conversation_id: str) -> bool:
        before = len(self.conversations)
        self.conversations = [c for c in self.conversations if c.id != conversation_id]
        removed = len(self.conversations) != before
        if removed:
            self._notify()
        return removed

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete the conversation record remotely, then locally."""
        try:
            await self._ctx.documents.delete(self._collection, conversation_id)
        except DocumentNotFoundError:
            logger.info("conversation_already_deleted", conversation_id=conversation_id)
        except DocumentStoreError as e:
            logger.error("conversation_delete_failed", conversation_id=conversation_id, error=str(e))
            self.error = e.message or "Failed to delete conversation"
            return False
        self.remove(conversation_id)
        return True

    def snapshot(self) -> list[dict[str, Any]]:
        """Serializable form of the cached conversations."""
        return [c.model_dump(by_alias=True, mode="json") for c in self.conversations]

    def restore(self, conversations: list[Conversation]) -> None:
        self.conversations = list(conversations)
        self._notify()

    def reset(self) -> None:
        self.conversations = []
        self.error = None
        self.is_loading = False
        self._notify()
