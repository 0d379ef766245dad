"""Message store with optimistic sends.

Per-conversation ordered message lists. Every entry is in one of:
- temp, sending: appended the moment the user hits send
- temp, failed: the write failed; the entry stays visible for resend
- confirmed, sent: the stored message, decrypted

State machine: sending -> sent | failed, failed -> sending (resend).

Lookups match an entry by either its temp ID or its confirmed ID; an entry
only has one of them active at a time.

Invariants:
- A confirmed ID appears at most once per list. The direct write response
  and the realtime echo of the same write are deduplicated by ID, in either
  order.
- Entries are re-located by ID after every await, never held by index, so a
  realtime event applied mid-send cannot drop the optimistic entry.
- A resend reuses the failed entry; it never leaves a second copy behind.

Error surfacing:
- Precondition violations (not signed in, role rules, not the sender,
  not resendable) raise MessagingError subclasses before any write.
- Storage failures are captured on the entry and in `error`; the operation
  returns None or False.
"""

import asyncio
from uuid import uuid4

from pydantic import ValidationError

from rendezvous.auth.permissions import require_can_reply
from rendezvous.backend.base import (
    Document,
    DocumentNotFoundError,
    DocumentStoreError,
    Filter,
    OrderBy,
)
from rendezvous.context import SessionContext
from rendezvous.errors import (
    InvalidRequestError,
    MessagingError,
    MessagingErrorCode,
    NotSenderError,
)
from rendezvous.logging import get_logger, set_conversation_context
from rendezvous.schemas.conversation import Conversation, Role
from rendezvous.schemas.message import (
    Attachment,
    AutoDeletePeriod,
    Message,
    MessageType,
    SendingState,
    compute_auto_delete_at,
)
from rendezvous.services.codec import (
    message_from_document,
    message_to_document,
    reactions_patch,
)
from rendezvous.services.conversations import ConversationStore
from rendezvous.services.crypto import CryptoError
from rendezvous.services.observable import Observable
from rendezvous.services.reactions import (
    decode_reactions,
    needs_cleaning,
    reaction_counts,
    toggle_reaction,
)

logger = get_logger(__name__)


class MessageStore(Observable):
    """Messages of the signed-in user's conversations, keyed by conversation ID."""

    def __init__(self, ctx: SessionContext, conversations: ConversationStore):
        super().__init__()
        self._ctx = ctx
        self._conversations = conversations
        self.messages: dict[str, list[Message]] = {}
        self.active_conversation_id: str | None = None
        self.error: str | None = None
        self.is_loading = False
        self._cleanup_task: asyncio.Task | None = None

    @property
    def _collection(self) -> str:
        return self._ctx.settings.messages_collection_id

    # Lookups -----------------------------------------------------------------

    def messages_for(self, conversation_id: str) -> list[Message]:
        return self.messages.get(conversation_id, [])

    def find(self, conversation_id: str, identifier: str | None) -> Message | None:
        for message in self.messages.get(conversation_id, []):
            if message.matches(identifier):
                return message
        return None

    def find_anywhere(self, identifier: str | None) -> Message | None:
        for conversation_messages in self.messages.values():
            for message in conversation_messages:
                if message.matches(identifier):
                    return message
        return None

    @property
    def unread_total(self) -> int:
        user_id = self._ctx.user_id
        if not user_id:
            return 0
        return sum(c.unread_count.get(user_id, 0) for c in self._conversations.conversations)

    def set_active_conversation(self, conversation_id: str | None) -> None:
        self.active_conversation_id = conversation_id
        set_conversation_context(conversation_id)
        self._notify()

    def _remove(self, conversation_id: str, identifier: str) -> Message | None:
        conversation_messages = self.messages.get(conversation_id, [])
        for index, message in enumerate(conversation_messages):
            if message.matches(identifier):
                del conversation_messages[index]
                return message
        return None

    def _latest_confirmed(self, conversation_id: str) -> Message | None:
        for message in reversed(self.messages.get(conversation_id, [])):
            if message.id and not message.is_temp:
                return message
        return None

    def _decryptor(self, conversation: Conversation):
        return lambda content: self._conversations.decrypt_for(conversation, content)

    # Send --------------------------------------------------------------------

    async def send_message(
        self,
        receiver_id: str,
        content: str,
        type: MessageType = MessageType.TEXT,
        auto_delete_period: int = AutoDeletePeriod.NEVER,
        target_role: Role | None = None,
        attachment: Attachment | None = None,
        reply_to: str | None = None,
    ) -> Message | None:
        """Send a message optimistically.

        Returns:
            The confirmed message, or None if the write failed (the temp
            entry is then left in the failed state).

        Raises:
            UnauthenticatedError: If nobody is signed in.
            CannotInitiateError / CannotReplyError: If role rules forbid it.
        """
        user = await self._ctx.current_user()
        self.error = None
        try:
            conversation = await self._conversations.get_or_create_conversation(
                receiver_id, target_role
            )
            require_can_reply(conversation, user.id)
        except MessagingError as e:
            self.error = e.message
            raise
        except DocumentStoreError as e:
            self.error = e.message or "Failed to send message"
            return None

        conversation_id = conversation.id
        temp = Message(
            temp_id=f"temp_{uuid4().hex}",
            conversation_id=conversation_id,
            sender_id=user.id,
            receiver_id=receiver_id,
            content=content,
            type=type,
            auto_delete_period=auto_delete_period,
            reply_to=reply_to,
            attachment_url=attachment.url if attachment else None,
            attachment_type=attachment.mime_type if attachment else None,
            attachment_size=attachment.size if attachment else None,
            created_at=self._ctx.now(),
            sending_state=SendingState.SENDING,
            is_temp=True,
        )
        self.messages.setdefault(conversation_id, []).append(temp)
        self._notify()
        return await self._deliver(conversation, temp)

    async def _deliver(self, conversation: Conversation, temp: Message) -> Message | None:
        """Write a sending temp entry and reconcile the result."""
        conversation_id = conversation.id
        temp_id = temp.temp_id
        now = self._ctx.now()
        temp.auto_delete_at = compute_auto_delete_at(temp.auto_delete_period, now)
        try:
            document = message_to_document(temp, conversation.encryption_key)
            document["isRead"] = False
            document["deliveredAt"] = now.isoformat()
            stored = await self._ctx.documents.create(self._collection, None, document)
            confirmed = message_from_document(stored, self._decryptor(conversation))
        except (DocumentStoreError, CryptoError, ValidationError) as e:
            reason = getattr(e, "message", None) or str(e) or "Failed to send message"
            self._mark_failed(conversation_id, temp_id, reason)
            logger.error(
                "message_send_failed",
                conversation_id=conversation_id,
                temp_id=temp_id,
                error_type=type(e).__name__,
            )
            return None

        confirmed = self._confirm(conversation_id, temp_id, confirmed)
        logger.info("message_sent", conversation_id=conversation_id, message_id=confirmed.id)

        unread_for = None
        if not confirmed.is_read and confirmed.receiver_id != confirmed.sender_id:
            unread_for = confirmed.receiver_id
        await self._conversations.record_delivery(conversation, confirmed, unread_for=unread_for)
        await self._notify_receiver(confirmed)
        return confirmed

    def _confirm(self, conversation_id: str, temp_id: str | None, confirmed: Message) -> Message:
        """Swap the temp entry for the confirmed one, suppressing duplicates."""
        self._remove(conversation_id, temp_id)
        conversation_messages = self.messages.setdefault(conversation_id, [])
        for message in conversation_messages:
            if message.id == confirmed.id:
                # The realtime echo got here first
                message.sending_state = SendingState.SENT
                self._notify()
                return message
        conversation_messages.append(confirmed)
        self._notify()
        return confirmed

    def _mark_failed(self, conversation_id: str, temp_id: str | None, reason: str) -> None:
        entry = self.find(conversation_id, temp_id)
        if entry is not None:
            entry.sending_state = SendingState.FAILED
            entry.error = reason
        self.error = reason
        self._notify()

    async def _notify_receiver(self, message: Message) -> None:
        sender_name = (self._ctx.user.name if self._ctx.user else "") or "Someone"
        try:
            await self._ctx.notifier.notify_user(
                message.receiver_id,
                "message",
                f"New message from {sender_name}",
                message.preview or "You have a new message",
                {"conversationId": message.conversation_id},
            )
        except Exception as e:
            logger.warning(
                "message_notification_failed", message_id=message.id, error=str(e)
            )

    async def resend_message(self, identifier: str) -> Message | None:
        """Retry a failed temp entry in place.

        Raises:
            InvalidRequestError: If identifier is not a failed temp entry.
        """
        entry = self.find_anywhere(identifier)
        if entry is None or not entry.is_temp or entry.sending_state != SendingState.FAILED:
            error = InvalidRequestError(
                MessagingErrorCode.E_MESSAGE_NOT_RESENDABLE,
                "Cannot resend message: not a failed temp message",
            )
            self.error = error.message
            raise error

        user = await self._ctx.current_user()
        entry.sending_state = SendingState.SENDING
        entry.error = None
        self.error = None
        self._notify()

        conversation = self._conversations.get(entry.conversation_id)
        try:
            if conversation is None:
                conversation = await self._conversations.get_or_create_conversation(
                    entry.receiver_id
                )
            require_can_reply(conversation, user.id)
        except (MessagingError, DocumentStoreError) as e:
            self._mark_failed(entry.conversation_id, entry.temp_id, getattr(e, "message", str(e)))
            raise
        return await self._deliver(conversation, entry)

    # Reactions -----------------------------------------------------------------

    async def toggle_reaction(self, conversation_id: str, message_id: str, emoji: str) -> bool:
        """Toggle the signed-in user's reaction on a confirmed message."""
        user = await self._ctx.current_user()
        message = self.find(conversation_id, message_id)
        if message is None or message.is_temp or not message.id:
            self.error = "Cannot react to temporary or non-existent message"
            return False
        stored_id = message.id

        raw = {emoji_key: list(users) for emoji_key, users in message.reactions_raw.items()}
        if not raw and any(count > 0 for count in message.reactions.values()):
            # Counts alone cannot say whose reaction to move; fetch the raw form
            try:
                document = await self._ctx.documents.get(self._collection, stored_id)
            except DocumentStoreError as e:
                logger.error("reaction_refetch_failed", message_id=stored_id, error=str(e))
                self.error = e.message or "Failed to update reaction"
                return False
            raw = decode_reactions(document.get("reactions"))

        updated = toggle_reaction(raw, user.id, emoji)
        try:
            await self._ctx.documents.update(self._collection, stored_id, reactions_patch(updated))
        except DocumentStoreError as e:
            logger.error("reaction_update_failed", message_id=stored_id, error=str(e))
            self.error = e.message or "Failed to update reaction"
            return False

        current = self.find(conversation_id, stored_id)
        if current is not None:
            current.reactions_raw = updated
            current.reactions = reaction_counts(updated)
        self._notify()
        return True

    async def clean_reactions(self) -> int:
        """Rewrite stored reactions that hold placeholder or invalid reactor IDs.

        Returns:
            Number of messages repaired.
        """
        cleaned = 0
        for conversation_id, conversation_messages in list(self.messages.items()):
            ids = [m.id for m in conversation_messages if m.id and not m.is_temp]
            if not ids:
                continue
            try:
                result = await self._ctx.documents.list(
                    self._collection, filters=[Filter.equal("$id", *ids)], limit=len(ids)
                )
            except DocumentStoreError as e:
                logger.error("reactions_cleanup_list_failed", conversation_id=conversation_id, error=str(e))
                continue
            for document in result.documents:
                stored = document.get("reactions")
                if not needs_cleaning(stored):
                    continue
                repaired = decode_reactions(stored)
                try:
                    await self._ctx.documents.update(
                        self._collection, document["$id"], reactions_patch(repaired)
                    )
                except DocumentStoreError as e:
                    logger.error("reactions_cleanup_failed", message_id=document["$id"], error=str(e))
                    continue
                current = self.find(conversation_id, document["$id"])
                if current is not None:
                    current.reactions_raw = repaired
                    current.reactions = reaction_counts(repaired)
                cleaned += 1
        if cleaned:
            self._notify()
        logger.info("reactions_cleanup_completed", cleaned=cleaned)
        return cleaned

    # Delete --------------------------------------------------------------------

    async def delete_message(self, conversation_id: str, identifier: str) -> bool:
        """Delete one of the signed-in user's messages.

        Raises:
            NotSenderError: If the message belongs to someone else.
        """
        user = await self._ctx.current_user()
        message = self.find(conversation_id, identifier)
        if message is None:
            self.error = "Message not found"
            return False
        if message.sender_id != user.id:
            error = NotSenderError()
            self.error = error.message
            raise error

        if message.is_temp:
            self._remove(conversation_id, identifier)
            self._notify()
            return True

        stored_id = message.id
        conversation = self._conversations.get(conversation_id)
        # The delete echo may repoint the cached last message before we get here
        was_last = conversation is not None and conversation.last_message_id == stored_id
        try:
            await self._ctx.documents.delete(self._collection, stored_id)
        except DocumentNotFoundError:
            logger.info("message_already_deleted", message_id=stored_id)
        except DocumentStoreError as e:
            logger.error("message_delete_failed", message_id=stored_id, error=str(e))
            self.error = e.message or "Failed to delete message"
            return False

        self._remove(conversation_id, stored_id)
        if was_last:
            await self._conversations.replace_last_message(
                conversation, self._latest_confirmed(conversation_id)
            )
        self._notify()
        return True

    async def delete_conversation(self, conversation_id: str) -> bool:
        """Delete a conversation and its cached messages, remote first."""
        for message in list(self.messages.get(conversation_id, [])):
            if not message.id:
                continue
            try:
                await self._ctx.documents.delete(self._collection, message.id)
            except DocumentStoreError as e:
                logger.warning("message_delete_failed", message_id=message.id, error=str(e))
        if not await self._conversations.delete_conversation(conversation_id):
            self.error = self._conversations.error
            return False
        self.drop_conversation(conversation_id)
        return True

    # Loading and reading ---------------------------------------------------------

    async def load_messages(
        self, conversation_id: str, limit: int | None = None, offset: int = 0
    ) -> list[Message]:
        """Load one page of messages, newest page first, displayed oldest first.

        offset 0 replaces the confirmed entries (temp entries are kept);
        a later page is prepended. Unread messages addressed to the signed-in
        user are marked read.
        """
        user = await self._ctx.current_user()
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            self.error = "Conversation not found"
            return []

        self.is_loading = True
        self.error = None
        try:
            result = await self._ctx.documents.list(
                self._collection,
                filters=[Filter.equal("conversationId", conversation_id)],
                order=[OrderBy.desc("$createdAt")],
                limit=limit or self._ctx.settings.message_page_size,
                offset=offset,
            )
        except DocumentStoreError as e:
            logger.error("messages_load_failed", conversation_id=conversation_id, error=str(e))
            self.error = e.message or "Failed to load messages"
            return []
        finally:
            self.is_loading = False

        page: list[Message] = []
        for document in reversed(result.documents):
            try:
                page.append(message_from_document(document, self._decryptor(conversation)))
            except ValidationError as e:
                logger.warning("message_document_invalid", document_id=document.get("$id"), error=str(e))

        current = self.messages.get(conversation_id, [])
        page_ids = {m.id for m in page}
        if offset == 0:
            pending = [m for m in current if m.is_temp]
            # Keep confirmed entries newer than this page (e.g. delivered by realtime)
            newer = [m for m in current if not m.is_temp and m.id not in page_ids and self._is_newer(m, page)]
            self.messages[conversation_id] = page + newer + pending
        else:
            kept = [m for m in current if m.id not in page_ids or m.is_temp]
            self.messages[conversation_id] = page + kept
        self._notify()

        for message in page:
            if message.receiver_id == user.id and not message.is_read:
                await self.mark_message_as_read(message.id)
        return page

    @staticmethod
    def _is_newer(message: Message, page: list[Message]) -> bool:
        if not page or message.created_at is None or page[-1].created_at is None:
            return False
        return message.created_at > page[-1].created_at

    async def mark_message_as_read(self, message_id: str | None) -> bool:
        """Mark a message read if the signed-in user is its receiver."""
        user_id = self._ctx.user_id
        message = self.find_anywhere(message_id)
        if message is None or not message.id or message.receiver_id != user_id:
            logger.debug("mark_read_skipped", message_id=message_id)
            return False
        if message.is_read:
            return True

        read_at = self._ctx.now()
        try:
            await self._ctx.documents.update(
                self._collection, message.id, {"isRead": True, "readAt": read_at.isoformat()}
            )
        except DocumentStoreError as e:
            logger.error("mark_read_failed", message_id=message.id, error=str(e))
            return False

        current = self.find_anywhere(message.id)
        if current is not None:
            current.is_read = True
            current.read_at = read_at
        conversation = self._conversations.get(message.conversation_id)
        if conversation is not None:
            await self._conversations.decrement_unread(conversation, user_id)
        self._notify()
        return True

    def search_messages(self, conversation_id: str, term: str) -> list[Message]:
        """Search decrypted cached messages, newest first.

        Stored content is ciphertext, so search runs locally.
        """
        needle = term.strip().lower()
        if not needle:
            return []
        hits = [
            m
            for m in self.messages.get(conversation_id, [])
            if not m.is_temp and needle in m.content.lower()
        ]
        hits.reverse()
        return hits[: self._ctx.settings.message_page_size]

    # Auto-deletion ---------------------------------------------------------------

    async def cleanup_expired_messages(self) -> int:
        """Drop expired messages; delete the user's own expired messages remotely.

        Returns:
            Number of entries removed from the local lists.
        """
        now = self._ctx.now()
        user_id = self._ctx.user_id
        removed = 0
        for conversation_id in list(self.messages):
            conversation_messages = self.messages.get(conversation_id, [])
            expired = [m for m in conversation_messages if m.is_expired(now)]
            if not expired:
                continue
            self.messages[conversation_id] = [m for m in conversation_messages if not m.is_expired(now)]
            removed += len(expired)

            conversation = self._conversations.get(conversation_id)
            if conversation is not None and any(m.id == conversation.last_message_id for m in expired):
                self._conversations.set_last_message(conversation, self._latest_confirmed(conversation_id))

            for message in expired:
                if not message.id or message.sender_id != user_id:
                    continue
                try:
                    await self._ctx.documents.delete(self._collection, message.id)
                except DocumentNotFoundError:
                    pass
                except DocumentStoreError as e:
                    logger.warning("expired_message_delete_failed", message_id=message.id, error=str(e))
        if removed:
            logger.info("expired_messages_removed", count=removed)
            self._notify()
        return removed

    def start_cleanup_timer(self) -> None:
        if self._cleanup_task is None:
            self._cleanup_task = asyncio.create_task(self._cleanup_loop(), name="message_cleanup")

    async def stop_cleanup_timer(self) -> None:
        if self._cleanup_task is None:
            return
        self._cleanup_task.cancel()
        try:
            await self._cleanup_task
        except asyncio.CancelledError:
            pass
        self._cleanup_task = None

    @property
    def cleanup_running(self) -> bool:
        return self._cleanup_task is not None and not self._cleanup_task.done()

    async def _cleanup_loop(self) -> None:
        interval = self._ctx.settings.message_cleanup_interval_s
        while True:
            await asyncio.sleep(interval)
            try:
                await self.cleanup_expired_messages()
            except Exception as e:
                logger.error("message_cleanup_failed", error=str(e))

    # Remote changes --------------------------------------------------------------

    def apply_remote_create(self, document: Document) -> Message | None:
        """Append a message from a change event unless it is already present.

        Returns:
            The appended message, or None for duplicates and unknown
            conversations.
        """
        conversation = self._conversations.get(document.get("conversationId"))
        if conversation is None:
            logger.debug("message_event_unknown_conversation", document_id=document.get("$id"))
            return None
        conversation_messages = self.messages.setdefault(conversation.id, [])
        if any(m.id == document.get("$id") for m in conversation_messages):
            return None
        try:
            message = message_from_document(document, self._decryptor(conversation))
        except ValidationError as e:
            logger.warning("message_document_invalid", document_id=document.get("$id"), error=str(e))
            return None
        conversation_messages.append(message)
        self._conversations.set_last_message(conversation, message)
        self._notify()
        return message

    def apply_remote_update(self, document: Document) -> Message | None:
        """Replace a cached message with the freshest payload (reactions, read state)."""
        conversation = self._conversations.get(document.get("conversationId"))
        if conversation is None:
            return None
        conversation_messages = self.messages.get(conversation.id, [])
        for index, existing in enumerate(conversation_messages):
            if existing.id == document.get("$id"):
                try:
                    updated = message_from_document(document, self._decryptor(conversation))
                except ValidationError as e:
                    logger.warning("message_document_invalid", document_id=existing.id, error=str(e))
                    return None
                conversation_messages[index] = updated
                if conversation.last_message is not None and conversation.last_message.id == updated.id:
                    conversation.last_message = updated
                self._notify()
                return updated
        return None

    def apply_remote_delete(self, document: Document) -> bool:
        conversation_id = document.get("conversationId")
        message_id = document.get("$id")
        if not conversation_id or not message_id:
            return False
        if self._remove(conversation_id, message_id) is None:
            return False
        conversation = self._conversations.get(conversation_id)
        if conversation is not None and conversation.last_message_id == message_id:
            self._conversations.set_last_message(conversation, self._latest_confirmed(conversation_id))
        self._notify()
        return True

    def drop_conversation(self, conversation_id: str) -> None:
        if self.messages.pop(conversation_id, None) is not None:
            self._notify()
        if self.active_conversation_id == conversation_id:
            self.set_active_conversation(None)

    # Cache ------------------------------------------------------------------------

    def confirmed_snapshot(self) -> dict[str, list[Message]]:
        """Confirmed entries only; temp and failed entries are never cached."""
        return {
            conversation_id: [m for m in msgs if m.id and not m.is_temp]
            for conversation_id, msgs in self.messages.items()
        }

    def restore(self, messages: dict[str, list[Message]]) -> None:
        self.messages = {cid: list(msgs) for cid, msgs in messages.items()}
        self._notify()

    def reset(self) -> None:
        self.messages = {}
        self.active_conversation_id = None
        self.error = None
        self.is_loading = False
        set_conversation_context(None)
        self._notify()
