"""Call session manager.

State machine:
- pending -> active (accept): started_at set, "<Type> call answered"
- active -> ended (end): duration = floor(ended_at - started_at) seconds,
  "<Type> call ended (Xm Ys)"
- pending -> ended (end before answer): no duration, "<Type> call missed"
- pending -> rejected (decline): no duration, "<Type> call declined"

Ended and rejected calls stay in `active_calls` for CALL_LINGER_S so the UI
can animate the transition, then they are dropped locally.
"""

import asyncio

from pydantic import ValidationError

from rendezvous.backend.base import Document, DocumentStoreError
from rendezvous.context import SessionContext
from rendezvous.errors import (
    FeatureUnavailableError,
    InvalidRequestError,
    MessagingError,
    MessagingErrorCode,
    NotFoundError,
    PermissionDeniedError,
)
from rendezvous.logging import get_logger
from rendezvous.schemas.call import CallSession, CallStatus, CallType
from rendezvous.schemas.conversation import Role
from rendezvous.schemas.message import MessageType
from rendezvous.services.codec import call_from_document, call_to_document
from rendezvous.services.conversations import ConversationStore
from rendezvous.services.messages import MessageStore
from rendezvous.services.observable import Observable
from rendezvous.services.tasks import best_effort

logger = get_logger(__name__)

FINISHED_STATUSES = (CallStatus.ENDED, CallStatus.REJECTED)


def format_duration(seconds: int) -> str:
    minutes, secs = divmod(seconds, 60)
    if minutes > 0:
        return f"{minutes}m {secs}s"
    return f"{secs}s"


def call_started_text(call_type: CallType) -> str:
    return f"{call_type.value} call started"


class CallManager(Observable):
    """Active calls of the signed-in user."""

    def __init__(
        self,
        ctx: SessionContext,
        conversations: ConversationStore,
        messages: MessageStore,
    ):
        super().__init__()
        self._ctx = ctx
        self._conversations = conversations
        self._messages = messages
        self.active_calls: list[CallSession] = []
        self.error: str | None = None
        self._linger: dict[str, asyncio.TimerHandle] = {}

    @property
    def _collection(self) -> str:
        return self._ctx.settings.calls_collection_id

    def get(self, call_id: str | None) -> CallSession | None:
        for call in self.active_calls:
            if call.id == call_id:
                return call
        return None

    @property
    def incoming_call(self) -> CallSession | None:
        """A pending call addressed to the signed-in user, if any."""
        user_id = self._ctx.user_id
        for call in self.active_calls:
            if call.status == CallStatus.PENDING and call.receiver_id == user_id:
                return call
        return None

    def _require(self, call_id: str) -> CallSession:
        call = self.get(call_id)
        if call is None:
            raise NotFoundError(MessagingErrorCode.E_CALL_NOT_FOUND, "Call not found")
        return call

    def _upsert(self, call: CallSession) -> CallSession:
        for index, existing in enumerate(self.active_calls):
            if existing.id == call.id:
                self.active_calls[index] = call
                self._notify()
                return call
        self.active_calls.append(call)
        self._notify()
        return call

    # Transitions ---------------------------------------------------------------

    async def require_call_access(self, call_type: CallType) -> None:
        """Raise FeatureUnavailableError unless the user may place call_type calls."""
        if call_type == CallType.VIDEO:
            access = await self._ctx.entitlements.can_access_video_call()
            default_reason = "Video calls not available"
        else:
            access = await self._ctx.entitlements.can_access_audio_call()
            default_reason = "Audio calls not available"
        if not access.allowed:
            raise FeatureUnavailableError(access.reason or default_reason)

    async def start_call(
        self, receiver_id: str, call_type: CallType, target_role: Role | None = None
    ) -> CallSession | None:
        """Start a call after the entitlement check.

        Returns:
            The pending call, or None if the caller lacks the entitlement or
            the write failed (reason in `error`).
        """
        user = await self._ctx.current_user()
        self.error = None
        try:
            await self.require_call_access(call_type)
        except FeatureUnavailableError as e:
            self.error = e.message
            logger.info("call_start_denied", call_type=call_type.value)
            return None

        try:
            conversation = await self._conversations.get_or_create_conversation(
                receiver_id, target_role
            )
        except MessagingError as e:
            self.error = e.message
            raise
        except DocumentStoreError as e:
            self.error = e.message or "Failed to start call"
            return None

        call = CallSession(
            conversation_id=conversation.id,
            caller_id=user.id,
            receiver_id=receiver_id,
            type=call_type,
            status=CallStatus.PENDING,
        )
        try:
            document = await self._ctx.documents.create(self._collection, None, call_to_document(call))
            created = call_from_document(document)
        except (DocumentStoreError, ValidationError) as e:
            logger.error("call_start_failed", error=str(e))
            self.error = getattr(e, "message", None) or "Failed to start call"
            return None

        created = self.get(created.id) or self._upsert(created)
        logger.info("call_started", call_id=created.id, call_type=call_type.value)
        await self._post_system_message(created, call_started_text(call_type), MessageType.CALL_REQUEST)
        return created

    async def accept_call(self, call_id: str) -> CallSession | None:
        """Answer a pending call addressed to the signed-in user.

        Raises:
            NotFoundError: If the call is not in `active_calls`.
            PermissionDeniedError: If the user is not the receiver.
            InvalidRequestError: If the call is not pending.
        """
        user = await self._ctx.current_user()
        call = self._require(call_id)
        if call.receiver_id != user.id:
            raise PermissionDeniedError(
                MessagingErrorCode.E_NOT_RECEIVER, "Only the receiver can answer a call"
            )
        if call.status != CallStatus.PENDING:
            raise InvalidRequestError(
                MessagingErrorCode.E_INVALID_CALL_TRANSITION,
                f"Cannot accept a call that is {call.status.value}",
            )

        started_at = self._ctx.now()
        updated = await self._write(
            call, {"status": CallStatus.ACTIVE.value, "startedAt": started_at.isoformat()}
        )
        if updated is None:
            return None
        best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        await self._post_system_message(updated, f"{updated.type.label} call answered")
        return updated

    async def end_call(self, call_id: str) -> CallSession | None:
        """Hang up. Duration is only recorded when ending an active call.

        Ending an already finished call is a no-op.
        """
        await self._ctx.current_user()
        call = self._require(call_id)
        if call.status in FINISHED_STATUSES:
            return call

        ended_at = self._ctx.now()
        patch: Document = {"status": CallStatus.ENDED.value, "endedAt": ended_at.isoformat()}
        duration: int | None = None
        if call.status == CallStatus.ACTIVE and call.started_at is not None:
            duration = max(0, int((ended_at - call.started_at).total_seconds()))
            patch["duration"] = duration

        was_active = call.status == CallStatus.ACTIVE
        updated = await self._write(call, patch)
        if updated is None:
            return None
        best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        if was_active and duration is not None:
            text = f"{updated.type.label} call ended ({format_duration(duration)})"
        else:
            text = f"{updated.type.label} call missed"
        await self._post_system_message(updated, text)
        self._schedule_removal(updated.id)
        logger.info("call_ended", call_id=updated.id, duration=duration)
        return updated

    async def decline_call(self, call_id: str) -> CallSession | None:
        """Reject a pending call addressed to the signed-in user."""
        user = await self._ctx.current_user()
        call = self._require(call_id)
        if call.receiver_id != user.id:
            raise PermissionDeniedError(
                MessagingErrorCode.E_NOT_RECEIVER, "Only the receiver can decline a call"
            )
        if call.status != CallStatus.PENDING:
            raise InvalidRequestError(
                MessagingErrorCode.E_INVALID_CALL_TRANSITION,
                f"Cannot decline a call that is {call.status.value}",
            )

        updated = await self._write(
            call, {"status": CallStatus.REJECTED.value, "endedAt": self._ctx.now().isoformat()}
        )
        if updated is None:
            return None
        best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        await self._post_system_message(updated, f"{updated.type.label} call declined")
        self._schedule_removal(updated.id)
        return updated

    async def _write(self, call: CallSession, patch: Document) -> CallSession | None:
        try:
            document = await self._ctx.documents.update(self._collection, call.id, patch)
            updated = call_from_document(document)
        except (DocumentStoreError, ValidationError) as e:
            logger.error("call_update_failed", call_id=call.id, error=str(e))
            self.error = getattr(e, "message", None) or "Failed to update call"
            return None
        return self._upsert(updated)

    async def _post_system_message(
        self, call: CallSession, text: str, message_type: MessageType = MessageType.SYSTEM
    ) -> None:
        """Append the call summary to the conversation, best effort."""
        other = call.other_party(self._ctx.user_id or "")
        try:
            await self._messages.send_message(other, text, message_type)
        except MessagingError as e:
            logger.warning("call_message_failed", call_id=call.id, error=e.message)

    # Linger --------------------------------------------------------------------

    def _schedule_removal(self, call_id: str | None) -> None:
        if not call_id or call_id in self._linger:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._remove_local(call_id)
            return
        self._linger[call_id] = loop.call_later(
            self._ctx.settings.call_linger_s, self._remove_local, call_id
        )

    def _remove_local(self, call_id: str) -> None:
        self._linger.pop(call_id, None)
        before = len(self.active_calls)
        self.active_calls = [c for c in self.active_calls if c.id != call_id]
        if len(self.active_calls) != before:
            self._notify()

    # Remote changes ------------------------------------------------------------

    def _parse(self, document: Document) -> CallSession | None:
        try:
            call = call_from_document(document)
        except ValidationError as e:
            logger.warning("call_document_invalid", document_id=document.get("$id"), error=str(e))
            return None
        user_id = self._ctx.user_id
        if user_id and not call.involves(user_id):
            return None
        return call

    def apply_remote_create(self, document: Document) -> CallSession | None:
        """Mirror a new call; ring when it is an incoming pending call."""
        call = self._parse(document)
        if call is None or self.get(call.id) is not None:
            return None
        self._upsert(call)
        if call.status == CallStatus.PENDING and call.receiver_id == self._ctx.user_id:
            caller = self._conversations.get(call.conversation_id)
            caller_name = (
                self._conversations.other_participant(caller).name if caller else "Someone"
            )
            best_effort("ringtone_start_failed", self._ctx.alerts.start_ringtone)
            best_effort(
                "call_notification_failed",
                self._ctx.alerts.show_call_notification,
                call,
                caller_name,
            )
        return call

    def apply_remote_update(self, document: Document) -> CallSession | None:
        call = self._parse(document)
        if call is None or self.get(call.id) is None:
            return None
        self._upsert(call)
        if call.status != CallStatus.PENDING:
            best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        if call.status in FINISHED_STATUSES:
            self._schedule_removal(call.id)
        return call

    def apply_remote_delete(self, document: Document) -> bool:
        call_id = document.get("$id")
        if self.get(call_id) is None:
            return False
        handle = self._linger.pop(call_id, None)
        if handle is not None:
            handle.cancel()
        self._remove_local(call_id)
        best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        return True

    @property
    def pending_removals(self) -> int:
        return len(self._linger)

    def reset(self) -> None:
        for handle in self._linger.values():
            handle.cancel()
        self._linger.clear()
        self.active_calls = []
        self.error = None
        best_effort("ringtone_stop_failed", self._ctx.alerts.stop_ringtone)
        self._notify()
