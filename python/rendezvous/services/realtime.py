"""Realtime dispatcher.

Routes change-feed events into the stores. Subscriptions are keyed:
- "conversations": every conversation the user participates in
- "messages" or "messages-<conversation id>": message changes
- "calls" or "calls-<conversation id>": calls involving the user

Subscribing under an existing key replaces the previous subscription.
Handlers run synchronously and never raise; network follow-ups (such as
marking a message read) go through the session's background tasks.

Reconnect: a transport disconnect schedules a single reconnect after
REALTIME_RECONNECT_DELAY_S. Reconnect re-subscribes conversations, the
message feed, the active conversation's messages and calls.
"""

import asyncio
from collections.abc import Callable

from rendezvous.backend.base import (
    EventKind,
    RealtimeEvent,
    Unsubscribe,
    documents_channel,
)
from rendezvous.context import SessionContext
from rendezvous.logging import get_logger, set_channel_context
from rendezvous.services.calls import CallManager
from rendezvous.services.conversations import ConversationStore
from rendezvous.services.messages import MessageStore
from rendezvous.services.tasks import best_effort

logger = get_logger(__name__)

CONVERSATIONS_KEY = "conversations"
MESSAGES_KEY = "messages"
CALLS_KEY = "calls"


def messages_key(conversation_id: str | None = None) -> str:
    return f"{MESSAGES_KEY}-{conversation_id}" if conversation_id else MESSAGES_KEY


def calls_key(conversation_id: str | None = None) -> str:
    return f"{CALLS_KEY}-{conversation_id}" if conversation_id else CALLS_KEY


class RealtimeDispatcher:
    """Keeps the stores in sync with remote changes."""

    def __init__(
        self,
        ctx: SessionContext,
        conversations: ConversationStore,
        messages: MessageStore,
        calls: CallManager,
    ):
        self._ctx = ctx
        self._conversations = conversations
        self._messages = messages
        self._calls = calls
        self._subscriptions: dict[str, Unsubscribe] = {}
        self._connection_unsubscribe: Unsubscribe | None = None
        self._reconnect_handle: asyncio.TimerHandle | None = None

    def _channel(self, collection_id: str) -> str:
        return documents_channel(self._ctx.settings.appwrite_database_id, collection_id)

    @property
    def subscription_keys(self) -> list[str]:
        return sorted(self._subscriptions)

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    # Subscriptions -----------------------------------------------------------------

    def _register(self, key: str, channel: str, handler: Callable[[RealtimeEvent], None]) -> Unsubscribe:
        previous = self._subscriptions.pop(key, None)
        if previous is not None:
            previous()
        unsubscribe = self._ctx.realtime.subscribe(channel, handler)
        self._subscriptions[key] = unsubscribe
        logger.debug("realtime_subscribed", key=key)

        def revoke() -> None:
            self.unsubscribe(key)

        return revoke

    def _can_subscribe(self, key: str) -> bool:
        if self._ctx.user_id is None:
            logger.warning("realtime_subscribe_unauthenticated", key=key)
            return False
        return True

    def subscribe_to_conversations(self) -> Unsubscribe | None:
        if not self._can_subscribe(CONVERSATIONS_KEY):
            return None
        channel = self._channel(self._ctx.settings.conversations_collection_id)
        return self._register(CONVERSATIONS_KEY, channel, self._on_conversation_event)

    def subscribe_to_messages(self, conversation_id: str | None = None) -> Unsubscribe | None:
        """Watch message changes, optionally for a single conversation."""
        key = messages_key(conversation_id)
        if not self._can_subscribe(key):
            return None
        channel = self._channel(self._ctx.settings.messages_collection_id)

        def handler(event: RealtimeEvent) -> None:
            if conversation_id and event.payload.get("conversationId") != conversation_id:
                return
            self._on_message_event(event)

        return self._register(key, channel, handler)

    def subscribe_to_calls(self, conversation_id: str | None = None) -> Unsubscribe | None:
        key = calls_key(conversation_id)
        if not self._can_subscribe(key):
            return None
        channel = self._channel(self._ctx.settings.calls_collection_id)

        def handler(event: RealtimeEvent) -> None:
            if conversation_id and event.payload.get("conversationId") != conversation_id:
                return
            self._on_call_event(event)

        return self._register(key, channel, handler)

    def unsubscribe(self, key: str) -> bool:
        unsubscribe = self._subscriptions.pop(key, None)
        if unsubscribe is None:
            return False
        unsubscribe()
        logger.debug("realtime_unsubscribed", key=key)
        return True

    def unsubscribe_all(self) -> None:
        for key in list(self._subscriptions):
            self.unsubscribe(key)
        self._cancel_reconnect()
        if self._connection_unsubscribe is not None:
            self._connection_unsubscribe()
            self._connection_unsubscribe = None

    def start(self) -> None:
        """Subscribe to every feed the session needs and watch connectivity."""
        if self._connection_unsubscribe is None:
            self._connection_unsubscribe = self._ctx.realtime.on_connection_change(
                self.handle_connection_change
            )
        self.subscribe_to_conversations()
        self.subscribe_to_messages()
        self.subscribe_to_calls()

    # Reconnect -------------------------------------------------------------------------

    def handle_connection_change(self, connected: bool) -> None:
        if connected:
            self._cancel_reconnect()
            return
        self.schedule_reconnect()

    def schedule_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("realtime_reconnect_without_loop")
            return
        delay = self._ctx.settings.realtime_reconnect_delay_s
        self._reconnect_handle = loop.call_later(delay, self._reconnect)
        logger.info("realtime_reconnect_scheduled", delay_s=delay)

    def _cancel_reconnect(self) -> None:
        if self._reconnect_handle is not None:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _reconnect(self) -> None:
        self._reconnect_handle = None
        try:
            self.reconnect()
        except Exception as e:
            logger.error("realtime_reconnect_failed", error=str(e))

    def reconnect(self) -> None:
        logger.info("realtime_reconnecting")
        self.subscribe_to_conversations()
        if MESSAGES_KEY in self._subscriptions:
            self.subscribe_to_messages()
        active = self._messages.active_conversation_id
        if active:
            self.subscribe_to_messages(active)
        self.subscribe_to_calls()

    # Conversation events ------------------------------------------------------------

    def _on_conversation_event(self, event: RealtimeEvent) -> None:
        set_channel_context(CONVERSATIONS_KEY)
        try:
            self._handle_conversation_event(event)
        except Exception as e:
            logger.error(
                "realtime_conversation_handler_failed",
                document_id=event.document_id,
                error=str(e),
            )
        finally:
            set_channel_context(None)

    def _handle_conversation_event(self, event: RealtimeEvent) -> None:
        user_id = self._ctx.user_id
        participants = event.payload.get("participants") or []
        if user_id is None or user_id not in participants:
            return

        kind = event.kind
        if kind == EventKind.DELETE:
            conversation_id = event.document_id
            if conversation_id and self._conversations.remove(conversation_id):
                self._messages.drop_conversation(conversation_id)
            return
        if kind not in (EventKind.CREATE, EventKind.UPDATE):
            return

        conversation, created = self._conversations.apply_remote(event.payload)
        if conversation is None or not created:
            return
        if kind == EventKind.CREATE and conversation.initiated_by != user_id:
            best_effort(
                "conversation_alert_failed",
                self._ctx.alerts.show_notification,
                "New Conversation",
                "You have a new conversation",
                {"conversationId": conversation.id},
            )

    # Message events -------------------------------------------------------------------

    def _on_message_event(self, event: RealtimeEvent) -> None:
        set_channel_context(MESSAGES_KEY)
        try:
            self._handle_message_event(event)
        except Exception as e:
            logger.error(
                "realtime_message_handler_failed",
                document_id=event.document_id,
                error=str(e),
            )
        finally:
            set_channel_context(None)

    def _handle_message_event(self, event: RealtimeEvent) -> None:
        kind = event.kind
        if kind == EventKind.UPDATE:
            self._messages.apply_remote_update(event.payload)
            return
        if kind == EventKind.DELETE:
            self._messages.apply_remote_delete(event.payload)
            return
        if kind != EventKind.CREATE:
            return

        message = self._messages.apply_remote_create(event.payload)
        if message is None:
            return
        user_id = self._ctx.user_id
        if message.sender_id != user_id:
            conversation = self._conversations.get(message.conversation_id)
            sender_name = (
                self._conversations.other_participant(conversation).name
                if conversation is not None
                else "Someone"
            )
            best_effort(
                "message_alert_failed",
                self._ctx.alerts.show_notification,
                f"New message from {sender_name}",
                message.preview,
                {"conversationId": message.conversation_id},
            )
            best_effort("message_sound_failed", self._ctx.alerts.play_notification_sound)

        if (
            message.conversation_id == self._messages.active_conversation_id
            and message.receiver_id == user_id
            and not message.is_read
        ):
            self._ctx.tasks.spawn(
                self._messages.mark_message_as_read(message.id), name="mark_message_as_read"
            )

    # Call events ----------------------------------------------------------------------

    def _on_call_event(self, event: RealtimeEvent) -> None:
        set_channel_context(CALLS_KEY)
        try:
            kind = event.kind
            if kind == EventKind.CREATE:
                self._calls.apply_remote_create(event.payload)
            elif kind == EventKind.UPDATE:
                self._calls.apply_remote_update(event.payload)
            elif kind == EventKind.DELETE:
                self._calls.apply_remote_delete(event.payload)
        except Exception as e:
            logger.error("realtime_call_handler_failed", document_id=event.document_id, error=str(e))
        finally:
            set_channel_context(None)
