"""Messaging session root.

One MessagingSession per signed-in client session. It builds exactly one of
each store and manager around a SessionContext and ties their timers and
subscriptions to start() and stop().

start():
1. Resolve the signed-in user and bind the logging context
2. Restore the local cache, if any, so the UI has something to show
3. Load conversations from the server (keys are healed while loading)
4. Subscribe to the realtime feeds
5. Initialize presence and fetch contacts' presence
6. Start the expired-message cleanup timer

stop() undoes all of it; no timer, task or subscription survives it.
"""

from uuid import uuid4

from rendezvous.context import SessionContext
from rendezvous.logging import clear_session_context, get_logger, set_session_context
from rendezvous.schemas.message import Message
from rendezvous.services.cache import ConversationCache
from rendezvous.services.calls import CallManager
from rendezvous.services.conversations import ConversationStore
from rendezvous.services.messages import MessageStore
from rendezvous.services.presence import PresenceTracker
from rendezvous.services.realtime import RealtimeDispatcher, messages_key

logger = get_logger(__name__)


class MessagingSession:
    def __init__(self, ctx: SessionContext, cache: ConversationCache | None = None):
        self.ctx = ctx
        self.cache = cache
        self.session_id: str | None = None
        self.conversations = ConversationStore(ctx)
        self.messages = MessageStore(ctx, self.conversations)
        self.calls = CallManager(ctx, self.conversations, self.messages)
        self.presence = PresenceTracker(ctx)
        self.realtime = RealtimeDispatcher(ctx, self.conversations, self.messages, self.calls)
        self._started = False

    @property
    def started(self) -> bool:
        return self._started

    async def start(self) -> None:
        """Bring the session online for the signed-in user.

        Raises:
            UnauthenticatedError: If nobody is signed in.
        """
        if self._started:
            return
        user = await self.ctx.current_user()
        self.session_id = uuid4().hex
        set_session_context(self.session_id, user.id)

        self._restore_cache(user.id)
        await self.conversations.load_conversations()
        await self.conversations.heal_keys()

        self.realtime.start()
        await self.presence.initialize()
        await self.presence.load_participants_presence(self.conversations.conversations)
        self.messages.start_cleanup_timer()
        self._started = True
        logger.info("messaging_session_started", conversations=len(self.conversations.conversations))

    async def stop(self) -> None:
        """Tear the session down at sign-out."""
        if not self._started:
            return
        user_id = self.ctx.user_id
        self.realtime.unsubscribe_all()
        await self.presence.shutdown()
        await self.messages.stop_cleanup_timer()
        await self.ctx.tasks.cancel_all()
        self._save_cache(user_id)

        self.calls.reset()
        self.messages.reset()
        self.conversations.reset()
        self.ctx.user = None
        self._started = False
        logger.info("messaging_session_stopped")
        clear_session_context()
        self.session_id = None

    # Conversations ---------------------------------------------------------------

    async def open_conversation(self, conversation_id: str) -> list[Message]:
        """Make a conversation active: watch its messages and load the first page."""
        previous = self.messages.active_conversation_id
        if previous and previous != conversation_id:
            self.realtime.unsubscribe(messages_key(previous))
        self.messages.set_active_conversation(conversation_id)
        self.realtime.subscribe_to_messages(conversation_id)
        return await self.messages.load_messages(conversation_id)

    def close_conversation(self) -> None:
        active = self.messages.active_conversation_id
        if active:
            self.realtime.unsubscribe(messages_key(active))
        self.messages.set_active_conversation(None)

    # Cache -----------------------------------------------------------------------

    def _restore_cache(self, user_id: str) -> None:
        if self.cache is None:
            return
        snapshot = self.cache.load(user_id)
        if snapshot is None:
            return
        self.conversations.restore(snapshot.conversations)
        self.messages.restore(snapshot.messages)
        logger.info("cache_restored", conversations=len(snapshot.conversations))

    def _save_cache(self, user_id: str | None) -> None:
        if self.cache is None or not user_id:
            return
        self.cache.save(
            user_id, self.conversations.conversations, self.messages.confirmed_snapshot()
        )
