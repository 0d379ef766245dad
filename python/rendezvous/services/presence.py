"""Presence tracking for the signed-in user and their contacts.

Write side (per session):
- initialize(): write online, start the heartbeat, watch the presence
  channel, register lifecycle hooks
- background: stop the heartbeat, write away
- foreground: write online, restart the heartbeat
- terminate: fire-and-forget offline (beacon first, if configured)
- shutdown(): write offline; no heartbeat or subscription is left behind

The support identity is pinned to `busy`: online and away writes both store
busy for it.

Presence writes are a side channel. Failures are logged and never raised.
"""

import asyncio
from collections.abc import Callable, Iterable
from datetime import datetime

from pydantic import ValidationError

from rendezvous.backend.base import (
    Document,
    DocumentNotFoundError,
    DocumentStoreError,
    EventKind,
    Filter,
    RealtimeEvent,
    Unsubscribe,
    documents_channel,
)
from rendezvous.context import SessionContext
from rendezvous.errors import UnauthenticatedError
from rendezvous.logging import get_logger
from rendezvous.schemas.conversation import Conversation
from rendezvous.schemas.presence import PresenceStatus, UserPresence

logger = get_logger(__name__)

PresenceCallback = Callable[[list[UserPresence]], None]

JUST_NOW_MINUTES = 5


def _plural(count: int, unit: str) -> str:
    return f"{count} {unit}" if count == 1 else f"{count} {unit}s"


def format_last_seen(presence: UserPresence | None, now: datetime) -> str:
    """Human readable presence line for a contact.

    An online contact reads "online" whatever its status or last_seen.
    """
    if presence is None:
        return "last seen recently"
    if presence.is_online:
        return "online"

    minutes = int((now - presence.last_seen).total_seconds() // 60)
    hours = minutes // 60
    days = hours // 24
    if minutes < JUST_NOW_MINUTES:
        return "last seen just now"
    if minutes < 60:
        return f"last seen {_plural(minutes, 'minute')} ago"
    if hours < 24:
        return f"last seen {_plural(hours, 'hour')} ago"
    if days < 7:
        return f"last seen {_plural(days, 'day')} ago"
    return f"last seen on {presence.last_seen.date().isoformat()}"


class PresenceTracker:
    def __init__(self, ctx: SessionContext):
        self._ctx = ctx
        self.presences: dict[str, UserPresence] = {}
        self._callbacks: list[PresenceCallback] = []
        self._heartbeat_task: asyncio.Task | None = None
        self._channel_unsubscribe: Unsubscribe | None = None
        self._lifecycle_unsubscribes: list[Unsubscribe] = []

    @property
    def _collection(self) -> str:
        return self._ctx.settings.presence_collection_id

    @property
    def heartbeat_running(self) -> bool:
        return self._heartbeat_task is not None and not self._heartbeat_task.done()

    @property
    def is_initialized(self) -> bool:
        return self._channel_unsubscribe is not None

    # Lifecycle -----------------------------------------------------------------

    async def initialize(self) -> bool:
        """Start presence tracking. Returns False when nobody is signed in."""
        try:
            await self._ctx.current_user()
        except UnauthenticatedError:
            logger.info("presence_skipped_unauthenticated")
            return False
        if self.is_initialized:
            return True

        await self.set_online()
        self.start_heartbeat()
        channel = documents_channel(self._ctx.settings.appwrite_database_id, self._collection)
        self._channel_unsubscribe = self._ctx.realtime.subscribe(channel, self._on_event)
        lifecycle = self._ctx.lifecycle
        self._lifecycle_unsubscribes = [
            lifecycle.on_foreground(self.handle_foreground),
            lifecycle.on_background(self.handle_background),
            lifecycle.on_terminate(self.handle_terminate),
        ]
        logger.info("presence_initialized")
        return True

    async def handle_background(self) -> None:
        await self.stop_heartbeat()
        await self.set_away()

    async def handle_foreground(self) -> None:
        await self.set_online()
        self.start_heartbeat()

    def handle_terminate(self) -> None:
        """Best-effort offline on process or page termination."""
        user_id = self._ctx.user_id
        if user_id and self._ctx.beacon is not None:
            path = self._ctx.settings.presence_beacon_path.format(user_id=user_id)
            try:
                self._ctx.beacon(path, {"timestamp": self._ctx.now().isoformat()})
            except Exception as e:
                logger.warning("presence_beacon_failed", error=str(e))
        self._ctx.tasks.spawn(self.set_offline(), name="presence_offline")

    async def shutdown(self) -> None:
        if self._channel_unsubscribe is not None:
            self._channel_unsubscribe()
            self._channel_unsubscribe = None
        for unsubscribe in self._lifecycle_unsubscribes:
            unsubscribe()
        self._lifecycle_unsubscribes = []
        await self.stop_heartbeat()
        await self.set_offline()
        self._callbacks = []
        self.presences = {}

    # Heartbeat -------------------------------------------------------------------

    def start_heartbeat(self) -> None:
        if self.heartbeat_running:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop(), name="presence_heartbeat")

    async def stop_heartbeat(self) -> None:
        if self._heartbeat_task is None:
            return
        self._heartbeat_task.cancel()
        try:
            await self._heartbeat_task
        except asyncio.CancelledError:
            pass
        self._heartbeat_task = None

    async def _heartbeat_loop(self) -> None:
        interval = self._ctx.settings.presence_heartbeat_interval_s
        while True:
            await asyncio.sleep(interval)
            await self.set_online()

    # Writes ----------------------------------------------------------------------

    async def set_online(self) -> bool:
        status = PresenceStatus.BUSY if self._ctx.is_support else PresenceStatus.ONLINE
        return await self._write(is_online=True, status=status)

    async def set_away(self) -> bool:
        status = PresenceStatus.BUSY if self._ctx.is_support else PresenceStatus.AWAY
        return await self._write(is_online=True, status=status)

    async def set_offline(self) -> bool:
        return await self._write(is_online=False, status=PresenceStatus.OFFLINE)

    async def _write(self, *, is_online: bool, status: PresenceStatus) -> bool:
        user_id = self._ctx.user_id
        if not user_id:
            return False
        patch: Document = {
            "isOnline": is_online,
            "lastSeen": self._ctx.now().isoformat(),
            "status": status.value,
        }
        documents = self._ctx.documents
        try:
            try:
                await documents.update(self._collection, user_id, patch)
            except DocumentNotFoundError:
                await documents.create(self._collection, user_id, {"userId": user_id, **patch})
        except DocumentStoreError as e:
            logger.warning("presence_write_failed", status=status.value, error=str(e))
            return False
        logger.debug("presence_written", status=status.value)
        return True

    # Reads -----------------------------------------------------------------------

    async def get_users_presence(self, user_ids: Iterable[str]) -> list[UserPresence]:
        """Fetch current presence for user_ids. Errors yield an empty list."""
        ids = list(dict.fromkeys(user_ids))
        if not ids:
            return []
        if len(ids) == 1:
            condition = Filter.equal("userId", ids[0])
        else:
            condition = Filter.any_of(*(Filter.equal("userId", user_id) for user_id in ids))
        try:
            result = await self._ctx.documents.list(
                self._collection, filters=[condition], limit=len(ids)
            )
        except DocumentStoreError as e:
            logger.error("presence_fetch_failed", count=len(ids), error=str(e))
            return []

        presences = []
        for document in result.documents:
            try:
                presences.append(UserPresence.model_validate(document))
            except ValidationError as e:
                logger.warning("presence_document_invalid", document_id=document.get("$id"), error=str(e))
        return presences

    async def load_participants_presence(
        self, conversations: Iterable[Conversation]
    ) -> dict[str, UserPresence]:
        """Fetch presence for everyone the signed-in user talks to."""
        user_id = self._ctx.user_id
        others = {
            participant
            for conversation in conversations
            for participant in conversation.participants
            if participant != user_id
        }
        for presence in await self.get_users_presence(sorted(others)):
            self.presences[presence.user_id] = presence
        return self.presences

    def presence_of(self, user_id: str) -> UserPresence | None:
        return self.presences.get(user_id)

    def is_user_online(self, user_id: str) -> bool:
        presence = self.presences.get(user_id)
        return presence is not None and presence.is_online and presence.status == PresenceStatus.ONLINE

    def last_seen_text(self, user_id: str) -> str:
        return format_last_seen(self.presences.get(user_id), self._ctx.now())

    # Live updates ------------------------------------------------------------------

    def on_presence_change(self, callback: PresenceCallback) -> Unsubscribe:
        self._callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

        return unsubscribe

    def _on_event(self, event: RealtimeEvent) -> None:
        if event.kind not in (EventKind.CREATE, EventKind.UPDATE):
            return
        try:
            presence = UserPresence.model_validate(event.payload)
        except ValidationError as e:
            logger.warning("presence_event_invalid", document_id=event.document_id, error=str(e))
            return
        self.presences[presence.user_id] = presence
        for callback in list(self._callbacks):
            try:
                callback([presence])
            except Exception as e:
                logger.error("presence_callback_failed", error=str(e))
