"""Notification dispatch through the notifications collection.

Each notification is a document the recipient's client picks up from its
own realtime subscription.
"""

import json
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from rendezvous.backend.base import DocumentStore, Notifier
from rendezvous.logging import get_logger

logger = get_logger(__name__)

# Days until a notification of a given kind expires; 0 means never
EXPIRATION_DAYS: dict[str, int] = {
    "message": 30,
    "call": 7,
    "system_alert": 30,
}
DEFAULT_EXPIRATION_DAYS = 30


class DocumentNotifier(Notifier):
    """Writes one notification document per call."""

    def __init__(
        self,
        documents: DocumentStore,
        collection_id: str,
        *,
        now_func: Callable[[], datetime] = lambda: datetime.now(UTC),
    ):
        self._documents = documents
        self._collection_id = collection_id
        self._now = now_func

    def _expires_at(self, kind: str, now: datetime) -> str | None:
        days = EXPIRATION_DAYS.get(kind, DEFAULT_EXPIRATION_DAYS)
        if days == 0:
            return None
        return (now + timedelta(days=days)).isoformat()

    async def notify_user(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        now = self._now()
        await self._documents.create(
            self._collection_id,
            None,
            {
                "userId": user_id,
                "type": kind,
                "title": title,
                "message": body,
                "data": json.dumps(data) if data else None,
                "isRead": False,
                "isSeen": False,
                "priority": "medium",
                "createdAt": now.isoformat(),
                "expiresAt": self._expires_at(kind, now),
            },
        )
        logger.info("notification_created", recipient_id=user_id, kind=kind)
