"""Per-session context passed to every store.

One SessionContext exists per signed-in client session. It owns the
collaborators, the clock and the background task tracker, so stores never
reach for module-level singletons and tests can build isolated sessions.
"""

from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any

from rendezvous.auth.permissions import is_support_identity, resolve_user_role
from rendezvous.backend.base import (
    AlertSink,
    DocumentStore,
    EntitlementChecker,
    IdentityProvider,
    LifecycleHooks,
    Notifier,
    RealtimeTransport,
)
from rendezvous.config import Settings
from rendezvous.errors import UnauthenticatedError
from rendezvous.logging import user_id_var
from rendezvous.schemas.conversation import Role
from rendezvous.schemas.user import User
from rendezvous.services.crypto import derive_conversation_key
from rendezvous.services.tasks import BackgroundTasks

# Fire-and-forget delivery used on page unload: beacon(path, payload)
Beacon = Callable[[str, dict[str, Any]], None]


def utcnow() -> datetime:
    return datetime.now(UTC)


@dataclass
class SessionContext:
    settings: Settings
    documents: DocumentStore
    realtime: RealtimeTransport
    identity: IdentityProvider
    notifier: Notifier
    entitlements: EntitlementChecker
    alerts: AlertSink
    lifecycle: LifecycleHooks = field(default_factory=LifecycleHooks)
    clock: Callable[[], datetime] = utcnow
    beacon: Beacon | None = None
    tasks: BackgroundTasks = field(default_factory=BackgroundTasks)
    user: User | None = None

    def now(self) -> datetime:
        return self.clock()

    async def current_user(self) -> User:
        """Fetch the signed-in user, caching it for synchronous handlers.

        Raises:
            UnauthenticatedError: If nobody is signed in.
        """
        user = await self.identity.current_user()
        self.user = user
        if user is None:
            raise UnauthenticatedError()
        user_id_var.set(user.id)
        return user

    @property
    def user_id(self) -> str | None:
        return self.user.id if self.user else None

    @property
    def role(self) -> Role:
        if self.user is None:
            return Role.CLIENT
        return resolve_user_role(self.user, self.settings)

    @property
    def is_support(self) -> bool:
        return self.user is not None and is_support_identity(self.user, self.settings)

    def conversation_key(self, participant_ids: Iterable[str]) -> str:
        return derive_conversation_key(participant_ids, self.settings.conversation_key_salt)
