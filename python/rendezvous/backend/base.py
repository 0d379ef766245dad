"""Collaborator contracts for the messaging core.

The core talks to the outside world only through these interfaces:
- DocumentStore: create/get/update/delete/list documents in a collection
- RealtimeTransport: subscribe to change-feed channels
- IdentityProvider: the signed-in user
- Notifier: fire-and-forget user notifications
- EntitlementChecker: feature access for calls
- AlertSink: OS-level notifications and audio cues
- LifecycleHooks: foreground/background/terminate signals from the UI runtime

Concrete implementations live in sibling modules (appwrite, memory, ...).
"""

from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from rendezvous.logging import get_logger
from rendezvous.schemas.call import CallSession
from rendezvous.schemas.user import User

logger = get_logger(__name__)

Document = dict[str, Any]


# =============================================================================
# Document store
# =============================================================================


class DocumentStoreError(Exception):
    """Storage operation error."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class DocumentNotFoundError(DocumentStoreError):
    """The requested document does not exist."""

    def __init__(self, message: str = "Document not found"):
        super().__init__(message, status_code=404)


class FilterOp(str, Enum):
    EQUAL = "equal"
    NOT_EQUAL = "notEqual"
    LESS_THAN = "lessThan"
    LESS_THAN_EQUAL = "lessThanEqual"
    GREATER_THAN = "greaterThan"
    SEARCH = "search"
    OR = "or"


@dataclass(frozen=True)
class Filter:
    """One query condition.

    EQUAL with several values matches any of them. SEARCH matches a term in a
    string attribute or an element of an array attribute. OR holds nested
    conditions in `values` and has no attribute of its own.
    """

    attribute: str
    op: FilterOp
    values: tuple[Any, ...]

    @classmethod
    def equal(cls, attribute: str, *values: Any) -> "Filter":
        return cls(attribute, FilterOp.EQUAL, values)

    @classmethod
    def not_equal(cls, attribute: str, value: Any) -> "Filter":
        return cls(attribute, FilterOp.NOT_EQUAL, (value,))

    @classmethod
    def less_than(cls, attribute: str, value: Any) -> "Filter":
        return cls(attribute, FilterOp.LESS_THAN, (value,))

    @classmethod
    def less_than_equal(cls, attribute: str, value: Any) -> "Filter":
        return cls(attribute, FilterOp.LESS_THAN_EQUAL, (value,))

    @classmethod
    def greater_than(cls, attribute: str, value: Any) -> "Filter":
        return cls(attribute, FilterOp.GREATER_THAN, (value,))

    @classmethod
    def search(cls, attribute: str, term: str) -> "Filter":
        return cls(attribute, FilterOp.SEARCH, (term,))

    @classmethod
    def any_of(cls, *conditions: "Filter") -> "Filter":
        """Match documents satisfying at least one of conditions."""
        return cls("", FilterOp.OR, conditions)


@dataclass(frozen=True)
class OrderBy:
    attribute: str
    descending: bool = False

    @classmethod
    def desc(cls, attribute: str) -> "OrderBy":
        return cls(attribute, descending=True)

    @classmethod
    def asc(cls, attribute: str) -> "OrderBy":
        return cls(attribute, descending=False)


@dataclass
class DocumentList:
    documents: list[Document]
    total: int


class DocumentStore(ABC):
    """Abstract base class for document database implementations.

    Documents carry system attributes `$id`, `$createdAt`, `$updatedAt`
    and `$collectionId` alongside their own fields.
    """

    @abstractmethod
    async def create(
        self, collection: str, document_id: str | None, data: Document
    ) -> Document:
        """Create a document.

        Args:
            collection: Collection ID.
            document_id: Explicit ID, or None to let the store assign one.
            data: Document fields.

        Returns:
            The stored document including system attributes.

        Raises:
            DocumentStoreError: If the write fails.
        """
        ...

    @abstractmethod
    async def get(self, collection: str, document_id: str) -> Document:
        """Fetch one document.

        Raises:
            DocumentNotFoundError: If no such document exists.
            DocumentStoreError: If the read fails.
        """
        ...

    @abstractmethod
    async def update(self, collection: str, document_id: str, patch: Document) -> Document:
        """Apply a partial update and return the updated document.

        Raises:
            DocumentNotFoundError: If no such document exists.
            DocumentStoreError: If the write fails.
        """
        ...

    @abstractmethod
    async def delete(self, collection: str, document_id: str) -> None:
        """Delete a document.

        Raises:
            DocumentNotFoundError: If no such document exists.
            DocumentStoreError: If the write fails.
        """
        ...

    @abstractmethod
    async def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Sequence[OrderBy] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> DocumentList:
        """List documents matching all filters.

        Raises:
            DocumentStoreError: If the read fails.
        """
        ...


# =============================================================================
# Realtime transport
# =============================================================================


class EventKind(str, Enum):
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


@dataclass(frozen=True)
class RealtimeEvent:
    """A change-feed event.

    `events` holds the transport's event names, e.g.
    "databases.messaging.collections.messages.documents.abc.create".
    """

    channel: str
    events: tuple[str, ...]
    payload: Document

    @property
    def kind(self) -> EventKind | None:
        for name in self.events:
            suffix = name.rsplit(".", 1)[-1]
            try:
                return EventKind(suffix)
            except ValueError:
                continue
        return None

    @property
    def document_id(self) -> str | None:
        return self.payload.get("$id")


EventHandler = Callable[[RealtimeEvent], None]
ConnectionListener = Callable[[bool], None]
Unsubscribe = Callable[[], None]


def documents_channel(database_id: str, collection_id: str) -> str:
    """Channel name for document changes in one collection."""
    return f"databases.{database_id}.collections.{collection_id}.documents"


def document_event_name(
    database_id: str, collection_id: str, document_id: str, kind: EventKind
) -> str:
    return f"{documents_channel(database_id, collection_id)}.{document_id}.{kind.value}"


class RealtimeTransport(ABC):
    """Abstract base class for change-feed transports.

    Handlers are called synchronously on the transport's callback thread and
    must not block.
    """

    @abstractmethod
    def subscribe(self, channel: str, handler: EventHandler) -> Unsubscribe:
        """Subscribe handler to a channel; returns the teardown function."""
        ...

    @abstractmethod
    def on_connection_change(self, listener: ConnectionListener) -> Unsubscribe:
        """Register listener(connected) for transport connectivity changes."""
        ...


# =============================================================================
# Identity, notifications, entitlements, alerts
# =============================================================================


class IdentityProvider(ABC):
    @abstractmethod
    async def current_user(self) -> User | None:
        """Return the signed-in user, or None when signed out."""
        ...


class Notifier(ABC):
    @abstractmethod
    async def notify_user(
        self,
        user_id: str,
        kind: str,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> None:
        """Deliver a notification to user_id.

        Fire-and-forget from the core's perspective; callers log failures.
        """
        ...


@dataclass(frozen=True)
class FeatureAccess:
    allowed: bool
    reason: str | None = None


class EntitlementChecker(ABC):
    @abstractmethod
    async def can_access_video_call(self) -> FeatureAccess: ...

    @abstractmethod
    async def can_access_audio_call(self) -> FeatureAccess: ...


class AlertSink(ABC):
    """OS-level notification and audio primitives.

    Implementations may raise; the core catches and logs every failure.
    """

    @abstractmethod
    def show_notification(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        ...

    @abstractmethod
    def show_call_notification(self, call: CallSession, caller_name: str) -> None:
        """Incoming call notification with answer/decline affordances."""
        ...

    @abstractmethod
    def play_notification_sound(self) -> None: ...

    @abstractmethod
    def start_ringtone(self) -> None: ...

    @abstractmethod
    def stop_ringtone(self) -> None: ...


# =============================================================================
# Lifecycle hooks
# =============================================================================


LifecycleCallback = Callable[[], Awaitable[None] | None]


@dataclass
class LifecycleHooks:
    """Foreground/background/terminate signals from the UI runtime.

    The runtime adapter calls emit_*; components register with on_*.
    Callbacks may be sync or async; async callbacks are awaited in order.
    """

    _foreground: list[LifecycleCallback] = field(default_factory=list)
    _background: list[LifecycleCallback] = field(default_factory=list)
    _terminate: list[LifecycleCallback] = field(default_factory=list)

    def on_foreground(self, callback: LifecycleCallback) -> Unsubscribe:
        return self._register(self._foreground, callback)

    def on_background(self, callback: LifecycleCallback) -> Unsubscribe:
        return self._register(self._background, callback)

    def on_terminate(self, callback: LifecycleCallback) -> Unsubscribe:
        return self._register(self._terminate, callback)

    async def emit_foreground(self) -> None:
        await self._emit("foreground", self._foreground)

    async def emit_background(self) -> None:
        await self._emit("background", self._background)

    async def emit_terminate(self) -> None:
        await self._emit("terminate", self._terminate)

    @staticmethod
    def _register(callbacks: list[LifecycleCallback], callback: LifecycleCallback) -> Unsubscribe:
        callbacks.append(callback)

        def unsubscribe() -> None:
            if callback in callbacks:
                callbacks.remove(callback)

        return unsubscribe

    @staticmethod
    async def _emit(name: str, callbacks: list[LifecycleCallback]) -> None:
        for callback in list(callbacks):
            try:
                result = callback()
                if result is not None:
                    await result
            except Exception as e:
                logger.error("lifecycle_callback_failed", hook=name, error=str(e))
