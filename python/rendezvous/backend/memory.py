"""In-memory backend for development and tests.

InMemoryDocumentStore keeps documents in dicts and publishes an
Appwrite-shaped change event to InMemoryRealtime on every write, so two
sessions sharing one store see each other's writes exactly as they would
against the real backend.

Test helpers (not part of the DocumentStore contract):
- seed(): insert a document without publishing an event
- fail_next(): make the next matching operation raise DocumentStoreError
- documents(): inspect a collection
"""

import builtins
import functools
import json
from collections.abc import Callable, Sequence
from datetime import UTC, date, datetime
from enum import Enum
from typing import Any
from uuid import uuid4

from rendezvous.backend.base import (
    ConnectionListener,
    Document,
    DocumentList,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    EventHandler,
    EventKind,
    Filter,
    FilterOp,
    OrderBy,
    RealtimeEvent,
    RealtimeTransport,
    Unsubscribe,
    document_event_name,
    documents_channel,
)
from rendezvous.logging import get_logger

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


def _json_default(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _normalize(data: Document) -> Document:
    """Deep-copy data into its JSON wire form."""
    return json.loads(json.dumps(data, default=_json_default))


class InMemoryRealtime(RealtimeTransport):
    """Synchronous in-process change feed.

    While disconnected, published events are dropped, like a real transport
    that misses events during an outage.
    """

    def __init__(self):
        self._handlers: dict[str, list[EventHandler]] = {}
        self._connection_listeners: list[ConnectionListener] = []
        self._connected = True
        self._queued: list[tuple[tuple[str, ...], str, Document]] = []
        self.defer_events = False

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(self, channel: str, handler: EventHandler) -> Unsubscribe:
        handlers = self._handlers.setdefault(channel, [])
        handlers.append(handler)

        def unsubscribe() -> None:
            current = self._handlers.get(channel)
            if current and handler in current:
                current.remove(handler)
                if not current:
                    self._handlers.pop(channel, None)

        return unsubscribe

    def on_connection_change(self, listener: ConnectionListener) -> Unsubscribe:
        self._connection_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._connection_listeners:
                self._connection_listeners.remove(listener)

        return unsubscribe

    def subscriber_count(self, channel: str | None = None) -> int:
        if channel is not None:
            return len(self._handlers.get(channel, []))
        return sum(len(handlers) for handlers in self._handlers.values())

    def set_connected(self, connected: bool) -> None:
        """Simulate a transport connectivity change."""
        if connected == self._connected:
            return
        self._connected = connected
        for listener in list(self._connection_listeners):
            listener(connected)

    def publish(self, channels: Sequence[str], event_name: str, payload: Document) -> None:
        """Deliver an event to every handler subscribed to any of channels.

        A handler subscribed to several matching channels is called once.
        """
        if not self._connected:
            logger.debug("realtime_event_dropped", event_name=event_name)
            return
        if self.defer_events:
            self._queued.append((tuple(channels), event_name, payload))
            return
        self._deliver(tuple(channels), event_name, payload)

    def flush(self) -> int:
        """Deliver events queued while defer_events was set."""
        queued, self._queued = self._queued, []
        for channels, event_name, payload in queued:
            self._deliver(channels, event_name, payload)
        return len(queued)

    def _deliver(self, channels: tuple[str, ...], event_name: str, payload: Document) -> None:
        # Compared by equality: each obj.method access is a new bound method
        delivered: list[EventHandler] = []
        for channel in channels:
            for handler in list(self._handlers.get(channel, [])):
                if handler in delivered:
                    continue
                delivered.append(handler)
                event = RealtimeEvent(
                    channel=channel, events=(event_name,), payload=_normalize(payload)
                )
                try:
                    handler(event)
                except Exception as e:
                    logger.error("realtime_handler_failed", event_name=event_name, error=str(e))


class InMemoryDocumentStore(DocumentStore):
    """Dict-backed document store with change events."""

    def __init__(
        self,
        realtime: InMemoryRealtime | None = None,
        database_id: str = "messaging",
        *,
        now_func: Callable[[], datetime] = _utcnow,
    ):
        self.realtime = realtime
        self.database_id = database_id
        self._now = now_func
        self._collections: dict[str, dict[str, Document]] = {}
        self._sequence = 0
        self._failures: list[tuple[str, str | None, DocumentStoreError]] = []

    # DocumentStore -----------------------------------------------------------

    async def create(
        self, collection: str, document_id: str | None, data: Document
    ) -> Document:
        self._maybe_fail("create", collection)
        documents = self._collections.setdefault(collection, {})
        doc_id = document_id or uuid4().hex[:20]
        if doc_id in documents:
            raise DocumentStoreError(
                f"Document with the requested ID already exists: {doc_id}", status_code=409
            )
        now = self._now().isoformat()
        self._sequence += 1
        document = _normalize(data)
        document.update(
            {
                "$id": doc_id,
                "$collectionId": collection,
                "$databaseId": self.database_id,
                "$createdAt": now,
                "$updatedAt": now,
                "$sequence": self._sequence,
            }
        )
        documents[doc_id] = document
        self._publish(collection, doc_id, EventKind.CREATE, document)
        return _normalize(document)

    async def get(self, collection: str, document_id: str) -> Document:
        self._maybe_fail("get", collection)
        return _normalize(self._require(collection, document_id))

    async def update(self, collection: str, document_id: str, patch: Document) -> Document:
        self._maybe_fail("update", collection)
        document = self._require(collection, document_id)
        document.update(_normalize(patch))
        document["$updatedAt"] = self._now().isoformat()
        self._publish(collection, document_id, EventKind.UPDATE, document)
        return _normalize(document)

    async def delete(self, collection: str, document_id: str) -> None:
        self._maybe_fail("delete", collection)
        document = self._require(collection, document_id)
        del self._collections[collection][document_id]
        self._publish(collection, document_id, EventKind.DELETE, document)

    async def list(
        self,
        collection: str,
        filters: Sequence[Filter] = (),
        order: Sequence[OrderBy] = (),
        limit: int | None = None,
        offset: int = 0,
    ) -> DocumentList:
        self._maybe_fail("list", collection)
        matched = [
            doc
            for doc in self._collections.get(collection, {}).values()
            if all(_matches(doc, f) for f in filters)
        ]
        if order:
            matched.sort(key=functools.cmp_to_key(functools.partial(_compare, order)))
        total = len(matched)
        page = matched[offset:]
        if limit is not None:
            page = page[:limit]
        return DocumentList(documents=[_normalize(doc) for doc in page], total=total)

    # Test helpers ------------------------------------------------------------

    def seed(self, collection: str, document: Document) -> Document:
        """Insert a document as-is, without a change event."""
        stored = _normalize(document)
        doc_id = stored.setdefault("$id", uuid4().hex[:20])
        now = self._now().isoformat()
        stored.setdefault("$createdAt", now)
        stored.setdefault("$updatedAt", now)
        self._sequence += 1
        stored["$sequence"] = self._sequence
        self._collections.setdefault(collection, {})[doc_id] = stored
        return _normalize(stored)

    def documents(self, collection: str) -> builtins.list[Document]:
        return [_normalize(doc) for doc in self._collections.get(collection, {}).values()]

    def fail_next(
        self,
        operation: str,
        collection: str | None = None,
        error: DocumentStoreError | None = None,
    ) -> None:
        """Make the next `operation` (create/get/update/delete/list) fail once."""
        self._failures.append(
            (operation, collection, error or DocumentStoreError("Simulated storage failure", 503))
        )

    # Internals ---------------------------------------------------------------

    def _maybe_fail(self, operation: str, collection: str) -> None:
        for index, (op, target, error) in enumerate(self._failures):
            if op == operation and target in (None, collection):
                del self._failures[index]
                raise error

    def _require(self, collection: str, document_id: str) -> Document:
        document = self._collections.get(collection, {}).get(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document not found: {collection}/{document_id}")
        return document

    def _publish(self, collection: str, document_id: str, kind: EventKind, document: Document) -> None:
        if self.realtime is None:
            return
        channel = documents_channel(self.database_id, collection)
        self.realtime.publish(
            [channel, f"{channel}.{document_id}"],
            document_event_name(self.database_id, collection, document_id, kind),
            document,
        )


def _wire_value(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return value


def _matches(document: Document, condition: Filter) -> bool:
    if condition.op is FilterOp.OR:
        return any(_matches(document, nested) for nested in condition.values)
    actual = document.get(condition.attribute)
    values = [_wire_value(v) for v in condition.values]

    if condition.op is FilterOp.EQUAL:
        if isinstance(actual, list):
            return any(v in actual for v in values)
        return actual in values
    if condition.op is FilterOp.NOT_EQUAL:
        return actual != values[0]
    if condition.op is FilterOp.SEARCH:
        term = str(values[0]).lower()
        if isinstance(actual, list):
            return any(str(item).lower() == term for item in actual)
        return actual is not None and term in str(actual).lower()

    if actual is None:
        return False
    if condition.op is FilterOp.LESS_THAN:
        return actual < values[0]
    if condition.op is FilterOp.LESS_THAN_EQUAL:
        return actual <= values[0]
    if condition.op is FilterOp.GREATER_THAN:
        return actual > values[0]
    return False


def _compare(order: Sequence[OrderBy], left: Document, right: Document) -> int:
    for rule in order:
        a, b = left.get(rule.attribute), right.get(rule.attribute)
        if a == b:
            continue
        if a is None:
            result = -1
        elif b is None:
            result = 1
        else:
            result = -1 if a < b else 1
        return -result if rule.descending else result
    # Ties fall back to insertion order in the direction of the first rule
    result = (left["$sequence"] > right["$sequence"]) - (left["$sequence"] < right["$sequence"])
    return -result if order[0].descending else result
