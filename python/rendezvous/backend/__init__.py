"""Backend collaborators: contracts and shipped implementations."""

from rendezvous.backend.base import (
    AlertSink,
    Document,
    DocumentList,
    DocumentNotFoundError,
    DocumentStore,
    DocumentStoreError,
    EntitlementChecker,
    EventKind,
    FeatureAccess,
    Filter,
    FilterOp,
    IdentityProvider,
    LifecycleHooks,
    Notifier,
    OrderBy,
    RealtimeEvent,
    RealtimeTransport,
    documents_channel,
)

__all__ = [
    "AlertSink",
    "Document",
    "DocumentList",
    "DocumentNotFoundError",
    "DocumentStore",
    "DocumentStoreError",
    "EntitlementChecker",
    "EventKind",
    "FeatureAccess",
    "Filter",
    "FilterOp",
    "IdentityProvider",
    "LifecycleHooks",
    "Notifier",
    "OrderBy",
    "RealtimeEvent",
    "RealtimeTransport",
    "documents_channel",
]
