"""Change notification for stores.

Stores expose plain attributes and call `_notify()` after every mutation.
UI layers subscribe to re-render; the subscription returns its teardown.
"""

from collections.abc import Callable
from typing import Any

from rendezvous.logging import get_logger

logger = get_logger(__name__)

Listener = Callable[[Any], None]


class Observable:
    """Minimal observable mixin: subscribe(listener) -> unsubscribe."""

    def __init__(self) -> None:
        self._listeners: list[Listener] = []

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self)
            except Exception as e:
                logger.error(
                    "store_listener_failed", store=type(self).__name__, error=str(e)
                )
