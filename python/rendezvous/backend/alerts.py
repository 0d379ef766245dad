"""Alert sink that records alerts to the structured log.

Used headless (tests, CLI tools) where there is no OS notification or
audio playback.
"""

from typing import Any

from rendezvous.backend.base import AlertSink
from rendezvous.logging import get_logger
from rendezvous.schemas.call import CallSession

logger = get_logger(__name__)


class LoggingAlertSink(AlertSink):
    def __init__(self):
        self.ringing = False

    def show_notification(self, title: str, body: str, data: dict[str, Any] | None = None) -> None:
        # Body may be message plaintext
        logger.info("alert_notification", title=title, has_body=bool(body))

    def show_call_notification(self, call: CallSession, caller_name: str) -> None:
        logger.info(
            "alert_incoming_call",
            call_id=call.id,
            call_type=call.type.value,
            caller_name=caller_name,
            actions=["answer", "decline"],
        )

    def play_notification_sound(self) -> None:
        logger.debug("alert_sound")

    def start_ringtone(self) -> None:
        self.ringing = True
        logger.debug("alert_ringtone_started")

    def stop_ringtone(self) -> None:
        if self.ringing:
            logger.debug("alert_ringtone_stopped")
        self.ringing = False
