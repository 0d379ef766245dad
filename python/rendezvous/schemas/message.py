"""Message schemas.

Messages are documents in the messages collection. In memory `content` is
always plaintext; on the wire it is ciphertext whenever `is_encrypted` is set.

Fields marked `exclude=True` are local state only and are never written back:
- reactions / reactions_raw: derived from the encoded `reactions` attribute
- sending_state / is_temp / temp_id / error: optimistic-send bookkeeping
"""

from datetime import datetime, timedelta
from enum import Enum, IntEnum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class AutoDeletePeriod(IntEnum):
    """Message retention periods, in minutes."""

    IMMEDIATE = 0
    FIVE_MINUTES = 5
    ONE_HOUR = 60
    ONE_DAY = 1440
    ONE_WEEK = 10080
    NEVER = -1


class MessageType(str, Enum):
    TEXT = "text"
    IMAGE = "image"
    VIDEO = "video"
    FILE = "file"
    VOICE = "voice"
    CALL_REQUEST = "call_request"
    SYSTEM = "system"


class SendingState(str, Enum):
    """Optimistic send state: sending -> sent | failed, failed -> sending."""

    SENDING = "sending"
    SENT = "sent"
    FAILED = "failed"


class Attachment(BaseModel):
    """Uploaded media referenced by a message."""

    url: str
    mime_type: str = ""
    size: int = 0


class Message(BaseModel):
    """A single message in a two-party conversation."""

    id: str | None = Field(default=None, alias="$id")
    conversation_id: str
    sender_id: str
    receiver_id: str
    content: str = ""
    type: MessageType = MessageType.TEXT
    is_encrypted: bool = False
    auto_delete_period: int = AutoDeletePeriod.NEVER
    auto_delete_at: datetime | None = None
    is_read: bool = False
    delivered_at: datetime | None = None
    read_at: datetime | None = None
    attachment_url: str | None = None
    attachment_type: str | None = None
    attachment_size: int | None = None
    reply_to: str | None = None
    created_at: datetime | None = Field(default=None, alias="$createdAt")
    updated_at: datetime | None = Field(default=None, alias="$updatedAt")

    # Local-only state
    reactions: dict[str, int] = Field(default_factory=dict, exclude=True)
    reactions_raw: dict[str, list[str]] = Field(default_factory=dict, exclude=True)
    sending_state: SendingState | None = Field(default=None, exclude=True)
    is_temp: bool = Field(default=False, exclude=True)
    temp_id: str | None = Field(default=None, exclude=True)
    error: str | None = Field(default=None, exclude=True)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @property
    def key(self) -> str | None:
        """The identifier currently active for this entry (server or temp)."""
        return self.id or self.temp_id

    def matches(self, identifier: str | None) -> bool:
        """True if identifier is this message's server ID or temp ID."""
        if not identifier:
            return False
        return identifier == self.id or identifier == self.temp_id

    def is_expired(self, now: datetime) -> bool:
        return self.auto_delete_at is not None and self.auto_delete_at <= now

    @property
    def preview(self) -> str:
        """Short text for notifications and conversation lists."""
        if self.type == MessageType.TEXT:
            return self.content[:100]
        return f"Sent a {self.type.value}"


def compute_auto_delete_at(period: int, now: datetime) -> datetime | None:
    """Absolute deletion time for a retention period.

    immediate -> now, never -> None, otherwise now + period minutes.
    """
    if period == AutoDeletePeriod.NEVER or period < 0:
        return None
    if period == AutoDeletePeriod.IMMEDIATE:
        return now
    return now + timedelta(minutes=period)
