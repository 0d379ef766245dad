"""Call session schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CallType(str, Enum):
    VOICE = "voice"
    VIDEO = "video"

    @property
    def label(self) -> str:
        return "Video" if self is CallType.VIDEO else "Voice"


class CallStatus(str, Enum):
    """pending -> active -> ended, or pending -> ended | rejected."""

    PENDING = "pending"
    ACTIVE = "active"
    ENDED = "ended"
    REJECTED = "rejected"


class CallSession(BaseModel):
    """A voice or video call between the two conversation participants.

    `duration` is whole seconds and is only recorded when a call ends from
    the active state.
    """

    id: str | None = Field(default=None, alias="$id")
    conversation_id: str
    caller_id: str
    receiver_id: str
    type: CallType
    status: CallStatus = CallStatus.PENDING
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int | None = None
    created_at: datetime | None = Field(default=None, alias="$createdAt")

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def other_party(self, user_id: str) -> str:
        return self.receiver_id if self.caller_id == user_id else self.caller_id

    def involves(self, user_id: str) -> bool:
        return user_id in (self.caller_id, self.receiver_id)

    @property
    def was_answered(self) -> bool:
        return self.started_at is not None
