"""User presence schemas."""

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PresenceStatus(str, Enum):
    ONLINE = "online"
    AWAY = "away"
    BUSY = "busy"
    OFFLINE = "offline"


class UserPresence(BaseModel):
    """Live status of one user. The presence document ID is the user ID."""

    user_id: str
    is_online: bool = False
    last_seen: datetime
    status: PresenceStatus = PresenceStatus.OFFLINE

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
