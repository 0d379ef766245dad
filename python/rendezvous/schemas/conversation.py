"""Conversation schemas.

A conversation is a two-party thread. `participant_roles` and
`unread_count` are stored as JSON strings by the document database and are
parsed back into mappings on load.
"""

import json
from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from rendezvous.schemas.message import AutoDeletePeriod, Message


class Role(str, Enum):
    """Marketplace roles that drive conversation access control."""

    CLIENT = "client"
    ESCORT = "escort"
    SUPPORT = "support"


class ConversationType(str, Enum):
    CLIENT_ESCORT = "client_escort"
    CLIENT_SUPPORT = "client_support"
    ESCORT_SUPPORT = "escort_support"


class Conversation(BaseModel):
    """A two-party messaging thread with a derived shared key.

    `last_message` is a local cache of the newest message and is never
    written; `last_message_id` is the persisted pointer.
    """

    id: str | None = Field(default=None, alias="$id")
    participants: list[str]
    participant_roles: dict[str, Role] = Field(default_factory=dict)
    initiated_by: str
    conversation_type: ConversationType
    last_message_id: str | None = None
    last_activity: datetime
    unread_count: dict[str, int] = Field(default_factory=dict)
    encryption_key: str = ""
    auto_delete_period: int = AutoDeletePeriod.NEVER
    is_archived: bool = False
    created_at: datetime | None = Field(default=None, alias="$createdAt")
    updated_at: datetime | None = Field(default=None, alias="$updatedAt")

    last_message: Message | None = Field(default=None, exclude=True)

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    @field_validator("participants")
    @classmethod
    def _exactly_two_participants(cls, value: list[str]) -> list[str]:
        if len(value) != 2 or value[0] == value[1]:
            raise ValueError("a conversation has exactly two distinct participants")
        return sorted(value)

    @field_validator("participant_roles", mode="before")
    @classmethod
    def _parse_roles(cls, value: Any) -> Any:
        if isinstance(value, str):
            return json.loads(value) if value else {}
        return value

    @field_validator("unread_count", mode="before")
    @classmethod
    def _parse_unread(cls, value: Any) -> Any:
        if value is None:
            return {}
        if isinstance(value, str):
            try:
                parsed = json.loads(value) if value else {}
            except json.JSONDecodeError:
                return {}
            return parsed if isinstance(parsed, dict) else {}
        return value

    def has_participant(self, user_id: str) -> bool:
        return user_id in self.participants

    def other_participant_id(self, user_id: str) -> str | None:
        """The participant who is not user_id."""
        for participant in self.participants:
            if participant != user_id:
                return participant
        return None

    def role_of(self, user_id: str) -> Role | None:
        return self.participant_roles.get(user_id)

    def to_document(self) -> dict[str, Any]:
        """Serialize for a create/update write.

        Mappings are JSON-encoded to match the collection's string attributes.
        """
        data = self.model_dump(
            by_alias=True,
            mode="json",
            exclude={"id", "created_at", "updated_at"},
        )
        data["participantRoles"] = json.dumps(
            {user_id: role.value for user_id, role in self.participant_roles.items()}
        )
        data["unreadCount"] = json.dumps(self.unread_count)
        return data
