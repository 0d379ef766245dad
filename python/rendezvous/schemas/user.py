"""Authenticated user schema supplied by the identity provider."""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class User(BaseModel):
    """The signed-in account as reported by the auth provider.

    `prefs` carries account preferences such as `userType` and
    `hasEscortProfile`, which drive role resolution.
    """

    id: str = Field(alias="$id")
    name: str = ""
    email: str = ""
    labels: list[str] = Field(default_factory=list)
    prefs: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(populate_by_name=True)
