"""Schemas for notification recipient selection and resolution."""

from __future__ import annotations

from pydantic import BaseModel, Field


class RecipientSelection(BaseModel):
    """Groups and individual users chosen to be notified on publish.

    ``groups_data`` and ``users_data`` are display copies for the UI; the id
    lists are the only input to recipient resolution.
    """

    groups: list[str] = Field(default_factory=list)
    users: list[str] = Field(default_factory=list)
    groups_data: list[dict] = Field(default_factory=list)
    users_data: list[dict] = Field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.groups and not self.users


class NotificationRecipient(BaseModel):
    """A resolved, notifiable user."""

    id: str
    email: str
    display_name: str
    station: str | None = None
    role: str | None = None


class RecipientGroup(BaseModel):
    id: str
    name: str
    description: str


class RecipientPreviewResponse(BaseModel):
    total: int
    recipients: list[NotificationRecipient]
