"""Audit and cache models."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column

from gar.models.base import Base


class AuditEntry(Base):
    """Who deleted (or otherwise touched) which assessment, and when."""

    __tablename__ = "audit_log"

    action: Mapped[str] = mapped_column(String(50), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    actor_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    actor_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    def __repr__(self) -> str:
        return f"<AuditEntry {self.action} {self.entity_id[:8]}>"


class WeatherCacheEntry(Base):
    """The last formatted weather snapshot shared by all sessions."""

    __tablename__ = "weather_cache"

    snapshot: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False)
    fetched_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
