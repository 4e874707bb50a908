"""Assessment model: one GAR assessment, draft or complete."""

from __future__ import annotations

from typing import Any

from sqlalchemy import JSON, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from gar.models.base import Base


class Assessment(Base):
    """A GAR assessment record.

    Factor scores, mitigations, weather and recipient selection are stored as
    JSON documents; they are always read and written as a whole.
    """

    __tablename__ = "assessments"

    date: Mapped[str] = mapped_column(String(10), nullable=False, index=True)  # YYYY-MM-DD
    time: Mapped[str] = mapped_column(String(5), nullable=False, default="00:00")  # HH:MM
    raw_date: Mapped[str | None] = mapped_column(String(40), nullable=True)
    type: Mapped[str] = mapped_column(String(30), nullable=False, default="Department-wide")
    station: Mapped[str] = mapped_column(String(100), nullable=False, default="All Stations")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="draft", index=True)
    captain: Mapped[str | None] = mapped_column(String(255), nullable=True)
    user_id: Mapped[str | None] = mapped_column(String(128), nullable=True, index=True)

    weather: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    risk_factors: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    mitigations: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)
    notification_recipients: Mapped[dict[str, Any]] = mapped_column(JSON, default=dict)

    # Frozen at publish
    completed_at: Mapped[str | None] = mapped_column(String(40), nullable=True)
    completed_by: Mapped[str | None] = mapped_column(String(255), nullable=True)
    total_score: Mapped[int | None] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    def __repr__(self) -> str:
        return f"<Assessment {self.id[:8]} {self.date} status={self.status}>"
