"""Schemas for GAR assessment endpoints."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from gar.schemas.recipients import RecipientSelection
from gar.schemas.weather import WeatherSnapshot


class RiskLevel(BaseModel):
    """Frozen or live classification of a total score."""

    band: str = Field(..., description="'low', 'moderate' or 'high'")
    level: str
    color: str


class AssessmentView(BaseModel):
    """A full assessment record, as shown read-only or while editing."""

    id: str
    date: str
    time: str
    type: str
    station: str
    status: str
    captain: str | None = None
    user_id: str | None = None
    weather: dict[str, Any] = Field(default_factory=dict)
    risk_factors: dict[str, int]
    mitigations: dict[str, str]
    notification_recipients: RecipientSelection = Field(default_factory=RecipientSelection)
    total_score: int
    risk_level: RiskLevel
    high_risk_factors: list[str] = Field(default_factory=list)
    completed_at: str | None = None
    completed_by: str | None = None
    read_only: bool = True


class AssessmentSummary(BaseModel):
    """One row of the assessment history list."""

    id: str
    date: str
    time: str
    type: str
    station: str
    status: str
    captain: str | None = None
    total_score: int
    risk_level: RiskLevel


class AssessmentListResponse(BaseModel):
    total: int
    today_draft_id: str | None = None
    assessments: list[AssessmentSummary]


class DetailsUpdate(BaseModel):
    """Step 1 edits. Omitted fields are left unchanged in the edit buffer."""

    date: str | None = Field(default=None, pattern=r"^\d{4}-\d{2}-\d{2}$")
    time: str | None = Field(default=None, pattern=r"^\d{2}:\d{2}$")
    type: str | None = None
    station: str | None = None
    weather: WeatherSnapshot | None = None


class RiskFactorUpdate(BaseModel):
    value: int = Field(..., ge=0, le=10)


class MitigationsUpdate(BaseModel):
    mitigations: dict[str, str]


class SessionView(BaseModel):
    """State of an open editing session."""

    assessment_id: str | None
    state: str
    step: int | None
    station_locked: bool
    stations: list[str]
    assessment: dict[str, Any]
    total_score: int
    risk_level: RiskLevel
    high_risk_factors: list[str]
    missing_mitigations: list[str]
    save_error: str | None = None
    notice: str | None = None


class PublishResponse(BaseModel):
    assessment_id: str
    status: str
    total_score: int
    risk_level: RiskLevel
    notifications_attempted: int
    notifications_sent: int
    notification_warning: str | None = None
    message: str
