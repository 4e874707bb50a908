"""Draft records, the one-draft-per-user-per-day rule, and edit permissions."""

from __future__ import annotations

from datetime import date, datetime
from typing import Any, Iterable, Mapping
from zoneinfo import ZoneInfo

import structlog

from gar.services.scoring import (
    RISK_FACTORS,
    band_for_level,
    classify,
    empty_risk_factors,
    total_score,
)

logger = structlog.get_logger()


DEPARTMENT_WIDE = "Department-wide"
MISSION_SPECIFIC = "Mission-specific"
ASSESSMENT_TYPES = [DEPARTMENT_WIDE, MISSION_SPECIFIC]

# Station sentinel meaning "applies to the whole department"
ALL_STATIONS = "All Stations"

STATUS_DRAFT = "draft"
STATUS_COMPLETE = "complete"

# Roles allowed to edit any draft under the restricted policy
EDITOR_ROLES = {"captain", "admin"}
# Roles allowed to modify a published assessment
PRIVILEGED_ROLES = {"admin"}

EMPTY_WEATHER = {
    "temperature": "",
    "temperature_unit": "°F",
    "wind": "",
    "wind_direction": "NW",
    "humidity": "",
    "precipitation": "",
    "precipitation_rate": "",
    "wave_height": "",
    "wave_period": "",
    "wave_direction": "NW",
    "alerts": "",
}


def now_in(tz_name: str) -> datetime:
    return datetime.now(ZoneInfo(tz_name))


def today(tz_name: str) -> str:
    """Today's calendar date in the department's timezone, as YYYY-MM-DD."""
    return now_in(tz_name).date().isoformat()


def station_label(station: Mapping[str, Any]) -> str:
    """Display label for a station record (``Station <number>`` when unnamed)."""
    name = station.get("name")
    if name:
        return str(name)
    number = station.get("number")
    if number is not None:
        return f"Station {number}"
    return f"Station {station.get('id', '')}".strip()


def station_labels(stations: Iterable[Mapping[str, Any]]) -> list[str]:
    labels = [station_label(s) for s in stations]
    return [label for label in labels if label and label != ALL_STATIONS]


def empty_recipients() -> dict[str, list]:
    return {"groups": [], "users": [], "groups_data": [], "users_data": []}


def new_draft_record(now: datetime, author: str, user_id: str) -> dict[str, Any]:
    """Build the initial draft created the moment a user starts an assessment."""
    return {
        "date": now.date().isoformat(),
        "raw_date": now.isoformat(),
        "time": now.strftime("%H:%M"),
        "type": DEPARTMENT_WIDE,
        "station": ALL_STATIONS,
        "status": STATUS_DRAFT,
        "captain": author,
        "user_id": user_id,
        "weather": dict(EMPTY_WEATHER),
        "risk_factors": empty_risk_factors(),
        "mitigations": {name: "" for name in RISK_FACTORS},
        "notification_recipients": empty_recipients(),
    }


def find_today_draft(
    assessments: Iterable[Mapping[str, Any]],
    user_id: str,
    on_date: str | date,
) -> Mapping[str, Any] | None:
    """Return the user's draft dated ``on_date``, if any."""
    day = on_date.isoformat() if isinstance(on_date, date) else on_date
    for assessment in assessments:
        if (
            assessment.get("status") == STATUS_DRAFT
            and assessment.get("date") == day
            and assessment.get("user_id") == user_id
        ):
            return assessment
    return None


def with_ids(records: Iterable[Mapping[str, Any]]) -> list[Mapping[str, Any]]:
    """Drop records without an id, logging each as an anomaly."""
    kept = []
    for record in records:
        if not record.get("id"):
            logger.warning("assessment_missing_id", date=record.get("date"), station=record.get("station"))
            continue
        kept.append(record)
    return kept


def can_view(assessment: Mapping[str, Any], profile: Mapping[str, Any] | None) -> bool:
    """Published assessments are visible to everyone signed in; drafts to editors."""
    if profile is None:
        return False
    if assessment.get("status") == STATUS_COMPLETE:
        return True
    return (
        assessment.get("user_id") == profile.get("id")
        or (profile.get("role") or "").lower() in EDITOR_ROLES
    )


def can_edit(
    assessment: Mapping[str, Any],
    profile: Mapping[str, Any] | None,
    policy: str = "restricted",
) -> bool:
    """Whether ``profile`` may modify ``assessment``.

    ``restricted``: captains and admins may edit any draft, other users only
    their own. ``open``: any signed-in user may edit drafts. Under both
    policies a complete assessment is read-only except for admins.
    """
    if profile is None:
        return False
    role = (profile.get("role") or "").lower()
    if assessment.get("status") == STATUS_COMPLETE:
        return role in PRIVILEGED_ROLES
    if policy == "open":
        return True
    return role in EDITOR_ROLES or assessment.get("user_id") == profile.get("id")


def can_start(profile: Mapping[str, Any] | None, policy: str = "restricted") -> bool:
    if profile is None:
        return False
    if policy == "open":
        return True
    return (profile.get("role") or "").lower() in EDITOR_ROLES


def current_score(assessment: Mapping[str, Any]) -> int:
    """Frozen total for published records, live total for drafts."""
    if assessment.get("status") == STATUS_COMPLETE and assessment.get("total_score") is not None:
        return int(assessment["total_score"])
    return total_score(assessment.get("risk_factors") or {})


def current_band(assessment: Mapping[str, Any]) -> str:
    risk_level = assessment.get("risk_level")
    if assessment.get("status") == STATUS_COMPLETE and isinstance(risk_level, Mapping):
        band = risk_level.get("band") or band_for_level(risk_level.get("level", ""))
        if band:
            return band
    return classify(current_score(assessment)).band


_RISK_FILTERS = {"green": "low", "amber": "moderate", "red": "high"}


def filter_assessments(
    records: Iterable[Mapping[str, Any]],
    status: str = "all",
    risk: str = "all",
    search: str = "",
) -> list[Mapping[str, Any]]:
    """History list filtering: status, risk colour and free text, newest first."""
    term = search.strip().lower()
    results = []
    for record in records:
        record_status = record.get("status")
        if status == "published" and record_status == STATUS_DRAFT:
            continue
        if status == "draft" and record_status != STATUS_DRAFT:
            continue
        if risk in _RISK_FILTERS and current_band(record) != _RISK_FILTERS[risk]:
            continue
        if term:
            haystack = " ".join(
                str(record.get(key) or "") for key in ("station", "captain", "type", "date")
            ).lower()
            if term not in haystack:
                continue
        results.append(record)
    results.sort(key=lambda r: (r.get("date") or "", r.get("time") or ""), reverse=True)
    return results
