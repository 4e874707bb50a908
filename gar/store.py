"""In-memory data store for the GAR service.

Implements the assessment repository and weather cache contracts for
development and testing. In production the SQL repository is used instead.
"""

from __future__ import annotations

import copy
import uuid
from datetime import datetime, timezone
from typing import Any

from gar.errors import NotFoundError


class DataStore:
    """In-memory repository for development and testing."""

    def __init__(self) -> None:
        self.assessments: dict[str, dict[str, Any]] = {}
        self.stations: list[dict[str, Any]] = []
        self.users: dict[str, dict[str, Any]] = {}
        self.audit_log: list[dict[str, Any]] = []
        self.weather_cache: tuple[dict[str, Any], datetime] | None = None

    def reset(self) -> None:
        """Clear all data (used in tests)."""
        self.__init__()

    def add_station(self, name: str, number: int | None = None) -> dict[str, Any]:
        """Add a station to the directory."""
        station = {"id": str(uuid.uuid4()), "number": number, "name": name}
        self.stations.append(station)
        return station

    def add_user(self, user_id: str, data: dict[str, Any]) -> None:
        """Add or update a user in the directory."""
        profile = {"status": "active", **data, "id": user_id}
        self.users[user_id] = profile

    # ── Assessment repository ─────────────────────────────────────────────

    async def create_assessment(self, data: dict[str, Any]) -> dict[str, Any]:
        """Store a new assessment and return it with its assigned id."""
        assessment_id = str(uuid.uuid4())
        now = datetime.now(timezone.utc).isoformat()
        record = {**copy.deepcopy(data), "id": assessment_id, "created_at": now, "updated_at": now}
        self.assessments[assessment_id] = record
        return copy.deepcopy(record)

    async def update_assessment(self, assessment_id: str, data: dict[str, Any]) -> None:
        """Merge ``data`` into an existing assessment (last write wins)."""
        if assessment_id not in self.assessments:
            raise NotFoundError()
        changes = {k: copy.deepcopy(v) for k, v in data.items() if k != "id"}
        self.assessments[assessment_id].update(changes)
        self.assessments[assessment_id]["updated_at"] = datetime.now(timezone.utc).isoformat()

    async def delete_assessment(self, assessment_id: str, audit_meta: dict[str, Any]) -> None:
        """Delete an assessment and record who did it."""
        if assessment_id not in self.assessments:
            raise NotFoundError()
        del self.assessments[assessment_id]
        self.audit_log.append({
            "action": "delete_assessment",
            "entity_id": assessment_id,
            "actor_id": audit_meta.get("user_id"),
            "actor_email": audit_meta.get("user_email"),
            "actor_name": audit_meta.get("user_display_name"),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        })

    async def get_assessment(self, assessment_id: str) -> dict[str, Any] | None:
        record = self.assessments.get(assessment_id)
        return copy.deepcopy(record) if record is not None else None

    async def get_all_assessments(self) -> list[dict[str, Any]]:
        return [copy.deepcopy(r) for r in self.assessments.values()]

    async def get_stations(self) -> list[dict[str, Any]]:
        return [dict(s) for s in self.stations]

    async def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        profile = self.users.get(user_id)
        return dict(profile) if profile is not None else None

    async def get_all_users(self) -> list[dict[str, Any]]:
        return [dict(u) for u in self.users.values()]

    # ── Weather cache ─────────────────────────────────────────────────────

    async def load_weather_cache(self) -> tuple[dict[str, Any], datetime] | None:
        if self.weather_cache is None:
            return None
        snapshot, fetched_at = self.weather_cache
        return copy.deepcopy(snapshot), fetched_at

    async def save_weather_cache(self, snapshot: dict[str, Any], fetched_at: datetime) -> None:
        self.weather_cache = (copy.deepcopy(snapshot), fetched_at)


# Global singleton, reset between tests
data_store = DataStore()
