"""Assessment Repository contract and its SQLAlchemy implementation.

The lifecycle engine only talks to the :class:`AssessmentRepository`
protocol. Records cross the boundary as plain dicts; every record returned
carries its ``id``. Writes are last-write-wins: there is no version check.
"""

from __future__ import annotations

import asyncio
import copy
from datetime import datetime
from typing import Any, Protocol

import structlog
from sqlalchemy import create_engine, select
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from gar.errors import NotFoundError
from gar.models import Assessment, AuditEntry, Base, Station, User, WeatherCacheEntry

logger = structlog.get_logger()


ASSESSMENT_FIELDS = [
    "date",
    "time",
    "raw_date",
    "type",
    "station",
    "status",
    "captain",
    "user_id",
    "weather",
    "risk_factors",
    "mitigations",
    "notification_recipients",
    "completed_at",
    "completed_by",
    "total_score",
    "risk_level",
]


class AssessmentRepository(Protocol):
    """Persistence interface consumed by the lifecycle engine."""

    async def create_assessment(self, data: dict[str, Any]) -> dict[str, Any]: ...

    async def update_assessment(self, assessment_id: str, data: dict[str, Any]) -> None: ...

    async def delete_assessment(self, assessment_id: str, audit_meta: dict[str, Any]) -> None: ...

    async def get_assessment(self, assessment_id: str) -> dict[str, Any] | None: ...

    async def get_all_assessments(self) -> list[dict[str, Any]]: ...

    async def get_stations(self) -> list[dict[str, Any]]: ...

    async def get_user_profile(self, user_id: str) -> dict[str, Any] | None: ...

    async def get_all_users(self) -> list[dict[str, Any]]: ...


class WeatherCache(Protocol):
    """Shared storage for the last formatted weather snapshot."""

    async def load_weather_cache(self) -> tuple[dict[str, Any], datetime] | None: ...

    async def save_weather_cache(self, snapshot: dict[str, Any], fetched_at: datetime) -> None: ...


def _assessment_to_record(row: Assessment) -> dict[str, Any]:
    record = {"id": row.id}
    for field in ASSESSMENT_FIELDS:
        record[field] = copy.deepcopy(getattr(row, field))
    return record


def _user_to_profile(row: User) -> dict[str, Any]:
    return {
        "id": row.id,
        "email": row.email,
        "display_name": row.display_name,
        "role": row.role,
        "station": row.station,
        "status": row.status,
    }


class SqlAssessmentRepository:
    """Repository backed by SQLAlchemy ORM sessions.

    SQLAlchemy work is blocking, so every public coroutine hands it to a
    worker thread.
    """

    def __init__(self, engine: Engine) -> None:
        self.engine = engine
        self._sessions = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

    @classmethod
    def from_url(cls, database_url: str, create_schema: bool = False) -> "SqlAssessmentRepository":
        engine = create_engine(database_url, pool_pre_ping=True, future=True)
        if create_schema:
            Base.metadata.create_all(engine)
        return cls(engine)

    # ── Assessments ───────────────────────────────────────────────────────

    async def create_assessment(self, data: dict[str, Any]) -> dict[str, Any]:
        return await asyncio.to_thread(self._create_assessment, data)

    def _create_assessment(self, data: dict[str, Any]) -> dict[str, Any]:
        with self._sessions() as session, session.begin():
            row = Assessment(**{k: copy.deepcopy(v) for k, v in data.items() if k in ASSESSMENT_FIELDS})
            session.add(row)
            session.flush()
            record = _assessment_to_record(row)
        logger.info("assessment_created", assessment_id=record["id"], status=record["status"])
        return record

    async def update_assessment(self, assessment_id: str, data: dict[str, Any]) -> None:
        await asyncio.to_thread(self._update_assessment, assessment_id, data)

    def _update_assessment(self, assessment_id: str, data: dict[str, Any]) -> None:
        with self._sessions() as session, session.begin():
            row = session.get(Assessment, assessment_id)
            if row is None:
                raise NotFoundError()
            for field, value in data.items():
                if field in ASSESSMENT_FIELDS:
                    setattr(row, field, copy.deepcopy(value))

    async def delete_assessment(self, assessment_id: str, audit_meta: dict[str, Any]) -> None:
        await asyncio.to_thread(self._delete_assessment, assessment_id, audit_meta)

    def _delete_assessment(self, assessment_id: str, audit_meta: dict[str, Any]) -> None:
        with self._sessions() as session, session.begin():
            row = session.get(Assessment, assessment_id)
            if row is None:
                raise NotFoundError()
            session.delete(row)
            session.add(AuditEntry(
                action="delete_assessment",
                entity_id=assessment_id,
                actor_id=audit_meta.get("user_id"),
                actor_email=audit_meta.get("user_email"),
                actor_name=audit_meta.get("user_display_name"),
            ))
        logger.info("assessment_deleted", assessment_id=assessment_id, actor_id=audit_meta.get("user_id"))

    async def get_assessment(self, assessment_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_assessment, assessment_id)

    def _get_assessment(self, assessment_id: str) -> dict[str, Any] | None:
        with self._sessions() as session:
            row = session.get(Assessment, assessment_id)
            return _assessment_to_record(row) if row is not None else None

    async def get_all_assessments(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._get_all_assessments)

    def _get_all_assessments(self) -> list[dict[str, Any]]:
        with self._sessions() as session:
            rows = session.scalars(select(Assessment).order_by(Assessment.date.desc(), Assessment.time.desc()))
            return [_assessment_to_record(row) for row in rows]

    # ── Directory ─────────────────────────────────────────────────────────

    async def get_stations(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._get_stations)

    def _get_stations(self) -> list[dict[str, Any]]:
        with self._sessions() as session:
            rows = session.scalars(select(Station).order_by(Station.number, Station.name))
            return [{"id": s.id, "number": s.number, "name": s.name} for s in rows]

    async def get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._get_user_profile, user_id)

    def _get_user_profile(self, user_id: str) -> dict[str, Any] | None:
        with self._sessions() as session:
            row = session.get(User, user_id)
            return _user_to_profile(row) if row is not None else None

    async def get_all_users(self) -> list[dict[str, Any]]:
        return await asyncio.to_thread(self._get_all_users)

    def _get_all_users(self) -> list[dict[str, Any]]:
        with self._sessions() as session:
            rows = session.scalars(select(User).order_by(User.email))
            return [_user_to_profile(row) for row in rows]

    def add_station(self, name: str, number: int | None = None) -> str:
        with self._sessions() as session, session.begin():
            row = Station(name=name, number=number)
            session.add(row)
            session.flush()
            return row.id

    def add_user(self, **fields: Any) -> str:
        with self._sessions() as session, session.begin():
            row = User(**fields)
            session.add(row)
            session.flush()
            return row.id

    def audit_entries(self, assessment_id: str) -> list[dict[str, Any]]:
        with self._sessions() as session:
            rows = session.scalars(select(AuditEntry).where(AuditEntry.entity_id == assessment_id))
            return [
                {"action": r.action, "actor_id": r.actor_id, "actor_email": r.actor_email}
                for r in rows
            ]

    # ── Weather cache ─────────────────────────────────────────────────────

    async def load_weather_cache(self) -> tuple[dict[str, Any], datetime] | None:
        return await asyncio.to_thread(self._load_weather_cache)

    def _load_weather_cache(self) -> tuple[dict[str, Any], datetime] | None:
        with self._sessions() as session:
            row = session.scalars(
                select(WeatherCacheEntry).order_by(WeatherCacheEntry.fetched_at.desc()).limit(1)
            ).first()
            if row is None:
                return None
            return copy.deepcopy(row.snapshot), row.fetched_at

    async def save_weather_cache(self, snapshot: dict[str, Any], fetched_at: datetime) -> None:
        await asyncio.to_thread(self._save_weather_cache, snapshot, fetched_at)

    def _save_weather_cache(self, snapshot: dict[str, Any], fetched_at: datetime) -> None:
        with self._sessions() as session, session.begin():
            for row in session.scalars(select(WeatherCacheEntry)):
                session.delete(row)
            session.add(WeatherCacheEntry(snapshot=copy.deepcopy(snapshot), fetched_at=fetched_at))
