"""Assessment State Machine: the four-step GAR draft wizard and publish.

A session owns one assessment. Step-1 details and step-3 mitigation text
are edited in an :class:`EditBuffer` and only flushed into the assessment
at defined points (leaving a step, manual save, publish). Risk factor
scores and the recipient selection are applied to the assessment directly.

Persistence policy:

- step transitions and manual saves are optimistic: a failed save is
  logged and reported on the result, navigation still happens and the data
  stays in memory for the next save;
- discard logs and ignores a failed delete;
- publish is the only blocking write: if the ``complete`` record cannot be
  written the session stays on the review step and the assessment stays a
  draft. Notification failures after a successful write are soft warnings.
"""

from __future__ import annotations

import asyncio
import copy
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Callable, Mapping

import structlog

from gar.errors import (
    DraftExistsError,
    InvalidTransitionError,
    NoStationsError,
    PermissionDeniedError,
    PersistenceError,
    PublishError,
    ValidationError,
)
from gar.repository import AssessmentRepository
from gar.schemas.recipients import RecipientSelection
from gar.services.drafts import (
    ALL_STATIONS,
    ASSESSMENT_TYPES,
    DEPARTMENT_WIDE,
    MISSION_SPECIFIC,
    STATUS_COMPLETE,
    STATUS_DRAFT,
    can_edit,
    can_start,
    find_today_draft,
    new_draft_record,
    now_in,
    station_labels,
    with_ids,
)
from gar.services.notifications import DispatchResult, NotificationDispatcher
from gar.services.scoring import (
    FACTOR_LABELS,
    RISK_FACTORS,
    RiskClassification,
    classify,
    high_risk_factors,
    missing_mitigations,
    total_score,
    validate_factor,
)
from gar.services.weather import WeatherService

logger = structlog.get_logger()


class SessionState(str, Enum):
    NOT_STARTED = "not_started"
    DETAILS = "details"
    RISK_FACTORS = "risk_factors"
    MITIGATION = "mitigation"
    REVIEW = "review"
    PUBLISHING = "publishing"
    PUBLISHED = "published"
    DISCARDED = "discarded"


STEPS = [
    SessionState.DETAILS,
    SessionState.RISK_FACTORS,
    SessionState.MITIGATION,
    SessionState.REVIEW,
]

TERMINAL_STATES = {SessionState.PUBLISHED, SessionState.DISCARDED}

# Record fields that are never written back through update
_SERVER_FIELDS = {"id", "created_at", "updated_at"}


@dataclass
class Actor:
    """The signed-in user driving a session."""

    id: str
    display_name: str = "Captain"
    email: str | None = None
    role: str | None = None

    @classmethod
    def from_profile(cls, profile: Mapping[str, Any]) -> "Actor":
        return cls(
            id=str(profile["id"]),
            display_name=profile.get("display_name") or "Captain",
            email=profile.get("email"),
            role=profile.get("role"),
        )

    def as_profile(self) -> dict[str, Any]:
        return {"id": self.id, "role": self.role, "email": self.email, "display_name": self.display_name}

    def audit_meta(self) -> dict[str, Any]:
        return {"user_id": self.id, "user_email": self.email, "user_display_name": self.display_name}


@dataclass
class EditBuffer:
    """Form fields being edited; flushed into the assessment explicitly."""

    date: str
    time: str
    type: str
    station: str
    weather: dict[str, Any] = field(default_factory=dict)
    mitigations: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: Mapping[str, Any]) -> "EditBuffer":
        mitigations = record.get("mitigations") or {}
        return cls(
            date=record.get("date", ""),
            time=record.get("time", ""),
            type=record.get("type", DEPARTMENT_WIDE),
            station=record.get("station", ALL_STATIONS),
            weather=copy.deepcopy(record.get("weather") or {}),
            mitigations={name: mitigations.get(name, "") or "" for name in RISK_FACTORS},
        )

    def details(self) -> dict[str, Any]:
        return {
            "date": self.date,
            "time": self.time,
            "type": self.type,
            "station": self.station,
            "weather": copy.deepcopy(self.weather),
        }


@dataclass
class TransitionResult:
    state: SessionState
    step: int | None
    save_error: str | None = None


@dataclass
class PublishResult:
    assessment_id: str
    total_score: int
    risk_level: RiskClassification
    dispatch: DispatchResult | None = None
    notification_warning: str | None = None

    @property
    def message(self) -> str:
        text = f"GAR Assessment published with risk level: {self.risk_level.level} and score: {self.total_score}"
        if self.notification_warning:
            return f"{text}. Note: {self.notification_warning} The assessment was still published successfully."
        if self.dispatch is not None and self.dispatch.attempted:
            return f"{text}. Email notifications have been sent to selected recipients."
        return text


def _valid_date(value: str) -> bool:
    try:
        datetime.strptime(value, "%Y-%m-%d")
    except (TypeError, ValueError):
        return False
    return True


def _valid_time(value: str) -> bool:
    try:
        datetime.strptime(value, "%H:%M")
    except (TypeError, ValueError):
        return False
    return len(value) == 5


class AssessmentSession:
    """One user's editing flow for one assessment."""

    def __init__(
        self,
        repository: AssessmentRepository,
        actor: Actor,
        *,
        weather: WeatherService | None = None,
        dispatcher: NotificationDispatcher | None = None,
        timezone: str = "America/Los_Angeles",
        scheme: str = "risk",
        edit_policy: str = "restricted",
        save_timeout: float = 15.0,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.repository = repository
        self.actor = actor
        self.weather = weather
        self.dispatcher = dispatcher
        self.timezone = timezone
        self.scheme = scheme
        self.edit_policy = edit_policy
        self.save_timeout = save_timeout
        self.clock = clock or (lambda: now_in(timezone))

        self.state = SessionState.NOT_STARTED
        self.assessment: dict[str, Any] = {}
        self.assessment_id: str | None = None
        self.buffer: EditBuffer | None = None
        self.stations: list[str] = []
        self.last_save_error: str | None = None

    # ── Derived values (recomputed on every read) ─────────────────────────

    @property
    def step(self) -> int | None:
        if self.state in STEPS:
            return STEPS.index(self.state) + 1
        return None

    @property
    def station_locked(self) -> bool:
        return self.buffer is not None and self.buffer.type == DEPARTMENT_WIDE

    @property
    def total_score(self) -> int:
        return total_score(self.assessment.get("risk_factors") or {})

    @property
    def risk_level(self) -> RiskClassification:
        return classify(self.total_score, self.scheme)

    @property
    def high_risk_factors(self) -> list[str]:
        return high_risk_factors(self.assessment.get("risk_factors") or {})

    @property
    def missing_mitigations(self) -> list[str]:
        mitigations = self.buffer.mitigations if self.buffer else self.assessment.get("mitigations") or {}
        return missing_mitigations(self.assessment.get("risk_factors") or {}, mitigations)

    def snapshot(self) -> dict[str, Any]:
        """The assessment as it would be saved right now."""
        record = copy.deepcopy(self.assessment)
        if self.buffer is not None:
            record.update(self.buffer.details())
            record["mitigations"] = dict(self.buffer.mitigations)
        return record

    # ── Entry points ──────────────────────────────────────────────────────

    async def start(self) -> TransitionResult:
        """Create today's draft and open step 1.

        Blocked when the user already has a draft dated today or when no
        station exists. The draft is persisted before returning so the
        session has an id from step 1 onwards.
        """
        self._require(SessionState.NOT_STARTED)
        if not can_start(self.actor.as_profile(), self.edit_policy):
            raise PermissionDeniedError("You do not have permission to create assessments.")

        now = self.clock()
        today = now.date().isoformat()

        try:
            existing = with_ids(await self.repository.get_all_assessments())
        except Exception as exc:
            logger.error("draft_check_failed", user_id=self.actor.id, error=str(exc))
            raise PersistenceError("Error checking for existing drafts. Please try again.") from exc
        draft = find_today_draft(existing, self.actor.id, today)
        if draft is not None:
            logger.info("draft_already_exists", user_id=self.actor.id, draft_id=draft.get("id"))
            raise DraftExistsError(draft_id=draft.get("id"))

        stations = await self._load_stations()
        if not stations:
            logger.warning("no_stations_configured", user_id=self.actor.id)
            raise NoStationsError()

        record = new_draft_record(now, self.actor.display_name, self.actor.id)
        try:
            created = await asyncio.wait_for(self.repository.create_assessment(record), self.save_timeout)
        except Exception as exc:
            logger.error("draft_create_failed", user_id=self.actor.id, error=str(exc))
            raise PersistenceError("Error creating assessment. Please try again.") from exc
        if not created or not created.get("id"):
            logger.error("draft_create_returned_no_id", user_id=self.actor.id)
            raise PersistenceError("Failed to create assessment draft. Please try again.")

        self.stations = stations
        self.assessment = dict(created)
        self.assessment_id = created["id"]
        self.buffer = EditBuffer.from_record(created)
        self.state = SessionState.DETAILS
        logger.info("draft_created", assessment_id=self.assessment_id, user_id=self.actor.id, date=today)

        save_error = None
        snapshot = await self._fetch_weather()
        if snapshot is not None:
            self.buffer.weather = snapshot
            self.assessment["weather"] = copy.deepcopy(snapshot)
            save_error = await self._persist()
        return self._result(save_error)

    async def resume(self, record: Mapping[str, Any], fetch_weather: bool = True) -> TransitionResult:
        """Continue an existing draft from step 1.

        Blank weather is filled from the provider unless ``fetch_weather``
        is false.
        """
        self._require(SessionState.NOT_STARTED)
        if not record.get("id"):
            raise ValidationError("The draft to resume has no id.")
        if record.get("status") != STATUS_DRAFT:
            raise InvalidTransitionError("Published assessments are read-only.")
        if not can_edit(record, self.actor.as_profile(), self.edit_policy):
            raise PermissionDeniedError()

        self.stations = await self._load_stations()
        self.assessment = copy.deepcopy(dict(record))
        self.assessment_id = record["id"]
        self.assessment.setdefault("notification_recipients", RecipientSelection().model_dump())
        self.buffer = EditBuffer.from_record(record)
        self.state = SessionState.DETAILS
        logger.info("draft_resumed", assessment_id=self.assessment_id, user_id=self.actor.id)

        if fetch_weather and not (self.buffer.weather or {}).get("temperature"):
            snapshot = await self._fetch_weather()
            if snapshot is not None:
                self.buffer.weather = snapshot
        return self._result()

    async def refresh_weather(self) -> dict[str, Any] | None:
        """Force-refresh step-1 weather fields in the buffer."""
        self._require(SessionState.DETAILS)
        snapshot = await self._fetch_weather(force_refresh=True)
        if snapshot is not None:
            self.buffer.weather = snapshot
        return snapshot

    # ── Step 1: details ───────────────────────────────────────────────────

    def set_type(self, value: str) -> None:
        """Set the assessment type, keeping station consistent with it."""
        self._require(SessionState.DETAILS)
        if value not in ASSESSMENT_TYPES:
            raise ValidationError(f"Assessment type must be one of: {', '.join(ASSESSMENT_TYPES)}.")
        if value == DEPARTMENT_WIDE:
            self.buffer.type = DEPARTMENT_WIDE
            self.buffer.station = ALL_STATIONS
            return
        if self.buffer.station == ALL_STATIONS or self.buffer.station not in self.stations:
            if not self.stations:
                raise NoStationsError()
            self.buffer.station = self.stations[0]
        self.buffer.type = MISSION_SPECIFIC

    def set_station(self, value: str) -> None:
        """Set the station, keeping type consistent with it.

        ``All Stations`` makes the assessment department-wide. A concrete
        station is only editable while the type is mission-specific.
        """
        self._require(SessionState.DETAILS)
        if value == ALL_STATIONS:
            self.buffer.station = ALL_STATIONS
            self.buffer.type = DEPARTMENT_WIDE
            return
        if value not in self.stations:
            raise ValidationError(f"Unknown station: {value}.")
        if self.station_locked:
            raise InvalidTransitionError(
                "Station cannot be changed for a Department-wide assessment. Switch the type to Mission-specific first."
            )
        self.buffer.station = value
        self.buffer.type = MISSION_SPECIFIC

    def set_date(self, value: str) -> None:
        self._require(SessionState.DETAILS)
        if not _valid_date(value):
            raise ValidationError("Date must be in YYYY-MM-DD format.")
        self.buffer.date = value

    def set_time(self, value: str) -> None:
        self._require(SessionState.DETAILS)
        if not _valid_time(value):
            raise ValidationError("Time must be in HH:MM format.")
        self.buffer.time = value

    def set_weather(self, weather: Mapping[str, Any]) -> None:
        self._require(SessionState.DETAILS)
        self.buffer.weather = {**self.buffer.weather, **dict(weather)}

    def update_details(
        self,
        *,
        date: str | None = None,
        time: str | None = None,
        type: str | None = None,
        station: str | None = None,
        weather: Mapping[str, Any] | None = None,
    ) -> None:
        """Apply several step-1 edits at once; all or nothing.

        Type is applied before station. A type and station that contradict
        each other are rejected.
        """
        self._require(SessionState.DETAILS)
        if type is not None and station is not None:
            if (type == DEPARTMENT_WIDE) != (station == ALL_STATIONS):
                raise ValidationError(
                    f"{type} assessments cannot use station {station}. "
                    f"Department-wide assessments cover {ALL_STATIONS}."
                )

        saved = copy.deepcopy(self.buffer)
        try:
            if date is not None:
                self.set_date(date)
            if time is not None:
                self.set_time(time)
            if type is not None:
                self.set_type(type)
            if station is not None:
                self.set_station(station)
            if weather is not None:
                self.set_weather(weather)
        except Exception:
            self.buffer = saved
            raise

    # ── Step 2: risk factors ──────────────────────────────────────────────

    def set_risk_factor(self, name: str, value: int) -> int:
        """Set one factor score and return the new total."""
        self._require(SessionState.RISK_FACTORS)
        try:
            validate_factor(name, value)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc
        factors = self.assessment.setdefault("risk_factors", {})
        factors[name] = value
        return self.total_score

    # ── Step 3: mitigations ───────────────────────────────────────────────

    def set_mitigation(self, name: str, text: str) -> None:
        self._require(SessionState.MITIGATION)
        if name not in FACTOR_LABELS:
            raise ValidationError(f"Unknown risk factor: {name}.")
        self.buffer.mitigations[name] = text or ""

    # ── Recipients (any editing step) ─────────────────────────────────────

    def set_recipients(self, selection: RecipientSelection) -> None:
        self._require(*STEPS)
        self.assessment["notification_recipients"] = selection.model_dump()

    # ── Navigation ────────────────────────────────────────────────────────

    async def next(self) -> TransitionResult:
        """Flush the current step, save, and move forward one step."""
        self._require(SessionState.DETAILS, SessionState.RISK_FACTORS, SessionState.MITIGATION)
        self._flush(self.state)
        target = STEPS[STEPS.index(self.state) + 1]
        save_error = await self._persist()
        self.state = target
        return self._result(save_error)

    async def prev(self) -> TransitionResult:
        """Flush the current step, save, and move back one step."""
        self._require(SessionState.RISK_FACTORS, SessionState.MITIGATION, SessionState.REVIEW)
        self._flush(self.state)
        target = STEPS[STEPS.index(self.state) - 1]
        save_error = await self._persist()
        self.state = target
        return self._result(save_error)

    async def save(self) -> TransitionResult:
        """Flush and save without moving; recovers from a failed autosave."""
        self._require(*STEPS)
        self._flush(self.state)
        return self._result(await self._persist())

    # ── Terminal transitions ──────────────────────────────────────────────

    async def publish(self) -> PublishResult:
        """Freeze score and level, mark complete, then notify recipients.

        Raises :class:`PublishError` if the final record cannot be written;
        the session then stays on the review step as a draft. The session is
        marked publishing before the first await, so an overlapping call is
        rejected instead of writing and notifying twice.
        """
        self._require(SessionState.REVIEW)
        self.state = SessionState.PUBLISHING
        self._flush(SessionState.DETAILS)
        self._flush(SessionState.MITIGATION)

        score = self.total_score
        level = classify(score, self.scheme)
        final = {
            **copy.deepcopy(self.assessment),
            "status": STATUS_COMPLETE,
            "completed_at": self.clock().isoformat(),
            "completed_by": self.actor.display_name,
            "total_score": score,
            "risk_level": level.as_dict(),
        }
        payload = {k: v for k, v in final.items() if k not in _SERVER_FIELDS}

        try:
            if self.assessment_id:
                await asyncio.wait_for(
                    self.repository.update_assessment(self.assessment_id, payload), self.save_timeout
                )
            else:
                created = await asyncio.wait_for(self.repository.create_assessment(payload), self.save_timeout)
                self.assessment_id = created["id"]
        except Exception as exc:
            self.state = SessionState.REVIEW
            logger.error("publish_failed", assessment_id=self.assessment_id, error=str(exc))
            raise PublishError() from exc

        final["id"] = self.assessment_id
        self.assessment = final
        self.state = SessionState.PUBLISHED
        logger.info(
            "assessment_published",
            assessment_id=self.assessment_id,
            total_score=score,
            risk_level=level.level,
        )

        result = PublishResult(assessment_id=self.assessment_id, total_score=score, risk_level=level)
        selection = RecipientSelection.model_validate(final.get("notification_recipients") or {})
        if selection.is_empty:
            return result
        if self.dispatcher is None:
            logger.warning("notifications_not_configured", assessment_id=self.assessment_id)
            result.notification_warning = "Email notifications are not configured."
            return result

        try:
            directory = await self.repository.get_all_users()
            result.dispatch = await self.dispatcher.notify_published(
                final, selection, directory, self.assessment_id
            )
        except Exception as exc:
            logger.error("notification_dispatch_failed", assessment_id=self.assessment_id, error=str(exc))
            result.notification_warning = "There was an issue sending email notifications."
            return result

        if not result.dispatch.success:
            failed = len(result.dispatch.failed)
            result.notification_warning = (
                f"Email notifications could not be sent to {failed} of {result.dispatch.attempted} recipient(s)."
            )
        return result

    async def discard(self) -> TransitionResult:
        """Delete the persisted draft (if any) and close the session."""
        if self.state in TERMINAL_STATES or self.state == SessionState.PUBLISHING:
            raise InvalidTransitionError()
        if self.assessment_id:
            try:
                await asyncio.wait_for(
                    self.repository.delete_assessment(self.assessment_id, self.actor.audit_meta()),
                    self.save_timeout,
                )
                logger.info("draft_discarded", assessment_id=self.assessment_id, user_id=self.actor.id)
            except Exception as exc:
                logger.error("draft_delete_failed", assessment_id=self.assessment_id, error=str(exc))
        self.state = SessionState.DISCARDED
        return self._result()

    # ── Internals ─────────────────────────────────────────────────────────

    def _require(self, *states: SessionState) -> None:
        if self.state not in states:
            raise InvalidTransitionError()

    def _result(self, save_error: str | None = None) -> TransitionResult:
        self.last_save_error = save_error
        return TransitionResult(state=self.state, step=self.step, save_error=save_error)

    def _flush(self, state: SessionState) -> None:
        if self.buffer is None:
            return
        if state == SessionState.DETAILS:
            self.assessment.update(self.buffer.details())
        elif state == SessionState.MITIGATION:
            self.assessment["mitigations"] = dict(self.buffer.mitigations)

    async def _persist(self) -> str | None:
        """Save the assessment as a draft; return a user message on failure."""
        payload = {k: v for k, v in self.assessment.items() if k not in _SERVER_FIELDS}
        payload["status"] = STATUS_DRAFT
        try:
            if self.assessment_id:
                await asyncio.wait_for(
                    self.repository.update_assessment(self.assessment_id, payload), self.save_timeout
                )
            else:
                created = await asyncio.wait_for(self.repository.create_assessment(payload), self.save_timeout)
                self.assessment_id = created["id"]
                self.assessment["id"] = created["id"]
        except Exception as exc:
            logger.warning("autosave_failed", assessment_id=self.assessment_id, step=self.step, error=str(exc))
            return PersistenceError().user_message
        logger.debug("draft_saved", assessment_id=self.assessment_id, step=self.step)
        return None

    async def _load_stations(self) -> list[str]:
        try:
            stations = await self.repository.get_stations()
        except Exception as exc:
            logger.error("station_lookup_failed", error=str(exc))
            raise PersistenceError("Error checking stations. Please try again.") from exc
        return station_labels(stations or [])

    async def _fetch_weather(self, force_refresh: bool = False) -> dict[str, Any] | None:
        if self.weather is None:
            return None
        try:
            snapshot = await self.weather.get_snapshot(force_refresh=force_refresh)
        except Exception as exc:
            logger.warning("weather_unavailable", error=str(exc))
            return None
        return snapshot.model_dump() if snapshot is not None else None


class SessionRegistry:
    """Open editing sessions, keyed by assessment id.

    A session untouched for longer than ``idle_timeout`` is evicted on the
    next registry access. Its draft stays in the repository and can be
    resumed.
    """

    def __init__(
        self,
        idle_timeout: timedelta = timedelta(hours=12),
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.idle_timeout = idle_timeout
        self.clock = clock
        self._sessions: dict[str, AssessmentSession] = {}
        self._touched: dict[str, float] = {}

    def __len__(self) -> int:
        return len(self._sessions)

    def add(self, session: AssessmentSession) -> None:
        self.evict_idle()
        if session.assessment_id:
            self._sessions[session.assessment_id] = session
            self._touched[session.assessment_id] = self.clock()

    def get(self, assessment_id: str) -> AssessmentSession | None:
        self.evict_idle()
        session = self._sessions.get(assessment_id)
        if session is not None:
            self._touched[assessment_id] = self.clock()
        return session

    def remove(self, assessment_id: str) -> None:
        self._sessions.pop(assessment_id, None)
        self._touched.pop(assessment_id, None)

    def clear(self) -> None:
        self._sessions.clear()
        self._touched.clear()

    def evict_idle(self) -> int:
        """Drop idle sessions; return how many were dropped."""
        cutoff = self.clock() - self.idle_timeout.total_seconds()
        idle = [key for key, touched in self._touched.items() if touched < cutoff]
        for key in idle:
            self.remove(key)
        if idle:
            logger.info("idle_sessions_evicted", count=len(idle))
        return len(idle)
