"""GAR assessment lifecycle API endpoints."""

from __future__ import annotations

from typing import Any, Mapping

from fastapi import APIRouter, Depends, Query, Request

from gar.config import Settings
from gar.dependencies import get_actor, get_repository, get_sessions, get_settings_dep, new_session
from gar.errors import NotFoundError, PermissionDeniedError
from gar.repository import AssessmentRepository
from gar.schemas.assessment import (
    AssessmentListResponse,
    AssessmentSummary,
    AssessmentView,
    DetailsUpdate,
    MitigationsUpdate,
    PublishResponse,
    RiskFactorUpdate,
    RiskLevel,
    SessionView,
)
from gar.schemas.recipients import RecipientSelection
from gar.services.drafts import (
    can_edit,
    can_view,
    current_band,
    current_score,
    filter_assessments,
    find_today_draft,
    today,
    with_ids,
)
from gar.services.lifecycle import Actor, AssessmentSession, SessionRegistry
from gar.services.scoring import BAND_COLORS, LABEL_SCHEMES, RISK_FACTORS, high_risk_factors

router = APIRouter(prefix="/api/assessments", tags=["assessments"])


def _risk_level(record: Mapping[str, Any], scheme: str) -> RiskLevel:
    band = current_band(record)
    return RiskLevel(band=band, level=LABEL_SCHEMES[scheme][band], color=BAND_COLORS[band])


def _session_view(session: AssessmentSession, notice: str | None = None) -> SessionView:
    level = session.risk_level
    return SessionView(
        assessment_id=session.assessment_id,
        state=session.state.value,
        step=session.step,
        station_locked=session.station_locked,
        stations=session.stations,
        assessment=session.snapshot(),
        total_score=session.total_score,
        risk_level=RiskLevel(**level.as_dict()),
        high_risk_factors=session.high_risk_factors,
        missing_mitigations=session.missing_mitigations,
        save_error=session.last_save_error,
        notice=notice,
    )


def _open_session(sessions: SessionRegistry, assessment_id: str, actor: Actor) -> AssessmentSession:
    session = sessions.get(assessment_id)
    if session is None:
        raise NotFoundError("No open editing session for this assessment. Resume the draft first.")
    if session.actor.id != actor.id:
        raise PermissionDeniedError("This draft is being edited in another session.")
    return session


async def _load(repository: AssessmentRepository, assessment_id: str) -> dict[str, Any]:
    record = await repository.get_assessment(assessment_id)
    if record is None:
        raise NotFoundError()
    return record


@router.get("", response_model=AssessmentListResponse)
async def list_assessments(
    status: str = Query(default="all", pattern=r"^(all|published|draft)$"),
    risk: str = Query(default="all", pattern=r"^(all|green|amber|red)$"),
    search: str = Query(default="", max_length=200),
    actor: Actor = Depends(get_actor),
    repository: AssessmentRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings_dep),
) -> AssessmentListResponse:
    """Assessment history, newest first, with the caller's draft for today."""
    records = with_ids(await repository.get_all_assessments())
    profile = actor.as_profile()
    visible = [r for r in records if can_view(r, profile)]
    filtered = filter_assessments(visible, status=status, risk=risk, search=search)
    draft = find_today_draft(records, actor.id, today(settings.timezone))

    return AssessmentListResponse(
        total=len(filtered),
        today_draft_id=draft.get("id") if draft else None,
        assessments=[
            AssessmentSummary(
                id=r["id"],
                date=r.get("date", ""),
                time=r.get("time", ""),
                type=r.get("type", ""),
                station=r.get("station", ""),
                status=r.get("status", ""),
                captain=r.get("captain"),
                total_score=current_score(r),
                risk_level=_risk_level(r, settings.risk_label_scheme),
            )
            for r in filtered
        ],
    )


@router.get("/{assessment_id}", response_model=AssessmentView)
async def get_assessment(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    repository: AssessmentRepository = Depends(get_repository),
    settings: Settings = Depends(get_settings_dep),
) -> AssessmentView:
    """Read-only view of one assessment."""
    record = await _load(repository, assessment_id)
    profile = actor.as_profile()
    if not can_view(record, profile):
        raise NotFoundError()

    risk_factors = {name: int((record.get("risk_factors") or {}).get(name, 0)) for name in RISK_FACTORS}
    mitigations = {name: (record.get("mitigations") or {}).get(name, "") or "" for name in RISK_FACTORS}
    return AssessmentView(
        id=record["id"],
        date=record.get("date", ""),
        time=record.get("time", ""),
        type=record.get("type", ""),
        station=record.get("station", ""),
        status=record.get("status", ""),
        captain=record.get("captain"),
        user_id=record.get("user_id"),
        weather=record.get("weather") or {},
        risk_factors=risk_factors,
        mitigations=mitigations,
        notification_recipients=RecipientSelection.model_validate(record.get("notification_recipients") or {}),
        total_score=current_score(record),
        risk_level=_risk_level(record, settings.risk_label_scheme),
        high_risk_factors=high_risk_factors(risk_factors),
        completed_at=record.get("completed_at"),
        completed_by=record.get("completed_by"),
        read_only=not can_edit(record, profile, settings.edit_policy),
    )


@router.post("/start", response_model=SessionView, status_code=201)
async def start_assessment(
    request: Request,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    """Create today's draft and open step 1."""
    session = new_session(request, actor)
    await session.start()
    sessions.add(session)
    return _session_view(session)


@router.post("/{assessment_id}/resume", response_model=SessionView)
async def resume_assessment(
    assessment_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    repository: AssessmentRepository = Depends(get_repository),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    """Continue an existing draft from step 1."""
    record = await _load(repository, assessment_id)
    session = new_session(request, actor)
    await session.resume(record)
    sessions.add(session)
    return _session_view(session)


@router.get("/{assessment_id}/session", response_model=SessionView)
async def get_session(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    return _session_view(_open_session(sessions, assessment_id, actor))


@router.patch("/{assessment_id}/details", response_model=SessionView)
async def update_details(
    assessment_id: str,
    update: DetailsUpdate,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    """Step 1 edits. Type is applied before station."""
    session = _open_session(sessions, assessment_id, actor)
    session.update_details(
        date=update.date,
        time=update.time,
        type=update.type,
        station=update.station,
        weather=update.weather.model_dump() if update.weather is not None else None,
    )
    return _session_view(session)


@router.post("/{assessment_id}/weather/refresh", response_model=SessionView)
async def refresh_weather(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    snapshot = await session.refresh_weather()
    notice = None if snapshot is not None else "Weather data is currently unavailable."
    return _session_view(session, notice=notice)


@router.put("/{assessment_id}/risk-factors/{factor}", response_model=SessionView)
async def set_risk_factor(
    assessment_id: str,
    factor: str,
    update: RiskFactorUpdate,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    session.set_risk_factor(factor, update.value)
    return _session_view(session)


@router.patch("/{assessment_id}/mitigations", response_model=SessionView)
async def update_mitigations(
    assessment_id: str,
    update: MitigationsUpdate,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    for factor, text in update.mitigations.items():
        session.set_mitigation(factor, text)
    return _session_view(session)


@router.put("/{assessment_id}/recipients", response_model=SessionView)
async def set_recipients(
    assessment_id: str,
    selection: RecipientSelection,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    session.set_recipients(selection)
    return _session_view(session)


@router.post("/{assessment_id}/next", response_model=SessionView)
async def next_step(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    await session.next()
    return _session_view(session)


@router.post("/{assessment_id}/prev", response_model=SessionView)
async def prev_step(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    await session.prev()
    return _session_view(session)


@router.post("/{assessment_id}/save", response_model=SessionView)
async def save_draft(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> SessionView:
    session = _open_session(sessions, assessment_id, actor)
    await session.save()
    return _session_view(session)


@router.post("/{assessment_id}/publish", response_model=PublishResponse)
async def publish_assessment(
    assessment_id: str,
    actor: Actor = Depends(get_actor),
    sessions: SessionRegistry = Depends(get_sessions),
) -> PublishResponse:
    """Publish from the review step. Notification problems are returned as a warning."""
    session = _open_session(sessions, assessment_id, actor)
    result = await session.publish()
    sessions.remove(assessment_id)
    if result.assessment_id != assessment_id:
        sessions.remove(result.assessment_id)

    dispatch = result.dispatch
    return PublishResponse(
        assessment_id=result.assessment_id,
        status=session.assessment["status"],
        total_score=result.total_score,
        risk_level=RiskLevel(**result.risk_level.as_dict()),
        notifications_attempted=dispatch.attempted if dispatch else 0,
        notifications_sent=len(dispatch.sent) if dispatch else 0,
        notification_warning=result.notification_warning,
        message=result.message,
    )


@router.delete("/{assessment_id}/draft", status_code=204)
async def discard_draft(
    assessment_id: str,
    request: Request,
    actor: Actor = Depends(get_actor),
    repository: AssessmentRepository = Depends(get_repository),
    sessions: SessionRegistry = Depends(get_sessions),
) -> None:
    """Discard a draft, through its open session or by resuming it first."""
    session = sessions.get(assessment_id)
    if session is None:
        record = await _load(repository, assessment_id)
        session = new_session(request, actor)
        await session.resume(record, fetch_weather=False)
    elif session.actor.id != actor.id:
        raise PermissionDeniedError("This draft is being edited in another session.")
    await session.discard()
    sessions.remove(assessment_id)
