"""FastAPI dependencies shared by the routers."""

from __future__ import annotations

from fastapi import Header, HTTPException, Request

from gar.config import Settings
from gar.repository import AssessmentRepository
from gar.services.lifecycle import Actor, AssessmentSession, SessionRegistry


def get_settings_dep(request: Request) -> Settings:
    return request.app.state.settings


def get_repository(request: Request) -> AssessmentRepository:
    return request.app.state.repository


def get_sessions(request: Request) -> SessionRegistry:
    return request.app.state.sessions


async def get_actor(request: Request, x_user_id: str | None = Header(default=None)) -> Actor:
    """Resolve the calling user from ``X-User-Id``.

    Authentication happens upstream; this only looks the profile up.
    """
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Sign in to continue.")
    profile = await request.app.state.repository.get_user_profile(x_user_id)
    if profile is None:
        raise HTTPException(status_code=401, detail="Unknown user.")
    return Actor.from_profile(profile)


def new_session(request: Request, actor: Actor) -> AssessmentSession:
    """Build a session wired to the app's collaborators and policies."""
    settings: Settings = request.app.state.settings
    return AssessmentSession(
        request.app.state.repository,
        actor,
        weather=request.app.state.weather,
        dispatcher=request.app.state.dispatcher,
        timezone=settings.timezone,
        scheme=settings.risk_label_scheme,
        edit_policy=settings.edit_policy,
        save_timeout=settings.http_timeout_seconds,
    )
