"""GAR assessment service: FastAPI application factory."""

from __future__ import annotations

from datetime import timedelta

from fastapi import FastAPI

from gar.config import Settings, get_settings
from gar.middleware import (
    configure_cors,
    configure_error_handlers,
    configure_rate_limiting,
    configure_request_logging,
    lifespan,
)
from gar.repository import AssessmentRepository
from gar.routers import assessments, health, recipients, weather
from gar.services.lifecycle import SessionRegistry
from gar.services.notifications import EmailJsProvider, NotificationDispatcher
from gar.services.weather import StormglassClient, WeatherService
from gar.store import data_store


def build_weather_service(settings: Settings, cache) -> WeatherService:
    client = StormglassClient(
        api_url=settings.stormglass_api_url,
        api_key=settings.stormglass_api_key,
        timeout=settings.http_timeout_seconds,
    )
    return WeatherService(
        client=client,
        cache=cache,
        latitude=settings.weather_latitude,
        longitude=settings.weather_longitude,
        max_age=timedelta(seconds=settings.weather_cache_seconds),
        dev_mode=settings.weather_dev_mode,
    )


def build_dispatcher(settings: Settings) -> NotificationDispatcher | None:
    """Return a dispatcher, or ``None`` when EmailJS is not configured."""
    if not (settings.emailjs_service_id and settings.emailjs_template_id and settings.emailjs_user_id):
        return None
    provider = EmailJsProvider(
        api_url=settings.emailjs_api_url,
        service_id=settings.emailjs_service_id,
        template_id=settings.emailjs_template_id,
        user_id=settings.emailjs_user_id,
        access_token=settings.emailjs_access_token,
        timeout=settings.http_timeout_seconds,
    )
    return NotificationDispatcher(
        provider=provider,
        app_base_url=settings.app_base_url,
        scheme=settings.risk_label_scheme,
        concurrency=settings.notification_concurrency,
        from_name=settings.notification_from_name,
        reply_to=settings.notification_reply_to,
    )


def create_app(
    settings: Settings | None = None,
    repository: AssessmentRepository | None = None,
    weather_service: WeatherService | None = None,
    dispatcher: NotificationDispatcher | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    if settings is None:
        settings = get_settings()
    if repository is None:
        repository = data_store

    app = FastAPI(
        title=settings.app_name,
        description="GAR operational risk assessment lifecycle service",
        version=settings.app_version,
        lifespan=lifespan,
    )

    # Collaborators on app state
    app.state.settings = settings
    app.state.repository = repository
    app.state.weather = weather_service or build_weather_service(settings, repository)
    app.state.dispatcher = dispatcher if dispatcher is not None else build_dispatcher(settings)
    app.state.sessions = SessionRegistry(idle_timeout=timedelta(seconds=settings.session_idle_seconds))

    # Middleware
    configure_cors(app, settings)
    configure_rate_limiting(app, settings)
    configure_request_logging(app)
    configure_error_handlers(app)

    # Routers
    app.include_router(health.router)
    app.include_router(assessments.router)
    app.include_router(recipients.router)
    app.include_router(weather.router)

    return app


# Default app instance for uvicorn
app = create_app()
