"""Weather snapshot endpoint."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request

from gar.dependencies import get_actor
from gar.schemas.weather import WeatherSnapshot
from gar.services.lifecycle import Actor

router = APIRouter(prefix="/api/weather", tags=["weather"])


@router.get("", response_model=WeatherSnapshot | None)
async def get_weather(
    request: Request,
    refresh: bool = Query(default=False),
    actor: Actor = Depends(get_actor),
) -> WeatherSnapshot | None:
    """Current conditions, or null when no data is available."""
    return await request.app.state.weather.get_snapshot(force_refresh=refresh)
