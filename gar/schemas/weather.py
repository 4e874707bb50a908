"""Weather snapshot schema shared by the weather service and the API."""

from __future__ import annotations

from pydantic import BaseModel


class WeatherSnapshot(BaseModel):
    """Formatted weather and marine conditions for step 1 of an assessment.

    Values are display strings, blank when unknown.
    """

    temperature: str = ""
    temperature_unit: str = "°F"
    wind: str = ""
    wind_direction: str = ""
    humidity: str = ""
    precipitation: str = ""
    precipitation_rate: str = ""
    wave_height: str = ""
    wave_period: str = ""
    wave_direction: str = ""
    alerts: str = ""

    # Provenance
    weather_data_source: str | None = None
    last_updated: str | None = None
    api_source: str | None = None
    is_cached: bool = False
    is_stale: bool = False
    is_synthetic: bool = False
