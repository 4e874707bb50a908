"""Weather Snapshot Provider: Stormglass client plus a shared one-hour cache."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Mapping

import httpx
import structlog

from gar.repository import WeatherCache
from gar.schemas.weather import WeatherSnapshot

logger = structlog.get_logger()


WEATHER_PARAMS = [
    "airTemperature",
    "humidity",
    "windSpeed",
    "windDirection",
    "precipitation",
    "waveHeight",
    "wavePeriod",
    "waveDirection",
]

# Source priority when a parameter is reported by several models (NOAA first for US)
SOURCE_PRIORITY = ["noaa", "ecmwf", "sg", "icon", "dwd", "meteo"]

SOURCE_NAMES = {"noaa": "NOAA", "ecmwf": "ECMWF", "sg": "StormGlass"}

COMPASS_POINTS = [
    "N", "NNE", "NE", "ENE", "E", "ESE", "SE", "SSE",
    "S", "SSW", "SW", "WSW", "W", "WNW", "NW", "NNW",
]

API_SOURCE = "StormGlass API"


class WeatherClientError(Exception):
    """Raised when the weather API cannot supply a snapshot."""


class StormglassClient:
    """HTTP client for the Stormglass point-weather API."""

    def __init__(self, api_url: str, api_key: str, timeout: float = 15.0, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.api_url = api_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self._transport = transport

    async def fetch_point(self, lat: float, lng: float, at: datetime | None = None) -> dict[str, Any]:
        """Fetch the current hour's readings for a coordinate."""
        at = at or datetime.now(timezone.utc)
        stamp = at.isoformat()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(
                    f"{self.api_url}/weather/point",
                    headers={"Authorization": self.api_key},
                    params={
                        "lat": lat,
                        "lng": lng,
                        "params": ",".join(WEATHER_PARAMS),
                        "start": stamp,
                        "end": stamp,
                    },
                )
        except httpx.HTTPError as exc:
            raise WeatherClientError(f"Weather API request failed: {exc}") from exc
        if response.status_code != 200:
            raise WeatherClientError(f"Weather API error: {response.status_code} {response.text}")
        try:
            hours = response.json().get("hours") or []
        except (ValueError, AttributeError) as exc:
            raise WeatherClientError(f"Weather API returned an unreadable body: {exc}") from exc
        if not hours:
            raise WeatherClientError("No weather data in response")
        return hours[0]


def first_value(readings: Any) -> float | None:
    """First available value following the source priority."""
    if not isinstance(readings, Mapping):
        return None
    for source in SOURCE_PRIORITY:
        if readings.get(source) is not None:
            return readings[source]
    return None


def celsius_to_fahrenheit(celsius: float) -> int:
    return round(celsius * 9 / 5 + 32)


def ms_to_mph(ms: float) -> int:
    return round(ms * 2.237)


def meters_to_feet(meters: float) -> float:
    return round(meters * 3.28084, 1)


def mm_to_inches(mm: float) -> str:
    return f"{mm * 0.0393701:.2f}"


def degrees_to_cardinal(degrees: float) -> str:
    """16-point compass direction for a bearing in degrees."""
    return COMPASS_POINTS[round(degrees / 22.5) % 16]


def format_snapshot(raw: Mapping[str, Any], fetched_at: datetime | None = None) -> WeatherSnapshot:
    """Convert one Stormglass hour record into display units."""
    temperature = first_value(raw.get("airTemperature"))
    humidity = first_value(raw.get("humidity"))
    wind_speed = first_value(raw.get("windSpeed"))
    wind_direction = first_value(raw.get("windDirection"))
    precipitation = first_value(raw.get("precipitation"))
    wave_height = first_value(raw.get("waveHeight"))
    wave_period = first_value(raw.get("wavePeriod"))
    wave_direction = first_value(raw.get("waveDirection"))

    source = "StormGlass"
    air = raw.get("airTemperature")
    if temperature is not None and isinstance(air, Mapping):
        for key in ("noaa", "ecmwf", "sg"):
            if air.get(key) is not None:
                source = SOURCE_NAMES[key]
                break

    precip = mm_to_inches(precipitation) if precipitation is not None else "0.00"
    fetched_at = fetched_at or datetime.now(timezone.utc)

    return WeatherSnapshot(
        temperature=str(celsius_to_fahrenheit(temperature)) if temperature is not None else "",
        temperature_unit="°F",
        wind=str(ms_to_mph(wind_speed)) if wind_speed is not None else "",
        wind_direction=degrees_to_cardinal(wind_direction) if wind_direction is not None else "",
        humidity=str(round(humidity)) if humidity is not None else "",
        precipitation=precip,
        precipitation_rate=precip,
        wave_height=str(meters_to_feet(wave_height)) if wave_height is not None else "",
        wave_period=str(round(wave_period)) if wave_period is not None else "",
        wave_direction=degrees_to_cardinal(wave_direction) if wave_direction is not None else "",
        alerts="",
        weather_data_source=source,
        last_updated=fetched_at.isoformat(),
        api_source=API_SOURCE,
    )


def synthetic_snapshot() -> WeatherSnapshot:
    """Fixed development-only conditions, always flagged as synthetic."""
    return WeatherSnapshot(
        temperature="60",
        wind="8",
        wind_direction="W",
        humidity="65",
        precipitation="0.00",
        precipitation_rate="0.00",
        wave_height="3.9",
        wave_period="8",
        wave_direction="NW",
        weather_data_source="synthetic",
        last_updated=datetime.now(timezone.utc).isoformat(),
        api_source="development fixture",
        is_synthetic=True,
    )


def _as_utc(moment: datetime) -> datetime:
    # Some backends return naive datetimes for UTC columns
    return moment if moment.tzinfo is not None else moment.replace(tzinfo=timezone.utc)


class WeatherService:
    """Cache-aware weather snapshots for assessment step 1.

    Fresh cache (younger than ``max_age``) is returned as-is. Otherwise the
    API is called and the cache refreshed. If the API fails the last cached
    snapshot is returned marked stale; with no cache at all the result is
    ``None``. Synthetic conditions are only ever produced in dev mode.
    """

    def __init__(
        self,
        client: StormglassClient,
        cache: WeatherCache,
        latitude: float,
        longitude: float,
        max_age: timedelta = timedelta(hours=1),
        dev_mode: bool = False,
    ) -> None:
        self.client = client
        self.cache = cache
        self.latitude = latitude
        self.longitude = longitude
        self.max_age = max_age
        self.dev_mode = dev_mode

    async def get_snapshot(self, force_refresh: bool = False) -> WeatherSnapshot | None:
        now = datetime.now(timezone.utc)
        try:
            cached = await self.cache.load_weather_cache()
        except Exception as exc:
            logger.warning("weather_cache_read_failed", error=str(exc))
            cached = None

        if cached is not None and not force_refresh:
            snapshot, fetched_at = cached
            if now - _as_utc(fetched_at) < self.max_age:
                logger.info("weather_cache_hit", fetched_at=_as_utc(fetched_at).isoformat())
                return WeatherSnapshot(**{**snapshot, "is_cached": True})

        try:
            raw = await self.client.fetch_point(self.latitude, self.longitude, at=now)
            snapshot = format_snapshot(raw, fetched_at=now)
        except WeatherClientError as exc:
            logger.warning("weather_fetch_failed", error=str(exc))
            return self._fallback(cached)
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            logger.warning("weather_response_malformed", error=str(exc))
            return self._fallback(cached)

        try:
            await self.cache.save_weather_cache(snapshot.model_dump(), now)
        except Exception as exc:
            logger.warning("weather_cache_write_failed", error=str(exc))
        logger.info("weather_fetched", source=snapshot.weather_data_source)
        return snapshot

    def _fallback(self, cached: tuple[dict[str, Any], datetime] | None) -> WeatherSnapshot | None:
        if cached is not None:
            snapshot, fetched_at = cached
            logger.info("weather_stale_cache_used", fetched_at=_as_utc(fetched_at).isoformat())
            return WeatherSnapshot(**{**snapshot, "is_cached": True, "is_stale": True})
        if self.dev_mode:
            logger.warning("weather_synthetic_used")
            return synthetic_snapshot()
        return None
