"""Shared test fixtures for the GAR assessment test suite."""

from __future__ import annotations

import asyncio
from datetime import datetime
from zoneinfo import ZoneInfo

import pytest
from fastapi.testclient import TestClient

from gar.app import create_app
from gar.config import Settings
from gar.errors import NotificationError
from gar.schemas.weather import WeatherSnapshot
from gar.services.lifecycle import Actor, AssessmentSession
from gar.services.notifications import DeliveryResult, NotificationDispatcher
from gar.store import DataStore, data_store


TZ = "America/Los_Angeles"
FIXED_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=ZoneInfo(TZ))
TODAY = "2026-10-19"

USERS = {
    "cap-1": {"email": "rivera@firedept.org", "display_name": "Capt. Rivera", "role": "captain", "station": "Station 1"},
    "cap-2": {"email": "okafor@firedept.org", "display_name": "Capt. Okafor", "role": "captain", "station": "Station 2"},
    "lt-1": {"email": "chen@firedept.org", "display_name": "Lt. Chen", "role": "lieutenant", "station": "Station 1"},
    "ff-1": {"email": "diaz@firedept.org", "display_name": "FF Diaz", "role": "firefighter", "station": "Station 1"},
    "ff-2": {"email": "nguyen@firedept.org", "display_name": "FF Nguyen", "role": "firefighter", "station": "Station 2"},
    "ff-3": {"email": "parker@firedept.org", "display_name": "FF Parker", "role": "firefighter", "status": "inactive"},
    "ff-4": {"email": "user@example.com", "display_name": "Placeholder", "role": "firefighter"},
    "ch-1": {"email": "walsh@firedept.org", "display_name": "Chief Walsh", "role": "chief"},
    "adm-1": {"email": "admin@firedept.org", "display_name": "Admin", "role": "admin"},
}


def run(coro):
    """Run a coroutine to completion from a sync test."""
    return asyncio.run(coro)


def sample_snapshot(**overrides) -> WeatherSnapshot:
    values = {
        "temperature": "58",
        "wind": "12",
        "wind_direction": "W",
        "humidity": "70",
        "precipitation": "0.00",
        "precipitation_rate": "0.00",
        "wave_height": "4.3",
        "wave_period": "9",
        "wave_direction": "NW",
        "weather_data_source": "NOAA",
        "api_source": "StormGlass API",
    }
    values.update(overrides)
    return WeatherSnapshot(**values)


class FakeWeatherService:
    """Returns a fixed snapshot (or nothing) and counts calls."""

    def __init__(self, snapshot: WeatherSnapshot | None = None) -> None:
        self.snapshot = snapshot
        self.calls: list[bool] = []

    async def get_snapshot(self, force_refresh: bool = False) -> WeatherSnapshot | None:
        self.calls.append(force_refresh)
        return self.snapshot


class FakeProvider:
    """Records every message; fails for addresses in ``fail_for``."""

    def __init__(self, fail_for: set[str] | None = None) -> None:
        self.fail_for = fail_for or set()
        self.sent: list[dict] = []
        self.attempted: list[str] = []

    async def send(self, template_params: dict) -> DeliveryResult:
        email = template_params["to_email"]
        self.attempted.append(email)
        if email in self.fail_for:
            raise NotificationError(f"Email provider error: 500 for {email}")
        self.sent.append(template_params)
        return DeliveryResult(recipient=email, status_code=200, text="OK")


class FlakyStore(DataStore):
    """In-memory repository whose writes can be made to fail on demand."""

    def __init__(self) -> None:
        super().__init__()
        self.fail_create = False
        self.fail_update = False
        self.fail_delete = False
        self.fail_list = False
        self.fail_stations = False
        self.fail_users = False
        self.update_delay = 0.0
        self.create_calls = 0
        self.update_calls = 0

    async def create_assessment(self, data):
        self.create_calls += 1
        if self.fail_create:
            raise RuntimeError("database unavailable")
        return await super().create_assessment(data)

    async def update_assessment(self, assessment_id, data):
        self.update_calls += 1
        if self.update_delay:
            await asyncio.sleep(self.update_delay)
        if self.fail_update:
            raise RuntimeError("database unavailable")
        await super().update_assessment(assessment_id, data)

    async def delete_assessment(self, assessment_id, audit_meta):
        if self.fail_delete:
            raise RuntimeError("database unavailable")
        await super().delete_assessment(assessment_id, audit_meta)

    async def get_all_assessments(self):
        if self.fail_list:
            raise RuntimeError("database unavailable")
        return await super().get_all_assessments()

    async def get_stations(self):
        if self.fail_stations:
            raise RuntimeError("database unavailable")
        return await super().get_stations()

    async def get_all_users(self):
        if self.fail_users:
            raise RuntimeError("directory unavailable")
        return await super().get_all_users()


def seed_directory(store: DataStore) -> None:
    store.add_station("Station 1", 1)
    store.add_station("Station 2", 2)
    for user_id, data in USERS.items():
        store.add_user(user_id, data)


def _test_settings() -> Settings:
    """Return settings suitable for testing."""
    return Settings(
        environment="development",
        debug=True,
        log_format="console",
        rate_limit_default="1000/minute",
        allowed_origins="http://localhost:3000,http://localhost:5015",
        app_base_url="https://gar.firedept.org",
        timezone=TZ,
        http_timeout_seconds=5.0,
    )


@pytest.fixture
def settings():
    """Test settings."""
    return _test_settings()


@pytest.fixture(autouse=True)
def reset_store():
    """Reset the global data store before each test."""
    data_store.reset()
    yield
    data_store.reset()


@pytest.fixture
def directory():
    """Seed the global store with two stations and the test users."""
    seed_directory(data_store)
    return data_store


@pytest.fixture
def fake_weather():
    return FakeWeatherService(sample_snapshot())


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def dispatcher(provider, settings):
    return NotificationDispatcher(provider=provider, app_base_url=settings.app_base_url)


@pytest.fixture
def app(settings, fake_weather, dispatcher):
    """Create a fresh FastAPI app for testing."""
    return create_app(settings, repository=data_store, weather_service=fake_weather, dispatcher=dispatcher)


@pytest.fixture
def client(app):
    """HTTP test client."""
    return TestClient(app)


@pytest.fixture
def captain_headers(directory):
    return {"X-User-Id": "cap-1"}


@pytest.fixture
def store():
    """A seeded repository with failure switches for lifecycle tests."""
    repo = FlakyStore()
    seed_directory(repo)
    return repo


@pytest.fixture
def captain():
    return Actor.from_profile({"id": "cap-1", **USERS["cap-1"]})


@pytest.fixture
def make_session(store, captain, fake_weather, dispatcher):
    """Factory for sessions wired to the flaky store and fakes."""

    def _make(actor: Actor | None = None, **overrides) -> AssessmentSession:
        options = {
            "weather": fake_weather,
            "dispatcher": dispatcher,
            "timezone": TZ,
            "clock": lambda: FIXED_NOW,
            "save_timeout": 5.0,
        }
        options.update(overrides)
        return AssessmentSession(store, actor or captain, **options)

    return _make
