"""Tests for the assessment state machine: start, step edits, save, publish, discard."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from conftest import TODAY, USERS, FakeProvider, FakeWeatherService, run
from gar.errors import (
    DraftExistsError,
    InvalidTransitionError,
    NoStationsError,
    PermissionDeniedError,
    PersistenceError,
    PublishError,
    ValidationError,
)
from gar.schemas.recipients import RecipientSelection
from gar.services.drafts import ALL_STATIONS, DEPARTMENT_WIDE, MISSION_SPECIFIC
from gar.services.lifecycle import Actor, SessionRegistry, SessionState
from gar.services.notifications import NotificationDispatcher


def _actor(user_id: str) -> Actor:
    return Actor.from_profile({"id": user_id, **USERS[user_id]})


def _draft(user_id: str = "cap-1", date: str = TODAY, status: str = "draft") -> dict:
    return {
        "date": date,
        "time": "08:00",
        "type": DEPARTMENT_WIDE,
        "station": ALL_STATIONS,
        "status": status,
        "captain": USERS[user_id]["display_name"],
        "user_id": user_id,
        "weather": {},
        "risk_factors": {},
        "mitigations": {},
    }


def _to_review(session) -> None:
    run(session.next())
    run(session.next())
    run(session.next())
    assert session.state == SessionState.REVIEW


def _assert_station_type_consistent(session) -> None:
    buffer = session.buffer
    assert (buffer.type == DEPARTMENT_WIDE) == (buffer.station == ALL_STATIONS)


# ─── Test 1: Starting an assessment ────────────────────────────────────────

class TestStart:
    """start() creates and persists today's draft, or refuses with a reason."""

    def test_start_creates_default_draft(self, make_session, store):
        session = make_session()
        result = run(session.start())

        assert result.state == SessionState.DETAILS
        assert result.step == 1
        assert session.assessment_id in store.assessments

        record = store.assessments[session.assessment_id]
        assert record["status"] == "draft"
        assert record["date"] == TODAY
        assert record["time"] == "09:30"
        assert record["type"] == DEPARTMENT_WIDE
        assert record["station"] == ALL_STATIONS
        assert record["captain"] == "Capt. Rivera"
        assert record["user_id"] == "cap-1"
        assert record["risk_factors"] == {
            "supervision": 0, "planning": 0, "team_selection": 0,
            "team_fitness": 0, "environment": 0, "complexity": 0,
        }
        assert record["notification_recipients"]["groups"] == []

    def test_start_persists_fetched_weather(self, make_session, store):
        session = make_session()
        run(session.start())
        assert store.assessments[session.assessment_id]["weather"]["temperature"] == "58"
        assert session.buffer.weather["wind_direction"] == "W"

    def test_start_without_weather_keeps_blank_fields(self, make_session, store):
        session = make_session(weather=FakeWeatherService(None))
        result = run(session.start())
        assert result.save_error is None
        assert store.assessments[session.assessment_id]["weather"]["temperature"] == ""

    def test_start_loads_station_labels(self, make_session, store):
        store.add_station(ALL_STATIONS)
        store.add_station("", 7)
        session = make_session()
        run(session.start())
        assert session.stations == ["Station 1", "Station 2", "Station 7"]

    def test_department_wide_station_is_locked(self, make_session):
        session = make_session()
        run(session.start())
        assert session.station_locked is True

    def test_existing_draft_today_blocks_second_start(self, make_session, store):
        existing = run(store.create_assessment(_draft()))
        session = make_session()

        with pytest.raises(DraftExistsError) as excinfo:
            run(session.start())

        assert excinfo.value.draft_id == existing["id"]
        assert len(store.assessments) == 1
        assert session.state == SessionState.NOT_STARTED

    @pytest.mark.parametrize("record", [
        _draft(user_id="cap-2"),
        _draft(date="2026-10-18"),
        _draft(status="complete"),
    ])
    def test_other_records_do_not_block(self, make_session, store, record):
        run(store.create_assessment(record))
        session = make_session()
        run(session.start())
        assert len(store.assessments) == 2

    def test_no_stations_blocks_start(self, make_session, store):
        store.stations.clear()
        session = make_session()

        with pytest.raises(NoStationsError):
            run(session.start())

        assert store.assessments == {}
        assert session.state == SessionState.NOT_STARTED

    def test_only_all_stations_counts_as_no_stations(self, make_session, store):
        store.stations.clear()
        store.add_station(ALL_STATIONS)
        with pytest.raises(NoStationsError):
            run(make_session().start())

    def test_firefighter_cannot_start_under_restricted_policy(self, make_session):
        session = make_session(actor=_actor("ff-1"))
        with pytest.raises(PermissionDeniedError):
            run(session.start())

    def test_firefighter_can_start_under_open_policy(self, make_session):
        session = make_session(actor=_actor("ff-1"), edit_policy="open")
        run(session.start())
        assert session.state == SessionState.DETAILS

    def test_create_failure_raises_persistence_error(self, make_session, store):
        store.fail_create = True
        session = make_session()
        with pytest.raises(PersistenceError):
            run(session.start())
        assert session.state == SessionState.NOT_STARTED

    def test_draft_lookup_failure_raises_persistence_error(self, make_session, store):
        store.fail_list = True
        with pytest.raises(PersistenceError, match="existing drafts"):
            run(make_session().start())

    def test_station_lookup_failure_raises_persistence_error(self, make_session, store):
        store.fail_stations = True
        with pytest.raises(PersistenceError, match="stations"):
            run(make_session().start())

    def test_start_twice_is_invalid(self, make_session):
        session = make_session()
        run(session.start())
        with pytest.raises(InvalidTransitionError):
            run(session.start())


# ─── Test 2: Step 1 details and the station lock ───────────────────────────

class TestDetails:
    """Type and station stay consistent through every edit."""

    @pytest.fixture
    def session(self, make_session):
        session = make_session()
        run(session.start())
        return session

    def test_switch_to_mission_specific_picks_first_station(self, session):
        session.set_type(MISSION_SPECIFIC)
        assert session.buffer.station == "Station 1"
        assert session.station_locked is False

    def test_switch_back_to_department_wide_resets_station(self, session):
        session.set_type(MISSION_SPECIFIC)
        session.set_station("Station 2")
        session.set_type(DEPARTMENT_WIDE)
        assert session.buffer.station == ALL_STATIONS
        assert session.station_locked is True

    def test_mission_specific_keeps_chosen_station(self, session):
        session.set_type(MISSION_SPECIFIC)
        session.set_station("Station 2")
        session.set_type(MISSION_SPECIFIC)
        assert session.buffer.station == "Station 2"

    def test_station_change_rejected_while_locked(self, session):
        with pytest.raises(InvalidTransitionError):
            session.set_station("Station 2")
        assert session.buffer.station == ALL_STATIONS

    def test_all_stations_forces_department_wide(self, session):
        session.set_type(MISSION_SPECIFIC)
        session.set_station(ALL_STATIONS)
        assert session.buffer.type == DEPARTMENT_WIDE

    def test_unknown_station_rejected(self, session):
        session.set_type(MISSION_SPECIFIC)
        with pytest.raises(ValidationError):
            session.set_station("Station 99")

    def test_unknown_type_rejected(self, session):
        with pytest.raises(ValidationError):
            session.set_type("Regional")

    def test_invariant_holds_across_edit_sequence(self, session):
        operations = [
            (session.set_type, MISSION_SPECIFIC),
            (session.set_station, "Station 2"),
            (session.set_station, ALL_STATIONS),
            (session.set_type, MISSION_SPECIFIC),
            (session.set_type, DEPARTMENT_WIDE),
            (session.set_type, DEPARTMENT_WIDE),
            (session.set_station, ALL_STATIONS),
            (session.set_type, MISSION_SPECIFIC),
            (session.set_station, "Station 1"),
        ]
        for operation, value in operations:
            operation(value)
            _assert_station_type_consistent(session)

    @pytest.mark.parametrize("value", ["2026/10/19", "19-10-2026", "2026-13-01", ""])
    def test_invalid_date_rejected(self, session, value):
        with pytest.raises(ValidationError):
            session.set_date(value)

    @pytest.mark.parametrize("value", ["9:30", "25:00", "0930", ""])
    def test_invalid_time_rejected(self, session, value):
        with pytest.raises(ValidationError):
            session.set_time(value)

    def test_edits_stay_in_buffer_until_step_change(self, session, store):
        session.set_type(MISSION_SPECIFIC)
        session.set_time("14:15")
        record = store.assessments[session.assessment_id]
        assert record["station"] == ALL_STATIONS
        assert record["time"] == "09:30"
        assert session.snapshot()["station"] == "Station 1"

    def test_manual_weather_merges_into_buffer(self, session):
        session.set_weather({"alerts": "Small craft advisory"})
        assert session.buffer.weather["alerts"] == "Small craft advisory"
        assert session.buffer.weather["temperature"] == "58"

    def test_refresh_weather_forces_fetch(self, session, fake_weather):
        run(session.refresh_weather())
        assert fake_weather.calls[-1] is True

    def test_details_edits_rejected_outside_step_one(self, session):
        run(session.next())
        with pytest.raises(InvalidTransitionError):
            session.set_type(MISSION_SPECIFIC)

    def test_update_details_applies_all_fields(self, session):
        session.update_details(date="2026-10-20", time="14:00", type=MISSION_SPECIFIC, station="Station 2")
        assert (session.buffer.date, session.buffer.time) == ("2026-10-20", "14:00")
        assert (session.buffer.type, session.buffer.station) == (MISSION_SPECIFIC, "Station 2")

    def test_update_details_is_all_or_nothing(self, session):
        with pytest.raises(ValidationError):
            session.update_details(date="2026-10-20", time="25:99")
        assert session.buffer.date == TODAY
        _assert_station_type_consistent(session)

    @pytest.mark.parametrize("type_,station", [
        (DEPARTMENT_WIDE, "Station 1"),
        (MISSION_SPECIFIC, ALL_STATIONS),
    ])
    def test_update_details_rejects_contradiction(self, session, type_, station):
        session.set_type(MISSION_SPECIFIC)
        with pytest.raises(ValidationError):
            session.update_details(type=type_, station=station)
        assert (session.buffer.type, session.buffer.station) == (MISSION_SPECIFIC, "Station 1")


# ─── Test 3: Navigation and optimistic saves ───────────────────────────────

class TestNavigation:
    """Leaving a step flushes the buffer and saves; failed saves never block."""

    @pytest.fixture
    def session(self, make_session):
        session = make_session()
        run(session.start())
        return session

    def test_next_flushes_details_and_persists(self, session, store):
        session.set_type(MISSION_SPECIFIC)
        session.set_station("Station 2")
        result = run(session.next())

        assert result.state == SessionState.RISK_FACTORS
        assert result.step == 2
        record = store.assessments[session.assessment_id]
        assert record["station"] == "Station 2"
        assert record["type"] == MISSION_SPECIFIC

    def test_risk_factor_only_in_step_two(self, session):
        with pytest.raises(InvalidTransitionError):
            session.set_risk_factor("planning", 5)

    def test_risk_factor_updates_live_total(self, session):
        run(session.next())
        assert session.set_risk_factor("planning", 5) == 5
        assert session.set_risk_factor("environment", 9) == 14
        assert session.risk_level.band == "low"
        assert session.high_risk_factors == ["planning", "environment"]

    @pytest.mark.parametrize("name,value", [("planning", 11), ("planning", -1), ("morale", 3)])
    def test_invalid_risk_factor_rejected(self, session, name, value):
        run(session.next())
        with pytest.raises(ValidationError):
            session.set_risk_factor(name, value)

    def test_prev_from_mitigation_flushes_text(self, session, store):
        run(session.next())
        session.set_risk_factor("supervision", 7)
        run(session.next())
        session.set_mitigation("supervision", "Add a second officer")
        result = run(session.prev())

        assert result.state == SessionState.RISK_FACTORS
        record = store.assessments[session.assessment_id]
        assert record["mitigations"]["supervision"] == "Add a second officer"
        assert record["risk_factors"]["supervision"] == 7

    def test_missing_mitigations_tracks_buffer(self, session):
        run(session.next())
        session.set_risk_factor("complexity", 6)
        run(session.next())
        assert session.missing_mitigations == ["complexity"]
        session.set_mitigation("complexity", "Split into two crews")
        assert session.missing_mitigations == []

    def test_unknown_mitigation_factor_rejected(self, session):
        run(session.next())
        run(session.next())
        with pytest.raises(ValidationError):
            session.set_mitigation("morale", "text")

    def test_failed_save_still_navigates(self, session, store):
        store.fail_update = True
        session.set_time("11:00")
        result = run(session.next())

        assert result.state == SessionState.RISK_FACTORS
        assert result.save_error is not None
        assert session.assessment["time"] == "11:00"
        assert store.assessments[session.assessment_id]["time"] == "09:30"

    def test_manual_save_recovers_after_failure(self, session, store):
        store.fail_update = True
        session.set_time("11:00")
        run(session.next())

        store.fail_update = False
        result = run(session.save())
        assert result.save_error is None
        assert session.last_save_error is None
        assert store.assessments[session.assessment_id]["time"] == "11:00"

    def test_saves_keep_draft_status(self, session, store):
        run(session.next())
        run(session.save())
        assert store.assessments[session.assessment_id]["status"] == "draft"

    def test_recipients_editable_on_any_step(self, session):
        selection = RecipientSelection(groups=["all_officers"])
        session.set_recipients(selection)
        run(session.next())
        session.set_recipients(RecipientSelection(users=["ff-1"]))
        assert session.assessment["notification_recipients"]["users"] == ["ff-1"]

    def test_next_from_review_is_invalid(self, session):
        _to_review(session)
        with pytest.raises(InvalidTransitionError):
            run(session.next())

    def test_prev_from_details_is_invalid(self, session):
        with pytest.raises(InvalidTransitionError):
            run(session.prev())


# ─── Test 4: Publish ───────────────────────────────────────────────────────

class TestPublish:
    """Publish freezes score and level and updates the existing record once."""

    @pytest.fixture
    def session(self, make_session):
        session = make_session()
        run(session.start())
        run(session.next())
        for name in ("supervision", "planning", "team_selection", "team_fitness", "environment", "complexity"):
            session.set_risk_factor(name, 4)
        run(session.next())
        run(session.next())
        return session

    def test_publish_updates_existing_record(self, session, store):
        assessment_id = session.assessment_id
        creates_before = store.create_calls
        updates_before = store.update_calls

        result = run(session.publish())

        assert result.assessment_id == assessment_id
        assert store.create_calls == creates_before
        assert store.update_calls == updates_before + 1
        assert len(store.assessments) == 1
        record = store.assessments[assessment_id]
        assert record["status"] == "complete"
        assert record["total_score"] == 24
        assert record["risk_level"] == {"band": "moderate", "level": "MODERATE RISK", "color": "amber"}
        assert record["completed_by"] == "Capt. Rivera"
        assert record["completed_at"].startswith(TODAY)
        assert session.state == SessionState.PUBLISHED

    def test_publish_message(self, session):
        result = run(session.publish())
        assert result.message == "GAR Assessment published with risk level: MODERATE RISK and score: 24"

    def test_publish_flushes_unsaved_buffer(self, session, store):
        run(session.prev())
        session.set_mitigation("planning", "Brief the crew twice")
        run(session.next())
        run(session.publish())
        assert store.assessments[session.assessment_id]["mitigations"]["planning"] == "Brief the crew twice"

    def test_publish_failure_stays_draft(self, session, store):
        store.fail_update = True
        with pytest.raises(PublishError):
            run(session.publish())

        assert session.state == SessionState.REVIEW
        assert store.assessments[session.assessment_id]["status"] == "draft"

        store.fail_update = False
        run(session.publish())
        assert store.assessments[session.assessment_id]["status"] == "complete"

    def test_overlapping_publish_writes_and_notifies_once(self, session, store, provider):
        session.set_recipients(RecipientSelection(groups=["all_officers"]))
        store.update_delay = 0.01
        updates_before = store.update_calls

        async def publish_twice():
            return await asyncio.gather(session.publish(), session.publish(), return_exceptions=True)

        first, second = run(publish_twice())

        assert first.assessment_id == session.assessment_id
        assert isinstance(second, InvalidTransitionError)
        assert store.update_calls == updates_before + 1
        assert sorted(provider.attempted) == sorted([
            "rivera@firedept.org", "okafor@firedept.org", "chen@firedept.org",
        ])
        assert session.state == SessionState.PUBLISHED

    def test_discard_rejected_while_publishing(self, session, store):
        store.update_delay = 0.01

        async def publish_and_discard():
            return await asyncio.gather(session.publish(), session.discard(), return_exceptions=True)

        published, discarded = run(publish_and_discard())

        assert isinstance(discarded, InvalidTransitionError)
        assert published.assessment_id == session.assessment_id
        assert store.assessments[session.assessment_id]["status"] == "complete"

    def test_publish_only_from_review(self, make_session):
        session = make_session()
        run(session.start())
        with pytest.raises(InvalidTransitionError):
            run(session.publish())

    def test_published_session_is_read_only(self, session):
        run(session.publish())
        with pytest.raises(InvalidTransitionError):
            session.set_risk_factor("planning", 9)
        with pytest.raises(InvalidTransitionError):
            run(session.save())
        with pytest.raises(InvalidTransitionError):
            run(session.discard())

    def test_color_scheme_frozen_level(self, make_session, store):
        session = make_session(scheme="color")
        run(session.start())
        _to_review(session)
        run(session.publish())
        assert store.assessments[session.assessment_id]["risk_level"]["level"] == "GREEN"

    def test_empty_selection_sends_nothing(self, session, provider):
        result = run(session.publish())
        assert result.dispatch is None
        assert result.notification_warning is None
        assert provider.attempted == []

    def test_publish_notifies_resolved_recipients(self, session, provider):
        session.set_recipients(RecipientSelection(groups=["all_officers"], users=["ff-1"]))
        result = run(session.publish())

        assert sorted(provider.attempted) == sorted([
            "rivera@firedept.org", "okafor@firedept.org", "chen@firedept.org", "diaz@firedept.org",
        ])
        assert result.dispatch.success
        assert result.notification_warning is None
        assert "Email notifications have been sent" in result.message
        subjects = {p["subject"] for p in provider.sent}
        assert subjects == {"Caution: Moderate Risk GAR Assessment - All Stations"}

    def test_notification_failure_is_a_warning(self, make_session, store, settings):
        provider = FakeProvider(fail_for={"chen@firedept.org"})
        dispatcher = NotificationDispatcher(provider=provider, app_base_url=settings.app_base_url)
        session = make_session(dispatcher=dispatcher)
        run(session.start())
        session.set_recipients(RecipientSelection(groups=["all_officers"]))
        _to_review(session)

        result = run(session.publish())

        assert session.state == SessionState.PUBLISHED
        assert store.assessments[session.assessment_id]["status"] == "complete"
        assert result.notification_warning == "Email notifications could not be sent to 1 of 3 recipient(s)."
        assert "still published successfully" in result.message
        assert len(provider.sent) == 2

    def test_directory_failure_is_a_warning(self, session, store):
        session.set_recipients(RecipientSelection(groups=["all_active"]))
        store.fail_users = True
        result = run(session.publish())
        assert store.assessments[session.assessment_id]["status"] == "complete"
        assert result.notification_warning == "There was an issue sending email notifications."

    def test_missing_dispatcher_is_a_warning(self, make_session, store):
        session = make_session(dispatcher=None)
        run(session.start())
        session.set_recipients(RecipientSelection(groups=["all_chiefs"]))
        _to_review(session)
        result = run(session.publish())
        assert result.notification_warning == "Email notifications are not configured."
        assert store.assessments[session.assessment_id]["status"] == "complete"


# ─── Test 5: Discard ───────────────────────────────────────────────────────

class TestDiscard:
    """Discard deletes the draft with audit metadata; failures are tolerated."""

    def test_discard_deletes_and_audits(self, make_session, store):
        session = make_session()
        run(session.start())
        assessment_id = session.assessment_id

        result = run(session.discard())

        assert result.state == SessionState.DISCARDED
        assert assessment_id not in store.assessments
        assert store.audit_log[-1]["entity_id"] == assessment_id
        assert store.audit_log[-1]["actor_id"] == "cap-1"
        assert store.audit_log[-1]["actor_email"] == "rivera@firedept.org"
        assert store.audit_log[-1]["actor_name"] == "Capt. Rivera"

    def test_discard_failure_still_closes_session(self, make_session, store):
        session = make_session()
        run(session.start())
        store.fail_delete = True

        result = run(session.discard())

        assert result.state == SessionState.DISCARDED
        assert session.assessment_id in store.assessments

    def test_discard_before_start_has_nothing_to_delete(self, make_session, store):
        session = make_session()
        run(session.discard())
        assert session.state == SessionState.DISCARDED
        assert store.audit_log == []

    def test_discarded_session_cannot_continue(self, make_session):
        session = make_session()
        run(session.start())
        run(session.discard())
        with pytest.raises(InvalidTransitionError):
            run(session.next())


# ─── Test 6: Resume ────────────────────────────────────────────────────────

class TestResume:
    """An existing draft reopens on step 1 for users allowed to edit it."""

    def test_resume_own_draft(self, make_session, store):
        record = run(store.create_assessment(_draft()))
        session = make_session()
        result = run(session.resume(record))
        assert result.state == SessionState.DETAILS
        assert session.assessment_id == record["id"]
        assert session.stations == ["Station 1", "Station 2"]

    def test_resume_fetches_weather_when_blank(self, make_session, store, fake_weather):
        record = run(store.create_assessment(_draft()))
        session = make_session()
        run(session.resume(record))
        assert fake_weather.calls == [False]
        assert session.buffer.weather["temperature"] == "58"

    def test_resume_keeps_recorded_weather(self, make_session, store, fake_weather):
        record = run(store.create_assessment({**_draft(), "weather": {"temperature": "49"}}))
        session = make_session()
        run(session.resume(record))
        assert fake_weather.calls == []
        assert session.buffer.weather["temperature"] == "49"

    def test_resume_without_weather_fetch(self, make_session, store, fake_weather):
        record = run(store.create_assessment(_draft()))
        session = make_session()
        run(session.resume(record, fetch_weather=False))
        assert fake_weather.calls == []
        assert session.state == SessionState.DETAILS

    def test_resume_complete_assessment_rejected(self, make_session, store):
        record = run(store.create_assessment(_draft(status="complete")))
        with pytest.raises(InvalidTransitionError):
            run(make_session().resume(record))

    def test_captain_may_resume_another_users_draft(self, make_session, store):
        record = run(store.create_assessment(_draft(user_id="cap-2")))
        session = make_session()
        run(session.resume(record))
        assert session.state == SessionState.DETAILS

    def test_firefighter_may_not_resume_another_users_draft(self, make_session, store):
        record = run(store.create_assessment(_draft(user_id="cap-2")))
        with pytest.raises(PermissionDeniedError):
            run(make_session(actor=_actor("ff-1")).resume(record))

    def test_resume_without_id_rejected(self, make_session):
        with pytest.raises(ValidationError):
            run(make_session().resume(_draft()))

    def test_resumed_draft_publishes_in_place(self, make_session, store):
        record = run(store.create_assessment(_draft()))
        session = make_session()
        run(session.resume(record))
        _to_review(session)
        result = run(session.publish())
        assert result.assessment_id == record["id"]
        assert len(store.assessments) == 1


# ─── Test 7: Session registry ──────────────────────────────────────────────

class TestSessionRegistry:

    def test_add_get_remove(self, make_session):
        registry = SessionRegistry()
        session = make_session()
        run(session.start())
        registry.add(session)
        assert registry.get(session.assessment_id) is session
        registry.remove(session.assessment_id)
        assert registry.get(session.assessment_id) is None

    def test_unstarted_session_not_registered(self, make_session):
        registry = SessionRegistry()
        registry.add(make_session())
        assert registry._sessions == {}

    def test_idle_sessions_evicted(self, make_session):
        now = [1000.0]
        registry = SessionRegistry(idle_timeout=timedelta(minutes=30), clock=lambda: now[0])
        session = make_session()
        run(session.start())
        registry.add(session)

        now[0] += 29 * 60
        assert registry.get(session.assessment_id) is session

        now[0] += 29 * 60
        assert registry.get(session.assessment_id) is session

        now[0] += 31 * 60
        assert registry.get(session.assessment_id) is None
        assert len(registry) == 0

    def test_evict_idle_reports_count(self, make_session, store):
        now = [0.0]
        registry = SessionRegistry(idle_timeout=timedelta(seconds=60), clock=lambda: now[0])
        for user_id in ("cap-1", "cap-2"):
            session = make_session(actor=_actor(user_id))
            run(session.start())
            registry.add(session)
        now[0] = 61.0
        assert registry.evict_idle() == 2
        assert len(registry) == 0
