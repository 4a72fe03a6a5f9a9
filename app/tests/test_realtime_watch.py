"""
Tests for the realtime watch loop and session registry
"""
from datetime import datetime, timedelta

import pytest
from fastapi import HTTPException

from app.core.security import decode_token
from app.models.employee import Employee
from app.schemas.device import DeviceProfile
from app.services.realtime_watch import SessionRegistry, authenticate_login, select_candidate
from app.tests.fakes import punch_record, wait_for

NOW = datetime(2025, 1, 10, 8, 0, 10)


def start_watch(registry, device) -> DeviceProfile:
    """Start watching and wait for the poller's first (empty) poll"""
    profile = DeviceProfile.model_validate(device)
    assert registry.start(profile) is True
    assert wait_for(lambda: registry.status().last_poll_times.get(profile.id) is not None)
    return profile


def poll(registry, device_id, now=NOW):
    return registry.watcher(device_id).loop.poll_once(now=now)


def test_select_candidate_picks_newest_inside_window():
    """Test window selection: newest, not older than the window, never in the future"""
    records = [
        {"user_id": "1", "timestamp": NOW - timedelta(seconds=6)},
        {"user_id": "2", "timestamp": NOW - timedelta(seconds=4)},
        {"user_id": "3", "timestamp": NOW - timedelta(seconds=1)},
        {"user_id": "4", "timestamp": NOW + timedelta(seconds=2)},
        {"user_id": "5"},
    ]
    record, when = select_candidate(records, NOW, 5)

    assert record["user_id"] == "3"
    assert when == NOW - timedelta(seconds=1)


def test_select_candidate_edges():
    """Test inclusive window edges and empty results"""
    assert select_candidate([{"timestamp": NOW}], NOW, 5)[1] == NOW
    assert select_candidate([{"timestamp": NOW - timedelta(seconds=5)}], NOW, 5) is not None
    assert select_candidate([{"timestamp": NOW - timedelta(seconds=5, milliseconds=1)}], NOW, 5) is None
    assert select_candidate([], NOW, 5) is None
    assert select_candidate([{"recordTime": "2025-01-10T08:00:08"}], NOW, 5)[1] == datetime(2025, 1, 10, 8, 0, 8)


def test_new_punch_issues_one_auth_and_advances_watermark(db, employee, device, fleet, registry):
    """Test that a fresh punch produces an auth result with a login token"""
    profile = start_watch(registry, device)
    punch_time = NOW - timedelta(seconds=2)
    fleet[profile.id].records = [punch_record("138", punch_time)]

    auth = poll(registry, profile.id)

    assert auth is not None
    assert auth.user.user_id == employee.id
    assert auth.user.name == "Maria Santos"
    assert auth.login_time == "2025-01-10 08:00:08.000"
    assert registry.watermark(profile.id) == punch_time
    assert registry.last_auth(profile.id) == auth
    payload = decode_token(auth.token)
    assert payload["USERID"] == employee.id
    assert payload["role"] == "employee"
    assert payload["machineId"] == profile.id


def test_same_punch_fires_only_once(db, employee, device, fleet, registry):
    """Test that repeated polls over the same punch are no-ops"""
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=2))]

    results = [poll(registry, profile.id, NOW + timedelta(milliseconds=100 * i)) for i in range(5)]

    assert sum(1 for r in results if r is not None) == 1


def test_watermark_is_monotonic(db, employee, device, fleet, registry):
    """Test that the watermark never moves backwards across polls"""
    profile = start_watch(registry, device)
    sequence = [2, 1, 4, 3, 4, 6]
    seen = []
    for offset in sequence:
        fleet[profile.id].records = [punch_record("138", NOW + timedelta(seconds=offset))]
        poll(registry, profile.id, NOW + timedelta(seconds=offset + 1))
        seen.append(registry.watermark(profile.id))

    assert seen == sorted(seen)
    assert registry.watermark(profile.id) == NOW + timedelta(seconds=6)


def test_unresolved_badge_advances_watermark_without_auth(db, employee, device, fleet, registry):
    """Test that an unknown badge is consumed without an auth result"""
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("999", NOW - timedelta(seconds=1))]

    assert poll(registry, profile.id) is None
    assert registry.watermark(profile.id) == NOW - timedelta(seconds=1)
    assert registry.last_auth(profile.id) is None


def test_inactive_employee_gets_no_token(db, employee, device, fleet, registry):
    """Test that a deactivated employee's badge-in is consumed without an auth result"""
    employee.active = False
    db.commit()
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]

    assert poll(registry, profile.id) is None
    assert registry.watermark(profile.id) == NOW - timedelta(seconds=1)
    assert registry.last_auth(profile.id) is None


def test_poll_errors_are_swallowed(db, employee, device, fleet, registry):
    """Test that a failing poll is logged and the loop keeps its state"""
    profile = start_watch(registry, device)
    fleet.refuse(profile.id)

    assert poll(registry, profile.id) is None
    assert registry.is_watching(profile.id)

    fleet[profile.id].connect_error = None
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]
    assert poll(registry, profile.id) is not None


def test_start_twice_is_a_noop(db, device, registry):
    """Test that starting an active watch reports it and keeps one loop"""
    profile = start_watch(registry, device)
    watcher = registry.watcher(profile.id)

    assert registry.start(profile) is False
    assert registry.watcher(profile.id) is watcher
    assert registry.status().total_listeners == 1


def test_stop_clears_state(db, employee, device, fleet, registry):
    """Test that stopping clears watermark and auth result and ends the threads"""
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]
    loop = registry.watcher(profile.id).loop
    watcher = registry.watcher(profile.id)
    assert loop.poll_once(now=NOW) is not None

    assert registry.stop(profile.id) is True

    assert not registry.is_watching(profile.id)
    assert registry.watermark(profile.id) is None
    assert registry.last_auth(profile.id) is None
    assert not watcher.alive
    assert registry.stop(profile.id) is False
    # A poll from the stopped generation cannot write
    assert loop.poll_once(now=NOW + timedelta(seconds=1)) is None


def test_restart_starts_from_empty_watermark(db, employee, device, fleet, registry):
    """Test that a punch seen before stop fires again after a restart"""
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]
    assert poll(registry, profile.id) is not None
    registry.stop(profile.id)
    fleet[profile.id].records = []

    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]

    assert poll(registry, profile.id) is not None


def test_supervisor_restarts_dead_poller(db, device, registry):
    """Test that a poller that disappeared is restarted on health check"""
    profile = start_watch(registry, device)
    watcher = registry.watcher(profile.id)
    assert watcher.check_health() is False

    watcher._poller = None
    assert watcher.check_health() is True
    assert watcher.restarts == 1


def test_status_lists_active_devices(db, employee, device, fleet, registry):
    """Test the status snapshot"""
    profile = start_watch(registry, device)
    fleet[profile.id].records = [punch_record("138", NOW - timedelta(seconds=1))]
    poll(registry, profile.id)

    status = registry.status()

    assert status.active_devices == [profile.id]
    assert status.total_listeners == 1
    assert status.last_processed_times[profile.id] == NOW - timedelta(seconds=1)
    assert status.auth_results[profile.id].user.badge_number == "138"


def test_shutdown_stops_every_loop(db, session_factory, fleet):
    """Test registry shutdown"""
    registry = SessionRegistry(session_factory, client_factory=fleet, poll_interval=3600, health_interval=3600)
    profiles = [DeviceProfile(id=i, alias=f"Gate {i}", ip=f"10.0.0.{i}") for i in (1, 2)]
    for profile in profiles:
        registry.start(profile)
    watchers = [registry.watcher(p.id) for p in profiles]

    registry.shutdown()

    assert registry.status().total_listeners == 0
    assert not any(w.alive for w in watchers)


def test_authenticate_login_for_active_user(db, employee):
    """Test token issue for an active directory user"""
    response = authenticate_login(db, machine_id=3, user_id=employee.id, login_time="2025-01-10 08:00:08.000")

    assert response.success is True
    assert response.message == "Welcome, Maria Santos!"
    assert decode_token(response.token)["machineId"] == 3


def test_authenticate_login_rejects_inactive_or_missing_user(db):
    """Test 404 for missing or inactive users"""
    inactive = Employee(badge_number="500", name="Former Staff", active=False)
    db.add(inactive)
    db.commit()

    for user_id in (inactive.id, 4242):
        with pytest.raises(HTTPException) as exc_info:
            authenticate_login(db, machine_id=1, user_id=user_id, login_time="2025-01-10 08:00:00.000")
        assert exc_info.value.status_code == 404
