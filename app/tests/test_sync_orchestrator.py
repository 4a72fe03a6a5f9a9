"""
Tests for single-device and all-device sync runs
"""
import struct
from datetime import date, datetime

import pytest

from app.constants import EVENT_COMPLETE, EVENT_ERROR
from app.core.exceptions import DeviceConnectionError, DeviceProtocolError
from app.models.attendance import AttendanceRecord
from app.models.device import Device
from app.schemas.device import DeviceProfile
from app.services import device_client
from app.services.device_client import DeviceClient
from app.services.sync_orchestrator import SyncOrchestrator
from app.services.sync_progress import SyncProgress
from app.schemas.sync import RunResult
from app.tests.fakes import FakeFleet, punch_record


def add_devices(db, count):
    devices = [Device(alias=f"Gate {i}", ip=f"10.0.0.{i}", serial_number=f"SN-{i}") for i in range(1, count + 1)]
    db.add_all(devices)
    db.commit()
    return [DeviceProfile.model_validate(d) for d in devices]


def test_sync_one_saves_resolvable_and_reports_unregistered(db, employee, device, fleet, orchestrator):
    """Test a full run against one device"""
    fleet[device.id].records = [
        punch_record("138", datetime(2025, 1, 10, 8, 0)),
        punch_record("999", datetime(2025, 1, 10, 8, 5)),
    ]
    profile = DeviceProfile.model_validate(device)

    result = orchestrator.sync_one(db, profile)

    assert result.success is True
    assert result.total_logs == 2
    assert result.saved == 1
    assert result.skipped == 1
    assert result.error_count == 0
    assert result.unregistered_employees[0].badge_number == "999"
    assert db.query(AttendanceRecord).count() == 1
    assert fleet[device.id].disconnects == 1


def test_second_sync_finds_only_duplicates(db, employee, device, fleet, orchestrator):
    """Test that re-running a sync saves nothing new"""
    fleet[device.id].records = [punch_record("138", datetime(2025, 1, 10, 8, 0))]
    profile = DeviceProfile.model_validate(device)

    orchestrator.sync_one(db, profile)
    again = orchestrator.sync_one(db, profile)

    assert again.saved == 0
    assert again.duplicates == 1
    assert db.query(AttendanceRecord).count() == 1


def test_preview_does_not_persist(db, employee, device, fleet, orchestrator):
    """Test that preview returns would-be-new punches without saving"""
    fleet[device.id].records = [
        punch_record("138", datetime(2025, 1, 10, 8, 0)),
        punch_record("138", datetime(2025, 1, 10, 17, 0), punch=1),
    ]

    result = orchestrator.sync_one(db, DeviceProfile.model_validate(device), preview=True)

    assert result.preview is True
    assert result.saved == 0
    assert len(result.new_logs) == 2
    assert result.new_logs[0].user_name == "Maria Santos"
    assert db.query(AttendanceRecord).count() == 0


def test_date_range_limits_what_is_synced(db, employee, device, fleet, orchestrator):
    """Test that only punches inside the range are synced"""
    fleet[device.id].records = [
        punch_record("138", datetime(2025, 1, 9, 8, 0)),
        punch_record("138", datetime(2025, 1, 10, 8, 0)),
    ]

    result = orchestrator.sync_one(db, DeviceProfile.model_validate(device), date(2025, 1, 10), date(2025, 1, 10))

    assert result.total_logs == 1
    assert result.saved == 1


def test_device_failure_becomes_failed_result(db, device, fleet, orchestrator):
    """Test that a connection failure is reported, not raised"""
    fleet.refuse(device.id)

    result = orchestrator.sync_one(db, DeviceProfile.model_validate(device))

    assert result.success is False
    assert "refused" in result.error.lower()


class TruncatedAttendanceZK:
    """pyzk stand-in whose attendance payload is one byte short of a record"""

    def __init__(self, ip, **kwargs):
        pass

    def connect(self):
        return self

    def get_attendance(self):
        return struct.unpack("<I", b"\x01")

    def disconnect(self):
        pass


def test_malformed_device_reply_becomes_failed_result(db, device, session_factory, monkeypatch):
    """Test that a malformed attendance reply fails the run instead of raising"""
    monkeypatch.setattr(device_client, "ZK", TruncatedAttendanceZK)
    orchestrator = SyncOrchestrator(session_factory, DeviceClient, max_workers=1)

    result = orchestrator.sync_one(db, DeviceProfile.model_validate(device))

    assert result.success is False
    assert "Reading attendance failed" in result.error


def test_fetch_logs_raises_device_errors(device, fleet, orchestrator):
    """Test that fetching live punches surfaces protocol failures and still disconnects"""
    fleet[device.id].fetch_error = DeviceProtocolError("Reading attendance failed: bad header")

    with pytest.raises(DeviceProtocolError):
        orchestrator.fetch_logs(DeviceProfile.model_validate(device))
    assert fleet[device.id].disconnects == 1


def test_run_one_ends_with_single_terminal_event(db, employee, device, fleet, orchestrator):
    """Test that a run publishes progress then exactly one complete event"""
    fleet[device.id].records = [punch_record("138", datetime(2025, 1, 10, 8, 0))]
    progress = SyncProgress()
    events = []
    progress.subscribe(events.append)

    orchestrator.run_one(DeviceProfile.model_validate(device), progress=progress)

    terminal = [e for e in events if e.type in (EVENT_COMPLETE, EVENT_ERROR)]
    assert len(terminal) == 1
    assert terminal[0] is events[-1]
    assert terminal[0].type == EVENT_COMPLETE
    assert terminal[0].data["saved"] == 1
    percentages = [e.percentage for e in events[:-1]]
    assert percentages == sorted(percentages)
    assert max(percentages) < 100


def test_run_one_failure_ends_with_error_event(device, fleet, orchestrator, db):
    """Test that a failed device run ends with one error event"""
    fleet.refuse(device.id)
    progress = SyncProgress()
    events = []
    progress.subscribe(events.append)

    result = orchestrator.run_one(DeviceProfile.model_validate(device), progress=progress)

    assert result.success is False
    assert events[-1].type == EVENT_ERROR
    assert sum(1 for e in events if e.type in (EVENT_COMPLETE, EVENT_ERROR)) == 1


@pytest.mark.parametrize("count,failing", [(3, 0), (4, 2), (5, 4)])
def test_sync_all_isolates_failing_device(db, employee, fleet, orchestrator, count, failing):
    """Test that N devices yield N results with only device k failing"""
    profiles = add_devices(db, count)
    for i, profile in enumerate(profiles):
        fleet[profile.id].records = [punch_record("138", datetime(2025, 1, 10, 8, i))]
    fleet.refuse(profiles[failing].id)

    summary = orchestrator.sync_all(profiles)

    assert len(summary.results) == count
    assert [r.machine_id for r in summary.results] == [p.id for p in profiles]
    failed = [r for r in summary.results if not r.success]
    assert [r.machine_id for r in failed] == [profiles[failing].id]
    assert all(r.saved == 1 for r in summary.results if r.success)
    assert summary.total_saved == count - 1


def test_sync_all_partitions_offline_devices(db, employee, fleet, orchestrator):
    """Test that unreachable devices are reported offline and never connected"""
    profiles = add_devices(db, 3)
    for profile in profiles:
        fleet[profile.id].records = [punch_record("138", datetime(2025, 1, 10, 8, profile.id))]
    fleet[profiles[1].id].reachable = False

    summary = orchestrator.sync_all(profiles)

    assert summary.online_machines == 2
    assert summary.offline_machines == 1
    offline = summary.results[1]
    assert offline.success is False
    assert offline.error.startswith("Device offline")
    assert fleet[profiles[1].id].connects == 0


class StubbedRunOrchestrator(SyncOrchestrator):
    """Per-device runs replaced so the worker pool can be exercised without a database"""

    def _sync_in_own_session(self, profile, date_from, date_to, preview, progress):
        if profile.id == 3:
            raise RuntimeError("boom")
        return RunResult(machine_id=profile.id, alias=profile.alias, success=True, saved=1)


def test_sync_all_with_worker_pool(session_factory):
    """Test bounded fan-out isolates an unexpected failure and keeps input order"""
    orchestrator = StubbedRunOrchestrator(session_factory, FakeFleet(), max_workers=3)
    profiles = [DeviceProfile(id=i, alias=f"Gate {i}", ip=f"10.0.0.{i}") for i in range(1, 6)]

    summary = orchestrator.sync_all(profiles)

    assert [r.machine_id for r in summary.results] == [1, 2, 3, 4, 5]
    assert summary.results[2].success is False
    assert summary.results[2].error == "boom"
    assert summary.total_saved == 4


def test_run_all_sends_complete_with_summary(db, employee, fleet, orchestrator):
    """Test that an all-device run ends with one complete event carrying totals"""
    profiles = add_devices(db, 2)
    for profile in profiles:
        fleet[profile.id].records = [punch_record("138", datetime(2025, 1, 10, 8, profile.id))]
    progress = SyncProgress()
    events = []
    progress.subscribe(events.append)

    orchestrator.run_all(profiles, progress=progress)

    assert events[-1].type == EVENT_COMPLETE
    assert events[-1].data["total_saved"] == 2
    assert events[-1].data["total_machines"] == 2


def test_fetch_all_logs_reports_failures_per_device(db, fleet, orchestrator):
    """Test that live fetch from all devices isolates failures"""
    profiles = add_devices(db, 2)
    fleet[profiles[0].id].records = [punch_record("138", datetime(2025, 1, 10, 8, 0))]
    fleet[profiles[1].id].connect_error = DeviceConnectionError("Connection timed out")

    response = orchestrator.fetch_all_logs(profiles)

    assert response.total_machines == 2
    assert response.successful_machines == 1
    assert response.total_logs == 1
    assert response.results[1].error == "Connection timed out"
