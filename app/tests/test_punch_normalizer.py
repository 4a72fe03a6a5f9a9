"""
Tests for punch normalization: field extraction, direction inference, timestamps, date filter
"""
from datetime import date, datetime

import pytest

from app.schemas.device import DeviceProfile
from app.schemas.punch import PunchDirection
from app.services.punch_normalizer import BADGE, infer_direction, normalize, normalize_all
from app.utils.datetime_utils import format_local_timestamp

PROFILE = DeviceProfile(id=7, alias="Lobby", ip="10.0.0.7", serial_number="SN-7")


def test_timestamp_is_zero_padded_with_milliseconds():
    """Test that structured dates render as YYYY-MM-DD HH:MM:SS.fff"""
    assert format_local_timestamp(datetime(2025, 1, 5, 8, 3, 9, 7000)) == "2025-01-05 08:03:09.007"
    assert format_local_timestamp(datetime(2025, 12, 31, 23, 59, 59)) == "2025-12-31 23:59:59.000"
    assert format_local_timestamp(date(2025, 2, 1)) == "2025-02-01 00:00:00.000"


def test_unstructured_timestamp_passes_through():
    """Test that a non-date timestamp keeps its string form"""
    assert format_local_timestamp("10/01/2025 8:00") == "10/01/2025 8:00"
    punch = normalize({"user_id": "5", "timestamp": "10/01/2025 8:00"}, PROFILE)
    assert punch.timestamp_local == "10/01/2025 8:00"


def test_timestamp_keeps_wall_clock_reading():
    """Test that tz-aware values are not converted"""
    from datetime import timedelta, timezone
    aware = datetime(2025, 1, 10, 8, 0, 0, tzinfo=timezone(timedelta(hours=8)))
    assert format_local_timestamp(aware) == "2025-01-10 08:00:00.000"


@pytest.mark.parametrize("length", [1, 2, 5, 8])
def test_direction_alternates_by_position_without_signal(length):
    """Test that records with no direction field alternate IN/OUT by index"""
    records = [{"user_id": "1", "timestamp": datetime(2025, 1, 10, 8, i)} for i in range(length)]
    punches = normalize_all(records, PROFILE)

    for i, punch in enumerate(punches):
        expected = PunchDirection.IN if i % 2 == 0 else PunchDirection.OUT
        assert punch.direction == expected


def test_explicit_direction_wins_over_position():
    """Test that an explicit direction field is used whatever the position"""
    assert infer_direction({"punch": 0}, 1) == PunchDirection.IN
    assert infer_direction({"type": "0"}, 1) == PunchDirection.IN
    assert infer_direction({"state": "IN"}, 1) == PunchDirection.IN
    assert infer_direction({"in_out": 1}, 0) == PunchDirection.OUT
    assert infer_direction({"punch": 4}, 0) == PunchDirection.OUT


def test_direction_position_uses_unfiltered_index():
    """Test that the date filter does not shift the positional direction"""
    records = [
        {"user_id": "1", "timestamp": datetime(2025, 1, 9, 17, 0)},
        {"user_id": "1", "timestamp": datetime(2025, 1, 10, 8, 0)},
    ]
    punches = normalize_all(records, PROFILE, date_from=date(2025, 1, 10))

    assert len(punches) == 1
    assert punches[0].direction == PunchDirection.OUT


def test_badge_extraction_tries_candidates_in_order():
    """Test that the first non-empty badge candidate wins"""
    assert BADGE.extract({"badge_number": "A1", "user_id": "9"}) == "A1"
    assert BADGE.extract({"badge_number": "", "deviceUserId": "D2", "user_id": "9"}) == "D2"
    assert BADGE.extract({"employee_id": "E3", "uid": 4}) == "E3"
    assert BADGE.extract({"uid": 4}) == 4
    assert BADGE.extract({}) is None


def test_normalize_maps_device_record():
    """Test normalization of a device-client shaped record"""
    raw = {"uid": 12, "user_id": "138", "timestamp": datetime(2025, 1, 10, 8, 0), "status": 15, "punch": 1}
    punch = normalize(raw, PROFILE, index=0)

    assert punch.badge_number == "138"
    assert punch.timestamp_local == "2025-01-10 08:00:00.000"
    assert punch.direction == PunchDirection.OUT
    assert punch.verify_mode == 15
    assert punch.work_code == 0
    assert punch.device_alias == "Lobby"
    assert punch.device_serial == "SN-7"
    assert punch.source_device_id == "7"
    assert punch.device_user_id == "138"
    assert punch.user_sn == "12"


def test_source_device_id_prefers_machine_number():
    """Test that the terminal machine number identifies the source when set"""
    profile = DeviceProfile(id=7, alias="Lobby", ip="10.0.0.7", machine_number=101)
    punch = normalize({"user_id": "1", "timestamp": datetime(2025, 1, 10, 8, 0)}, profile)
    assert punch.source_device_id == "101"


def test_defaults_for_missing_verify_mode_and_work_code():
    """Test default verify mode 1 and work code 0"""
    punch = normalize({"user_id": "1", "recordTime": datetime(2025, 1, 10, 8, 0), "workCode": "x"}, PROFILE)
    assert punch.verify_mode == 1
    assert punch.work_code == 0


def test_record_without_timestamp_is_rejected_and_skipped():
    """Test that a record with no timestamp raises alone and is skipped in a batch"""
    with pytest.raises(ValueError):
        normalize({"user_id": "1"}, PROFILE)

    punches = normalize_all([{"user_id": "1"}, {"user_id": "2", "time": datetime(2025, 1, 10, 8, 0)}], PROFILE)
    assert [p.badge_number for p in punches] == ["2"]


def test_date_range_is_inclusive():
    """Test that both bounds of the date filter are inclusive"""
    records = [
        {"user_id": "1", "timestamp": datetime(2025, 1, 9, 23, 59, 59)},
        {"user_id": "1", "timestamp": datetime(2025, 1, 10, 0, 0)},
        {"user_id": "1", "timestamp": datetime(2025, 1, 11, 23, 59, 59)},
        {"user_id": "1", "timestamp": datetime(2025, 1, 12, 0, 0)},
    ]
    punches = normalize_all(records, PROFILE, date(2025, 1, 10), date(2025, 1, 11))

    assert [p.timestamp_local[:10] for p in punches] == ["2025-01-10", "2025-01-11"]
