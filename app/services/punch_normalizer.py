"""
Punch normalizer: heterogeneous raw device records → NormalizedPunch.

Firmware revisions expose the same facts under different keys, so every field is
read through an ordered list of candidate keys; the first non-empty value wins.

Direction policy, in priority order:
  1. an explicit direction field (type / state / in_out / punch): 0, "0", "I", "IN" → IN, anything else → OUT
  2. no direction signal at all → by position in the device list: even index → IN, odd → OUT
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple

from app.constants import DEFAULT_VERIFY_MODE, DEFAULT_WORK_CODE
from app.schemas.device import DeviceProfile
from app.schemas.punch import NormalizedPunch, PunchDirection
from app.utils.datetime_utils import format_local_timestamp, in_date_range

_log = logging.getLogger(__name__)


class FieldExtractor(NamedTuple):
    """Named, ordered list of raw keys tried for one canonical field"""
    name: str
    candidates: Tuple[str, ...]

    def extract(self, record: Dict[str, Any]) -> Any:
        for key in self.candidates:
            value = record.get(key)
            if value is not None and value != "":
                return value
        return None


BADGE = FieldExtractor(
    "badge_number",
    ("badge_number", "badgeNumber", "device_user_id", "deviceUserId", "user_id", "employee_id", "employeeId", "user_sn", "userSn", "uid"),
)
DEVICE_USER_ID = FieldExtractor("device_user_id", ("device_user_id", "deviceUserId", "user_id"))
USER_SN = FieldExtractor("user_sn", ("user_sn", "userSn", "uid"))
TIMESTAMP = FieldExtractor("timestamp", ("timestamp", "record_time", "recordTime", "time", "date"))
DIRECTION = FieldExtractor("direction", ("type", "state", "in_out", "inOut", "in_out_mode", "inOutMode", "punch"))
VERIFY_MODE = FieldExtractor("verify_mode", ("verify_type", "verifyType", "verify_mode", "verifyMode", "status"))
WORK_CODE = FieldExtractor("work_code", ("work_code", "workCode"))
RESERVED = FieldExtractor("reserved", ("reserved",))

_IN_VALUES = {"0", "I", "IN"}


def infer_direction(record: Dict[str, Any], index: int) -> PunchDirection:
    """Direction from an explicit field, else alternate by position."""
    value = DIRECTION.extract(record)
    if value is not None:
        return PunchDirection.IN if str(value).strip().upper() in _IN_VALUES else PunchDirection.OUT
    return PunchDirection.IN if index % 2 == 0 else PunchDirection.OUT


def _as_int(value: Any, default: int) -> int:
    if value is None:
        return default
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def _as_str(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def normalize(raw: Dict[str, Any], profile: DeviceProfile, index: int = 0) -> NormalizedPunch:
    """
    Convert one raw record into a NormalizedPunch.

    Raises:
        ValueError: if the record carries no timestamp at all
    """
    timestamp = TIMESTAMP.extract(raw)
    if timestamp is None:
        raise ValueError(f"raw punch #{index} from {profile.alias} has no timestamp")

    source_device_id = profile.machine_number if profile.machine_number is not None else profile.id
    return NormalizedPunch(
        badge_number=_as_str(BADGE.extract(raw)),
        timestamp_local=format_local_timestamp(timestamp),
        direction=infer_direction(raw, index),
        verify_mode=_as_int(VERIFY_MODE.extract(raw), DEFAULT_VERIFY_MODE),
        work_code=_as_int(WORK_CODE.extract(raw), DEFAULT_WORK_CODE),
        reserved=_as_str(RESERVED.extract(raw)) or "",
        device_alias=profile.alias,
        device_serial=profile.serial_number,
        source_device_id=_as_str(source_device_id),
        device_user_id=_as_str(DEVICE_USER_ID.extract(raw)),
        user_sn=_as_str(USER_SN.extract(raw)),
    )


def normalize_all(
    records: Iterable[Dict[str, Any]],
    profile: DeviceProfile,
    date_from: Optional[date] = None,
    date_to: Optional[date] = None,
) -> List[NormalizedPunch]:
    """
    Normalize a device's full punch list and keep those inside the date range.

    Position for the direction fallback is the index in the unfiltered list, so the
    same device list always yields the same directions regardless of the range asked for.
    """
    punches = []
    for index, raw in enumerate(records):
        try:
            punch = normalize(raw, profile, index)
        except ValueError as e:
            _log.warning("Skipping raw punch: %s", e)
            continue
        if in_date_range(punch.timestamp_local, date_from, date_to):
            punches.append(punch)
    return punches
