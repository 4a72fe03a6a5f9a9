"""
Dedup & persistence engine for attendance records.

filter_new() resolves badges and drops punches already in the store (full dedup key).
persist() writes the survivors one by one, re-checking existence right before each
insert; a collision there (concurrent run on the same device) counts as already saved.
"""
import logging
from datetime import date
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import and_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from app.constants import CHECK_TYPE_IN, DEFAULT_VERIFY_MODE, DEFAULT_WORK_CODE, UNKNOWN_EMPLOYEE_NAME
from app.models.attendance import AttendanceRecord, DEDUP_KEY_COLUMNS
from app.models.employee import Employee
from app.schemas.punch import NormalizedPunch, ResolvedPunch, StoredRecordOut, UnregisteredEmployee
from app.schemas.sync import FilterResult, PersistResult
from app.services.identity_resolver import resolve_punch
from app.services.sync_progress import SyncProgress

_log = logging.getLogger(__name__)

# Progress window used by persist()
SAVE_PROGRESS_START = 90
SAVE_PROGRESS_END = 99


def record_key(punch: ResolvedPunch) -> Dict[str, Any]:
    """Column values of the dedup key for a resolved punch."""
    sensor_id = punch.source_device_id or punch.device_alias or ""
    return {
        "user_id": punch.user_id,
        "check_time": punch.timestamp_local,
        "check_type": punch.direction.value if punch.direction else CHECK_TYPE_IN,
        "verify_code": punch.verify_mode or DEFAULT_VERIFY_MODE,
        "sensor_id": str(sensor_id),
        "memo": "",
        "work_code": punch.work_code or DEFAULT_WORK_CODE,
        "sn": punch.device_serial or punch.user_sn or "",
        "user_ext_fmt": punch.reserved or "",
    }


def _key_filter(key: Dict[str, Any]):
    return and_(*(getattr(AttendanceRecord, column) == key[column] for column in DEDUP_KEY_COLUMNS))


def record_exists(db: Session, punch: ResolvedPunch) -> bool:
    """True when a record with the full dedup key is already stored."""
    return db.query(AttendanceRecord.id).filter(_key_filter(record_key(punch))).first() is not None


def _collect_unregistered(unresolved: List[NormalizedPunch]) -> List[UnregisteredEmployee]:
    by_badge: Dict[str, List[NormalizedPunch]] = {}
    for punch in unresolved:
        by_badge.setdefault(punch.badge_number or "", []).append(punch)

    entries = []
    for badge, punches in by_badge.items():
        times = sorted(p.timestamp_local for p in punches)
        entries.append(
            UnregisteredEmployee(
                badge_number=badge,
                name=UNKNOWN_EMPLOYEE_NAME.format(badge=badge),
                log_count=len(punches),
                first_log_time=times[0],
                last_log_time=times[-1],
                device_name=punches[0].device_alias,
                logs=punches,
            )
        )
    return entries


def filter_new(
    db: Session,
    punches: Iterable[NormalizedPunch],
    progress: Optional[SyncProgress] = None,
    progress_start: int = 60,
    progress_end: int = 90,
) -> FilterResult:
    """
    Resolve badges and drop punches already present in the store or earlier in the batch

    Unresolved badges never abort the batch; they are grouped per badge with their
    first/last timestamps and punch count.

    Args:
        db: Database session
        punches: Normalized punches from one device
        progress: Optional run progress to report per-record processing

    Returns:
        FilterResult with unique resolvable punches, duplicate/unresolved counts and unregistered badges
    """
    punches = list(punches)
    result = FilterResult()
    unresolved: List[NormalizedPunch] = []
    seen: Set[Tuple[Any, ...]] = set()
    total = len(punches)
    step_every = max(1, total // 20)

    for index, punch in enumerate(punches, start=1):
        identity = resolve_punch(db, punch)
        if identity is None:
            unresolved.append(punch)
        else:
            resolved = ResolvedPunch(**punch.model_dump(), user_id=identity.user_id, user_name=identity.name)
            key = tuple(record_key(resolved).values())
            if key in seen or record_exists(db, resolved):
                result.duplicate_count += 1
            else:
                seen.add(key)
                result.unique_punches.append(resolved)

        if progress is not None:
            progress.set_counts(processed=index)
            if index % step_every == 0 or index == total:
                pct = progress_start + (progress_end - progress_start) * index / total
                progress.update(pct, "Checking duplicates", f"Processed {index} of {total} punches")

    result.skipped_unresolved_count = len(unresolved)
    result.unregistered = _collect_unregistered(unresolved)
    if unresolved:
        _log.info(
            "%d punches from %d unregistered badges skipped",
            len(unresolved), len(result.unregistered),
        )
    return result


def persist(
    db: Session,
    punches: Iterable[ResolvedPunch],
    progress: Optional[SyncProgress] = None,
) -> PersistResult:
    """
    Insert resolved punches, idempotently

    Each insert is preceded by an existence check on the full dedup key and is
    committed on its own, so one failing row does not undo the others.

    Returns:
        PersistResult with saved/error/already-saved counts and the saved punches
    """
    punches = list(punches)
    result = PersistResult()
    total = len(punches)

    for index, punch in enumerate(punches, start=1):
        key = record_key(punch)
        try:
            if db.query(AttendanceRecord.id).filter(_key_filter(key)).first() is not None:
                result.already_saved_count += 1
            else:
                db.add(AttendanceRecord(**key))
                db.commit()
                result.saved_count += 1
                result.saved_records.append(punch)
        except IntegrityError:
            db.rollback()
            result.already_saved_count += 1
            _log.debug("Punch already saved concurrently: user=%s time=%s", punch.user_id, punch.timestamp_local)
        except SQLAlchemyError as e:
            db.rollback()
            result.error_count += 1
            message = f"Failed to save punch for user {punch.user_id} at {punch.timestamp_local}: {e}"
            _log.error(message)
            if progress is not None:
                progress.add_error(message)

        if progress is not None:
            progress.set_counts(saved=result.saved_count)
            pct = SAVE_PROGRESS_START + (SAVE_PROGRESS_END - SAVE_PROGRESS_START) * index / total
            progress.update(pct, "Saving", f"Saved {result.saved_count} of {total} punches")

    _log.info(
        "Persisted %d punches (%d already saved, %d errors)",
        result.saved_count, result.already_saved_count, result.error_count,
    )
    return result


def list_stored_records(
    db: Session,
    date_from: date,
    date_to: date,
    sensor_id: Optional[str] = None,
) -> List[StoredRecordOut]:
    """
    Stored attendance records with the directory entry they belong to

    Args:
        date_from: First day (inclusive)
        date_to: Last day (inclusive)
        sensor_id: Restrict to one source device

    Returns:
        Records ordered by check_time
    """
    query = (
        db.query(AttendanceRecord, Employee)
        .outerjoin(Employee, Employee.id == AttendanceRecord.user_id)
        .filter(
            AttendanceRecord.check_time >= date_from.isoformat(),
            # "YYYY-MM-DD~" sorts after any time on that day
            AttendanceRecord.check_time < f"{date_to.isoformat()}~",
        )
    )
    if sensor_id is not None:
        query = query.filter(AttendanceRecord.sensor_id == sensor_id)

    items = []
    for record, employee in query.order_by(AttendanceRecord.check_time, AttendanceRecord.id).all():
        items.append(
            StoredRecordOut(
                id=record.id,
                user_id=record.user_id,
                name=employee.name if employee else None,
                badge_number=employee.badge_number if employee else None,
                department=employee.department if employee else None,
                check_time=record.check_time,
                check_type=record.check_type,
                verify_code=record.verify_code,
                sensor_id=record.sensor_id,
                work_code=record.work_code,
                sn=record.sn,
            )
        )
    return items


def count_stored_records(db: Session, sensor_id: str) -> int:
    """Number of stored records attributed to one source device."""
    return db.query(AttendanceRecord.id).filter(AttendanceRecord.sensor_id == sensor_id).count()
