"""
Sync orchestrator: one-device and all-device synchronization runs.

Flow per device: Device Client → normalize → resolve → dedup → persist.
Device failures are isolated per device and reported in that device's RunResult.
All-device runs fan out over a bounded thread pool; each worker uses its own DB session.
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import date
from typing import Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.exceptions import DeviceError
from app.schemas.device import DeviceProfile, Reachability
from app.schemas.punch import DeviceFetchResult, FetchAllLogsResponse, NormalizedPunch
from app.schemas.sync import DateRange, PersistResult, RunResult, SyncAllResult
from app.services.device_client import DeviceClient
from app.services.punch_normalizer import normalize_all
from app.services.punch_store import filter_new, persist
from app.services.sync_progress import SyncProgress
from app.utils.json_serializer import to_json_safe

_log = logging.getLogger(__name__)

# Progress windows (percent)
CONNECT_PCT = 10
FETCH_PCT = 30
NORMALIZE_PCT = 50
DEDUP_START_PCT, DEDUP_END_PCT = 60, 90
PREFLIGHT_START_PCT, PREFLIGHT_END_PCT = 5, 20
DEVICES_START_PCT, DEVICES_END_PCT = 20, 95


def _report(progress: Optional[SyncProgress], pct: float, step: str, message: str = "", details: str = "") -> None:
    if progress is not None:
        progress.update(pct, step, message, details)


class SyncOrchestrator:
    """Drives sync runs; collaborators are injected so tests can substitute fake devices."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Callable[[DeviceProfile], DeviceClient] = DeviceClient,
        max_workers: Optional[int] = None,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory
        self.max_workers = max_workers or settings.SYNC_MAX_WORKERS

    # -- fetching -----------------------------------------------------------------

    def fetch_logs(
        self,
        profile: DeviceProfile,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        progress: Optional[SyncProgress] = None,
    ) -> List[NormalizedPunch]:
        """
        Read and normalize a device's punches within the date range (nothing persisted)

        Raises:
            DeviceConnectionError / DeviceProtocolError from the device client
        """
        client = self.client_factory(profile)
        try:
            _report(progress, CONNECT_PCT, "Connecting", f"Connecting to {profile.alias}", f"{profile.ip}:{profile.port}")
            client.connect()
            _report(progress, FETCH_PCT, "Fetching", f"Reading punches from {profile.alias}")
            records = client.fetch_punches()
        finally:
            client.disconnect()

        punches = normalize_all(records, profile, date_from, date_to)
        if progress is not None:
            progress.set_counts(found=len(punches))
        _report(
            progress,
            NORMALIZE_PCT,
            "Normalizing",
            f"Found {len(punches)} punches in range",
            f"{len(records)} punches on device",
        )
        return punches

    def fetch_all_logs(
        self,
        profiles: List[DeviceProfile],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
    ) -> FetchAllLogsResponse:
        """Live punches from every device; a failing device is reported, not raised."""
        def fetch_one(profile: DeviceProfile) -> DeviceFetchResult:
            try:
                logs = self.fetch_logs(profile, date_from, date_to)
            except DeviceError as e:
                return DeviceFetchResult(machine_id=profile.id, machine_alias=profile.alias, success=False, error=e.message)
            return DeviceFetchResult(
                machine_id=profile.id,
                machine_alias=profile.alias,
                success=True,
                logs=logs,
                total_logs=len(logs),
            )

        results = self._map_devices(profiles, fetch_one)
        return FetchAllLogsResponse(
            results=results,
            total_machines=len(profiles),
            successful_machines=sum(1 for r in results if r.success),
            total_logs=sum(r.total_logs for r in results),
            date_from=date_from,
            date_to=date_to,
        )

    # -- single device -------------------------------------------------------------

    def sync_one(
        self,
        db: Session,
        profile: DeviceProfile,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        preview: bool = False,
        progress: Optional[SyncProgress] = None,
    ) -> RunResult:
        """
        Synchronize one device

        With preview=True the run stops after dedup and returns the would-be-new punches.

        Returns:
            RunResult; success=False with error set when the device could not be read
        """
        try:
            punches = self.fetch_logs(profile, date_from, date_to, progress)
        except DeviceError as e:
            _log.warning("Sync of %s failed: %s", profile.alias, e.message)
            if progress is not None:
                progress.add_error(e.message)
            return RunResult(machine_id=profile.id, alias=profile.alias, success=False, preview=preview, error=e.message)

        _report(progress, DEDUP_START_PCT, "Checking duplicates", f"Resolving {len(punches)} punches")
        filtered = filter_new(db, punches, progress, DEDUP_START_PCT, DEDUP_END_PCT)

        result = RunResult(
            machine_id=profile.id,
            alias=profile.alias,
            success=True,
            preview=preview,
            total_logs=len(punches),
            processed=len(punches),
            duplicates=filtered.duplicate_count,
            skipped=filtered.skipped_unresolved_count,
            unregistered_employees=filtered.unregistered,
        )
        if preview:
            result.new_logs = filtered.unique_punches
            _log.info(
                "Preview of %s: %d new, %d duplicates, %d unresolved",
                profile.alias, len(filtered.unique_punches), filtered.duplicate_count, filtered.skipped_unresolved_count,
            )
            return result

        persisted = persist(db, filtered.unique_punches, progress) if filtered.unique_punches else PersistResult()
        result.saved = persisted.saved_count
        result.duplicates += persisted.already_saved_count
        result.error_count = persisted.error_count
        result.new_logs = persisted.saved_records
        _log.info(
            "Sync of %s: %d saved, %d duplicates, %d unresolved, %d errors",
            profile.alias, result.saved, result.duplicates, result.skipped, result.error_count,
        )
        return result

    def run_one(
        self,
        profile: DeviceProfile,
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        preview: bool = False,
        progress: Optional[SyncProgress] = None,
    ) -> RunResult:
        """sync_one in its own session, always ending the progress stream with one terminal event."""
        progress = progress or SyncProgress()
        try:
            result = self._sync_in_own_session(profile, date_from, date_to, preview, progress)
        except Exception as e:
            _log.exception("Sync of %s aborted", profile.alias)
            progress.fail(f"Sync failed: {e}")
            raise
        payload = to_json_safe(result)
        if result.success:
            verb = "Preview" if preview else "Sync"
            progress.complete(payload, f"{verb} completed for {profile.alias}")
        else:
            progress.fail(result.error or "Sync failed", payload)
        return result

    # -- all devices ---------------------------------------------------------------

    def check_reachability(self, profiles: List[DeviceProfile]) -> Dict[int, Reachability]:
        """Pre-flight probe of every device, in parallel."""
        probed = self._map_devices(profiles, lambda p: self.client_factory(p).probe())
        return {p.id: reach for p, reach in zip(profiles, probed)}

    def sync_all(
        self,
        profiles: List[DeviceProfile],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        progress: Optional[SyncProgress] = None,
    ) -> SyncAllResult:
        """
        Synchronize every device

        A pre-flight probe partitions devices into online/offline; offline devices get a
        failed RunResult without being contacted again. One device's failure never aborts
        the others. Results follow the input order.
        """
        _report(progress, PREFLIGHT_START_PCT, "Checking connectivity", f"Testing {len(profiles)} devices")
        reachability = self.check_reachability(profiles)
        online = [p for p in profiles if reachability[p.id].reachable]
        offline = [p for p in profiles if not reachability[p.id].reachable]
        _report(
            progress,
            PREFLIGHT_END_PCT,
            "Connectivity checked",
            f"{len(online)} online, {len(offline)} offline",
            ", ".join(p.alias for p in offline),
        )

        results: Dict[int, RunResult] = {}
        for profile in offline:
            error = f"Device offline: {reachability[profile.id].error or 'not reachable'}"
            results[profile.id] = RunResult(machine_id=profile.id, alias=profile.alias, success=False, error=error)
            if progress is not None:
                progress.add_error(f"{profile.alias}: {error}")

        def on_done(done: int, profile: DeviceProfile, result: RunResult) -> None:
            results[profile.id] = result
            if progress is not None:
                if not result.success:
                    progress.add_error(f"{profile.alias}: {result.error}")
                progress.set_counts(
                    found=sum(r.total_logs for r in results.values()),
                    processed=sum(r.processed for r in results.values()),
                    saved=sum(r.saved for r in results.values()),
                )
            pct = DEVICES_START_PCT + (DEVICES_END_PCT - DEVICES_START_PCT) * done / max(1, len(online))
            _report(progress, pct, "Syncing devices", f"Finished {profile.alias} ({done}/{len(online)})")

        self._run_devices(online, lambda p: self._sync_in_own_session(p, date_from, date_to, False, None), on_done)

        ordered = [results[p.id] for p in profiles]
        return SyncAllResult(
            results=ordered,
            total_machines=len(profiles),
            online_machines=len(online),
            offline_machines=len(offline),
            total_logs=sum(r.total_logs for r in ordered),
            total_saved=sum(r.saved for r in ordered),
            total_duplicates=sum(r.duplicates for r in ordered),
            date_range=DateRange(start_date=date_from, end_date=date_to),
        )

    def run_all(
        self,
        profiles: List[DeviceProfile],
        date_from: Optional[date] = None,
        date_to: Optional[date] = None,
        progress: Optional[SyncProgress] = None,
    ) -> SyncAllResult:
        """sync_all, always ending the progress stream with one terminal event."""
        progress = progress or SyncProgress()
        try:
            result = self.sync_all(profiles, date_from, date_to, progress)
        except Exception as e:
            _log.exception("All-device sync aborted")
            progress.fail(f"Sync failed: {e}")
            raise
        progress.complete(
            to_json_safe(result),
            f"Synced {result.online_machines} of {result.total_machines} devices, {result.total_saved} new punches",
        )
        return result

    # -- helpers -------------------------------------------------------------------

    def _sync_in_own_session(
        self,
        profile: DeviceProfile,
        date_from: Optional[date],
        date_to: Optional[date],
        preview: bool,
        progress: Optional[SyncProgress],
    ) -> RunResult:
        db = self.session_factory()
        try:
            return self.sync_one(db, profile, date_from, date_to, preview, progress)
        finally:
            db.close()

    def _guarded(self, profile: DeviceProfile, fn: Callable[[DeviceProfile], RunResult]) -> RunResult:
        try:
            return fn(profile)
        except Exception as e:
            _log.exception("Unexpected failure syncing %s", profile.alias)
            return RunResult(machine_id=profile.id, alias=profile.alias, success=False, error=str(e))

    def _run_devices(
        self,
        profiles: List[DeviceProfile],
        fn: Callable[[DeviceProfile], RunResult],
        on_done: Callable[[int, DeviceProfile, RunResult], None],
    ) -> None:
        """Run fn per device; on_done is always called on the calling thread."""
        if self.max_workers <= 1 or len(profiles) <= 1:
            for done, profile in enumerate(profiles, start=1):
                on_done(done, profile, self._guarded(profile, fn))
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(profiles))) as pool:
            futures = {pool.submit(self._guarded, p, fn): p for p in profiles}
            for done, future in enumerate(as_completed(futures), start=1):
                on_done(done, futures[future], future.result())

    def _map_devices(self, profiles: List[DeviceProfile], fn: Callable) -> list:
        """Order-preserving map over devices with the configured fan-out."""
        if self.max_workers <= 1 or len(profiles) <= 1:
            return [fn(p) for p in profiles]
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(profiles))) as pool:
            return list(pool.map(fn, profiles))
