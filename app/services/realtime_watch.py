"""
Realtime watch loop and session registry.

Per watched device: a supervisor thread owns a poller thread and restarts it if it
dies. Each poll reads the device's full punch list, keeps the single newest punch
inside the trailing window (never in the future) and, if it is newer than the
device watermark, resolves the badge, issues a login token and stores the result.

The registry is process-wide state shared by the pollers and the HTTP layer.
Writes for one device are serialized by that device's lock; status reads are not.
A stopped (or restarted) watch bumps the generation so a late poll cannot write.
"""
import functools
import itertools
import logging
import threading
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from fastapi import HTTPException, status
from sqlalchemy.orm import Session

from app.core.config import settings
from app.core.security import create_realtime_login_token
from app.models.employee import Employee
from app.schemas.device import DeviceProfile
from app.schemas.realtime import AuthenticateResponse, AuthResult, AuthUser, WatchStatus
from app.services.device_client import DeviceClient
from app.services.identity_resolver import resolve
from app.services.punch_normalizer import BADGE, TIMESTAMP
from app.utils.datetime_utils import format_local_timestamp, now_local, parse_device_time

_log = logging.getLogger(__name__)


def select_candidate(
    records: List[Dict[str, Any]],
    now: datetime,
    window_seconds: float,
) -> Optional[Tuple[Dict[str, Any], datetime]]:
    """The newest record with 0 <= now - t <= window, or None."""
    window = timedelta(seconds=window_seconds)
    best = None
    for record in records:
        t = parse_device_time(TIMESTAMP.extract(record))
        if t is None:
            continue
        age = now - t
        if age < timedelta(0) or age > window:
            continue
        if best is None or t > best[1]:
            best = (record, t)
    return best


class WatchSession:
    """In-memory state of one watched device"""

    def __init__(self, profile: DeviceProfile, generation: int, started_at: datetime):
        self.profile = profile
        self.generation = generation
        self.started_at = started_at
        self.last_poll_at: Optional[datetime] = None
        self.last_processed_time: Optional[datetime] = None
        self.last_auth: Optional[AuthResult] = None


class WatchLoop:
    """One device's poll logic; run() is the poller thread body"""

    def __init__(self, registry: "SessionRegistry", profile: DeviceProfile, generation: int):
        self.registry = registry
        self.profile = profile
        self.generation = generation

    def poll_once(self, now: Optional[datetime] = None) -> Optional[AuthResult]:
        """One poll cycle; errors are logged and swallowed so the loop keeps running."""
        try:
            return self._poll(now or self.registry.clock())
        except Exception:
            _log.exception("Poll failed for device %s; continuing", self.profile.id)
            return None

    def _poll(self, now: datetime) -> Optional[AuthResult]:
        client = self.registry.client_factory(self.profile)
        try:
            client.connect()
            records = client.fetch_punches()
        finally:
            client.disconnect()

        self.registry.record_poll(self.profile.id, self.generation, now)
        candidate = select_candidate(records, now, self.registry.window_seconds)
        if candidate is None:
            return None

        record, punch_time = candidate
        if not self.registry.is_newer(self.profile.id, punch_time):
            _log.debug("Punch at %s on device %s already processed", punch_time, self.profile.id)
            return None

        auth = self._authenticate(record, punch_time)
        if not self.registry.advance(self.profile.id, self.generation, punch_time, auth):
            return None
        return auth

    def _authenticate(self, record: Dict[str, Any], punch_time: datetime) -> Optional[AuthResult]:
        badge = BADGE.extract(record)
        db = self.registry.session_factory()
        try:
            identity = resolve(db, None if badge is None else str(badge), active_only=True)
        finally:
            db.close()

        if identity is None:
            _log.warning("Realtime punch on device %s: no active user for badge %s", self.profile.id, badge)
            return None

        _log.info(
            "Realtime login detected: %s (%s) at %s",
            identity.name, identity.badge_number, self.profile.alias,
        )
        return AuthResult(
            user=AuthUser(
                user_id=identity.user_id,
                name=identity.name,
                badge_number=identity.badge_number,
                department=identity.department,
            ),
            token=create_realtime_login_token(identity.user_id, self.profile.id),
            login_time=format_local_timestamp(punch_time),
        )

    def run(self, stop: threading.Event) -> None:
        while not stop.is_set():
            self.poll_once()
            stop.wait(self.registry.poll_interval)


class DeviceWatcher:
    """Supervisor: owns the poller thread and restarts it when it is found dead"""

    def __init__(self, loop: WatchLoop, poll_interval: float, health_interval: float):
        self.loop = loop
        self.health_interval = health_interval
        self.join_timeout = poll_interval + settings.WATCH_CONNECT_TIMEOUT + 1
        self._stop = threading.Event()
        self._poller: Optional[threading.Thread] = None
        self._supervisor = threading.Thread(
            target=self._supervise,
            name=f"watch-supervisor-{loop.profile.id}",
            daemon=True,
        )
        self.restarts = 0

    def _spawn_poller(self) -> None:
        self._poller = threading.Thread(
            target=self.loop.run,
            args=(self._stop,),
            name=f"watch-poller-{self.loop.profile.id}",
            daemon=True,
        )
        self._poller.start()

    def _supervise(self) -> None:
        self._spawn_poller()
        while not self._stop.wait(self.health_interval):
            self.check_health()

    def check_health(self) -> bool:
        """Restart the poller if it is gone; returns True when a restart happened."""
        if self._stop.is_set() or (self._poller is not None and self._poller.is_alive()):
            return False
        _log.warning("Poller missing for device %s, restarting", self.loop.profile.id)
        self.restarts += 1
        self._spawn_poller()
        return True

    def start(self) -> None:
        self._supervisor.start()

    def stop(self) -> None:
        """Cooperative stop: in-flight polls finish or time out, nothing is killed."""
        self._stop.set()
        for thread in (self._supervisor, self._poller):
            if thread is not None and thread.is_alive() and thread is not threading.current_thread():
                thread.join(timeout=self.join_timeout)
                if thread.is_alive():
                    _log.warning("%s still finishing its poll after stop", thread.name)

    @property
    def alive(self) -> bool:
        return self._supervisor.is_alive()


class SessionRegistry:
    """Process-wide realtime watch state; create at startup, shutdown() at exit"""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client_factory: Optional[Callable[[DeviceProfile], DeviceClient]] = None,
        poll_interval: Optional[float] = None,
        health_interval: Optional[float] = None,
        window_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = now_local,
    ):
        self.session_factory = session_factory
        self.client_factory = client_factory or functools.partial(
            DeviceClient, connect_timeout=settings.WATCH_CONNECT_TIMEOUT
        )
        self.poll_interval = poll_interval or settings.WATCH_POLL_INTERVAL
        self.health_interval = health_interval or settings.WATCH_HEALTH_INTERVAL
        self.window_seconds = window_seconds or settings.WATCH_WINDOW_SECONDS
        self.clock = clock
        self._sessions: Dict[int, WatchSession] = {}
        self._watchers: Dict[int, DeviceWatcher] = {}
        self._device_locks: Dict[int, threading.Lock] = {}
        self._lock = threading.Lock()
        self._generations = itertools.count(1)

    def _device_lock(self, device_id: int) -> threading.Lock:
        with self._lock:
            return self._device_locks.setdefault(device_id, threading.Lock())

    def _current(self, device_id: int, generation: int) -> Optional[WatchSession]:
        session = self._sessions.get(device_id)
        if session is None or session.generation != generation:
            return None
        return session

    # -- lifecycle -----------------------------------------------------------------

    def start(self, profile: DeviceProfile) -> bool:
        """Start watching a device; False when it is already watched."""
        with self._device_lock(profile.id):
            if profile.id in self._sessions:
                return False
            generation = next(self._generations)
            session = WatchSession(profile, generation, self.clock())
            watcher = DeviceWatcher(WatchLoop(self, profile, generation), self.poll_interval, self.health_interval)
            with self._lock:
                self._sessions[profile.id] = session
                self._watchers[profile.id] = watcher
            watcher.start()
        _log.info("Started realtime watch for %s (every %.1fs)", profile.alias, self.poll_interval)
        return True

    def stop(self, device_id: int) -> bool:
        """Stop watching; clears the watermark and cached auth result. False when not watched."""
        with self._device_lock(device_id):
            with self._lock:
                session = self._sessions.pop(device_id, None)
                watcher = self._watchers.pop(device_id, None)
        if watcher is not None:
            watcher.stop()
        if session is None:
            return False
        _log.info("Stopped realtime watch for device %s", device_id)
        return True

    def shutdown(self) -> None:
        """Stop every watch loop."""
        with self._lock:
            device_ids = list(self._sessions)
        for device_id in device_ids:
            self.stop(device_id)
        _log.info("Realtime watch registry shut down (%d loops stopped)", len(device_ids))

    # -- writes from watch loops ---------------------------------------------------

    def record_poll(self, device_id: int, generation: int, when: datetime) -> None:
        with self._device_lock(device_id):
            session = self._current(device_id, generation)
            if session is not None:
                session.last_poll_at = when

    def is_newer(self, device_id: int, punch_time: datetime) -> bool:
        session = self._sessions.get(device_id)
        if session is None:
            return False
        return session.last_processed_time is None or punch_time > session.last_processed_time

    def advance(self, device_id: int, generation: int, punch_time: datetime, auth: Optional[AuthResult]) -> bool:
        """
        Move the watermark to punch_time and store the auth result (if any)

        Returns False (and changes nothing) when the watch was stopped meanwhile or the
        watermark already covers punch_time.
        """
        with self._device_lock(device_id):
            session = self._current(device_id, generation)
            if session is None:
                return False
            if session.last_processed_time is not None and punch_time <= session.last_processed_time:
                return False
            session.last_processed_time = punch_time
            if auth is not None:
                session.last_auth = auth
            return True

    # -- reads ---------------------------------------------------------------------

    def is_watching(self, device_id: int) -> bool:
        return device_id in self._sessions

    def watermark(self, device_id: int) -> Optional[datetime]:
        session = self._sessions.get(device_id)
        return session.last_processed_time if session else None

    def last_auth(self, device_id: int) -> Optional[AuthResult]:
        session = self._sessions.get(device_id)
        return session.last_auth if session else None

    def watcher(self, device_id: int) -> Optional[DeviceWatcher]:
        return self._watchers.get(device_id)

    def status(self) -> WatchStatus:
        with self._lock:
            sessions = dict(self._sessions)
        return WatchStatus(
            active_devices=sorted(sessions),
            started_at={i: s.started_at for i, s in sessions.items()},
            last_poll_times={i: s.last_poll_at for i, s in sessions.items()},
            last_processed_times={i: s.last_processed_time for i, s in sessions.items()},
            auth_results={i: s.last_auth for i, s in sessions.items() if s.last_auth is not None},
            total_listeners=len(sessions),
        )


def authenticate_login(db: Session, machine_id: int, user_id: int, login_time: str) -> AuthenticateResponse:
    """
    Issue a login token for an active directory user seen at a terminal

    Raises:
        HTTPException 404: user missing or inactive
    """
    employee = (
        db.query(Employee)
        .filter(Employee.id == user_id, Employee.active.is_(True))
        .first()
    )
    if not employee:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="User not found")

    _log.info("Realtime authentication for %s (%s) at device %s, login %s", employee.name, employee.badge_number, machine_id, login_time)
    return AuthenticateResponse(
        success=True,
        message=f"Welcome, {employee.name}!",
        user=AuthUser(
            user_id=employee.id,
            name=employee.name,
            badge_number=employee.badge_number,
            department=employee.department,
        ),
        token=create_realtime_login_token(employee.id, machine_id),
    )
