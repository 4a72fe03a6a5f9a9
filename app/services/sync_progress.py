"""
Sync progress: per-run mutable state plus a publish/subscribe channel.

A run's orchestrator thread is the only writer. Observers are called synchronously
on that thread, may attach or detach at any time, and a failing observer is logged
and skipped. Each run publishes exactly one terminal event (complete or error).
"""
import itertools
import logging
import threading
from typing import Any, Callable, Dict, List, Optional

from app.constants import EVENT_COMPLETE, EVENT_ERROR, EVENT_PROGRESS
from app.schemas.sync import ProgressEvent

_log = logging.getLogger(__name__)

ProgressObserver = Callable[[ProgressEvent], None]

# Highest percentage reported before the terminal event
MAX_RUNNING_PERCENTAGE = 99


class ProgressPublisher:
    """Thread-safe observer registry"""

    def __init__(self):
        self._observers: Dict[int, ProgressObserver] = {}
        self._lock = threading.Lock()
        self._handles = itertools.count(1)

    def subscribe(self, observer: ProgressObserver) -> int:
        """Attach an observer; returns the handle to pass to unsubscribe()."""
        with self._lock:
            handle = next(self._handles)
            self._observers[handle] = observer
        return handle

    def unsubscribe(self, handle: int) -> bool:
        with self._lock:
            return self._observers.pop(handle, None) is not None

    @property
    def observer_count(self) -> int:
        with self._lock:
            return len(self._observers)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            observers = list(self._observers.values())
        for observer in observers:
            try:
                observer(event)
            except Exception:
                _log.exception("Progress observer failed; continuing")


class SyncProgress:
    """State of one orchestration run"""

    def __init__(self, publisher: Optional[ProgressPublisher] = None):
        self.publisher = publisher or ProgressPublisher()
        self.step = ""
        self.percentage = 0
        self.message = ""
        self.details = ""
        self.errors: List[str] = []
        self.logs_found = 0
        self.logs_processed = 0
        self.logs_saved = 0
        self._terminal: Optional[ProgressEvent] = None

    def subscribe(self, observer: ProgressObserver) -> int:
        return self.publisher.subscribe(observer)

    def unsubscribe(self, handle: int) -> bool:
        return self.publisher.unsubscribe(handle)

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    @property
    def terminal_event(self) -> Optional[ProgressEvent]:
        return self._terminal

    def snapshot(self, event_type: str = EVENT_PROGRESS, data: Optional[Dict[str, Any]] = None) -> ProgressEvent:
        return ProgressEvent(
            type=event_type,
            step=self.step,
            percentage=self.percentage,
            message=self.message,
            details=self.details,
            logs_found=self.logs_found,
            logs_processed=self.logs_processed,
            logs_saved=self.logs_saved,
            errors=list(self.errors),
            data=data,
        )

    def update(self, percentage: float, step: str, message: str = "", details: str = "") -> None:
        """Record a step and notify observers; stays below 100 until the run ends."""
        if self.finished:
            _log.debug("Progress update after terminal event ignored: %s", step)
            return
        self.percentage = max(0, min(int(percentage), MAX_RUNNING_PERCENTAGE))
        self.step = step
        self.message = message
        self.details = details
        self.publisher.publish(self.snapshot())

    def set_counts(self, found: Optional[int] = None, processed: Optional[int] = None, saved: Optional[int] = None) -> None:
        if found is not None:
            self.logs_found = found
        if processed is not None:
            self.logs_processed = processed
        if saved is not None:
            self.logs_saved = saved

    def add_error(self, message: str) -> None:
        self.errors.append(message)
        _log.warning("Sync error recorded: %s", message)

    def complete(self, data: Optional[Dict[str, Any]] = None, message: str = "Completed") -> None:
        """Publish the terminal success event (only the first terminal call takes effect)."""
        if self.finished:
            return
        self.percentage = 100
        self.step = "Completed"
        self.message = message
        self._terminal = self.snapshot(EVENT_COMPLETE, data)
        self.publisher.publish(self._terminal)

    def fail(self, message: str, data: Optional[Dict[str, Any]] = None) -> None:
        """Publish the terminal failure event (only the first terminal call takes effect)."""
        if self.finished:
            return
        self.step = "Error"
        self.message = message
        self.errors.append(message)
        self._terminal = self.snapshot(EVENT_ERROR, data)
        self.publisher.publish(self._terminal)
