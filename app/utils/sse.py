"""
Server-Sent Events streaming for sync progress
"""
import json
import logging
import queue
import threading
from typing import Any, Callable

from fastapi.responses import StreamingResponse

from app.constants import EVENT_CONNECTED, TERMINAL_EVENTS
from app.services.sync_progress import SyncProgress
from app.utils.json_serializer import to_json_safe

_log = logging.getLogger(__name__)

# Seconds without an event before a keep-alive comment is sent
KEEPALIVE_SECONDS = 15.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def sse_frame(payload: Any) -> str:
    """One `data: <json>` frame"""
    return f"data: {json.dumps(to_json_safe(payload))}\n\n"


def stream_progress(run: Callable[[SyncProgress], Any], name: str = "sync-stream") -> StreamingResponse:
    """
    Stream a sync run as SSE

    The run executes on a background thread with its own SyncProgress; events are
    relayed through a queue until the terminal event. A client disconnect only
    detaches the observer, the run itself finishes.

    Args:
        run: Callable receiving the SyncProgress; must end the run with a terminal event
        name: Worker thread name

    Returns:
        StreamingResponse with media type text/event-stream
    """
    def generate():
        yield sse_frame({"type": EVENT_CONNECTED})

        events: "queue.Queue" = queue.Queue()
        progress = SyncProgress()
        handle = progress.subscribe(events.put)

        def worker():
            try:
                run(progress)
            except Exception:
                _log.exception("Streamed sync run failed")
                progress.fail("Sync failed")

        thread = threading.Thread(target=worker, name=name, daemon=True)
        thread.start()
        try:
            while True:
                try:
                    event = events.get(timeout=KEEPALIVE_SECONDS)
                except queue.Empty:
                    if not thread.is_alive() and progress.finished:
                        break
                    yield ": keep-alive\n\n"
                    continue
                yield sse_frame(event)
                if event.type in TERMINAL_EVENTS:
                    break
        finally:
            progress.unsubscribe(handle)

    return StreamingResponse(generate(), media_type="text/event-stream", headers=SSE_HEADERS)
