"""
In-memory publish/subscribe for live job progress.

Events are a low-latency hint only: nothing is persisted or replayed, so a
subscriber that connects late misses earlier events and must read the job
row for the current state.
"""

import logging
from collections.abc import Callable

from ..models import ProgressEvent

logger = logging.getLogger(__name__)

Listener = Callable[[ProgressEvent], None]


class ProgressEmitter:
    """Fans out ProgressEvents to the listeners registered for a job id."""

    def __init__(self):
        self._listeners: dict[str, list[Listener]] = {}

    def subscribe(self, job_id: str, listener: Listener) -> Callable[[], None]:
        """
        Register a listener for one job.

        Returns:
            An unsubscribe function; calling it more than once is harmless.
        """
        self._listeners.setdefault(job_id, []).append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(job_id)
            if not listeners or listener not in listeners:
                return
            listeners.remove(listener)
            if not listeners:
                del self._listeners[job_id]

        return unsubscribe

    def emit(self, event: ProgressEvent) -> None:
        """
        Deliver an event synchronously to every listener of its job.

        A listener that raises is logged and skipped; delivery continues.
        """
        # Copy so listeners may unsubscribe while being called
        for listener in list(self._listeners.get(event.job_id, ())):
            try:
                listener(event)
            except Exception:
                logger.exception(
                    "Progress listener failed for job %s (%s)", event.job_id, event.type.value
                )

    def has_listeners(self, job_id: str) -> bool:
        return bool(self._listeners.get(job_id))

    def listener_count(self, job_id: str) -> int:
        return len(self._listeners.get(job_id, ()))


# Process-wide emitter shared by the engine and the stream endpoint
progress_emitter = ProgressEmitter()


def get_progress_emitter() -> ProgressEmitter:
    """Get the process-wide progress emitter."""
    return progress_emitter
