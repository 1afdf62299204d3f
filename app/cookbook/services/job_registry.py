"""
Process-wide registry of running extraction tasks and their control handles.

Each running job owns a JobControl (pause/cancel flags checked by the page
loop at iteration boundaries) and one supervised asyncio task. The control is
created when a run starts and released when the run ends.
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass
class JobControl:
    """Cooperative signals for one running job."""

    job_id: str
    pause_requested: bool = False
    cancel_requested: bool = False


class JobRegistry:
    """Owns job controls and the tasks driving them, keyed by job id."""

    def __init__(self):
        self._controls: dict[str, JobControl] = {}
        self._tasks: dict[str, asyncio.Task[None]] = {}

    # -------------------------------------------------------------------------
    # Controls
    # -------------------------------------------------------------------------

    def acquire(self, job_id: str) -> JobControl:
        """Get the control for a job, creating it on first use."""
        control = self._controls.get(job_id)
        if control is None:
            control = JobControl(job_id=job_id)
            self._controls[job_id] = control
        return control

    def get_control(self, job_id: str) -> JobControl | None:
        return self._controls.get(job_id)

    def release(self, control: JobControl) -> None:
        """Drop a control once its run has ended."""
        if self._controls.get(control.job_id) is control:
            del self._controls[control.job_id]

    def request_pause(self, job_id: str) -> bool:
        """Flag a running job for pause. Returns False if it is not running here."""
        control = self._controls.get(job_id)
        if control is None:
            return False
        control.pause_requested = True
        return True

    def clear_pause(self, job_id: str) -> None:
        control = self._controls.get(job_id)
        if control is not None:
            control.pause_requested = False

    def request_cancel(self, job_id: str) -> bool:
        """Flag a running job for cancellation. Returns False if it is not running here."""
        control = self._controls.get(job_id)
        if control is None:
            return False
        control.cancel_requested = True
        return True

    # -------------------------------------------------------------------------
    # Tasks
    # -------------------------------------------------------------------------

    def spawn(
        self, job_id: str, run: Callable[[], Awaitable[None]]
    ) -> asyncio.Task[None]:
        """
        Start `run` as the supervised task for a job.

        If a previous task for the same job is still winding down (e.g. a
        pause not yet observed), the new run waits for it to finish first so
        two loops never drive one job.
        """
        previous = self._tasks.get(job_id)

        async def _runner() -> None:
            if previous is not None and not previous.done():
                await asyncio.gather(previous, return_exceptions=True)
            await run()

        task = asyncio.get_running_loop().create_task(
            _runner(), name=f"extraction-{job_id}"
        )
        self._tasks[job_id] = task
        task.add_done_callback(lambda t: self._on_task_done(job_id, t))
        return task

    def _on_task_done(self, job_id: str, task: asyncio.Task[None]) -> None:
        if self._tasks.get(job_id) is task:
            del self._tasks[job_id]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Extraction task for job %s ended with %r", job_id, exc)

    def is_running(self, job_id: str) -> bool:
        task = self._tasks.get(job_id)
        return task is not None and not task.done()

    async def wait(self, job_id: str) -> None:
        """Wait for the current task of a job (and any it chained onto)."""
        while True:
            task = self._tasks.get(job_id)
            if task is None:
                return
            await asyncio.gather(task, return_exceptions=True)
            if self._tasks.get(job_id) is task:
                return

    async def shutdown(self) -> None:
        """Cancel every running task and wait for them to unwind."""
        tasks = [task for task in self._tasks.values() if not task.done()]
        for task in tasks:
            task.cancel()

        if tasks:
            logger.info("Cancelling %d running extraction task(s)", len(tasks))
            await asyncio.gather(*tasks, return_exceptions=True)


_job_registry: JobRegistry | None = None


def get_job_registry() -> JobRegistry:
    """Get or create the job registry singleton."""
    global _job_registry
    if _job_registry is None:
        _job_registry = JobRegistry()
    return _job_registry
