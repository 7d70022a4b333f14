import asyncio
import logging
from typing import Awaitable, Callable, Dict

from mirrorsync.errors import JobStateError, MirrorSyncError
from mirrorsync.services import job_tracker

logger = logging.getLogger(__name__)

JobWork = Callable[[], Awaitable[dict]]


class JobRunner:
    """Runs job bodies as detached asyncio tasks.

    The body returns the job result; the runner writes ``completed`` with it,
    or ``failed`` with the error when the body raises or is cancelled.
    """

    def __init__(self) -> None:
        self._tasks: Dict[str, asyncio.Task] = {}

    @property
    def active_jobs(self) -> list[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def launch(self, job_id: str, work: JobWork) -> asyncio.Task:
        task = asyncio.create_task(self._run(job_id, work), name=f"job:{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(job_id, None))
        return task

    async def _run(self, job_id: str, work: JobWork) -> None:
        logger.info("Job %s started", job_id)
        try:
            result = await work()
        except asyncio.CancelledError:
            await self._finish(job_id, status="failed", error="Job cancelled", message="Cancelled")
            raise
        except MirrorSyncError as e:
            logger.error("Job %s failed: %s", job_id, e)
            await self._finish(job_id, status="failed", error=str(e), message="Failed")
        except Exception as e:
            logger.exception("Job %s crashed", job_id)
            await self._finish(job_id, status="failed", error=f"{type(e).__name__}: {e}", message="Failed")
        else:
            await self._finish(job_id, status="completed", progress=100, result=result, message="Completed")
            logger.info("Job %s completed", job_id)

    async def _finish(self, job_id: str, **fields) -> None:
        try:
            await job_tracker.set_status(job_id, **fields)
        except JobStateError as e:
            # Record deleted (tracking only) or already terminal
            logger.warning("Job %s: terminal status not written: %s", job_id, e)
        except Exception as e:
            logger.exception("Job %s: could not write %s status", job_id, fields.get("status"))
            if fields.get("status") == "failed":
                return
            try:
                await job_tracker.set_status(
                    job_id, status="failed", error=f"Could not record result: {type(e).__name__}: {e}", message="Failed"
                )
            except Exception:
                logger.exception("Job %s: failed status not written either", job_id)

    async def wait(self) -> None:
        """Wait for every outstanding job."""
        tasks = list(self._tasks.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
            logger.info("Cancelled %d running job(s)", len(tasks))
