import asyncio
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from syncilias.errors import AuthError, AuthErrorKind, SessionExpired, SyncIliasError
from syncilias.events import EventSink, JobDone, JobStarted, LoggingEventSink
from syncilias.reconcile import Decision, SyncJob
from syncilias.strategies import Retriever

logger = logging.getLogger(__name__)


@dataclass
class JobResult:
    job: SyncJob
    ok: bool
    error_kind: Optional[str] = None
    message: str = ""


class Scheduler:
    """Runs sync jobs on a fixed number of worker tasks"""

    def __init__(
        self, retriever: Retriever, jobs: int = 1, events: Optional[EventSink] = None
    ) -> None:
        if jobs < 1:
            raise ValueError("jobs must be at least 1")
        self.retriever = retriever
        self.jobs = jobs
        self.events = events or LoggingEventSink()
        self.results: List[JobResult] = []
        self._stopping = False

    def shutdown(self) -> None:
        """Stop handing out jobs; jobs already running are finished"""
        if not self._stopping:
            logger.warning("Shutting down, waiting for running downloads to finish")
        self._stopping = True

    async def run(self, jobs: Iterable[SyncJob]) -> List[JobResult]:
        queue: "asyncio.Queue[SyncJob]" = asyncio.Queue()
        for job in jobs:
            if job.decision == Decision.SKIP:
                self.results.append(JobResult(job, True))
            else:
                queue.put_nowait(job)

        workers = [asyncio.create_task(self._worker(queue)) for _ in range(self.jobs)]
        try:
            await asyncio.gather(*workers)
        finally:
            # a fatal error in one worker ends the others
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

        while not queue.empty():
            job = queue.get_nowait()
            self.results.append(JobResult(job, False, "cancelled", "not started"))
        return self.results

    async def _worker(self, queue: "asyncio.Queue[SyncJob]") -> None:
        while not self._stopping:
            try:
                job = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            self.results.append(await self._run_job(job))

    async def _retrieve(self, job: SyncJob) -> None:
        try:
            await self.retriever.retrieve(job)
        except SessionExpired:
            logger.info(f"Session expired while syncing {job.target}, retrying")
            try:
                await self.retriever.retrieve(job)
            except SessionExpired as e:
                raise AuthError(AuthErrorKind.SESSION_EXPIRED_AGAIN, str(e)) from e

    async def _run_job(self, job: SyncJob) -> JobResult:
        path = str(job.target)
        kind = job.kind.value
        self.events.emit(JobStarted(kind, path, job.decision.value))
        try:
            await self._retrieve(job)
        except AuthError:
            raise
        except SyncIliasError as e:
            result = JobResult(job, False, e.kind, str(e))
        except OSError as e:
            result = JobResult(job, False, "io", str(e))
        except Exception as e:
            logger.exception(f"Failed to sync {path}")
            result = JobResult(job, False, "error", str(e))
        else:
            result = JobResult(job, True)
        self.events.emit(JobDone(kind, path, result.ok, result.error_kind, result.message))
        return result
