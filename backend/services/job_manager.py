"""
Chapter job lifecycle.

A job is created ``pending`` and handed to the app-scoped JobRunner; the HTTP
request that created it returns immediately. Every transition after that is a
conditional update on the job's current status, so stop, the watchdog and the
background task can race without one overwriting another's terminal state.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set
from uuid import uuid4

from agents.pipeline import ChapterPipeline
from core.errors import (
    ChapterforgeError,
    ConflictError,
    JobStopped,
    JobTimeoutError,
    NotFoundError,
    ValidationError,
)
from memory import StoryStore
from models import (
    ACTIVE_JOB_STATUSES,
    Chapter,
    DraftAttempt,
    EngineConfig,
    Job,
    JobStatus,
    ProjectStatus,
    utcnow,
)
from services.context_assembler import ContextAssembler, summarize_payload
from services.quality_modules import run_quality_modules

logger = logging.getLogger("chapterforge.jobs")

INITIAL_PROGRESS = 2
INITIAL_STEP = "Initializing"
INTERRUPTED_MESSAGE = "Interrupted by restart"


class JobReporter:
    """Progress sink handed to the pipeline; doubles as the stop-signal check."""

    def __init__(self, store: StoryStore, job_id: str, clock: Callable[[], datetime]):
        self.store = store
        self.job_id = job_id
        self.clock = clock

    async def checkpoint(self, step: str, progress: int) -> None:
        updated = await asyncio.to_thread(self.store.update_job_progress, self.job_id, progress, step, self.clock())
        if not updated:
            raise JobStopped(f"Job {self.job_id} is no longer running")


class JobRunner:
    def __init__(self, max_concurrent: int = 4):
        self._tasks: Dict[str, asyncio.Task] = {}
        self._queued: Set[str] = set()
        self._semaphore = asyncio.Semaphore(max(1, int(max_concurrent)))

    def submit(self, job_id: str, coro_factory: Callable[[], Awaitable[Any]]) -> asyncio.Task:
        async def guarded():
            try:
                await self._semaphore.acquire()
            finally:
                self._queued.discard(job_id)
            try:
                await coro_factory()
            finally:
                self._semaphore.release()

        def forget(_task: asyncio.Task) -> None:
            self._queued.discard(job_id)
            self._tasks.pop(job_id, None)

        self._queued.add(job_id)
        task = asyncio.create_task(guarded(), name=f"chapter-job-{job_id}")
        self._tasks[job_id] = task
        task.add_done_callback(forget)
        return task

    def active_job_ids(self) -> List[str]:
        return [job_id for job_id, task in self._tasks.items() if not task.done()]

    def is_queued(self, job_id: str) -> bool:
        """True while the job is waiting for a free slot."""
        return job_id in self._queued

    async def wait(self, job_id: str) -> None:
        task = self._tasks.get(job_id)
        if task is not None:
            await asyncio.gather(task, return_exceptions=True)

    async def wait_idle(self) -> None:
        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> List[str]:
        job_ids = self.active_job_ids()
        tasks = [self._tasks[job_id] for job_id in job_ids if job_id in self._tasks]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        return job_ids


class JobManager:
    def __init__(
        self,
        store: StoryStore,
        llm_client: Any,
        config: EngineConfig,
        clock: Callable[[], datetime] = utcnow,
        runner: Optional[JobRunner] = None,
        pipeline_factory: Optional[Callable[..., ChapterPipeline]] = None,
        quality_runner: Optional[Callable[..., Awaitable[Dict[str, str]]]] = None,
    ):
        self.store = store
        self.llm_client = llm_client
        self.config = config
        self.clock = clock
        self.runner = runner or JobRunner(config.max_concurrent_jobs)
        self.pipeline_factory = pipeline_factory or self._default_pipeline
        self.quality_runner = quality_runner or run_quality_modules
        self.assembler = ContextAssembler(store)

    @property
    def timeout(self) -> timedelta:
        return timedelta(minutes=self.config.job_timeout_minutes)

    def _default_pipeline(self, on_attempt=None) -> ChapterPipeline:
        return ChapterPipeline(self.llm_client, self.config, on_attempt=on_attempt)

    async def _db(self, func, *args, **kwargs):
        return await asyncio.to_thread(func, *args, **kwargs)

    async def create(self, project_id: str) -> str:
        project = await self._db(self.store.get_project, project_id)
        if project is None:
            raise ValidationError("Project not found")
        if project.status != ProjectStatus.ACTIVE:
            raise ValidationError("Project is not active")

        existing = await self._db(self.store.get_active_job, project_id)
        if existing is not None:
            existing = await self._apply_watchdog(existing)
            if existing.status.is_active:
                raise ConflictError("An active job already exists for this project", detail=existing.id)

        job_id = str(uuid4())
        job = await self._db(
            self.store.insert_pending_job,
            job_id,
            project_id,
            self.clock(),
            INITIAL_STEP,
            INITIAL_PROGRESS,
        )
        self.runner.submit(job_id, lambda: self._run(job_id))
        logger.info(
            "job created job_id=%s project_id=%s chapter=%s",
            job_id,
            project_id,
            job.chapter_number,
        )
        return job_id

    async def get(self, job_id: str) -> Job:
        job = await self._db(self.store.get_job, job_id)
        if job is None:
            raise NotFoundError("Job not found")
        return await self._apply_watchdog(job)

    async def stop(self, job_id: str) -> Job:
        job = await self._db(self.store.get_job, job_id)
        if job is None:
            raise NotFoundError("Job not found")
        if job.status.is_terminal:
            return job
        stopped = await self._db(
            self.store.transition_job,
            job_id,
            ACTIVE_JOB_STATUSES,
            JobStatus.STOPPED,
            self.clock(),
            step_message="Stopped by user",
        )
        if stopped:
            logger.info("job stopped job_id=%s project_id=%s", job_id, job.project_id)
        return await self._db(self.store.get_job, job_id)

    def _timeout_message(self) -> str:
        minutes = self.config.job_timeout_minutes
        return JobTimeoutError(f"Timeout after {minutes} minutes").as_error_message()

    async def _apply_watchdog(self, job: Job) -> Job:
        if not job.status.is_active:
            return job
        if job.status == JobStatus.PENDING and self.runner.is_queued(job.id):
            # waiting for a slot here; the pending -> running transition restamps it
            return job
        now = self.clock()
        if now - job.updated_at <= self.timeout:
            return job
        failed = await self._db(
            self.store.fail_stale_job,
            job.id,
            now - self.timeout,
            now,
            self._timeout_message(),
            "Job timed out",
        )
        if failed:
            logger.warning(
                "job timed out job_id=%s project_id=%s last_update=%s",
                job.id,
                job.project_id,
                job.updated_at.isoformat(),
            )
        return await self._db(self.store.get_job, job.id) or job

    async def sweep_stale(self) -> List[str]:
        now = self.clock()
        stale = await self._db(self.store.list_stale_jobs, now - self.timeout)
        failed = []
        for job in stale:
            job = await self._apply_watchdog(job)
            if job.status == JobStatus.FAILED:
                failed.append(job.id)
        return failed

    async def recover_orphans(self) -> List[str]:
        """Fail active jobs left behind by a dead process.

        Other processes may share the database, so only jobs with no progress
        write inside the watchdog window count as orphaned.
        """
        running_here = set(self.runner.active_job_ids())
        now = self.clock()
        cutoff = now - self.timeout
        recovered = []
        for job in await self._db(self.store.list_stale_jobs, cutoff):
            if job.id in running_here:
                continue
            failed = await self._db(
                self.store.fail_stale_job,
                job.id,
                cutoff,
                now,
                INTERRUPTED_MESSAGE,
                INTERRUPTED_MESSAGE,
            )
            if failed:
                recovered.append(job.id)
        if recovered:
            logger.warning("orphaned jobs recovered count=%d ids=%s", len(recovered), ",".join(recovered))
        return recovered

    async def shutdown(self) -> List[str]:
        cancelled = await self.runner.shutdown()
        for job_id in cancelled:
            await self._mark_failed(job_id, "Interrupted by shutdown", "Interrupted by shutdown")
        return cancelled

    async def _mark_failed(self, job_id: str, error_message: str, step_message: str) -> bool:
        try:
            store = self.store.reopen()
            return await self._db(
                store.transition_job,
                job_id,
                ACTIVE_JOB_STATUSES,
                JobStatus.FAILED,
                self.clock(),
                progress=100,
                step_message=step_message,
                error_message=error_message,
            )
        except Exception as exc:
            logger.error("job failure write failed job_id=%s error=%s", job_id, exc)
            return False

    async def _run(self, job_id: str) -> None:
        reporter = JobReporter(self.store, job_id, self.clock)
        try:
            started = await self._db(
                self.store.transition_job,
                job_id,
                [JobStatus.PENDING],
                JobStatus.RUNNING,
                self.clock(),
                progress=5,
                step_message="Assembling context",
            )
            if not started:
                logger.info("job not started job_id=%s reason=no_longer_pending", job_id)
                return
            job = await self._db(self.store.get_job, job_id)

            context = await self.assembler.assemble(job.project_id, job.chapter_number)
            logger.debug("job context job_id=%s summary=%s", job_id, summarize_payload(context))
            await reporter.checkpoint("Context assembled", 10)

            async def record_attempt(attempt: DraftAttempt):
                await self._db(
                    self.store.record_attempt,
                    job_id,
                    job.project_id,
                    job.chapter_number,
                    attempt,
                    self.clock(),
                )

            pipeline = self.pipeline_factory(on_attempt=record_attempt)
            result = await pipeline.run(context, reporter)

            await reporter.checkpoint("Saving chapter", 95)
            await self._db(self.store.mark_attempt_accepted, job_id, result.accepted_attempt)
            now = self.clock()
            chapter = Chapter(
                id=str(uuid4()),
                project_id=job.project_id,
                chapter_number=job.chapter_number,
                title=result.draft.title,
                content=result.draft.content,
                word_count=result.report.word_count,
                quality_score=result.report.score,
                created_at=now,
            )
            completed = await self._db(
                self.store.complete_job_with_chapter,
                job_id,
                chapter,
                len(result.attempts),
                now,
            )
            if not completed:
                logger.info("job completion skipped job_id=%s reason=no_longer_running", job_id)
                return
            logger.info(
                "job completed job_id=%s project_id=%s chapter=%s score=%s attempts=%d below_threshold=%s",
                job_id,
                job.project_id,
                job.chapter_number,
                result.report.score,
                len(result.attempts),
                result.below_threshold,
            )
        except JobStopped:
            logger.info("job exited after stop signal job_id=%s", job_id)
            return
        except Exception as exc:
            await self._fail(job_id, exc)
            return

        try:
            outcomes = await self.quality_runner(self.store, self.llm_client, job.project_id, chapter, result.outline)
        except Exception as exc:
            logger.error("quality modules crashed job_id=%s error=%s", job_id, exc)
            return
        failed = [name for name, outcome in outcomes.items() if outcome == "failed"]
        if failed:
            logger.warning("quality modules had failures job_id=%s modules=%s", job_id, ",".join(failed))

    async def _fail(self, job_id: str, exc: Exception) -> None:
        if isinstance(exc, ChapterforgeError):
            error_message = exc.as_error_message()
            step_message = f"Failed: {exc.message}"
        else:
            error_message = f"{type(exc).__name__}: {exc}"
            step_message = "Failed: unexpected error"
        logger.error("job failed job_id=%s error=%s", job_id, error_message)
        await self._mark_failed(job_id, error_message[:2000], step_message[:300])
