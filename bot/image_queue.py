"""Bounded worker pool for image analysis jobs.

Jobs run at most ``max_concurrent`` at a time; the rest wait in submission
order. Each job gets ``max_retries`` attempts, each raced against a timeout,
with exponential backoff in between. The pool never raises for a failed job:
``submit`` resolves to a :class:`JobResult`.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable

from config import (
    IMAGE_BACKOFF_BASE,
    IMAGE_MAX_CONCURRENT,
    IMAGE_MAX_RETRIES,
    IMAGE_SHUTDOWN_GRACE,
    IMAGE_STALE_AFTER,
    IMAGE_TIMEOUT,
)
from bot.errors import AlreadyBusy, OperationTimeout, ShuttingDown

logger = logging.getLogger(__name__)


@dataclass
class ImageJob:
    user_id: int
    chat_id: int
    message_id: int
    file_id: str
    caption: str = ""
    payload: str | None = None
    submitted_at: float = field(default_factory=time.time)


@dataclass
class JobResult:
    success: bool
    processing_time: float
    attempts: int
    result: str | None = None
    error: str | None = None
    last_error: BaseException | None = None


class ImageProcessor:
    def __init__(
        self,
        max_concurrent: int = IMAGE_MAX_CONCURRENT,
        request_timeout: float = IMAGE_TIMEOUT,
        max_retries: int = IMAGE_MAX_RETRIES,
        backoff_base: float = IMAGE_BACKOFF_BASE,
    ):
        self.max_concurrent = max_concurrent
        self.request_timeout = request_timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base

        self._slots = asyncio.Semaphore(max_concurrent)
        self._jobs: dict[str, asyncio.Task] = {}
        self._start_times: dict[str, float] = {}
        self._accepting = True

        self.total_processed = 0
        self.total_success = 0
        self.total_failed = 0
        self.average_processing_time = 0.0
        self.active_jobs = 0

        logger.info("ImageProcessor initialized (concurrency: %d)", max_concurrent)

    @staticmethod
    def make_job_id(job: ImageJob) -> str:
        return f"{job.user_id}_{job.message_id}_{time.time_ns()}"

    async def submit(self, job: ImageJob, work: Callable[[], Awaitable[str]]) -> JobResult:
        """Queue ``job``; ``work`` performs one upstream attempt per call."""
        if not self._accepting:
            raise ShuttingDown("Image processor is shutting down")

        job_id = self.make_job_id(job)
        if job_id in self._jobs:
            raise AlreadyBusy("Изображение уже обрабатывается")

        logger.info("Queued image job %s", job_id)
        task = asyncio.ensure_future(self._run_limited(job, work))
        self._jobs[job_id] = task
        self._start_times[job_id] = time.monotonic()
        self.active_jobs += 1

        try:
            result = await task
        finally:
            started = self._start_times.pop(job_id, None)
            # Evicted jobs were already subtracted by clear_stale_jobs
            if self._jobs.pop(job_id, None) is not None:
                self.active_jobs = max(0, self.active_jobs - 1)

        elapsed = time.monotonic() - started if started is not None else result.processing_time
        self._record(result.success, elapsed)
        if result.success:
            logger.info("Image job %s done in %.2fs", job_id, result.processing_time)
        else:
            logger.error("Image job %s failed: %s", job_id, result.error)
        return result

    async def _run_limited(self, job: ImageJob, work) -> JobResult:
        async with self._slots:
            return await self._execute(job, work)

    async def _execute(self, job: ImageJob, work) -> JobResult:
        start = time.monotonic()
        last_error: BaseException | None = None

        for attempt in range(1, self.max_retries + 1):
            logger.info("Image attempt %d/%d for user %s", attempt, self.max_retries, job.user_id)
            try:
                reply = await asyncio.wait_for(work(), timeout=self.request_timeout)
                return JobResult(
                    success=True,
                    processing_time=time.monotonic() - start,
                    attempts=attempt,
                    result=reply,
                )
            except asyncio.TimeoutError:
                last_error = OperationTimeout("Таймаут обработки изображения")
            except Exception as e:
                last_error = e

            logger.warning("Image attempt %d failed after %.2fs: %s",
                           attempt, time.monotonic() - start, last_error)
            if attempt < self.max_retries:
                delay = self.backoff_base * 2 ** (attempt - 1)
                await asyncio.sleep(delay)

        return JobResult(
            success=False,
            processing_time=time.monotonic() - start,
            attempts=self.max_retries,
            error=(
                f"Не удалось обработать изображение после {self.max_retries} попыток: "
                f"{last_error or 'неизвестная ошибка'}"
            ),
            last_error=last_error,
        )

    def _record(self, success: bool, elapsed: float):
        self.total_processed += 1
        if success:
            self.total_success += 1
        else:
            self.total_failed += 1
        total = self.average_processing_time * (self.total_processed - 1) + elapsed
        self.average_processing_time = total / self.total_processed

    def is_processing_for_user(self, user_id: int) -> bool:
        prefix = f"{user_id}_"
        return any(job_id.startswith(prefix) for job_id in self._jobs)

    def active_jobs_for_user(self, user_id: int) -> int:
        prefix = f"{user_id}_"
        return sum(1 for job_id in self._jobs if job_id.startswith(prefix))

    def clear_stale_jobs(self, max_age: float = IMAGE_STALE_AFTER) -> int:
        """Forget jobs older than ``max_age``. Does not cancel the underlying call."""
        now = time.monotonic()
        cleared = 0
        for job_id, started in list(self._start_times.items()):
            if now - started > max_age:
                logger.warning("Clearing stale image job %s (age %ds)", job_id, now - started)
                self._jobs.pop(job_id, None)
                self._start_times.pop(job_id, None)
                self.active_jobs = max(0, self.active_jobs - 1)
                cleared += 1
        if cleared:
            logger.info("Cleared %d stale image jobs", cleared)
        return cleared

    def stats(self) -> dict:
        return {
            "total_processed": self.total_processed,
            "total_success": self.total_success,
            "total_failed": self.total_failed,
            "average_processing_time": self.average_processing_time,
            "active_jobs": len(self._jobs),
            "max_concurrent": self.max_concurrent,
            "success_rate": (
                round(self.total_success / self.total_processed * 100)
                if self.total_processed else 0
            ),
        }

    def health(self) -> dict:
        stats = self.stats()
        return {
            "status": "healthy" if stats["active_jobs"] < self.max_concurrent else "busy",
            "active_jobs": stats["active_jobs"],
            "max_concurrency": self.max_concurrent,
            "total_processed": stats["total_processed"],
            "success_rate": stats["success_rate"],
            "average_processing_time": round(stats["average_processing_time"], 2),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    async def shutdown(self, grace: float = IMAGE_SHUTDOWN_GRACE):
        logger.info("Stopping ImageProcessor...")
        self._accepting = False
        pending = [t for t in self._jobs.values() if not t.done()]
        if pending:
            logger.info("Waiting for %d active image jobs", len(pending))
            _, still_running = await asyncio.wait(pending, timeout=grace)
            if still_running:
                logger.warning("%d image jobs did not finish before shutdown", len(still_running))
        self._jobs.clear()
        self._start_times.clear()
        self.active_jobs = 0
        logger.info("ImageProcessor stopped")
