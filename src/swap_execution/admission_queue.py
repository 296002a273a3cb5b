"""
Admission Queue - Bounded-concurrency, rate-limited order processing

Handles:
- A fixed pool of worker tasks, each processing one job end-to-end
- A rolling-window limit on how fast waiting jobs are started
- Exponential-backoff retries of failed jobs
- Cancellation of jobs no worker has picked up yet
- Operational statistics and health

Jobs are keyed by order id; at most one job per id is waiting, delayed
or active at any time. The job table is only touched while holding the
queue's condition.
"""

import asyncio
import time
from collections import OrderedDict, deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

from .order_schemas import utc_now
from .errors import DuplicateAdmissionError, CancellationRejectedError, OrderNotFoundError


class JobState(Enum):
    """Where a job currently sits in the queue"""
    WAITING = "waiting"
    ACTIVE = "active"
    DELAYED = "delayed"       # Failed, waiting for its retry backoff
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class Job:
    """Unit of work managed by the queue"""

    order_id: str
    payload: Any
    max_attempts: int
    state: JobState = JobState.WAITING
    attempts_made: int = 0
    failed_reason: Optional[str] = None
    result: Any = None
    created_at: datetime = field(default_factory=utc_now)
    processed_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.attempts_made >= self.max_attempts

    def to_dict(self) -> Dict[str, Any]:
        return {
            'order_id': self.order_id,
            'state': self.state.value,
            'attempts_made': self.attempts_made,
            'max_attempts': self.max_attempts,
            'failed_reason': self.failed_reason,
            'created_at': self.created_at.isoformat(),
            'processed_at': self.processed_at.isoformat() if self.processed_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None
        }


ProcessingCallback = Callable[[Job], Awaitable[Any]]
FailureCallback = Callable[[Job, BaseException], Awaitable[None]]
RetryCallback = Callable[[Job, BaseException, float], Awaitable[None]]


@dataclass
class QueueConfig:
    """Configuration for the admission queue"""

    concurrency: int = 10                    # Worker pool size
    rate_limit: int = 100                    # Job starts per window
    rate_window_seconds: float = 60.0
    max_attempts: int = 3                    # 1 initial + 2 retries
    retry_base_delay_seconds: float = 1.0    # 1s, 2s, 4s, ...
    backlog_threshold: int = 50              # Waiting jobs before health degrades
    keep_completed: int = 100
    keep_failed: int = 50

    def __post_init__(self):
        if self.concurrency < 1:
            raise ValueError("concurrency must be >= 1")
        if self.rate_limit < 1:
            raise ValueError("rate_limit must be >= 1")
        if self.rate_window_seconds <= 0:
            raise ValueError("rate_window_seconds must be positive")
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.retry_base_delay_seconds < 0:
            raise ValueError("retry_base_delay_seconds must be non-negative")


def backoff_delay(base_delay: float, attempt: int) -> float:
    """Delay before the retry that follows failed attempt number `attempt`"""
    return base_delay * (2 ** (attempt - 1))


class RollingWindowRateLimiter:
    """
    At most `limit` acquisitions in any `window_seconds` span

    The clock is injectable for deterministic tests.
    """

    def __init__(self, limit: int, window_seconds: float,
                 clock: Callable[[], float] = time.monotonic):
        self.limit = limit
        self.window_seconds = window_seconds
        self.clock = clock
        self._starts: deque = deque()

    def _evict(self, now: float) -> None:
        while self._starts and now - self._starts[0] >= self.window_seconds:
            self._starts.popleft()

    def try_acquire(self) -> bool:
        now = self.clock()
        self._evict(now)
        if len(self._starts) >= self.limit:
            return False
        self._starts.append(now)
        return True

    def wait_time(self) -> float:
        """Seconds until the next acquisition can succeed (0 if available now)"""
        now = self.clock()
        self._evict(now)
        if len(self._starts) < self.limit:
            return 0.0
        return max(self._starts[0] + self.window_seconds - now, 0.0)

    @property
    def in_window(self) -> int:
        self._evict(self.clock())
        return len(self._starts)

    def reset(self) -> None:
        self._starts.clear()


class AdmissionQueue:
    """
    Entry point of the pipeline

    The processing callback receives the Job and may raise; failures are
    retried with backoff until `max_attempts` is reached, after which the
    failure callback is invoked instead of raising to anyone.
    """

    def __init__(self, config: Optional[QueueConfig] = None,
                 processor: Optional[ProcessingCallback] = None,
                 on_failed: Optional[FailureCallback] = None,
                 on_retry: Optional[RetryCallback] = None,
                 clock: Callable[[], float] = time.monotonic):
        self.config = config or QueueConfig()
        self._processor = processor
        self._on_failed = on_failed
        self._on_retry = on_retry
        self.rate_limiter = RollingWindowRateLimiter(
            self.config.rate_limit, self.config.rate_window_seconds, clock=clock
        )

        # Job table: every waiting, active or delayed job, keyed by order id
        self._jobs: Dict[str, Job] = {}
        self._waiting: "OrderedDict[str, Job]" = OrderedDict()
        self._completed: deque = deque(maxlen=self.config.keep_completed)
        self._failed: deque = deque(maxlen=self.config.keep_failed)
        self._condition = asyncio.Condition()

        self._workers: List[asyncio.Task] = []
        self._retry_tasks: Dict[str, asyncio.Task] = {}
        self._running = False
        self._paused = False

        # Performance tracking
        self.total_enqueued = 0
        self.total_completed = 0
        self.total_failed = 0
        self.total_retries = 0
        self.total_cancelled = 0

    def set_processing_callback(self, processor: ProcessingCallback) -> None:
        self._processor = processor

    def set_failure_callback(self, on_failed: FailureCallback) -> None:
        self._on_failed = on_failed

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def is_paused(self) -> bool:
        return self._paused

    async def start(self) -> None:
        """Start the worker pool"""
        if self._running:
            return
        if self._processor is None:
            raise RuntimeError("AdmissionQueue needs a processing callback before start()")

        self._running = True
        self._workers = [
            asyncio.create_task(self._worker_loop(index), name=f"admission-worker-{index}")
            for index in range(self.config.concurrency)
        ]
        logger.info(f"Admission queue started with {self.config.concurrency} workers "
                    f"({self.config.rate_limit} jobs / {self.config.rate_window_seconds:.0f}s)")

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop the workers

        Active jobs run to completion unless `timeout` expires first, in
        which case their workers are cancelled. Jobs waiting on a retry are
        failed through the failure callback.
        """
        if not self._running:
            return

        async with self._condition:
            self._running = False
            for task in self._retry_tasks.values():
                task.cancel()
            self._retry_tasks.clear()
            delayed = [job for job in self._jobs.values() if job.state == JobState.DELAYED]
            self._condition.notify_all()

        for job in delayed:
            await self._abandon(job)

        if self._workers:
            done, pending = await asyncio.wait(self._workers, timeout=timeout)
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)
                logger.warning(f"Cancelled {len(pending)} workers still active at shutdown")
        self._workers = []
        logger.info("Admission queue stopped")

    async def enqueue(self, order_id: str, payload: Any = None) -> Job:
        """
        Add a job to the waiting set

        Raises:
            DuplicateAdmissionError: a job for this order id is already
                waiting, delayed or active
        """
        async with self._condition:
            existing = self._jobs.get(order_id)
            if existing is not None:
                raise DuplicateAdmissionError(order_id, existing.state.value)

            job = Job(order_id=order_id, payload=payload, max_attempts=self.config.max_attempts)
            self._jobs[order_id] = job
            self._waiting[order_id] = job
            self.total_enqueued += 1
            self._condition.notify_all()

        logger.debug(f"Enqueued job {order_id} ({len(self._waiting)} waiting)")
        return job

    async def cancel(self, order_id: str) -> Job:
        """
        Remove a job no worker has picked up yet

        Raises:
            OrderNotFoundError: no live job for this order id
            CancellationRejectedError: the job is active or awaiting a retry
        """
        async with self._condition:
            job = self._jobs.get(order_id)
            if job is None:
                raise OrderNotFoundError(order_id)
            if job.state != JobState.WAITING:
                raise CancellationRejectedError(order_id, job.state.value)

            del self._waiting[order_id]
            del self._jobs[order_id]
            job.finished_at = utc_now()
            self.total_cancelled += 1
            self._condition.notify_all()

        logger.info(f"Cancelled waiting job {order_id}")
        return job

    async def pause(self) -> None:
        """Stop dispatching waiting jobs; active jobs keep running"""
        async with self._condition:
            self._paused = True
        logger.info("Admission queue paused")

    async def resume(self) -> None:
        async with self._condition:
            self._paused = False
            self._condition.notify_all()
        logger.info("Admission queue resumed")

    async def drain(self, timeout: Optional[float] = None) -> None:
        """Wait until no job is waiting, delayed or active"""
        async with self._condition:
            await asyncio.wait_for(self._condition.wait_for(lambda: not self._jobs), timeout=timeout)

    async def _next_job(self) -> Optional[Job]:
        async with self._condition:
            while True:
                if not self._running:
                    return None
                if self._paused or not self._waiting:
                    await self._condition.wait()
                    continue

                if not self.rate_limiter.try_acquire():
                    try:
                        await asyncio.wait_for(self._condition.wait(),
                                               timeout=self.rate_limiter.wait_time())
                    except asyncio.TimeoutError:
                        pass
                    continue

                order_id, job = self._waiting.popitem(last=False)
                job.state = JobState.ACTIVE
                job.attempts_made += 1
                job.processed_at = utc_now()
                return job

    async def _worker_loop(self, index: int) -> None:
        while True:
            job = await self._next_job()
            if job is None:
                break
            await self._process(job)
        logger.debug(f"Admission worker {index} exiting")

    async def _process(self, job: Job) -> None:
        logger.debug(f"Processing job {job.order_id} (attempt {job.attempts_made}/{job.max_attempts})")
        try:
            result = await self._processor(job)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            await self._handle_failure(job, e)
        else:
            await self._complete(job, result)

    async def _complete(self, job: Job, result: Any) -> None:
        async with self._condition:
            job.state = JobState.COMPLETED
            job.result = result
            job.finished_at = utc_now()
            self._jobs.pop(job.order_id, None)
            self._completed.append(job)
            self.total_completed += 1
            self._condition.notify_all()
        logger.debug(f"Job {job.order_id} completed after {job.attempts_made} attempt(s)")

    async def _handle_failure(self, job: Job, error: Exception) -> None:
        job.failed_reason = str(error) or error.__class__.__name__

        if not job.is_final_attempt and not self._running:
            await self._abandon(job)
            return

        if not job.is_final_attempt:
            delay = backoff_delay(self.config.retry_base_delay_seconds, job.attempts_made)
            async with self._condition:
                job.state = JobState.DELAYED
                self.total_retries += 1
                self._retry_tasks[job.order_id] = asyncio.create_task(self._retry_after(job, delay))
            logger.warning(f"Job {job.order_id} attempt {job.attempts_made}/{job.max_attempts} failed: "
                           f"{job.failed_reason}; retrying in {delay:.2f}s")
            if self._on_retry:
                await self._notify(self._on_retry, job, error, delay)
            return

        logger.error(f"Job {job.order_id} failed after {job.attempts_made} attempts: {job.failed_reason}")
        await self._fail(job, error)

    async def _abandon(self, job: Job) -> None:
        error = RuntimeError(f"queue shut down before retry (last error: {job.failed_reason})")
        job.failed_reason = str(error)
        logger.warning(f"Job {job.order_id} abandoned at shutdown after {job.attempts_made} attempt(s)")
        await self._fail(job, error)

    async def _fail(self, job: Job, error: Exception) -> None:
        # The job stays active until the failure callback has run, so drain() covers it
        if self._on_failed:
            await self._notify(self._on_failed, job, error)

        async with self._condition:
            job.state = JobState.FAILED
            job.finished_at = utc_now()
            self._jobs.pop(job.order_id, None)
            self._failed.append(job)
            self.total_failed += 1
            self._condition.notify_all()

    async def _notify(self, callback: Callable[..., Awaitable[None]], job: Job, *args) -> None:
        try:
            await callback(job, *args)
        except Exception as e:
            logger.error(f"Queue callback for job {job.order_id} raised: {e}")

    async def _retry_after(self, job: Job, delay: float) -> None:
        await asyncio.sleep(delay)
        async with self._condition:
            self._retry_tasks.pop(job.order_id, None)
            if self._jobs.get(job.order_id) is not job:
                return
            job.state = JobState.WAITING
            self._waiting[job.order_id] = job
            self._condition.notify_all()

    async def retry_failed(self, order_id: str) -> Job:
        """
        Re-admit a terminally failed job with a fresh attempt budget

        Raises:
            OrderNotFoundError: no failed job with this id in the history
            DuplicateAdmissionError: a live job already uses this id
        """
        job = next((failed for failed in self._failed if failed.order_id == order_id), None)
        if job is None:
            raise OrderNotFoundError(order_id)
        self._failed.remove(job)
        return await self.enqueue(order_id, job.payload)

    def get_job(self, order_id: str) -> Optional[Job]:
        """Live job, or the most recent finished job kept in history"""
        job = self._jobs.get(order_id)
        if job is not None:
            return job
        for history in (self._completed, self._failed):
            for finished in reversed(history):
                if finished.order_id == order_id:
                    return finished
        return None

    def stats(self) -> Dict[str, Any]:
        """Job counts; every live job is in exactly one of waiting/active/delayed"""
        counts = {state: 0 for state in (JobState.WAITING, JobState.ACTIVE, JobState.DELAYED)}
        for job in self._jobs.values():
            counts[job.state] += 1
        return {
            'waiting': counts[JobState.WAITING],
            'active': counts[JobState.ACTIVE],
            'delayed': counts[JobState.DELAYED],
            'completed': self.total_completed,
            'failed': self.total_failed,
            'cancelled': self.total_cancelled,
            'retries': self.total_retries,
            'paused': self._paused
        }

    def health_check(self) -> Dict[str, Any]:
        stats = self.stats()
        issues = []
        if stats['active'] > self.config.concurrency:
            issues.append(f"{stats['active']} active jobs exceed pool size {self.config.concurrency}")
        if stats['waiting'] > self.config.backlog_threshold:
            issues.append(f"{stats['waiting']} waiting jobs exceed backlog threshold "
                          f"{self.config.backlog_threshold}")

        return {
            'status': 'degraded' if issues else 'healthy',
            'is_healthy': not issues,
            'issues': issues,
            'running': self._running,
            'stats': stats
        }
