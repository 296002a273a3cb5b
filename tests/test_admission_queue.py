"""
Test Admission Queue - Worker pool, rate limiting, retries

Tests:
- Rolling-window rate limiter and backoff schedule
- Bounded concurrency and stats consistency
- Retry bound and backoff delays
- Duplicate admission, cancellation, pause/resume
- Health, job history and re-admission of failed jobs
"""

import asyncio
import time

import pytest

from src.swap_execution.admission_queue import (
    AdmissionQueue, QueueConfig, JobState, RollingWindowRateLimiter, backoff_delay
)
from src.swap_execution.errors import (
    DuplicateAdmissionError, CancellationRejectedError, OrderNotFoundError
)


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestRateLimiter:
    """Test the rolling-window limiter"""

    def test_limit_within_window(self):
        clock = FakeClock()
        limiter = RollingWindowRateLimiter(limit=2, window_seconds=10.0, clock=clock)

        assert limiter.try_acquire()
        clock.advance(3.0)
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
        assert limiter.wait_time() == pytest.approx(7.0)
        assert limiter.in_window == 2

    def test_window_rolls_forward(self):
        clock = FakeClock()
        limiter = RollingWindowRateLimiter(limit=2, window_seconds=10.0, clock=clock)
        limiter.try_acquire()
        clock.advance(3.0)
        limiter.try_acquire()

        clock.advance(7.0)
        assert limiter.wait_time() == 0.0
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

        limiter.reset()
        assert limiter.try_acquire()

    def test_backoff_schedule(self):
        assert [backoff_delay(1.0, attempt) for attempt in (1, 2, 3)] == [1.0, 2.0, 4.0]

    def test_config_validation(self):
        with pytest.raises(ValueError):
            QueueConfig(concurrency=0)
        with pytest.raises(ValueError):
            QueueConfig(max_attempts=0)
        with pytest.raises(ValueError):
            QueueConfig(retry_base_delay_seconds=-1)


class TestProcessing:
    """Test job dispatch through the worker pool"""

    @pytest.mark.asyncio
    async def test_processes_enqueued_jobs(self):
        processed = []

        async def processor(job):
            processed.append((job.order_id, job.payload))
            return job.order_id

        queue = AdmissionQueue(QueueConfig(concurrency=2), processor=processor)
        await queue.start()
        try:
            for index in range(3):
                await queue.enqueue(f"order-{index}", {'n': index})
            await queue.drain(timeout=2.0)
        finally:
            await queue.shutdown()

        assert sorted(processed) == [(f"order-{i}", {'n': i}) for i in range(3)]
        stats = queue.stats()
        assert stats['completed'] == 3
        assert stats['waiting'] == stats['active'] == stats['delayed'] == 0
        assert queue.get_job("order-1").state == JobState.COMPLETED
        assert queue.get_job("order-1").result == "order-1"

    @pytest.mark.asyncio
    async def test_start_requires_processor(self):
        with pytest.raises(RuntimeError):
            await AdmissionQueue().start()

    @pytest.mark.asyncio
    async def test_worker_pool_bounds_concurrency(self):
        release = asyncio.Event()
        running = 0
        peak = 0

        async def processor(job):
            nonlocal running, peak
            running += 1
            peak = max(peak, running)
            await release.wait()
            running -= 1

        queue = AdmissionQueue(QueueConfig(concurrency=10), processor=processor)
        await queue.start()
        try:
            for index in range(15):
                await queue.enqueue(f"order-{index}")
            await asyncio.sleep(0.05)

            stats = queue.stats()
            assert stats['active'] == 10
            assert stats['waiting'] == 5
            assert stats['active'] + stats['waiting'] + stats['delayed'] == 15

            release.set()
            await queue.drain(timeout=2.0)
        finally:
            release.set()
            await queue.shutdown()

        assert peak == 10
        assert queue.stats()['completed'] == 15

    @pytest.mark.asyncio
    async def test_rate_limit_throttles_job_starts(self):
        starts = []

        async def processor(job):
            starts.append(time.monotonic())

        config = QueueConfig(concurrency=4, rate_limit=2, rate_window_seconds=0.3)
        queue = AdmissionQueue(config, processor=processor)
        await queue.start()
        try:
            for index in range(4):
                await queue.enqueue(f"order-{index}")
            await queue.drain(timeout=3.0)
        finally:
            await queue.shutdown()

        assert len(starts) == 4
        assert starts[1] - starts[0] < 0.1
        assert starts[2] - starts[0] >= 0.25


class TestRetries:
    """Test the retry policy"""

    @pytest.mark.asyncio
    async def test_always_failing_job_runs_three_times(self):
        calls = []
        failures = []

        async def processor(job):
            calls.append(time.monotonic())
            raise RuntimeError("venue down")

        async def on_failed(job, error):
            failures.append((job.order_id, job.attempts_made, str(error)))

        config = QueueConfig(retry_base_delay_seconds=0.1)
        queue = AdmissionQueue(config, processor=processor, on_failed=on_failed)
        await queue.start()
        try:
            await queue.enqueue("order-1")
            await queue.drain(timeout=3.0)
        finally:
            await queue.shutdown()

        assert len(calls) == 3
        first_gap, second_gap = calls[1] - calls[0], calls[2] - calls[1]
        assert 0.09 <= first_gap < 0.19
        assert second_gap >= 0.19
        assert second_gap > first_gap

        assert failures == [("order-1", 3, "venue down")]
        stats = queue.stats()
        assert stats['failed'] == 1
        assert stats['retries'] == 2
        job = queue.get_job("order-1")
        assert job.state == JobState.FAILED
        assert job.failed_reason == "venue down"

    @pytest.mark.asyncio
    async def test_retry_then_success(self):
        attempts = []
        retries = []

        async def processor(job):
            attempts.append(job.attempts_made)
            if job.attempts_made == 1:
                raise RuntimeError("transient")

        async def on_retry(job, error, delay):
            retries.append(delay)

        queue = AdmissionQueue(QueueConfig(retry_base_delay_seconds=0.01),
                               processor=processor, on_retry=on_retry)
        await queue.start()
        try:
            await queue.enqueue("order-1")
            await queue.drain(timeout=2.0)
        finally:
            await queue.shutdown()

        assert attempts == [1, 2]
        assert retries == [0.01]
        assert queue.get_job("order-1").state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_delayed_job_counted_once(self):
        async def processor(job):
            raise RuntimeError("fail")

        queue = AdmissionQueue(QueueConfig(retry_base_delay_seconds=5.0), processor=processor)
        await queue.start()
        try:
            await queue.enqueue("order-1")
            await asyncio.sleep(0.05)
            stats = queue.stats()
            assert stats['delayed'] == 1
            assert stats['waiting'] == stats['active'] == 0

            with pytest.raises(CancellationRejectedError):
                await queue.cancel("order-1")
        finally:
            await queue.shutdown()

    @pytest.mark.asyncio
    async def test_retry_failed_readmits_job(self):
        healthy = False

        async def processor(job):
            if not healthy:
                raise RuntimeError("down")

        queue = AdmissionQueue(QueueConfig(max_attempts=1), processor=processor)
        await queue.start()
        try:
            await queue.enqueue("order-1", "payload")
            await queue.drain(timeout=2.0)
            assert queue.get_job("order-1").state == JobState.FAILED

            healthy = True
            job = await queue.retry_failed("order-1")
            assert job.payload == "payload"
            await queue.drain(timeout=2.0)
        finally:
            await queue.shutdown()

        assert queue.get_job("order-1").state == JobState.COMPLETED
        with pytest.raises(OrderNotFoundError):
            await queue.retry_failed("order-1")


class TestJobControl:
    """Test duplicate admission, cancellation and pausing"""

    @pytest.mark.asyncio
    async def test_duplicate_while_waiting(self):
        queue = AdmissionQueue(processor=lambda job: asyncio.sleep(0))
        await queue.enqueue("order-1")

        with pytest.raises(DuplicateAdmissionError) as excinfo:
            await queue.enqueue("order-1")
        assert excinfo.value.state == "waiting"
        assert queue.stats()['waiting'] == 1

    @pytest.mark.asyncio
    async def test_duplicate_while_active_does_not_start_second_worker(self):
        release = asyncio.Event()
        runs = 0

        async def processor(job):
            nonlocal runs
            runs += 1
            await release.wait()

        queue = AdmissionQueue(processor=processor)
        await queue.start()
        try:
            await queue.enqueue("order-1")
            await asyncio.sleep(0.02)
            with pytest.raises(DuplicateAdmissionError):
                await queue.enqueue("order-1")
            release.set()
            await queue.drain(timeout=2.0)
        finally:
            release.set()
            await queue.shutdown()

        assert runs == 1

    @pytest.mark.asyncio
    async def test_cancel_waiting_job(self):
        queue = AdmissionQueue(processor=lambda job: asyncio.sleep(0))
        await queue.enqueue("order-1")

        job = await queue.cancel("order-1")

        assert job.order_id == "order-1"
        assert queue.stats()['waiting'] == 0
        assert queue.stats()['cancelled'] == 1
        with pytest.raises(OrderNotFoundError):
            await queue.cancel("order-1")

    @pytest.mark.asyncio
    async def test_cancel_active_job_is_rejected(self):
        release = asyncio.Event()

        async def processor(job):
            await release.wait()

        queue = AdmissionQueue(processor=processor)
        await queue.start()
        try:
            await queue.enqueue("order-1")
            await asyncio.sleep(0.02)
            with pytest.raises(CancellationRejectedError) as excinfo:
                await queue.cancel("order-1")
            assert excinfo.value.status == "active"
        finally:
            release.set()
            await queue.shutdown()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self):
        processed = []

        async def processor(job):
            processed.append(job.order_id)

        queue = AdmissionQueue(processor=processor)
        await queue.start()
        try:
            await queue.pause()
            await queue.enqueue("order-1")
            await asyncio.sleep(0.05)
            assert processed == []
            assert queue.stats()['waiting'] == 1
            assert queue.stats()['paused'] is True

            await queue.resume()
            await queue.drain(timeout=2.0)
        finally:
            await queue.shutdown()

        assert processed == ["order-1"]

    @pytest.mark.asyncio
    async def test_shutdown_lets_active_jobs_finish(self):
        finished = []

        async def processor(job):
            await asyncio.sleep(0.05)
            finished.append(job.order_id)

        queue = AdmissionQueue(processor=processor)
        await queue.start()
        await queue.enqueue("order-1")
        await asyncio.sleep(0.01)
        await queue.shutdown()

        assert finished == ["order-1"]
        assert not queue.is_running

    @pytest.mark.asyncio
    async def test_shutdown_fails_jobs_awaiting_retry(self):
        """A job in its backoff window is failed, not left delayed"""
        failures = []

        async def processor(job):
            raise RuntimeError("venue down")

        async def on_failed(job, error):
            failures.append((job.order_id, str(error)))

        queue = AdmissionQueue(QueueConfig(retry_base_delay_seconds=5.0),
                               processor=processor, on_failed=on_failed)
        await queue.start()
        await queue.enqueue("order-1")
        await asyncio.sleep(0.05)
        assert queue.stats()['delayed'] == 1

        await queue.shutdown()

        stats = queue.stats()
        assert stats['delayed'] == 0
        assert stats['failed'] == 1
        assert queue.get_job("order-1").state == JobState.FAILED
        assert len(failures) == 1
        assert "venue down" in failures[0][1]


class TestHealth:
    """Test health reporting"""

    @pytest.mark.asyncio
    async def test_backlog_degrades_health(self):
        queue = AdmissionQueue(QueueConfig(backlog_threshold=2), processor=lambda job: asyncio.sleep(0))
        for index in range(2):
            await queue.enqueue(f"order-{index}")
        assert queue.health_check()['status'] == 'healthy'

        await queue.enqueue("order-2")
        health = queue.health_check()
        assert health['status'] == 'degraded'
        assert not health['is_healthy']
        assert "backlog" in health['issues'][0]
        assert health['stats']['waiting'] == 3
