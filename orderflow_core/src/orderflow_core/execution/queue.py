"""Durable Work Queue for OrderFlow.

The queue hands swap jobs to workers and owns the retry policy. Workers
never raise to request a retry: a handler returns a JobResult and the
QueueConsumer interprets failures as "redeliver per policy".

Job Lifecycle:
    enqueue -> WAITING -> reserve -> ACTIVE -> complete -> COMPLETED
                  ^                    |
                  |                    +-> retry (backoff) -> DELAYED -> WAITING
                  |                    +-> abandon (attempts exhausted) -> FAILED
                  +-------- promoted when the backoff delay elapses
                  +-------- recovered when an ACTIVE job outlives its lease

Design Decisions:
- A reserved job is held by exactly one consumer (atomic list move)
- A reserved job carries a lease; a consumer that dies mid-job loses it and
  the job is redelivered, or abandoned once its attempts are used up
- Exponential backoff: base * 2 ** (attempt - 1), strictly increasing
- Job identity is stable across retries; it is not the order id
- No ordering guarantee across distinct jobs
"""

from __future__ import annotations

import asyncio
import time
import uuid
from collections import deque
from contextlib import asynccontextmanager
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Final, Protocol, runtime_checkable

import redis.asyncio as aioredis
import structlog
from pydantic import BaseModel, Field, ValidationError
from redis.exceptions import RedisError, WatchError

from orderflow_core.common.types import utc_now
from orderflow_core.execution.orders import SwapJob

if TYPE_CHECKING:
    from collections.abc import AsyncIterator, Awaitable, Callable

log = structlog.get_logger()


# ==============================================================================
# Constants
# ==============================================================================
DEFAULT_QUEUE_NAME: Final[str] = "order-queue"
DEFAULT_JOB_NAME: Final[str] = "swap"
DEFAULT_MAX_ATTEMPTS: Final[int] = 3
DEFAULT_BACKOFF_DELAY: Final[float] = 1.0  # seconds
DEFAULT_CONCURRENCY: Final[int] = 4
DEFAULT_POLL_TIMEOUT: Final[float] = 1.0  # seconds
MEMORY_POLL_INTERVAL: Final[float] = 0.01  # seconds
DEFAULT_LEASE_TIMEOUT: Final[float] = 30.0  # seconds a reserved job may run
STALLED_ERROR: Final[str] = "job stalled: lease expired"


# ==============================================================================
# Enums
# ==============================================================================
class JobState(str, Enum):
    """Queue-side job state."""

    WAITING = "waiting"
    DELAYED = "delayed"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


# ==============================================================================
# Custom Exceptions
# ==============================================================================
class QueueError(Exception):
    """Raised when the queue transport fails."""


# ==============================================================================
# Models
# ==============================================================================
class JobOptions(BaseModel):
    """Retry policy attached to a job at enqueue time."""

    model_config = {"frozen": True}

    max_attempts: int = Field(default=DEFAULT_MAX_ATTEMPTS, ge=1)
    backoff_delay: float = Field(default=DEFAULT_BACKOFF_DELAY, ge=0)

    def backoff_for(self, attempts_made: int) -> float:
        """Delay before the attempt following attempt number ``attempts_made``."""
        return self.backoff_delay * 2 ** max(0, attempts_made - 1)


class QueuedJob(BaseModel):
    """Queue envelope around a SwapJob payload.

    Attributes:
        job_id: Stable job identity across retries.
        name: Job kind.
        payload: The swap job itself.
        options: Retry policy.
        attempts_made: Number of deliveries so far (1 during the first attempt).
        last_error: Error from the most recent failed attempt.
        enqueued_at: When the job was first enqueued.
    """

    model_config = {"frozen": True}

    job_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = DEFAULT_JOB_NAME
    payload: SwapJob
    options: JobOptions = Field(default_factory=JobOptions)
    attempts_made: int = Field(default=0, ge=0)
    last_error: str | None = None
    enqueued_at: datetime = Field(default_factory=utc_now)

    @property
    def attempts_left(self) -> int:
        return max(0, self.options.max_attempts - self.attempts_made)

    def delivered(self) -> QueuedJob:
        """Copy of this job marked as handed out once more."""
        return self.model_copy(update={"attempts_made": self.attempts_made + 1})

    def failed_with(self, error: str) -> QueuedJob:
        return self.model_copy(update={"last_error": error})


class JobResult(BaseModel):
    """Outcome of one job attempt, returned by handlers instead of raising.

    Contains either success detail or failure information.
    """

    model_config = {"frozen": True}

    success: bool
    error: str | None = None
    retryable: bool = True
    detail: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def ok(cls, **detail: Any) -> JobResult:
        return cls(success=True, detail=detail)

    @classmethod
    def failure(cls, error: str, *, retryable: bool = True, **detail: Any) -> JobResult:
        return cls(success=False, error=error, retryable=retryable, detail=detail)


# ==============================================================================
# Work Queue Protocol
# ==============================================================================
@runtime_checkable
class WorkQueue(Protocol):
    """Protocol for durable work queues."""

    async def enqueue(self, job: SwapJob, options: JobOptions | None = None) -> QueuedJob:
        """Durably record a job and make it available to one worker."""
        ...

    async def reserve(self, timeout: float = DEFAULT_POLL_TIMEOUT) -> QueuedJob | None:
        """Hand the next ready job to the caller, or None after ``timeout``."""
        ...

    async def complete(self, job: QueuedJob) -> None:
        """Acknowledge a successful attempt."""
        ...

    async def retry(self, job: QueuedJob, delay: float, error: str) -> None:
        """Redeliver the same job after ``delay`` seconds."""
        ...

    async def abandon(self, job: QueuedJob, error: str) -> None:
        """Stop delivering a job for good."""
        ...

    async def counts(self) -> dict[str, int]:
        """Number of jobs per JobState."""
        ...

    async def get_failed(self, job_id: str) -> QueuedJob | None:
        """Abandoned job record, if any."""
        ...

    async def close(self) -> None:
        """Release transport resources."""
        ...


# ==============================================================================
# Memory Work Queue (Development/Testing)
# ==============================================================================
class MemoryWorkQueue:
    """In-memory work queue for development and testing.

    WARNING: Jobs are lost on restart. Do not use in production.

    Polling (rather than asyncio primitives) keeps the queue usable from any
    event loop, e.g. a test client thread enqueuing while a test consumes.
    """

    def __init__(self, poll_interval: float = MEMORY_POLL_INTERVAL) -> None:
        self.poll_interval = poll_interval
        self._jobs: dict[str, QueuedJob] = {}
        self._waiting: deque[str] = deque()
        self._delayed: dict[str, float] = {}
        self._active: set[str] = set()
        self._completed: list[str] = []
        self._failed: dict[str, QueuedJob] = {}
        self.retry_delays: dict[str, list[float]] = {}

    async def enqueue(self, job: SwapJob, options: JobOptions | None = None) -> QueuedJob:
        queued = QueuedJob(payload=job, options=options or JobOptions())
        self._jobs[queued.job_id] = queued
        self._waiting.append(queued.job_id)
        log.debug("Job enqueued", job_id=queued.job_id, order_id=job.order_id)
        return queued

    def _promote_due(self) -> None:
        now = time.monotonic()
        due = sorted((at, job_id) for job_id, at in self._delayed.items() if at <= now)
        for _, job_id in due:
            del self._delayed[job_id]
            self._waiting.append(job_id)

    async def reserve(self, timeout: float = DEFAULT_POLL_TIMEOUT) -> QueuedJob | None:
        deadline = time.monotonic() + timeout
        while True:
            self._promote_due()
            if self._waiting:
                job_id = self._waiting.popleft()
                job = self._jobs[job_id].delivered()
                self._jobs[job_id] = job
                self._active.add(job_id)
                return job
            if time.monotonic() >= deadline:
                return None
            await asyncio.sleep(self.poll_interval)

    async def complete(self, job: QueuedJob) -> None:
        self._active.discard(job.job_id)
        self._jobs.pop(job.job_id, None)
        self._completed.append(job.job_id)

    async def retry(self, job: QueuedJob, delay: float, error: str) -> None:
        self._active.discard(job.job_id)
        self._jobs[job.job_id] = job.failed_with(error)
        self._delayed[job.job_id] = time.monotonic() + delay
        self.retry_delays.setdefault(job.job_id, []).append(delay)

    async def abandon(self, job: QueuedJob, error: str) -> None:
        self._active.discard(job.job_id)
        self._jobs.pop(job.job_id, None)
        self._failed[job.job_id] = job.failed_with(error)

    async def counts(self) -> dict[str, int]:
        return {
            JobState.WAITING.value: len(self._waiting),
            JobState.DELAYED.value: len(self._delayed),
            JobState.ACTIVE.value: len(self._active),
            JobState.COMPLETED.value: len(self._completed),
            JobState.FAILED.value: len(self._failed),
        }

    async def get_failed(self, job_id: str) -> QueuedJob | None:
        """Abandoned job record, if any."""
        return self._failed.get(job_id)

    async def close(self) -> None:
        return None


# ==============================================================================
# Redis Work Queue
# ==============================================================================
@asynccontextmanager
async def _queue_op(operation: str) -> AsyncIterator[None]:
    try:
        yield
    except RedisError as exc:
        raise QueueError(f"Queue {operation} failed: {exc}") from exc


def _parse_job(raw: str | None) -> QueuedJob | None:
    if raw is None:
        return None
    try:
        return QueuedJob.model_validate_json(raw)
    except ValidationError as exc:
        log.warning("Unreadable job record", error=str(exc))
        return None


class RedisWorkQueue:
    """Redis-backed durable work queue.

    Keys (all under ``<prefix>:<name>``):
    - ``jobs``: hash job_id -> QueuedJob JSON
    - ``waiting``: list of ready job ids
    - ``active``: list of job ids held by a consumer
    - ``leases``: sorted set job_id -> lease expiry unix time of active jobs
    - ``delayed``: sorted set job_id -> due unix time
    - ``failed``: hash job_id -> abandoned QueuedJob JSON
    - ``stats``: hash of counters

    Attributes:
        redis_url: Redis connection URL.
        name: Queue name.
        lease_timeout: Seconds a consumer may hold a job before it is
            presumed dead and the job is recovered. Must exceed the longest
            expected handler run.
        client: redis.asyncio client instance.
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379/0",
        name: str = DEFAULT_QUEUE_NAME,
        prefix: str = "queue",
        block_timeout: float = DEFAULT_POLL_TIMEOUT,
        lease_timeout: float = DEFAULT_LEASE_TIMEOUT,
        client: aioredis.Redis | None = None,
    ) -> None:
        if lease_timeout <= 0:
            msg = f"lease_timeout must be > 0, got {lease_timeout}"
            raise ValueError(msg)
        self.redis_url = redis_url
        self.name = name
        self.block_timeout = block_timeout
        self.lease_timeout = lease_timeout
        self.client: aioredis.Redis = client or aioredis.from_url(redis_url, decode_responses=True)

        base = f"{prefix}:{name}"
        self.jobs_key = f"{base}:jobs"
        self.waiting_key = f"{base}:waiting"
        self.active_key = f"{base}:active"
        self.leases_key = f"{base}:leases"
        self.delayed_key = f"{base}:delayed"
        self.failed_key = f"{base}:failed"
        self.stats_key = f"{base}:stats"

    async def enqueue(self, job: SwapJob, options: JobOptions | None = None) -> QueuedJob:
        queued = QueuedJob(payload=job, options=options or JobOptions())
        async with _queue_op("enqueue"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, queued.job_id, queued.model_dump_json())
                pipe.rpush(self.waiting_key, queued.job_id)
                await pipe.execute()
        log.debug("Job enqueued", job_id=queued.job_id, order_id=job.order_id, queue=self.name)
        return queued

    async def _promote_due(self) -> None:
        due = await self.client.zrangebyscore(self.delayed_key, "-inf", time.time())
        for job_id in due:
            # ZREM succeeds for exactly one promoter
            if await self.client.zrem(self.delayed_key, job_id):
                await self.client.rpush(self.waiting_key, job_id)

    async def _recover_stalled(self) -> None:
        expired = await self.client.zrangebyscore(self.leases_key, "-inf", time.time())
        for job_id in expired:
            await self._recover(job_id)

    async def _recover(self, job_id: str) -> None:
        """Requeue or abandon one active job whose lease expired."""
        async with self.client.pipeline(transaction=True) as pipe:
            try:
                await pipe.watch(self.leases_key, self.jobs_key)
                expiry = await pipe.zscore(self.leases_key, job_id)
                if expiry is None or expiry > time.time():
                    # Settled or reserved again since the scan
                    return
                raw = await pipe.hget(self.jobs_key, job_id)
                job = _parse_job(raw)

                requeued = job is not None and job.attempts_left > 0
                record = job.failed_with(STALLED_ERROR).model_dump_json() if job else raw

                pipe.multi()
                pipe.zrem(self.leases_key, job_id)
                pipe.lrem(self.active_key, 1, job_id)
                if requeued:
                    pipe.hset(self.jobs_key, job_id, record)
                    pipe.rpush(self.waiting_key, job_id)
                else:
                    pipe.hdel(self.jobs_key, job_id)
                    if record is not None:
                        pipe.hset(self.failed_key, job_id, record)
                await pipe.execute()
            except WatchError:
                # Another consumer touched the queue first; the next pass retries
                return

        log.warning(
            "Recovered stalled job",
            job_id=job_id,
            queue=self.name,
            requeued=requeued,
            attempts_made=job.attempts_made if job is not None else None,
        )

    async def _dead_letter(self, job_id: str, raw: str) -> None:
        async with self.client.pipeline(transaction=True) as pipe:
            pipe.lrem(self.active_key, 1, job_id)
            pipe.hdel(self.jobs_key, job_id)
            pipe.hset(self.failed_key, job_id, raw)
            await pipe.execute()

    async def reserve(self, timeout: float = DEFAULT_POLL_TIMEOUT) -> QueuedJob | None:
        deadline = time.monotonic() + timeout
        async with _queue_op("reserve"):
            while True:
                await self._promote_due()
                await self._recover_stalled()
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return None
                job_id = await self.client.blmove(
                    self.waiting_key,
                    self.active_key,
                    min(remaining, self.block_timeout),
                    src="LEFT",
                    dest="RIGHT",
                )
                if job_id is None:
                    continue

                raw = await self.client.hget(self.jobs_key, job_id)
                if raw is None:
                    log.warning("Dropping job without data", job_id=job_id, queue=self.name)
                    await self.client.lrem(self.active_key, 1, job_id)
                    continue

                job = _parse_job(raw)
                if job is None:
                    log.warning("Dead-lettering unreadable job", job_id=job_id, queue=self.name)
                    await self._dead_letter(job_id, raw)
                    continue

                job = job.delivered()
                async with self.client.pipeline(transaction=True) as pipe:
                    pipe.hset(self.jobs_key, job_id, job.model_dump_json())
                    pipe.zadd(self.leases_key, {job_id: time.time() + self.lease_timeout})
                    await pipe.execute()
                return job

    async def complete(self, job: QueuedJob) -> None:
        async with _queue_op("complete"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, job.job_id)
                pipe.zrem(self.leases_key, job.job_id)
                pipe.hdel(self.jobs_key, job.job_id)
                pipe.hincrby(self.stats_key, JobState.COMPLETED.value, 1)
                await pipe.execute()

    async def retry(self, job: QueuedJob, delay: float, error: str) -> None:
        updated = job.failed_with(error)
        async with _queue_op("retry"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.hset(self.jobs_key, job.job_id, updated.model_dump_json())
                pipe.lrem(self.active_key, 1, job.job_id)
                pipe.zrem(self.leases_key, job.job_id)
                pipe.zadd(self.delayed_key, {job.job_id: time.time() + delay})
                await pipe.execute()

    async def abandon(self, job: QueuedJob, error: str) -> None:
        updated = job.failed_with(error)
        async with _queue_op("abandon"):
            async with self.client.pipeline(transaction=True) as pipe:
                pipe.lrem(self.active_key, 1, job.job_id)
                pipe.zrem(self.leases_key, job.job_id)
                pipe.hdel(self.jobs_key, job.job_id)
                pipe.hset(self.failed_key, job.job_id, updated.model_dump_json())
                await pipe.execute()

    async def get_failed(self, job_id: str) -> QueuedJob | None:
        """Abandoned job record, if any and readable."""
        async with _queue_op("get_failed"):
            raw = await self.client.hget(self.failed_key, job_id)
        return _parse_job(raw)

    async def counts(self) -> dict[str, int]:
        async with _queue_op("counts"):
            async with self.client.pipeline(transaction=False) as pipe:
                pipe.llen(self.waiting_key)
                pipe.zcard(self.delayed_key)
                pipe.llen(self.active_key)
                pipe.hget(self.stats_key, JobState.COMPLETED.value)
                pipe.hlen(self.failed_key)
                waiting, delayed, active, completed, failed = await pipe.execute()
        return {
            JobState.WAITING.value: int(waiting),
            JobState.DELAYED.value: int(delayed),
            JobState.ACTIVE.value: int(active),
            JobState.COMPLETED.value: int(completed or 0),
            JobState.FAILED.value: int(failed),
        }

    async def health_check(self) -> bool:
        """Check if Redis is reachable."""
        try:
            return bool(await self.client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self.client.aclose()


# ==============================================================================
# Queue Consumer
# ==============================================================================
class QueueConsumer:
    """Pulls jobs from a WorkQueue and applies the retry policy.

    Attributes:
        queue: Source queue.
        handler: Coroutine returning a JobResult for a SwapJob.
        concurrency: Max jobs in flight in this consumer.
        poll_timeout: Seconds to wait for a job before re-checking ``running``.
    """

    def __init__(
        self,
        queue: WorkQueue,
        handler: Callable[[SwapJob], Awaitable[JobResult]],
        concurrency: int = DEFAULT_CONCURRENCY,
        poll_timeout: float = DEFAULT_POLL_TIMEOUT,
    ) -> None:
        if concurrency < 1:
            msg = f"concurrency must be >= 1, got {concurrency}"
            raise ValueError(msg)
        self.queue = queue
        self.handler = handler
        self.concurrency = concurrency
        self.poll_timeout = poll_timeout
        self.running = False

    async def process(self, job: QueuedJob) -> JobResult:
        """Run one attempt of ``job`` and settle it with the queue."""
        with structlog.contextvars.bound_contextvars(
            job_id=job.job_id,
            order_id=job.payload.order_id,
            attempt=job.attempts_made,
        ):
            try:
                result = await self.handler(job.payload)
            except Exception as exc:
                log.exception("Job handler raised")
                result = JobResult.failure(str(exc) or type(exc).__name__)

            await self._settle(job, result)
            return result

    async def _settle(self, job: QueuedJob, result: JobResult) -> None:
        if result.success:
            await self.queue.complete(job)
            log.info("Job completed")
            return

        error = result.error or "unknown error"
        if result.retryable and job.attempts_left > 0:
            delay = job.options.backoff_for(job.attempts_made)
            await self.queue.retry(job, delay, error)
            log.warning("Job failed, retry scheduled", error=error, delay=delay)
        else:
            await self.queue.abandon(job, error)
            log.error("Job abandoned", error=error, retryable=result.retryable)

    async def run_once(self, timeout: float | None = None) -> JobResult | None:
        """Reserve and process a single job; None if none became ready."""
        job = await self.queue.reserve(self.poll_timeout if timeout is None else timeout)
        if job is None:
            return None
        return await self.process(job)

    async def _process_guarded(self, job: QueuedJob, slots: asyncio.Semaphore) -> None:
        try:
            await self.process(job)
        except QueueError as exc:
            log.error("Failed to settle job", job_id=job.job_id, error=str(exc))
        finally:
            slots.release()

    async def run(self) -> None:
        """Consume until stop(); in-flight jobs always run to completion."""
        self.running = True
        slots = asyncio.Semaphore(self.concurrency)
        in_flight: set[asyncio.Task[None]] = set()
        log.info("Queue consumer started", concurrency=self.concurrency)

        try:
            while self.running:
                await slots.acquire()
                try:
                    job = await self.queue.reserve(self.poll_timeout)
                except QueueError as exc:
                    slots.release()
                    log.error("Queue reserve failed", error=str(exc))
                    await asyncio.sleep(self.poll_timeout)
                    continue

                if job is None:
                    slots.release()
                    continue

                task = asyncio.create_task(self._process_guarded(job, slots))
                in_flight.add(task)
                task.add_done_callback(in_flight.discard)
        finally:
            if in_flight:
                await asyncio.gather(*in_flight, return_exceptions=True)
            log.info("Queue consumer stopped")

    def stop(self) -> None:
        self.running = False
