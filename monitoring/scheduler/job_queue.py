"""In-process job queues with per-queue retry policies."""

import asyncio
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Deque, Dict, List, Optional

import structlog

from .jobs import JobData


logger = structlog.get_logger(__name__)

WAITING = "waiting"
ACTIVE = "active"
DELAYED = "delayed"
COMPLETED = "completed"
FAILED = "failed"

PENDING_STATES = (WAITING, ACTIVE, DELAYED)


@dataclass(frozen=True)
class RetryPolicy:
    attempts: int
    backoff_seconds: float
    keep_completed: int
    keep_failed: int

    def delay_for(self, attempts_made: int) -> float:
        """Exponential backoff before the next attempt, given how many have run."""
        return float(self.backoff_seconds) * (2 ** max(0, int(attempts_made) - 1))


QUEUE_POLICIES: Dict[str, RetryPolicy] = {
    "scheduled-messages": RetryPolicy(attempts=3, backoff_seconds=2.0, keep_completed=100, keep_failed=50),
    "health-check": RetryPolicy(attempts=2, backoff_seconds=5.0, keep_completed=50, keep_failed=25),
    "bulk-availability": RetryPolicy(attempts=3, backoff_seconds=3.0, keep_completed=20, keep_failed=10),
    "integration-sync": RetryPolicy(attempts=2, backoff_seconds=10.0, keep_completed=30, keep_failed=15),
    "message-processing": RetryPolicy(attempts=3, backoff_seconds=2.0, keep_completed=100, keep_failed=50),
}

QUEUE_FOR_JOB: Dict[str, str] = {
    "process-scheduled-messages": "scheduled-messages",
    "health-check": "health-check",
    "bulk-availability-check": "bulk-availability",
    "integration-sync": "integration-sync",
    "process-message": "message-processing",
}

JobHandler = Callable[[Any], Awaitable[Any]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class JobRecord:
    id: str
    queue: str
    data: JobData
    state: str = WAITING
    attempts_made: int = 0
    created_at: datetime = field(default_factory=_utcnow)
    finished_at: Optional[datetime] = None
    failed_reason: Optional[str] = None
    result: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "queue": self.queue,
            "type": self.data.type,
            "data": self.data.model_dump(),
            "state": self.state,
            "attempts_made": self.attempts_made,
            "created_at": self.created_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "failed_reason": self.failed_reason,
        }


class JobBroker:
    """Routes job variants to named queues and runs them with retry and backoff."""

    def __init__(
        self,
        *,
        policies: Optional[Dict[str, RetryPolicy]] = None,
        workers_per_queue: int = 1,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.policies = dict(policies or QUEUE_POLICIES)
        self.workers_per_queue = max(1, int(workers_per_queue))
        self.handlers: Dict[str, JobHandler] = {}
        self._sleep = sleep
        self._queues: Dict[str, asyncio.Queue] = {}
        self._jobs: Dict[str, JobRecord] = {}
        self._completed: Dict[str, Deque[JobRecord]] = {name: deque() for name in self.policies}
        self._failed: Dict[str, Deque[JobRecord]] = {name: deque() for name in self.policies}
        self._workers: List[asyncio.Task] = []
        self._retry_tasks: set = set()
        self.running = False

    def register_handler(self, job_type: str, handler: JobHandler):
        if job_type not in QUEUE_FOR_JOB:
            raise ValueError(f"Unknown job type: {job_type}")
        self.handlers[job_type] = handler

    def _queue(self, name: str) -> asyncio.Queue:
        q = self._queues.get(name)
        if q is None:
            q = asyncio.Queue()
            self._queues[name] = q
        return q

    async def start(self):
        if self.running:
            logger.warning("Job broker already running")
            return
        for name in self.policies:
            for i in range(self.workers_per_queue):
                self._workers.append(asyncio.create_task(self._worker(name), name=f"queue-{name}-{i}"))
        self.running = True
        logger.info("Job broker started", queues=list(self.policies), workers_per_queue=self.workers_per_queue)

    async def stop(self):
        if not self.running:
            return
        tasks = self._workers + list(self._retry_tasks)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()
        self.running = False
        logger.info("Job broker stopped")

    async def enqueue(self, job: JobData, *, job_id: Optional[str] = None) -> JobRecord:
        """
        Queue ``job`` on the queue for its type.

        A ``job_id`` that is still waiting, active or delayed is not queued twice;
        the existing record is returned instead.
        """
        queue_name = QUEUE_FOR_JOB.get(job.type)
        if queue_name is None or queue_name not in self.policies:
            raise ValueError(f"No queue for job type: {job.type}")

        if job_id:
            existing = self._jobs.get(job_id)
            if existing is not None and existing.state in PENDING_STATES:
                logger.debug("Job already pending", job_id=job_id, state=existing.state)
                return existing

        record = JobRecord(id=job_id or str(uuid.uuid4()), queue=queue_name, data=job)
        self._jobs[record.id] = record
        await self._queue(queue_name).put(record)
        logger.info("Job enqueued", job_id=record.id, queue=queue_name, job_type=job.type)
        return record

    def get_job(self, job_id: str) -> Optional[JobRecord]:
        return self._jobs.get(job_id)

    async def _worker(self, queue_name: str):
        q = self._queue(queue_name)
        while True:
            record = await q.get()
            try:
                await self.process(record)
            finally:
                q.task_done()

    async def process(self, record: JobRecord):
        """Run one attempt of ``record`` and settle its state."""
        policy = self.policies[record.queue]
        handler = self.handlers.get(record.data.type)
        record.state = ACTIVE
        record.attempts_made += 1

        if handler is None:
            self._settle_failed(record, policy, f"no handler for {record.data.type}")
            return

        try:
            record.result = await handler(record.data)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            reason = f"{type(e).__name__}: {e}"
            if record.attempts_made < policy.attempts:
                delay = policy.delay_for(record.attempts_made)
                record.state = DELAYED
                record.failed_reason = reason
                logger.warning(
                    "Job attempt failed, retrying",
                    job_id=record.id,
                    queue=record.queue,
                    attempt=record.attempts_made,
                    max_attempts=policy.attempts,
                    delay_seconds=delay,
                    error=reason,
                )
                task = asyncio.create_task(self._retry_after(record, delay))
                self._retry_tasks.add(task)
                task.add_done_callback(self._retry_tasks.discard)
                return
            self._settle_failed(record, policy, reason)
            return

        record.state = COMPLETED
        record.failed_reason = None
        record.finished_at = _utcnow()
        self._retain(self._completed[record.queue], record, policy.keep_completed)
        logger.info("Job completed", job_id=record.id, queue=record.queue, attempts=record.attempts_made)

    async def _retry_after(self, record: JobRecord, delay: float):
        await self._sleep(delay)
        record.state = WAITING
        await self._queue(record.queue).put(record)

    def _settle_failed(self, record: JobRecord, policy: RetryPolicy, reason: str):
        record.state = FAILED
        record.failed_reason = reason
        record.finished_at = _utcnow()
        self._retain(self._failed[record.queue], record, policy.keep_failed)
        logger.error(
            "Job failed",
            job_id=record.id,
            queue=record.queue,
            attempts=record.attempts_made,
            error=reason,
        )

    def _retain(self, bucket: Deque[JobRecord], record: JobRecord, keep: int):
        bucket.append(record)
        while len(bucket) > max(0, keep):
            old = bucket.popleft()
            if self._jobs.get(old.id) is old:
                del self._jobs[old.id]

    def stats(self) -> Dict[str, Dict[str, int]]:
        """Per-queue counts of waiting, active, completed, failed and delayed jobs."""
        out: Dict[str, Dict[str, int]] = {}
        for name in self.policies:
            counts = {WAITING: 0, ACTIVE: 0, COMPLETED: 0, FAILED: 0, DELAYED: 0}
            for record in self._jobs.values():
                if record.queue == name and record.state in PENDING_STATES:
                    counts[record.state] += 1
            counts[COMPLETED] = len(self._completed[name])
            counts[FAILED] = len(self._failed[name])
            out[name] = counts
        return out

    async def join(self, poll_seconds: float = 0.01):
        """Wait until no job is waiting, active or delayed."""
        while any(r.state in PENDING_STATES for r in self._jobs.values()):
            await asyncio.sleep(poll_seconds)
