"""
Job queue and notifier — the hand-off points to background consumers.

Producers never wait on consumers: adding a job or sending a notification
returns immediately.
"""

from collections import deque
from datetime import datetime
from typing import Any, Deque, Dict, List, Optional, Protocol
from uuid import uuid4

from twoloop_kernel.log import get_logger
from twoloop_kernel.models.feedback import Job

logger = get_logger("jobs")

EXECUTION_QUEUE = "task-execution"
NOTIFICATION_QUEUE = "notifications"
FEEDBACK_QUEUE = "feedback"


class JobQueue:
    """
    In-memory named FIFO queues.
    Production would back this with a broker (Redis, SQS).
    """

    def __init__(self):
        self._queues: Dict[str, Deque[Job]] = {}

    def add_job(self, queue: str, name: str, payload: Optional[Dict[str, Any]] = None) -> Job:
        job = Job(
            id=f"job_{uuid4().hex[:12]}",
            queue=queue,
            name=name,
            payload=payload or {},
            created_at=datetime.utcnow(),
        )
        self._queues.setdefault(queue, deque()).append(job)
        logger.debug(
            "job enqueued",
            extra={"structured": {"queue": queue, "job": name, "job_id": job.id}},
        )
        return job

    def pop(self, queue: str) -> Optional[Job]:
        pending = self._queues.get(queue)
        if not pending:
            return None
        return pending.popleft()

    def drain(self, queue: str) -> List[Job]:
        """Remove and return every pending job on ``queue``."""
        pending = self._queues.get(queue)
        if not pending:
            return []
        jobs = list(pending)
        pending.clear()
        return jobs

    def pending(self, queue: str) -> List[Job]:
        return list(self._queues.get(queue, ()))

    def size(self, queue: str) -> int:
        return len(self._queues.get(queue, ()))


class Notifier(Protocol):
    """Fire-and-forget notification sink keyed by tenant and channel."""

    def notify(self, tenant_id: str, channel: str, payload: Dict[str, Any]) -> None: ...


class QueueNotifier:
    """Notifier that hands every notification to the notifications queue."""

    def __init__(self, jobs: JobQueue):
        self.jobs = jobs

    def notify(self, tenant_id: str, channel: str, payload: Dict[str, Any]) -> None:
        self.jobs.add_job(
            NOTIFICATION_QUEUE,
            f"notify:{channel}",
            {"tenant_id": tenant_id, "channel": channel, **payload},
        )
