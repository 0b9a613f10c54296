"""Progress notifications and bounded per-job diagnostic logs."""

from __future__ import annotations

import asyncio
from collections import OrderedDict, deque
from datetime import datetime, timezone
from typing import Literal

import structlog
from pydantic import BaseModel

logger = structlog.get_logger()

JobEventType = Literal["progress", "completed", "failed", "cancelled"]


class JobEvent(BaseModel):
    job_id: int
    type: JobEventType
    progress: int = 0
    processed_records: int = 0
    total_records: int = 0
    dataset_id: int | None = None
    error: str | None = None


class ProgressNotifier:
    """Fan-out of job events to subscriber queues.

    Each subscriber gets its own bounded queue; a subscriber that stops
    draining loses events rather than stalling the scheduler. Pollers that
    do not subscribe can read the persisted job row instead.
    """

    def __init__(self, max_queue_size: int = 1000) -> None:
        self.max_queue_size = max_queue_size
        self._subscribers: set[asyncio.Queue[JobEvent]] = set()

    def subscribe(self) -> asyncio.Queue[JobEvent]:
        queue: asyncio.Queue[JobEvent] = asyncio.Queue(maxsize=self.max_queue_size)
        self._subscribers.add(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[JobEvent]) -> None:
        self._subscribers.discard(queue)

    def publish(self, event: JobEvent) -> None:
        for queue in list(self._subscribers):
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning(
                    "processing.event_dropped",
                    job_id=event.job_id,
                    event_type=event.type,
                )


class JobLogBuffer:
    """In-memory ring buffer of timestamped log lines per job.

    At most ``max_lines`` lines per job and ``max_jobs`` jobs are kept; the
    least recently written job is evicted first.
    """

    def __init__(self, max_lines: int = 1000, max_jobs: int = 500) -> None:
        self.max_lines = max_lines
        self.max_jobs = max_jobs
        self._logs: OrderedDict[int, deque[str]] = OrderedDict()

    def add(self, job_id: int, message: str) -> None:
        lines = self._logs.get(job_id)
        if lines is None:
            lines = deque(maxlen=self.max_lines)
            self._logs[job_id] = lines
        else:
            self._logs.move_to_end(job_id)
        timestamp = datetime.now(timezone.utc).isoformat(timespec="milliseconds")
        lines.append(f"[{timestamp}] {message}")

        while len(self._logs) > self.max_jobs:
            self._logs.popitem(last=False)

    def get(self, job_id: int) -> list[str]:
        return list(self._logs.get(job_id, ()))
