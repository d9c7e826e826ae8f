"""Run jobs: state machine plus an owned progress channel per run.

States: queued → running → completed | failed (queued → failed is allowed
for runs that die before starting). Subscribers get every progress event
and a final ``{"event": "complete"}`` once the job reaches a terminal state.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from .models import Category, Status, utcnow

logger = logging.getLogger(__name__)


class JobState(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.QUEUED: frozenset({JobState.RUNNING, JobState.FAILED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


@dataclass(frozen=True)
class ProgressEvent:
    run_id: str
    category: Category
    name: str
    status: Status
    percentage: float
    completed: int
    total: int
    estimated_time_remaining_ms: float | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "event": "progress",
            "run_id": self.run_id,
            "category": self.category.value,
            "name": self.name,
            "status": self.status.value,
            "percentage": round(self.percentage, 1),
            "completed": self.completed,
            "total": self.total,
            "estimated_time_remaining_ms": self.estimated_time_remaining_ms,
        }


@dataclass
class Job:
    """Tracks one run from trigger to persisted report."""

    run_id: str
    categories: list[Category]
    state: JobState = JobState.QUEUED
    completed: int = 0
    last_event: ProgressEvent | None = None
    report_id: str | None = None
    error: str | None = None
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    finished_at: str | None = None
    _subscribers: list[asyncio.Queue[dict[str, Any]]] = field(default_factory=list, repr=False)

    @property
    def total(self) -> int:
        return len(self.categories)

    @property
    def done(self) -> bool:
        return self.state in (JobState.COMPLETED, JobState.FAILED)

    def _move(self, new: JobState) -> None:
        if new not in _TRANSITIONS[self.state]:
            raise ValueError(f"Invalid job transition: {self.state.value} → {new.value}")
        self.state = new

    def start(self) -> None:
        self._move(JobState.RUNNING)

    def complete(self, report_id: str) -> None:
        self._move(JobState.COMPLETED)
        self.report_id = report_id
        self._finish()

    def fail(self, error: str, report_id: str | None = None) -> None:
        self._move(JobState.FAILED)
        self.error = error
        self.report_id = report_id
        self._finish()

    def _finish(self) -> None:
        self.finished_at = utcnow().isoformat()
        self._broadcast({
            "event": "complete",
            "run_id": self.run_id,
            "state": self.state.value,
            "report_id": self.report_id,
            "error": self.error,
        })

    def publish(self, event: ProgressEvent) -> None:
        self.last_event = event
        self.completed = event.completed
        self._broadcast(event.to_dict())

    def _broadcast(self, data: dict[str, Any]) -> None:
        for q in self._subscribers:
            try:
                q.put_nowait(data)
            except asyncio.QueueFull:
                logger.debug("Progress subscriber full for run %s, dropping event", self.run_id)

    def subscribe(self, maxsize: int = 100) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue(maxsize=maxsize)
        self._subscribers.append(queue)
        return queue

    def unsubscribe(self, queue: asyncio.Queue[dict[str, Any]]) -> None:
        if queue in self._subscribers:
            self._subscribers.remove(queue)

    async def events(self) -> AsyncIterator[dict[str, Any]]:
        """Yield progress events until the job finishes."""
        if self.done:
            yield self.snapshot() | {"event": "complete"}
            return
        queue = self.subscribe()
        try:
            while True:
                data = await queue.get()
                yield data
                if data.get("event") == "complete":
                    break
        finally:
            self.unsubscribe(queue)

    def snapshot(self) -> dict[str, Any]:
        pct = (self.completed / self.total * 100) if self.total else 100.0
        return {
            "run_id": self.run_id,
            "state": self.state.value,
            "total": self.total,
            "completed": self.completed,
            "percentage": round(pct, 1),
            "current": self.last_event.to_dict() if self.last_event else None,
            "report_id": self.report_id,
            "error": self.error,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class JobTracker:
    """Jobs keyed by run id, bounded to the most recent ``max_jobs``."""

    def __init__(self, max_jobs: int = 100) -> None:
        self._jobs: dict[str, Job] = {}
        self._max_jobs = max_jobs

    def create(self, run_id: str, categories: list[Category]) -> Job:
        job = Job(run_id=run_id, categories=list(categories))
        self._jobs[run_id] = job
        self._evict()
        return job

    def get(self, run_id: str) -> Job | None:
        return self._jobs.get(run_id)

    def active(self) -> list[Job]:
        return [j for j in self._jobs.values() if not j.done]

    def _evict(self) -> None:
        while len(self._jobs) > self._max_jobs:
            finished = next((rid for rid, j in self._jobs.items() if j.done), None)
            if finished is None:
                break
            del self._jobs[finished]
