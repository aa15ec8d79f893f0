"""
Fire-and-forget completion of experiments.

When an analysis sweep recommends ``declare_winner`` the write that marks the
experiment completed is handed to a CompletionQueue instead of being awaited,
so the sweep returns its analyses immediately and a failed completion never
invalidates them.

Two queues are provided:
- BackgroundCompletionQueue runs jobs as asyncio tasks in the current process.
- RedisCompletionQueue pushes jobs onto a Redis list; a worker (the Prefect
  sweep flow) drains it with ``process_pending``.

Usage:
    queue = BackgroundCompletionQueue(handler)
    await queue.submit(CompletionJob(experiment_id="exp_1", analysis=analysis))
    await queue.drain()
"""

import abc
import asyncio
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Optional, Set

import structlog

from app.services.experiments.stats import StatisticalAnalysis


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class CompletionJob:
    """
    Request to complete an experiment with the analysis that triggered it.

    Attributes:
        experiment_id: Experiment to complete
        analysis: Analysis snapshot the winner is taken from
        submitted_at: When the sweep produced the job
    """

    experiment_id: str
    analysis: StatisticalAnalysis
    submitted_at: datetime = field(default_factory=_utcnow)

    def to_json(self) -> str:
        """Serialize to JSON for Redis storage."""
        return json.dumps(
            {
                "experiment_id": self.experiment_id,
                "analysis": self.analysis.to_dict(),
                "submitted_at": self.submitted_at.isoformat(),
            }
        )

    @classmethod
    def from_json(cls, json_str: str) -> "CompletionJob":
        """Deserialize from JSON."""
        data = json.loads(json_str)
        return cls(
            experiment_id=data["experiment_id"],
            analysis=StatisticalAnalysis.from_dict(data["analysis"]),
            submitted_at=datetime.fromisoformat(data["submitted_at"]),
        )


CompletionHandler = Callable[[CompletionJob], Awaitable[Any]]


class CompletionQueue(abc.ABC):
    """Destination for completion jobs. ``submit`` must never block on the job itself."""

    @abc.abstractmethod
    async def submit(self, job: CompletionJob) -> bool:
        """Hand off a job. Returns False if it could not be queued."""


class BackgroundCompletionQueue(CompletionQueue):
    """Runs each job as an asyncio task in the running event loop."""

    def __init__(self, handler: CompletionHandler):
        self.handler = handler
        self._tasks: Set[asyncio.Task] = set()
        self.logger = structlog.get_logger("completion_queue")

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def submit(self, job: CompletionJob) -> bool:
        task = asyncio.create_task(self._run(job))
        # The loop only keeps weak references to tasks
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

        self.logger.info("completion_submitted", experiment_id=job.experiment_id)
        return True

    async def _run(self, job: CompletionJob) -> None:
        try:
            await self.handler(job)
        except Exception as e:
            self.logger.error(
                "completion_failed",
                experiment_id=job.experiment_id,
                error=str(e),
                error_type=type(e).__name__,
            )

    async def drain(self) -> None:
        """Wait for every submitted job to finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


class RedisCompletionQueue(CompletionQueue):
    """
    Redis-list-backed completion queue.

    Queue naming convention:
    - {queue_key} - Jobs waiting to run
    - {queue_key}:failed - Jobs whose handler raised
    """

    def __init__(self, redis_client: Any, queue_key: str = "experiments:completion"):
        self.redis = redis_client
        self.queue_key = queue_key
        self.failed_key = f"{queue_key}:failed"
        self.logger = structlog.get_logger("completion_queue")

    async def submit(self, job: CompletionJob) -> bool:
        try:
            await self.redis.lpush(self.queue_key, job.to_json())

            self.logger.info(
                "completion_submitted",
                experiment_id=job.experiment_id,
                queue=self.queue_key,
            )
            return True

        except Exception as e:
            self.logger.error(
                "completion_submit_failed",
                experiment_id=job.experiment_id,
                error=str(e),
            )
            return False

    async def pending(self) -> int:
        return await self.redis.llen(self.queue_key)

    async def process_pending(
        self, handler: CompletionHandler, max_jobs: Optional[int] = None
    ) -> int:
        """
        Pop and run queued jobs oldest first.

        Args:
            handler: Coroutine that completes one job
            max_jobs: Stop after this many jobs (None drains the queue)

        Returns:
            Number of jobs that ran successfully
        """
        processed = 0
        attempted = 0

        while max_jobs is None or attempted < max_jobs:
            data = await self.redis.rpop(self.queue_key)
            if data is None:
                break
            attempted += 1

            try:
                job = CompletionJob.from_json(data)
            except (ValueError, KeyError, TypeError) as e:
                # json.JSONDecodeError is a ValueError
                self.logger.error(
                    "completion_job_unreadable",
                    queue=self.queue_key,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.redis.lpush(self.failed_key, data)
                continue

            try:
                await handler(job)
                processed += 1
            except Exception as e:
                self.logger.error(
                    "completion_failed",
                    experiment_id=job.experiment_id,
                    error=str(e),
                    error_type=type(e).__name__,
                )
                await self.redis.lpush(self.failed_key, data)

        if attempted:
            self.logger.info(
                "completion_queue_drained",
                queue=self.queue_key,
                attempted=attempted,
                processed=processed,
            )

        return processed
