import asyncio
from unittest.mock import AsyncMock

import pytest

from app.services.experiments.completion import (
    BackgroundCompletionQueue,
    CompletionJob,
    RedisCompletionQueue,
)
from app.services.experiments.stats import VariantData, analyze_experiment


class FakeRedis:
    def __init__(self):
        self.lists: dict[str, list[str]] = {}

    async def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)
        return len(self.lists[key])

    async def rpop(self, key):
        items = self.lists.get(key)
        if not items:
            return None
        return items.pop()

    async def llen(self, key):
        return len(self.lists.get(key, []))


@pytest.fixture
def winning_analysis():
    return analyze_experiment(
        VariantData("control", visitors=30000, conversions=600),
        VariantData("variant", visitors=30000, conversions=900),
        experiment_id="exp-1",
    )


def test_job_json_round_trip(winning_analysis):
    job = CompletionJob(experiment_id="exp-1", analysis=winning_analysis)

    restored = CompletionJob.from_json(job.to_json())

    assert restored.experiment_id == "exp-1"
    assert restored.analysis == winning_analysis
    assert restored.submitted_at == job.submitted_at


class TestBackgroundCompletionQueue:
    @pytest.mark.asyncio
    async def test_submit_does_not_wait_for_handler(self, winning_analysis):
        release = asyncio.Event()
        done = []

        async def handler(job):
            await release.wait()
            done.append(job.experiment_id)

        queue = BackgroundCompletionQueue(handler)

        assert await queue.submit(CompletionJob("exp-1", winning_analysis))
        assert queue.pending == 1
        assert done == []

        release.set()
        await queue.drain()

        assert done == ["exp-1"]
        assert queue.pending == 0

    @pytest.mark.asyncio
    async def test_handler_failure_is_contained(self, winning_analysis):
        handler = AsyncMock(side_effect=RuntimeError("database unavailable"))
        queue = BackgroundCompletionQueue(handler)

        await queue.submit(CompletionJob("exp-1", winning_analysis))
        await queue.drain()

        handler.assert_awaited_once()
        assert queue.pending == 0


class TestRedisCompletionQueue:
    @pytest.mark.asyncio
    async def test_jobs_run_in_submission_order(self, winning_analysis):
        redis = FakeRedis()
        queue = RedisCompletionQueue(redis, "test:completion")
        seen = []

        async def handler(job):
            seen.append(job.experiment_id)

        await queue.submit(CompletionJob("exp-1", winning_analysis))
        await queue.submit(CompletionJob("exp-2", winning_analysis))
        assert await queue.pending() == 2

        processed = await queue.process_pending(handler)

        assert processed == 2
        assert seen == ["exp-1", "exp-2"]
        assert await queue.pending() == 0

    @pytest.mark.asyncio
    async def test_failed_jobs_are_parked(self, winning_analysis):
        redis = FakeRedis()
        queue = RedisCompletionQueue(redis, "test:completion")

        await queue.submit(CompletionJob("exp-1", winning_analysis))
        processed = await queue.process_pending(AsyncMock(side_effect=RuntimeError("boom")))

        assert processed == 0
        assert await redis.llen("test:completion:failed") == 1

    @pytest.mark.asyncio
    async def test_unreadable_job_is_parked_and_drain_continues(self, winning_analysis):
        redis = FakeRedis()
        queue = RedisCompletionQueue(redis, "test:completion")
        await redis.lpush("test:completion", "not json")
        await redis.lpush("test:completion", '{"experiment_id": "exp-0"}')
        await queue.submit(CompletionJob("exp-1", winning_analysis))
        handler = AsyncMock()

        processed = await queue.process_pending(handler)

        assert processed == 1
        handler.assert_awaited_once()
        assert handler.await_args.args[0].experiment_id == "exp-1"
        assert redis.lists["test:completion:failed"] == ['{"experiment_id": "exp-0"}', "not json"]
        assert await queue.pending() == 0

    @pytest.mark.asyncio
    async def test_max_jobs(self, winning_analysis):
        redis = FakeRedis()
        queue = RedisCompletionQueue(redis, "test:completion")
        for i in range(3):
            await queue.submit(CompletionJob(f"exp-{i}", winning_analysis))

        processed = await queue.process_pending(AsyncMock(), max_jobs=2)

        assert processed == 2
        assert await queue.pending() == 1

    @pytest.mark.asyncio
    async def test_submit_failure_returns_false(self, winning_analysis):
        redis = FakeRedis()
        redis.lpush = AsyncMock(side_effect=ConnectionError("redis down"))
        queue = RedisCompletionQueue(redis, "test:completion")

        assert await queue.submit(CompletionJob("exp-1", winning_analysis)) is False
