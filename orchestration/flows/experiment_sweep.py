import asyncio
from datetime import datetime, timezone
from typing import Optional

from prefect import flow, get_run_logger, task

from app.config import get_settings
from app.core.cache import get_redis
from app.core.database import async_session_maker
from app.services.experiments.completion import RedisCompletionQueue
from app.services.experiments.service import (
    ExperimentService,
    get_background_queue,
    get_completion_queue,
    run_completion_job,
)
from app.services.experiments.stats import RecommendedAction


@task
async def analyze_active_experiments(site_id: Optional[str] = None) -> list[dict]:
    logger = get_run_logger()

    completion_queue = await get_completion_queue()
    async with async_session_maker() as session:
        service = ExperimentService(session, completion_queue=completion_queue)
        analyses = await service.analyze_active_experiments(site_id=site_id)

    # In-process completions must finish before the flow run exits
    await get_background_queue().drain()

    for analysis in analyses:
        logger.info(
            f"{analysis.experiment_id}: {analysis.recommended_action.value} "
            f"(p={analysis.p_value:.4f}, n={analysis.sample_size}/{analysis.min_sample_size})"
        )

    return [a.to_dict() for a in analyses]


@task
async def drain_completion_queue(max_jobs: Optional[int] = None) -> int:
    logger = get_run_logger()
    settings = get_settings()

    if settings.COMPLETION_BACKEND != "redis":
        return 0

    redis = await get_redis()
    queue = RedisCompletionQueue(redis, settings.COMPLETION_QUEUE_KEY)
    processed = await queue.process_pending(run_completion_job, max_jobs=max_jobs)

    logger.info(f"Completed {processed} experiments from {settings.COMPLETION_QUEUE_KEY}")
    return processed


@task
def generate_sweep_report(analyses: list[dict], completions_processed: int) -> dict:
    summary = {action.value: 0 for action in RecommendedAction}
    for analysis in analyses:
        summary[analysis["recommended_action"]] += 1

    return {
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "total_tests": len(analyses),
        "recommendations": summary,
        "completions_processed": completions_processed,
        "analyses": analyses,
    }


@flow(name="experiment_sweep", log_prints=True)
async def experiment_sweep(site_id: Optional[str] = None, max_completions: Optional[int] = None):
    logger = get_run_logger()
    logger.info(f"Starting experiment sweep (site={site_id or 'all'})")

    analyses = await analyze_active_experiments(site_id)
    processed = await drain_completion_queue(max_completions)

    report = generate_sweep_report(analyses, processed)

    logger.info(
        f"Analyzed {report['total_tests']} experiments: "
        + ", ".join(f"{k}={v}" for k, v in report["recommendations"].items())
    )

    return report


if __name__ == "__main__":
    asyncio.run(experiment_sweep())
