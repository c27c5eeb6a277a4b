"""
Prefect Workflow Orchestration - Nexus Sweep

Periodic re-evaluation of every active user. Exposure can cross a level
with no new sales at all when the rolling window slides forward, so the
sweep runs the same orchestrator entry point as the import hook.

Also provides a full per-user re-aggregation flow for repairs.
"""

from datetime import datetime
from typing import List, Optional

from prefect import flow, task, get_run_logger

from nexus_monitor.config.logging import configure_logging
from nexus_monitor.database.connection import close_database, init_database
from nexus_monitor.pipeline.orchestrator import NexusPipeline, PipelineStatus, create_pipeline



# =============================================================================
# TASKS
# =============================================================================

@task(
    name="list_active_users",
    description="Users with at least one monthly sales summary",
    retries=3,
    retry_delay_seconds=30,
)
async def list_active_users(pipeline: NexusPipeline) -> List[str]:
    logger = get_run_logger()
    user_ids = await pipeline.active_user_ids()
    logger.info(f"Found {len(user_ids)} active users")
    return user_ids


@task(
    name="sweep_user",
    description="Re-evaluate exposure and alerts for one user",
    retries=2,
    retry_delay_seconds=60,
)
async def sweep_user(pipeline: NexusPipeline, user_id: str, as_of: Optional[datetime] = None) -> dict:
    result = await pipeline.sweep_user(user_id, as_of=as_of)
    if result.status == PipelineStatus.FAILED:
        raise RuntimeError(f"Sweep failed for {user_id}: {result.error}")
    return result.model_dump(mode="json")


@task(
    name="retry_unsent_notifications",
    description="Re-dispatch alerts whose notification never went out",
    retries=1,
    retry_delay_seconds=120,
)
async def retry_unsent_notifications(pipeline: NexusPipeline, user_id: str) -> int:
    return await pipeline.notifier.retry_unsent(user_id)


@task(
    name="recompute_all_buckets",
    description="Rebuild every monthly bucket for one user",
    retries=2,
    retry_delay_seconds=60,
)
async def recompute_all_buckets(pipeline: NexusPipeline, user_id: str) -> dict:
    logger = get_run_logger()
    result = await pipeline.aggregator.recompute_all(user_id)
    logger.info(
        f"Re-aggregated {user_id}: {result.buckets_written} written, "
        f"{result.buckets_empty} empty, {len(result.failed_buckets)} failed"
    )
    return result.model_dump()


# =============================================================================
# FLOWS
# =============================================================================

@flow(
    name="nexus_sweep",
    description="Periodic nexus exposure sweep over all active users",
    retries=1,
    retry_delay_seconds=300,
)
async def nexus_sweep(as_of: Optional[datetime] = None, retry_unsent: bool = True) -> dict:
    """
    Sweep every active user.

    Steps:
    1. List users with sales summaries
    2. Re-evaluate each user (no bucket recompute)
    3. Re-dispatch notifications that failed earlier
    """
    logger = get_run_logger()
    configure_logging()

    await init_database()
    pipeline = create_pipeline()

    results = {"users": 0, "completed": 0, "failed": [], "new_alerts": 0, "notifications_retried": 0}

    try:
        user_ids = await list_active_users(pipeline)
        results["users"] = len(user_ids)

        for user_id in user_ids:
            try:
                outcome = await sweep_user(pipeline, user_id, as_of)
            except RuntimeError as e:
                logger.error(str(e))
                results["failed"].append(user_id)
                continue

            results["completed"] += 1
            results["new_alerts"] += len(outcome["new_alerts"])

        await pipeline.wait_for_dispatches()

        if retry_unsent:
            for user_id in user_ids:
                results["notifications_retried"] += await retry_unsent_notifications(pipeline, user_id)
    finally:
        await pipeline.close()
        await close_database()

    logger.info(
        f"Nexus sweep complete: {results['completed']}/{results['users']} users, "
        f"{results['new_alerts']} new alerts"
    )
    return results


@flow(
    name="reaggregate_user",
    description="Full monthly bucket rebuild and re-evaluation for one user",
)
async def reaggregate_user(user_id: str) -> dict:
    """Rebuild all of a user's buckets from imported orders, then re-evaluate."""
    configure_logging()

    await init_database()
    pipeline = create_pipeline()

    try:
        aggregation = await recompute_all_buckets(pipeline, user_id)
        outcome = await sweep_user(pipeline, user_id)
        await pipeline.wait_for_dispatches()
    finally:
        await pipeline.close()
        await close_database()

    return {"aggregation": aggregation, "pipeline": outcome}


# =============================================================================
# DEPLOYMENT CONFIGURATION
# =============================================================================

if __name__ == "__main__":
    import asyncio

    asyncio.run(nexus_sweep())
