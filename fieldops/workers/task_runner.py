"""
Task runner worker - claims due scheduled tasks and dispatches them.

Claims are committed in their own session before any handler runs, so a crash
mid-batch leaves the remaining tasks claimed rather than double-executed.
Each task then runs in a fresh session: success commits the handler's writes
together with the done marker; a raised error rolls them back and releases
the task with exponential backoff.
"""
import asyncio
import logging
from datetime import datetime
from typing import Optional

from fieldops.database import async_session_factory
from fieldops.models.scheduled_task import ScheduledTask
from fieldops.schemas.orchestration import OrchestrationConfig
from fieldops.services.scheduler import claim_due_tasks, complete_task, fail_task
from fieldops.services.stage_executor import LeadFollowupExecutor
from fieldops.utils.alerting import AlertType, send_alert
from fieldops.utils.cache import write_heartbeat
from fieldops.utils.logging import worker_cycle
from fieldops.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 60


async def run_task_runner():
    """Main loop - one claim-and-run cycle per poll interval."""
    from fieldops.config import get_settings
    interval = get_settings().task_poll_interval_seconds or POLL_INTERVAL_SECONDS
    executor = LeadFollowupExecutor(OrchestrationConfig.from_settings())
    logger.info("Task runner started (poll=%ds)", interval)

    while True:
        with worker_cycle("task_runner"):
            try:
                await process_cycle(executor)
            except Exception as e:
                logger.error("Task runner cycle error: %s", str(e))

        await write_heartbeat("task_runner")
        await asyncio.sleep(interval)


async def process_cycle(
    executor: Optional[LeadFollowupExecutor] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Claim due tasks and execute each one. Returns per-outcome counts."""
    from fieldops.config import get_settings
    settings = get_settings()
    executor = executor or LeadFollowupExecutor(OrchestrationConfig.from_settings(settings))
    now = now or utcnow()
    counts = {"claimed": 0, "completed": 0, "retried": 0, "failed": 0, "cancelled": 0}

    try:
        async with async_session_factory() as db:
            tasks = await claim_due_tasks(
                db, now,
                task_types=list(executor.handlers.keys()),
                batch_size=settings.task_batch_size,
                claim_timeout_seconds=settings.task_claim_timeout_seconds,
            )
    except Exception as e:
        logger.error("Task claim failed: %s", str(e))
        await send_alert(AlertType.TASK_CLAIM_FAILED, f"Could not claim scheduled tasks: {e}")
        return counts

    if not tasks:
        return counts

    counts["claimed"] = len(tasks)
    logger.info("Processing %d claimed tasks", len(tasks))

    for task in tasks:
        outcome = await _execute_task(executor, task, now)
        counts[outcome] += 1

    return counts


async def _execute_task(executor: LeadFollowupExecutor, task: ScheduledTask, now: datetime) -> str:
    """Run one claimed task in its own session. Returns the counts key for its outcome."""
    handler = executor.handlers.get(task.task_type)

    async with async_session_factory() as db:
        try:
            if handler is None:
                logger.warning("Unknown task type: %s", task.task_type)
                result = {"status": "skipped", "reason": f"unknown task type: {task.task_type}"}
            else:
                result = await handler(db, task, now)
            await complete_task(db, task, result)
            await db.commit()
            logger.info("Task completed: key=%s type=%s", task.key, task.task_type)
            return "completed"

        except Exception as e:
            await db.rollback()
            error_msg = str(e) or e.__class__.__name__
            status = await fail_task(db, task, error_msg)
            await db.commit()

    if status == "failed":
        await send_alert(
            AlertType.TASK_FAILED,
            f"Task {task.key} ({task.task_type}) failed after {task.attempts} attempts: {error_msg}",
        )
        return "failed"
    if status == "unchanged":
        # Cancelled while running; nothing left to retry
        logger.info("Task %s no longer claimed, leaving as is", task.key)
        return "cancelled"
    return "retried"
