"""
Recovery sweeper - re-arms durable work the in-process timers lost.

Runs once at startup and then every SWEEP_INTERVAL_SECONDS. Picks pending
deliveries whose next_attempt_at and pending follow-up jobs whose
scheduled_at fall within the next sweep window, and arms them on the
dispatcher with their residual delay.
"""
import asyncio
import logging
from datetime import timedelta

from sqlalchemy import select, and_

from intakewire.database import async_session_factory
from intakewire.models.followup import FollowupJob
from intakewire.models.webhook import WebhookDelivery
from intakewire.utils.redis_client import write_heartbeat
from intakewire.utils.timezone import utcnow, seconds_until
from intakewire.workers.dispatcher import DELIVERY, FOLLOWUP_JOB, get_dispatcher

logger = logging.getLogger(__name__)

SWEEP_INTERVAL_SECONDS = 30
SWEEP_BATCH_SIZE = 200


async def run_recovery_sweeper(interval_seconds: int = SWEEP_INTERVAL_SECONDS):
    """Main loop - sweep, heartbeat, sleep."""
    logger.info("Recovery sweeper started (every %ds)", interval_seconds)

    while True:
        try:
            counts = await recover_due_work(horizon_seconds=interval_seconds)
            if counts["deliveries"] or counts["jobs"]:
                logger.info(
                    "Recovery sweep re-armed %d deliveries and %d follow-up jobs",
                    counts["deliveries"], counts["jobs"],
                )
        except Exception as e:
            logger.error("Recovery sweeper error: %s", str(e))

        await write_heartbeat("recovery_sweeper")
        await asyncio.sleep(interval_seconds)


async def recover_due_work(horizon_seconds: int = SWEEP_INTERVAL_SECONDS) -> dict:
    """Arm pending work due within the horizon. Returns counts of newly armed keys."""
    dispatcher = get_dispatcher()
    if dispatcher is None or not dispatcher.is_running:
        return {"deliveries": 0, "jobs": 0}

    now = utcnow()
    horizon = now + timedelta(seconds=horizon_seconds)

    async with async_session_factory() as db:
        delivery_rows = (await db.execute(
            select(WebhookDelivery.id, WebhookDelivery.next_attempt_at)
            .where(
                and_(
                    WebhookDelivery.status == "pending",
                    WebhookDelivery.next_attempt_at.is_not(None),
                    WebhookDelivery.next_attempt_at <= horizon,
                )
            )
            .order_by(WebhookDelivery.next_attempt_at)
            .limit(SWEEP_BATCH_SIZE)
        )).all()

        job_rows = (await db.execute(
            select(FollowupJob.id, FollowupJob.scheduled_at)
            .where(
                and_(
                    FollowupJob.status == "pending",
                    FollowupJob.scheduled_at <= horizon,
                )
            )
            .order_by(FollowupJob.scheduled_at)
            .limit(SWEEP_BATCH_SIZE)
        )).all()

    deliveries = 0
    for delivery_id, next_attempt_at in delivery_rows:
        if dispatcher.recover(DELIVERY, str(delivery_id), seconds_until(next_attempt_at, now)):
            deliveries += 1

    jobs = 0
    for job_id, scheduled_at in job_rows:
        if dispatcher.recover(FOLLOWUP_JOB, str(job_id), seconds_until(scheduled_at, now)):
            jobs += 1

    return {"deliveries": deliveries, "jobs": jobs}
