"""
Follow-up scheduler - expands a sequence into per-lead jobs and arms them.

trigger_followup() writes one FollowupJob per step (scheduled_at = now + step
delay) in a single commit, then arms each job on the dispatcher with its
residual delay. A sequence already running for the lead is not duplicated,
even when two triggers race; the pending-step unique index settles that.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.exc import IntegrityError

from intakewire.database import async_session_factory
from intakewire.models.event_log import EventLog
from intakewire.models.followup import FollowupJob, FollowupSequence
from intakewire.models.lead import Lead
from intakewire.services.followup_sequences import (
    find_trigger_sequence,
    load_stop_rules,
    terminal_statuses,
)
from intakewire.utils.background import fire_and_forget
from intakewire.utils.timezone import utcnow
from intakewire.workers.dispatcher import FOLLOWUP_JOB, arm_work

logger = logging.getLogger(__name__)


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def _pending_job_ids(db, sequence_id: uuid.UUID, lead_id: uuid.UUID) -> list[str]:
    result = await db.execute(
        select(FollowupJob.id)
        .where(
            and_(
                FollowupJob.sequence_id == sequence_id,
                FollowupJob.lead_id == lead_id,
                FollowupJob.status == "pending",
            )
        )
        .order_by(FollowupJob.step_index)
    )
    return [str(job_id) for job_id in result.scalars().all()]


async def trigger_followup(
    lead_id,
    sequence_id=None,
    trigger_event: str = "lead.created",
) -> dict:
    """
    Schedule a follow-up sequence for a lead.

    With sequence_id the named sequence is used; otherwise the org's active
    sequence bound to trigger_event. Returns a status dict:
    scheduled (with job_ids), duplicate (pending job_ids), or skipped (reason).
    """
    lead_uuid = _as_uuid(lead_id)

    async with async_session_factory() as db:
        lead = await db.get(Lead, lead_uuid)
        if not lead:
            return {"status": "skipped", "reason": "lead not found"}

        sequence: Optional[FollowupSequence]
        if sequence_id is not None:
            sequence = await db.get(FollowupSequence, _as_uuid(sequence_id))
            if not sequence or sequence.org_id != lead.org_id:
                return {"status": "skipped", "reason": "sequence not found"}
            if not sequence.is_active:
                return {"status": "skipped", "reason": "sequence inactive"}
        else:
            sequence = await find_trigger_sequence(db, lead.org_id, trigger_event)
            if not sequence:
                return {"status": "skipped", "reason": f"no active sequence for {trigger_event}"}

        if not sequence.steps:
            return {"status": "skipped", "reason": "sequence has no steps"}

        stop_rules = load_stop_rules(sequence)
        if lead.status in terminal_statuses(stop_rules):
            return {"status": "skipped", "reason": f"lead status: {lead.status}"}

        # Rollback expires instances, so keep plain keys for the conflict path
        sequence_pk, lead_pk = sequence.id, lead.id

        # One live run per (sequence, lead)
        pending_ids = await _pending_job_ids(db, sequence_pk, lead_pk)
        if pending_ids:
            logger.info(
                "Sequence %s already running for lead %s (%d pending)",
                str(sequence_pk)[:8], str(lead_pk)[:8], len(pending_ids),
            )
            return {
                "status": "duplicate",
                "sequence_id": str(sequence_pk),
                "job_ids": pending_ids,
            }

        now = utcnow()
        jobs = [
            FollowupJob(
                org_id=lead.org_id,
                sequence_id=sequence.id,
                lead_id=lead.id,
                step_index=index,
                channel=step.get("channel", "sms"),
                message_template=step["message_template"],
                scheduled_at=now + timedelta(minutes=step.get("delay_minutes", 0)),
                status="pending",
                created_at=now,
            )
            for index, step in enumerate(sequence.steps)
        ]
        db.add_all(jobs)
        db.add(EventLog(
            org_id=lead.org_id,
            lead_id=lead.id,
            action="followup_sequence_triggered",
            status="success",
            data={
                "sequence_id": str(sequence.id),
                "trigger_event": trigger_event,
                "steps": len(jobs),
            },
        ))
        try:
            await db.commit()
        except IntegrityError:
            # A concurrent trigger committed the same run first
            await db.rollback()
            pending_ids = await _pending_job_ids(db, sequence_pk, lead_pk)
            logger.info(
                "Sequence %s started concurrently for lead %s (%d pending)",
                str(sequence_pk)[:8], str(lead_pk)[:8], len(pending_ids),
            )
            return {
                "status": "duplicate",
                "sequence_id": str(sequence_pk),
                "job_ids": pending_ids,
            }

        armed = [(str(job.id), (job.scheduled_at - now).total_seconds()) for job in jobs]
        result = {
            "status": "scheduled",
            "sequence_id": str(sequence.id),
            "job_ids": [job_id for job_id, _ in armed],
        }

    for job_id, delay_seconds in armed:
        arm_work(FOLLOWUP_JOB, job_id, delay_seconds)

    logger.info(
        "Follow-up sequence %s scheduled for lead %s: %d step(s)",
        result["sequence_id"][:8], str(lead_uuid)[:8], len(armed),
        extra={"lead_id": str(lead_uuid), "sequence_id": result["sequence_id"]},
    )
    return result


def trigger_followup_nowait(lead_id, sequence_id=None, trigger_event: str = "lead.created"):
    """Detach trigger_followup() from the caller. Failures are logged only."""
    return fire_and_forget(
        trigger_followup(lead_id, sequence_id=sequence_id, trigger_event=trigger_event),
        label=f"followup:{str(lead_id)[:8]}",
    )
