"""
Follow-up job executor - runs one job when its timer fires.

State is re-read at fire time, never trusted from the trigger:
- job no longer pending: no-op
- fired early: re-armed for the residual delay
- lead missing, terminal status, or inbound reply since trigger: job cancelled
  together with every later pending step of the same sequence run
- otherwise: render, send, record Interaction + Message, mark sent (one commit)

The Message idempotency key followup:<job_id> makes a re-fired job that
already recorded its message complete without sending again.
"""
import logging
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, and_
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.database import async_session_factory
from intakewire.models.contact import Contact
from intakewire.models.event_log import EventLog
from intakewire.models.followup import FollowupJob, FollowupSequence
from intakewire.models.interaction import Interaction
from intakewire.models.lead import Lead
from intakewire.models.message import Message
from intakewire.models.organization import Organization
from intakewire.services.followup_sequences import load_stop_rules, terminal_statuses
from intakewire.services.messaging import send_message, MessageSendError
from intakewire.utils.logging import set_correlation_id
from intakewire.utils.templates import build_template_context, render_template
from intakewire.utils.timezone import utcnow, seconds_until
from intakewire.workers.dispatcher import FOLLOWUP_JOB, arm_work

logger = logging.getLogger(__name__)

# Timers may fire slightly early; anything within this window runs now
EARLY_FIRE_TOLERANCE_SECONDS = 1.0


def idempotency_key_for(job_id) -> str:
    return f"followup:{job_id}"


async def execute_job(job_id: str) -> dict:
    """Dispatcher handler for one follow-up job."""
    set_correlation_id(f"fup-{str(job_id)[:8]}")

    async with async_session_factory() as db:
        job = await db.get(FollowupJob, uuid.UUID(str(job_id)))
        if not job:
            return {"status": "skipped", "reason": "job not found"}
        if job.status != "pending":
            return {"status": "skipped", "reason": f"job already {job.status}"}

        remaining = seconds_until(job.scheduled_at)
        if remaining > EARLY_FIRE_TOLERANCE_SECONDS:
            arm_work(FOLLOWUP_JOB, str(job.id), remaining)
            return {"status": "rearmed", "delay_seconds": remaining}

        lead = await db.get(Lead, job.lead_id)
        if not lead:
            return await _cancel_run(db, job, "lead not found", lead_exists=False)

        sequence = await db.get(FollowupSequence, job.sequence_id)
        if not sequence or not sequence.is_active:
            return await _cancel_run(db, job, "sequence inactive")

        stop_rules = load_stop_rules(sequence)
        if lead.status in terminal_statuses(stop_rules):
            return await _cancel_run(db, job, f"lead status: {lead.status}")

        if stop_rules.stop_on_response and await _lead_responded_since(db, lead.id, job.created_at):
            return await _cancel_run(db, job, "lead responded")

        return await _send_job(db, job, lead)


async def _lead_responded_since(db: AsyncSession, lead_id: uuid.UUID, since: datetime) -> bool:
    result = await db.execute(
        select(Message.id)
        .where(
            and_(
                Message.lead_id == lead_id,
                Message.direction == "inbound",
                Message.created_at > since,
            )
        )
        .limit(1)
    )
    return result.scalar_one_or_none() is not None


async def _cancel_run(
    db: AsyncSession, job: FollowupJob, reason: str, lead_exists: bool = True,
) -> dict:
    """Cancel this job and every later pending step of the same (sequence, lead) run."""
    job.status = "cancelled"
    job.cancel_reason = reason

    result = await db.execute(
        update(FollowupJob)
        .where(
            and_(
                FollowupJob.sequence_id == job.sequence_id,
                FollowupJob.lead_id == job.lead_id,
                FollowupJob.step_index > job.step_index,
                FollowupJob.status == "pending",
            )
        )
        .values(status="cancelled", cancel_reason=reason, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    later_cancelled = result.rowcount or 0

    db.add(EventLog(
        org_id=job.org_id,
        lead_id=job.lead_id if lead_exists else None,
        action="followup_cancelled",
        status="skipped",
        message=reason,
        data={
            "job_id": str(job.id),
            "sequence_id": str(job.sequence_id),
            "step_index": job.step_index,
            "later_steps_cancelled": later_cancelled,
        },
    ))
    await db.commit()

    logger.info(
        "Follow-up job %s cancelled (%s); %d later step(s) cancelled",
        str(job.id)[:8], reason, later_cancelled,
        extra={"job_id": str(job.id), "lead_id": str(job.lead_id)},
    )
    return {"status": "cancelled", "reason": reason, "later_cancelled": later_cancelled}


def _recipient_for(channel: str, contact: Optional[Contact]) -> str:
    if contact is None:
        return ""
    if channel == "sms":
        return contact.phone or ""
    if channel == "email":
        return contact.email or ""
    return ""


async def _send_job(db: AsyncSession, job: FollowupJob, lead: Lead) -> dict:
    key = idempotency_key_for(job.id)

    existing = await db.execute(select(Message).where(Message.idempotency_key == key))
    existing_message = existing.scalar_one_or_none()
    if existing_message:
        job.status = "sent"
        job.sent_at = existing_message.created_at
        job.message_id = existing_message.id
        await db.commit()
        logger.info("Follow-up job %s already recorded its message; marked sent", str(job.id)[:8])
        return {"status": "sent", "message_id": str(existing_message.id), "deduplicated": True}

    contact = await db.get(Contact, lead.contact_id) if lead.contact_id else None
    org = await db.get(Organization, lead.org_id)
    body = render_template(
        job.message_template,
        build_template_context(lead, contact, org.name if org else None),
    )
    to_address = _recipient_for(job.channel, contact)

    try:
        sent = await send_message(job.channel, to_address, body)
    except MessageSendError as e:
        job.status = "failed"
        job.last_error = str(e)
        db.add(EventLog(
            org_id=job.org_id,
            lead_id=job.lead_id,
            action="followup_failed",
            status="failure",
            message=str(e),
            data={"job_id": str(job.id), "channel": job.channel, "provider": e.provider},
        ))
        await db.commit()
        logger.error(
            "Follow-up job %s send failed on %s: %s",
            str(job.id)[:8], job.channel, str(e),
            extra={"job_id": str(job.id), "lead_id": str(job.lead_id)},
        )
        return {"status": "failed", "error": str(e)}

    now = utcnow()
    interaction = Interaction(
        org_id=job.org_id,
        lead_id=job.lead_id,
        channel=job.channel,
        status="completed",
        started_at=now,
        ended_at=now,
        extra_data={
            "source": "followup",
            "job_id": str(job.id),
            "sequence_id": str(job.sequence_id),
            "step_index": job.step_index,
        },
    )
    db.add(interaction)
    await db.flush()

    message = Message(
        org_id=job.org_id,
        lead_id=job.lead_id,
        interaction_id=interaction.id,
        direction="outbound",
        channel=job.channel,
        provider=sent["provider"],
        provider_message_id=sent.get("provider_message_id"),
        from_address=sent.get("from_address") or "",
        to_address=to_address,
        body=body,
        idempotency_key=key,
        created_at=now,
    )
    db.add(message)
    await db.flush()

    job.status = "sent"
    job.sent_at = now
    job.message_id = message.id
    job.last_error = None

    db.add(EventLog(
        org_id=job.org_id,
        lead_id=job.lead_id,
        action="followup_sent",
        status="success",
        data={
            "job_id": str(job.id),
            "sequence_id": str(job.sequence_id),
            "step_index": job.step_index,
            "channel": job.channel,
            "provider": sent["provider"],
        },
    ))
    await db.commit()

    logger.info(
        "Follow-up step %d sent for lead %s via %s (%s)",
        job.step_index, str(job.lead_id)[:8], job.channel, sent["provider"],
        extra={"job_id": str(job.id), "lead_id": str(job.lead_id)},
    )
    return {"status": "sent", "message_id": str(message.id)}


async def cancel_pending_jobs(
    db: AsyncSession,
    lead_id: uuid.UUID,
    reason: str,
    sequence_id: Optional[uuid.UUID] = None,
) -> int:
    """
    Cancel a lead's pending jobs now (caller commits). Armed timers for them
    become no-ops when they fire.
    """
    conditions = [FollowupJob.lead_id == lead_id, FollowupJob.status == "pending"]
    if sequence_id is not None:
        conditions.append(FollowupJob.sequence_id == sequence_id)

    result = await db.execute(
        update(FollowupJob)
        .where(and_(*conditions))
        .values(status="cancelled", cancel_reason=reason, updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    cancelled = result.rowcount or 0
    if cancelled:
        logger.info(
            "Cancelled %d pending follow-up job(s) for lead %s: %s",
            cancelled, str(lead_id)[:8], reason,
        )
    return cancelled
