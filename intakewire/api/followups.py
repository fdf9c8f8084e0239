"""
Follow-up API - sequence definitions and per-lead triggers/cancellation.
"""
import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.api.deps import get_org_id, parse_uuid
from intakewire.database import get_db
from intakewire.models.followup import FollowupJob, FollowupSequence
from intakewire.models.lead import Lead
from intakewire.schemas.api_responses import (
    FollowupSequenceSummary,
    TriggerFollowupRequest,
    CancelFollowupRequest,
    FollowupJobSummary,
)
from intakewire.schemas.followup import SequenceCreate, SequenceUpdate
from intakewire.services import followup_sequences
from intakewire.services.followup_executor import cancel_pending_jobs
from intakewire.services.followup_scheduler import trigger_followup

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["followups"])


def _sequence_summary(sequence: FollowupSequence) -> FollowupSequenceSummary:
    return FollowupSequenceSummary(
        id=str(sequence.id),
        name=sequence.name,
        trigger_event=sequence.trigger_event,
        steps=sequence.steps or [],
        stop_rules=followup_sequences.load_stop_rules(sequence),
        is_active=sequence.is_active,
        created_at=sequence.created_at,
    )


async def _load_lead(db: AsyncSession, org_id: uuid.UUID, lead_id: str) -> Lead:
    lead = await db.get(Lead, parse_uuid(lead_id, "lead id"))
    if not lead or lead.org_id != org_id:
        raise HTTPException(status_code=404, detail="Lead not found")
    return lead


@router.get("/followup-sequences", response_model=list[FollowupSequenceSummary])
async def list_followup_sequences(
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    sequences = await followup_sequences.list_sequences(db, org_id)
    return [_sequence_summary(s) for s in sequences]


@router.post("/followup-sequences", response_model=FollowupSequenceSummary, status_code=201)
async def create_followup_sequence(
    payload: SequenceCreate,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    sequence = await followup_sequences.create_sequence(db, org_id, payload)
    return _sequence_summary(sequence)


@router.patch("/followup-sequences/{sequence_id}", response_model=FollowupSequenceSummary)
async def update_followup_sequence(
    sequence_id: str,
    payload: SequenceUpdate,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    sequence = await followup_sequences.get_sequence(db, org_id, parse_uuid(sequence_id, "sequence id"))
    if not sequence:
        raise HTTPException(status_code=404, detail="Sequence not found")
    sequence = await followup_sequences.update_sequence(db, sequence, payload)
    return _sequence_summary(sequence)


@router.post("/leads/{lead_id}/followups", status_code=202)
async def trigger_lead_followups(
    lead_id: str,
    payload: TriggerFollowupRequest,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    """Schedule a sequence for the lead. Already-running sequences report duplicate."""
    lead = await _load_lead(db, org_id, lead_id)
    sequence_id = parse_uuid(payload.sequence_id, "sequence id") if payload.sequence_id else None

    result = await trigger_followup(
        lead.id, sequence_id=sequence_id, trigger_event=payload.trigger_event,
    )
    if result["status"] == "skipped" and result["reason"] == "sequence not found":
        raise HTTPException(status_code=404, detail="Sequence not found")
    return result


@router.get("/leads/{lead_id}/followups", response_model=list[FollowupJobSummary])
async def list_lead_followups(
    lead_id: str,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    lead = await _load_lead(db, org_id, lead_id)
    result = await db.execute(
        select(FollowupJob)
        .where(and_(FollowupJob.lead_id == lead.id, FollowupJob.org_id == org_id))
        .order_by(FollowupJob.scheduled_at, FollowupJob.step_index)
    )
    return [
        FollowupJobSummary(
            id=str(job.id),
            sequence_id=str(job.sequence_id),
            step_index=job.step_index,
            channel=job.channel,
            scheduled_at=job.scheduled_at,
            status=job.status,
            sent_at=job.sent_at,
            cancel_reason=job.cancel_reason,
            last_error=job.last_error,
        )
        for job in result.scalars().all()
    ]


@router.post("/leads/{lead_id}/followups/cancel")
async def cancel_lead_followups(
    lead_id: str,
    payload: CancelFollowupRequest,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    lead = await _load_lead(db, org_id, lead_id)
    sequence_id = parse_uuid(payload.sequence_id, "sequence id") if payload.sequence_id else None
    cancelled = await cancel_pending_jobs(db, lead.id, payload.reason, sequence_id=sequence_id)
    return {"status": "cancelled", "cancelled": cancelled}
