"""
Follow-up sequence store - tenant-scoped sequence definitions.

Editing a sequence never changes jobs that were already expanded from it:
jobs carry a snapshot of their step.
"""
import logging
import uuid
from typing import Optional

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.models.followup import FollowupSequence
from intakewire.models.lead import TERMINAL_LEAD_STATUSES
from intakewire.schemas.followup import SequenceCreate, SequenceUpdate, StopRules

logger = logging.getLogger(__name__)


def load_stop_rules(sequence: Optional[FollowupSequence]) -> StopRules:
    if sequence is None or not sequence.stop_rules:
        return StopRules()
    return StopRules.model_validate(sequence.stop_rules)


def terminal_statuses(stop_rules: StopRules) -> frozenset[str]:
    """Lead statuses that stop a sequence: the global terminal set plus the sequence's own."""
    return TERMINAL_LEAD_STATUSES | frozenset(stop_rules.stop_on_statuses)


async def create_sequence(
    db: AsyncSession, org_id: uuid.UUID, payload: SequenceCreate,
) -> FollowupSequence:
    sequence = FollowupSequence(
        org_id=org_id,
        name=payload.name,
        trigger_event=payload.trigger_event,
        steps=[step.model_dump() for step in payload.steps],
        stop_rules=payload.stop_rules.model_dump(),
        is_active=payload.is_active,
    )
    db.add(sequence)
    await db.flush()
    logger.info(
        "Follow-up sequence created for org %s: %s (%d steps)",
        str(org_id)[:8], sequence.name, len(sequence.steps),
        extra={"org_id": str(org_id), "sequence_id": str(sequence.id)},
    )
    return sequence


async def list_sequences(db: AsyncSession, org_id: uuid.UUID) -> list[FollowupSequence]:
    result = await db.execute(
        select(FollowupSequence)
        .where(FollowupSequence.org_id == org_id)
        .order_by(FollowupSequence.created_at)
    )
    return list(result.scalars().all())


async def get_sequence(
    db: AsyncSession, org_id: uuid.UUID, sequence_id: uuid.UUID,
) -> Optional[FollowupSequence]:
    sequence = await db.get(FollowupSequence, sequence_id)
    if sequence is None or sequence.org_id != org_id:
        return None
    return sequence


async def update_sequence(
    db: AsyncSession, sequence: FollowupSequence, payload: SequenceUpdate,
) -> FollowupSequence:
    if payload.name is not None:
        sequence.name = payload.name
    if payload.trigger_event is not None:
        sequence.trigger_event = payload.trigger_event
    if payload.steps is not None:
        sequence.steps = [step.model_dump() for step in payload.steps]
    if payload.stop_rules is not None:
        sequence.stop_rules = payload.stop_rules.model_dump()
    if payload.is_active is not None:
        sequence.is_active = payload.is_active
    await db.flush()
    return sequence


async def find_trigger_sequence(
    db: AsyncSession, org_id: uuid.UUID, trigger_event: str,
) -> Optional[FollowupSequence]:
    """Oldest active sequence for the org bound to this trigger event."""
    result = await db.execute(
        select(FollowupSequence)
        .where(
            and_(
                FollowupSequence.org_id == org_id,
                FollowupSequence.trigger_event == trigger_event,
                FollowupSequence.is_active.is_(True),
            )
        )
        .order_by(FollowupSequence.created_at)
        .limit(1)
    )
    return result.scalar_one_or_none()
