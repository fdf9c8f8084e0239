"""
Experiments API - registry listing and variant assignment.
"""
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.api.deps import get_org_id, parse_uuid
from intakewire.database import get_db
from intakewire.models.lead import Lead
from intakewire.schemas.api_responses import (
    ExperimentSummary,
    AssignVariantRequest,
    AssignVariantResponse,
)
from intakewire.services.experiments import (
    list_experiments as list_registered_experiments,
    get_experiment_variants,
    get_or_assign_variant,
    get_assignment_counts,
)

router = APIRouter(prefix="/api/v1/experiments", tags=["experiments"])


@router.get("", response_model=list[ExperimentSummary])
async def list_experiments(
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    summaries = []
    for experiment in list_registered_experiments():
        counts = await get_assignment_counts(db, experiment["key"], org_id)
        summaries.append(ExperimentSummary(**experiment, assignments=counts))
    return summaries


@router.post("/{experiment_key}/assign", response_model=AssignVariantResponse)
async def assign_experiment_variant(
    experiment_key: str,
    payload: AssignVariantRequest,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    if get_experiment_variants(experiment_key) is None:
        raise HTTPException(status_code=404, detail="Experiment not found")

    lead = await db.get(Lead, parse_uuid(payload.lead_id, "lead id"))
    if not lead or lead.org_id != org_id:
        raise HTTPException(status_code=404, detail="Lead not found")

    variant = await get_or_assign_variant(db, lead.id, experiment_key, org_id=org_id)
    return AssignVariantResponse(
        experiment_id=experiment_key,
        lead_id=str(lead.id),
        variant=variant,
    )
