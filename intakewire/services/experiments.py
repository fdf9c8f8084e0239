"""
Experiment variant assignment - deterministic bucketing, persisted on first exposure.

assign_variant() is pure: SHA-256 of "<experiment_id>:<lead_id>", first 8 hex
digits as an integer, modulo the variant count. get_or_assign_variant()
stores the first assignment per (experiment, lead) and always returns the
stored one afterwards, even if the variant list changes.
"""
import hashlib
import logging
import uuid
from typing import Optional, Sequence

from sqlalchemy import select, func, and_
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.models.event_log import EventLog
from intakewire.models.experiment import ExperimentAssignment
from intakewire.models.lead import Lead

logger = logging.getLogger(__name__)

EXPERIMENTS: dict[str, dict] = {
    "intake_script_v2": {
        "variants": ["control", "variant_a"],
        "active": True,
    },
    "qualification_threshold": {
        "variants": ["control", "high_bar", "low_bar"],
        "active": True,
    },
    "followup_timing": {
        "variants": ["immediate", "delayed_5m", "delayed_15m"],
        "active": True,
    },
}


def stable_hash(value: str) -> int:
    digest = hashlib.sha256(value.encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


def assign_variant(lead_id, experiment_id: str, variants: Sequence[str]) -> str:
    """Pick a variant for a lead. Same inputs always give the same variant."""
    if not variants:
        raise ValueError(f"Experiment {experiment_id} has no variants")
    return variants[stable_hash(f"{experiment_id}:{lead_id}") % len(variants)]


def list_experiments() -> list[dict]:
    """Active experiments from the registry."""
    return [
        {"key": key, "variants": list(config["variants"])}
        for key, config in EXPERIMENTS.items()
        if config.get("active")
    ]


def get_experiment_variants(experiment_id: str) -> Optional[list[str]]:
    config = EXPERIMENTS.get(experiment_id)
    if not config or not config.get("active"):
        return None
    return list(config["variants"])


def _insert_ignoring_conflict(db: AsyncSession):
    """Dialect-specific INSERT ... ON CONFLICT DO NOTHING constructor."""
    if db.bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


async def get_or_assign_variant(
    db: AsyncSession,
    lead_id: uuid.UUID,
    experiment_id: str,
    variants: Optional[Sequence[str]] = None,
    org_id: Optional[uuid.UUID] = None,
) -> str:
    """
    Return the stored variant for (experiment, lead), assigning it on first call.
    Concurrent first calls converge on one row via the unique constraint.
    Raises ValueError for an unknown experiment with no explicit variants.
    """
    existing = await db.execute(
        select(ExperimentAssignment.variant).where(
            and_(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.lead_id == lead_id,
            )
        )
    )
    stored = existing.scalar_one_or_none()
    if stored is not None:
        return stored

    if variants is None:
        variants = get_experiment_variants(experiment_id)
        if variants is None:
            raise ValueError(f"Unknown experiment: {experiment_id}")

    variant = assign_variant(lead_id, experiment_id, variants)

    insert = _insert_ignoring_conflict(db)
    result = await db.execute(
        insert(ExperimentAssignment)
        .values(
            id=uuid.uuid4(),
            experiment_id=experiment_id,
            lead_id=lead_id,
            variant=variant,
        )
        .on_conflict_do_nothing(index_elements=["experiment_id", "lead_id"])
    )

    if result.rowcount == 1:
        db.add(EventLog(
            org_id=org_id,
            lead_id=lead_id,
            action="experiment.exposure",
            status="success",
            data={"experiment_id": experiment_id, "variant": variant},
        ))
        await db.flush()
        logger.info(
            "Experiment %s: lead %s assigned %s",
            experiment_id, str(lead_id)[:8], variant,
            extra={"lead_id": str(lead_id)},
        )
        return variant

    # Lost the race: another writer stored first
    winner = await db.execute(
        select(ExperimentAssignment.variant).where(
            and_(
                ExperimentAssignment.experiment_id == experiment_id,
                ExperimentAssignment.lead_id == lead_id,
            )
        )
    )
    return winner.scalar_one()


async def get_assignment_counts(
    db: AsyncSession, experiment_id: str, org_id: uuid.UUID
) -> dict[str, int]:
    """Per-variant assignment counts for one org's leads."""
    result = await db.execute(
        select(ExperimentAssignment.variant, func.count(ExperimentAssignment.id))
        .join(Lead, Lead.id == ExperimentAssignment.lead_id)
        .where(
            and_(
                ExperimentAssignment.experiment_id == experiment_id,
                Lead.org_id == org_id,
            )
        )
        .group_by(ExperimentAssignment.variant)
    )
    return {variant: count for variant, count in result.all()}
