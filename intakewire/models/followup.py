"""
Follow-up models - sequence templates and the per-lead jobs expanded from them.

A sequence is an ordered list of steps:
    [{"delay_minutes": 0, "channel": "sms", "message_template": "..."}, ...]
Triggering a sequence for a lead creates one FollowupJob per step.
Jobs: pending → sent | cancelled | failed. Only the job executor mutates them.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, Integer, Boolean, DateTime, ForeignKey, Index, text
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from intakewire.database import Base


class FollowupSequence(Base):
    __tablename__ = "followup_sequences"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    trigger_event: Mapped[str] = mapped_column(
        String(100), default="lead.created", nullable=False
    )
    steps: Mapped[list] = mapped_column(JSONB, nullable=False, default=list)
    stop_rules: Mapped[Optional[dict]] = mapped_column(
        JSONB, default=dict
    )  # {"stop_on_statuses": [...], "stop_on_response": true}
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_followup_sequences_org_trigger", "org_id", "trigger_event", "is_active"),
    )

    def __repr__(self) -> str:
        return f"<FollowupSequence {self.name} steps={len(self.steps or [])}>"


class FollowupJob(Base):
    __tablename__ = "followup_jobs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    sequence_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("followup_sequences.id"), nullable=False
    )
    lead_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id"), nullable=False
    )

    # Step snapshot (editing the sequence later does not change armed jobs)
    step_index: Mapped[int] = mapped_column(Integer, nullable=False)
    channel: Mapped[str] = mapped_column(String(20), nullable=False)
    message_template: Mapped[str] = mapped_column(Text, nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    status: Mapped[str] = mapped_column(
        String(20), default="pending", nullable=False
    )  # pending, sent, cancelled, failed
    sent_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    last_error: Mapped[Optional[str]] = mapped_column(Text)
    message_id: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_followup_jobs_pending", "status", "scheduled_at"),
        Index("ix_followup_jobs_pair", "sequence_id", "lead_id", "step_index"),
        Index("ix_followup_jobs_lead_id", "lead_id"),
        # At most one pending job per step of a (sequence, lead) run
        Index(
            "uq_followup_jobs_pending_step",
            "sequence_id", "lead_id", "step_index",
            unique=True,
            postgresql_where=text("status = 'pending'"),
            sqlite_where=text("status = 'pending'"),
        ),
    )

    def __repr__(self) -> str:
        return f"<FollowupJob step={self.step_index} status={self.status}>"
