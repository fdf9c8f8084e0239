"""
Event log model - audit trail for follow-up sends/cancellations, endpoint
management actions, and experiment exposures.
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID, JSONB
from sqlalchemy.orm import Mapped, mapped_column
from intakewire.database import Base


class EventLog(Base):
    __tablename__ = "event_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id")
    )
    lead_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("leads.id")
    )

    action: Mapped[str] = mapped_column(
        String(100), nullable=False
    )  # followup_sent, followup_cancelled, webhook_endpoint_created, experiment.exposure, ...
    status: Mapped[str] = mapped_column(
        String(20), default="success"
    )  # success, failure, skipped
    message: Mapped[Optional[str]] = mapped_column(Text)
    data: Mapped[Optional[dict]] = mapped_column(JSONB)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    __table_args__ = (
        Index("ix_events_org_id", "org_id"),
        Index("ix_events_lead_id", "lead_id"),
        Index("ix_events_action", "action"),
    )

    def __repr__(self) -> str:
        return f"<EventLog {self.action} status={self.status}>"
