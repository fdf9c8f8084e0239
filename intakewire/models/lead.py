"""
Lead model - one inbound matter inquiry for a firm.
Lifecycle: new → contacted → qualified → retained.
Terminal states: closed, disqualified (follow-ups stop).
"""
import uuid
from datetime import datetime, timezone
from typing import Optional
from sqlalchemy import String, Text, DateTime, ForeignKey, Index
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column
from intakewire.database import Base

TERMINAL_LEAD_STATUSES = frozenset({"closed", "disqualified"})


class Lead(Base):
    __tablename__ = "leads"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    org_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("organizations.id"), nullable=False
    )
    contact_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("contacts.id"), nullable=False
    )

    source: Mapped[str] = mapped_column(
        String(50), nullable=False
    )  # phone, web_form, referral, sms, manual
    status: Mapped[str] = mapped_column(String(30), default="new", nullable=False)
    priority: Mapped[str] = mapped_column(String(20), default="medium")
    practice_area: Mapped[Optional[str]] = mapped_column(String(100))
    summary: Mapped[Optional[str]] = mapped_column(Text)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    __table_args__ = (
        Index("ix_leads_org_id", "org_id"),
        Index("ix_leads_status", "status"),
        Index("ix_leads_contact_id", "contact_id"),
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_LEAD_STATUSES

    def __repr__(self) -> str:
        return f"<Lead {str(self.id)[:8]} status={self.status}>"
