"""
Event emitter - fans a domain event out to every subscribed webhook endpoint.

emit_event() snapshots the payload, writes one pending WebhookDelivery per
active subscribed endpoint in a single commit, then arms each delivery on the
dispatcher. It never performs network I/O, so CRUD handlers can await it or
detach it with emit_event_nowait().
"""
import json
import logging
import uuid
from typing import Any, Optional

from sqlalchemy import select, and_

from intakewire.database import async_session_factory
from intakewire.models.webhook import WebhookEndpoint, WebhookDelivery
from intakewire.utils.background import fire_and_forget
from intakewire.utils.timezone import utcnow
from intakewire.workers.dispatcher import DELIVERY, arm_work

logger = logging.getLogger(__name__)

SUPPORTED_EVENTS = (
    "lead.created",
    "lead.updated",
    "lead.qualified",
    "intake.completed",
    "call.completed",
    "contact.created",
)


def build_event_payload(
    event_type: str,
    data: Optional[dict[str, Any]] = None,
    timestamp: Optional[str] = None,
) -> dict:
    """
    Envelope sent to receivers: {"event", "timestamp", "data"}.
    Data is normalized through JSON so UUIDs and datetimes are stored as strings.
    """
    return {
        "event": event_type,
        "timestamp": timestamp or utcnow().isoformat(),
        "data": json.loads(json.dumps(data or {}, default=str)),
    }


def _as_uuid(value) -> uuid.UUID:
    return value if isinstance(value, uuid.UUID) else uuid.UUID(str(value))


async def emit_event(org_id, event_type: str, data: Optional[dict] = None) -> list[str]:
    """
    Create and arm deliveries for an event. Returns the new delivery IDs.
    An event with no subscribed active endpoint creates nothing.
    """
    org_uuid = _as_uuid(org_id)

    async with async_session_factory() as db:
        result = await db.execute(
            select(WebhookEndpoint).where(
                and_(
                    WebhookEndpoint.org_id == org_uuid,
                    WebhookEndpoint.active.is_(True),
                )
            )
        )
        endpoints = [e for e in result.scalars().all() if e.subscribes_to(event_type)]

        if not endpoints:
            logger.debug(
                "No subscribers for %s in org %s", event_type, str(org_uuid)[:8],
            )
            return []

        payload = build_event_payload(event_type, data)
        now = utcnow()
        deliveries = [
            WebhookDelivery(
                org_id=org_uuid,
                endpoint_id=endpoint.id,
                event_type=event_type,
                payload=dict(payload),
                status="pending",
                attempt_count=0,
                next_attempt_at=now,
            )
            for endpoint in endpoints
        ]
        db.add_all(deliveries)
        await db.commit()
        delivery_ids = [str(d.id) for d in deliveries]

    for delivery_id in delivery_ids:
        arm_work(DELIVERY, delivery_id)

    logger.info(
        "Event %s emitted to %d endpoint(s) for org %s",
        event_type, len(delivery_ids), str(org_uuid)[:8],
        extra={"org_id": str(org_uuid), "event_type": event_type},
    )
    return delivery_ids


def emit_event_nowait(org_id, event_type: str, data: Optional[dict] = None):
    """Detach emit_event() from the caller. Failures are logged only."""
    return fire_and_forget(
        emit_event(org_id, event_type, data),
        label=f"emit:{event_type}",
    )
