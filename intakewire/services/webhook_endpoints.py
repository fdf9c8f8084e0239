"""
Webhook endpoint management - tenant-scoped CRUD, secret rotation, delivery listing.

Secrets are generated server-side and only returned by create and rotate.
Management actions write an EventLog row for the audit trail.
"""
import logging
import uuid
from typing import Optional
from urllib.parse import urlparse

from sqlalchemy import select, and_
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.config import get_settings
from intakewire.models.event_log import EventLog
from intakewire.models.webhook import WebhookEndpoint, WebhookDelivery
from intakewire.services.event_emitter import SUPPORTED_EVENTS
from intakewire.utils.webhook_signatures import generate_webhook_secret

logger = logging.getLogger(__name__)

ALLOWED_SCHEMES = ("http", "https")
MAX_URL_LENGTH = 2048
DEFAULT_DELIVERY_LIMIT = 20
MAX_DELIVERY_LIMIT = 100


class WebhookConfigError(ValueError):
    """Invalid endpoint URL or event subscription list."""


def validate_endpoint_url(url: str) -> str:
    url = (url or "").strip()
    if not url:
        raise WebhookConfigError("URL is required")
    if len(url) > MAX_URL_LENGTH:
        raise WebhookConfigError("URL is too long")

    parsed = urlparse(url)
    if parsed.scheme not in ALLOWED_SCHEMES or not parsed.netloc:
        raise WebhookConfigError("URL must be an absolute http(s) URL")
    if get_settings().app_env == "production" and parsed.scheme != "https":
        raise WebhookConfigError("URL must use https")
    return url


def validate_events(events: Optional[list[str]]) -> list[str]:
    """Reject empty or unknown subscriptions. Duplicates collapse, order is kept."""
    if not events:
        raise WebhookConfigError("Select at least one event")

    unknown = [e for e in events if e not in SUPPORTED_EVENTS]
    if unknown:
        raise WebhookConfigError(f"Unsupported event(s): {', '.join(sorted(set(unknown)))}")

    seen = []
    for event in events:
        if event not in seen:
            seen.append(event)
    return seen


def _audit(db: AsyncSession, endpoint: WebhookEndpoint, action: str, **data) -> None:
    db.add(EventLog(
        org_id=endpoint.org_id,
        action=action,
        status="success",
        data={"endpoint_id": str(endpoint.id), **data},
    ))


async def create_endpoint(
    db: AsyncSession,
    org_id: uuid.UUID,
    url: str,
    events: list[str],
    active: bool = True,
) -> WebhookEndpoint:
    endpoint = WebhookEndpoint(
        org_id=org_id,
        url=validate_endpoint_url(url),
        secret=generate_webhook_secret(),
        events=validate_events(events),
        active=active,
    )
    db.add(endpoint)
    await db.flush()
    _audit(db, endpoint, "webhook_endpoint_created", url=endpoint.url, events=endpoint.events)

    logger.info(
        "Webhook endpoint created for org %s: %s",
        str(org_id)[:8], endpoint.url,
        extra={"org_id": str(org_id), "endpoint_id": str(endpoint.id)},
    )
    return endpoint


async def list_endpoints(db: AsyncSession, org_id: uuid.UUID) -> list[WebhookEndpoint]:
    result = await db.execute(
        select(WebhookEndpoint)
        .where(WebhookEndpoint.org_id == org_id)
        .order_by(WebhookEndpoint.created_at.desc())
    )
    return list(result.scalars().all())


async def get_endpoint(
    db: AsyncSession, org_id: uuid.UUID, endpoint_id: uuid.UUID,
) -> Optional[WebhookEndpoint]:
    """Fetch an endpoint only if it belongs to the org."""
    endpoint = await db.get(WebhookEndpoint, endpoint_id)
    if endpoint is None or endpoint.org_id != org_id:
        return None
    return endpoint


async def update_endpoint(
    db: AsyncSession,
    endpoint: WebhookEndpoint,
    url: Optional[str] = None,
    events: Optional[list[str]] = None,
    active: Optional[bool] = None,
) -> WebhookEndpoint:
    changed = []
    if url is not None:
        endpoint.url = validate_endpoint_url(url)
        changed.append("url")
    if events is not None:
        endpoint.events = validate_events(events)
        changed.append("events")
    if active is not None:
        endpoint.active = active
        changed.append("active")

    if changed:
        await db.flush()
        _audit(db, endpoint, "webhook_endpoint_updated", fields=changed)
    return endpoint


async def delete_endpoint(db: AsyncSession, endpoint: WebhookEndpoint) -> None:
    """
    Remove an endpoint. Its deliveries stay readable; pending ones are
    skipped by the delivery worker because the endpoint no longer resolves.
    """
    _audit(db, endpoint, "webhook_endpoint_deleted", url=endpoint.url)
    await db.delete(endpoint)
    await db.flush()
    logger.info("Webhook endpoint deleted: %s", str(endpoint.id)[:8])


async def rotate_secret(db: AsyncSession, endpoint: WebhookEndpoint) -> str:
    """Replace the signing secret. Signatures made with the old secret stop verifying."""
    endpoint.secret = generate_webhook_secret()
    await db.flush()
    _audit(db, endpoint, "webhook_secret_rotated")
    logger.info(
        "Webhook secret rotated for endpoint %s", str(endpoint.id)[:8],
        extra={"endpoint_id": str(endpoint.id)},
    )
    return endpoint.secret


async def list_deliveries(
    db: AsyncSession,
    org_id: uuid.UUID,
    limit: int = DEFAULT_DELIVERY_LIMIT,
    endpoint_id: Optional[uuid.UUID] = None,
    status: Optional[str] = None,
) -> list[WebhookDelivery]:
    """Most recent deliveries first."""
    limit = max(1, min(limit, MAX_DELIVERY_LIMIT))
    conditions = [WebhookDelivery.org_id == org_id]
    if endpoint_id is not None:
        conditions.append(WebhookDelivery.endpoint_id == endpoint_id)
    if status:
        conditions.append(WebhookDelivery.status == status)

    result = await db.execute(
        select(WebhookDelivery)
        .where(and_(*conditions))
        .order_by(WebhookDelivery.created_at.desc())
        .limit(limit)
    )
    return list(result.scalars().all())
