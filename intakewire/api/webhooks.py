"""
Outbound webhook management API - endpoints, secrets, test sends, delivery log.
All routes are scoped to the org in the X-Org-Id header.
"""
import logging
import uuid
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from intakewire.api.deps import get_org_id, parse_uuid
from intakewire.config import get_settings
from intakewire.database import get_db
from intakewire.models.webhook import WebhookEndpoint, WebhookDelivery
from intakewire.schemas.api_responses import (
    WebhookEndpointCreate,
    WebhookEndpointUpdate,
    WebhookEndpointSummary,
    WebhookEndpointWithSecret,
    RotateSecretResponse,
    WebhookTestResult,
    WebhookDeliverySummary,
    EmitEventRequest,
    EmitEventResponse,
)
from intakewire.services import webhook_endpoints
from intakewire.services.event_emitter import SUPPORTED_EVENTS, emit_event
from intakewire.services.webhook_delivery import send_test_event
from intakewire.services.webhook_endpoints import WebhookConfigError
from intakewire.utils.redis_client import hit_rate_limit

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/api/v1", tags=["webhooks"])


def _endpoint_summary(endpoint: WebhookEndpoint) -> WebhookEndpointSummary:
    return WebhookEndpointSummary(
        id=str(endpoint.id),
        url=endpoint.url,
        events=list(endpoint.events or []),
        active=endpoint.active,
        created_at=endpoint.created_at,
        updated_at=endpoint.updated_at,
    )


def _delivery_summary(delivery: WebhookDelivery) -> WebhookDeliverySummary:
    return WebhookDeliverySummary(
        id=str(delivery.id),
        endpoint_id=str(delivery.endpoint_id),
        event_type=delivery.event_type,
        status=delivery.status,
        attempt_count=delivery.attempt_count,
        last_attempt_at=delivery.last_attempt_at,
        next_attempt_at=delivery.next_attempt_at,
        response_code=delivery.response_code,
        response_body=delivery.response_body,
        error_message=delivery.error_message,
        created_at=delivery.created_at,
    )


async def _load_endpoint(db: AsyncSession, org_id: uuid.UUID, endpoint_id: str) -> WebhookEndpoint:
    endpoint = await webhook_endpoints.get_endpoint(db, org_id, parse_uuid(endpoint_id, "endpoint id"))
    if not endpoint:
        raise HTTPException(status_code=404, detail="Webhook endpoint not found")
    return endpoint


@router.get("/webhook-events")
async def list_webhook_events():
    """Event types an endpoint can subscribe to."""
    return {"events": list(SUPPORTED_EVENTS)}


@router.get("/webhooks", response_model=list[WebhookEndpointSummary])
async def list_webhooks(
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    endpoints = await webhook_endpoints.list_endpoints(db, org_id)
    return [_endpoint_summary(e) for e in endpoints]


@router.post("/webhooks", response_model=WebhookEndpointWithSecret, status_code=201)
async def create_webhook(
    payload: WebhookEndpointCreate,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    """Register an endpoint. The signing secret is only returned here and on rotate."""
    try:
        endpoint = await webhook_endpoints.create_endpoint(
            db, org_id, payload.url, payload.events, active=payload.active,
        )
    except WebhookConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))

    return WebhookEndpointWithSecret(
        **_endpoint_summary(endpoint).model_dump(),
        secret=endpoint.secret,
    )


@router.patch("/webhooks/{endpoint_id}", response_model=WebhookEndpointSummary)
async def update_webhook(
    endpoint_id: str,
    payload: WebhookEndpointUpdate,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _load_endpoint(db, org_id, endpoint_id)
    try:
        endpoint = await webhook_endpoints.update_endpoint(
            db, endpoint, url=payload.url, events=payload.events, active=payload.active,
        )
    except WebhookConfigError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return _endpoint_summary(endpoint)


@router.delete("/webhooks/{endpoint_id}", status_code=204)
async def delete_webhook(
    endpoint_id: str,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _load_endpoint(db, org_id, endpoint_id)
    await webhook_endpoints.delete_endpoint(db, endpoint)


@router.post("/webhooks/{endpoint_id}/rotate-secret", response_model=RotateSecretResponse)
async def rotate_webhook_secret(
    endpoint_id: str,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    endpoint = await _load_endpoint(db, org_id, endpoint_id)
    secret = await webhook_endpoints.rotate_secret(db, endpoint)
    return RotateSecretResponse(id=str(endpoint.id), secret=secret)


@router.post("/webhooks/{endpoint_id}/test", response_model=WebhookTestResult)
async def test_webhook(
    endpoint_id: str,
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    """Send a webhook.test event now and report the receiver's answer. No retries."""
    endpoint = await _load_endpoint(db, org_id, endpoint_id)

    limit = get_settings().test_send_rate_limit
    if await hit_rate_limit(f"intakewire:rate:webhook_test:{endpoint.id}", limit, window_seconds=60):
        raise HTTPException(
            status_code=429,
            detail="Too many test sends for this endpoint. Please wait a minute.",
        )

    result = await send_test_event(db, endpoint)
    return WebhookTestResult(**result)


@router.get("/webhook-deliveries", response_model=list[WebhookDeliverySummary])
async def list_webhook_deliveries(
    limit: int = Query(default=20, ge=1, le=100),
    endpoint_id: Optional[str] = Query(default=None),
    status: Optional[str] = Query(default=None),
    org_id: uuid.UUID = Depends(get_org_id),
    db: AsyncSession = Depends(get_db),
):
    deliveries = await webhook_endpoints.list_deliveries(
        db,
        org_id,
        limit=limit,
        endpoint_id=parse_uuid(endpoint_id, "endpoint id") if endpoint_id else None,
        status=status,
    )
    return [_delivery_summary(d) for d in deliveries]


@router.post("/events", response_model=EmitEventResponse, status_code=202)
async def emit_domain_event(
    payload: EmitEventRequest,
    org_id: uuid.UUID = Depends(get_org_id),
):
    """
    Emit a domain event for the org's webhook subscribers.
    Returns once deliveries are recorded and armed; sending happens in the background.
    """
    if payload.event_type not in SUPPORTED_EVENTS:
        raise HTTPException(status_code=422, detail=f"Unsupported event: {payload.event_type}")

    delivery_ids = await emit_event(org_id, payload.event_type, payload.data)
    return EmitEventResponse(event_type=payload.event_type, delivery_ids=delivery_ids)
