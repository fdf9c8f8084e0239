"""
Webhook delivery worker - signs and POSTs one delivery attempt, schedules retries.

Each attempt:
1. Re-reads the delivery and its endpoint (missing/inactive endpoint = stop, no attempt)
2. Serializes the stored payload snapshot canonically and signs it (HMAC-SHA256)
3. POSTs with X-Webhook-Signature / X-Webhook-Event / X-Webhook-Delivery-Id
4. 2xx = delivered. Anything else (non-2xx, timeout, connection error) is a
   failed attempt: retried after RETRY_BACKOFF_MS until MAX_ATTEMPTS, then failed.

Test sends are single-shot: one synchronous attempt, no retry.
"""
import logging
import uuid
from datetime import timedelta
from typing import Optional

import httpx

from intakewire.config import get_settings
from intakewire.database import async_session_factory
from intakewire.models.webhook import WebhookEndpoint, WebhookDelivery
from intakewire.services.event_emitter import build_event_payload
from intakewire.utils.logging import set_correlation_id
from intakewire.utils.timezone import utcnow
from intakewire.utils.webhook_signatures import (
    SIGNATURE_HEADER,
    EVENT_HEADER,
    DELIVERY_ID_HEADER,
    serialize_payload,
    sign_payload,
    verify_signature,
)
from intakewire.workers.dispatcher import DELIVERY, arm_work

logger = logging.getLogger(__name__)

MAX_ATTEMPTS = 3
RETRY_BACKOFF_MS = [1000, 5000, 15000]
RESPONSE_BODY_LIMIT = 1000
TEST_EVENT_TYPE = "webhook.test"
# Test sends are one-shot and never retried, so they keep their own statuses
TEST_DELIVERED = "test_delivered"
TEST_FAILED = "test_failed"


def get_backoff_ms(attempt_index: int) -> int:
    """Delay before the retry that follows attempt `attempt_index` (0-based)."""
    if attempt_index < 0:
        attempt_index = 0
    return RETRY_BACKOFF_MS[min(attempt_index, len(RETRY_BACKOFF_MS) - 1)]


def build_headers(delivery_id: str, event_type: str, signature: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": get_settings().webhook_user_agent,
        SIGNATURE_HEADER: signature,
        EVENT_HEADER: event_type,
        DELIVERY_ID_HEADER: delivery_id,
    }


async def post_webhook(
    url: str,
    body: str,
    headers: dict[str, str],
    timeout: float,
    transport: Optional[httpx.AsyncBaseTransport] = None,
) -> tuple[Optional[int], Optional[str], Optional[str]]:
    """
    POST one webhook request.
    Returns (status_code, truncated_response_body, error). Transport failures
    return (None, None, error) instead of raising.
    """
    try:
        async with httpx.AsyncClient(timeout=timeout, transport=transport) as client:
            response = await client.post(url, content=body.encode("utf-8"), headers=headers)
        return response.status_code, response.text[:RESPONSE_BODY_LIMIT], None
    except httpx.TimeoutException as e:
        return None, None, f"Timeout after {timeout:g}s: {type(e).__name__}"
    except httpx.HTTPError as e:
        return None, None, f"{type(e).__name__}: {str(e)[:RESPONSE_BODY_LIMIT]}"


async def _perform_attempt(delivery: WebhookDelivery, endpoint: WebhookEndpoint) -> bool:
    """Run one attempt and record its outcome on the delivery (caller commits)."""
    settings = get_settings()
    body = serialize_payload(delivery.payload)
    signature = sign_payload(body, endpoint.secret)
    headers = build_headers(str(delivery.id), delivery.event_type, signature)

    status_code, response_text, error = await post_webhook(
        endpoint.url, body, headers, settings.webhook_timeout_seconds,
    )

    delivery.attempt_count = (delivery.attempt_count or 0) + 1
    delivery.last_attempt_at = utcnow()
    delivery.signature = signature
    delivery.response_code = status_code
    delivery.response_body = response_text
    delivery.next_attempt_at = None

    success = status_code is not None and 200 <= status_code < 300
    if success:
        delivery.status = "delivered"
        delivery.error_message = None
    else:
        delivery.error_message = error or f"HTTP {status_code}"
    return success


async def attempt_delivery(delivery_id: str) -> dict:
    """
    Dispatcher handler for one delivery attempt.
    Commits the outcome, then arms the retry timer if one is due.
    """
    set_correlation_id(f"dlv-{str(delivery_id)[:8]}")
    retry_in_ms = None

    async with async_session_factory() as db:
        delivery = await db.get(WebhookDelivery, uuid.UUID(str(delivery_id)))
        if not delivery:
            return {"status": "skipped", "reason": "delivery not found"}
        if delivery.status != "pending":
            return {"status": "skipped", "reason": f"already {delivery.status}"}

        endpoint = await db.get(WebhookEndpoint, delivery.endpoint_id)
        if not endpoint or not endpoint.active:
            delivery.next_attempt_at = None
            await db.commit()
            logger.info(
                "Delivery %s not attempted: endpoint missing or inactive",
                str(delivery.id)[:8],
                extra={"delivery_id": str(delivery.id)},
            )
            return {"status": "skipped", "reason": "endpoint missing or inactive"}

        if delivery.attempt_count >= MAX_ATTEMPTS:
            delivery.status = "failed"
            delivery.next_attempt_at = None
            await db.commit()
            return {"status": "failed", "attempt_count": delivery.attempt_count}

        success = await _perform_attempt(delivery, endpoint)

        if not success:
            if delivery.attempt_count >= MAX_ATTEMPTS:
                delivery.status = "failed"
            else:
                retry_in_ms = get_backoff_ms(delivery.attempt_count - 1)
                delivery.next_attempt_at = delivery.last_attempt_at + timedelta(
                    milliseconds=retry_in_ms
                )

        await db.commit()
        outcome = {
            "status": delivery.status,
            "attempt_count": delivery.attempt_count,
            "response_code": delivery.response_code,
        }

    log_extra = {"delivery_id": str(delivery_id), "endpoint_id": str(endpoint.id)}
    if success:
        logger.info(
            "Webhook delivered: %s -> %s (HTTP %s, attempt %d)",
            delivery.event_type, endpoint.url, delivery.response_code,
            delivery.attempt_count, extra=log_extra,
        )
    elif retry_in_ms is not None:
        logger.warning(
            "Webhook attempt %d/%d failed for %s: %s. Retrying in %dms",
            delivery.attempt_count, MAX_ATTEMPTS, str(delivery_id)[:8],
            delivery.error_message, retry_in_ms, extra=log_extra,
        )
        arm_work(DELIVERY, str(delivery_id), retry_in_ms / 1000)
        outcome["retry_in_ms"] = retry_in_ms
    else:
        logger.error(
            "Webhook delivery %s failed after %d attempts: %s",
            str(delivery_id)[:8], delivery.attempt_count, delivery.error_message,
            extra=log_extra,
        )

    return outcome


async def send_test_event(db, endpoint: WebhookEndpoint) -> dict:
    """
    Deliver a webhook.test event synchronously, once.
    The row is kept in the delivery log as test_delivered or test_failed;
    the returned status is the plain outcome, delivered or failed.
    """
    delivery = WebhookDelivery(
        org_id=endpoint.org_id,
        endpoint_id=endpoint.id,
        event_type=TEST_EVENT_TYPE,
        payload=build_event_payload(
            TEST_EVENT_TYPE,
            {"endpoint_id": str(endpoint.id), "message": "Test event"},
        ),
        status="pending",
        attempt_count=0,
    )
    db.add(delivery)
    await db.flush()

    success = await _perform_attempt(delivery, endpoint)
    delivery.status = TEST_DELIVERED if success else TEST_FAILED
    await db.commit()

    outcome = "delivered" if success else "failed"
    logger.info(
        "Test webhook to %s: %s (HTTP %s)",
        endpoint.url, outcome, delivery.response_code,
        extra={"endpoint_id": str(endpoint.id), "delivery_id": str(delivery.id)},
    )
    return {
        "delivery_id": str(delivery.id),
        "status": outcome,
        "response_code": delivery.response_code,
        "response_body": delivery.response_body,
        "error": delivery.error_message,
    }


def verify_delivery_signature(delivery: WebhookDelivery, endpoint: WebhookEndpoint) -> bool:
    """Check a recorded delivery signature against the endpoint's current secret."""
    if not delivery.signature:
        return False
    return verify_signature(
        endpoint.secret, delivery.signature, serialize_payload(delivery.payload),
    )
