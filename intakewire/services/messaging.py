"""
Outbound message primitive used by follow-up jobs.

Channels:
- sms: sent through Twilio when credentials are configured, otherwise recorded only
- email, note: recorded only (the Message row is the delivery record)

Every failure surfaces as MessageSendError so the executor can mark the job
failed with the provider's error text.
"""
import asyncio
import logging
from typing import Optional

from intakewire.config import get_settings

logger = logging.getLogger(__name__)

SUPPORTED_CHANNELS = frozenset({"sms", "email", "note"})

# Twilio client timeout
TWILIO_CLIENT_TIMEOUT = 10


class MessageSendError(Exception):
    """Raised when a provider rejects or fails to accept a message."""

    def __init__(self, message: str, provider: str = "internal", error_code: Optional[str] = None):
        super().__init__(message)
        self.provider = provider
        self.error_code = error_code


def mask_phone(phone: str) -> str:
    """Mask phone number for logging - show first 6 digits only."""
    if len(phone) > 6:
        return phone[:6] + "***"
    return phone


def twilio_configured() -> bool:
    settings = get_settings()
    return bool(
        settings.twilio_account_sid
        and settings.twilio_auth_token
        and settings.twilio_from_number
    )


def _get_twilio_client():
    """Get a Twilio REST client with configured timeout."""
    from twilio.rest import Client as TwilioClient
    from twilio.http.http_client import TwilioHttpClient
    settings = get_settings()
    http_client = TwilioHttpClient(timeout=TWILIO_CLIENT_TIMEOUT)
    return TwilioClient(
        settings.twilio_account_sid,
        settings.twilio_auth_token,
        http_client=http_client,
    )


async def _run_sync(func, *args, **kwargs):
    """Run a synchronous function in the thread pool to avoid blocking the event loop."""
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: func(*args, **kwargs))


async def send_sms(to: str, body: str, from_phone: Optional[str] = None) -> dict:
    """
    Send one SMS through Twilio. No in-call retries: a failed follow-up step
    is reported as failed rather than re-sent.

    Returns: {"provider", "provider_message_id", "status", "from_address"}
    """
    settings = get_settings()
    sender = from_phone or settings.twilio_from_number
    masked = mask_phone(to)

    try:
        client = _get_twilio_client()
        message = await _run_sync(
            client.messages.create,
            to=to,
            from_=sender,
            body=body,
        )
    except Exception as e:
        error_code = getattr(e, "code", None)
        logger.warning("Twilio send failed for %s: code=%s error=%s", masked, error_code, str(e))
        raise MessageSendError(
            str(e),
            provider="twilio",
            error_code=str(error_code) if error_code is not None else None,
        ) from e

    logger.info("SMS sent via Twilio to %s: %s", masked, message.sid)
    return {
        "provider": "twilio",
        "provider_message_id": message.sid,
        "status": message.status or "queued",
        "from_address": sender,
    }


async def send_message(
    channel: str,
    to: str,
    body: str,
    from_address: Optional[str] = None,
) -> dict:
    """
    Deliver a rendered follow-up message on a channel.
    Raises MessageSendError on provider failure or a missing recipient.
    """
    if channel not in SUPPORTED_CHANNELS:
        raise MessageSendError(f"Unsupported channel: {channel}")
    if not body:
        raise MessageSendError("Message body is empty")

    if channel == "sms" and twilio_configured():
        if not to:
            raise MessageSendError("Contact has no phone number", provider="twilio")
        return await send_sms(to, body, from_phone=from_address)

    logger.debug("Recording %s message internally (no provider configured)", channel)
    return {
        "provider": "internal",
        "provider_message_id": None,
        "status": "recorded",
        "from_address": from_address or "",
    }
