"""Webhook signing and delivery primitives.

Wire format
-----------
``POST`` to the subscriber URL with the raw event payload as JSON body and
three headers:

* ``X-Webhook-Signature``: hex HMAC-SHA256 of ``"{timestamp}.{body}"`` keyed
  with the subscription secret
* ``X-Webhook-Timestamp``: the same timestamp, unix milliseconds
* ``X-Webhook-Event``: the event name

Receivers recompute the HMAC over the same concatenation to authenticate the
call (see :func:`verify_signature`).
"""

import hashlib
import hmac
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"
TIMESTAMP_HEADER = "X-Webhook-Timestamp"
EVENT_HEADER = "X-Webhook-Event"

RESPONSE_BODY_LIMIT = 1000


def validate_webhook_url(url: Optional[str]) -> bool:
    """Check that a webhook URL is safe to call.

    Rules:
    - HTTPS is always allowed
    - HTTP only for localhost/127.0.0.1 (development)
    - any other scheme is rejected

    Parameters
    ----------
    url : str | None
        URL to validate

    Returns
    -------
    bool
        True when the URL is acceptable
    """
    if not url:
        return False

    url_lower = url.lower().strip()

    if url_lower.startswith("https://"):
        return True

    if url_lower.startswith("http://"):
        return url_lower.startswith("http://localhost") or url_lower.startswith("http://127.0.0.1")

    return False


def serialize_payload(payload: Dict[str, Any]) -> str:
    """Compact JSON used both as request body and as signed message."""
    return json.dumps(payload, default=str, separators=(",", ":"), ensure_ascii=False)


def current_timestamp_ms() -> int:
    return int(time.time() * 1000)


def generate_signature(secret: str, timestamp: int, body: str) -> str:
    """Hex HMAC-SHA256 of ``"{timestamp}.{body}"``.

    Parameters
    ----------
    secret : str
        Subscription secret
    timestamp : int
        Unix milliseconds sent in ``X-Webhook-Timestamp``
    body : str
        Serialized JSON payload, exactly as sent
    """
    message = f"{timestamp}.{body}"
    return hmac.new(
        secret.encode("utf-8"),
        message.encode("utf-8"),
        hashlib.sha256,
    ).hexdigest()


def verify_signature(secret: str, timestamp: Any, body: str, signature: str) -> bool:
    """Receiver-side check of a delivered webhook."""
    if not signature:
        return False
    expected = generate_signature(secret, int(timestamp), body)
    return hmac.compare_digest(expected, signature)


def build_webhook_headers(event_type: str, body: str, secret: str, timestamp: int) -> Dict[str, str]:
    return {
        "Content-Type": "application/json",
        "User-Agent": "Automation-Service-Webhook/1.0",
        SIGNATURE_HEADER: generate_signature(secret, timestamp, body),
        TIMESTAMP_HEADER: str(timestamp),
        EVENT_HEADER: event_type,
    }


@dataclass
class WebhookAttempt:
    """Outcome of a single HTTP attempt."""

    success: bool
    status_code: Optional[int] = None
    response_body: str = ""
    error: Optional[str] = None


async def send_webhook(
    client: httpx.AsyncClient,
    url: str,
    event_type: str,
    payload: Dict[str, Any],
    secret: str,
    timeout: float = 10.0,
    timestamp: Optional[int] = None,
) -> WebhookAttempt:
    """Send one signed webhook call.

    Never raises: non-2xx answers and transport errors are returned as a
    failed :class:`WebhookAttempt`.

    Parameters
    ----------
    client : httpx.AsyncClient
        Async HTTP client
    url : str
        Subscriber URL
    event_type : str
        Event name (e.g. "booking.created")
    payload : dict
        Event payload, sent as is
    secret : str
        Subscription secret used for the HMAC signature
    timeout : float
        Per-call timeout in seconds
    timestamp : int | None
        Unix milliseconds; defaults to now
    """
    if not validate_webhook_url(url):
        logger.warning(f"Invalid webhook URL: {url}")
        return WebhookAttempt(success=False, error="Invalid webhook URL")

    body = serialize_payload(payload)
    ts = timestamp if timestamp is not None else current_timestamp_ms()
    headers = build_webhook_headers(event_type, body, secret, ts)

    try:
        response = await client.post(
            url,
            content=body.encode("utf-8"),
            headers=headers,
            timeout=timeout,
        )
    except httpx.TimeoutException:
        logger.warning(f"Timeout sending webhook to {url} (event: {event_type})")
        return WebhookAttempt(success=False, error=f"Timeout after {timeout}s")
    except httpx.HTTPError as e:
        logger.warning(f"Error sending webhook to {url} (event: {event_type}): {e}")
        return WebhookAttempt(success=False, error=str(e) or e.__class__.__name__)

    response_body = response.text[:RESPONSE_BODY_LIMIT]
    if response.is_success:
        logger.info(f"Webhook delivered to {url} (event: {event_type})")
        return WebhookAttempt(
            success=True,
            status_code=response.status_code,
            response_body=response_body,
        )

    logger.warning(
        f"HTTP error sending webhook to {url} (event: {event_type}): "
        f"{response.status_code}"
    )
    return WebhookAttempt(
        success=False,
        status_code=response.status_code,
        response_body=response_body,
        error=f"HTTP {response.status_code}: {response.text[:200]}",
    )
