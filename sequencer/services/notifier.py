"""Internal alerts for `notify` nodes — delivered to a signed webhook when configured."""

import hashlib
import hmac
import json
import logging
import time
from datetime import datetime, timezone
from typing import Optional

import httpx

from sequencer.config import get_settings

logger = logging.getLogger(__name__)


def sign_payload(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for an alert body."""
    return hmac.new(secret.encode(), payload.encode(), hashlib.sha256).hexdigest()


async def dispatch_alert(
    tenant_id: str,
    entity_id: str,
    message: str,
    enrollment_id: Optional[str] = None,
    channel: str = "internal",
    extra: Optional[dict] = None,
) -> bool:
    """Hand an alert to the notification collaborator. Never raises.

    Returns True when the alert was delivered (or only logged because no
    webhook is configured), False when delivery failed.
    """
    settings = get_settings()
    alert = {
        "tenant_id": tenant_id,
        "entity_id": entity_id,
        "enrollment_id": enrollment_id,
        "channel": channel,
        "message": message,
        **(extra or {}),
    }

    if not settings.notify_webhook_url:
        logger.info(f"Notify [{channel}] {entity_id}: {message}")
        return True

    body = json.dumps({
        "event": "engine.notify",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": alert,
    })
    headers = {"Content-Type": "application/json", "X-Webhook-Event": "engine.notify"}
    if settings.notify_webhook_secret:
        sig = sign_payload(body, settings.notify_webhook_secret)
        headers["X-Webhook-Signature-256"] = f"sha256={sig}"

    start = time.monotonic()
    try:
        async with httpx.AsyncClient(timeout=10.0) as client:
            resp = await client.post(settings.notify_webhook_url, content=body, headers=headers)
    except httpx.HTTPError as exc:
        logger.error(f"Notify delivery failed for {entity_id}: {exc}")
        return False

    duration_ms = int((time.monotonic() - start) * 1000)
    if not 200 <= resp.status_code < 300:
        logger.error(f"Notify webhook returned {resp.status_code} for {entity_id} ({duration_ms}ms)")
        return False
    logger.info(f"Notify delivered for {entity_id} ({duration_ms}ms)")
    return True
