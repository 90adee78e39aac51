"""Builds and delivers security alerts to a webhook (Discord-compatible).

Alerts are deduplicated per hashed IP and event key for ALERT_DEDUP_TTL
seconds. Delivery runs in a background thread with exponential backoff so
the request that triggered the alert is never held up.
"""

import os
import json
import logging
import threading
import time
import requests
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from dotenv import load_dotenv

from tripwire.store import KVStore

load_dotenv()

logger = logging.getLogger(__name__)

ALERT_WEBHOOK_URL: str = os.getenv("ALERT_WEBHOOK_URL", "")
SITE_URL: str = os.getenv("SITE_URL", "localhost")

ALERT_DEDUP_PREFIX = "tripwire:alert-dedup:"
ALERT_DEDUP_TTL = 300  # one alert per IP and event key per 5 minutes

# Retry configuration (background thread)
MAX_RETRIES: int = 3
RETRY_DELAYS: tuple = (1, 2, 4)

SEVERITY_COLORS = {
    "critical": 0xFF0000,
    "high": 0xFF6600,
}
DEFAULT_COLOR = 0xFFCC00


def build_alert_payload(event: Dict[str, Any]) -> dict:
    """Render an alert event as a webhook embed."""
    hashed_ip = event.get("hashedIp") or ""
    user_agent = event.get("userAgent") or ""
    score = event.get("threatScore")
    return {
        "username": "Tripwire IDS",
        "embeds": [{
            "title": f"SECURITY ALERT - {event.get('type') or 'THREAT DETECTED'}",
            "color": SEVERITY_COLORS.get(event.get("severity"), DEFAULT_COLOR),
            "fields": [
                {"name": "Event Type", "value": event.get("key") or "-", "inline": True},
                {"name": "Document", "value": event.get("documentPath") or "-", "inline": True},
                {"name": "IP Hash", "value": f"`{hashed_ip[:12]}...`" if hashed_ip else "-", "inline": True},
                {"name": "User Agent", "value": f"`{user_agent[:100]}`" if user_agent else "-", "inline": False},
                {"name": "Threat Score",
                 "value": f"{score} ({event.get('threatLevel') or '?'})" if score else "-",
                 "inline": True},
                {"name": "Site", "value": SITE_URL, "inline": True},
            ],
            "timestamp": event.get("timestamp") or datetime.now(timezone.utc).isoformat(),
            "footer": {"text": "Tripwire IDS - Active Defense"},
        }],
    }


async def send_security_alert(store: KVStore, event: Dict[str, Any]) -> bool:
    """Queue an alert unless an identical one went out recently.

    Returns True if a delivery was started. Never raises.
    """
    dedup_key = f"{ALERT_DEDUP_PREFIX}{event.get('hashedIp')}:{event.get('key')}"
    try:
        if await store.exists(dedup_key):
            return False
        await store.set(dedup_key, "1", ex=ALERT_DEDUP_TTL)
    except Exception as exc:
        logger.warning(f"Alert dedup check failed, sending anyway: {exc}")

    if not ALERT_WEBHOOK_URL:
        logger.info(f"ALERT (no webhook configured): {json.dumps(event, default=str)}")
        return False

    send_alert_async(build_alert_payload(event))
    return True


def send_alert_async(payload: dict) -> None:
    thread = threading.Thread(target=_send_with_retry, args=(payload,), daemon=True)
    thread.start()


def _send_with_retry(payload: dict) -> bool:
    """POST with exponential backoff (1s, 2s, 4s)."""
    for attempt in range(MAX_RETRIES):
        if _do_send(payload):
            return True
        if attempt < MAX_RETRIES - 1:
            delay = RETRY_DELAYS[attempt]
            logger.info(f"Alert retry {attempt + 1} in {delay}s")
            time.sleep(delay)

    logger.error(f"Alert delivery failed after {MAX_RETRIES} attempts")
    return False


def _do_send(payload: dict, url: Optional[str] = None) -> bool:
    """Single webhook POST. Returns True on 2xx."""
    target = url or ALERT_WEBHOOK_URL
    try:
        response = requests.post(
            target,
            json=payload,
            timeout=10,
            headers={"Content-Type": "application/json"},
        )
    except requests.exceptions.Timeout:
        logger.error("Alert webhook timed out")
        return False
    except requests.exceptions.RequestException as exc:
        logger.error(f"Alert webhook network error: {exc}")
        return False

    if 200 <= response.status_code < 300:
        logger.info(f"Alert accepted ({response.status_code})")
        return True
    logger.warning(f"Alert rejected: {response.status_code} {response.text[:200]}")
    return False
