"""Honeytokens: decoy store keys that real code never touches.

Any read of one is an intrusion indicator. The alarm is silent; the caller
gets a plausible error (or a SQL backfire when that rule is enabled).
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Optional

from fastapi.responses import JSONResponse

from tripwire.backfire import backfire_response
from tripwire.incidents import record_incident
from tripwire.models import SecuritySettings
from tripwire.ringlog import BoundedLog
from tripwire.store import KVStore
from tripwire.threat import ThreatReason, flag_attacker, increment_threat_score

logger = logging.getLogger(__name__)

HONEYTOKEN_ALERTS_KEY = "tripwire:honeytoken-alerts"

HONEYTOKEN_KEYS = (
    "admin_backup",
    "admin-backup-hash",
    "db-credentials",
    "api-master-key",
    "backup-admin-password",
)

DECOY_VALUES = {
    "admin_backup": "b2a4f8e1c3d5a7b9e0f2c4d6a8b0e1f3c5d7a9b1e3f5c7d9a1b3e5f7c9d1a3",
    "admin-backup-hash": "9f86d081884c7d659a2feaa0c55ad015a3bf4f1b2b0b822cd15d6c15b0f00a08",
    "db-credentials": '{"host":"internal-db.prod","user":"root","pass":"s3cret-fake"}',
    "api-master-key": "sk_live_fake_4eC39HqLyjWDarjtT1zdp7dc",
    "backup-admin-password": "e3b0c44298fc1c149afbf4c8996fb92427ae41e4649b934ca495991b7852b855",
}


def is_honeytoken(key: Any) -> bool:
    return isinstance(key, str) and key.lower() in HONEYTOKEN_KEYS


async def trigger_honeytoken_alarm(
    request,
    key: str,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: str,
) -> Optional[JSONResponse]:
    """Record the access and flag the requester.

    Returns a backfire response when backfire-on-honeytoken is enabled,
    otherwise None so the caller answers with its ordinary denial.
    """
    entry = {
        "key": key,
        "method": getattr(request, "method", None),
        "hashedIp": hashed_ip,
        "userAgent": getattr(request, "user_agent", ""),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    logger.error(f"[HONEYTOKEN ALERT] {json.dumps(entry)}")

    try:
        await BoundedLog(store, HONEYTOKEN_ALERTS_KEY, settings.maxAlertsStored).append(entry)
        await flag_attacker(store, hashed_ip)
    except Exception as exc:
        logger.error(f"[{hashed_ip[:8]}] Honeytoken alarm persistence failed: {exc}")

    threat = await increment_threat_score(store, hashed_ip, ThreatReason.HONEYTOKEN_ACCESS, settings)
    await record_incident(store, hashed_ip, {
        **entry,
        "type": "honeytoken",
        "threatScore": threat.score,
        "threatLevel": threat.level,
    })

    if settings.sqlBackfireEnabled and settings.sqlBackfireOnHoneytokenAccess:
        return backfire_response()
    return None


async def seed_honeytokens(store: KVStore) -> int:
    """Write decoy values for keys that do not exist yet. Returns how many were seeded."""
    seeded = 0
    for key, value in DECOY_VALUES.items():
        try:
            if await store.get(key) is None:
                await store.set(key, value)
                seeded += 1
        except Exception as exc:
            logger.warning(f"Seeding honeytoken {key} failed: {exc}")
    return seeded


async def list_honeytoken_alerts(store: KVStore, settings: SecuritySettings) -> list:
    return await BoundedLog(store, HONEYTOKEN_ALERTS_KEY, settings.maxAlertsStored).entries()


async def clear_honeytoken_alerts(store: KVStore) -> None:
    await store.delete(HONEYTOKEN_ALERTS_KEY)
    logger.info("Honeytoken alerts cleared")
