"""Threat score ledger.

Keeps a cumulative, advisory score per hashed IP and buckets it into
severity levels. Scores only grow through increment_threat_score and decay
by key expiry. Reaching BLOCK writes an auto-block record.
"""

import json
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from tripwire.models import SecuritySettings, ThreatScoreRecord
from tripwire.ringlog import BoundedLog
from tripwire.store import KVStore, StoreError

logger = logging.getLogger(__name__)

THREAT_SCORE_PREFIX = "tripwire:threat:"
THREAT_SCORE_TTL = 3600  # 1 hour
BLOCK_PREFIX = "tripwire:blocked:"
BLOCK_TTL = 604800  # 7 days
BLOCK_INDEX_KEY = "tripwire:blocked-index"
BLOCK_INDEX_CAPACITY = 1000
FLAGGED_PREFIX = "tripwire:flagged:"
FLAGGED_TTL = 604800

THREAT_LEVELS: Dict[str, int] = {
    "CLEAN": 0,
    "WARN": 3,
    "TARPIT": 7,
    "BLOCK": 12,
}


class ThreatReason(Enum):
    """Closed set of scoring reasons. Value is (reason name, points)."""

    ROBOTS_VIOLATION = ("robots_violation", 3)
    HONEYTOKEN_ACCESS = ("honeytoken_access", 5)
    SUSPICIOUS_UA = ("suspicious_ua", 4)
    MISSING_BROWSER_HEADERS = ("missing_browser_headers", 2)
    GENERIC_ACCEPT = ("generic_accept", 1)
    RATE_LIMIT_EXCEEDED = ("rate_limit_exceeded", 2)
    SQL_INJECTION = ("sql_injection", 4)
    CANARY_DOCUMENT_OPENED = ("canary_document_opened", 5)

    @property
    def reason(self) -> str:
        return self.value[0]

    @property
    def points(self) -> int:
        return self.value[1]


THREAT_REASONS: Dict[str, ThreatReason] = {member.name: member for member in ThreatReason}


def effective_thresholds(settings: Optional[SecuritySettings] = None) -> Dict[str, int]:
    if settings is None:
        return dict(THREAT_LEVELS)
    return {
        "CLEAN": 0,
        "WARN": settings.warnThreshold,
        "TARPIT": settings.tarpitThreshold,
        "BLOCK": settings.autoBlockThreshold,
    }


def classify_threat_level(score: int, thresholds: Optional[Dict[str, int]] = None) -> str:
    """Highest band whose threshold the score reaches."""
    bands = thresholds or THREAT_LEVELS
    for level in ("BLOCK", "TARPIT", "WARN"):
        if score >= bands[level]:
            return level
    return "CLEAN"


async def increment_threat_score(
    store: KVStore,
    key: str,
    reason: ThreatReason,
    settings: Optional[SecuritySettings] = None,
) -> ThreatScoreRecord:
    """Add reason.points to the score for key and return the new record.

    Increments use the store's atomic incrby; concurrent hits may interleave
    but none are lost. Store failures yield a CLEAN record.
    """
    if not isinstance(reason, ThreatReason):
        raise TypeError("reason must be a ThreatReason member")
    if settings is not None and not settings.threatScoringEnabled:
        return ThreatScoreRecord(key=key, score=0, level="CLEAN", reason=reason.reason)

    try:
        score_key = f"{THREAT_SCORE_PREFIX}{key}"
        score = await store.incrby(score_key, reason.points)
        await store.expire(score_key, THREAT_SCORE_TTL)
        level = classify_threat_level(score, effective_thresholds(settings))

        if level == "BLOCK" and (settings is None or settings.hardBlockEnabled):
            await store.set_json(
                f"{BLOCK_PREFIX}{key}",
                {
                    "reason": reason.reason,
                    "score": score,
                    "blockedAt": datetime.now(timezone.utc).isoformat(),
                    "autoBlocked": True,
                },
                ex=BLOCK_TTL,
            )
            await BoundedLog(store, BLOCK_INDEX_KEY, BLOCK_INDEX_CAPACITY).append(key)
            logger.error(f"[AUTO BLOCK] {json.dumps({'hashedIp': key, 'reason': reason.reason, 'score': score})}")

        return ThreatScoreRecord(key=key, score=score, level=level, reason=reason.reason)
    except Exception as exc:
        logger.error(f"[{key[:8]}] Threat score update failed: {exc}")
        return ThreatScoreRecord(key=key, score=0, level="CLEAN", reason=reason.reason)


async def get_threat_score(
    store: KVStore,
    key: str,
    settings: Optional[SecuritySettings] = None,
) -> ThreatScoreRecord:
    try:
        raw = await store.get(f"{THREAT_SCORE_PREFIX}{key}")
        score = int(raw) if raw is not None else 0
    except Exception as exc:
        logger.error(f"[{key[:8]}] Threat score read failed: {exc}")
        score = 0
    return ThreatScoreRecord(
        key=key, score=score, level=classify_threat_level(score, effective_thresholds(settings))
    )


async def flag_attacker(store: KVStore, key: str) -> None:
    """Mark an identity as hostile for selective countermeasures."""
    await store.set(f"{FLAGGED_PREFIX}{key}", "1", ex=FLAGGED_TTL)


async def is_flagged(store: KVStore, key: str) -> bool:
    return await store.exists(f"{FLAGGED_PREFIX}{key}")


async def list_blocked_ips(store: KVStore) -> List[Dict[str, Any]]:
    """Live auto-block records, most recently blocked first.

    The index may repeat an identity or name an expired block; both are
    skipped here. Raises StoreError if the store is unreachable.
    """
    seen = set()
    blocked = []
    for key in await BoundedLog(store, BLOCK_INDEX_KEY, BLOCK_INDEX_CAPACITY).entries():
        if not isinstance(key, str) or key in seen:
            continue
        seen.add(key)
        try:
            record = await store.get_json(f"{BLOCK_PREFIX}{key}")
        except StoreError as exc:
            logger.warning(f"[{key[:8]}] Unreadable block record skipped: {exc}")
            continue
        if isinstance(record, dict):
            blocked.append({"hashedIp": key, **record})
    return blocked


async def unblock_ip(store: KVStore, key: str) -> None:
    await store.delete(f"{BLOCK_PREFIX}{key}")
    logger.warning(f"[HARD BLOCK REMOVED] {json.dumps({'hashedIp': key})}")
