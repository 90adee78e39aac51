"""Per-attacker profiles: incident timeline, attack type and User-Agent
counts, threat score history and forensic data from canary callbacks.

One JSON document per hashed IP, rewritten on every incident. Lists inside
it are capped so a persistent attacker cannot grow it without bound.
"""

import json
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from tripwire.store import KVStore

logger = logging.getLogger(__name__)

PROFILE_PREFIX = "tripwire:profile:"
PROFILE_TTL = 2592000  # 30 days
MAX_INCIDENTS = 50
MAX_SCORE_HISTORY = 100
MAX_FORENSIC_ENTRIES = 50
MAX_UA_KEY = 100

# Substring -> category, first match wins
UA_CATEGORIES = (
    (("nikto", "sqlmap", "wfuzz"), "attack_tool"),
    (("bot", "crawler", "spider"), "bot"),
    (("curl", "wget", "python"), "script"),
    (("postman", "insomnia"), "api_client"),
    (("chrome", "firefox", "safari"), "browser"),
)


def _new_profile(hashed_ip: str, timestamp: str) -> Dict[str, Any]:
    return {
        "hashedIp": hashed_ip,
        "firstSeen": timestamp,
        "lastSeen": timestamp,
        "totalIncidents": 0,
        "attackTypes": {},
        "userAgents": {},
        "threatScoreHistory": [],
        "incidents": [],
        "forensicData": [],
    }


async def _load_profile(store: KVStore, hashed_ip: str, timestamp: str) -> Dict[str, Any]:
    stored = await store.get_json(f"{PROFILE_PREFIX}{hashed_ip}")
    if not isinstance(stored, dict):
        return _new_profile(hashed_ip, timestamp)
    profile = _new_profile(hashed_ip, timestamp)
    profile.update(stored)
    return profile


async def _save_profile(store: KVStore, profile: Dict[str, Any]) -> None:
    await store.set_json(f"{PROFILE_PREFIX}{profile['hashedIp']}", profile, ex=PROFILE_TTL)


async def record_incident(store: KVStore, hashed_ip: str, details: Dict[str, Any]) -> None:
    """Fold an incident into the attacker's profile. Failures are logged, never raised.

    details should carry ``type``; ``userAgent``, ``threatScore`` and
    ``threatLevel`` are aggregated when present.
    """
    entry = dict(details)
    entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    attack_type = entry.get("type") or "unknown"
    try:
        profile = await _load_profile(store, hashed_ip, entry["timestamp"])
        profile["lastSeen"] = entry["timestamp"]
        profile["totalIncidents"] = int(profile.get("totalIncidents") or 0) + 1

        attack_types = profile["attackTypes"]
        attack_types[attack_type] = attack_types.get(attack_type, 0) + 1

        ua_key = (entry.get("userAgent") or "unknown")[:MAX_UA_KEY]
        user_agents = profile["userAgents"]
        user_agents[ua_key] = user_agents.get(ua_key, 0) + 1

        if entry.get("threatScore") is not None:
            profile["threatScoreHistory"] = (profile["threatScoreHistory"] + [{
                "score": entry["threatScore"],
                "level": entry.get("threatLevel"),
                "timestamp": entry["timestamp"],
                "reason": attack_type,
            }])[-MAX_SCORE_HISTORY:]

        profile["incidents"] = (profile["incidents"] + [entry])[-MAX_INCIDENTS:]
        await _save_profile(store, profile)
    except Exception as exc:
        logger.error(f"[{hashed_ip[:8]}] Incident recording failed: {exc}")
        return
    logger.info(f"INCIDENT_RECORD: {json.dumps({'hashedIp': hashed_ip[:12], **entry}, default=str)}")


async def add_forensic_data(store: KVStore, hashed_ip: str, forensic: Dict[str, Any]) -> None:
    """Attach canary callback evidence to the profile. Failures are logged, never raised."""
    entry = dict(forensic)
    entry.setdefault("timestamp", datetime.now(timezone.utc).isoformat())
    try:
        profile = await _load_profile(store, hashed_ip, entry["timestamp"])
        profile["forensicData"] = (profile["forensicData"] + [entry])[-MAX_FORENSIC_ENTRIES:]
        await _save_profile(store, profile)
    except Exception as exc:
        logger.error(f"[{hashed_ip[:8]}] Forensic data recording failed: {exc}")


async def get_profile(store: KVStore, hashed_ip: str) -> Optional[Dict[str, Any]]:
    """Stored profile plus derived behaviour patterns and UA analysis, or None.

    Raises StoreError if the store is unreachable.
    """
    stored = await store.get_json(f"{PROFILE_PREFIX}{hashed_ip}")
    if not isinstance(stored, dict):
        return None
    profile = _new_profile(hashed_ip, stored.get("firstSeen") or "")
    profile.update(stored)
    profile["behavioralPatterns"] = analyze_behavioral_patterns(profile)
    profile["userAgentAnalysis"] = analyze_user_agents(profile)
    return profile


async def delete_profile(store: KVStore, hashed_ip: str) -> None:
    await store.delete(f"{PROFILE_PREFIX}{hashed_ip}")


async def list_incidents(store: KVStore, hashed_ip: str) -> List[Dict[str, Any]]:
    """Incident timeline for one attacker, newest first."""
    stored = await store.get_json(f"{PROFILE_PREFIX}{hashed_ip}")
    if not isinstance(stored, dict):
        return []
    return list(reversed(stored.get("incidents") or []))


def analyze_behavioral_patterns(profile: Dict[str, Any]) -> List[Dict[str, Any]]:
    patterns = []

    history = profile.get("threatScoreHistory") or []
    if len(history) >= 2:
        delta = (history[-1].get("score") or 0) - (history[0].get("score") or 0)
        hours = _hours_between(profile.get("firstSeen"), profile.get("lastSeen"))
        if hours is not None and hours < 1 and delta >= 5:
            patterns.append({
                "type": "rapid_escalation",
                "severity": "high",
                "description": "Threat score increased rapidly within one hour",
                "details": {"scoreDelta": delta, "timeHours": hours},
            })

    attack_types = list(profile.get("attackTypes") or {})
    if len(attack_types) >= 3:
        patterns.append({
            "type": "diverse_attacks",
            "severity": "high",
            "description": f"Using {len(attack_types)} different attack types",
            "details": {"attackTypes": attack_types},
        })

    ua_count = len(profile.get("userAgents") or {})
    if ua_count >= 3:
        patterns.append({
            "type": "ua_rotation",
            "severity": "medium",
            "description": f"Rotating between {ua_count} different User-Agents",
            "details": {"userAgentCount": ua_count},
        })

    total = profile.get("totalIncidents") or 0
    if total >= 10:
        patterns.append({
            "type": "persistent",
            "severity": "high",
            "description": f"{total} incidents recorded",
            "details": {"totalIncidents": total},
        })

    recent = (profile.get("incidents") or [])[-5:]
    if len(recent) >= 5:
        stamps = [_parse_time(i.get("timestamp")) for i in recent]
        if all(stamps):
            gaps = [(b - a).total_seconds() * 1000 for a, b in zip(stamps, stamps[1:])]
            average = sum(gaps) / len(gaps)
            if average < 5000:
                patterns.append({
                    "type": "automated_scan",
                    "severity": "high",
                    "description": "Automated scanning pattern detected (rapid requests)",
                    "details": {"avgIntervalMs": round(average)},
                })

    return patterns


def analyze_user_agents(profile: Dict[str, Any]) -> Dict[str, Any]:
    counts = profile.get("userAgents") or {}
    if not counts:
        return {"total": 0, "unique": 0, "userAgents": [], "topUserAgent": None, "diversity": "0.000"}

    total = sum(counts.values())
    ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)
    classified = [
        {"userAgent": ua, "count": count, "category": _ua_category(ua)}
        for ua, count in ranked
    ]
    return {
        "total": total,
        "unique": len(classified),
        "userAgents": classified,
        "topUserAgent": classified[0],
        "diversity": f"{len(classified) / total:.3f}",
    }


def _ua_category(user_agent: str) -> str:
    lowered = user_agent.lower()
    for needles, category in UA_CATEGORIES:
        if any(needle in lowered for needle in needles):
            return category
    return "unknown"


def _parse_time(value: Any) -> Optional[datetime]:
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _hours_between(start: Any, end: Any) -> Optional[float]:
    first, last = _parse_time(start), _parse_time(end)
    if first is None or last is None:
        return None
    return (last - first).total_seconds() / 3600
