"""Tests for attacker profiles."""

import pytest

from tripwire.incidents import (
    MAX_FORENSIC_ENTRIES,
    MAX_INCIDENTS,
    PROFILE_PREFIX,
    add_forensic_data,
    analyze_behavioral_patterns,
    analyze_user_agents,
    delete_profile,
    get_profile,
    list_incidents,
    record_incident,
)

ATTACKER = "5" * 64


def stamp(second):
    return f"2024-05-01T12:00:{second:02d}+00:00"


class TestRecordIncident:

    @pytest.mark.asyncio
    async def test_aggregates_counts(self, store):
        await record_incident(store, ATTACKER, {"type": "honeytoken", "userAgent": "curl/8.4",
                                                "timestamp": stamp(0)})
        await record_incident(store, ATTACKER, {"type": "honeytoken", "userAgent": "curl/8.4",
                                                "timestamp": stamp(30)})
        await record_incident(store, ATTACKER, {"type": "sql_injection_backfire", "timestamp": stamp(45)})

        profile = await get_profile(store, ATTACKER)
        assert profile["totalIncidents"] == 3
        assert profile["attackTypes"] == {"honeytoken": 2, "sql_injection_backfire": 1}
        assert profile["userAgents"] == {"curl/8.4": 2, "unknown": 1}
        assert profile["firstSeen"] == stamp(0)
        assert profile["lastSeen"] == stamp(45)

    @pytest.mark.asyncio
    async def test_score_history_only_when_scored(self, store):
        await record_incident(store, ATTACKER, {"type": "log_poisoning_applied"})
        await record_incident(store, ATTACKER, {"type": "honeytoken", "threatScore": 5, "threatLevel": "WARN"})
        history = (await get_profile(store, ATTACKER))["threatScoreHistory"]
        assert history == [{"score": 5, "level": "WARN", "timestamp": history[0]["timestamp"],
                            "reason": "honeytoken"}]

    @pytest.mark.asyncio
    async def test_timeline_is_capped_and_newest_first(self, store):
        for n in range(MAX_INCIDENTS + 10):
            await record_incident(store, ATTACKER, {"type": "honeytoken", "n": n})
        incidents = await list_incidents(store, ATTACKER)
        assert len(incidents) == MAX_INCIDENTS
        assert incidents[0]["n"] == MAX_INCIDENTS + 9
        assert (await get_profile(store, ATTACKER))["totalIncidents"] == MAX_INCIDENTS + 10

    @pytest.mark.asyncio
    async def test_profile_expires(self, store):
        await record_incident(store, ATTACKER, {"type": "honeytoken"})
        assert await store.ttl(f"{PROFILE_PREFIX}{ATTACKER}") > 0

    @pytest.mark.asyncio
    async def test_store_outage_is_swallowed(self, failing_store):
        await record_incident(failing_store, ATTACKER, {"type": "honeytoken"})
        await add_forensic_data(failing_store, ATTACKER, {"token": "0" * 32})
        assert failing_store.calls > 0


class TestForensicData:

    @pytest.mark.asyncio
    async def test_creates_profile_when_missing(self, store):
        await add_forensic_data(store, ATTACKER, {"token": "0" * 32, "event": "js"})
        profile = await get_profile(store, ATTACKER)
        assert profile["totalIncidents"] == 0
        assert profile["forensicData"][0]["event"] == "js"

    @pytest.mark.asyncio
    async def test_capped(self, store):
        for n in range(MAX_FORENSIC_ENTRIES + 5):
            await add_forensic_data(store, ATTACKER, {"n": n})
        forensic = (await get_profile(store, ATTACKER))["forensicData"]
        assert len(forensic) == MAX_FORENSIC_ENTRIES
        assert forensic[-1]["n"] == MAX_FORENSIC_ENTRIES + 4


class TestReadBack:

    @pytest.mark.asyncio
    async def test_unknown_profile(self, store):
        assert await get_profile(store, ATTACKER) is None
        assert await list_incidents(store, ATTACKER) == []

    @pytest.mark.asyncio
    async def test_delete(self, store):
        await record_incident(store, ATTACKER, {"type": "honeytoken"})
        await delete_profile(store, ATTACKER)
        assert await get_profile(store, ATTACKER) is None


class TestPatterns:

    def test_rapid_automated_diverse_attacker(self):
        incidents = [{"type": t, "timestamp": stamp(i)}
                     for i, t in enumerate(["honeytoken", "canary_document_served", "sql_injection_backfire",
                                            "honeytoken", "honeytoken"])]
        profile = {
            "firstSeen": stamp(0),
            "lastSeen": stamp(4),
            "totalIncidents": 12,
            "attackTypes": {"honeytoken": 3, "canary_document_served": 1, "sql_injection_backfire": 1},
            "userAgents": {"curl/8.4": 2, "sqlmap/1.6": 2, "Mozilla/5.0 Firefox/121.0": 1},
            "threatScoreHistory": [{"score": 5}, {"score": 14}],
            "incidents": incidents,
        }
        found = {p["type"] for p in analyze_behavioral_patterns(profile)}
        assert found == {"rapid_escalation", "diverse_attacks", "ua_rotation", "persistent", "automated_scan"}

    def test_quiet_profile(self):
        profile = {"firstSeen": stamp(0), "lastSeen": stamp(0), "totalIncidents": 1,
                   "attackTypes": {"honeytoken": 1}, "userAgents": {"curl/8.4": 1},
                   "threatScoreHistory": [{"score": 5}], "incidents": [{"timestamp": stamp(0)}]}
        assert analyze_behavioral_patterns(profile) == []

    def test_user_agent_analysis(self):
        analysis = analyze_user_agents({"userAgents": {"sqlmap/1.6": 3, "curl/8.4": 1}})
        assert analysis["total"] == 4
        assert analysis["unique"] == 2
        assert analysis["topUserAgent"] == {"userAgent": "sqlmap/1.6", "count": 3, "category": "attack_tool"}
        assert analysis["userAgents"][1]["category"] == "script"
        assert analysis["diversity"] == "0.500"

    def test_user_agent_analysis_empty(self):
        assert analyze_user_agents({})["total"] == 0
