"""Tests for the SQL backfire responder."""

import json

import pytest

from tripwire.backfire import (
    BACKFIRE_HEADERS,
    backfire_response,
    generate_backfire_body,
    handle_sql_injection_backfire,
)
from tripwire.detector import RequestView
from tripwire.incidents import list_incidents
from tripwire.models import SecuritySettings
from tripwire.threat import get_threat_score

HASHED = "b" * 64


def test_four_destructive_headers():
    assert len(BACKFIRE_HEADERS) == 4
    assert "DROP TABLE" in BACKFIRE_HEADERS["X-DB-Status"]
    response = backfire_response()
    for name, value in BACKFIRE_HEADERS.items():
        assert response.headers[name] == value


def test_body_schema_is_stable():
    keys = {frozenset(generate_backfire_body()) for _ in range(20)}
    assert keys == {frozenset({"error", "message", "details", "query", "stack", "debug"})}
    body = generate_backfire_body()
    assert body["error"] == "Database error"
    assert len(body["details"]) == 3
    assert set(body["debug"]) == {"last_query", "db_version", "tables"}


def test_body_content_varies():
    messages = {generate_backfire_body()["message"] for _ in range(30)}
    assert len(messages) > 1


@pytest.mark.asyncio
async def test_disabled_does_nothing(store):
    request = RequestView(headers={"user-agent": "sqlmap/1.6"})
    assert await handle_sql_injection_backfire(request, SecuritySettings(), store, HASHED) is None
    assert await list_incidents(store, HASHED) == []


@pytest.mark.asyncio
async def test_scanner_user_agent_alone_triggers(store, all_enabled):
    request = RequestView(headers={"user-agent": "sqlmap/1.6#stable"})
    response = await handle_sql_injection_backfire(request, all_enabled, store, HASHED)

    assert response is not None
    assert response.status_code == 500
    assert json.loads(response.body)["error"] == "Database error"
    assert response.headers["X-DB-Status"] == BACKFIRE_HEADERS["X-DB-Status"]
    assert (await get_threat_score(store, HASHED)).score == 4
    incidents = await list_incidents(store, HASHED)
    assert incidents[0]["type"] == "sql_injection_backfire"
    assert incidents[0]["signals"] == ["scanner_ua:sqlmap"]


@pytest.mark.asyncio
async def test_payload_alone_triggers(store, all_enabled):
    request = RequestView(url="/items?id=1", query={"id": "1 UNION SELECT password FROM users"})
    response = await handle_sql_injection_backfire(request, all_enabled, store, HASHED)
    assert response.status_code == 500


@pytest.mark.asyncio
async def test_benign_request_falls_through(store, all_enabled):
    request = RequestView(query={"q": "weekend plans"},
                          headers={"user-agent": "Mozilla/5.0 Firefox/121.0"})
    assert await handle_sql_injection_backfire(request, all_enabled, store, HASHED) is None
    assert await list_incidents(store, HASHED) == []


@pytest.mark.asyncio
async def test_scanner_rule_off(store):
    settings = SecuritySettings(sqlBackfireEnabled=True, sqlBackfireOnScannerDetection=False)
    request = RequestView(headers={"user-agent": "sqlmap/1.6"})
    assert await handle_sql_injection_backfire(request, settings, store, HASHED) is None


@pytest.mark.asyncio
async def test_store_outage_still_backfires(failing_store, all_enabled):
    request = RequestView(headers={"user-agent": "nikto/2.5"})
    response = await handle_sql_injection_backfire(request, all_enabled, failing_store, HASHED)
    assert response.status_code == 500
