"""Tests for the request classifier (SQL injection + scanner User-Agent)."""

from types import SimpleNamespace

import pytest

from tripwire.detector import (
    RequestView,
    SCANNER_UA_PATTERNS,
    _parse_body,
    classify_request,
    detect_scanner_user_agent,
    detect_sql_injection,
)


def make_request(query=None, body=None, url="/", headers=None):
    return SimpleNamespace(query=query, body=body, url=url, headers=headers or {})


# =============================================================================
# Signature families
# =============================================================================

class TestSqlInjectionSignatures:

    @pytest.mark.parametrize("payload", [
        "1 UNION SELECT username, password FROM users",
        "1 union all select null,null--",
        "admin' OR '1'='1",
        "x' or 1=1 --",
        "1; DROP TABLE users",
        "1; DELETE FROM accounts",
        "1; UPDATE users SET role='admin'",
        "1 AND SLEEP(5)",
        "1 AND BENCHMARK(1000000,MD5(1))",
        "1'; WAITFOR DELAY '0:0:5'--",
        "SELECT table_name FROM information_schema.tables",
    ])
    def test_query_payloads_detected(self, payload):
        assert detect_sql_injection(make_request(query={"id": payload})) is True

    def test_case_insensitive(self):
        assert detect_sql_injection(make_request(query={"q": "1 uNiOn SeLeCt 1"})) is True

    def test_body_field_detected(self):
        request = make_request(body={"username": "admin' OR '1'='1", "password": "x"})
        assert detect_sql_injection(request) is True

    def test_nested_body_field_detected(self):
        request = make_request(body={"filters": {"name": ["ok", "1; DROP TABLE users"]}})
        assert detect_sql_injection(request) is True

    def test_path_embedded_payload(self):
        request = make_request(url="/products/1%20UNION%20SELECT%20null,null")
        assert detect_sql_injection(request) is True

    def test_raw_path_payload(self):
        assert detect_sql_injection(make_request(url="/search?q=sleep(10)")) is True

    def test_cookie_embedded_payload(self):
        request = make_request(headers={"cookie": "session=abc' OR 1=1 --"})
        assert detect_sql_injection(request) is True

    def test_mapping_request_supported(self):
        request = {"query": {"id": "1 UNION SELECT 1"}, "headers": {}}
        assert detect_sql_injection(request) is True


# =============================================================================
# Benign and malformed input
# =============================================================================

class TestNoFalsePositives:

    @pytest.mark.parametrize("text", [
        "best coffee shops in berlin",
        "Tom's order arrived today",
        "Please update my delivery address",
        "select a date for the concert",
        "union station tickets",
    ])
    def test_ordinary_text(self, text):
        request = make_request(query={"q": text}, body={"message": text}, url="/search")
        assert detect_sql_injection(request) is False

    def test_numbers_and_booleans(self):
        assert detect_sql_injection(make_request(body={"age": 42, "subscribed": True})) is False

    @pytest.mark.parametrize("request_obj", [
        None,
        SimpleNamespace(),
        SimpleNamespace(query=None, body=None, url=None, headers=None),
        SimpleNamespace(query="not-a-dict", body=12345, url=42, headers=["cookie"]),
        SimpleNamespace(query={"a": None}, body=object(), url="", headers={"cookie": None}),
    ])
    def test_absent_or_malformed_never_raises(self, request_obj):
        assert detect_sql_injection(request_obj) is False

    def test_recursion_stops_at_depth_limit(self):
        body = current = {}
        for _ in range(100):
            current["n"] = {}
            current = current["n"]
        current["x"] = "1 UNION SELECT 1"
        assert detect_sql_injection(make_request(body=body)) is False


# =============================================================================
# Scanner fingerprinting
# =============================================================================

class TestScannerUserAgent:

    def test_sqlmap(self):
        assert detect_scanner_user_agent("sqlmap/1.6#stable (https://sqlmap.org)") == "sqlmap"

    @pytest.mark.parametrize("tool", SCANNER_UA_PATTERNS)
    def test_every_listed_tool(self, tool):
        assert detect_scanner_user_agent(f"Mozilla/5.0 ({tool.upper()} scan)") == tool

    @pytest.mark.parametrize("ua", [
        "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 Chrome/120.0 Safari/537.36",
        "",
        None,
        123,
    ])
    def test_normal_or_missing(self, ua):
        assert detect_scanner_user_agent(ua) is None

    def test_scanner_alone_is_hostile(self):
        result = classify_request(make_request(headers={"user-agent": "sqlmap/1.6"}))
        assert result.hostile is True
        assert result.sql_injection is False
        assert result.scanner == "sqlmap"
        assert result.signals == ["scanner_ua:sqlmap"]

    def test_payload_alone_is_hostile(self):
        result = classify_request(make_request(query={"id": "1 UNION SELECT 1"}))
        assert result.hostile is True
        assert result.scanner is None
        assert result.signals == ["sql_injection:union"]

    def test_benign_request(self):
        result = classify_request(make_request(query={"q": "hello"}))
        assert result.hostile is False
        assert result.signals == []


class TestRequestView:

    def test_user_agent_truncated(self):
        view = RequestView(headers={"user-agent": "a" * 500})
        assert len(view.user_agent) == 200

    def test_defaults_are_benign(self):
        assert detect_sql_injection(RequestView()) is False


class TestBodyParsing:

    def test_deeply_nested_json_kept_as_text(self):
        raw = b"[" * 5000 + b"]" * 5000
        assert _parse_body(raw, "application/json") == raw.decode()

    def test_broken_json_kept_as_text(self):
        assert _parse_body(b'{"a": ', "application/json") == '{"a": '

    def test_form_body(self):
        assert _parse_body(b"user=bob&note=", "application/x-www-form-urlencoded") == {"user": "bob", "note": ""}

    def test_nested_text_body_is_still_scanned(self):
        raw = b"[" * 3000 + b'"1 UNION SELECT 1"' + b"]" * 3000
        request = make_request(body=_parse_body(raw, "application/json"))
        assert detect_sql_injection(request) is True
