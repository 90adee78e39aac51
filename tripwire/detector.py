"""
Request classifier for SQL injection payloads and offensive scanners.

Two independent signals, equal in weight:

    - payload match : SQL injection signatures anywhere in the query string,
                      body (recursively), raw URL or cookie header
    - scanner match : User-Agent containing a known offensive tool name

Inputs come from the network and may be missing or oddly shaped; every
helper here degrades to "no match" instead of raising.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple
from urllib.parse import parse_qsl, unquote_plus

logger = logging.getLogger(__name__)


# Each entry is (family, compiled pattern)
SQL_INJECTION_PATTERNS: Tuple[Tuple[str, "re.Pattern"], ...] = tuple(
    (family, re.compile(pattern, re.IGNORECASE))
    for family, pattern in [
        ("union",          r"union\s+(?:all\s+)?select"),
        ("tautology",      r"'\s*or\s+['\"]?\d"),
        ("tautology",      r"'\s*or\s+'[^']*'\s*=\s*'"),
        ("stacked",        r";\s*drop\s+table"),
        ("stacked",        r";\s*delete\s+from"),
        ("stacked",        r";\s*update\s+\w+\s+set"),
        ("stacked",        r";\s*insert\s+into"),
        ("comment",        r"'\s*;\s*--"),
        ("time_blind",     r"sleep\s*\(\s*\d+\s*\)"),
        ("time_blind",     r"benchmark\s*\("),
        ("time_blind",     r"waitfor\s+delay"),
        ("time_blind",     r"pg_sleep\s*\("),
        ("file_access",    r"load_file\s*\("),
        ("file_access",    r"into\s+(?:out|dump)file"),
        ("schema_enum",    r"information_schema"),
        ("schema_enum",    r"sys\.database"),
        ("encoding",       r"0x[0-9a-f]{8,}"),
        ("encoding",       r"char\s*\(\s*\d+(?:\s*,\s*\d+)*\s*\)"),
    ]
)

SCANNER_UA_PATTERNS: Tuple[str, ...] = (
    "sqlmap",
    "nikto",
    "nmap",
    "masscan",
    "zgrab",
    "dirbuster",
    "gobuster",
    "ffuf",
    "acunetix",
    "nessus",
    "netsparker",
    "wpscan",
    "havij",
    "w3af",
    "nuclei",
    "burp",
)

# Guards against pathological nesting in attacker-supplied JSON
MAX_BODY_DEPTH = 16
MAX_SCAN_LENGTH = 16384


@dataclass
class RequestView:
    """Plain snapshot of the request surfaces the countermeasures look at."""

    method: str = "GET"
    url: str = "/"
    path: str = "/"
    query: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    headers: Dict[str, str] = field(default_factory=dict)
    client_host: Optional[str] = None

    @property
    def user_agent(self) -> str:
        return _header(self.headers, "user-agent")[:200]

    @classmethod
    async def from_request(cls, request, include_body: bool = True) -> "RequestView":
        """Build a view from a Starlette request. Body parsing is best effort."""
        headers = {k.lower(): v for k, v in request.headers.items()}
        query: Dict[str, Any] = {}
        for key, value in request.query_params.multi_items():
            if key in query:
                existing = query[key]
                query[key] = existing + [value] if isinstance(existing, list) else [existing, value]
            else:
                query[key] = value

        body: Any = None
        if include_body and request.method in ("POST", "PUT", "PATCH", "DELETE"):
            body = _parse_body(await request.body(), headers.get("content-type", ""))

        url = request.url.path
        if request.url.query:
            url = f"{url}?{request.url.query}"
        return cls(
            method=request.method,
            url=url,
            path=request.url.path,
            query=query,
            body=body,
            headers=headers,
            client_host=request.client.host if request.client else None,
        )


@dataclass
class RequestClassification:
    sql_injection: bool = False
    scanner: Optional[str] = None
    signals: List[str] = field(default_factory=list)

    @property
    def hostile(self) -> bool:
        return self.sql_injection or self.scanner is not None


def detect_sql_injection(request: Any) -> bool:
    """True if any scanned surface carries a SQL injection signature."""
    return _first_sql_match(request) is not None


def detect_scanner_user_agent(user_agent: Any) -> Optional[str]:
    """Return the offensive tool named in the User-Agent, if any."""
    if not isinstance(user_agent, str) or not user_agent:
        return None
    lowered = user_agent.lower()
    for tool in SCANNER_UA_PATTERNS:
        if tool in lowered:
            return tool
    return None


def classify_request(request: Any) -> RequestClassification:
    result = RequestClassification()
    family = _first_sql_match(request)
    if family is not None:
        result.sql_injection = True
        result.signals.append(f"sql_injection:{family}")
    scanner = detect_scanner_user_agent(_header(_field(request, "headers"), "user-agent"))
    if scanner is not None:
        result.scanner = scanner
        result.signals.append(f"scanner_ua:{scanner}")
    return result


def _first_sql_match(request: Any) -> Optional[str]:
    try:
        for value in _scan_sources(request):
            sample = value[:MAX_SCAN_LENGTH]
            for family, pattern in SQL_INJECTION_PATTERNS:
                if pattern.search(sample):
                    return family
    except Exception as exc:
        logger.warning(f"SQL injection scan aborted on malformed input: {exc}")
    return None


def _scan_sources(request: Any) -> Iterator[str]:
    query = _field(request, "query")
    if isinstance(query, Mapping):
        for value in query.values():
            yield from _strings(value, 0)

    yield from _strings(_field(request, "body"), 0)

    url = _field(request, "url")
    if isinstance(url, str) and url:
        yield url
        decoded = unquote_plus(url)
        if decoded != url:
            yield decoded

    cookie = _header(_field(request, "headers"), "cookie")
    if cookie:
        yield cookie
        decoded = unquote_plus(cookie)
        if decoded != cookie:
            yield decoded


def _strings(value: Any, depth: int) -> Iterator[str]:
    """Flatten a body or query value into the strings worth scanning."""
    if depth > MAX_BODY_DEPTH or value is None:
        return
    if isinstance(value, str):
        yield value
    elif isinstance(value, bytes):
        yield value.decode("utf-8", errors="replace")
    elif isinstance(value, bool):
        return
    elif isinstance(value, (int, float)):
        yield str(value)
    elif isinstance(value, Mapping):
        for key, item in value.items():
            if isinstance(key, str):
                yield key
            yield from _strings(item, depth + 1)
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from _strings(item, depth + 1)


def _field(request: Any, name: str) -> Any:
    if request is None:
        return None
    if isinstance(request, Mapping):
        return request.get(name)
    return getattr(request, name, None)


def _header(headers: Any, name: str) -> str:
    if headers is None:
        return ""
    try:
        value = headers.get(name)
        if value is None:
            value = headers.get(name.title())
    except AttributeError:
        return ""
    return value if isinstance(value, str) else ""


def _parse_body(raw: bytes, content_type: str) -> Any:
    if not raw:
        return None
    text = raw[:MAX_SCAN_LENGTH].decode("utf-8", errors="replace")
    if "json" in content_type:
        try:
            return json.loads(text)
        except (ValueError, RecursionError):
            return text
    if "x-www-form-urlencoded" in content_type:
        return dict(parse_qsl(text, keep_blank_values=True))
    return text
