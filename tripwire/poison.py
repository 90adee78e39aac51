"""Log poisoning for flagged attackers.

Error responses sent to an identity already flagged as hostile carry fake
infrastructure detail: invented internal routes, bogus bearer tokens,
misleading server banners and terminal escape sequences. Nobody who has not
been flagged ever sees any of it.
"""

import logging
import random
import secrets
from datetime import datetime, timezone
from typing import Optional

from fastapi.responses import JSONResponse

from tripwire.incidents import record_incident
from tripwire.models import SecuritySettings
from tripwire.store import KVStore
from tripwire.threat import is_flagged

logger = logging.getLogger(__name__)

FAKE_INTERNAL_PATHS = (
    "/internal/api/v2/users/export",
    "/internal/graphql?query={users{id,email,password}}",
    "/api/v3/admin/database/dump",
    "/debug/pprof/heap",
    "/actuator/env",
    "/api/internal/keys/rotate",
    "/admin/phpmyadmin/sql.php",
    "/wp-json/wp/v2/users",
    "/api/v1/secrets/list",
)

# (header name, value or factory)
FAKE_SERVER_HEADERS = (
    ("X-Powered-By", "Express/4.18.2"),
    ("X-AspNet-Version", "4.0.30319"),
    ("X-Backend", "Apache/2.4.54 (Ubuntu)"),
    ("X-Debug-Token", lambda: secrets.token_hex(16)),
    ("X-Request-Id", lambda: f"req_{secrets.token_hex(12)}"),
    ("X-Upstream", "backend-01.prod.internal:8443"),
    ("X-Cache-Key", lambda: f"cache:{secrets.token_hex(8)}:prod"),
)

TERMINAL_POISON_STRINGS = (
    "\x1b[2J\x1b[H",
    "\x1b]0;SCAN_DETECTED\x07",
    "\x1b[?25l",
    "\x1b[31m[CRITICAL]\x1b[0m Your scanner has been detected and logged.",
    "\x1b[5mWARNING: Intrusion countermeasures activated\x1b[0m",
)


def _printable(value: str) -> str:
    """HTTP header values cannot carry control bytes; send them as \\x1b notation."""
    return value.encode("unicode_escape").decode("ascii")


async def should_poison_logs(hashed_ip: str, settings: SecuritySettings, store: KVStore) -> bool:
    """Poison only when the feature is on and this identity has been flagged."""
    if not settings.logPoisoningEnabled:
        return False
    if not hashed_ip:
        return False
    try:
        return await is_flagged(store, hashed_ip)
    except Exception as exc:
        logger.error(f"[{hashed_ip[:8]}] Flagged lookup failed, not poisoning: {exc}")
        return False


def inject_log_poison_headers(response, settings: Optional[SecuritySettings] = None) -> None:
    """Add decoy headers to a response. Without settings every rule applies."""
    fake_headers = settings is None or settings.logPoisonFakeHeaders
    fake_paths = settings is None or settings.logPoisonFakePaths
    terminal = settings is None or settings.logPoisonTerminalEscape

    if fake_headers:
        name, value = random.choice(FAKE_SERVER_HEADERS)
        response.headers[name] = value() if callable(value) else value
        response.headers["X-Trace-Auth"] = f"Bearer {secrets.token_urlsafe(32)}"
    if fake_paths:
        response.headers["X-Debug-Route"] = random.choice(FAKE_INTERNAL_PATHS)
    if terminal:
        response.headers["X-Log-Trace"] = _printable(random.choice(TERMINAL_POISON_STRINGS))


def generate_poisoned_error_body(settings: Optional[SecuritySettings] = None) -> dict:
    """Fabricated error payload. The key set is the same on every call."""
    fake_paths = settings is None or settings.logPoisonFakePaths
    routes = list(FAKE_INTERNAL_PATHS[:3 + random.randrange(3)]) if fake_paths else []
    return {
        "error": "Internal Server Error",
        "trace": f"at Handler.process ({random.choice(FAKE_INTERNAL_PATHS) if fake_paths else 'handler.js:214'})",
        "debug": {
            "server": "backend-01.prod.internal",
            "db_host": "rds-prod.internal.aws:5432",
            "redis": "redis-sentinel.internal:26379",
            "api_key": f"sk_prod_{secrets.token_hex(20)}",
            "session_store": f"/tmp/sessions/{secrets.token_hex(8)}",
        },
        "internal_routes": routes,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def apply_log_poisoning(
    request,
    response,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: str,
) -> bool:
    """Inject poison headers into response if this requester qualifies."""
    if not await should_poison_logs(hashed_ip, settings, store):
        return False

    await record_incident(store, hashed_ip, {
        "type": "log_poisoning_applied",
        "method": getattr(request, "method", None),
        "url": getattr(request, "url", None),
        "userAgent": getattr(request, "user_agent", ""),
    })
    inject_log_poison_headers(response, settings)
    return True


async def poisoned_error_response(
    request,
    status_code: int,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: str,
) -> Optional[JSONResponse]:
    """Replacement for a genuine error response, or None if not poisoning."""
    response = JSONResponse(status_code=status_code, content=generate_poisoned_error_body(settings))
    if not await apply_log_poisoning(request, response, settings, store, hashed_ip):
        return None
    response.headers["Cache-Control"] = "no-store"
    return response
