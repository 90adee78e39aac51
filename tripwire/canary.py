"""
Canary documents: decoy files at tempting paths that phone home when opened.

Dispensing:
    A request for one of CANARY_DOCUMENTS gets an HTML page that looks like
    a leaked internal backup. Each download mints a fresh 32-hex token,
    stored with the downloader's hashed IP, so the later phone-home can be
    tied back to the download.

Phone-home:
    The page carries a 1x1 image beacon (e=img) and an inline script (e=js)
    that posts a browser fingerprint, including any address learned through
    WebRTC ICE candidates. Both hit /api/canary-callback, handled by
    handle_canary_callback below.
"""

import base64
import html
import ipaddress
import json
import logging
import re
import secrets
from datetime import datetime, timezone
from enum import Enum
from string import Template
from typing import Any, Callable, Dict, Optional

from fastapi.responses import HTMLResponse, JSONResponse, Response

from tripwire.alerting import send_security_alert
from tripwire.identity import get_client_ip, hash_ip
from tripwire.incidents import add_forensic_data, record_incident
from tripwire.models import CanaryAlert, CanaryDocumentSpec, CanaryToken, JsFingerprint, SecuritySettings
from tripwire.ringlog import BoundedLog
from tripwire.store import KVStore
from tripwire.threat import ThreatReason, flag_attacker, increment_threat_score

logger = logging.getLogger(__name__)

CANARY_TOKEN_PREFIX = "tripwire:canary:"
CANARY_ALERTS_KEY = "tripwire:canary-alerts"
CANARY_TOKEN_TTL = 604800  # 7 days
CALLBACK_PATH = "/api/canary-callback"

TOKEN_RE = re.compile(r"^[a-f0-9]{32}$")

CANARY_DOCUMENTS = (
    CanaryDocumentSpec(name="db-export.html", path="/admin/backup/db-export.html",
                       description="Database export (HTML)"),
    CanaryDocumentSpec(name="credentials.html", path="/admin/backup/credentials.html",
                       description="Credentials file (HTML)"),
    CanaryDocumentSpec(name="config-backup.html", path="/config/backup/config-backup.html",
                       description="Configuration backup (HTML)"),
    CanaryDocumentSpec(name="api-keys.html", path="/private/api-keys.html",
                       description="API keys document (HTML)"),
    CanaryDocumentSpec(name="admin-notes.html", path="/internal/admin-notes.html",
                       description="Admin notes (HTML)"),
)

# 1x1 transparent PNG
TRACKING_PIXEL = base64.b64decode(
    "iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAYAAAAfFcSJAAAAC0lEQVQI12NgAAIABQABNl7BcQAAAABJRU5ErkJggg=="
)

STUN_SERVERS = (
    "stun:stun.l.google.com:19302",
    "stun:stun1.l.google.com:19302",
    "stun:stun.services.mozilla.com",
)


class CanaryEvent(str, Enum):
    IMG = "img"
    JS = "js"


# ==================== Dispensing ====================

def match_canary_document(path: Any) -> Optional[CanaryDocumentSpec]:
    if not isinstance(path, str) or not path:
        return None
    path = path.split("?", 1)[0].split("#", 1)[0]
    for doc in CANARY_DOCUMENTS:
        if path == doc.path or path.endswith(doc.path):
            return doc
    return None


async def generate_canary_token(
    request,
    store: KVStore,
    document_path: Optional[str] = None,
    hashed_ip: Optional[str] = None,
) -> str:
    """Mint a token and persist its download metadata with a TTL.

    The token is returned even if persisting fails; the callback for it
    will then simply 404.
    """
    token = secrets.token_hex(16)
    if hashed_ip is None:
        hashed_ip = _requester_hash(request)
    headers = getattr(request, "headers", None) or {}
    user_agent = headers.get("user-agent") if hasattr(headers, "get") else None

    record = CanaryToken(
        token=token,
        documentPath=document_path or getattr(request, "path", None) or "/",
        hashedIp=hashed_ip,
        userAgent=(user_agent if isinstance(user_agent, str) else "")[:200],
        issuedAt=datetime.now(timezone.utc).isoformat(),
        ttl=CANARY_TOKEN_TTL,
    )
    try:
        await store.set_json(f"{CANARY_TOKEN_PREFIX}{token}", record.model_dump(), ex=CANARY_TOKEN_TTL)
    except Exception as exc:
        logger.error(f"[{token[:8]}] Canary token storage failed: {exc}")
    return token


_PAGE = Template(r"""<!DOCTYPE html>
<html lang="en">
<head>
<meta charset="utf-8">
<meta name="robots" content="noindex, nofollow">
<title>Internal Document - $name</title>
<style>
body{font-family:Consolas,monospace;background:#1a1a2e;color:#c4c4c4;margin:2rem;line-height:1.6}
h1{color:#e94560;border-bottom:1px solid #333;padding-bottom:.5rem}
table{border-collapse:collapse;width:100%;margin:1rem 0}
td,th{border:1px solid #333;padding:.5rem;text-align:left}
th{background:#16213e;color:#e94560}
.warn{color:#ff6b35;font-size:.85rem;margin-top:2rem}
.footer{color:#555;font-size:.75rem;margin-top:3rem}
</style>
</head>
<body>
<h1>CONFIDENTIAL - $name</h1>
<p>Internal backup document. Last updated: $generated</p>
<table>
<tr><th>Key</th><th>Value</th></tr>
<tr><td>DB Host</td><td>prod-db.internal.cluster</td></tr>
<tr><td>DB User</td><td>admin_rw</td></tr>
<tr><td>DB Password</td><td>S3cure_Pr0d_$db_password</td></tr>
<tr><td>API Master Key</td><td>sk_live_$api_key</td></tr>
<tr><td>Backup Encryption</td><td>AES-256-GCM</td></tr>
</table>
<p class="warn">This document is monitored. Unauthorized access will be logged and reported.</p>
<p class="footer">Document ID: $token | Generated: $generated</p>
$beacons
</body>
</html>
""")

_BEACONS = Template(r"""<img src="$callback&e=img" width="1" height="1" style="position:absolute;left:-9999px" alt="">
<script>
(function(){
  var u=$callback_js+"&e=js";
  var d={t:$token_js,ts:Date.now()};
  var sent=false;
  function send(){if(sent){return}sent=true;var x=new XMLHttpRequest();x.open('POST',u);
    x.setRequestHeader('Content-Type','application/json');x.send(JSON.stringify(d))}
$collect  setTimeout(send,2000);
})();
</script>""")

_FINGERPRINT_JS = r"""  try{d.tz=Intl.DateTimeFormat().resolvedOptions().timeZone}catch(e){}
  d.lang=navigator.language;d.plat=navigator.platform;d.cores=navigator.hardwareConcurrency||0;
  d.mem=navigator.deviceMemory||0;d.sw=screen.width;d.sh=screen.height;d.cd=screen.colorDepth;
  d.touch='ontouchstart' in window;
  try{var c=document.createElement('canvas');var g=c.getContext('2d');
    g.textBaseline='top';g.font='14px Arial';g.fillText('fp',2,2);
    d.cvs=c.toDataURL().slice(-32)}catch(e){}
  try{var r=new RTCPeerConnection({iceServers:$ice_servers});
    r.createDataChannel('');r.createOffer().then(function(o){r.setLocalDescription(o)});
    r.onicecandidate=function(e){if(e.candidate){
      var m=e.candidate.candidate.match(/([0-9]{1,3}(\.[0-9]{1,3}){3})/);
      if(m){d.realIp=m[1];sent=false;send()}}}}catch(e){}
"""


def generate_canary_html(
    token: str,
    document_name: str,
    phone_home: bool = True,
    collect_fingerprint: bool = True,
) -> str:
    """Render the decoy page.

    document_name is HTML-escaped; values reaching the script are JSON
    encoded with '<' escaped so they cannot close the script element.
    """
    callback = f"{CALLBACK_PATH}?t={token}"
    beacons = ""
    if phone_home:
        collect = ""
        if collect_fingerprint:
            ice = json.dumps([{"urls": url} for url in STUN_SERVERS])
            collect = Template(_FINGERPRINT_JS).substitute(ice_servers=ice)
        beacons = _BEACONS.substitute(
            callback=html.escape(callback),
            callback_js=_js_string(callback),
            token_js=_js_string(token),
            collect=collect,
        )

    return _PAGE.substitute(
        name=html.escape(str(document_name)),
        generated=datetime.now(timezone.utc).isoformat(),
        db_password=secrets.token_hex(4),
        api_key=secrets.token_hex(16),
        token=html.escape(str(token)),
        beacons=beacons,
    )


async def serve_canary_document(
    request,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: Optional[str] = None,
) -> Optional[Response]:
    """Serve a decoy if the request path is a canary path, else None."""
    if not settings.canaryDocumentsEnabled:
        return None

    doc = match_canary_document(getattr(request, "path", None) or getattr(request, "url", None))
    if doc is None:
        return None

    if hashed_ip is None:
        hashed_ip = _requester_hash(request)
    token = await generate_canary_token(request, store, document_path=doc.path, hashed_ip=hashed_ip)
    page = generate_canary_html(
        token,
        doc.name,
        phone_home=settings.canaryPhoneHomeOnOpen,
        collect_fingerprint=settings.canaryCollectFingerprint,
    )

    # Nobody legitimate follows a path that is never linked
    try:
        await flag_attacker(store, hashed_ip)
    except Exception as exc:
        logger.error(f"[{hashed_ip[:8]}] Flagging canary downloader failed: {exc}")
    threat = await increment_threat_score(store, hashed_ip, ThreatReason.HONEYTOKEN_ACCESS, settings)
    await record_incident(store, hashed_ip, {
        "type": "canary_document_served",
        "token": token,
        "documentPath": doc.path,
        "userAgent": getattr(request, "user_agent", ""),
        "threatScore": threat.score,
        "threatLevel": threat.level,
    })
    logger.warning(f"[CANARY SERVED] {json.dumps({'token': token, 'documentPath': doc.path, 'hashedIp': hashed_ip})}")

    return HTMLResponse(
        content=page,
        media_type=doc.contentType,
        headers={
            "Content-Disposition": f'inline; filename="{doc.name}"',
            "Cache-Control": "no-store",
        },
    )


# ==================== Phone-home ====================

def parse_fingerprint(body: Any) -> Optional[JsFingerprint]:
    """Keep only well-typed fields from the posted fingerprint."""
    if not isinstance(body, dict):
        return None
    real_ip = body.get("realIp")
    return JsFingerprint(
        timezone=_text(body.get("tz"), 100),
        language=_text(body.get("lang"), 50),
        platform=_text(body.get("plat"), 100),
        cores=_number(body.get("cores")),
        memory=_number(body.get("mem")),
        screenWidth=_number(body.get("sw")),
        screenHeight=_number(body.get("sh")),
        colorDepth=_number(body.get("cd")),
        touchSupport=body.get("touch") if isinstance(body.get("touch"), bool) else None,
        canvasHash=_text(body.get("cvs"), 64),
        realIp=hash_ip(real_ip) if _is_ipv4(real_ip) else None,
    )


def _not_found() -> JSONResponse:
    return JSONResponse(status_code=404, content={"error": "Not found"})


def _pixel_response() -> Response:
    return Response(content=TRACKING_PIXEL, media_type="image/png",
                    headers={"Cache-Control": "no-store"})


def _no_content_response() -> Response:
    return Response(status_code=204)


_EVENT_RESPONDERS: Dict[CanaryEvent, Callable[[], Response]] = {
    CanaryEvent.IMG: _pixel_response,
    CanaryEvent.JS: _no_content_response,
}
if set(_EVENT_RESPONDERS) != set(CanaryEvent):
    raise RuntimeError("every CanaryEvent needs a responder")


async def handle_canary_callback(
    request,
    settings: SecuritySettings,
    store: KVStore,
    hashed_ip: Optional[str] = None,
) -> Response:
    """Process a beacon. Malformed tokens and event types 404 before any store access."""
    query = getattr(request, "query", None)
    if not isinstance(query, dict):
        query = {}
    token = query.get("t")
    if not isinstance(token, str) or not TOKEN_RE.match(token):
        return _not_found()
    try:
        event = CanaryEvent(query.get("e"))
    except ValueError:
        return _not_found()

    try:
        stored = await store.get_json(f"{CANARY_TOKEN_PREFIX}{token}")
        record = CanaryToken(**stored) if isinstance(stored, dict) else None
    except Exception as exc:
        logger.error(f"[{token[:8]}] Canary token lookup failed: {exc}")
        record = None
    if record is None or record.token != token:
        return _not_found()

    if hashed_ip is None:
        hashed_ip = _requester_hash(request)
    headers = getattr(request, "headers", None) or {}
    timestamp = datetime.now(timezone.utc).isoformat()

    fingerprint = None
    if event is CanaryEvent.JS and settings.canaryCollectFingerprint:
        fingerprint = parse_fingerprint(getattr(request, "body", None))

    alert = CanaryAlert(
        token=token,
        eventType=event.value,
        hashedIp=hashed_ip,
        downloaderIp=record.hashedIp,
        documentPath=record.documentPath,
        userAgent=_text(headers.get("user-agent"), 200) or "",
        acceptLanguage=_text(headers.get("accept-language"), 100) or "",
        fingerprint=fingerprint,
        timestamp=timestamp,
    )

    await _mark_opened(store, record, timestamp)

    try:
        await BoundedLog(store, CANARY_ALERTS_KEY, settings.maxAlertsStored).append(alert.model_dump())
    except Exception as exc:
        logger.error(f"[{token[:8]}] Canary alert persistence failed: {exc}")

    logger.error(f"[CANARY CALLBACK] {json.dumps({'token': token, 'hashedIp': hashed_ip, 'event': event.value, 'timestamp': timestamp})}")

    threat = await increment_threat_score(store, hashed_ip, ThreatReason.CANARY_DOCUMENT_OPENED, settings)
    await record_incident(store, hashed_ip, {
        "type": "canary_document_opened",
        "token": token,
        "documentPath": record.documentPath,
        "event": event.value,
        "userAgent": alert.userAgent,
        "threatScore": threat.score,
        "threatLevel": threat.level,
        "timestamp": timestamp,
    })
    await add_forensic_data(store, hashed_ip, {
        "token": token,
        "event": event.value,
        "timestamp": timestamp,
        "documentPath": record.documentPath,
        "userAgent": alert.userAgent,
        "acceptLanguage": alert.acceptLanguage,
        "downloaderIp": record.hashedIp,
        "jsFingerprint": fingerprint.model_dump() if fingerprint else None,
    })

    if settings.canaryAlertOnCallback and settings.alertingEnabled:
        await send_security_alert(store, {
            "type": "CANARY DOCUMENT OPENED",
            "key": f"canary:{record.documentPath}",
            "token": token,
            "documentPath": record.documentPath,
            "hashedIp": hashed_ip,
            "userAgent": alert.userAgent,
            "threatScore": threat.score,
            "threatLevel": threat.level,
            "timestamp": timestamp,
            "severity": "critical",
        })

    return _EVENT_RESPONDERS[event]()


async def list_canary_alerts(store: KVStore, settings: SecuritySettings) -> list:
    return await BoundedLog(store, CANARY_ALERTS_KEY, settings.maxAlertsStored).entries()


async def _mark_opened(store: KVStore, record: CanaryToken, timestamp: str) -> None:
    key = f"{CANARY_TOKEN_PREFIX}{record.token}"
    try:
        remaining = await store.ttl(key)
        opened = record.model_copy(update={"opened": True, "openedAt": record.openedAt or timestamp})
        await store.set_json(key, opened.model_dump(), ex=remaining if remaining > 0 else record.ttl)
    except Exception as exc:
        logger.error(f"[{record.token[:8]}] Marking canary token opened failed: {exc}")


def _requester_hash(request) -> str:
    return hash_ip(get_client_ip(getattr(request, "headers", None),
                                 getattr(request, "client_host", None)))


def _js_string(value: str) -> str:
    return json.dumps(value).replace("<", "\\u003c").replace(">", "\\u003e")


def _text(value: Any, limit: int) -> Optional[str]:
    return value[:limit] if isinstance(value, str) else None


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return value


def _is_ipv4(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        ipaddress.IPv4Address(value)
    except ValueError:
        return False
    return True
