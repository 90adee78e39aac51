"""FastAPI entry point. Every request passes the countermeasure pipeline:
rate limit -> SQL backfire -> canary documents -> route -> log poisoning.
Also exposes the canary callback endpoint and the admin API."""

import logging

from fastapi import FastAPI, Depends, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from tripwire.auth import verify_api_key
from tripwire.backfire import handle_sql_injection_backfire
from tripwire.canary import handle_canary_callback, list_canary_alerts, serve_canary_document
from tripwire.detector import RequestView
from tripwire.honeytokens import (
    clear_honeytoken_alerts,
    is_honeytoken,
    list_honeytoken_alerts,
    seed_honeytokens,
    trigger_honeytoken_alarm,
)
from tripwire.identity import get_client_ip, hash_ip
from tripwire.incidents import delete_profile, get_profile
from tripwire.models import CanaryAlertList, SecuritySettings, SecuritySettingsUpdate, ThreatScoreRecord
from tripwire.poison import poisoned_error_response
from tripwire.ratelimit import apply_rate_limit
from tripwire.settings import load_settings, save_settings
from tripwire.store import StoreError, create_store
from tripwire.threat import get_threat_score, list_blocked_ips, unblock_ip

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(
    title="Tripwire Countermeasures API",
    description="Attack detection, canary documents, threat scoring and response poisoning",
    version="1.0.0",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

app.state.store = create_store()


@app.on_event("startup")
async def _on_startup() -> None:
    seeded = await seed_honeytokens(app.state.store)
    logger.info(f"Tripwire API v1.0.0 started | honeytokens seeded={seeded} | Docs: /docs")


@app.on_event("shutdown")
async def _on_shutdown() -> None:
    await app.state.store.close()


@app.exception_handler(RequestValidationError)
async def _validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    logger.error(f"422 VALIDATION ERROR | {request.url.path} | {exc.errors()}")
    return JSONResponse(
        status_code=422,
        content={"detail": exc.errors(), "message": "Invalid request payload."},
    )


@app.middleware("http")
async def countermeasure_pipeline(request: Request, call_next):
    """Run the countermeasures around the route handler.

    Each stage is isolated: a failing countermeasure is logged and skipped,
    and the request continues down the ordinary path.
    """
    store = request.app.state.store
    try:
        view = await RequestView.from_request(request)
    except Exception as exc:
        logger.warning(f"Request body unreadable, classifying without it: {exc}")
        view = await RequestView.from_request(request, include_body=False)
    hashed_ip = hash_ip(get_client_ip(view.headers, view.client_host))
    short_ip = hashed_ip[:8]

    request.state.view = view
    request.state.hashed_ip = hashed_ip

    # 1. Rate limiting runs before any classification
    limited = await apply_rate_limit(store, hashed_ip)
    if limited is not None:
        return limited

    # 2. Settings are read once per request and passed explicitly
    settings = await load_settings(store)
    request.state.settings = settings

    # 3. SQL backfire for classified-hostile requests
    try:
        backfire = await handle_sql_injection_backfire(view, settings, store, hashed_ip)
        if backfire is not None:
            return backfire
    except Exception as exc:
        logger.error(f"[{short_ip}] Backfire stage error: {exc}")

    # 4. Canary documents at decoy paths
    try:
        canary = await serve_canary_document(view, settings, store, hashed_ip)
        if canary is not None:
            return canary
    except Exception as exc:
        logger.error(f"[{short_ip}] Canary stage error: {exc}")

    # 5. Ordinary handling
    try:
        response = await call_next(request)
    except Exception as exc:
        logger.error(f"[{short_ip}] Unhandled error in {view.path}: {exc}", exc_info=True)
        response = JSONResponse(status_code=500, content={"error": "Internal Server Error"})

    # 6. Genuine errors for flagged attackers get a fabricated body
    if response.status_code >= 400 and response.status_code != 429:
        try:
            poisoned = await poisoned_error_response(view, response.status_code, settings, store, hashed_ip)
            if poisoned is not None:
                return poisoned
        except Exception as exc:
            logger.error(f"[{short_ip}] Log poisoning stage error: {exc}")

    return response


def _settings(request: Request) -> SecuritySettings:
    return getattr(request.state, "settings", None) or SecuritySettings.disabled()


@app.get("/")
async def health_check() -> dict:
    return {
        "status": "online",
        "service": "Tripwire Countermeasures API",
        "version": "1.0.0",
    }


@app.api_route("/api/canary-callback", methods=["GET", "POST", "OPTIONS"])
async def canary_callback(request: Request) -> Response:
    """Phone-home endpoint for canary documents.

    GET  ?t=<token>&e=img -> tracking pixel
    POST ?t=<token>&e=js  -> fingerprint beacon, 204
    """
    if request.method == "OPTIONS":
        return Response(status_code=200)
    return await handle_canary_callback(
        request.state.view, _settings(request), request.app.state.store, request.state.hashed_ip
    )


@app.get("/api/kv/{key}")
async def read_key(key: str, request: Request) -> JSONResponse:
    """Public key lookup. Only honeytoken keys answer, and they raise an alarm."""
    if not is_honeytoken(key):
        return JSONResponse(status_code=404, content={"error": "Not found"})

    backfire = await trigger_honeytoken_alarm(
        request.state.view, key, _settings(request), request.app.state.store, request.state.hashed_ip
    )
    if backfire is not None:
        return backfire
    return JSONResponse(status_code=403, content={"error": "Forbidden"})


@app.get("/api/canary-alerts", response_model=CanaryAlertList)
async def canary_alerts(request: Request, api_key: str = Depends(verify_api_key)) -> CanaryAlertList:
    try:
        alerts = await list_canary_alerts(request.app.state.store, _settings(request))
    except StoreError as exc:
        logger.error(f"Canary alerts read failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return CanaryAlertList(alerts=[a for a in alerts if isinstance(a, dict)])


@app.get("/api/security-settings")
async def read_security_settings(request: Request, api_key: str = Depends(verify_api_key)) -> dict:
    return {"settings": _settings(request).model_dump()}


@app.post("/api/security-settings")
async def update_security_settings(
    update: SecuritySettingsUpdate,
    request: Request,
    api_key: str = Depends(verify_api_key),
) -> dict:
    try:
        settings = await save_settings(request.app.state.store, update)
    except StoreError as exc:
        logger.error(f"Security settings write failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    except ValidationError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid settings: {exc.error_count()} errors")
    return {"success": True, "settings": settings.model_dump()}


@app.get("/api/threat-score/{hashed_ip}", response_model=ThreatScoreRecord)
async def read_threat_score(
    hashed_ip: str,
    request: Request,
    api_key: str = Depends(verify_api_key),
) -> ThreatScoreRecord:
    return await get_threat_score(request.app.state.store, hashed_ip, _settings(request))


@app.get("/api/security-incidents")
async def security_incidents(request: Request, api_key: str = Depends(verify_api_key)) -> dict:
    """Honeytoken alerts, newest first."""
    try:
        incidents = await list_honeytoken_alerts(request.app.state.store, _settings(request))
    except StoreError as exc:
        logger.error(f"Security incidents read failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"incidents": incidents}


@app.delete("/api/security-incidents")
async def clear_security_incidents(request: Request, api_key: str = Depends(verify_api_key)) -> dict:
    try:
        await clear_honeytoken_alerts(request.app.state.store)
    except StoreError as exc:
        logger.error(f"Security incidents clear failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"success": True}


@app.get("/api/attacker-profile/{hashed_ip}")
async def attacker_profile(
    hashed_ip: str,
    request: Request,
    api_key: str = Depends(verify_api_key),
) -> dict:
    try:
        profile = await get_profile(request.app.state.store, hashed_ip)
    except StoreError as exc:
        logger.error(f"Attacker profile read failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    if profile is None:
        raise HTTPException(status_code=404, detail="Profile not found")
    return {"profile": profile}


@app.delete("/api/attacker-profile/{hashed_ip}")
async def remove_attacker_profile(
    hashed_ip: str,
    request: Request,
    api_key: str = Depends(verify_api_key),
) -> dict:
    try:
        await delete_profile(request.app.state.store, hashed_ip)
    except StoreError as exc:
        logger.error(f"Attacker profile delete failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"success": True}


@app.get("/api/blocklist")
async def blocklist(request: Request, api_key: str = Depends(verify_api_key)) -> dict:
    try:
        blocked = await list_blocked_ips(request.app.state.store)
    except StoreError as exc:
        logger.error(f"Blocklist read failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"blocked": blocked}


@app.delete("/api/blocklist/{hashed_ip}")
async def unblock(
    hashed_ip: str,
    request: Request,
    api_key: str = Depends(verify_api_key),
) -> dict:
    try:
        await unblock_ip(request.app.state.store, hashed_ip)
    except StoreError as exc:
        logger.error(f"Unblock failed: {exc}")
        raise HTTPException(status_code=503, detail="Storage unavailable")
    return {"success": True}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
